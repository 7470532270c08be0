"""Canonical serialization and content digests."""

from .digest import (
    canonical_json,
    canonical_json_bytes,
    sha256_hex,
    digest_record,
    merkle_root,
)

__all__ = [
    "canonical_json",
    "canonical_json_bytes",
    "sha256_hex",
    "digest_record",
    "merkle_root",
]
