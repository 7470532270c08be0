"""
Canonical Serialization & Digests

Deterministic JSON encoding of structured records plus SHA-256 fingerprints.
Two records that differ only in key insertion order produce byte-identical
output and therefore identical digests.

Audit Note:
- This module never reads a clock or a random source
- Values without a stable textual form are rejected, never coerced
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Mapping
from dataclasses import fields, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, List, Optional

from evidence_kernel.errors import CanonicalizationError

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def _normalize(value: Any) -> Any:
    """Reduce a value to JSON primitives, rejecting anything ambiguous."""
    if isinstance(value, Enum):
        return _normalize(value.value)
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise CanonicalizationError(f"Non-finite float has no canonical form: {value}")
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise CanonicalizationError(f"Non-finite decimal has no canonical form: {value}")
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise CanonicalizationError("Naive datetime has no canonical form")
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _normalize(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if isinstance(key, Enum):
                key = key.value
            if not isinstance(key, str):
                raise CanonicalizationError(f"Mapping key must be a string, got {type(key).__name__}")
            result[key] = _normalize(item)
        return result
    if isinstance(value, (set, frozenset)):
        items = [_normalize(item) for item in value]
        return sorted(items, key=lambda item: _dumps(item))
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    raise CanonicalizationError(f"Value of type {type(value).__name__} has no canonical form")


def _dumps(normalized: Any) -> str:
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_json(obj: Any) -> str:
    """Canonical JSON text: keys sorted recursively, no insignificant whitespace."""
    return _dumps(_normalize(obj))


def canonical_json_bytes(obj: Any) -> bytes:
    return canonical_json(obj).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """SHA-256 of raw bytes as 64 lowercase hex characters."""
    return hashlib.sha256(data).hexdigest()


def digest_record(obj: Any) -> str:
    """Digest of the canonical serialization of a structured record."""
    return sha256_hex(canonical_json_bytes(obj))


def merkle_root(digests: Iterable[str]) -> Optional[str]:
    """
    Aggregate file digests into one root with a binary hash tree.

    Digests are sorted lexicographically first so the root does not depend
    on upload order. Adjacent pairs are hashed over their raw 32-byte values;
    an odd node at the end of a level is promoted unchanged. A single digest
    is its own root and an empty input has no root.
    """
    level: List[str] = sorted(digests)
    if not level:
        return None

    for digest in level:
        if not _HEX_DIGEST.match(digest):
            raise CanonicalizationError(f"Not a SHA-256 hex digest: {digest!r}")

    while len(level) > 1:
        next_level = []
        for i in range(0, len(level), 2):
            if i + 1 < len(level):
                pair = bytes.fromhex(level[i]) + bytes.fromhex(level[i + 1])
                next_level.append(sha256_hex(pair))
            else:
                next_level.append(level[i])
        level = next_level

    return level[0]
