"""Command Store - tenant-scoped idempotent command execution."""

from .cache import CommandCache, make_command_key
from .store import CommandOutcome, CommandStore

__all__ = [
    "CommandCache",
    "make_command_key",
    "CommandOutcome",
    "CommandStore",
]
