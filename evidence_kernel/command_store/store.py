"""
Tenant-Scoped Command Store

Runs a command at most once per (tenant_id, command_id) within the TTL and
replays its stored result afterwards.

The operation receives the open store transaction, so its writes and the
command record commit together: a crash can never leave an effect without
its record, or a record without its effect.

Audit Note:
- Command ids are namespaced by tenant; equal ids in two tenants are
  unrelated commands
- A failed operation stores nothing, so the caller may retry with the
  same command id
- The persistent command ledger is authoritative; the in-process cache is
  a best-effort front that may be lost at any time
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple

from evidence_kernel.canonical import canonical_json
from evidence_kernel.errors import FieldViolation, IdempotencyConflict, InternalError, ValidationFailed
from evidence_kernel.storage.base import CommandRecord
from .cache import CommandCache

if TYPE_CHECKING:
    from evidence_kernel.storage.base import KernelStore, StoreTransaction

logger = logging.getLogger(__name__)

Operation = Callable[["StoreTransaction"], Dict[str, Any]]


@dataclass(frozen=True)
class CommandOutcome:
    """Result of `CommandStore.execute`."""
    result: Dict[str, Any]
    replayed: bool
    command_type: str
    created_at: datetime


class _LostRace(Exception):
    """Another writer stored a live record for the key first."""


class CommandStore:
    """
    Idempotent command execution over a kernel store.

    Usage:
        commands = CommandStore(store, ttl_hours=24)
        outcome = commands.execute(
            "tenant-a", "cmd-123",
            lambda tx: machine.seal("tenant-a", draft_id, tx=tx).to_response(),
            command_type="SEAL",
        )
    """

    def __init__(
        self,
        store: KernelStore,
        ttl_hours: int = 24,
        cache_size: int = 10000,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.cache = CommandCache(cache_size, clock=self._clock)
        self.logger = logging.getLogger(f"{__name__}.CommandStore")

    def execute(
        self,
        tenant_id: str,
        command_id: str,
        operation: Operation,
        command_type: str,
        request_fingerprint: Optional[str] = None,
    ) -> CommandOutcome:
        """
        Run `operation` once for this tenant and command id.

        Raises:
            ValidationFailed: tenant_id or command_id missing
            IdempotencyConflict: command id reused for a different request
        """
        violations = [
            FieldViolation(name, "required")
            for name, value in (("tenant_id", tenant_id), ("command_id", command_id))
            if not isinstance(value, str) or not value.strip()
        ]
        if violations:
            raise ValidationFailed(violations)

        cached = self.cache.get(tenant_id, command_id)
        if cached is not None:
            return self._replay(cached, command_type, request_fingerprint)

        try:
            record, replayed = self._run_once(
                tenant_id, command_id, operation, command_type, request_fingerprint
            )
        except _LostRace:
            record = self._lookup(tenant_id, command_id)
            if record is None:
                raise InternalError(f"Command {command_id} lost a race but no record was found")
            replayed = True
        except Exception:
            winner = self._lookup(tenant_id, command_id)
            if winner is None:
                raise
            self.logger.info(f"Command {command_id} failed locally; returning concurrent result")
            record, replayed = winner, True

        if replayed:
            return self._replay(record, command_type, request_fingerprint)

        self.cache.put(record)
        self.logger.debug(f"Command {command_type} {command_id} stored for tenant {tenant_id}")
        return CommandOutcome(
            result=record.result,
            replayed=False,
            command_type=record.command_type,
            created_at=record.created_at,
        )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired command records. Returns count removed from the store."""
        now = now or self._clock()
        with self.store.transaction() as tx:
            removed = tx.delete_expired_commands(now)
        self.cache.cleanup_expired()
        self.logger.info(f"Purged {removed} expired command records")
        return removed

    def stats(self) -> Dict[str, Any]:
        return {"ttl_hours": self.ttl.total_seconds() / 3600, "cache": self.cache.stats()}

    # =========================================================================
    # INTERNAL METHODS
    # =========================================================================

    def _run_once(
        self,
        tenant_id: str,
        command_id: str,
        operation: Operation,
        command_type: str,
        request_fingerprint: Optional[str],
    ) -> Tuple[CommandRecord, bool]:
        with self.store.transaction() as tx:
            now = self._clock()
            existing = tx.get_command(tenant_id, command_id)
            if existing is not None and not existing.is_expired(now):
                return existing, True

            # Stored form and first response must be identical
            result = json.loads(canonical_json(operation(tx)))
            record = CommandRecord(
                tenant_id=tenant_id,
                command_id=command_id,
                command_type=command_type,
                result=result,
                created_at=now,
                expires_at=now + self.ttl,
                request_fingerprint=request_fingerprint,
            )
            if not tx.insert_command(record):
                raise _LostRace(command_id)
        return record, False

    def _lookup(self, tenant_id: str, command_id: str) -> Optional[CommandRecord]:
        with self.store.transaction() as tx:
            record = tx.get_command(tenant_id, command_id)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    def _replay(
        self,
        record: CommandRecord,
        command_type: str,
        request_fingerprint: Optional[str],
    ) -> CommandOutcome:
        if record.command_type != command_type:
            raise IdempotencyConflict(
                f"Command id already used for a {record.command_type} command"
            )
        if (
            request_fingerprint is not None
            and record.request_fingerprint is not None
            and record.request_fingerprint != request_fingerprint
        ):
            raise IdempotencyConflict("Command id already used with a different request")

        self.cache.put(record)
        self.logger.info(f"Replaying command {record.command_id} for tenant {record.tenant_id}")
        return CommandOutcome(
            result=json.loads(canonical_json(record.result)),
            replayed=True,
            command_type=record.command_type,
            created_at=record.created_at,
        )
