"""Append-only administrative audit log with a SHA-256 hash chain."""

import hashlib
import json
import secrets
import threading
import time
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from cblock.admin.models import AuditLogEntry, AuditLogType, User, VerificationResult
from cblock.documents.models import utcnow
from cblock.errors import LoadError, StorageError
from cblock.storage.backend import AUDIT_LOGS_KEY, KeyValueBackend


def compute_entry_hash(entry: AuditLogEntry) -> str:
    """Hash everything except entry_hash."""
    hashable = entry.model_dump(mode="json", exclude={"entry_hash"})
    canonical = json.dumps(hashable, sort_keys=True, default=str)
    return "sha256:" + hashlib.sha256(canonical.encode()).hexdigest()


def _new_entry_id() -> str:
    return f"log_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def parse_audit_pairs(pairs: Iterable[Any]) -> list[AuditLogEntry]:
    entries = []
    for item in pairs:
        if not isinstance(item, list | tuple) or len(item) != 2:
            raise LoadError(f"malformed audit log pair {item!r}")
        try:
            entries.append(AuditLogEntry.model_validate(item[1]))
        except PydanticValidationError as e:
            raise LoadError(f"audit log entry {item[0]}: {e.errors()[0]['msg']}") from e
    return entries


class AuditLog:
    """Ordered, append-only log persisted as ``[id, entry]`` pairs.

    Each entry's prev_hash points to the previous entry's hash, so editing or
    dropping a stored entry breaks :meth:`verify`.
    """

    def __init__(self, backend: KeyValueBackend) -> None:
        self.backend = backend
        self._lock = threading.RLock()
        self._entries: list[AuditLogEntry] = self._load()

    def _load(self) -> list[AuditLogEntry]:
        raw = self.backend.get(AUDIT_LOGS_KEY)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LoadError(f"{AUDIT_LOGS_KEY}: not valid JSON ({e})") from e
        if not isinstance(data, list):
            raise LoadError(f"{AUDIT_LOGS_KEY}: expected a list of [key, value] pairs")
        return parse_audit_pairs(data)

    def _commit(self, entries: list[AuditLogEntry]) -> None:
        """Write the candidate log, then make it current."""
        pairs = [[e.id, e.model_dump(mode="json")] for e in entries]
        self.backend.set(AUDIT_LOGS_KEY, json.dumps(pairs))
        self._entries = entries

    @property
    def last_hash(self) -> str | None:
        return self._entries[-1].entry_hash if self._entries else None

    def append(
        self,
        type: AuditLogType,
        actor: User,
        details: dict[str, Any] | None = None,
        target_user_id: str | None = None,
    ) -> AuditLogEntry:
        with self._lock:
            entry = AuditLogEntry(
                id=_new_entry_id(),
                type=type,
                actor_id=actor.id,
                actor_email=actor.email,
                target_user_id=target_user_id,
                details=details or {},
                timestamp=utcnow(),
                prev_hash=self.last_hash,
            )
            entry = entry.model_copy(update={"entry_hash": compute_entry_hash(entry)})
            self._commit([*self._entries, entry])
            return entry

    def entries(self) -> list[AuditLogEntry]:
        """All entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def export(self) -> list[list[Any]]:
        with self._lock:
            return [[e.id, e.model_dump(mode="json")] for e in self._entries]

    def replace(self, pairs: Iterable[Any]) -> None:
        """Swap in a restored log; validated fully before anything changes."""
        try:
            entries = parse_audit_pairs(pairs)
        except LoadError as e:
            raise StorageError(f"Invalid audit log snapshot: {e.reason}") from e
        with self._lock:
            self._commit(entries)

    def verify(self) -> VerificationResult:
        """Check every entry's hash and its link to the previous entry."""
        prev_hash: str | None = None
        entries = self.entries()
        for i, entry in enumerate(entries):
            if entry.prev_hash != prev_hash:
                return VerificationResult(
                    valid=False,
                    entries_checked=i + 1,
                    first_error=(
                        f"Entry {i + 1} ({entry.id}): prev_hash mismatch. "
                        f"Expected {prev_hash}, got {entry.prev_hash}"
                    ),
                )
            computed = compute_entry_hash(entry)
            if entry.entry_hash != computed:
                return VerificationResult(
                    valid=False,
                    entries_checked=i + 1,
                    first_error=(
                        f"Entry {i + 1} ({entry.id}): hash mismatch. "
                        f"Expected {computed}, got {entry.entry_hash}"
                    ),
                )
            prev_hash = entry.entry_hash
        return VerificationResult(valid=True, entries_checked=len(entries))
