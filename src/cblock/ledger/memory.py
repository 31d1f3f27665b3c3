"""In-process ledger and on-disk content store for local use, demos and tests."""

import hashlib
import json
import uuid
from datetime import UTC, datetime
from pathlib import Path

from cblock.errors import ErrorClass, NotFoundError, TransientInfraError
from cblock.ledger.base import (
    AttestationReceipt,
    ContentStore,
    LedgerClient,
    LedgerRecord,
    RegistrationReceipt,
    RegistrationRequest,
)


class FaultPlan:
    """Queue of injected transient failures, consumed one per call."""

    def __init__(self) -> None:
        self._pending: list[tuple[str | None, ErrorClass]] = []

    def add(self, count: int, error_class: ErrorClass, operation: str | None) -> None:
        self._pending.extend([(operation, error_class)] * count)

    def check(self, operation: str) -> None:
        for i, (target, error_class) in enumerate(self._pending):
            if target is None or target == operation:
                del self._pending[i]
                raise TransientInfraError(
                    f"Injected {error_class.value} failure in {operation}", error_class
                )

    def clear(self) -> None:
        self._pending.clear()


class LedgerState:
    """Ledger contents, persisted to disk when a path is given."""

    def __init__(self) -> None:
        self.next_id: int = 1
        self.records: dict[str, dict] = {}  # id -> LedgerRecord dict

    def to_dict(self) -> dict:
        return {"next_id": self.next_id, "records": self.records}

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerState":
        state = cls()
        state.next_id = data.get("next_id", 1)
        state.records = data.get("records", {})
        return state


class InMemoryLedger(LedgerClient):
    """Ledger stand-in with sequential integer ids.

    - Optionally persists to a JSON state file between runs
    - ``fail_next`` queues transient failures for degraded-mode runs
    - ``configured=False`` makes callers skip it entirely
    """

    def __init__(self, state_path: Path | None = None, configured: bool = True) -> None:
        self.state_path = state_path
        self.configured = configured
        self.faults = FaultPlan()
        self.calls: list[str] = []
        self.state = self._load_state()

    def _load_state(self) -> LedgerState:
        if self.state_path and self.state_path.exists():
            with open(self.state_path) as f:
                return LedgerState.from_dict(json.load(f))
        return LedgerState()

    def _save_state(self) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_path, "w") as f:
            json.dump(self.state.to_dict(), f, indent=2)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        self.faults.check(operation)

    def fail_next(
        self,
        count: int = 1,
        error_class: ErrorClass = ErrorClass.NETWORK,
        operation: str | None = None,
    ) -> None:
        """Make the next ``count`` calls (optionally of one operation) fail."""
        self.faults.add(count, error_class, operation)

    def is_configured(self) -> bool:
        return self.configured

    async def register_record(self, request: RegistrationRequest) -> RegistrationReceipt:
        self._enter("register_record")
        for existing in self.state.records.values():
            if existing["content_id"] == request.content_id:
                return RegistrationReceipt(
                    document_id=existing["id"], transaction_ref=f"0x{uuid.uuid4().hex}"
                )
        document_id = str(self.state.next_id)
        self.state.next_id += 1
        record = LedgerRecord(
            id=document_id, created_at=datetime.now(UTC), **request.model_dump()
        )
        self.state.records[document_id] = record.model_dump(mode="json")
        self._save_state()
        return RegistrationReceipt(document_id=document_id, transaction_ref=f"0x{uuid.uuid4().hex}")

    async def get_record(self, document_id: str) -> LedgerRecord | None:
        self._enter("get_record")
        data = self.state.records.get(str(document_id))
        return LedgerRecord.model_validate(data) if data else None

    async def get_all_records(self) -> list[LedgerRecord]:
        self._enter("get_all_records")
        return [LedgerRecord.model_validate(r) for r in self.state.records.values()]

    async def attest_record(
        self, document_id: str, verifier: str, signature: str
    ) -> AttestationReceipt:
        self._enter("attest_record")
        data = self.state.records.get(str(document_id))
        if data is None:
            raise NotFoundError(f"Ledger record {document_id} not found")
        data["is_attested"] = True
        data["verifier"] = verifier
        data["attested_at"] = datetime.now(UTC).isoformat()
        self._save_state()
        return AttestationReceipt(transaction_ref=f"0x{uuid.uuid4().hex}")


class LocalContentStore(ContentStore):
    """Content-addressed file store: ids are ``QmLocal`` plus a sha256 prefix."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.faults = FaultPlan()

    def fail_next(self, count: int = 1, error_class: ErrorClass = ErrorClass.NETWORK) -> None:
        self.faults.add(count, error_class, None)

    @staticmethod
    def content_id_for(content: bytes) -> str:
        return "QmLocal" + hashlib.sha256(content).hexdigest()[:39]

    async def put(self, content: bytes, filename: str) -> str:
        self.faults.check("put")
        content_id = self.content_id_for(content)
        self.directory.mkdir(parents=True, exist_ok=True)
        (self.directory / content_id).write_bytes(content)
        return content_id

    def get(self, content_id: str) -> bytes:
        path = self.directory / content_id
        if not path.exists():
            raise NotFoundError(f"Content {content_id} not found")
        return path.read_bytes()
