"""Abstract ledger and content-store interfaces and their wire models."""

from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel


class LedgerRecord(BaseModel):
    """A document as the external ledger reports it."""

    id: str
    content_id: str
    uploader: str
    project_name: str
    project_type: str = ""
    description: str = ""
    location: str = ""
    estimated_credits: float = 0
    is_attested: bool = False
    verifier: str | None = None
    attested_at: datetime | None = None
    created_at: datetime


class RegistrationRequest(BaseModel):
    content_id: str
    uploader: str
    project_name: str
    project_type: str = ""
    description: str = ""
    location: str = ""
    estimated_credits: float = 0


class RegistrationReceipt(BaseModel):
    document_id: str
    transaction_ref: str


class AttestationReceipt(BaseModel):
    transaction_ref: str


class LedgerClient(ABC):
    """Authoritative, eventually consistent record of registered documents."""

    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    async def register_record(self, request: RegistrationRequest) -> RegistrationReceipt: ...

    @abstractmethod
    async def get_record(self, document_id: str) -> LedgerRecord | None: ...

    @abstractmethod
    async def get_all_records(self) -> list[LedgerRecord]: ...

    @abstractmethod
    async def attest_record(
        self, document_id: str, verifier: str, signature: str
    ) -> AttestationReceipt: ...


class ContentStore(ABC):
    @abstractmethod
    async def put(self, content: bytes, filename: str) -> str:
        """Store bytes and return their content id."""
