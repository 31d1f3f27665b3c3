"""Pydantic models for documents and the inputs/outputs of lifecycle operations."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class DocumentStatus(str, Enum):
    PENDING = "pending"
    ATTESTED = "attested"
    MINTED = "minted"
    REJECTED = "rejected"


class UserRole(str, Enum):
    INDIVIDUAL = "individual"
    BUSINESS = "business"
    VERIFIER = "verifier"
    ADMIN = "admin"


class DocumentSource(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    LOCAL_ONLY = "local_only"


UNKNOWN = "Unknown"
DEFAULT_MIME_TYPE = "application/octet-stream"


class DocumentMetadata(BaseModel):
    project_name: str
    project_type: str = ""
    description: str = ""
    location: str = ""
    estimated_credits: float = 0


class Attestation(BaseModel):
    verifier: str
    attested_at: datetime
    signature: str = ""
    external_project_id: str = ""
    external_serial: str = ""
    amount: int = 0
    nonce: int = 0
    remote_attested: bool = False
    remote_transaction_ref: str | None = None


class MintingResult(BaseModel):
    transaction_ref: str
    minted_at: datetime
    amount: int
    recipient: str
    token_ref: str | None = None
    minted_by: str | None = None


class Document(BaseModel):
    id: str
    content_id: str
    status: DocumentStatus = DocumentStatus.PENDING
    uploader: str
    uploader_role: UserRole = UserRole.INDIVIDUAL
    uploader_name: str = UNKNOWN
    uploader_email: str = UNKNOWN
    filename: str = UNKNOWN
    file_size: int = 0
    mime_type: str = DEFAULT_MIME_TYPE
    metadata: DocumentMetadata
    attestation: Attestation | None = None
    minting_result: MintingResult | None = None
    rejection_reason: str | None = None
    registered_remotely: bool = False
    remote_transaction_ref: str | None = None
    source: DocumentSource = DocumentSource.LOCAL
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DocumentStatus.MINTED, DocumentStatus.REJECTED)


class FileUpload(BaseModel):
    filename: str
    mime_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class Uploader(BaseModel):
    """Who is uploading: identity plus the display fields kept locally."""

    identity: str
    role: UserRole = UserRole.INDIVIDUAL
    name: str = UNKNOWN
    email: str = UNKNOWN


class AttestationInput(BaseModel):
    external_project_id: str
    external_serial: str
    amount: int | None = None
    nonce: int
    recipient: str | None = None


class MintingInput(BaseModel):
    transaction_ref: str
    amount: int
    recipient: str
    token_ref: str | None = None
    minted_by: str | None = None
    minted_at: datetime | None = None


class UploadResult(BaseModel):
    document: Document
    registered_remotely: bool
    message: str


class AttestResult(BaseModel):
    document: Document
    remote_attested: bool
    message: str


class MintEligibility(BaseModel):
    eligible: bool
    reason: str


class DocumentFilters(BaseModel):
    status: DocumentStatus | None = None
    uploader_role: UserRole | None = None
    uploader: str | None = None
    project_type: str | None = None
    search: str | None = None


class DocumentStats(BaseModel):
    total: int = 0
    pending: int = 0
    attested: int = 0
    minted: int = 0
    rejected: int = 0
