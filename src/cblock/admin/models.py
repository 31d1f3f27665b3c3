"""Pydantic models for users, verifier credentials, audit entries and backups."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cblock.documents.models import UserRole, utcnow

BACKUP_VERSION = "1.0"


class CredentialStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"


class AuditLogType(str, Enum):
    ROLE_CHANGE = "role_change"
    USER_CREATED = "user_created"
    USER_DELETED = "user_deleted"
    VERIFIER_ASSIGNED = "verifier_assigned"
    VERIFIER_REMOVED = "verifier_removed"
    CREDENTIALS_UPDATED = "credentials_updated"
    BACKUP_CREATED = "backup_created"
    DATA_RESTORED = "data_restored"


class User(BaseModel):
    id: str
    email: str
    name: str = ""
    role: UserRole = UserRole.INDIVIDUAL
    wallet_address: str | None = None
    is_verified: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def identity(self) -> str:
        """Ledger-facing identity: wallet address when known, else email."""
        return self.wallet_address or self.email


class VerifierCredential(BaseModel):
    status: CredentialStatus = CredentialStatus.PENDING
    certification_id: str = ""
    issuing_authority: str = ""
    valid_until: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CredentialInput(BaseModel):
    certification_id: str | None = None
    issuing_authority: str | None = None
    valid_until: datetime | None = None


class CredentialValidation(BaseModel):
    valid: bool
    reason: str | None = None


class AuditLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: AuditLogType
    actor_id: str
    actor_email: str
    target_user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    prev_hash: str | None = None
    entry_hash: str | None = None


class AuditLogFilters(BaseModel):
    type: AuditLogType | None = None
    actor_id: str | None = None
    target_user_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None


class VerificationResult(BaseModel):
    valid: bool
    entries_checked: int
    first_error: str | None = None


class UserSummary(BaseModel):
    user: User
    status: str
    verifier_credentials: VerifierCredential | None = None


class SystemStats(BaseModel):
    total_users: int
    role_counts: dict[str, int]
    active_verifiers: int
    total_audit_logs: int
    credentials_managed: int


class Backup(BaseModel):
    """Full snapshot; each collection is an ordered list of [key, value] pairs."""

    version: str
    timestamp: datetime
    users: list[tuple[str, dict[str, Any]]] = Field(default_factory=list)
    audit_logs: list[tuple[str, dict[str, Any]]] = Field(default_factory=list)
    verifier_credentials: list[tuple[str, dict[str, Any]]] = Field(default_factory=list)
    documents: list[tuple[str, dict[str, Any]]] = Field(default_factory=list)


class RestoreOptions(BaseModel):
    restore_users: bool = True
    restore_audit_logs: bool = True
    restore_credentials: bool = True
    restore_documents: bool = True
