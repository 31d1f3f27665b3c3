"""Tests for permission-gated admin operations and backup/restore."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from cblock.admin.audit_log import AuditLog
from cblock.admin.models import (
    AuditLogFilters,
    AuditLogType,
    CredentialInput,
    CredentialStatus,
    RestoreOptions,
    User,
    VerifierCredential,
)
from cblock.admin.permissions import AdminPermission, has_admin_permission
from cblock.admin.service import AdminAuditService
from cblock.admin.users import UserDirectory
from cblock.documents.models import Document, DocumentMetadata, UserRole
from cblock.documents.store import RecordStore
from cblock.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from cblock.storage.backend import (
    AUDIT_LOGS_KEY,
    CREDENTIALS_KEY,
    DOCUMENTS_KEY,
    USERS_KEY,
    MemoryBackend,
)


def build_admin(backend: MemoryBackend) -> AdminAuditService:
    return AdminAuditService(RecordStore(backend), UserDirectory(backend), AuditLog(backend))


@pytest.fixture
def service(backend: MemoryBackend) -> AdminAuditService:
    return build_admin(backend)


@pytest.fixture
def admin(service: AdminAuditService) -> User:
    return service.users.add(email="admin@example.com", name="Admin", role=UserRole.ADMIN)


@pytest.fixture
def alice(service: AdminAuditService) -> User:
    return service.users.add(email="alice@example.com", name="Alice")


def credential_input(valid_until: datetime | None = None) -> CredentialInput:
    return CredentialInput(
        certification_id="CERT-001",
        issuing_authority="Verra",
        valid_until=valid_until or datetime.now(UTC) + timedelta(days=365),
    )


def test_permission_gate():
    admin = User(id="a", email="a@example.com", role=UserRole.ADMIN)
    verifier = User(id="v", email="v@example.com", role=UserRole.VERIFIER)
    assert has_admin_permission(admin, AdminPermission.BACKUP_RESTORE_DATA)
    assert has_admin_permission(admin, "view_audit_logs")
    assert not has_admin_permission(admin, "launch_rockets")
    assert not has_admin_permission(verifier, AdminPermission.MANAGE_USERS)
    assert not has_admin_permission(None, AdminPermission.MANAGE_USERS)


def test_non_admin_is_refused_without_side_effects(service: AdminAuditService, alice: User):
    with pytest.raises(PermissionDeniedError) as exc:
        service.list_users(alice)
    assert exc.value.reason == "Insufficient permissions to view users"

    with pytest.raises(PermissionDeniedError):
        service.change_user_role(alice, alice.id, UserRole.ADMIN)
    assert service.users.get(alice.id).role == UserRole.INDIVIDUAL
    assert len(service.audit_log) == 0


def test_promote_to_verifier(service: AdminAuditService, admin: User, alice: User):
    updated = service.change_user_role(admin, alice.id, "verifier", "Completed certification")
    assert updated.role == UserRole.VERIFIER
    assert service.store.get_credential(alice.id).status == CredentialStatus.PENDING
    assert service.user_status(updated) == "pending_credentials"

    entries = service.audit_log.entries()
    assert [e.type for e in entries] == [
        AuditLogType.ROLE_CHANGE,
        AuditLogType.VERIFIER_ASSIGNED,
    ]
    assert entries[0].details == {
        "target_user_email": "alice@example.com",
        "old_role": "individual",
        "new_role": "verifier",
        "reason": "Completed certification",
    }
    assert entries[0].target_user_id == alice.id
    assert entries[0].actor_id == admin.id


def test_demote_verifier_removes_credentials(
    service: AdminAuditService, admin: User, alice: User
):
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    service.change_user_role(admin, alice.id, UserRole.BUSINESS, "Left the programme")
    assert service.store.get_credential(alice.id) is None
    assert service.audit_log.entries()[-1].type == AuditLogType.VERIFIER_REMOVED


def test_cannot_change_own_role(service: AdminAuditService, admin: User):
    with pytest.raises(PermissionDeniedError) as exc:
        service.change_user_role(admin, admin.id, UserRole.INDIVIDUAL)
    assert exc.value.reason == "Cannot change your own role"
    assert len(service.audit_log) == 0


def test_change_role_errors(service: AdminAuditService, admin: User, alice: User):
    with pytest.raises(ValidationError) as exc:
        service.change_user_role(admin, alice.id, "wizard")
    assert exc.value.reason == "Invalid role: wizard"

    with pytest.raises(NotFoundError) as exc:
        service.change_user_role(admin, "user_nobody", UserRole.VERIFIER)
    assert exc.value.reason == "User not found"


def test_assign_credentials(service: AdminAuditService, admin: User, alice: User):
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    pending = service.store.get_credential(alice.id)

    cred = service.assign_verifier_credentials(admin, alice.id, credential_input())
    assert cred.status == CredentialStatus.ACTIVE
    assert cred.created_at == pending.created_at
    assert service.validate_verifier_credentials(alice.id).valid is True
    assert service.user_status(service.users.get(alice.id)) == "active"
    assert service.audit_log.entries()[-1].type == AuditLogType.CREDENTIALS_UPDATED
    assert service.get_verifier_credentials(admin, alice.id).certification_id == "CERT-001"


def test_credentials_must_expire_in_future(service: AdminAuditService, admin: User, alice: User):
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    before = len(service.audit_log)
    yesterday = datetime.now(UTC) - timedelta(days=1)
    with pytest.raises(ValidationError) as exc:
        service.assign_verifier_credentials(admin, alice.id, credential_input(yesterday))
    assert exc.value.reason == "Valid until date must be in the future"
    assert service.store.get_credential(alice.id).status == CredentialStatus.PENDING
    assert len(service.audit_log) == before


def test_naive_expiry_dates_are_utc(service: AdminAuditService, admin: User, alice: User):
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    naive = datetime.now() + timedelta(days=30)
    cred = service.assign_verifier_credentials(admin, alice.id, credential_input(naive))
    assert cred.valid_until.tzinfo is not None


def test_credential_field_checks(service: AdminAuditService, admin: User, alice: User):
    with pytest.raises(ValidationError) as exc:
        service.assign_verifier_credentials(
            admin, alice.id, CredentialInput(certification_id="CERT-001")
        )
    assert exc.value.reason == "All credential fields are required"

    with pytest.raises(ConflictError) as exc:
        service.assign_verifier_credentials(admin, alice.id, credential_input())
    assert exc.value.reason == "User must be a verifier to assign credentials"


def test_validate_credentials(service: AdminAuditService, alice: User):
    assert service.validate_verifier_credentials(alice.id).reason == "No credentials found"

    service.store.put_credential(alice.id, VerifierCredential())
    assert service.validate_verifier_credentials(alice.id).reason == "Credentials not active"

    service.store.put_credential(
        alice.id,
        VerifierCredential(
            status=CredentialStatus.ACTIVE,
            certification_id="CERT-001",
            issuing_authority="Verra",
            valid_until=datetime.now(UTC) - timedelta(seconds=1),
        ),
    )
    result = service.validate_verifier_credentials(alice.id)
    assert (result.valid, result.reason) == (False, "Credentials expired")


def test_remove_credentials(service: AdminAuditService, admin: User, alice: User):
    with pytest.raises(NotFoundError) as exc:
        service.remove_verifier_credentials(admin, alice.id)
    assert exc.value.reason == "No credentials found for this user"

    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    service.remove_verifier_credentials(admin, alice.id, "Audit finding")
    assert service.store.get_credential(alice.id) is None
    last = service.audit_log.entries()[-1]
    assert last.type == AuditLogType.VERIFIER_REMOVED
    assert last.details["reason"] == "Audit finding"
    assert last.details["removed_credentials"]["status"] == "pending"


def test_create_and_delete_users(service: AdminAuditService, admin: User):
    with pytest.raises(ValidationError) as exc:
        service.create_user(admin, email="not-an-email")
    assert exc.value.reason == "A valid email is required"

    bob = service.create_user(admin, email="bob@example.com", name="Bob", role="verifier")
    assert service.store.get_credential(bob.id).status == CredentialStatus.PENDING
    with pytest.raises(ConflictError):
        service.create_user(admin, email="BOB@example.com")

    with pytest.raises(PermissionDeniedError) as exc:
        service.delete_user(admin, admin.id)
    assert exc.value.reason == "Cannot delete your own account"

    service.delete_user(admin, bob.id, "Duplicate account")
    assert service.users.get(bob.id) is None
    assert service.store.get_credential(bob.id) is None
    assert [e.type for e in service.audit_log.entries()] == [
        AuditLogType.USER_CREATED,
        AuditLogType.USER_DELETED,
    ]


def test_list_users_with_status(service: AdminAuditService, admin: User, alice: User):
    service.users.add(email="new@example.com", is_verified=False)
    summaries = {s.user.email: s for s in service.list_users(admin)}
    assert summaries["admin@example.com"].status == "active"
    assert summaries["new@example.com"].status == "unverified"
    assert summaries["alice@example.com"].verifier_credentials is None


def test_audit_logs_newest_first_and_filtered(
    service: AdminAuditService, admin: User, alice: User
):
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    service.assign_verifier_credentials(admin, alice.id, credential_input())

    entries = service.get_audit_logs(admin)
    assert [e.type for e in entries] == [
        AuditLogType.CREDENTIALS_UPDATED,
        AuditLogType.VERIFIER_ASSIGNED,
        AuditLogType.ROLE_CHANGE,
    ]
    only_roles = service.get_audit_logs(admin, AuditLogFilters(type=AuditLogType.ROLE_CHANGE))
    assert [e.type for e in only_roles] == [AuditLogType.ROLE_CHANGE]
    future = service.get_audit_logs(
        admin, AuditLogFilters(start=datetime.now(UTC) + timedelta(hours=1))
    )
    assert future == []
    by_target = service.get_audit_logs(admin, AuditLogFilters(target_user_id="user_nobody"))
    assert by_target == []

    with pytest.raises(PermissionDeniedError):
        service.get_audit_logs(alice)


def test_system_stats(service: AdminAuditService, admin: User, alice: User):
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    service.assign_verifier_credentials(admin, alice.id, credential_input())
    service.create_user(admin, email="v2@example.com", role=UserRole.VERIFIER)

    stats = service.get_system_stats(admin)
    assert stats.total_users == 3
    assert stats.role_counts == {"admin": 1, "verifier": 2}
    assert stats.active_verifiers == 1
    assert stats.credentials_managed == 2
    assert stats.total_audit_logs == len(service.audit_log)


# ---------------------------------------------------------------------------
# Backup and restore
# ---------------------------------------------------------------------------


def seed(service: AdminAuditService, admin: User, alice: User) -> None:
    service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    service.assign_verifier_credentials(admin, alice.id, credential_input())
    service.store.upsert(
        Document(
            id="1",
            content_id="QmAAA",
            uploader="0x" + "a" * 40,
            metadata=DocumentMetadata(project_name="Mangrove restoration"),
        )
    )


def test_backup_restore_round_trip(service: AdminAuditService, admin: User, alice: User):
    seed(service, admin, alice)
    backup = service.create_backup(admin)
    assert backup.version == "1.0"
    assert service.audit_log.entries()[-1].type == AuditLogType.BACKUP_CREATED

    # Restore into a fresh system through the JSON form the CLI writes.
    fresh = build_admin(MemoryBackend())
    operator = fresh.users.add(email="ops@example.com", role=UserRole.ADMIN)
    fresh.restore_from_backup(operator, json.loads(backup.model_dump_json()))

    assert [u.email for u in fresh.users.list_all()] == ["admin@example.com", "alice@example.com"]
    assert fresh.store.get("1").metadata.project_name == "Mangrove restoration"
    assert fresh.store.get_credential(alice.id).status == CredentialStatus.ACTIVE

    entries = fresh.audit_log.entries()
    assert len(entries) == len(backup.audit_logs) + 1
    assert entries[-1].type == AuditLogType.DATA_RESTORED
    assert entries[-1].actor_email == "ops@example.com"
    assert fresh.audit_log.verify().valid is True


def test_restore_selected_namespaces(service: AdminAuditService, admin: User, alice: User):
    seed(service, admin, alice)
    backup = service.create_backup(admin)

    fresh = build_admin(MemoryBackend())
    operator = fresh.users.add(email="ops@example.com", role=UserRole.ADMIN)
    fresh.restore_from_backup(
        operator, backup, RestoreOptions(restore_users=False, restore_audit_logs=False)
    )
    assert [u.email for u in fresh.users.list_all()] == ["ops@example.com"]
    assert len(fresh.store) == 1
    assert [e.type for e in fresh.audit_log.entries()] == [AuditLogType.DATA_RESTORED]


def test_restore_rejects_bad_payloads(service: AdminAuditService, admin: User, alice: User):
    seed(service, admin, alice)
    data = json.loads(service.create_backup(admin).model_dump_json())
    before = len(service.audit_log)

    with pytest.raises(ValidationError) as exc:
        service.restore_from_backup(admin, {**data, "version": "2.0"})
    assert exc.value.reason == "Unsupported backup version: 2.0"

    with pytest.raises(ValidationError) as exc:
        service.restore_from_backup(admin, {k: v for k, v in data.items() if k != "version"})
    assert exc.value.reason == "Invalid backup data"

    broken = {**data, "documents": [["1", {"id": "1"}]]}
    with pytest.raises(ValidationError) as exc:
        service.restore_from_backup(admin, broken)
    assert exc.value.reason.startswith("Invalid backup data")

    assert len(service.audit_log) == before
    assert len(service.store) == 1


def test_restore_requires_permission(service: AdminAuditService, admin: User, alice: User):
    backup = service.create_backup(admin)
    with pytest.raises(PermissionDeniedError) as exc:
        service.restore_from_backup(alice, backup)
    assert exc.value.reason == "Insufficient permissions to restore data"
    with pytest.raises(PermissionDeniedError):
        service.create_backup(alice)


class KeyFailingBackend(MemoryBackend):
    """Memory backend that refuses writes to the keys in ``failing``."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: set[str] = set()

    def set(self, key: str, value: str) -> None:
        if key in self.failing:
            raise StorageError(f"Failed to write {key}: disk full")
        super().set(key, value)


def test_user_directory_failed_writes_are_not_applied():
    backend = KeyFailingBackend()
    users = UserDirectory(backend)
    alice = users.add(email="alice@example.com")

    backend.failing.add(USERS_KEY)
    with pytest.raises(StorageError):
        users.add(email="bob@example.com")
    with pytest.raises(StorageError):
        users.remove(alice.id)
    with pytest.raises(StorageError):
        users.update(alice.id, role=UserRole.ADMIN)
    with pytest.raises(StorageError):
        users.replace([])
    assert [u.email for u in users.list_all()] == ["alice@example.com"]
    assert users.get(alice.id).role == UserRole.INDIVIDUAL


def test_role_change_rolled_back_when_audit_write_fails():
    backend = KeyFailingBackend()
    service = build_admin(backend)
    admin = service.users.add(email="admin@example.com", role=UserRole.ADMIN)
    alice = service.users.add(email="alice@example.com")

    backend.failing.add(AUDIT_LOGS_KEY)
    with pytest.raises(StorageError):
        service.change_user_role(admin, alice.id, UserRole.VERIFIER)

    assert service.users.get(alice.id).role == UserRole.INDIVIDUAL
    assert service.store.get_credential(alice.id) is None
    assert len(service.audit_log) == 0

    reloaded = UserDirectory(backend)
    reloaded.load()
    assert reloaded.get(alice.id).role == UserRole.INDIVIDUAL


def test_role_change_rolled_back_when_credential_write_fails():
    backend = KeyFailingBackend()
    service = build_admin(backend)
    admin = service.users.add(email="admin@example.com", role=UserRole.ADMIN)
    alice = service.users.add(email="alice@example.com")

    backend.failing.add(CREDENTIALS_KEY)
    with pytest.raises(StorageError):
        service.change_user_role(admin, alice.id, UserRole.VERIFIER)
    assert service.users.get(alice.id).role == UserRole.INDIVIDUAL
    assert len(service.audit_log) == 0


def test_partial_restore_is_rolled_back():
    source_backend = MemoryBackend()
    source = build_admin(source_backend)
    source_admin = source.users.add(email="admin@example.com", role=UserRole.ADMIN)
    source_alice = source.users.add(email="alice@example.com")
    seed(source, source_admin, source_alice)
    backup = source.create_backup(source_admin)

    backend = KeyFailingBackend()
    target = build_admin(backend)
    operator = target.users.add(email="ops@example.com", role=UserRole.ADMIN)
    users_before = target.users.export()
    audit_before = target.audit_log.export()

    backend.failing.add(DOCUMENTS_KEY)
    with pytest.raises(StorageError):
        target.restore_from_backup(operator, backup)

    assert target.users.export() == users_before
    assert target.audit_log.export() == audit_before
    assert target.store.list_credentials() == {}
    assert len(target.store) == 0
