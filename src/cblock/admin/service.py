"""Permission-gated user, role and verifier-credential management with an audit trail.

Every method takes the acting user explicitly. The permission check runs
first; a refused call mutates nothing and logs nothing.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from cblock.admin.audit_log import AuditLog, parse_audit_pairs
from cblock.admin.models import (
    BACKUP_VERSION,
    AuditLogEntry,
    AuditLogFilters,
    AuditLogType,
    Backup,
    CredentialInput,
    CredentialStatus,
    CredentialValidation,
    RestoreOptions,
    SystemStats,
    User,
    UserSummary,
    VerifierCredential,
)
from cblock.admin.permissions import AdminPermission, require_permission
from cblock.admin.users import UserDirectory, parse_user_pairs
from cblock.documents.models import UserRole, utcnow
from cblock.documents.store import RecordStore
from cblock.errors import (
    ConflictError,
    LoadError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)

log = structlog.get_logger()


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _parse_role(role: UserRole | str) -> UserRole:
    try:
        return UserRole(role)
    except ValueError:
        raise ValidationError(f"Invalid role: {role}", field="role") from None


class AdminAuditService:
    def __init__(self, store: RecordStore, users: UserDirectory, audit_log: AuditLog) -> None:
        self.store = store
        self.users = users
        self.audit_log = audit_log
        self._lock = threading.RLock()

    def user_status(self, user: User) -> str:
        if not user.is_verified:
            return "unverified"
        if user.role == UserRole.VERIFIER:
            cred = self.store.get_credential(user.id)
            if cred is None or cred.status != CredentialStatus.ACTIVE:
                return "pending_credentials"
        return "active"

    @contextmanager
    def _rollback_on_storage_error(self) -> Iterator[None]:
        """Put back every namespace a failed multi-step write already changed.

        Each namespace write is atomic on its own; this covers the steps of
        one admin operation together (user, credential, audit entries).
        """
        snapshot = {
            "users": (self.users.export, self.users.replace),
            "audit_logs": (self.audit_log.export, self.audit_log.replace),
            "credentials": (self.store.export_credentials, self.store.replace_credentials),
            "documents": (self.store.export_documents, self.store.replace_documents),
        }
        before = {name: export() for name, (export, _) in snapshot.items()}
        try:
            yield
        except StorageError:
            for name, (export, replace) in snapshot.items():
                if export() == before[name]:
                    continue
                try:
                    replace(before[name])
                except StorageError as e:
                    log.error("admin_rollback_failed", namespace=name, reason=e.reason)
                else:
                    log.warning("admin_write_rolled_back", namespace=name)
            raise

    # ------------------------------------------------------------------
    # Users and roles
    # ------------------------------------------------------------------

    def list_users(self, actor: User) -> list[UserSummary]:
        require_permission(actor, AdminPermission.MANAGE_USERS, "view users")
        return [
            UserSummary(
                user=user,
                status=self.user_status(user),
                verifier_credentials=self.store.get_credential(user.id),
            )
            for user in self.users.list_all()
        ]

    def create_user(
        self,
        actor: User,
        email: str,
        name: str = "",
        role: UserRole | str = UserRole.INDIVIDUAL,
        wallet_address: str | None = None,
        is_verified: bool = True,
    ) -> User:
        require_permission(actor, AdminPermission.MANAGE_USERS, "create users")
        parsed = _parse_role(role)
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", field="email")

        with self._lock, self._rollback_on_storage_error():
            user = self.users.add(
                email=email,
                name=name,
                role=parsed,
                wallet_address=wallet_address,
                is_verified=is_verified,
            )
            if parsed == UserRole.VERIFIER:
                self.store.put_credential(user.id, VerifierCredential())
            self.audit_log.append(
                AuditLogType.USER_CREATED,
                actor,
                {"target_user_email": user.email, "role": parsed.value},
                target_user_id=user.id,
            )
        log.info("user_created", user_id=user.id, role=parsed.value, actor_id=actor.id)
        return user

    def delete_user(self, actor: User, target_id: str, reason: str = "") -> User:
        require_permission(actor, AdminPermission.MANAGE_USERS, "delete users")
        with self._lock, self._rollback_on_storage_error():
            user = self.users.require(target_id)
            if actor.id == target_id:
                raise PermissionDeniedError("Cannot delete your own account")
            self.users.remove(target_id)
            removed = self.store.delete_credential(target_id)
            self.audit_log.append(
                AuditLogType.USER_DELETED,
                actor,
                {
                    "target_user_email": user.email,
                    "role": user.role.value,
                    "reason": reason,
                    "removed_credentials": removed is not None,
                },
                target_user_id=target_id,
            )
        log.info("user_deleted", user_id=target_id, actor_id=actor.id)
        return user

    def change_user_role(
        self, actor: User, target_id: str, new_role: UserRole | str, reason: str = ""
    ) -> User:
        require_permission(actor, AdminPermission.CHANGE_USER_ROLES, "change user roles")
        role = _parse_role(new_role)

        with self._lock, self._rollback_on_storage_error():
            user = self.users.require(target_id)
            if actor.id == target_id:
                raise PermissionDeniedError("Cannot change your own role")

            old_role = user.role
            updated = self.users.update(target_id, role=role)
            promoted = role == UserRole.VERIFIER and old_role != UserRole.VERIFIER
            demoted = old_role == UserRole.VERIFIER and role != UserRole.VERIFIER
            removed = None
            if promoted:
                self.store.put_credential(target_id, VerifierCredential())
            elif demoted:
                removed = self.store.delete_credential(target_id)

            self.audit_log.append(
                AuditLogType.ROLE_CHANGE,
                actor,
                {
                    "target_user_email": user.email,
                    "old_role": old_role.value,
                    "new_role": role.value,
                    "reason": reason,
                },
                target_user_id=target_id,
            )
            if promoted:
                self.audit_log.append(
                    AuditLogType.VERIFIER_ASSIGNED,
                    actor,
                    {"target_user_email": user.email, "credential_status": "pending"},
                    target_user_id=target_id,
                )
            elif removed is not None:
                self.audit_log.append(
                    AuditLogType.VERIFIER_REMOVED,
                    actor,
                    {
                        "target_user_email": user.email,
                        "reason": reason,
                        "removed_credentials": removed.model_dump(mode="json"),
                    },
                    target_user_id=target_id,
                )

        log.info(
            "user_role_changed",
            user_id=target_id,
            old_role=old_role.value,
            new_role=role.value,
            actor_id=actor.id,
        )
        return updated

    # ------------------------------------------------------------------
    # Verifier credentials
    # ------------------------------------------------------------------

    def assign_verifier_credentials(
        self, actor: User, target_id: str, credentials: CredentialInput
    ) -> VerifierCredential:
        require_permission(
            actor, AdminPermission.MANAGE_VERIFIER_CREDENTIALS, "manage verifier credentials"
        )
        if not (
            credentials.certification_id
            and credentials.issuing_authority
            and credentials.valid_until
        ):
            raise ValidationError("All credential fields are required")
        valid_until = _as_utc(credentials.valid_until)
        if valid_until <= utcnow():
            raise ValidationError("Valid until date must be in the future", field="valid_until")

        with self._lock, self._rollback_on_storage_error():
            user = self.users.require(target_id)
            if user.role != UserRole.VERIFIER:
                raise ConflictError("User must be a verifier to assign credentials")

            existing = self.store.get_credential(target_id)
            now = utcnow()
            credential = VerifierCredential(
                status=CredentialStatus.ACTIVE,
                certification_id=credentials.certification_id,
                issuing_authority=credentials.issuing_authority,
                valid_until=valid_until,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.store.put_credential(target_id, credential)
            self.audit_log.append(
                AuditLogType.CREDENTIALS_UPDATED,
                actor,
                {
                    "target_user_email": user.email,
                    "certification_id": credential.certification_id,
                    "issuing_authority": credential.issuing_authority,
                    "valid_until": valid_until.isoformat(),
                },
                target_user_id=target_id,
            )
        log.info("verifier_credentials_assigned", user_id=target_id, actor_id=actor.id)
        return credential

    def remove_verifier_credentials(self, actor: User, target_id: str, reason: str = "") -> None:
        require_permission(
            actor, AdminPermission.MANAGE_VERIFIER_CREDENTIALS, "manage verifier credentials"
        )
        with self._lock, self._rollback_on_storage_error():
            user = self.users.require(target_id)
            credential = self.store.get_credential(target_id)
            if credential is None:
                raise NotFoundError("No credentials found for this user")
            self.store.delete_credential(target_id)
            self.audit_log.append(
                AuditLogType.VERIFIER_REMOVED,
                actor,
                {
                    "target_user_email": user.email,
                    "reason": reason,
                    "removed_credentials": credential.model_dump(mode="json"),
                },
                target_user_id=target_id,
            )
        log.info("verifier_credentials_removed", user_id=target_id, actor_id=actor.id)

    def get_verifier_credentials(self, actor: User, target_id: str) -> VerifierCredential | None:
        require_permission(
            actor, AdminPermission.MANAGE_VERIFIER_CREDENTIALS, "view verifier credentials"
        )
        return self.store.get_credential(target_id)

    def validate_verifier_credentials(self, user_id: str) -> CredentialValidation:
        credential = self.store.get_credential(user_id)
        if credential is None:
            return CredentialValidation(valid=False, reason="No credentials found")
        if credential.status != CredentialStatus.ACTIVE:
            return CredentialValidation(valid=False, reason="Credentials not active")
        if credential.valid_until is None or _as_utc(credential.valid_until) <= utcnow():
            return CredentialValidation(valid=False, reason="Credentials expired")
        return CredentialValidation(valid=True)

    # ------------------------------------------------------------------
    # Audit trail and stats
    # ------------------------------------------------------------------

    def get_audit_logs(
        self, actor: User, filters: AuditLogFilters | None = None
    ) -> list[AuditLogEntry]:
        """Matching entries, newest first."""
        require_permission(actor, AdminPermission.VIEW_AUDIT_LOGS, "view audit logs")
        filters = filters or AuditLogFilters()
        entries = self.audit_log.entries()
        if filters.type is not None:
            entries = [e for e in entries if e.type == filters.type]
        if filters.actor_id is not None:
            entries = [e for e in entries if e.actor_id == filters.actor_id]
        if filters.target_user_id is not None:
            entries = [e for e in entries if e.target_user_id == filters.target_user_id]
        if filters.start is not None:
            start = _as_utc(filters.start)
            entries = [e for e in entries if e.timestamp >= start]
        if filters.end is not None:
            end = _as_utc(filters.end)
            entries = [e for e in entries if e.timestamp <= end]
        # Appended in time order; reversing first keeps equal timestamps newest first.
        return sorted(reversed(entries), key=lambda e: e.timestamp, reverse=True)

    def get_system_stats(self, actor: User) -> SystemStats:
        require_permission(actor, AdminPermission.MANAGE_USERS, "view system stats")
        users = self.users.list_all()
        role_counts: dict[str, int] = {}
        for user in users:
            role_counts[user.role.value] = role_counts.get(user.role.value, 0) + 1
        credentials = self.store.list_credentials()
        active_verifiers = sum(
            1
            for user in users
            if user.role == UserRole.VERIFIER
            and user.id in credentials
            and credentials[user.id].status == CredentialStatus.ACTIVE
        )
        return SystemStats(
            total_users=len(users),
            role_counts=role_counts,
            active_verifiers=active_verifiers,
            total_audit_logs=len(self.audit_log),
            credentials_managed=len(credentials),
        )

    # ------------------------------------------------------------------
    # Backup and restore
    # ------------------------------------------------------------------

    def create_backup(self, actor: User) -> Backup:
        require_permission(actor, AdminPermission.BACKUP_RESTORE_DATA, "create backup")
        with self._lock:
            backup = Backup(
                version=BACKUP_VERSION,
                timestamp=utcnow(),
                users=self.users.export(),
                audit_logs=self.audit_log.export(),
                verifier_credentials=self.store.export_credentials(),
                documents=self.store.export_documents(),
            )
            self.audit_log.append(
                AuditLogType.BACKUP_CREATED,
                actor,
                {
                    "user_count": len(backup.users),
                    "audit_log_count": len(backup.audit_logs),
                    "credential_count": len(backup.verifier_credentials),
                    "document_count": len(backup.documents),
                },
            )
        log.info("backup_created", actor_id=actor.id, documents=len(backup.documents))
        return backup

    def restore_from_backup(
        self,
        actor: User,
        data: Backup | dict[str, Any],
        options: RestoreOptions | None = None,
    ) -> None:
        """Replace the selected namespaces with the backup's contents.

        The whole payload is validated before any namespace is touched.
        """
        require_permission(actor, AdminPermission.BACKUP_RESTORE_DATA, "restore data")
        options = options or RestoreOptions()
        backup = self._parse_backup(data)

        with self._lock, self._rollback_on_storage_error():
            if options.restore_users:
                self.users.replace(backup.users)
            if options.restore_audit_logs:
                self.audit_log.replace(backup.audit_logs)
            if options.restore_credentials:
                self.store.replace_credentials(backup.verifier_credentials)
            if options.restore_documents:
                self.store.replace_documents(backup.documents)
            self.audit_log.append(
                AuditLogType.DATA_RESTORED,
                actor,
                {
                    "backup_timestamp": backup.timestamp.isoformat(),
                    "restored_users": options.restore_users,
                    "restored_audit_logs": options.restore_audit_logs,
                    "restored_credentials": options.restore_credentials,
                    "restored_documents": options.restore_documents,
                },
            )
        log.info("data_restored", actor_id=actor.id, backup_timestamp=backup.timestamp.isoformat())

    @staticmethod
    def _parse_backup(data: Backup | dict[str, Any]) -> Backup:
        if isinstance(data, dict):
            if not data.get("version"):
                raise ValidationError("Invalid backup data", field="version")
            try:
                backup = Backup.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid backup data: {e.errors()[0]['msg']}") from e
        else:
            backup = data
        if backup.version != BACKUP_VERSION:
            raise ValidationError(f"Unsupported backup version: {backup.version}", field="version")
        try:
            parse_user_pairs(backup.users)
            parse_audit_pairs(backup.audit_logs)
            RecordStore.parse_credential_pairs(backup.verifier_credentials)
            RecordStore.parse_document_pairs(backup.documents)
        except LoadError as e:
            raise ValidationError(f"Invalid backup data: {e.reason}") from e
        return backup
