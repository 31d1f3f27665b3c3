"""Admin permission gate."""

from enum import Enum

from cblock.admin.models import User
from cblock.documents.models import UserRole
from cblock.errors import PermissionDeniedError


class AdminPermission(str, Enum):
    MANAGE_USERS = "manage_users"
    CHANGE_USER_ROLES = "change_user_roles"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_VERIFIER_CREDENTIALS = "manage_verifier_credentials"
    BACKUP_RESTORE_DATA = "backup_restore_data"


ADMIN_PERMISSIONS = frozenset(AdminPermission)


def has_admin_permission(actor: User | None, permission: AdminPermission | str) -> bool:
    if actor is None or actor.role != UserRole.ADMIN:
        return False
    return permission in {p.value for p in ADMIN_PERMISSIONS}


def require_permission(actor: User | None, permission: AdminPermission, action: str) -> None:
    """Raise PermissionDeniedError("Insufficient permissions to <action>") unless allowed."""
    if not has_admin_permission(actor, permission):
        raise PermissionDeniedError(f"Insufficient permissions to {action}")
