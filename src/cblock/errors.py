"""Error kinds raised by the document engine and admin services.

Every error carries a human-readable ``reason``. Only
:class:`TransientInfraError` is ever retried; everything else fails fast at
the boundary of the operation that detected it.
"""

from enum import Enum


class ErrorClass(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    CONGESTION = "congestion"
    STORE_UNAVAILABLE = "store_unavailable"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"


class CBlockError(Exception):
    """Base class for all domain errors."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(CBlockError):
    """Bad input shape or bounds."""

    def __init__(self, reason: str, field: str | None = None) -> None:
        super().__init__(reason)
        self.field = field


class PermissionDeniedError(CBlockError):
    """Actor lacks the required role or permission."""


class NotFoundError(CBlockError):
    """Document, user or credential is absent."""


class ConflictError(CBlockError):
    """Illegal state transition or duplicate operation."""


class TransientInfraError(CBlockError):
    """Network, timeout or congestion failure against a remote collaborator."""

    def __init__(self, reason: str, error_class: ErrorClass = ErrorClass.NETWORK) -> None:
        super().__init__(reason)
        self.error_class = error_class


class StorageError(CBlockError):
    """Local persistence failure."""


class LoadError(StorageError):
    """Persisted data could not be read back."""
