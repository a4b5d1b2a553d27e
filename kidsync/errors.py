"""Error taxonomy shared by every kidsync service.

- AuthError: the identity provider refused or could not be reached.
- ValidationError: caller input rejected before anything is persisted.
- StorageError: the local SQLite store failed (disk full, corruption).
- SyncError: the remote mirror failed. Logged, never surfaced to players.
"""

from typing import Optional


class KidSyncError(Exception):
    """Base class for all kidsync errors."""


class AuthError(KidSyncError):
    """Authentication failure.

    >>> err = AuthError("bad password", reason=AuthError.INVALID_CREDENTIALS)
    >>> err.reason
    'invalid_credentials'
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    NETWORK = "network"
    REJECTED = "rejected"
    NOT_LOGGED_IN = "not_logged_in"

    def __init__(self, message: str, reason: str = REJECTED):
        super().__init__(message)
        self.reason = reason


class ValidationError(KidSyncError):
    """Input rejected at the point of entry.

    >>> str(ValidationError("PIN must be 4 digits", field="pin"))
    'PIN must be 4 digits'
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class StorageError(KidSyncError):
    """Local durable store failure."""


class SyncError(KidSyncError):
    """Remote store unreachable or write rejected."""
