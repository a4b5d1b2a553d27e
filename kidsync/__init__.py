"""
kidsync - Local-first profiles, parental controls and cloud sync for a kids' puzzle game.

The on-device SQLite store is always authoritative. A remote document
store is used only as a best-effort mirror for backup and restore.

Wire everything up through :class:`kidsync.services.KidSyncServices`.
"""

__version__ = "0.1.0"

from kidsync.errors import (
    AuthError,
    KidSyncError,
    StorageError,
    SyncError,
    ValidationError,
)
from kidsync.identity import DEFAULT_IDENTITY_ID, Identity, Subject, is_default_identity

__all__ = [
    "AuthError",
    "DEFAULT_IDENTITY_ID",
    "Identity",
    "KidSyncError",
    "StorageError",
    "Subject",
    "SyncError",
    "ValidationError",
    "is_default_identity",
]
