"""Profile resolution: which child profile, if any, is acting right now.

Two states: NO_PROFILE and PROFILE_ACTIVE(profile_id). The selection
remembers the identity that made it and is re-validated on every read,
so a stale or foreign selection silently falls back to the identity
itself (and is cleared) instead of leaking another account's data.

The selection is kept in the device preferences store so it survives
restarts; it is validated again on the first read after startup.
"""

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from kidsync.errors import StorageError, ValidationError
from kidsync.identity import IdentityChange, Subject
from kidsync.local.database import LocalStore, Profile
from kidsync.local.keyvalue import KeyValueStore, MemoryKeyValueStore
from kidsync.session import SessionManager

logger = logging.getLogger(__name__)

PREF_PROFILE_ID = "selected_profile_id"
PREF_PROFILE_NAME = "selected_profile_name"
PREF_PROFILE_OWNER = "selected_profile_owner"

DEFAULT_MAX_PROFILES = 4


class ProfileState(str, Enum):
    NO_PROFILE = "no_profile"
    PROFILE_ACTIVE = "profile_active"


class ProfileSelection(BaseModel):
    profile_id: int
    name: str = ""
    owner_id: str


class ProfileResolver:
    """Tracks the selected profile and resolves the effective subject."""

    def __init__(
        self,
        store: LocalStore,
        session: SessionManager,
        preferences: Optional[KeyValueStore] = None,
        *,
        max_profiles: int = DEFAULT_MAX_PROFILES,
    ):
        self.store = store
        self.session = session
        self.preferences = preferences if preferences is not None else MemoryKeyValueStore()
        self.max_profiles = max_profiles
        self._selection = self._load_selection()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_selection(self) -> Optional[ProfileSelection]:
        raw_id = self.preferences.get(PREF_PROFILE_ID)
        owner = self.preferences.get(PREF_PROFILE_OWNER)
        if not raw_id or not owner:
            return None
        try:
            profile_id = int(raw_id)
        except ValueError:
            logger.warning(f"Ignoring malformed stored profile id {raw_id!r}")
            return None
        if profile_id <= 0:
            return None
        return ProfileSelection(
            profile_id=profile_id,
            name=self.preferences.get(PREF_PROFILE_NAME) or "",
            owner_id=owner,
        )

    def _persist(self) -> None:
        try:
            if self._selection is None:
                for key in (PREF_PROFILE_ID, PREF_PROFILE_NAME, PREF_PROFILE_OWNER):
                    self.preferences.delete(key)
            else:
                self.preferences.set(PREF_PROFILE_ID, str(self._selection.profile_id))
                self.preferences.set(PREF_PROFILE_NAME, self._selection.name)
                self.preferences.set(PREF_PROFILE_OWNER, self._selection.owner_id)
        except OSError as e:
            # The in-memory selection stays authoritative for this run
            logger.warning(f"Could not persist profile selection: {e}")

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProfileState:
        return ProfileState.PROFILE_ACTIVE if self._selection else ProfileState.NO_PROFILE

    @property
    def selection(self) -> Optional[ProfileSelection]:
        """The raw, unvalidated selection."""
        return self._selection

    def select_profile(self, profile_id: int, name: str = "") -> None:
        if profile_id <= 0:
            raise ValidationError(f"Profile id must be positive, got {profile_id}", field="profile_id")
        self._selection = ProfileSelection(
            profile_id=profile_id, name=name, owner_id=self.session.current.id
        )
        self._persist()
        logger.info(f"Profile {profile_id} ({name}) selected by {self.session.current.id}")

    def clear(self, reason: str = "") -> None:
        if self._selection is None:
            return
        if reason:
            logger.info(f"Clearing profile {self._selection.profile_id}: {reason}")
        self._selection = None
        self._persist()

    def active_profile(self) -> Optional[Profile]:
        """The selected profile if it is still valid for the current identity."""
        selection = self._selection
        if selection is None:
            return None

        current_id = self.session.current.id
        if selection.owner_id != current_id:
            self.clear(f"selected by {selection.owner_id}, active identity is {current_id}")
            return None

        try:
            profile = self.store.get_profile(selection.profile_id)
        except StorageError as e:
            logger.error(f"Profile lookup failed, using identity for now: {e}")
            return None

        if profile is None:
            self.clear("profile no longer exists")
            return None
        if profile.owner_id != current_id:
            self.clear(f"profile belongs to {profile.owner_id}")
            return None
        return profile

    def effective_subject(self) -> Subject:
        """Profile subject when a valid profile is active, else the identity's."""
        profile = self.active_profile()
        if profile is not None:
            return profile.subject
        return Subject(identity_id=self.session.current.id)

    def on_identity_changed(self, change: IdentityChange) -> None:
        if change.reason in ("logout", "delete"):
            self.clear(f"identity {change.reason}")
        elif self._selection and self._selection.owner_id != change.current.id:
            self.clear(f"identity changed to {change.current.id}")

    # ------------------------------------------------------------------
    # Guardian operations
    # ------------------------------------------------------------------

    def list_profiles(self) -> list[Profile]:
        identity = self.session.current
        if identity.is_default:
            return []
        return self.store.list_profiles(identity.id)

    def create_profile(self, name: str, gender: str = "") -> Optional[Profile]:
        """Create a child profile under the signed-in guardian.

        Returns None (no-op) for the DefaultAccount.
        """
        identity = self.session.current
        if identity.is_default:
            logger.info("Profile creation ignored: no signed-in guardian")
            return None

        name = (name or "").strip()
        if not name:
            raise ValidationError("Profile name is required", field="name")
        if len(self.store.list_profiles(identity.id)) >= self.max_profiles:
            raise ValidationError(
                f"A guardian can have at most {self.max_profiles} profiles", field="name"
            )

        profile = self.store.create_profile(identity.id, name, (gender or "").strip())
        logger.info(f"Created profile {profile.id} ({profile.name}) for {identity.id}")
        return profile

    def delete_last_profile(self) -> Optional[Profile]:
        """Delete the most recently created profile of the current identity."""
        profiles = self.list_profiles()
        if not profiles:
            return None
        last = profiles[-1]
        self.store.delete_profile(last.id)
        if self._selection and self._selection.profile_id == last.id:
            self.clear("active profile deleted")
        logger.info(f"Deleted profile {last.id} ({last.name})")
        return last
