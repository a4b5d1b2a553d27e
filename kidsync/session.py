"""Identity & session management.

Owns the single active Identity for the process lifetime:
- Restore at startup: stored credential pair -> backend's cached session
  -> DefaultAccount. Never fails; every problem degrades a step.
- Login / sign-up: persist the credential pair, upsert the identity
  locally, then switch. A failed login leaves the active identity alone.
- Logout: remote sign-out is best-effort, the local reset always happens.
- Delete account: provider deletion must succeed before anything local
  is touched; cloud cleanup is best-effort.

Listeners receive an :class:`IdentityChange` after every switch.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from kidsync.errors import AuthError, StorageError, SyncError, ValidationError
from kidsync.identity import Identity, IdentityChange
from kidsync.local.database import LocalStore
from kidsync.local.keyvalue import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, KeyValueStore
from kidsync.remote.auth_backend import AuthBackend, AuthSession
from kidsync.validation import validate_email, validate_password

logger = logging.getLogger(__name__)

IdentityListener = Callable[[IdentityChange], None]
CloudCleanup = Callable[[str], Awaitable[None]]


class SessionManager:
    """Resolves and publishes the active identity."""

    def __init__(
        self,
        store: LocalStore,
        credentials: KeyValueStore,
        backend: Optional[AuthBackend] = None,
        *,
        restore_timeout: float = 10.0,
        cloud_cleanup: Optional[CloudCleanup] = None,
    ):
        self.store = store
        self.credentials = credentials
        self.backend = backend
        self.restore_timeout = restore_timeout
        self.cloud_cleanup = cloud_cleanup
        self._current = Identity.default()
        self._listeners: list[IdentityListener] = []

    @property
    def current(self) -> Identity:
        return self._current

    def subscribe(self, listener: IdentityListener) -> None:
        self._listeners.append(listener)

    def _switch(self, identity: Identity, reason: str, first_on_device: bool = False) -> None:
        change = IdentityChange(
            previous=self._current,
            current=identity,
            reason=reason,
            first_on_device=first_on_device,
        )
        self._current = identity
        logger.info(f"Active identity {change.previous.id} -> {identity.id} ({reason})")
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(f"Identity listener failed on {reason}")

    # ------------------------------------------------------------------
    # Credential pair
    # ------------------------------------------------------------------

    def _save_credentials(self, session: AuthSession) -> None:
        try:
            self.credentials.set(ACCESS_TOKEN_KEY, session.access_token)
            self.credentials.set(REFRESH_TOKEN_KEY, session.refresh_token)
        except OSError as e:
            raise StorageError(f"Could not persist credentials: {e}") from e

    def _clear_credentials(self) -> None:
        try:
            self.credentials.delete(ACCESS_TOKEN_KEY)
            self.credentials.delete(REFRESH_TOKEN_KEY)
        except OSError as e:
            logger.warning(f"Could not clear stored credentials: {e}")

    def _adopt(
        self,
        session: AuthSession,
        reason: str,
        fallback_email: str = "",
        is_guardian: bool = False,
    ) -> Identity:
        """Write the session's identity through to local storage and switch to it.

        ``is_guardian`` only ever raises the stored flag, never clears it.
        """
        existing = self.store.get_identity(session.user_id)
        identity = Identity(
            id=session.user_id,
            email=session.email or fallback_email,
            is_guardian=is_guardian or (existing.is_guardian if existing else False),
        )
        first_on_device = self.store.upsert_identity(identity)
        if is_guardian:
            self.store.set_guardian(identity.id, True)
        self._save_credentials(session)
        if reason == "login":
            self.store.record_login(identity.id)
        self._switch(identity, reason, first_on_device=first_on_device)
        return identity

    def _become_default(self, reason: str) -> Identity:
        self._clear_credentials()
        default = self.store.ensure_default_identity()
        if self._current.id != default.id or reason != "restore":
            self._switch(default, reason)
        return default

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_session(self) -> Identity:
        """Resolve the startup identity. Never raises."""
        if self.backend is not None:
            try:
                session = await asyncio.wait_for(
                    self._restore_from_backend(), timeout=self.restore_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Session restore timed out after {self.restore_timeout}s; using default account"
                )
                session = None
            if session is not None:
                try:
                    return self._adopt(session, "restore")
                except StorageError as e:
                    logger.error(f"Restored session could not be stored locally: {e}")

        try:
            return self._become_default("restore")
        except StorageError as e:
            # Still usable for this run with in-memory defaults
            logger.error(f"Default account unavailable in local store: {e}")
            self._current = Identity.default()
            return self._current

    async def _restore_from_backend(self) -> Optional[AuthSession]:
        access = self.credentials.get(ACCESS_TOKEN_KEY) or ""
        refresh = self.credentials.get(REFRESH_TOKEN_KEY) or ""
        if access or refresh:
            try:
                return await self.backend.restore_session(access, refresh)
            except Exception as e:
                logger.info(f"Stored credentials rejected, trying cached session: {e}")

        try:
            session = await self.backend.cached_session()
        except Exception as e:
            logger.info(f"No usable cached session: {e}")
            return None
        return session

    # ------------------------------------------------------------------
    # Login / sign-up
    # ------------------------------------------------------------------

    def _require_backend(self) -> AuthBackend:
        if self.backend is None:
            raise AuthError("No identity provider configured", reason=AuthError.NETWORK)
        return self.backend

    async def login(self, email: str, secret: str) -> Identity:
        """Sign in with email and password.

        Raises ValidationError for empty input and AuthError when the
        provider refuses. The active identity is unchanged on failure.
        """
        email = (email or "").strip()
        if not email:
            raise ValidationError("Email is required", field="email")
        if not secret:
            raise ValidationError("Password is required", field="password")

        backend = self._require_backend()
        try:
            session = await backend.sign_in(email, secret)
        except AuthError as e:
            logger.warning(f"Login failed for {email}: {e} ({e.reason})")
            raise
        return self._adopt(session, "login", fallback_email=email)

    async def sign_up(
        self, email: str, password: str, confirm: str, is_guardian: bool = True
    ) -> Identity:
        """Register a new account and sign into it."""
        email = validate_email(email)
        validate_password(password, confirm)
        backend = self._require_backend()

        session = await backend.sign_up(email, password)
        identity = self._adopt(session, "login", fallback_email=email, is_guardian=is_guardian)
        logger.info(f"Registered {email} (guardian={is_guardian})")
        return identity

    async def change_password(self, new_password: str, confirm: str) -> None:
        validate_password(new_password, confirm)
        if self._current.is_default:
            raise AuthError("Sign in to change the password", reason=AuthError.NOT_LOGGED_IN)
        access = self.credentials.get(ACCESS_TOKEN_KEY)
        if not access:
            raise AuthError("Session has no access token", reason=AuthError.NOT_LOGGED_IN)
        await self._require_backend().update_password(access, new_password)
        logger.info(f"Password changed for {self._current.id}")

    # ------------------------------------------------------------------
    # Logout / delete
    # ------------------------------------------------------------------

    async def logout(self) -> None:
        """Return to the DefaultAccount. Remote sign-out failure is only logged."""
        access = self.credentials.get(ACCESS_TOKEN_KEY)
        if self.backend is not None and access:
            try:
                await self.backend.sign_out(access)
            except AuthError as e:
                logger.warning(f"Remote sign-out failed, continuing local logout: {e}")
        self._become_default("logout")

    async def delete_account(self) -> None:
        """Delete the active account everywhere and return to the DefaultAccount."""
        identity = self._current
        if identity.is_default:
            raise AuthError("The default account cannot be deleted", reason=AuthError.NOT_LOGGED_IN)

        session = AuthSession(
            user_id=identity.id,
            email=identity.email,
            access_token=self.credentials.get(ACCESS_TOKEN_KEY) or "",
            refresh_token=self.credentials.get(REFRESH_TOKEN_KEY) or "",
        )
        await self._require_backend().delete_account(session)

        if self.cloud_cleanup is not None:
            try:
                await self.cloud_cleanup(identity.id)
            except SyncError as e:
                logger.warning(f"Cloud data for {identity.id} not deleted: {e}")

        self.store.reset_identity(identity.id)
        self._become_default("delete")
        logger.info(f"Account {identity.id} deleted")
