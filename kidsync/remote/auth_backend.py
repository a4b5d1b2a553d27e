"""Identity provider client.

The session manager depends only on the narrow :class:`AuthBackend`
contract. :class:`GoTrueAuthBackend` implements it against a
GoTrue-compatible REST API (``/auth/v1/...``), the way hosted
backend-as-a-service products expose email/password auth.

The backend keeps its own copy of the last good session in a key/value
file. That copy is the second step of session restoration when the
app's own credential pair is missing or stale.

All failures raise AuthError with a reason:
- invalid_credentials: wrong email/password or expired refresh token
- network: timeout or connection failure
- rejected: any other refusal by the backend
"""

import json
import logging
import time
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from kidsync.errors import AuthError
from kidsync.local.keyvalue import KeyValueStore

logger = logging.getLogger("kidsync.auth")

SESSION_CACHE_KEY = "session"


class AuthSession(BaseModel):
    """An authenticated session as issued by the identity provider."""

    user_id: str
    email: str = ""
    access_token: str
    refresh_token: str = ""
    expires_at: int = 0

    @property
    def is_expired(self) -> bool:
        """Expired once current time >= expires_at (0 means unknown).

        >>> AuthSession(user_id="u", access_token="t", expires_at=0).is_expired
        False
        >>> AuthSession(user_id="u", access_token="t", expires_at=1).is_expired
        True
        """
        return bool(self.expires_at) and int(time.time()) >= self.expires_at


class AuthBackend(Protocol):
    async def sign_in(self, email: str, password: str) -> AuthSession: ...

    async def sign_out(self, access_token: str) -> None: ...

    async def restore_session(self, access_token: str, refresh_token: str) -> AuthSession: ...

    async def cached_session(self) -> Optional[AuthSession]: ...

    async def sign_up(self, email: str, password: str) -> AuthSession: ...

    async def update_password(self, access_token: str, new_password: str) -> None: ...

    async def delete_account(self, session: AuthSession) -> None: ...


def _session_from_payload(data: dict, fallback_refresh: str = "") -> AuthSession:
    """Build an AuthSession from a token-grant response.

    >>> s = _session_from_payload({"access_token": "a", "refresh_token": "r",
    ...     "expires_in": 60, "user": {"id": "u1", "email": "a@b.com"}})
    >>> s.user_id, s.email, s.refresh_token
    ('u1', 'a@b.com', 'r')
    """
    user = data.get("user") or {}
    if not data.get("access_token") or not user.get("id"):
        raise AuthError("Auth response did not include a session", reason=AuthError.REJECTED)
    expires_at = data.get("expires_at")
    if not expires_at and data.get("expires_in"):
        expires_at = int(time.time()) + int(data["expires_in"])
    return AuthSession(
        user_id=str(user["id"]),
        email=user.get("email") or "",
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or fallback_refresh,
        expires_at=int(expires_at or 0),
    )


def _json_body(resp: httpx.Response) -> dict:
    """Decode a success response, rejecting anything that is not a JSON object."""
    try:
        data = resp.json()
    except ValueError as e:
        raise AuthError(
            f"Auth server sent an unreadable response (HTTP {resp.status_code})",
            reason=AuthError.REJECTED,
        ) from e
    if not isinstance(data, dict):
        raise AuthError("Auth server sent an unexpected response", reason=AuthError.REJECTED)
    return data


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        for key in ("error_description", "msg", "message", "error"):
            if data.get(key):
                return str(data[key])
    return f"HTTP {resp.status_code}"


class GoTrueAuthBackend:
    """httpx client for a GoTrue-compatible auth server."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        cache: KeyValueStore,
        service_key: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._service_key = service_key
        self._cache = cache
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _headers(self, bearer: Optional[str] = None) -> dict:
        headers = {"apikey": self._api_key, "Content-Type": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        bearer: Optional[str] = None,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self._headers(bearer),
                    json=json_body,
                    params=params,
                )
        except httpx.TimeoutException as e:
            raise AuthError(f"Auth server timed out on {path}", reason=AuthError.NETWORK) from e
        except httpx.HTTPError as e:
            raise AuthError(f"Auth server unreachable: {e}", reason=AuthError.NETWORK) from e

    def _remember(self, session: AuthSession) -> AuthSession:
        try:
            self._cache.set(SESSION_CACHE_KEY, session.model_dump_json())
        except OSError as e:
            logger.warning(f"Could not cache auth session: {e}")
        return session

    def _forget(self) -> None:
        try:
            self._cache.delete(SESSION_CACHE_KEY)
        except OSError as e:
            logger.warning(f"Could not clear cached auth session: {e}")

    async def _token_grant(self, grant_type: str, body: dict, fallback_refresh: str = "") -> AuthSession:
        resp = await self._request(
            "POST", "/auth/v1/token", params={"grant_type": grant_type}, json_body=body
        )
        if resp.status_code == 200:
            return self._remember(_session_from_payload(_json_body(resp), fallback_refresh))
        if resp.status_code in (400, 401):
            raise AuthError(_error_message(resp), reason=AuthError.INVALID_CREDENTIALS)
        raise AuthError(_error_message(resp), reason=AuthError.REJECTED)

    # ------------------------------------------------------------------
    # AuthBackend
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> AuthSession:
        session = await self._token_grant("password", {"email": email, "password": password})
        logger.info(f"Signed in {session.email or session.user_id}")
        return session

    async def sign_out(self, access_token: str) -> None:
        """Invalidate the session server-side. The local cache is always cleared."""
        self._forget()
        resp = await self._request("POST", "/auth/v1/logout", bearer=access_token)
        if resp.status_code not in (200, 204, 401):
            raise AuthError(_error_message(resp), reason=AuthError.REJECTED)

    async def restore_session(self, access_token: str, refresh_token: str) -> AuthSession:
        """Validate a stored pair, refreshing it when the access token is stale."""
        if not access_token and not refresh_token:
            raise AuthError("No stored credentials", reason=AuthError.INVALID_CREDENTIALS)

        if access_token:
            resp = await self._request("GET", "/auth/v1/user", bearer=access_token)
            if resp.status_code == 200:
                user = _json_body(resp)
                if not user.get("id"):
                    raise AuthError("Auth server returned no user id", reason=AuthError.REJECTED)
                return self._remember(
                    AuthSession(
                        user_id=str(user["id"]),
                        email=user.get("email") or "",
                        access_token=access_token,
                        refresh_token=refresh_token,
                    )
                )
            if resp.status_code not in (401, 403):
                raise AuthError(_error_message(resp), reason=AuthError.REJECTED)

        if not refresh_token:
            raise AuthError("Access token expired", reason=AuthError.INVALID_CREDENTIALS)
        return await self._token_grant(
            "refresh_token", {"refresh_token": refresh_token}, fallback_refresh=refresh_token
        )

    async def cached_session(self) -> Optional[AuthSession]:
        """The backend's own last session, refreshed if it has expired."""
        raw = self._cache.get(SESSION_CACHE_KEY)
        if not raw:
            return None
        try:
            session = AuthSession.model_validate(json.loads(raw))
        except ValueError:
            logger.warning("Discarding unreadable cached auth session")
            self._forget()
            return None
        if session.is_expired:
            if not session.refresh_token:
                return None
            return await self._token_grant(
                "refresh_token",
                {"refresh_token": session.refresh_token},
                fallback_refresh=session.refresh_token,
            )
        return session

    async def sign_up(self, email: str, password: str) -> AuthSession:
        resp = await self._request(
            "POST", "/auth/v1/signup", json_body={"email": email, "password": password}
        )
        if resp.status_code not in (200, 201):
            raise AuthError(_error_message(resp), reason=AuthError.REJECTED)
        data = _json_body(resp)
        if not data.get("access_token"):
            # Server requires email confirmation before issuing a session
            raise AuthError(
                "Account created; confirm the email address before signing in",
                reason=AuthError.REJECTED,
            )
        return self._remember(_session_from_payload(data))

    async def update_password(self, access_token: str, new_password: str) -> None:
        resp = await self._request(
            "PUT", "/auth/v1/user", bearer=access_token, json_body={"password": new_password}
        )
        if resp.status_code == 401:
            raise AuthError("Session expired", reason=AuthError.INVALID_CREDENTIALS)
        if resp.status_code != 200:
            raise AuthError(_error_message(resp), reason=AuthError.REJECTED)

    async def delete_account(self, session: AuthSession) -> None:
        """Remove the user at the provider.

        Deleting users needs the service key. Without one the session is
        only signed out, and the orphaned provider account is logged.
        """
        if not self._service_key:
            logger.warning(
                f"No service key configured; signing out {session.user_id} "
                f"instead of deleting the provider account"
            )
            await self.sign_out(session.access_token)
            return

        resp = await self._request(
            "DELETE", f"/auth/v1/admin/users/{session.user_id}", bearer=self._service_key
        )
        if resp.status_code not in (200, 204):
            raise AuthError(_error_message(resp), reason=AuthError.REJECTED)
        self._forget()
        logger.info(f"Deleted provider account {session.user_id}")
