"""Shared fixtures and in-memory fakes for kidsync tests."""

import asyncio
import uuid
from typing import Optional

import pytest

from kidsync.errors import AuthError, SyncError
from kidsync.local.database import LocalStore
from kidsync.local.keyvalue import MemoryKeyValueStore
from kidsync.parental import ParentalGate, PinHasher
from kidsync.profiles import ProfileResolver
from kidsync.remote.auth_backend import AuthSession
from kidsync.session import SessionManager


class FakeAuthBackend:
    """AuthBackend double with a tiny account table.

    >>> backend = FakeAuthBackend({"a@b.com": "secret"})
    >>> backend.user_id_for("a@b.com").startswith("user-")
    True
    """

    def __init__(self, accounts: Optional[dict] = None):
        self.accounts = {}
        for email, password in (accounts or {}).items():
            self.add_account(email, password)
        self.valid_tokens: dict[str, AuthSession] = {}
        self.cached: Optional[AuthSession] = None
        self.offline = False
        self.sign_out_fails = False
        self.delete_fails = False
        self.deleted: list[str] = []
        self.signed_out: list[str] = []
        self.calls: list[str] = []

    def add_account(self, email: str, password: str) -> str:
        user_id = f"user-{uuid.uuid4().hex[:8]}"
        self.accounts[email] = {"password": password, "id": user_id}
        return user_id

    def user_id_for(self, email: str) -> str:
        return self.accounts[email]["id"]

    def _check_online(self):
        if self.offline:
            raise AuthError("unreachable", reason=AuthError.NETWORK)

    def _issue(self, email: str) -> AuthSession:
        session = AuthSession(
            user_id=self.accounts[email]["id"],
            email=email,
            access_token=f"at-{uuid.uuid4().hex}",
            refresh_token=f"rt-{uuid.uuid4().hex}",
        )
        self.valid_tokens[session.access_token] = session
        self.cached = session
        return session

    async def sign_in(self, email, password):
        self.calls.append("sign_in")
        self._check_online()
        account = self.accounts.get(email)
        if account is None or account["password"] != password:
            raise AuthError("Invalid login credentials", reason=AuthError.INVALID_CREDENTIALS)
        return self._issue(email)

    async def sign_out(self, access_token):
        self.calls.append("sign_out")
        self.cached = None
        if self.sign_out_fails:
            raise AuthError("logout rejected", reason=AuthError.REJECTED)
        self.valid_tokens.pop(access_token, None)
        self.signed_out.append(access_token)

    async def restore_session(self, access_token, refresh_token):
        self.calls.append("restore_session")
        self._check_online()
        session = self.valid_tokens.get(access_token)
        if session is None:
            raise AuthError("expired", reason=AuthError.INVALID_CREDENTIALS)
        return session

    async def cached_session(self):
        self.calls.append("cached_session")
        return self.cached

    async def sign_up(self, email, password):
        self.calls.append("sign_up")
        self._check_online()
        if email in self.accounts:
            raise AuthError("User already registered", reason=AuthError.REJECTED)
        self.add_account(email, password)
        return self._issue(email)

    async def update_password(self, access_token, new_password):
        self.calls.append("update_password")
        session = self.valid_tokens.get(access_token)
        if session is None:
            raise AuthError("expired", reason=AuthError.INVALID_CREDENTIALS)
        self.accounts[session.email]["password"] = new_password

    async def delete_account(self, session):
        self.calls.append("delete_account")
        if self.delete_fails:
            raise AuthError("delete rejected", reason=AuthError.REJECTED)
        self.deleted.append(session.user_id)
        self.accounts = {e: a for e, a in self.accounts.items() if a["id"] != session.user_id}


class InMemoryDocumentStore:
    """RemoteDocumentStore double keeping documents in nested dicts."""

    def __init__(self, reachable: bool = True, ping_delay: float = 0.0):
        self.collections: dict[str, dict[str, dict]] = {}
        self.reachable = reachable
        self.ping_delay = ping_delay
        self.fail_writes = False
        self.upserts: list[tuple[str, str]] = []

    async def ping(self):
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if not self.reachable:
            raise SyncError("unreachable")
        return True

    async def upsert(self, collection, key, document):
        if self.fail_writes:
            raise SyncError("write rejected")
        self.collections.setdefault(collection, {})[key] = {**document, "_id": key}
        self.upserts.append((collection, key))

    async def find(self, collection, key):
        doc = self.collections.get(collection, {}).get(key)
        return dict(doc) if doc else None

    async def delete(self, collection, key):
        return self.collections.get(collection, {}).pop(key, None) is not None


@pytest.fixture
def store():
    """Fresh in-memory LocalStore."""
    db = LocalStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def credentials():
    return MemoryKeyValueStore()


@pytest.fixture
def backend():
    return FakeAuthBackend({"a@b.com": "secret", "guardian@example.com": "Guard1an"})


@pytest.fixture
def remote():
    return InMemoryDocumentStore()


@pytest.fixture
def session(store, credentials, backend):
    return SessionManager(store, credentials, backend)


@pytest.fixture
def profiles(store, session):
    resolver = ProfileResolver(store, session, MemoryKeyValueStore())
    session.subscribe(resolver.on_identity_changed)
    return resolver


@pytest.fixture
def gate(store):
    return ParentalGate(store, PinHasher(rounds=4))
