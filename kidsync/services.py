"""Composition root.

Builds every kidsync service exactly once and wires their listeners:

    LocalStore change events  -> SyncOrchestrator.on_local_change
    SessionManager changes    -> ProfileResolver.on_identity_changed
                              -> SyncOrchestrator.on_identity_changed

The application shell owns the returned :class:`KidSyncServices` and
passes it (or individual services) to the UI and gameplay layers.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from kidsync.config import KidSyncConfig
from kidsync.identity import Identity, Subject
from kidsync.local.database import LocalStore
from kidsync.local.keyvalue import FileKeyValueStore, KeyValueStore
from kidsync.parental import ParentalGate, PinHasher
from kidsync.profiles import ProfileResolver
from kidsync.remote.auth_backend import AuthBackend, GoTrueAuthBackend
from kidsync.remote.documents import HttpDocumentStore, RemoteDocumentStore
from kidsync.session import SessionManager
from kidsync.statistics import LevelTracker
from kidsync.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class KidSyncServices:
    config: KidSyncConfig
    store: LocalStore
    session: SessionManager
    profiles: ProfileResolver
    parental: ParentalGate
    sync: SyncOrchestrator
    levels: LevelTracker

    @classmethod
    def create(
        cls,
        config: KidSyncConfig,
        *,
        auth_backend: Optional[AuthBackend] = None,
        remote: Optional[RemoteDocumentStore] = None,
        credentials: Optional[KeyValueStore] = None,
        preferences: Optional[KeyValueStore] = None,
        db_path: Optional[str] = None,
    ) -> "KidSyncServices":
        """Build the service graph.

        Clients not passed in are built from ``config`` when it has the
        matching endpoint; otherwise that capability is simply absent.
        """
        store = LocalStore(db_path or str(config.db_path))

        if auth_backend is None and config.auth_enabled:
            auth_backend = GoTrueAuthBackend(
                config.auth_url,
                config.auth_key,
                cache=FileKeyValueStore(config.auth_cache_path),
                service_key=config.auth_service_key,
                timeout=config.request_timeout,
            )
        if remote is None and config.remote_enabled:
            remote = HttpDocumentStore(
                config.remote_url,
                config.remote_key,
                data_source=config.remote_data_source,
                database=config.remote_database,
                timeout=config.request_timeout,
            )

        sync = SyncOrchestrator(
            store,
            remote,
            probe_timeout=config.probe_timeout,
            restore_timeout=config.restore_timeout,
            queue_size=config.sync_queue_size,
        )
        session = SessionManager(
            store,
            credentials or FileKeyValueStore(config.credentials_path),
            auth_backend,
            restore_timeout=config.restore_timeout,
            cloud_cleanup=sync.delete_remote,
        )
        profiles = ProfileResolver(
            store,
            session,
            preferences or FileKeyValueStore(config.preferences_path),
            max_profiles=config.max_profiles,
        )
        parental = ParentalGate(store, PinHasher(rounds=config.pin_rounds))
        levels = LevelTracker(store, profiles)

        store.subscribe(sync.on_local_change)
        session.subscribe(profiles.on_identity_changed)
        session.subscribe(sync.on_identity_changed)

        return cls(
            config=config,
            store=store,
            session=session,
            profiles=profiles,
            parental=parental,
            sync=sync,
            levels=levels,
        )

    async def start(self) -> Identity:
        """Self-heal the store, probe connectivity, restore the session.

        The probe runs first so the identity switch published by the
        restore already knows whether sync is possible. Both steps are
        bounded by their configured timeouts.
        """
        self.store.ensure_default_identity()
        await self.sync.probe()
        identity = await self.session.restore_session()
        self.sync.start()
        return identity

    async def close(self) -> None:
        if self.sync.running:
            await self.sync.drain()
        await self.sync.stop()
        self.store.close()

    def effective_subject(self) -> Subject:
        return self.profiles.effective_subject()
