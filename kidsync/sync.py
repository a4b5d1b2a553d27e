"""Sync orchestrator: mirrors the local store to the remote document store.

Local writes publish change events; this module turns them into "push
the full snapshot for identity X" jobs on a bounded asyncio queue served
by one background worker. The foreground never waits on the network.

Rules:
- Connectivity is probed once at startup (bounded timeout) and cached.
- Nothing syncs while offline or for the DefaultAccount; those are
  silent no-ops.
- Pushes are last-write-wins upserts of the whole snapshot, so reordered
  or dropped pushes self-correct on the next one.
- Failures are logged as SyncError and never retried internally; the
  next mutation (or next app start) tries again.

Remote layout, keyed by identity id:
- ``users``: identity, configuration, parental control, profiles and
  timestamps (``createdAt`` is kept from the first push).
- ``statistics``: level aggregates and attempts for the identity and its
  profiles.
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Optional

from kidsync.errors import StorageError, SyncError
from kidsync.identity import IdentityChange, Subject, is_default_identity
from kidsync.local.database import LocalStore
from kidsync.remote.documents import (
    STATISTICS_COLLECTION,
    USERS_COLLECTION,
    RemoteDocumentStore,
)

logger = logging.getLogger(__name__)

JOB_PUSH = "push"
JOB_RESTORE = "restore"

# Local column -> remote document field
CONFIGURATION_FIELDS = {
    "color_intensity": "colors",
    "auto_narrator": "autoNarrator",
    "sound_enabled": "sound",
    "general_volume": "generalSound",
    "music_volume": "musicSound",
    "effects_volume": "effectsSound",
    "narrator_volume": "narratorSound",
    "vibration_enabled": "vibration",
}

PARENTAL_FIELDS = {
    "activated": "activated",
    "pin_hash": "pin",
    "lock_sound": "soundConf",
    "lock_accessibility": "accessibilityConf",
    "lock_statistics": "statisticsConf",
    "lock_about": "aboutConf",
    "lock_profile": "profileConf",
}


def to_remote(values: dict, mapping: dict) -> dict:
    """Rename local columns to remote field names.

    >>> to_remote({"color_intensity": 4, "user_modified": True}, CONFIGURATION_FIELDS)
    {'colors': 4}
    """
    return {remote: values[local] for local, remote in mapping.items() if local in values}


def from_remote(doc: dict, mapping: dict) -> dict:
    """Inverse of :func:`to_remote`; missing fields are skipped.

    >>> from_remote({"colors": 2, "extra": 1}, CONFIGURATION_FIELDS)
    {'color_intensity': 2}
    """
    doc = doc or {}
    return {local: doc[remote] for local, remote in mapping.items() if remote in doc}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncOrchestrator:
    """Background mirror of local changes to the remote store."""

    def __init__(
        self,
        store: LocalStore,
        remote: Optional[RemoteDocumentStore] = None,
        *,
        probe_timeout: float = 3.0,
        restore_timeout: float = 10.0,
        queue_size: int = 64,
    ):
        self.store = store
        self.remote = remote
        self.probe_timeout = probe_timeout
        self.restore_timeout = restore_timeout
        self.online = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._pending: set[tuple[str, str]] = set()
        self._deleted: set[str] = set()
        self._worker: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def probe(self) -> bool:
        """Round-trip to the remote store once; the result is cached."""
        if self.remote is None:
            self.online = False
            return False
        try:
            self.online = bool(
                await asyncio.wait_for(self.remote.ping(), timeout=self.probe_timeout)
            )
        except asyncio.TimeoutError:
            logger.info(f"Connectivity probe timed out after {self.probe_timeout}s")
            self.online = False
        except SyncError as e:
            logger.info(f"Connectivity probe failed: {e}")
            self.online = False
        logger.info(f"Remote sync {'enabled' if self.online else 'disabled (offline)'}")
        return self.online

    def should_sync(self, identity_id: str) -> bool:
        return self.online and self.remote is not None and not is_default_identity(identity_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, job: str, identity_id: str) -> bool:
        """Queue a job without waiting. Returns False when nothing was queued."""
        if not self.should_sync(identity_id):
            logger.debug(f"Sync {job} for {identity_id} skipped (offline or default account)")
            return False
        key = (job, identity_id)
        if key in self._pending:
            return True
        try:
            self._queue.put_nowait(key)
        except asyncio.QueueFull:
            logger.warning(f"Sync queue full, dropping {job} for {identity_id}")
            return False
        self._pending.add(key)
        return True

    def on_local_change(self, kind: str, subject: Subject) -> None:
        """Local store listener: any committed change pushes the owner's snapshot."""
        self.schedule(JOB_PUSH, subject.identity_id)

    def on_configuration_changed(self, subject: Subject) -> bool:
        return self.schedule(JOB_PUSH, subject.identity_id)

    def on_parental_control_changed(self, subject: Subject) -> bool:
        return self.schedule(JOB_PUSH, subject.identity_id)

    def on_level_completed(self, subject: Subject) -> bool:
        return self.schedule(JOB_PUSH, subject.identity_id)

    def on_identity_changed(self, change: IdentityChange) -> None:
        identity = change.current
        if identity.is_default or change.reason in ("logout", "delete"):
            return
        self._deleted.discard(identity.id)
        if change.first_on_device:
            self.schedule(JOB_RESTORE, identity.id)
        else:
            # Refreshes lastLogin and catches up anything missed while offline
            self.schedule(JOB_PUSH, identity.id)

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run_worker())

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def drain(self) -> None:
        """Wait until every queued job has been attempted. Requires a running worker."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    async def _run_worker(self) -> None:
        while True:
            job, identity_id = await self._queue.get()
            # Later mutations must be able to queue another push while this runs
            self._pending.discard((job, identity_id))
            try:
                await self._execute(job, identity_id)
            except (SyncError, StorageError) as e:
                logger.warning(f"Sync {job} for {identity_id} failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected sync error ({job} for {identity_id}): {e}")
            finally:
                self._queue.task_done()

    async def _execute(self, job: str, identity_id: str) -> None:
        if identity_id in self._deleted:
            logger.debug(f"Skipping {job} for deleted account {identity_id}")
            return
        if job == JOB_PUSH:
            await self.push_snapshot(identity_id)
        elif job == JOB_RESTORE:
            await self.restore_from_remote(identity_id)
        else:
            raise SyncError(f"Unknown sync job {job!r}")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def build_snapshot(self, identity_id: str) -> dict:
        """Denormalized ``users`` document for an identity, from local data."""
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise SyncError(f"Identity {identity_id} is not in the local store")

        account = Subject(identity_id=identity_id)
        configuration = self.store.get_or_create_configuration(account)
        parental = self.store.get_or_create_parental_control(account)

        profiles = []
        for profile in self.store.list_profiles(identity_id):
            profile_config = self.store.get_or_create_configuration(profile.subject)
            profile_parental = self.store.get_or_create_parental_control(profile.subject)
            profiles.append(
                {
                    "profileId": profile.id,
                    "name": profile.name,
                    "gender": profile.gender,
                    "createdAt": profile.created_at,
                    "configuration": to_remote(profile_config.model_dump(), CONFIGURATION_FIELDS),
                    "parentalControl": to_remote(profile_parental.model_dump(), PARENTAL_FIELDS),
                }
            )

        timestamps = self.store.get_identity_timestamps(identity_id)
        return {
            "email": identity.email,
            "isGuardian": identity.is_guardian,
            "configuration": to_remote(configuration.model_dump(), CONFIGURATION_FIELDS),
            "parentalControl": to_remote(parental.model_dump(), PARENTAL_FIELDS),
            "profiles": profiles,
            "createdAt": timestamps.get("created_at"),
            "lastLogin": timestamps.get("last_login"),
            "loginCount": self.store.count_logins(identity_id),
        }

    def build_statistics(self, identity_id: str) -> dict:
        levels = []
        for stats in self.store.list_statistics(identity_id):
            levels.append(
                {
                    "profileId": stats.profile_id,
                    "level": stats.level,
                    "completed": stats.completed,
                    "failCount": stats.fail_count,
                    "attempts": [
                        {
                            "completed": a.completed,
                            "helpUsed": a.help_used,
                            "timeSpent": a.time_spent_seconds,
                            "moves": a.moves,
                            "timestamp": a.timestamp,
                        }
                        for a in stats.attempts
                    ],
                }
            )
        return {"levels": levels, "lastUpdate": _now()}

    async def push_snapshot(self, identity_id: str) -> bool:
        """Upsert the identity's full snapshot. Returns False when sync is off."""
        if not self.should_sync(identity_id):
            return False
        document = self.build_snapshot(identity_id)
        statistics = self.build_statistics(identity_id)

        existing = await self.remote.find(USERS_COLLECTION, identity_id)
        if existing and existing.get("createdAt"):
            document["createdAt"] = existing["createdAt"]
        document["lastUpdate"] = _now()

        await self.remote.upsert(USERS_COLLECTION, identity_id, document)
        await self.remote.upsert(STATISTICS_COLLECTION, identity_id, statistics)
        logger.info(f"Pushed snapshot for {identity_id}")
        return True

    async def restore_from_remote(self, identity_id: str) -> bool:
        """Pull the remote snapshot into unmodified local rows.

        Returns True when remote data was found. Without a remote snapshot
        the local defaults are pushed instead (first-device bootstrap).
        """
        if not self.should_sync(identity_id):
            return False
        try:
            doc = await asyncio.wait_for(
                self.remote.find(USERS_COLLECTION, identity_id), timeout=self.restore_timeout
            )
        except asyncio.TimeoutError as e:
            raise SyncError(f"Restore for {identity_id} timed out") from e

        if doc is None:
            logger.info(f"No remote snapshot for {identity_id}; bootstrapping from local")
            await self.push_snapshot(identity_id)
            return False

        account = Subject(identity_id=identity_id)
        self.store.apply_remote_configuration(
            account, from_remote(doc.get("configuration"), CONFIGURATION_FIELDS)
        )
        self.store.apply_remote_parental_control(
            account, from_remote(doc.get("parentalControl"), PARENTAL_FIELDS)
        )
        if doc.get("isGuardian"):
            self.store.set_guardian(identity_id, True)

        restored = self.store.import_profiles(
            identity_id,
            [
                {
                    "name": p.get("name"),
                    "gender": p.get("gender"),
                    "configuration": from_remote(p.get("configuration"), CONFIGURATION_FIELDS),
                    "parental_control": from_remote(p.get("parentalControl"), PARENTAL_FIELDS),
                }
                for p in doc.get("profiles") or []
            ],
        )
        logger.info(f"Restored {identity_id} from remote ({len(restored)} profile(s))")
        return True

    async def delete_remote(self, identity_id: str) -> None:
        """Remove every remote document for an identity.

        Raises SyncError when offline or when the remote store fails.
        """
        if is_default_identity(identity_id) or self.remote is None:
            return
        self._deleted.add(identity_id)
        if not self.online:
            raise SyncError("Remote store offline; cloud data left in place")
        await self.remote.delete(USERS_COLLECTION, identity_id)
        await self.remote.delete(STATISTICS_COLLECTION, identity_id)
        logger.info(f"Deleted remote data for {identity_id}")
