"""Unit tests for SyncOrchestrator.

Each test runs inside a single event loop because the work queue binds
to the loop that first waits on it.
"""

import asyncio

import pytest

from kidsync.errors import SyncError
from kidsync.identity import Identity, IdentityChange, Subject
from kidsync.remote.documents import STATISTICS_COLLECTION, USERS_COLLECTION
from kidsync.sync import JOB_PUSH, JOB_RESTORE, SyncOrchestrator

ACCOUNT = Subject(identity_id="u1")


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


@pytest.fixture
def account(store):
    store.upsert_identity(Identity(id="u1", email="a@b.com"))
    return ACCOUNT


def _orchestrator(store, remote, **kwargs):
    sync = SyncOrchestrator(store, remote, **kwargs)
    store.subscribe(sync.on_local_change)
    return sync


# ------------------------------------------------------------------
# probe
# ------------------------------------------------------------------


def test_probe_online(store, remote):
    sync = _orchestrator(store, remote)
    assert _run(sync.probe()) is True
    assert sync.online is True


def test_probe_unreachable(store, remote):
    remote.reachable = False
    sync = _orchestrator(store, remote)
    assert _run(sync.probe()) is False


def test_probe_timeout_counts_as_offline(store, remote):
    remote.ping_delay = 1.0
    sync = _orchestrator(store, remote, probe_timeout=0.05)
    assert _run(sync.probe()) is False


def test_probe_without_remote(store):
    assert _run(_orchestrator(store, None).probe()) is False


# ------------------------------------------------------------------
# scheduling rules
# ------------------------------------------------------------------


def test_offline_changes_are_silent_noops(store, remote, account):
    sync = _orchestrator(store, remote)
    remote.reachable = False

    async def scenario():
        await sync.probe()
        sync.start()
        store.save_configuration(account, music_volume=10)
        assert sync.on_configuration_changed(account) is False
        await sync.drain()
        await sync.stop()

    _run(scenario())
    assert remote.upserts == []


def test_default_account_never_syncs(store, remote):
    sync = _orchestrator(store, remote)

    async def scenario():
        await sync.probe()
        sync.start()
        store.save_configuration(Subject.default(), color_intensity=1)
        assert sync.schedule(JOB_PUSH, "1") is False
        await sync.drain()
        await sync.stop()

    _run(scenario())
    assert remote.upserts == []


def test_pending_pushes_are_coalesced(store, remote, account):
    sync = _orchestrator(store, remote)

    async def scenario():
        await sync.probe()
        for volume in (10, 20, 30):
            store.save_configuration(account, music_volume=volume)
        assert sync._queue.qsize() == 1
        sync.start()
        await sync.drain()
        await sync.stop()

    _run(scenario())
    assert remote.upserts == [(USERS_COLLECTION, "u1"), (STATISTICS_COLLECTION, "u1")]
    assert remote.collections[USERS_COLLECTION]["u1"]["configuration"]["musicSound"] == 30


def test_full_queue_drops_job(store, remote, account):
    store.upsert_identity(Identity(id="u2"))
    sync = _orchestrator(store, remote, queue_size=1)

    async def scenario():
        await sync.probe()
        assert sync.schedule(JOB_PUSH, "u1") is True
        assert sync.schedule(JOB_PUSH, "u2") is False

    _run(scenario())


def test_push_failure_is_logged_and_next_mutation_retries(store, remote, account):
    sync = _orchestrator(store, remote)

    async def scenario():
        await sync.probe()
        sync.start()
        remote.fail_writes = True
        store.save_configuration(account, color_intensity=2)
        await sync.drain()
        assert USERS_COLLECTION not in remote.collections

        remote.fail_writes = False
        store.save_configuration(account, color_intensity=4)
        await sync.drain()
        await sync.stop()

    _run(scenario())
    assert remote.collections[USERS_COLLECTION]["u1"]["configuration"]["colors"] == 4


def test_parental_and_level_hooks_schedule_pushes(store, remote, account):
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        assert sync.on_parental_control_changed(account) is True
        assert sync.on_level_completed(Subject(identity_id="u1", profile_id=3)) is True
        assert sync._queue.qsize() == 1

    _run(scenario())


# ------------------------------------------------------------------
# snapshots
# ------------------------------------------------------------------


def test_snapshot_contents(store, remote, account):
    store.set_guardian("u1", True)
    store.record_login("u1")
    profile = store.create_profile("u1", "Lia", "f")
    store.save_configuration(profile.subject, color_intensity=5)
    store.save_parental_control(account, activated=True, pin_hash="hash")
    store.record_level_attempt(profile.subject, 4, completed=True, moves=9)

    sync = SyncOrchestrator(store, remote)
    snapshot = sync.build_snapshot("u1")
    stats = sync.build_statistics("u1")

    assert snapshot["email"] == "a@b.com"
    assert snapshot["isGuardian"] is True
    assert snapshot["loginCount"] == 1
    assert snapshot["lastLogin"]
    assert snapshot["parentalControl"]["pin"] == "hash"
    assert snapshot["parentalControl"]["activated"] is True
    assert snapshot["profiles"][0]["name"] == "Lia"
    assert snapshot["profiles"][0]["configuration"]["colors"] == 5
    assert stats["levels"][0]["profileId"] == profile.id
    assert stats["levels"][0]["attempts"][0]["moves"] == 9


def test_push_keeps_created_at(store, remote, account):
    remote.collections[USERS_COLLECTION] = {"u1": {"_id": "u1", "createdAt": "2020-01-01T00:00:00"}}
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        return await sync.push_snapshot("u1")

    assert _run(scenario()) is True
    doc = remote.collections[USERS_COLLECTION]["u1"]
    assert doc["createdAt"] == "2020-01-01T00:00:00"
    assert doc["lastUpdate"] > "2020"


def test_snapshot_unknown_identity(store, remote):
    with pytest.raises(SyncError):
        SyncOrchestrator(store, remote).build_snapshot("ghost")


# ------------------------------------------------------------------
# restore
# ------------------------------------------------------------------


def _remote_snapshot():
    return {
        "_id": "u1",
        "email": "a@b.com",
        "isGuardian": True,
        "configuration": {"colors": 5, "musicSound": 10, "vibration": True},
        "parentalControl": {"activated": True, "pin": "remote-hash", "statisticsConf": False},
        "profiles": [
            {"profileId": 41, "name": "Ana", "gender": "f", "configuration": {"colors": 1}},
            {"profileId": 42, "name": "Leo", "gender": "m"},
        ],
        "createdAt": "2021-05-05T00:00:00",
    }


def test_restore_copies_remote_into_defaults(store, remote, account):
    remote.collections[USERS_COLLECTION] = {"u1": _remote_snapshot()}
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        return await sync.restore_from_remote("u1")

    assert _run(scenario()) is True
    cfg = store.get_configuration(account)
    pc = store.get_parental_control(account)
    assert (cfg.color_intensity, cfg.music_volume, cfg.vibration_enabled) == (5, 10, True)
    assert cfg.user_modified is False
    assert pc.pin_hash == "remote-hash"
    assert pc.lock_statistics is False
    assert store.get_identity("u1").is_guardian is True

    restored = store.list_profiles("u1")
    assert [p.name for p in restored] == ["Ana", "Leo"]
    assert store.get_configuration(restored[0].subject).color_intensity == 1


def test_restore_never_clobbers_local_edits(store, remote, account):
    remote.collections[USERS_COLLECTION] = {"u1": _remote_snapshot()}
    store.save_configuration(account, color_intensity=2)
    store.create_profile("u1", "Local kid")
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        await sync.restore_from_remote("u1")

    _run(scenario())
    assert store.get_configuration(account).color_intensity == 2
    assert store.get_parental_control(account).pin_hash == "remote-hash"
    assert [p.name for p in store.list_profiles("u1")] == ["Local kid"]


def test_restore_without_snapshot_bootstraps(store, remote, account):
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        return await sync.restore_from_remote("u1")

    assert _run(scenario()) is False
    assert remote.collections[USERS_COLLECTION]["u1"]["configuration"]["colors"] == 3


def test_restore_offline_is_noop(store, remote, account):
    remote.collections[USERS_COLLECTION] = {"u1": _remote_snapshot()}
    sync = SyncOrchestrator(store, remote)
    assert _run(sync.restore_from_remote("u1")) is False
    assert store.get_configuration(account).color_intensity == 3


def test_restore_timeout_raises_sync_error(store, remote, account):
    sync = SyncOrchestrator(store, remote, restore_timeout=0.05)

    async def slow_find(collection, key):
        await asyncio.sleep(1)

    async def scenario():
        await sync.probe()
        remote.find = slow_find
        await sync.restore_from_remote("u1")

    with pytest.raises(SyncError, match="timed out"):
        _run(scenario())


# ------------------------------------------------------------------
# identity changes and deletion
# ------------------------------------------------------------------


def _change(reason, identity_id="u1", first=False):
    return IdentityChange(
        previous=Identity.default(),
        current=Identity(id=identity_id),
        reason=reason,
        first_on_device=first,
    )


def test_first_login_schedules_restore(store, remote, account):
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        sync.on_identity_changed(_change("login", first=True))
        return sync._queue.get_nowait()

    assert _run(scenario()) == (JOB_RESTORE, "u1")


def test_returning_login_schedules_push(store, remote, account):
    sync = SyncOrchestrator(store, remote)

    async def scenario():
        await sync.probe()
        sync.on_identity_changed(_change("restore"))
        sync.on_identity_changed(_change("logout"))
        return sync._queue.qsize(), sync._queue.get_nowait()

    assert _run(scenario()) == (1, (JOB_PUSH, "u1"))


def test_delete_remote(store, remote, account):
    sync = _orchestrator(store, remote)

    async def scenario():
        await sync.probe()
        await sync.push_snapshot("u1")
        # A push queued before deletion must not resurrect the documents
        store.save_configuration(account, music_volume=1)
        await sync.delete_remote("u1")
        sync.start()
        await sync.drain()
        await sync.stop()

    _run(scenario())
    assert remote.collections[USERS_COLLECTION] == {}
    assert remote.collections[STATISTICS_COLLECTION] == {}


def test_delete_remote_offline_raises(store, remote, account):
    sync = SyncOrchestrator(store, remote)
    with pytest.raises(SyncError):
        _run(sync.delete_remote("u1"))
