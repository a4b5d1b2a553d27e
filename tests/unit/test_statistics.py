"""Unit tests for LevelTracker and the level statistics aggregate."""

import asyncio

import pytest

from kidsync.identity import Subject
from kidsync.statistics import LevelTracker


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(store, profiles, clock):
    return LevelTracker(store, profiles, clock=clock)


def test_timed_level_records_moves_and_help(tracker, store, clock):
    tracker.start_level(3)
    tracker.register_move()
    tracker.register_move()
    tracker.register_help_used()
    clock.now += 42.5

    stats = tracker.complete_level()

    assert stats.level == 3
    assert stats.completed is True
    assert stats.fail_count == 0
    attempt = stats.attempts[0]
    assert attempt.moves == 2
    assert attempt.help_used is True
    assert attempt.time_spent_seconds == pytest.approx(42.5)
    assert tracker.in_progress is False


def test_abandon_counts_failure(tracker, clock):
    tracker.start_level(1)
    clock.now += 5
    stats = tracker.abandon_level()
    assert stats.completed is False
    assert stats.fail_count == 1


def test_finish_without_start(tracker):
    assert tracker.complete_level() is None
    assert tracker.abandon_level() is None
    assert tracker.elapsed() == 0.0


def test_moves_ignored_outside_a_level(tracker):
    tracker.register_move()
    tracker.register_help_used()
    assert tracker.moves == 0 and tracker.help_used is False


def test_restart_resets_counters(tracker, clock):
    tracker.start_level(2)
    tracker.register_move()
    clock.now += 10
    tracker.start_level(4)
    clock.now += 1
    stats = tracker.complete_level()
    assert stats.level == 4
    assert stats.attempts[0].moves == 0
    assert stats.attempts[0].time_spent_seconds == pytest.approx(1.0)


def test_failures_stop_counting_after_completion(tracker):
    tracker.on_level_completed(7, 10.0, completed=False)
    tracker.on_level_completed(7, 10.0, completed=False)
    tracker.on_level_completed(7, 12.0, completed=True)
    stats = tracker.on_level_completed(7, 9.0, completed=False)
    assert stats.completed is True
    assert stats.fail_count == 2
    assert len(stats.attempts) == 4


def test_negative_level_rejected(tracker):
    with pytest.raises(ValueError):
        tracker.on_level_completed(-1, 1.0)


def test_records_against_active_profile(tracker, store, session, profiles):
    guardian = _run(session.login("guardian@example.com", "Guard1an"))
    lia = profiles.create_profile("Lia")

    tracker.on_level_completed(1, 3.0)
    profiles.select_profile(lia.id, "Lia")
    tracker.on_level_completed(1, 4.0, completed=False)

    account_stats = store.get_level_statistics(Subject(identity_id=guardian.id), 1)
    profile_stats = store.get_level_statistics(lia.subject, 1)
    assert account_stats.completed is True
    assert profile_stats.completed is False
    assert profile_stats.fail_count == 1
    assert len(store.list_statistics(guardian.id)) == 2
    assert len(store.list_statistics(guardian.id, lia.id)) == 1


def test_default_account_records_locally(tracker, store):
    tracker.on_level_completed(5, 2.0)
    assert store.get_level_statistics(Subject.default(), 5).completed is True
