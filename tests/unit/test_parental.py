"""Unit tests for the parental control security gate.

Covers PIN validation, hashing, the profile -> account -> default
fallback chain with shadowing, the activated-without-PIN decision,
deactivation that keeps the PIN, legacy hash upgrades, and the failure
policy (lock check degrades open, PIN check never does).
"""

import hashlib

import pytest

from kidsync.errors import StorageError, ValidationError
from kidsync.identity import Identity, Subject
from kidsync.parental import ParentalSection, PinHasher, fallback_chain

GUARDIAN = Subject(identity_id="g1")
DEFAULT = Subject.default()


@pytest.fixture
def guardian(store):
    store.upsert_identity(Identity(id="g1", email="g@example.com", is_guardian=True))
    return GUARDIAN


@pytest.fixture
def child(store, guardian):
    return store.create_profile("g1", "Lia").subject


# ------------------------------------------------------------------
# PinHasher
# ------------------------------------------------------------------


def test_hash_is_salted_and_not_plain():
    hasher = PinHasher(rounds=4)
    first, second = hasher.hash("1234"), hasher.hash("1234")
    assert first != second
    assert "1234" not in first
    assert hasher.verify("1234", first) and hasher.verify("1234", second)


def test_verify_rejects_empty_and_garbage():
    hasher = PinHasher(rounds=4)
    assert hasher.verify("", hasher.hash("1234")) is False
    assert hasher.verify("1234", "") is False
    assert hasher.verify("1234", "not-a-hash") is False


def test_fallback_chain_order():
    chain = fallback_chain(Subject(identity_id="g1", profile_id=7))
    assert chain == [Subject(identity_id="g1", profile_id=7), GUARDIAN, DEFAULT]


# ------------------------------------------------------------------
# set_pin
# ------------------------------------------------------------------


def test_set_pin_activates_and_keeps_gates(gate, store, guardian):
    store.save_parental_control(guardian, lock_sound=False)
    record = gate.set_pin(guardian, "1234", "1234")
    assert record.activated is True
    assert record.is_configured is True
    assert record.lock_sound is False
    assert record.pin_hash and record.pin_hash != "1234"


@pytest.mark.parametrize("pin,confirm", [("1234", "1235"), ("123", "123"), ("abcd", "abcd")])
def test_set_pin_rejects_and_keeps_prior_hash(gate, store, guardian, pin, confirm):
    gate.set_pin(guardian, "4321", "4321")
    before = store.get_parental_control(guardian).pin_hash
    with pytest.raises(ValidationError):
        gate.set_pin(guardian, pin, confirm)
    assert store.get_parental_control(guardian).pin_hash == before
    assert gate.verify_pin(guardian, "4321") is True


def test_set_pin_strips_whitespace(gate, guardian):
    gate.set_pin(guardian, " 12 34", "1234 ")
    assert gate.verify_pin(guardian, "1234") is True


# ------------------------------------------------------------------
# is_section_locked / verify_pin
# ------------------------------------------------------------------


def test_no_lock_configured(gate, guardian):
    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is False
    assert gate.verify_pin(guardian, "0000") is True


def test_locked_section_and_pin_check(gate, guardian):
    gate.set_pin(guardian, "1234", "1234")
    gate.set_section_gate(guardian, ParentalSection.STATISTICS, True)
    gate.set_section_gate(guardian, ParentalSection.SOUND, False)

    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is True
    assert gate.is_section_locked(guardian, ParentalSection.SOUND) is False
    assert gate.is_section_locked(guardian, ParentalSection.PARENTAL) is True
    assert gate.verify_pin(guardian, "1234") is True
    assert gate.verify_pin(guardian, "0000") is False


def test_activated_without_pin_stays_unlocked(gate, store, guardian):
    store.save_parental_control(guardian, activated=True)
    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is False
    assert gate.verify_pin(guardian, "9999") is True


def test_profile_falls_back_to_account(gate, guardian, child):
    gate.set_pin(guardian, "1234", "1234")
    assert gate.is_section_locked(child, ParentalSection.ABOUT) is True
    assert gate.verify_pin(child, "1234") is True
    assert gate.verify_pin(child, "1111") is False


def test_account_falls_back_to_default(gate, guardian):
    gate.set_pin(DEFAULT, "2468", "2468")
    assert gate.is_section_locked(guardian, ParentalSection.PROFILE) is True
    assert gate.verify_pin(guardian, "2468") is True


def test_profile_record_shadows_account(gate, guardian, child):
    gate.set_pin(guardian, "1234", "1234")
    gate.set_pin(child, "5678", "5678")
    gate.set_section_gate(child, ParentalSection.STATISTICS, False)

    assert gate.is_section_locked(child, ParentalSection.STATISTICS) is False
    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is True
    assert gate.verify_pin(child, "5678") is True
    assert gate.verify_pin(child, "1234") is False


def test_storage_error_policy(gate, store, guardian, monkeypatch):
    gate.set_pin(guardian, "1234", "1234")

    def broken(subject):
        raise StorageError("disk I/O error")

    monkeypatch.setattr(store, "get_parental_control", broken)
    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is False
    assert gate.verify_pin(guardian, "1234") is False


# ------------------------------------------------------------------
# deactivate / reactivate
# ------------------------------------------------------------------


def test_deactivate_keeps_pin_and_gates(gate, store, guardian):
    gate.set_pin(guardian, "1234", "1234")
    gate.set_section_gate(guardian, ParentalSection.ABOUT, False)

    assert gate.deactivate(guardian, "1234") is True
    record = store.get_parental_control(guardian)
    assert record.activated is False
    assert record.pin_hash
    assert record.lock_about is False
    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is False

    gate.reactivate(guardian)
    assert gate.verify_pin(guardian, "1234") is True
    assert gate.is_section_locked(guardian, ParentalSection.STATISTICS) is True


def test_deactivate_wrong_pin(gate, store, guardian):
    gate.set_pin(guardian, "1234", "1234")
    with pytest.raises(ValidationError):
        gate.deactivate(guardian, "0000")
    assert store.get_parental_control(guardian).activated is True


def test_deactivate_from_profile_targets_resolved_record(gate, store, guardian, child):
    gate.set_pin(guardian, "1234", "1234")
    assert gate.deactivate(child, "1234") is True
    assert store.get_parental_control(guardian).activated is False


def test_deactivate_when_nothing_configured(gate, guardian):
    assert gate.deactivate(guardian, "1234") is False


def test_reactivate_requires_pin(gate, guardian):
    with pytest.raises(ValidationError):
        gate.reactivate(guardian)


def test_parental_section_has_no_individual_gate(gate, guardian):
    with pytest.raises(ValueError):
        gate.set_section_gate(guardian, ParentalSection.PARENTAL, False)


# ------------------------------------------------------------------
# legacy hashes
# ------------------------------------------------------------------


def test_legacy_sha256_hash_verifies_and_upgrades(gate, store, guardian):
    legacy = hashlib.sha256(b"1357").hexdigest()
    store.save_parental_control(guardian, activated=True, pin_hash=legacy)

    assert gate.verify_pin(guardian, "0000") is False
    assert store.get_parental_control(guardian).pin_hash == legacy

    assert gate.verify_pin(guardian, "1357") is True
    upgraded = store.get_parental_control(guardian).pin_hash
    assert upgraded.startswith("$2")
    assert gate.verify_pin(guardian, "1357") is True
