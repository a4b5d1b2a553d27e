"""Parental control security gate.

Guardians protect app sections behind a 4-digit PIN. A parental control
record is *configured* when it is activated and carries a PIN hash.
Lookups walk the fallback chain

    profile -> owning account -> DefaultAccount

and stop at the first configured record; that record decides everything
and less specific ones are ignored. When nothing in the chain is
configured there is no lock and any PIN is accepted.

Failure policy: an error while checking whether a lock exists degrades
to "unlocked"; an error while checking a PIN never reads as "correct".

PINs are hashed with bcrypt. Unsalted SHA-256 hex digests written by
older clients and restored from the cloud still verify, and are
upgraded to bcrypt on the first successful check.
"""

import hashlib
import hmac
import logging
import re
from enum import Enum
from typing import Optional

import bcrypt

from kidsync.errors import StorageError, ValidationError
from kidsync.identity import Subject, is_default_identity
from kidsync.local.database import LocalStore, ParentalControl
from kidsync.validation import normalize_pin

logger = logging.getLogger(__name__)

_LEGACY_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


class ParentalSection(str, Enum):
    SOUND = "sound"
    ACCESSIBILITY = "accessibility"
    STATISTICS = "statistics"
    ABOUT = "about"
    PROFILE = "profile"
    PARENTAL = "parental"  # the parental settings screen itself


# Gate column per section; PARENTAL is locked whenever a control is configured
SECTION_FLAGS = {
    ParentalSection.SOUND: "lock_sound",
    ParentalSection.ACCESSIBILITY: "lock_accessibility",
    ParentalSection.STATISTICS: "lock_statistics",
    ParentalSection.ABOUT: "lock_about",
    ParentalSection.PROFILE: "lock_profile",
}


class PinHasher:
    """bcrypt PIN hashing with legacy SHA-256 verification.

    >>> hasher = PinHasher(rounds=4)
    >>> hashed = hasher.hash("1234")
    >>> hasher.verify("1234", hashed), hasher.verify("0000", hashed)
    (True, False)
    >>> legacy = hashlib.sha256(b"1234").hexdigest()
    >>> hasher.verify("1234", legacy), hasher.needs_rehash(legacy)
    (True, True)
    """

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds

    def hash(self, pin: str) -> str:
        if not pin:
            raise ValueError("PIN cannot be empty")
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(pin.encode("utf-8"), salt).decode("utf-8")

    def verify(self, pin: str, pin_hash: str) -> bool:
        if not pin or not pin_hash:
            return False
        if _LEGACY_HASH_RE.match(pin_hash):
            candidate = hashlib.sha256(pin.encode("utf-8")).hexdigest()
            return hmac.compare_digest(candidate, pin_hash)
        try:
            return bcrypt.checkpw(pin.encode("utf-8"), pin_hash.encode("utf-8"))
        except ValueError as e:
            logger.warning(f"Stored PIN hash is malformed: {e}")
            return False

    def needs_rehash(self, pin_hash: str) -> bool:
        return bool(_LEGACY_HASH_RE.match(pin_hash or ""))


def fallback_chain(subject: Subject) -> list[Subject]:
    """Subjects consulted for a lookup, most specific first.

    >>> [s.profile_id for s in fallback_chain(Subject(identity_id="g", profile_id=3))]
    [3, 0, 0]
    >>> len(fallback_chain(Subject(identity_id="1")))
    1
    """
    chain = [subject]
    if subject.is_profile:
        chain.append(subject.account())
    if not is_default_identity(subject.identity_id):
        chain.append(Subject.default())
    return chain


class ParentalGate:
    """Access decisions and PIN management for guardian-locked sections."""

    def __init__(self, store: LocalStore, hasher: Optional[PinHasher] = None):
        self.store = store
        self.hasher = hasher or PinHasher()

    def resolve(self, subject: Subject) -> Optional[ParentalControl]:
        """Nearest configured record in the fallback chain, or None.

        Raises StorageError; callers pick their own failure policy.
        """
        for candidate in fallback_chain(subject):
            record = self.store.get_parental_control(candidate)
            if record is not None and record.is_configured:
                return record
        return None

    def is_section_locked(self, subject: Subject, section: ParentalSection) -> bool:
        try:
            record = self.resolve(subject)
        except StorageError as e:
            logger.error(f"Lock check for {section.value} failed, treating as unlocked: {e}")
            return False
        if record is None:
            return False
        if section == ParentalSection.PARENTAL:
            return True
        return bool(getattr(record, SECTION_FLAGS[section]))

    def verify_pin(self, subject: Subject, candidate: str) -> bool:
        try:
            record = self.resolve(subject)
        except StorageError as e:
            logger.error(f"PIN check failed, denying access: {e}")
            return False
        if record is None:
            return True

        ok = self.hasher.verify((candidate or "").strip(), record.pin_hash)
        if ok and self.hasher.needs_rehash(record.pin_hash):
            self._upgrade_hash(record, candidate.strip())
        if not ok:
            logger.info(f"Wrong PIN entered for {subject.identity_id}/{subject.profile_id}")
        return ok

    def _upgrade_hash(self, record: ParentalControl, pin: str) -> None:
        owner = Subject(identity_id=record.identity_id, profile_id=record.profile_id)
        try:
            self.store.save_parental_control(owner, pin_hash=self.hasher.hash(pin))
            logger.info(f"Upgraded legacy PIN hash for {owner.identity_id}/{owner.profile_id}")
        except StorageError as e:
            logger.warning(f"Could not upgrade legacy PIN hash: {e}")

    def set_pin(self, subject: Subject, raw_pin: str, confirm_pin: str) -> ParentalControl:
        """Store a new PIN and activate the control, keeping the gate flags.

        Raises ValidationError before touching storage if the PIN is not
        exactly 4 digits or the confirmation differs.
        """
        pin = normalize_pin(raw_pin, confirm_pin)
        record = self.store.save_parental_control(
            subject, activated=True, pin_hash=self.hasher.hash(pin)
        )
        logger.info(f"PIN set for {subject.identity_id}/{subject.profile_id}")
        return record

    def deactivate(self, subject: Subject, pin: str) -> bool:
        """Switch off the control that currently applies to ``subject``.

        The PIN hash and gate flags are kept so the guardian can switch it
        back on with :meth:`reactivate`. Returns False when nothing was
        configured. Raises ValidationError on a wrong PIN.
        """
        record = self.resolve(subject)
        if record is None:
            return False
        if not self.hasher.verify((pin or "").strip(), record.pin_hash):
            raise ValidationError("Incorrect PIN", field="pin")
        owner = Subject(identity_id=record.identity_id, profile_id=record.profile_id)
        self.store.save_parental_control(owner, activated=False)
        logger.info(f"Parental control deactivated for {owner.identity_id}/{owner.profile_id}")
        return True

    def reactivate(self, subject: Subject) -> ParentalControl:
        """Turn a control back on using its stored PIN."""
        record = self.store.get_or_create_parental_control(subject)
        if not record.pin_hash:
            raise ValidationError("Set a PIN before activating parental control", field="pin")
        return self.store.save_parental_control(subject, activated=True)

    def set_section_gate(
        self, subject: Subject, section: ParentalSection, locked: bool
    ) -> ParentalControl:
        if section not in SECTION_FLAGS:
            raise ValueError(f"Section {section.value} has no individual gate")
        return self.store.save_parental_control(subject, **{SECTION_FLAGS[section]: locked})
