"""SQLite store: the authoritative on-device copy of all kidsync data.

7 tables across three concerns:
- Identity: identities, profiles, login_records
- Per-subject settings: configurations, parental_controls
- Gameplay: level_statistics, level_attempts

Per-subject rows are keyed by (identity_id, profile_id); profile_id = 0
means the identity itself. WAL mode for concurrent reads, single writer
lock for atomic writes. Every sqlite3 failure surfaces as StorageError.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from pydantic import BaseModel, Field, computed_field

from kidsync.errors import StorageError
from kidsync.identity import (
    DEFAULT_IDENTITY_ID,
    Identity,
    IdentityKind,
    Subject,
    is_default_identity,
)

logger = logging.getLogger(__name__)

# Change event kinds published to subscribers after a commit
CHANGE_CONFIGURATION = "configuration"
CHANGE_PARENTAL_CONTROL = "parental_control"
CHANGE_STATISTICS = "statistics"
CHANGE_PROFILES = "profiles"

COLOR_INTENSITY_RANGE = (1, 5)
VOLUME_RANGE = (0, 100)

ChangeListener = Callable[[str, Subject], None]


# ---------------------------------------------------------------------------
# Pydantic v2 Models
# ---------------------------------------------------------------------------


class Profile(BaseModel):
    """Pydantic v2 model for a profiles row."""

    id: int
    owner_id: str
    name: str
    gender: str = ""
    created_at: Optional[str] = None

    @property
    def subject(self) -> Subject:
        return Subject(identity_id=self.owner_id, profile_id=self.id)


class Configuration(BaseModel):
    """Pydantic v2 model for a configurations row."""

    identity_id: str
    profile_id: int = 0
    color_intensity: int = Field(default=3, ge=1, le=5)
    auto_narrator: bool = False
    sound_enabled: bool = True
    general_volume: int = Field(default=50, ge=0, le=100)
    music_volume: int = Field(default=50, ge=0, le=100)
    effects_volume: int = Field(default=50, ge=0, le=100)
    narrator_volume: int = Field(default=50, ge=0, le=100)
    vibration_enabled: bool = False
    user_modified: bool = False
    updated_at: Optional[str] = None


class ParentalControl(BaseModel):
    """Pydantic v2 model for a parental_controls row.

    Each ``lock_*`` flag says whether that section asks for the PIN once
    the control is configured.
    """

    identity_id: str
    profile_id: int = 0
    activated: bool = False
    pin_hash: str = ""
    lock_sound: bool = True
    lock_accessibility: bool = True
    lock_statistics: bool = True
    lock_about: bool = True
    lock_profile: bool = True
    user_modified: bool = False
    updated_at: Optional[str] = None

    @computed_field
    @property
    def is_configured(self) -> bool:
        """Configured means activated with a stored PIN hash."""
        return self.activated and bool(self.pin_hash)


class LevelAttempt(BaseModel):
    """Pydantic v2 model for a level_attempts row."""

    completed: bool
    help_used: bool = False
    time_spent_seconds: float = 0.0
    moves: int = 0
    timestamp: str


class LevelStatistics(BaseModel):
    """Aggregate outcome for one (subject, level) with its attempts."""

    identity_id: str
    profile_id: int = 0
    level: int
    completed: bool = False
    fail_count: int = 0
    updated_at: Optional[str] = None
    attempts: list[LevelAttempt] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS identities (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL DEFAULT 'account',
    email TEXT NOT NULL DEFAULT '',
    is_guardian BOOLEAN NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_login TEXT
);

CREATE TABLE IF NOT EXISTS profiles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    gender TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS login_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity_id TEXT NOT NULL,
    login_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS configurations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity_id TEXT NOT NULL,
    profile_id INTEGER NOT NULL DEFAULT 0,
    color_intensity INTEGER NOT NULL DEFAULT 3,
    auto_narrator BOOLEAN NOT NULL DEFAULT 0,
    sound_enabled BOOLEAN NOT NULL DEFAULT 1,
    general_volume INTEGER NOT NULL DEFAULT 50,
    music_volume INTEGER NOT NULL DEFAULT 50,
    effects_volume INTEGER NOT NULL DEFAULT 50,
    narrator_volume INTEGER NOT NULL DEFAULT 50,
    vibration_enabled BOOLEAN NOT NULL DEFAULT 0,
    user_modified BOOLEAN NOT NULL DEFAULT 0,
    updated_at TEXT,
    UNIQUE(identity_id, profile_id)
);

CREATE TABLE IF NOT EXISTS parental_controls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity_id TEXT NOT NULL,
    profile_id INTEGER NOT NULL DEFAULT 0,
    activated BOOLEAN NOT NULL DEFAULT 0,
    pin_hash TEXT NOT NULL DEFAULT '',
    lock_sound BOOLEAN NOT NULL DEFAULT 1,
    lock_accessibility BOOLEAN NOT NULL DEFAULT 1,
    lock_statistics BOOLEAN NOT NULL DEFAULT 1,
    lock_about BOOLEAN NOT NULL DEFAULT 1,
    lock_profile BOOLEAN NOT NULL DEFAULT 1,
    user_modified BOOLEAN NOT NULL DEFAULT 0,
    updated_at TEXT,
    UNIQUE(identity_id, profile_id)
);

CREATE TABLE IF NOT EXISTS level_statistics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity_id TEXT NOT NULL,
    profile_id INTEGER NOT NULL DEFAULT 0,
    level INTEGER NOT NULL,
    completed BOOLEAN NOT NULL DEFAULT 0,
    fail_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT,
    UNIQUE(identity_id, profile_id, level)
);

CREATE TABLE IF NOT EXISTS level_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    statistics_id INTEGER NOT NULL REFERENCES level_statistics(id) ON DELETE CASCADE,
    completed BOOLEAN NOT NULL,
    help_used BOOLEAN NOT NULL DEFAULT 0,
    time_spent_seconds REAL NOT NULL DEFAULT 0,
    moves INTEGER NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_profiles_owner ON profiles(owner_id);
CREATE INDEX IF NOT EXISTS idx_login_identity ON login_records(identity_id);
CREATE INDEX IF NOT EXISTS idx_attempts_stats ON level_attempts(statistics_id);
"""


def _default_db_path() -> str:
    """Return default database path: ~/.kidsync/kidsync.db"""
    return str(Path.home() / ".kidsync" / "kidsync.db")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clamp(value: Any, low: int, high: int) -> int:
    """Clamp to an inclusive integer range.

    >>> _clamp(9, 1, 5), _clamp(-3, 0, 100), _clamp("42", 0, 100)
    (5, 0, 42)
    """
    return max(low, min(high, int(value)))


def _normalize_configuration(fields: dict) -> dict:
    """Clamp numeric ranges and coerce flags for a configuration write."""
    out = {}
    for key, value in fields.items():
        if key == "color_intensity":
            out[key] = _clamp(value, *COLOR_INTENSITY_RANGE)
        elif key.endswith("_volume"):
            out[key] = _clamp(value, *VOLUME_RANGE)
        else:
            out[key] = bool(value)
    return out


class LocalStore:
    """SQLite store with WAL mode and thread-safe writes.

    >>> store = LocalStore(":memory:")
    >>> store.db_path
    ':memory:'
    >>> store.get_identity("1").kind.value
    'default'
    """

    _CONFIGURATION_COLS = frozenset(
        {
            "color_intensity",
            "auto_narrator",
            "sound_enabled",
            "general_volume",
            "music_volume",
            "effects_volume",
            "narrator_volume",
            "vibration_enabled",
        }
    )

    _PARENTAL_COLS = frozenset(
        {
            "activated",
            "pin_hash",
            "lock_sound",
            "lock_accessibility",
            "lock_statistics",
            "lock_about",
            "lock_profile",
        }
    )

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = _default_db_path()

        self.db_path = db_path
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._listeners: list[ChangeListener] = []

        # Create parent dir + file if needed (skip for :memory:)
        if db_path != ":memory:" and not Path(db_path).exists():
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            Path(db_path).touch()

        self._init_schema()
        self.ensure_default_identity()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            try:
                conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as e:
                raise StorageError(f"Cannot open local store {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Local store write failed: {e}") from e
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._get_connection()
        except sqlite3.Error as e:
            raise StorageError(f"Local store read failed: {e}") from e

    def _init_schema(self) -> None:
        with self._writer() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)

    def close(self) -> None:
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callback invoked as ``listener(kind, subject)`` after commits."""
        self._listeners.append(listener)

    def _emit(self, kind: str, subject: Subject) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, subject)
            except Exception:
                # The write already committed; a broken observer must not undo it
                logger.exception(f"Change listener failed for {kind} on {subject}")

    # ==================================================================
    # Identities
    # ==================================================================

    @staticmethod
    def _insert_defaults(conn: sqlite3.Connection, subject: Subject) -> None:
        for table in ("configurations", "parental_controls"):
            conn.execute(
                f"""INSERT INTO {table} (identity_id, profile_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(identity_id, profile_id) DO NOTHING""",
                (subject.identity_id, subject.profile_id, _now()),
            )

    def ensure_default_identity(self) -> Identity:
        """Self-heal the DefaultAccount row and its settings rows.

        >>> store = LocalStore(":memory:")
        >>> store.ensure_default_identity().id
        '1'
        """
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO identities (id, kind, created_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(id) DO NOTHING""",
                (DEFAULT_IDENTITY_ID, IdentityKind.DEFAULT.value, _now()),
            )
            self._insert_defaults(conn, Subject.default())
        return Identity.default()

    def upsert_identity(self, identity: Identity) -> bool:
        """Insert or refresh an account identity with default settings rows.

        Returns True when the identity is new on this device.

        >>> store = LocalStore(":memory:")
        >>> store.upsert_identity(Identity(id="u1", email="a@b.com"))
        True
        >>> store.upsert_identity(Identity(id="u1", email="a@b.com"))
        False
        """
        if identity.is_default:
            self.ensure_default_identity()
            return False

        with self._writer() as conn:
            existing = conn.execute(
                "SELECT id FROM identities WHERE id = ?", (identity.id,)
            ).fetchone()
            if existing is None:
                conn.execute(
                    """INSERT INTO identities (id, kind, email, is_guardian, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        identity.id,
                        IdentityKind.ACCOUNT.value,
                        identity.email,
                        identity.is_guardian,
                        _now(),
                    ),
                )
            elif identity.email:
                conn.execute(
                    "UPDATE identities SET email = ? WHERE id = ?",
                    (identity.email, identity.id),
                )
            self._insert_defaults(conn, Subject(identity_id=identity.id))
        return existing is None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM identities WHERE id = ?", (identity_id,)
            ).fetchone()
            if row is None:
                return None
            return Identity(
                id=row["id"],
                kind=IdentityKind(row["kind"]),
                email=row["email"],
                is_guardian=bool(row["is_guardian"]),
            )

    def get_identity_timestamps(self, identity_id: str) -> dict:
        """Return ``{"created_at": ..., "last_login": ...}`` for an identity."""
        with self._reader() as conn:
            row = conn.execute(
                "SELECT created_at, last_login FROM identities WHERE id = ?",
                (identity_id,),
            ).fetchone()
            return dict(row) if row else {}

    def set_guardian(self, identity_id: str, is_guardian: bool) -> bool:
        with self._writer() as conn:
            cursor = conn.execute(
                "UPDATE identities SET is_guardian = ? WHERE id = ?",
                (is_guardian, identity_id),
            )
            return cursor.rowcount > 0

    def record_login(self, identity_id: str) -> str:
        """Append a login record and refresh ``last_login``. Returns the timestamp."""
        now = _now()
        with self._writer() as conn:
            conn.execute(
                "INSERT INTO login_records (identity_id, login_at) VALUES (?, ?)",
                (identity_id, now),
            )
            conn.execute(
                "UPDATE identities SET last_login = ? WHERE id = ?", (now, identity_id)
            )
        return now

    def count_logins(self, identity_id: str) -> int:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM login_records WHERE identity_id = ?",
                (identity_id,),
            ).fetchone()
            return row[0]

    def reset_identity(self, identity_id: str) -> None:
        """Return an account's local rows to first-launch defaults.

        Profiles, statistics and login history are removed; configuration
        and parental control are recreated with defaults; the identity row
        itself is kept with its email cleared.
        """
        if is_default_identity(identity_id):
            raise ValueError("The default identity cannot be reset")

        with self._writer() as conn:
            conn.execute("DELETE FROM level_statistics WHERE identity_id = ?", (identity_id,))
            conn.execute("DELETE FROM configurations WHERE identity_id = ?", (identity_id,))
            conn.execute("DELETE FROM parental_controls WHERE identity_id = ?", (identity_id,))
            conn.execute("DELETE FROM profiles WHERE owner_id = ?", (identity_id,))
            conn.execute("DELETE FROM login_records WHERE identity_id = ?", (identity_id,))
            conn.execute(
                """UPDATE identities SET email = '', is_guardian = 0, last_login = NULL
                   WHERE id = ?""",
                (identity_id,),
            )
            self._insert_defaults(conn, Subject(identity_id=identity_id))
        logger.info(f"Local data for identity {identity_id} reset to defaults")

    # ==================================================================
    # Configuration
    # ==================================================================

    def get_configuration(self, subject: Subject) -> Optional[Configuration]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM configurations WHERE identity_id = ? AND profile_id = ?",
                (subject.identity_id, subject.profile_id),
            ).fetchone()
            return Configuration.model_validate(dict(row)) if row else None

    def get_or_create_configuration(self, subject: Subject) -> Configuration:
        """Read the subject's configuration, inserting defaults if missing.

        >>> store = LocalStore(":memory:")
        >>> cfg = store.get_or_create_configuration(Subject(identity_id="1"))
        >>> cfg.color_intensity, cfg.sound_enabled, cfg.music_volume
        (3, True, 50)
        """
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO configurations (identity_id, profile_id, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(identity_id, profile_id) DO NOTHING""",
                (subject.identity_id, subject.profile_id, _now()),
            )
            row = conn.execute(
                "SELECT * FROM configurations WHERE identity_id = ? AND profile_id = ?",
                (subject.identity_id, subject.profile_id),
            ).fetchone()
        return Configuration.model_validate(dict(row))

    def save_configuration(self, subject: Subject, **fields: Any) -> Configuration:
        """Partially update a configuration; omitted fields keep their values.

        Numeric fields are clamped to their ranges.

        >>> store = LocalStore(":memory:")
        >>> s = Subject(identity_id="1")
        >>> store.save_configuration(s, music_volume=140).music_volume
        100
        >>> store.save_configuration(s, color_intensity=5).music_volume
        100
        """
        invalid_cols = set(fields) - self._CONFIGURATION_COLS
        if invalid_cols:
            raise ValueError(f"Invalid columns for configuration update: {invalid_cols}")

        updated = self._update_row(
            "configurations", subject, _normalize_configuration(fields), only_unmodified=False
        )
        self._emit(CHANGE_CONFIGURATION, subject)
        return Configuration.model_validate(updated)

    def apply_remote_configuration(self, subject: Subject, fields: dict) -> bool:
        """Copy restored fields in unless the user already edited this row.

        Returns True when the row was overwritten. Unknown keys are ignored.
        """
        known = {k: v for k, v in fields.items() if k in self._CONFIGURATION_COLS}
        if not known:
            return False
        return self._update_row(
            "configurations", subject, _normalize_configuration(known), only_unmodified=True
        ) is not None

    # ==================================================================
    # Parental control
    # ==================================================================

    def get_parental_control(self, subject: Subject) -> Optional[ParentalControl]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT * FROM parental_controls WHERE identity_id = ? AND profile_id = ?",
                (subject.identity_id, subject.profile_id),
            ).fetchone()
            return ParentalControl.model_validate(dict(row)) if row else None

    def get_or_create_parental_control(self, subject: Subject) -> ParentalControl:
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO parental_controls (identity_id, profile_id, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(identity_id, profile_id) DO NOTHING""",
                (subject.identity_id, subject.profile_id, _now()),
            )
            row = conn.execute(
                "SELECT * FROM parental_controls WHERE identity_id = ? AND profile_id = ?",
                (subject.identity_id, subject.profile_id),
            ).fetchone()
        return ParentalControl.model_validate(dict(row))

    def save_parental_control(self, subject: Subject, **fields: Any) -> ParentalControl:
        """Partially update a parental control row.

        ``pin_hash`` is written only when a non-empty value is supplied, so
        toggling activation without the PIN never erases it.

        >>> store = LocalStore(":memory:")
        >>> s = Subject(identity_id="1")
        >>> _ = store.save_parental_control(s, activated=True, pin_hash="h")
        >>> store.save_parental_control(s, activated=False, pin_hash="").pin_hash
        'h'
        """
        invalid_cols = set(fields) - self._PARENTAL_COLS
        if invalid_cols:
            raise ValueError(f"Invalid columns for parental control update: {invalid_cols}")

        updated = self._update_row(
            "parental_controls", subject, self._normalize_parental(fields), only_unmodified=False
        )
        self._emit(CHANGE_PARENTAL_CONTROL, subject)
        return ParentalControl.model_validate(updated)

    def apply_remote_parental_control(self, subject: Subject, fields: dict) -> bool:
        """Restore counterpart of :meth:`apply_remote_configuration`."""
        known = self._normalize_parental(
            {k: v for k, v in fields.items() if k in self._PARENTAL_COLS}
        )
        if not known:
            return False
        return self._update_row(
            "parental_controls", subject, known, only_unmodified=True
        ) is not None

    @staticmethod
    def _normalize_parental(fields: dict) -> dict:
        out = {}
        for key, value in fields.items():
            if key == "pin_hash":
                if value:
                    out[key] = str(value)
            else:
                out[key] = bool(value)
        return out

    def _update_row(
        self, table: str, subject: Subject, fields: dict, *, only_unmodified: bool
    ) -> Optional[dict]:
        """Create-if-missing then update one per-subject row.

        User writes mark the row modified. Restores only touch rows that were
        never modified and leave the flag clear. Returns the row after the
        update, or None when a restore was skipped.
        """
        key = (subject.identity_id, subject.profile_id)
        with self._writer() as conn:
            conn.execute(
                f"""INSERT INTO {table} (identity_id, profile_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(identity_id, profile_id) DO NOTHING""",
                (*key, _now()),
            )
            values = dict(fields)
            values["updated_at"] = _now()
            if not only_unmodified:
                values["user_modified"] = True
            set_clause = ", ".join(f"{k} = ?" for k in values)
            where = "identity_id = ? AND profile_id = ?"
            if only_unmodified:
                where += " AND user_modified = 0"
            cursor = conn.execute(
                f"UPDATE {table} SET {set_clause} WHERE {where}",
                list(values.values()) + list(key),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                f"SELECT * FROM {table} WHERE identity_id = ? AND profile_id = ?", key
            ).fetchone()
            return dict(row)

    # ==================================================================
    # Profiles
    # ==================================================================

    def create_profile(self, owner_id: str, name: str, gender: str = "") -> Profile:
        """Create a profile with its own default configuration rows.

        >>> store = LocalStore(":memory:")
        >>> _ = store.upsert_identity(Identity(id="g1", email="g@x.io"))
        >>> store.create_profile("g1", "Lia", "f").id > 0
        True
        """
        now = _now()
        with self._writer() as conn:
            cursor = conn.execute(
                "INSERT INTO profiles (owner_id, name, gender, created_at) VALUES (?, ?, ?, ?)",
                (owner_id, name, gender, now),
            )
            profile = Profile(
                id=cursor.lastrowid, owner_id=owner_id, name=name, gender=gender, created_at=now
            )
            self._insert_defaults(conn, profile.subject)
        self._emit(CHANGE_PROFILES, Subject(identity_id=owner_id))
        return profile

    def get_profile(self, profile_id: int) -> Optional[Profile]:
        """Fetch a profile; orphans (owner row missing) read as absent."""
        with self._reader() as conn:
            row = conn.execute(
                """SELECT p.* FROM profiles p
                   JOIN identities i ON i.id = p.owner_id
                   WHERE p.id = ?""",
                (profile_id,),
            ).fetchone()
            return Profile.model_validate(dict(row)) if row else None

    def list_profiles(self, owner_id: str) -> list[Profile]:
        with self._reader() as conn:
            rows = conn.execute(
                """SELECT p.* FROM profiles p
                   JOIN identities i ON i.id = p.owner_id
                   WHERE p.owner_id = ? ORDER BY p.id""",
                (owner_id,),
            ).fetchall()
            return [Profile.model_validate(dict(r)) for r in rows]

    def delete_profile(self, profile_id: int) -> bool:
        """Delete a profile and everything scoped to it in one transaction.

        >>> store = LocalStore(":memory:")
        >>> _ = store.upsert_identity(Identity(id="g1"))
        >>> p = store.create_profile("g1", "Lia")
        >>> store.delete_profile(p.id)
        True
        >>> store.get_configuration(p.subject) is None
        True
        """
        with self._writer() as conn:
            row = conn.execute(
                "SELECT owner_id FROM profiles WHERE id = ?", (profile_id,)
            ).fetchone()
            if row is None:
                return False
            scope = (row["owner_id"], profile_id)
            for table in ("configurations", "parental_controls", "level_statistics"):
                conn.execute(
                    f"DELETE FROM {table} WHERE identity_id = ? AND profile_id = ?", scope
                )
            conn.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        self._emit(CHANGE_PROFILES, Subject(identity_id=row["owner_id"]))
        return True

    def import_profiles(self, owner_id: str, profiles: list[dict]) -> list[Profile]:
        """Recreate restored profiles for an owner that has none on this device.

        Each entry may carry ``configuration`` and ``parental_control`` dicts
        which seed the new profile's rows. Nothing is imported if the owner
        already has profiles locally.
        """
        entries = [e for e in profiles if (e.get("name") or "").strip()]
        created: list[Profile] = []
        with self._writer() as conn:
            count = conn.execute(
                "SELECT COUNT(*) FROM profiles WHERE owner_id = ?", (owner_id,)
            ).fetchone()[0]
            if count:
                return []
            for entry in entries:
                now = _now()
                profile_data = {
                    "owner_id": owner_id,
                    "name": entry["name"].strip(),
                    "gender": entry.get("gender") or "",
                    "created_at": now,
                }
                cursor = conn.execute(
                    "INSERT INTO profiles (owner_id, name, gender, created_at) VALUES (?, ?, ?, ?)",
                    tuple(profile_data.values()),
                )
                profile = Profile(id=cursor.lastrowid, **profile_data)
                self._insert_defaults(conn, profile.subject)
                created.append(profile)

        for profile, entry in zip(created, entries):
            if entry.get("configuration"):
                self.apply_remote_configuration(profile.subject, entry["configuration"])
            if entry.get("parental_control"):
                self.apply_remote_parental_control(profile.subject, entry["parental_control"])
        return created

    # ==================================================================
    # Statistics
    # ==================================================================

    def record_level_attempt(
        self,
        subject: Subject,
        level: int,
        completed: bool,
        help_used: bool = False,
        time_spent: float = 0.0,
        moves: int = 0,
    ) -> LevelStatistics:
        """Append an attempt and update the (subject, level) aggregate.

        ``completed`` only ever flips False -> True. ``fail_count`` grows
        with failed attempts until the level is completed, then stays put.

        >>> store = LocalStore(":memory:")
        >>> s = Subject(identity_id="1")
        >>> store.record_level_attempt(s, 2, completed=False).fail_count
        1
        >>> store.record_level_attempt(s, 2, completed=True).completed
        True
        >>> stats = store.record_level_attempt(s, 2, completed=False)
        >>> stats.completed, stats.fail_count, len(stats.attempts)
        (True, 1, 3)
        """
        if level < 0:
            raise ValueError(f"Level must be non-negative, got {level}")
        now = _now()
        key = (subject.identity_id, subject.profile_id, level)
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO level_statistics (identity_id, profile_id, level, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(identity_id, profile_id, level) DO NOTHING""",
                (*key, now),
            )
            row = conn.execute(
                """SELECT id, completed FROM level_statistics
                   WHERE identity_id = ? AND profile_id = ? AND level = ?""",
                key,
            ).fetchone()
            stats_id = row["id"]
            if completed:
                conn.execute(
                    "UPDATE level_statistics SET completed = 1, updated_at = ? WHERE id = ?",
                    (now, stats_id),
                )
            elif not row["completed"]:
                conn.execute(
                    """UPDATE level_statistics SET fail_count = fail_count + 1, updated_at = ?
                       WHERE id = ?""",
                    (now, stats_id),
                )
            conn.execute(
                """INSERT INTO level_attempts
                   (statistics_id, completed, help_used, time_spent_seconds, moves, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (stats_id, completed, help_used, max(0.0, float(time_spent)), max(0, moves), now),
            )
        self._emit(CHANGE_STATISTICS, subject)
        return self.get_level_statistics(subject, level)

    def get_level_statistics(self, subject: Subject, level: int) -> Optional[LevelStatistics]:
        with self._reader() as conn:
            row = conn.execute(
                """SELECT * FROM level_statistics
                   WHERE identity_id = ? AND profile_id = ? AND level = ?""",
                (subject.identity_id, subject.profile_id, level),
            ).fetchone()
            if row is None:
                return None
            return self._with_attempts(conn, row)

    def list_statistics(
        self, identity_id: str, profile_id: Optional[int] = None
    ) -> list[LevelStatistics]:
        """Statistics for an identity, optionally narrowed to one subject."""
        query = "SELECT * FROM level_statistics WHERE identity_id = ?"
        params: list[Any] = [identity_id]
        if profile_id is not None:
            query += " AND profile_id = ?"
            params.append(profile_id)
        query += " ORDER BY profile_id, level"
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._with_attempts(conn, r) for r in rows]

    def list_attempts(self, subject: Subject, level: int) -> list[LevelAttempt]:
        stats = self.get_level_statistics(subject, level)
        return stats.attempts if stats else []

    @staticmethod
    def _with_attempts(conn: sqlite3.Connection, row: sqlite3.Row) -> LevelStatistics:
        attempts = conn.execute(
            """SELECT completed, help_used, time_spent_seconds, moves, timestamp
               FROM level_attempts WHERE statistics_id = ? ORDER BY id""",
            (row["id"],),
        ).fetchall()
        data = dict(row)
        data.pop("id")
        data["attempts"] = [LevelAttempt.model_validate(dict(a)) for a in attempts]
        return LevelStatistics.model_validate(data)

    # ==================================================================
    # Integrity
    # ==================================================================

    def verify(self) -> dict:
        """Report on the invariants the rest of kidsync relies on."""
        default_key = (DEFAULT_IDENTITY_ID, 0)
        with self._reader() as conn:
            has_default = conn.execute(
                "SELECT 1 FROM identities WHERE id = ?", (DEFAULT_IDENTITY_ID,)
            ).fetchone() is not None
            has_config = conn.execute(
                "SELECT 1 FROM configurations WHERE identity_id = ? AND profile_id = ?",
                default_key,
            ).fetchone() is not None
            has_parental = conn.execute(
                "SELECT 1 FROM parental_controls WHERE identity_id = ? AND profile_id = ?",
                default_key,
            ).fetchone() is not None
            orphans = conn.execute(
                """SELECT COUNT(*) FROM profiles p
                   LEFT JOIN identities i ON i.id = p.owner_id
                   WHERE i.id IS NULL"""
            ).fetchone()[0]
            counts = {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("identities", "profiles", "configurations", "parental_controls",
                              "level_statistics", "level_attempts")
            }
        return {
            "ok": has_default and has_config and has_parental and orphans == 0,
            "default_identity": has_default,
            "default_configuration": has_config,
            "default_parental_control": has_parental,
            "orphan_profiles": orphans,
            "counts": counts,
        }

    def repair(self) -> dict:
        """Recreate default rows and delete orphaned profiles. Returns :meth:`verify`."""
        self.ensure_default_identity()
        with self._reader() as conn:
            orphan_ids = [
                r[0]
                for r in conn.execute(
                    """SELECT p.id FROM profiles p
                       LEFT JOIN identities i ON i.id = p.owner_id
                       WHERE i.id IS NULL"""
                ).fetchall()
            ]
        for profile_id in orphan_ids:
            self.delete_profile(profile_id)
        if orphan_ids:
            logger.info(f"Removed {len(orphan_ids)} orphaned profile(s)")
        return self.verify()
