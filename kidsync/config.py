"""Runtime configuration loaded from KIDSYNC_* environment variables.

Remote endpoints are optional. Without them the game runs fully offline
and every sync operation is a silent no-op.
"""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel

DEFAULT_PROBE_TIMEOUT = 3.0  # seconds; keeps the first frame snappy
DEFAULT_RESTORE_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_SYNC_QUEUE_SIZE = 64
DEFAULT_PIN_ROUNDS = 12
DEFAULT_MAX_PROFILES = 4


def _default_data_dir() -> Path:
    """Return default data directory: ~/.kidsync"""
    return Path.home() / ".kidsync"


class KidSyncConfig(BaseModel):
    """Settings for the local store, auth backend and remote mirror.

    >>> cfg = KidSyncConfig.from_env({"KIDSYNC_DATA_DIR": "/tmp/ks"})
    >>> cfg.db_path.name
    'kidsync.db'
    >>> cfg.remote_enabled
    False
    """

    data_dir: Path
    auth_url: str = ""
    auth_key: str = ""
    auth_service_key: str = ""
    remote_url: str = ""
    remote_key: str = ""
    remote_data_source: str = "Cluster0"
    remote_database: str = "kidsync"
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    restore_timeout: float = DEFAULT_RESTORE_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    sync_queue_size: int = DEFAULT_SYNC_QUEUE_SIZE
    pin_rounds: int = DEFAULT_PIN_ROUNDS
    max_profiles: int = DEFAULT_MAX_PROFILES

    @property
    def db_path(self) -> Path:
        return self.data_dir / "kidsync.db"

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / "credentials.json"

    @property
    def preferences_path(self) -> Path:
        return self.data_dir / "preferences.json"

    @property
    def auth_cache_path(self) -> Path:
        return self.data_dir / "auth_session.json"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.auth_url and self.auth_key)

    @property
    def remote_enabled(self) -> bool:
        return bool(self.remote_url and self.remote_key)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "KidSyncConfig":
        """Build config from the environment.

        Raises ValueError when a numeric variable is malformed or out of range.
        """
        env = os.environ if env is None else env

        data_dir = env.get("KIDSYNC_DATA_DIR")
        values: dict = {
            "data_dir": Path(data_dir).expanduser() if data_dir else _default_data_dir(),
            "auth_url": env.get("KIDSYNC_AUTH_URL", "").rstrip("/"),
            "auth_key": env.get("KIDSYNC_AUTH_KEY", ""),
            "auth_service_key": env.get("KIDSYNC_AUTH_SERVICE_KEY", ""),
            "remote_url": env.get("KIDSYNC_REMOTE_URL", "").rstrip("/"),
            "remote_key": env.get("KIDSYNC_REMOTE_KEY", ""),
        }
        if env.get("KIDSYNC_REMOTE_DATA_SOURCE"):
            values["remote_data_source"] = env["KIDSYNC_REMOTE_DATA_SOURCE"]
        if env.get("KIDSYNC_REMOTE_DATABASE"):
            values["remote_database"] = env["KIDSYNC_REMOTE_DATABASE"]

        numeric = {
            "KIDSYNC_PROBE_TIMEOUT": ("probe_timeout", float),
            "KIDSYNC_RESTORE_TIMEOUT": ("restore_timeout", float),
            "KIDSYNC_REQUEST_TIMEOUT": ("request_timeout", float),
            "KIDSYNC_SYNC_QUEUE_SIZE": ("sync_queue_size", int),
            "KIDSYNC_PIN_ROUNDS": ("pin_rounds", int),
            "KIDSYNC_MAX_PROFILES": ("max_profiles", int),
        }
        for env_key, (field_name, caster) in numeric.items():
            raw = env.get(env_key, "").strip()
            if not raw:
                continue
            try:
                value = caster(raw)
            except ValueError:
                raise ValueError(f"{env_key} must be a number, got {raw!r}")
            if value <= 0:
                raise ValueError(f"{env_key} must be positive, got {raw!r}")
            values[field_name] = value

        # bcrypt accepts 4..31 rounds
        if not 4 <= values.get("pin_rounds", DEFAULT_PIN_ROUNDS) <= 31:
            raise ValueError("KIDSYNC_PIN_ROUNDS must be between 4 and 31")

        return cls(**values)
