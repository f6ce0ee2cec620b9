"""Settings and saved-connection storage for SiteBackup.

All settings are stored as JSON files under ``~/.sitebackup/``.
Nothing secret is written to disk: the key passphrase, if any, lives in the
OS keyring (see :mod:`sitebackup.connection`).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from sitebackup.connection import SshConnectionConfig
from sitebackup.retry import RetryPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "connect_timeout": 30,
    "chunk_size": 256 * 1024,
    "progress_interval": 3,
    "progress_byte_threshold": 50 * 1024 * 1024,
    "max_depth": 50,
    "retry_initial_interval": 1.0,
    "retry_multiplier": 2.0,
    "retry_max_interval": 60.0,
    "retry_max_elapsed": 300.0,
    "retry_jitter": 0.1,
    "remote_folder": "",
    "local_folder": str(Path.home() / "SiteBackups"),
}

_CONNECTION_FIELDS = ("hostname", "port", "username", "key_path")
_SECRET_KEYS = frozenset({"password", "passphrase"})

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and the saved server connection.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt file triggers a warning and
    a safe reset; it never crashes the application.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.sitebackup/`` if necessary."""
        self._base = base_dir or Path.home() / ".sitebackup"
        self._config_path = self._base / "config.json"
        self._connection_path = self._base / "connection.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        if key in _SECRET_KEYS:
            raise ValueError(f"'{key}' must not be stored in the config file")
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Engine settings
    # ------------------------------------------------------------------

    def retry_policy(self) -> RetryPolicy:
        """Build a :class:`RetryPolicy` from the ``retry_*`` settings."""
        return RetryPolicy(
            initial_interval=float(self.get("retry_initial_interval")),
            multiplier=float(self.get("retry_multiplier")),
            max_interval=float(self.get("retry_max_interval")),
            max_elapsed=float(self.get("retry_max_elapsed")),
            jitter=float(self.get("retry_jitter")),
        )

    def engine_options(self) -> dict[str, Any]:
        """Keyword arguments for :class:`~sitebackup.transfer.BackupEngine`."""
        return {
            "chunk_size": int(self.get("chunk_size")),
            "max_depth": int(self.get("max_depth")),
            "retry_policy": self.retry_policy(),
            "progress_interval": float(self.get("progress_interval")),
            "progress_byte_threshold": int(self.get("progress_byte_threshold")),
        }

    # ------------------------------------------------------------------
    # Saved connection
    # ------------------------------------------------------------------

    def get_connection(self) -> SshConnectionConfig | None:
        """Return the saved connection, or ``None`` if absent or invalid."""
        if not self._connection_path.exists():
            return None
        try:
            loaded = json.loads(self._connection_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Connection root must be a JSON object")
            config = SshConnectionConfig(**{name: loaded.get(name) for name in _CONNECTION_FIELDS})
            config.validate()
            return config
        except (json.JSONDecodeError, ValueError, TypeError, OSError) as exc:
            logger.warning("Invalid connection.json (%s) — ignoring saved connection", exc)
            return None

    def save_connection(self, config: SshConnectionConfig) -> None:
        """Validate and persist *config* as the saved connection."""
        config.validate()
        data = {name: getattr(config, name) for name in _CONNECTION_FIELDS}
        self._atomic_write(self._connection_path, data)
        logger.info("Connection saved: %s", config.display)

    def clear_connection(self) -> bool:
        """Delete the saved connection.

        Returns ``True`` if one was deleted, ``False`` if none existed.
        """
        if not self._connection_path.exists():
            return False
        self._connection_path.unlink()
        logger.info("Saved connection removed")
        return True
