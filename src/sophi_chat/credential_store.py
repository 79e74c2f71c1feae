"""
Durable storage for the session bearer token and last-known user profile.

The store is a small YAML file in the config directory. Both values are
cleared together on logout.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from filelock import FileLock

from sophi_chat.config import get_config_dir

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.yaml"

TOKEN_KEY = "token"
PROFILE_KEY = "user_profile"


class CredentialStore:
    """
    File-backed token slot.

    Tokens are opaque strings and are never validated here. Every write goes
    through a lock file and an atomic rename, so a put() is visible to the
    next get() and survives restarts.
    """

    def __init__(self, store_path: Path | None = None):
        self.store_path = Path(store_path) if store_path else get_config_dir() / SESSION_FILENAME
        self.lock_path = self.store_path.with_suffix(".lock")

    def _read_store(self) -> dict[str, Any]:
        """Read the session file with locking. Unreadable files read as empty."""
        if not self.store_path.exists():
            return {}

        try:
            with FileLock(self.lock_path):
                with open(self.store_path, "r") as f:
                    data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read session store {self.store_path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed session store {self.store_path}")
            return {}
        return data

    def _write_store(self, data: dict[str, Any]) -> None:
        """Write the session file with locking."""
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(self.lock_path):
            # Write to temp file first, then rename for atomicity
            temp_path = self.store_path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False)
            os.replace(temp_path, self.store_path)

    def put(self, token: str) -> None:
        """Persist the bearer token."""
        data = self._read_store()
        data[TOKEN_KEY] = token
        self._write_store(data)
        logger.debug("Session token stored")

    def get(self) -> str | None:
        """Return the stored token, or None if there is none."""
        token = self._read_store().get(TOKEN_KEY)
        if not token:
            return None
        return str(token)

    def put_profile(self, profile: dict[str, Any]) -> None:
        """Persist the last-known user profile next to the token."""
        data = self._read_store()
        data[PROFILE_KEY] = profile
        self._write_store(data)

    def get_profile(self) -> dict[str, Any] | None:
        """Return the last-known user profile."""
        profile = self._read_store().get(PROFILE_KEY)
        return profile if isinstance(profile, dict) else None

    def clear(self) -> None:
        """Remove token and profile. Safe to call when nothing is stored."""
        if not self.store_path.parent.exists():
            return
        with FileLock(self.lock_path):
            self.store_path.unlink(missing_ok=True)
        logger.debug("Session store cleared")
