"""
Client configuration management for Sophi Chat.

Handles loading and saving client configuration from:
- Platform-specific config directories
- Command line arguments (applied by the entry point)

Thread/process safety:
- Uses file locking (fcntl on Linux, skipped on Windows)
- Uses atomic writes (write to temp file, then rename)
"""

import logging
import os
import platform
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# File locking support (Linux/Unix only)
# Windows doesn't have fcntl - skip locking there
fcntl = None  # type: ignore[assignment]
try:
    import fcntl as _fcntl

    fcntl = _fcntl
except ImportError:
    pass

APP_DIR_NAME = "SophiChat"
CONFIG_FILENAME = "client.yaml"

DEFAULT_GREETING = (
    "Hello! I'm Sophi, your chat assistant. How can I help you today?"
)


def get_config_dir() -> Path:
    """
    Get platform-specific configuration directory.

    Returns:
        Path to user config directory:
        - Linux: ~/.config/SophiChat/
        - Windows: ~/Documents/SophiChat/
        - macOS: ~/Library/Application Support/SophiChat/
    """
    system = platform.system()

    if system == "Windows":
        config_dir = Path.home() / "Documents" / APP_DIR_NAME
    elif system == "Darwin":  # macOS
        config_dir = Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    else:  # Linux and others
        xdg_config = os.environ.get("XDG_CONFIG_HOME")
        if xdg_config:
            config_dir = Path(xdg_config) / APP_DIR_NAME
        else:
            config_dir = Path.home() / ".config" / APP_DIR_NAME

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_default_config() -> dict[str, Any]:
    """Get default client configuration."""
    return {
        "server": {
            "host": "localhost",
            "port": 8000,
            "use_https": False,
            "timeout": 30,
        },
        "realtime": {
            "url": "",  # Empty means "same origin as the server"
            "socketio_path": "socket.io",
            "connect_timeout": 10,
            "reconnect_attempts": 5,
            "reconnect_delay": 1.0,
            "liveness_delay": 3.0,
        },
        "assets": {
            "base_url": "",  # Empty means "same origin as the server"
        },
        "recording": {
            "sample_rate": 16000,
            "device_index": None,
            "chunk_interval": 0.25,
            "max_duration": 30,
        },
        "chat": {
            "assistant_name": "Sophi",
            "greeting": DEFAULT_GREETING,
        },
    }


class ClientConfig:
    """Client configuration manager."""

    def __init__(self, config_path: Path | None = None):
        """
        Initialize client configuration.

        Args:
            config_path: Optional path to config file
        """
        if config_path:
            self.config_path = config_path
        else:
            self.config_path = get_config_dir() / CONFIG_FILENAME

        self.config = get_default_config()
        self._load()

    def _load(self) -> None:
        """Load configuration from file with shared lock for thread/process safety."""
        if not self.config_path.exists():
            logger.info(f"Config file not found at {self.config_path}, using defaults")
            return

        try:
            with open(self.config_path) as f:
                if fcntl is not None:
                    fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    loaded = yaml.safe_load(f) or {}
                    if isinstance(loaded, dict):
                        self._deep_merge(self.config, loaded)
                    else:
                        logger.warning(
                            f"Ignoring config at {self.config_path}: top level is not a mapping"
                        )
                finally:
                    if fcntl is not None:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        """Deep merge override into base dict."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def save(self) -> bool:
        """
        Save configuration to file with exclusive lock and atomic write.

        Uses atomic write pattern (write to temp file, then rename) to prevent
        file corruption if the process is interrupted during write.
        """
        tmp_path = None
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            tmp_path = self.config_path.with_suffix(".tmp")
            with open(tmp_path, "w") as f:
                if fcntl is not None:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    yaml.safe_dump(self.config, f, default_flow_style=False)
                finally:
                    if fcntl is not None:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)

            os.replace(tmp_path, self.config_path)
            logger.info(f"Config saved to {self.config_path}")
            return True
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to save config to {self.config_path}: {e}")
            if tmp_path and tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            return False

    def get(self, *keys: str, default: Any = None) -> Any:
        """Get a configuration value by path."""
        value = self.config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return default
            if value is None:
                return default
        return value

    def set(self, *keys: str, value: Any) -> None:
        """Set a configuration value by path."""
        d = self.config
        for key in keys[:-1]:
            if key not in d:
                d[key] = {}
            d = d[key]
        d[keys[-1]] = value

    @property
    def server_host(self) -> str:
        """Get server host with protocol, port and trailing slashes stripped."""
        return self._sanitize_hostname(self.get("server", "host", default="localhost"))

    def _sanitize_hostname(self, hostname: str) -> str:
        """
        Sanitize hostname by removing protocol, port, and trailing slashes.

        Examples:
            https://example.com:8443/ -> example.com
            example.com:8080 -> example.com
        """
        if not hostname:
            return "localhost"

        if "://" in hostname:
            hostname = hostname.split("://", 1)[1]

        if ":" in hostname:
            hostname = hostname.split(":", 1)[0]

        hostname = hostname.rstrip("/").strip()

        return hostname or "localhost"

    @property
    def server_port(self) -> int:
        """Get server port."""
        return int(self.get("server", "port", default=8000))

    @property
    def use_https(self) -> bool:
        """Check if HTTPS should be used."""
        return bool(self.get("server", "use_https", default=False))

    @property
    def server_url(self) -> str:
        """Base URL of the HTTP API (token and profile endpoints)."""
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.server_host}:{self.server_port}"

    @property
    def realtime_url(self) -> str:
        """URL of the Socket.IO server."""
        url = (self.get("realtime", "url", default="") or "").strip()
        return url.rstrip("/") if url else self.server_url

    @property
    def asset_base_url(self) -> str:
        """Base URL used to resolve relative graph paths."""
        url = (self.get("assets", "base_url", default="") or "").strip()
        return url.rstrip("/") if url else self.server_url
