"""
Logging configuration for the Sophi Chat client.

Sets up a console handler and a per-session log file in the config directory.
"""

import logging
import sys
from pathlib import Path

from sophi_chat.config import get_config_dir

LOG_FILENAME = "sophi_chat.log"


def get_log_file() -> Path:
    """Get platform-specific log file path."""
    return get_config_dir() / LOG_FILENAME


def setup_logging(
    verbose: bool = False,
    component: str = "client",
    wipe_on_startup: bool = True,
    log_file: Path | None = None,
) -> logging.Logger:
    """
    Set up logging with file and console handlers.

    Args:
        verbose: Enable verbose debug logging
        component: Component name for log messages
        wipe_on_startup: Whether to wipe the log file on startup
        log_file: Override for the log file location

    Returns:
        Logger instance for the component
    """
    level = logging.DEBUG if verbose else logging.INFO

    verbose_formatter = logging.Formatter(
        f"%(asctime)s - [{component}] %(name)s - %(levelname)s - "
        f"[%(filename)s:%(lineno)d] - %(message)s"
    )
    console_formatter = logging.Formatter(
        f"%(asctime)s - [{component}] %(name)s - %(levelname)s - %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    has_file_handler = any(
        isinstance(h, logging.FileHandler) for h in root_logger.handlers
    )

    if not has_file_handler:
        root_logger.handlers.clear()

    has_console_handler = any(
        isinstance(h, logging.StreamHandler)
        and not isinstance(h, logging.FileHandler)
        and h.stream == sys.stdout
        for h in root_logger.handlers
    )
    if not has_console_handler:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    if not has_file_handler:
        try:
            path = log_file or get_log_file()

            # Wipe log file on startup for clean logs each session
            if wipe_on_startup and path.exists():
                path.unlink()

            file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)  # Always log DEBUG to file
            file_handler.setFormatter(verbose_formatter)
            root_logger.addHandler(file_handler)

        except OSError as e:
            print(f"Warning: Could not set up file logging: {e}")

    # Third-party transport loggers are noisy at DEBUG
    transport_level = logging.DEBUG if verbose else logging.WARNING
    for name in ("aiohttp", "aiohttp.client", "socketio", "engineio"):
        logging.getLogger(name).setLevel(transport_level)

    if verbose:
        logger = logging.getLogger(component)
        logger.info("=" * 60)
        logger.info("VERBOSE MODE ENABLED - transport diagnostics active")
        logger.info("=" * 60)

    return logging.getLogger(component)
