import os
from pathlib import Path

"""Global constants and path definitions for Git Autosync.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the defaults applied when the configuration file omits a
value.
"""

# --- Identity ---
APP_NAME = "git-autosync"
"""str: The human-readable application name."""

APP_LABEL = "git-autosync"
"""str: The service unit name used for the systemd user service."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / APP_NAME
"""Path: The directory for runtime state data (logs)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

_XDG_CONFIG = os.environ.get("XDG_CONFIG_HOME")
_BASE_CONFIG = Path(_XDG_CONFIG) if _XDG_CONFIG else Path.home() / ".config"

CONFIG_DIR: Path = _BASE_CONFIG / APP_NAME
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

SOCKET_FILE: Path = CONFIG_DIR / "daemon.sock"
"""Path: The Unix domain socket the daemon listens on."""

# --- Sync Defaults ---
DEFAULT_CHECK_INTERVAL = 300
"""int: Seconds between automatic sync cycles (5 minutes)."""

DEFAULT_COMMIT_TEMPLATE = "Auto-commit: {timestamp}"
"""str: Commit message template used when a repository does not set one."""

STARTUP_COMMIT_MESSAGE = "Auto-commit on daemon startup"
"""str: Commit message used when reconciling a repository at startup or on add."""

REMOTE_NAME = "origin"
"""str: The only remote the daemon pushes to and pulls from."""

# --- IPC ---
CONNECTION_TIMEOUT = 30.0
"""float: Seconds a client may stay silent before its connection is dropped."""

MAX_LOG_SIZE = 5 * 1024 * 1024
"""int: Max bytes for the daemon log file before rotation."""
