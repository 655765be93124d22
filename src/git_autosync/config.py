import json
import logging
import os
import re
import threading
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_COMMIT_TEMPLATE,
)

logger = logging.getLogger(APP_NAME)


class ConfigError(ValueError):
    """Raised when a configuration file cannot be read or is structurally invalid."""


def parse_time(value: int | str) -> int:
    """Converts time strings (e.g., "300", "1hr", "30m") to seconds.

    A bare number is taken as seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(?:(s|sec|m|min|h|hr)s?)?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2) or "s"
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def expand_path(value: str | Path) -> Path:
    """Expands '~' and normalizes a repository path without touching the disk.

    Raises:
        ConfigError: If the path is relative after expansion.
    """
    path = Path(os.path.expanduser(str(value)))
    if not path.is_absolute():
        raise ConfigError(f"Repository path must be absolute: {value}")
    return Path(os.path.normpath(path))


@dataclass(frozen=True)
class RepositoryConfig:
    """A single tracked working copy.

    Attributes:
        path (Path): Absolute path to the working copy. Unique across the config.
        enabled (bool): Whether the daemon syncs this repository.
        commit_message_template (str): Message template with {timestamp},
            {date} and {time} placeholders.
    """

    path: Path
    enabled: bool = True
    commit_message_template: str = DEFAULT_COMMIT_TEMPLATE


@dataclass(frozen=True)
class Config:
    """The process-wide daemon configuration.

    Instances are immutable: a reload builds a new value and swaps it into the
    ConfigStore wholesale.

    Attributes:
        check_interval (int): Seconds between automatic sync cycles.
        enable_tray (bool): Whether the status indicator should run.
        repositories (tuple[RepositoryConfig, ...]): Tracked repositories, in
            sync order.
    """

    check_interval: int = DEFAULT_CHECK_INTERVAL
    enable_tray: bool = True
    repositories: tuple[RepositoryConfig, ...] = field(default_factory=tuple)

    def enabled_repositories(self) -> list[RepositoryConfig]:
        """Returns the repositories the daemon is allowed to sync, in order."""
        return [r for r in self.repositories if r.enabled]

    def find(self, path: Path) -> RepositoryConfig | None:
        """Looks up a repository by its path."""
        for repo in self.repositories:
            if repo.path == path:
                return repo
        return None

    def with_repositories(self, repositories: list[RepositoryConfig]) -> "Config":
        """Returns a copy with the repository list replaced."""
        return replace(self, repositories=tuple(repositories))

    @classmethod
    def load(cls, path: Path = CONFIG_FILE) -> "Config":
        """Parses a TOML configuration file.

        Args:
            path (Path): The file to read.

        Returns:
            Config: The parsed configuration.

        Raises:
            ConfigError: If the file is unreadable, is not valid TOML, or has an
                invalid structure. Callers keep their previous value in that case.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Config syntax error in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Builds a Config from decoded TOML data.

        Raises:
            ConfigError: On structural errors (bad interval, bad repository entries,
                duplicate paths).
        """
        unknown = set(data) - {"daemon", "repositories"}
        if unknown:
            logger.warning(
                f"Unknown config sections: {', '.join(sorted(unknown))}. Ignoring."
            )

        daemon = data.get("daemon", {})
        if not isinstance(daemon, dict):
            raise ConfigError("[daemon] must be a table")
        _warn_unknown("daemon", daemon, {"check_interval", "enable_tray"})

        try:
            interval = parse_time(daemon.get("check_interval", DEFAULT_CHECK_INTERVAL))
        except ValueError as e:
            raise ConfigError(f"Config error in [daemon].check_interval: {e}") from e
        if interval <= 0:
            raise ConfigError("[daemon].check_interval must be positive")

        enable_tray = daemon.get("enable_tray", True)
        if not isinstance(enable_tray, bool):
            raise ConfigError("[daemon].enable_tray must be true or false")

        raw_repos = data.get("repositories", [])
        if not isinstance(raw_repos, list):
            raise ConfigError("[[repositories]] must be an array of tables")

        repositories: list[RepositoryConfig] = []
        seen: set[Path] = set()
        for index, entry in enumerate(raw_repos):
            repo = _parse_repository(index, entry)
            if repo.path in seen:
                raise ConfigError(f"Duplicate repository path: {repo.path}")
            seen.add(repo.path)
            repositories.append(repo)

        return cls(
            check_interval=interval,
            enable_tray=enable_tray,
            repositories=tuple(repositories),
        )

    @classmethod
    def load_or_create_default(cls, path: Path = CONFIG_FILE) -> "Config":
        """Loads the config file, writing a default one first if it is missing."""
        if path.exists():
            return cls.load(path)

        instance = cls()
        instance.save(path)
        logger.info(f"Created default configuration at {path}")
        return instance

    def to_toml(self) -> str:
        """Serializes the configuration to TOML text."""
        lines = [
            "# Git Autosync Configuration",
            "",
            "[daemon]",
            f"check_interval = {self.check_interval}",
            f"enable_tray = {_toml_bool(self.enable_tray)}",
        ]
        for repo in self.repositories:
            lines += [
                "",
                "[[repositories]]",
                f"path = {_toml_str(str(repo.path))}",
                f"enabled = {_toml_bool(repo.enabled)}",
                f"commit_message_template = {_toml_str(repo.commit_message_template)}",
            ]
        return "\n".join(lines) + "\n"

    def save(self, path: Path = CONFIG_FILE) -> None:
        """Writes the configuration to disk atomically.

        The file is written to a sibling temp file and swapped in, so a watcher
        never observes a half-written config.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = path.with_suffix(".tmp")
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                f.write(self.to_toml())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, path)
        except OSError:
            tmp_file.unlink(missing_ok=True)
            raise


def _warn_unknown(section: str, table: dict, valid: set[str]) -> None:
    invalid_keys = set(table) - valid
    if invalid_keys:
        logger.warning(
            f"Unknown config keys in [{section}]: "
            f"{', '.join(sorted(invalid_keys))}. Ignoring."
        )


def _parse_repository(index: int, entry: Any) -> RepositoryConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"repositories[{index}] must be a table")
    _warn_unknown(
        "repositories", entry, {"path", "enabled", "commit_message_template"}
    )

    raw_path = entry.get("path")
    if not isinstance(raw_path, str) or not raw_path.strip():
        raise ConfigError(f"repositories[{index}].path is required")

    enabled = entry.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"repositories[{index}].enabled must be true or false")

    template = entry.get("commit_message_template", DEFAULT_COMMIT_TEMPLATE)
    if not isinstance(template, str):
        raise ConfigError(
            f"repositories[{index}].commit_message_template must be a string"
        )

    return RepositoryConfig(
        path=expand_path(raw_path),
        enabled=enabled,
        commit_message_template=template,
    )


def _toml_str(value: str) -> str:
    # JSON string escapes are a subset of TOML basic-string escapes. JSON leaves
    # DEL raw, which TOML forbids.
    return json.dumps(value, ensure_ascii=False).replace("\x7f", "\\u007f")


def _toml_bool(value: bool) -> str:
    return "true" if value else "false"


class ConfigStore:
    """A versioned, thread-safe handle to the active Config.

    Readers take a snapshot (the immutable Config itself); the single writer
    replaces the whole value. Because Config is frozen, a snapshot can never be
    observed half-updated.
    """

    def __init__(self, config: Config):
        self._lock = threading.Lock()
        self._config = config
        self._version = 0

    def snapshot(self) -> Config:
        """Returns the currently active configuration."""
        with self._lock:
            return self._config

    @property
    def version(self) -> int:
        """Monotonic counter incremented on every replace."""
        with self._lock:
            return self._version

    def replace(self, config: Config) -> Config:
        """Atomically swaps in a new configuration.

        Returns:
            Config: The previous value.
        """
        with self._lock:
            old = self._config
            self._config = config
            self._version += 1
            return old
