"""Status indicator state and the sink the daemon reports through.

Rendering an icon is left to a front end. `StatusBoard` keeps everything a
front end needs (title, menu lines, counters) and turns user clicks into
`TrayAction` values for the daemon. `StatusSink` lets the daemon report
without caring whether an indicator currently exists.
"""

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from .constants import APP_NAME
from .protocol import RepoDetail

logger = logging.getLogger(APP_NAME)


class TrayStatus(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class TrayAction(Enum):
    TRIGGER_SYNC = "trigger_sync"
    TOGGLE_SUSPEND = "toggle_suspend"
    QUIT = "quit"


def format_time_ago(seconds: float) -> str:
    """Renders an elapsed duration as 'just now', '3 minutes ago', etc."""
    secs = int(seconds)
    if secs < 60:
        return "just now"
    for size, unit in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if secs >= size:
            count = secs // size
            return f"1 {unit} ago" if count == 1 else f"{count} {unit}s ago"
    return "just now"


def abbreviate_path(path: str | Path) -> str:
    """Replaces the home directory prefix with '~'."""
    path = Path(path)
    try:
        return f"~/{path.relative_to(Path.home())}"
    except ValueError:
        return str(path)


class StatusIndicator:
    """Interface for a status indicator. Every method is a no-op here."""

    def set_status(self, status: TrayStatus) -> None:
        pass

    def set_repo_count(self, count: int) -> None:
        pass

    def set_last_sync(self) -> None:
        pass

    def increment_errors(self) -> None:
        pass

    def update_repo_details(self, details: list[RepoDetail]) -> None:
        pass

    def set_check_interval(self, interval: int) -> None:
        pass

    def stop(self) -> None:
        pass


class StatusBoard(StatusIndicator):
    """Headless indicator model.

    Attributes:
        status (TrayStatus): The last reported cycle state.
        error_count (int): Failed repositories since start.
        repo_count (int): Configured repositories (enabled or not).
        check_interval (int): Seconds between automatic cycles.
        details (list[RepoDetail]): Per-repository results of the last cycle.
    """

    def __init__(
        self,
        on_action: Callable[[TrayAction], None],
        is_suspended: Callable[[], bool],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_action = on_action
        self._is_suspended = is_suspended
        self._clock = clock
        self._lock = threading.Lock()
        self._stopped = False

        self.status = TrayStatus.IDLE
        self.error_count = 0
        self.repo_count = 0
        self.check_interval = 0
        self.last_sync: float | None = None
        self.details: list[RepoDetail] = []

    # --- Updates from the daemon ---

    def set_status(self, status: TrayStatus) -> None:
        with self._lock:
            if status != self.status:
                logger.debug(f"Indicator status: {self.status.value} -> {status.value}")
            self.status = status

    def set_repo_count(self, count: int) -> None:
        with self._lock:
            self.repo_count = count

    def set_last_sync(self) -> None:
        with self._lock:
            self.last_sync = self._clock()

    def increment_errors(self) -> None:
        with self._lock:
            self.error_count += 1

    def update_repo_details(self, details: list[RepoDetail]) -> None:
        with self._lock:
            self.details = list(details)

    def set_check_interval(self, interval: int) -> None:
        with self._lock:
            self.check_interval = interval

    def stop(self) -> None:
        with self._lock:
            self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped

    # --- Rendering ---

    def title(self) -> str:
        if self._is_suspended():
            return "Git Autosync - Suspended"
        with self._lock:
            if self.status is TrayStatus.SYNCING:
                return "Git Autosync - Syncing..."
            if self.status is TrayStatus.ERROR:
                return f"Git Autosync - {self.error_count} errors"
        return "Git Autosync"

    def menu_lines(self) -> list[str]:
        suspended = self._is_suspended()
        with self._lock:
            lines = [f"Daemon status: {'Suspended' if suspended else 'Active'}"]
            if self.check_interval > 0:
                lines.append(f"Check interval: {self.check_interval} seconds")
            if self.last_sync is None:
                lines.append("Last sync: never")
            else:
                elapsed = self._clock() - self.last_sync
                lines.append(f"Last sync: {format_time_ago(elapsed)}")

            lines.append(f"Repositories ({self.repo_count})")
            if not self.details:
                lines.append("  (no sync data yet)")
            for detail in self.details:
                icon = "✗" if detail.error else "✓"
                lines.append(f"  {icon} {abbreviate_path(detail.path)}")

        lines.append("Resume" if suspended else "Suspend")
        return lines

    # --- User actions ---

    def request_sync(self) -> None:
        """'Sync Now'. Disabled while suspended."""
        if self._is_suspended():
            return
        self._on_action(TrayAction.TRIGGER_SYNC)

    def toggle_suspend(self) -> None:
        self._on_action(TrayAction.TOGGLE_SUSPEND)

    def quit(self) -> None:
        self._on_action(TrayAction.QUIT)


class StatusSink:
    """Thread-safe holder for the optional indicator.

    Every report is forwarded to the current indicator, or dropped when there
    is none. Indicator failures are logged and never reach the caller.
    """

    def __init__(self, factory: Callable[[], StatusIndicator]):
        self._factory = factory
        self._lock = threading.Lock()
        self._indicator: StatusIndicator | None = None

    @property
    def indicator(self) -> StatusIndicator | None:
        with self._lock:
            return self._indicator

    @property
    def enabled(self) -> bool:
        return self.indicator is not None

    def enable(self, repo_count: int, check_interval: int) -> None:
        """Creates the indicator if it is not running yet."""
        with self._lock:
            if self._indicator is not None:
                return
            try:
                indicator = self._factory()
            except Exception as e:
                logger.error(f"INDICATOR ERROR: Failed to start: {e}")
                return
            self._indicator = indicator
        logger.info("Status indicator started")
        self.set_repo_count(repo_count)
        self.set_check_interval(check_interval)

    def disable(self) -> None:
        """Stops and drops the indicator if one is running."""
        with self._lock:
            indicator, self._indicator = self._indicator, None
        if indicator is not None:
            self._call(indicator, "stop")
            logger.info("Status indicator stopped")

    def _forward(self, method: str, *args) -> None:
        indicator = self.indicator
        if indicator is not None:
            self._call(indicator, method, *args)

    @staticmethod
    def _call(indicator: StatusIndicator, method: str, *args) -> None:
        try:
            getattr(indicator, method)(*args)
        except Exception as e:
            logger.warning(f"INDICATOR ERROR: {method} failed: {e}")

    def set_status(self, status: TrayStatus) -> None:
        self._forward("set_status", status)

    def set_repo_count(self, count: int) -> None:
        self._forward("set_repo_count", count)

    def set_check_interval(self, interval: int) -> None:
        self._forward("set_check_interval", interval)

    def report_cycle(self, details: list[RepoDetail]) -> None:
        """Records the end of a cycle: IDLE with a fresh timestamp, or ERROR."""
        self._forward("update_repo_details", details)
        failures = sum(1 for d in details if d.error)
        if failures:
            for _ in range(failures):
                self._forward("increment_errors")
            self._forward("set_status", TrayStatus.ERROR)
        else:
            self._forward("set_last_sync")
            self._forward("set_status", TrayStatus.IDLE)

