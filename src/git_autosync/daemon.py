import argparse
import heapq
import itertools
import logging
import queue
import signal
import sys
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import IntEnum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import Any

from .config import Config, ConfigError, ConfigStore
from .constants import APP_NAME, CONFIG_FILE, LOG_FILE, MAX_LOG_SIZE, SOCKET_FILE
from .ipc import IpcServer, handle_connection
from .protocol import (
    Command,
    CommandKind,
    RepoDetail,
    Response,
    StatusData,
    TriggerData,
)
from .status import StatusBoard, StatusIndicator, StatusSink, TrayAction, TrayStatus
from .sync import SyncEngine, SyncOutcome
from .system import get_system
from .watcher import ConfigWatcher

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


class EventKind(IntEnum):
    """Event sources, in the order the loop serves them when several are ready."""

    SHUTDOWN = 0
    CONNECTION = 1
    TICK = 2
    RELOAD = 3
    ACTION = 4


@dataclass(frozen=True)
class Event:
    kind: EventKind
    payload: Any = None


class EventInbox:
    """Multi-producer inbox with priority selection on the consumer side.

    Producers (ticker, accept thread, watcher, indicator, signal handlers) call
    `post()`, which never blocks and is safe inside a signal handler. The loop
    calls `next_event()`, which moves everything already posted into a heap and
    returns the most urgent event. Events of one kind come out in post order.
    """

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[Event] = queue.SimpleQueue()
        self._heap: list[tuple[int, int, Event]] = []
        self._seq = itertools.count()

    def post(self, kind: EventKind, payload: Any = None) -> None:
        self._queue.put(Event(kind, payload))

    def _push(self, event: Event) -> None:
        heapq.heappush(self._heap, (int(event.kind), next(self._seq), event))

    def next_event(self, timeout: float | None = None) -> Event | None:
        """Returns the highest-priority ready event.

        Args:
            timeout (float | None): How long to wait when nothing is ready.

        Returns:
            Event | None: The event, or None if the timeout expired.
        """
        if not self._heap:
            try:
                self._push(self._queue.get(timeout=timeout))
            except queue.Empty:
                return None
        while True:
            try:
                self._push(self._queue.get_nowait())
            except queue.Empty:
                break
        return heapq.heappop(self._heap)[2]

    def drain(self) -> list[Event]:
        """Removes and returns every pending event, most urgent first."""
        pending = []
        while (event := self.next_event(timeout=0)) is not None:
            pending.append(event)
        return pending


class Ticker:
    """Posts a tick every `interval` seconds on a background thread.

    `rearm()` changes the interval and restarts the countdown from now.
    """

    def __init__(self, interval: int, on_tick: Callable[[], None]):
        self._interval = interval
        self._on_tick = on_tick
        self._cond = threading.Condition()
        self._rearmed = False
        self._stopped = False
        self._thread: threading.Thread | None = None

    @property
    def interval(self) -> int:
        with self._cond:
            return self._interval

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="ticker", daemon=True)
        self._thread.start()

    def rearm(self, interval: int) -> None:
        with self._cond:
            self._interval = interval
            self._rearmed = True
            self._cond.notify_all()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                self._rearmed = False
                deadline = time.monotonic() + self._interval
                while not (self._stopped or self._rearmed):
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                if self._stopped or self._rearmed:
                    continue
                self._on_tick()


class DaemonCore:
    """The long-lived orchestration core.

    Owns the shared configuration and every event source, and arbitrates
    between them on the calling thread (`run()`). Blocking work (sync cycles,
    IPC requests, reloads) runs on worker threads so the loop stays responsive.

    Attributes:
        store (ConfigStore): The active configuration.
        engine (SyncEngine): Runs per-repository syncs.
        inbox (EventInbox): Where every source posts its events.
        suspended (threading.Event): Set while automatic syncing is paused.
        status (StatusSink): The optional status indicator.
    """

    def __init__(
        self,
        config: Config,
        config_path: Path = CONFIG_FILE,
        socket_path: Path = SOCKET_FILE,
        engine: SyncEngine | None = None,
        indicator_factory: Callable[[], StatusIndicator] | None = None,
    ):
        self.config_path = config_path
        self.store = ConfigStore(config)
        self.engine = engine or SyncEngine(get_system())
        self.inbox = EventInbox()
        self.suspended = threading.Event()
        self.start_time = time.monotonic()

        self.ticker = Ticker(
            config.check_interval, lambda: self.inbox.post(EventKind.TICK)
        )
        self.ipc = IpcServer(
            lambda conn: self.inbox.post(EventKind.CONNECTION, conn), socket_path
        )
        self.watcher = ConfigWatcher(
            config_path, lambda: self.inbox.post(EventKind.RELOAD)
        )
        self.status = StatusSink(indicator_factory or self._make_indicator)

        self._workers: list[threading.Thread] = []
        self._workers_lock = threading.Lock()
        self._cycle_running = threading.Lock()
        self._reload_pool = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="reload"
        )

    def _make_indicator(self) -> StatusIndicator:
        return StatusBoard(
            on_action=lambda action: self.inbox.post(EventKind.ACTION, action),
            is_suspended=self.suspended.is_set,
        )

    # --- Lifecycle ---

    def start(self) -> None:
        """Binds the IPC socket, reconciles repositories, starts event sources.

        The socket is bound first so a second instance exits before touching
        any repository.

        Raises:
            OSError: If the IPC socket cannot be bound.
        """
        config = self.store.snapshot()
        self.ipc.bind()
        logger.info(
            f"Starting with {len(config.repositories)} repositories "
            f"(check interval: {config.check_interval}s)"
        )

        for repo in config.enabled_repositories():
            logger.info(f"Initializing {repo.path}")
            self._log_outcome(self.engine.initialize(repo))

        self.ipc.start()
        self.ticker.start()
        try:
            self.watcher.start()
        except OSError as e:
            logger.error(f"WATCH ERROR: Hot reload disabled: {e}")

        if config.enable_tray:
            self.status.enable(len(config.repositories), config.check_interval)

    def run(self, poll_interval: float = 1.0) -> None:
        """Serves events until SHUTDOWN or a QUIT action.

        Args:
            poll_interval (float): Upper bound on how long the loop blocks, so
                signal handlers get a chance to run.
        """
        logger.info("Daemon running")
        while True:
            event = self.inbox.next_event(timeout=poll_interval)
            if event is None:
                continue
            try:
                if not self.handle_event(event):
                    return
            except Exception:
                logger.exception(f"LOOP ERROR: Handler for {event.kind.name} failed")

    def handle_event(self, event: Event) -> bool:
        """Dispatches one event.

        Returns:
            bool: False when the loop should exit.
        """
        if event.kind is EventKind.SHUTDOWN:
            logger.info("Shutdown requested")
            return False

        if event.kind is EventKind.CONNECTION:
            self._spawn(
                handle_connection, event.payload, self.handle_command, name="ipc-conn"
            )
        elif event.kind is EventKind.TICK:
            if self.suspended.is_set():
                logger.debug("SKIPPED tick: Daemon is suspended.")
            else:
                self._start_automatic_cycle()
        elif event.kind is EventKind.RELOAD:
            self._reload_pool.submit(self._reload_safely)
        elif event.kind is EventKind.ACTION:
            return self._handle_action(event.payload)
        return True

    def _handle_action(self, action: TrayAction) -> bool:
        if action is TrayAction.QUIT:
            logger.info("Quit requested from status indicator")
            return False
        if action is TrayAction.TOGGLE_SUSPEND:
            self.set_suspended(not self.suspended.is_set())
        elif action is TrayAction.TRIGGER_SYNC:
            if self.suspended.is_set():
                logger.info("SKIPPED manual sync: Daemon is suspended.")
            else:
                self._start_automatic_cycle()
        else:
            logger.warning(f"Unknown indicator action: {action!r}")
        return True

    def shutdown(self) -> None:
        """Stops every source and waits for in-flight work, then cleans up."""
        logger.info("Shutting down...")
        self.ticker.stop()
        self.watcher.stop()
        self.ipc.close()

        for event in self.inbox.drain():
            if event.kind is EventKind.CONNECTION:
                event.payload.close()

        self._reload_pool.shutdown(wait=True)
        self.join_workers()
        self.ipc.remove_socket()
        self.status.disable()
        logger.info("Daemon stopped")

    # --- Workers ---

    def _spawn(self, target: Callable, *args, name: str) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._workers_lock:
            self._workers = [t for t in self._workers if t.is_alive()]
            self._workers.append(thread)
        thread.start()
        return thread

    def join_workers(self, timeout: float | None = None) -> None:
        with self._workers_lock:
            workers = list(self._workers)
        for thread in workers:
            thread.join(timeout)

    # --- Sync cycles ---

    def _start_automatic_cycle(self) -> None:
        if not self._cycle_running.acquire(blocking=False):
            logger.info("SKIPPED tick: Previous cycle still running.")
            return
        self._spawn(self._automatic_cycle, name="sync-cycle")

    def _automatic_cycle(self) -> None:
        try:
            self.run_cycle()
        except Exception:
            logger.exception("CYCLE ERROR")
            self.status.set_status(TrayStatus.ERROR)
        finally:
            self._cycle_running.release()

    def run_cycle(self) -> TriggerData:
        """Syncs every enabled repository of the current snapshot, in order.

        Returns:
            TriggerData: Per-repository results.
        """
        config = self.store.snapshot()
        self.status.set_status(TrayStatus.SYNCING)

        details = []
        for repo in config.enabled_repositories():
            outcome = self.engine.sync(repo)
            self._log_outcome(outcome)
            details.append(
                RepoDetail(
                    path=str(outcome.path),
                    committed=outcome.committed,
                    files_changed=outcome.files_changed,
                    error=outcome.error,
                    warning=outcome.warning,
                )
            )

        self.status.report_cycle(details)
        data = TriggerData(
            repos_checked=len(details),
            repos_committed=sum(1 for d in details if d.committed),
            details=details,
        )
        logger.info(
            f"CYCLE: Checked {data.repos_checked} repositories, "
            f"committed changes in {data.repos_committed}"
        )
        return data

    @staticmethod
    def _log_outcome(outcome: SyncOutcome) -> None:
        if outcome.error:
            logger.error(f"FAILED {outcome.path}: {outcome.error}")
        elif outcome.warning:
            logger.warning(f"PARTIAL {outcome.path}: {outcome.warning}")

    # --- Suspend ---

    def set_suspended(self, value: bool) -> bool:
        """Sets the suspended flag.

        Returns:
            bool: Whether the flag changed.
        """
        if value == self.suspended.is_set():
            return False
        if value:
            self.suspended.set()
            logger.info("SUSPENDED: Automatic sync paused.")
        else:
            self.suspended.clear()
            logger.info("RESUMED: Automatic sync active.")
        return True

    # --- Reload ---

    def _reload_safely(self) -> None:
        try:
            self.reload()
        except Exception:
            logger.exception("RELOAD ERROR")

    def reload(self) -> None:
        """Re-reads the config file and applies the difference.

        Repositories whose path was not configured before are initialized.
        A file that fails to load leaves the active configuration untouched.
        """
        try:
            new = Config.load(self.config_path)
        except ConfigError as e:
            logger.error(f"RELOAD ERROR: {e}. Keeping previous configuration.")
            return

        old = self.store.snapshot()
        old_paths = {r.path for r in old.repositories}
        for repo in new.enabled_repositories():
            if repo.path not in old_paths:
                logger.info(f"New repository detected: {repo.path}")
                self._log_outcome(self.engine.initialize(repo))

        self.store.replace(new)

        if new.check_interval != old.check_interval:
            logger.info(
                f"Check interval changed: {old.check_interval}s -> "
                f"{new.check_interval}s"
            )
            self.ticker.rearm(new.check_interval)

        if new.enable_tray and not old.enable_tray:
            self.status.enable(len(new.repositories), new.check_interval)
        elif old.enable_tray and not new.enable_tray:
            self.status.disable()

        self.status.set_repo_count(len(new.repositories))
        self.status.set_check_interval(new.check_interval)
        logger.info(f"Configuration reloaded ({len(new.repositories)} repositories)")

    # --- IPC ---

    def handle_command(self, command: Command) -> Response:
        """Executes one IPC command. Never raises."""
        try:
            return self._execute(command)
        except Exception as e:
            logger.exception(f"IPC ERROR: {command.kind.value} failed")
            return Response.error(f"Internal error: {e}")

    def _execute(self, command: Command) -> Response:
        if command.kind is CommandKind.PING:
            return Response.success("pong")

        if command.kind is CommandKind.STATUS:
            config = self.store.snapshot()
            return Response.success(
                "Daemon status",
                StatusData(
                    uptime_seconds=int(time.monotonic() - self.start_time),
                    check_interval_seconds=config.check_interval,
                    repositories_count=len(config.repositories),
                    suspended=self.suspended.is_set(),
                ),
            )

        if command.kind is CommandKind.TRIGGER:
            if self.suspended.is_set():
                return Response.success(
                    "Daemon is suspended; no repositories checked",
                    TriggerData(repos_checked=0, repos_committed=0),
                )
            data = self.run_cycle()
            return Response.success(
                f"Checked {data.repos_checked} repositories, "
                f"committed changes in {data.repos_committed}",
                data,
            )

        if command.kind is CommandKind.SUSPEND:
            changed = self.set_suspended(True)
            return Response.success(
                "Daemon suspended" if changed else "Daemon already suspended"
            )

        if command.kind is CommandKind.RESUME:
            changed = self.set_suspended(False)
            return Response.success(
                "Daemon resumed" if changed else "Daemon is not suspended"
            )

        return Response.error(f"Unsupported command: {command.kind.value}")


def setup_logging(interactive: bool) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to file/stderr
                            with rotation enabled.
    """
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to stderr (captured by systemd/launchd).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=MAX_LOG_SIZE,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def main(argv: list[str] | None = None) -> None:
    """Daemon entry point.

    Loads (or creates) the configuration, starts the core and serves events
    until SIGTERM/SIGINT or a quit action. Exits with status 1 if the
    configuration cannot be loaded or the socket cannot be bound.
    """
    parser = argparse.ArgumentParser(
        prog=f"{APP_NAME}-daemon", description="Git Autosync background daemon"
    )
    parser.add_argument(
        "--foreground", action="store_true", help="Log to stdout instead of file"
    )
    args = parser.parse_args(argv)

    setup_logging(interactive=args.foreground)

    try:
        config = Config.load_or_create_default(CONFIG_FILE)
    except (ConfigError, OSError) as e:
        logger.critical(f"CRITICAL: Cannot load configuration: {e}")
        sys.exit(1)

    core = DaemonCore(config)

    def request_shutdown(signum: int, _frame: FrameType | None) -> None:
        core.inbox.post(EventKind.SHUTDOWN, signal.Signals(signum).name)

    signal.signal(signal.SIGTERM, request_shutdown)
    signal.signal(signal.SIGINT, request_shutdown)

    try:
        core.start()
    except OSError as e:
        logger.critical(f"CRITICAL: Cannot bind {core.ipc.socket_path}: {e}")
        core.status.disable()
        sys.exit(1)

    try:
        core.run()
    finally:
        core.shutdown()


if __name__ == "__main__":
    main()
