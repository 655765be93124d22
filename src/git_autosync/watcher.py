import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class _ConfigFileHandler(FileSystemEventHandler):
    """Filters directory events down to writes that touch one file."""

    def __init__(self, target: Path, on_match: Callable[[], None]):
        super().__init__()
        self._target = os.path.normpath(str(target))
        self._on_match = on_match

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.normpath(os.fsdecode(p)) == self._target for p in paths)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self._on_match()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self._on_match()

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors and Config.save() replace the file through a rename.
        if self._matches(event):
            self._on_match()


class ConfigWatcher:
    """Signals when the configuration file changes on disk.

    The parent directory is watched rather than the file, so atomic
    replacements are seen. Bursts of events from a single save are coalesced
    into one callback after `debounce` seconds of quiet.

    Attributes:
        config_path (Path): The file to watch.
        debounce (float): Quiet period before `on_change` fires. Zero fires
            immediately on every matching event.
    """

    def __init__(
        self,
        config_path: Path,
        on_change: Callable[[], None],
        debounce: float = 0.5,
    ):
        self.config_path = config_path
        self.debounce = debounce
        self._on_change = on_change
        self._observer: Observer | None = None
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def _fire(self) -> None:
        try:
            self._on_change()
        except Exception as e:
            logger.error(f"WATCH ERROR: Change callback failed: {e}")

    def _schedule(self) -> None:
        if self.debounce <= 0:
            self._fire()
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def start(self) -> None:
        """Starts the observer thread.

        Raises:
            OSError: If the directory cannot be watched.
        """
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        handler = _ConfigFileHandler(self.config_path, self._schedule)
        observer = Observer()
        observer.schedule(handler, str(self.config_path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.config_path} for changes")

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
