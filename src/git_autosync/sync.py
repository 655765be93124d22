"""Per-repository synchronization: detect, stage, commit, push, pull-rebase."""

import datetime
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import RepositoryConfig
from .constants import APP_NAME, REMOTE_NAME, STARTUP_COMMIT_MESSAGE
from .git_wrapper import GitCommandError, GitRepo, RepositoryError
from .system import SystemStrategy

logger = logging.getLogger(APP_NAME)


@dataclass
class SyncOutcome:
    """The result of syncing one repository in one cycle.

    Attributes:
        path (Path): The repository path.
        committed (bool): Whether a commit was created.
        files_changed (int | None): Number of staged paths in the commit.
        error (str | None): Fatal-to-repository failure (open, identity, commit).
        warning (str | None): Non-fatal push/pull failure. The cycle still
            counts as handled.
    """

    path: Path
    committed: bool = False
    files_changed: int | None = None
    error: str | None = None
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def format_commit_message(template: str, now: datetime.datetime | None = None) -> str:
    """Substitutes time placeholders in a commit message template.

    Only the exact tokens {timestamp}, {date} and {time} are replaced. Anything
    else, including doubled braces and near-misses such as {dat}, is kept
    verbatim.

    Args:
        template (str): The message template.
        now (datetime | None): The time to format. Defaults to local now.

    Returns:
        str: The formatted message.
    """
    now = now or datetime.datetime.now()
    return (
        template.replace("{timestamp}", now.strftime("%Y-%m-%d %H:%M:%S"))
        .replace("{date}", now.strftime("%Y-%m-%d"))
        .replace("{time}", now.strftime("%H:%M:%S"))
    )


class RepoLocks:
    """Hands out one lock per repository path.

    Guarantees that at most one sync runs against a given working copy at a
    time, whichever source (timer, IPC, tray, reload) requested it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}

    def for_path(self, path: Path) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(path, threading.Lock())


class SyncEngine:
    """Drives repositories through the synchronization sequence.

    The engine has no knowledge of scheduling or IPC. It is safe to call from
    several threads: calls for the same path are serialized.

    Attributes:
        notifier (SystemStrategy): Receives best-effort failure notifications.
        locks (RepoLocks): Per-path mutual exclusion.
    """

    def __init__(
        self,
        notifier: SystemStrategy | None = None,
        repo_factory: Callable[[Path], GitRepo] = GitRepo,
        clock: Callable[[], datetime.datetime] = datetime.datetime.now,
    ):
        self.notifier = notifier or SystemStrategy()
        self.locks = RepoLocks()
        self._repo_factory = repo_factory
        self._clock = clock

    def sync(self, repo_config: RepositoryConfig) -> SyncOutcome:
        """Runs one sync pass using the repository's commit message template."""
        return self._locked_sync(repo_config, None)

    def initialize(self, repo_config: RepositoryConfig) -> SyncOutcome:
        """Runs one sync pass with the startup commit message.

        Used for startup reconciliation and for repositories added by a reload.
        """
        return self._locked_sync(repo_config, STARTUP_COMMIT_MESSAGE)

    def _locked_sync(
        self, repo_config: RepositoryConfig, message: str | None
    ) -> SyncOutcome:
        with self.locks.for_path(repo_config.path):
            try:
                return self._sync(repo_config, message)
            except Exception as e:
                logger.exception(f"CRITICAL {repo_config.path}: Sync failed")
                return SyncOutcome(repo_config.path, error=str(e))

    def _sync(self, repo_config: RepositoryConfig, message: str | None) -> SyncOutcome:
        outcome = SyncOutcome(repo_config.path)
        name = repo_config.path.name

        # 1. Open.
        try:
            repo = self._repo_factory(repo_config.path)
        except RepositoryError as e:
            logger.error(f"OPEN ERROR {repo_config.path}: {e}")
            outcome.error = str(e)
            return outcome

        # 2-4. Detect, stage, commit.
        if repo.has_changes():
            repo.add_all()
            staged = repo.staged_files()
            if staged:
                try:
                    repo.identity()
                    text = message or format_commit_message(
                        repo_config.commit_message_template, self._clock()
                    )
                    repo.commit(text)
                except (RepositoryError, GitCommandError) as e:
                    logger.error(f"COMMIT ERROR {name}: {e}")
                    outcome.error = str(e)
                    return outcome
                outcome.committed = True
                outcome.files_changed = len(staged)
                logger.info(f"COMMITTED {name}: {text} ({len(staged)} files)")
            else:
                logger.debug(f"SKIPPED {name}: Nothing staged after add.")

        # 5-6. Remote exchange.
        if not repo.has_remote(REMOTE_NAME):
            logger.debug(f"SKIPPED {name}: No remote '{REMOTE_NAME}'.")
            return outcome

        warnings = []
        if push_error := self._attempt_push(repo, repo_config.path):
            warnings.append(push_error)
        if pull_error := self._attempt_pull(repo, repo_config.path):
            warnings.append(pull_error)
        if warnings:
            outcome.warning = "; ".join(warnings)
        return outcome

    def _attempt_push(self, repo: GitRepo, path: Path) -> str | None:
        """Pushes if the branch tip differs from upstream.

        Returns:
            str | None: A description of the failure, or None on success/skip.
        """
        try:
            if not repo.needs_push():
                logger.debug(f"SKIPPED {path.name}: Nothing to push.")
                return None
            repo.push()
        except GitCommandError as e:
            logger.warning(f"PUSH ERROR {path}: {e}")
            self.notifier.notify(
                "Git Push Failed", f"Repository: {path}\n\nError:\n{e.stderr or e}"
            )
            return f"push failed: {e.stderr or e}"

        logger.info(f"SUCCESS {path.name}: Pushed.")
        return None

    def _attempt_pull(self, repo: GitRepo, path: Path) -> str | None:
        """Fetches and rebases onto upstream, aborting a failed rebase.

        Returns:
            str | None: A description of the failure, or None on success.
        """
        try:
            repo.pull_rebase()
        except GitCommandError as e:
            logger.warning(f"PULL ERROR {path}: {e}")
            self.notifier.notify(
                "Git Pull Failed",
                f"Repository: {path}\n\nError:\n{e.stderr or e}",
                urgent=True,
            )
            self._abort_rebase(repo, path)
            return f"pull failed: {e.stderr or e}"

        logger.debug(f"SUCCESS {path.name}: Pulled.")
        return None

    def _abort_rebase(self, repo: GitRepo, path: Path) -> None:
        try:
            if repo.rebase_in_progress():
                repo.abort_rebase()
                logger.info(f"ABORTED {path.name}: Rebase rolled back.")
        except GitCommandError as e:
            logger.warning(f"ABORT ERROR {path}: Could not abort rebase. {e}")
