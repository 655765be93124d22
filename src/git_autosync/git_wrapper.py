import logging
import os
import subprocess
from pathlib import Path

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class GitCommandError(RuntimeError):
    """Raised when a git command exits with a non-zero status.

    Attributes:
        args_list (list[str]): The git arguments that were run.
        stderr (str): The captured standard error, stripped.
    """

    def __init__(self, args_list: list[str], stderr: str):
        self.args_list = args_list
        self.stderr = stderr
        super().__init__(f"Git error: {stderr or ' '.join(args_list)}")


class RepositoryError(RuntimeError):
    """Raised when a working copy is missing or cannot be opened."""


class IdentityError(RepositoryError):
    """Raised when no committer identity is configured for a repository."""


def _batch_env() -> dict[str, str]:
    """Environment for network operations that must never prompt."""
    env = os.environ.copy()
    env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


class GitRepo:
    """One working copy, driven through the git command line.

    This class is the capability interface the sync engine drives: status,
    staging, committing, push, fetch+rebase and rebase abort. Each method maps to
    one or two git invocations so the engine can be tested against a fake.

    Attributes:
        path (Path): The file system path to the repository root.
    """

    def __init__(self, path: Path):
        """Opens the repository at `path`.

        Args:
            path (Path): The path to the repository root directory.

        Raises:
            RepositoryError: If the path is missing, has no .git entry, or git
                cannot read the repository (e.g. a corrupt .git directory).
        """
        self.path = path
        if not self.path.exists():
            raise RepositoryError(f"Repository path does not exist: {self.path}")
        if not (self.path / ".git").exists():
            raise RepositoryError(
                f"Not a git repository: {self.path}. The .git directory may have "
                "been deleted or the path is incorrect."
            )
        try:
            self._run(["rev-parse", "--git-dir"])
        except GitCommandError as e:
            raise RepositoryError(f"Failed to open repository {self.path}: {e}") from e

    def _run(
        self, args: list[str], capture: bool = True, env: dict | None = None
    ) -> str:
        """Runs `git <args>` in the working copy.

        Args:
            args (list[str]): Arguments after `git`.
            capture (bool): Return stdout when True; otherwise return "".
            env (dict | None): Full environment for the child, e.g. from
                `_batch_env()` for network commands. None inherits ours.

        Returns:
            str: Stripped stdout, or "" when `capture` is False.

        Raises:
            GitCommandError: On a non-zero exit, carrying git's stderr.
        """
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
                check=True,
                env=env,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise GitCommandError(args, (e.stderr or "").strip()) from e

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The branch name, or an empty string on a detached HEAD.
        """
        return self._run(["branch", "--show-current"])

    def status_porcelain(self) -> list[str]:
        """Returns the porcelain status of the working copy.

        Includes tracked modifications and untracked files, and respects ignore
        rules.
        """
        output = self._run(["status", "--porcelain", "--untracked-files=all"])
        return output.splitlines() if output else []

    def has_changes(self) -> bool:
        """Whether the working copy has any staged, unstaged or untracked change."""
        return bool(self.status_porcelain())

    def add_all(self) -> None:
        """Stages all changes (new, modified and deleted files)."""
        self._run(["add", "--all"], capture=False)

    def staged_files(self) -> list[str]:
        """Lists paths whose index state differs from the last commit."""
        output = self._run(["diff", "--cached", "--name-only"])
        return output.splitlines() if output else []

    def identity(self) -> tuple[str, str]:
        """Reads the committer identity from git configuration.

        Returns:
            tuple[str, str]: The (name, email) pair.

        Raises:
            IdentityError: If user.name or user.email is not set.
        """
        values = []
        for key in ("user.name", "user.email"):
            try:
                value = self._run(["config", "--get", key])
            except GitCommandError:
                value = ""
            if not value:
                raise IdentityError(f"{key} not set in git config for {self.path}")
            values.append(value)
        return values[0], values[1]

    def commit(self, message: str, no_verify: bool = True) -> None:
        """Creates a new commit from the index.

        Args:
            message (str): The commit message.
            no_verify (bool, optional): Whether to bypass commit hooks
                                        (`--no-verify`). Defaults to True.
        """
        cmd = ["commit", "--quiet", "-m", message]
        if no_verify:
            cmd.append("--no-verify")
        self._run(cmd, capture=False)

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision to a full SHA-1 hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', '@{upstream}').

        Returns:
            Optional[str]:  The full SHA-1 hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev])
        except GitCommandError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def has_remote(self, name: str) -> bool:
        """Checks whether a remote with the given name is configured."""
        output = self._run(["remote"])
        return name in output.splitlines()

    def needs_push(self) -> bool:
        """Compares the branch tip with its upstream.

        Returns:
            bool: True if the tips differ or no upstream is configured.
        """
        upstream = self.rev_parse("@{upstream}")
        if upstream is None:
            return True
        return self.rev_parse("HEAD") != upstream

    def push(self) -> None:
        """Pushes the current branch to its configured upstream.

        When no upstream is set, the branch is pushed to origin and tracking is
        configured so later cycles can compare tips.
        """
        if self.rev_parse("@{upstream}") is None and (branch := self.current_branch()):
            self._run(["push", "--set-upstream", "origin", branch], env=_batch_env())
        else:
            self._run(["push"], env=_batch_env())

    def pull_rebase(self) -> None:
        """Fetches and rebases the current branch onto its upstream."""
        self._run(["pull", "--rebase"], env=_batch_env())

    def rebase_in_progress(self) -> bool:
        """Whether a rebase is stopped mid-way in this working copy."""
        git_dir = Path(self._run(["rev-parse", "--absolute-git-dir"]))
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    def abort_rebase(self) -> None:
        """Aborts an in-progress rebase, restoring the pre-rebase state."""
        self._run(["rebase", "--abort"], capture=False)
