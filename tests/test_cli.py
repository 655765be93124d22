"""Tests for the Command Line Interface (CLI) module."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from git_autosync import cli
from git_autosync.config import Config, RepositoryConfig
from git_autosync.ipc import DaemonNotRunning
from git_autosync.protocol import (
    CommandKind,
    RepoDetail,
    Response,
    StatusData,
    TriggerData,
)


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keeps rich from wrapping long temp paths mid-assertion."""
    monkeypatch.setattr(cli, "console", Console(width=240))


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "cfg" / "config.toml"


@pytest.fixture
def git_dir(tmp_path: Path) -> Path:
    """A directory that looks like a working copy."""
    repo = tmp_path / "repo"
    (repo / ".git").mkdir(parents=True)
    return repo


def test_add_repo_saves_config(config_path: Path, git_dir: Path) -> None:
    """Verifies `add` persists the repository with template and interval.

    Args:
        config_path (Path): Temporary config file location.
        git_dir (Path): A fake working copy.
    """
    cli.add_repo(
        str(git_dir), message="wip {date}", interval="5m", config_path=config_path
    )

    conf = Config.load(config_path)
    assert conf.check_interval == 300
    assert conf.repositories == (
        RepositoryConfig(git_dir, commit_message_template="wip {date}"),
    )


def test_add_repo_defaults_template(config_path: Path, git_dir: Path) -> None:
    """Verifies the default template is used when none is given."""
    cli.add_repo(str(git_dir), config_path=config_path)

    repo = Config.load(config_path).repositories[0]
    assert repo.commit_message_template == "Auto-commit: {timestamp}"


def test_add_repo_rejects_duplicates(config_path: Path, git_dir: Path) -> None:
    """Verifies a repository cannot be added twice."""
    cli.add_repo(str(git_dir), config_path=config_path)

    with pytest.raises(SystemExit) as exc_info:
        cli.add_repo(str(git_dir), config_path=config_path)

    assert exc_info.value.code == 1
    assert len(Config.load(config_path).repositories) == 1


def test_add_repo_rejects_non_git_dir(config_path: Path, tmp_path: Path) -> None:
    """Verifies plain directories are refused."""
    with pytest.raises(SystemExit):
        cli.add_repo(str(tmp_path), config_path=config_path)


def test_add_repo_rejects_bad_interval(config_path: Path, git_dir: Path) -> None:
    """Verifies an unparseable interval aborts without saving."""
    with pytest.raises(SystemExit):
        cli.add_repo(str(git_dir), interval="often", config_path=config_path)

    assert Config.load(config_path).repositories == ()


def test_remove_repo(config_path: Path, git_dir: Path) -> None:
    """Verifies `remove` drops the entry and errors on unknown paths."""
    cli.add_repo(str(git_dir), config_path=config_path)

    cli.remove_repo(str(git_dir), config_path=config_path)
    assert Config.load(config_path).repositories == ()

    with pytest.raises(SystemExit):
        cli.remove_repo(str(git_dir), config_path=config_path)


def test_enable_disable(config_path: Path, git_dir: Path) -> None:
    """Verifies toggling the per-repository enable flag."""
    cli.add_repo(str(git_dir), config_path=config_path)

    cli.set_enabled(str(git_dir), False, config_path=config_path)
    assert Config.load(config_path).repositories[0].enabled is False

    cli.set_enabled(str(git_dir), True, config_path=config_path)
    assert Config.load(config_path).repositories[0].enabled is True


def test_interval_show_and_set(
    config_path: Path, capsys: pytest.CaptureFixture
) -> None:
    """Verifies `interval` prints the current value or stores a new one."""
    cli.show_or_set_interval(config_path=config_path)
    assert "300" in capsys.readouterr().out

    cli.show_or_set_interval("90", config_path=config_path)
    assert Config.load(config_path).check_interval == 90

    with pytest.raises(SystemExit):
        cli.show_or_set_interval("0", config_path=config_path)


def test_list_repos_empty(config_path: Path, capsys: pytest.CaptureFixture) -> None:
    """Verifies the empty-state hint."""
    cli.list_repos(config_path=config_path)
    assert "No repositories configured" in capsys.readouterr().out


def test_list_repos_shows_state(
    config_path: Path, git_dir: Path, capsys: pytest.CaptureFixture
) -> None:
    """Verifies enabled/disabled/missing states are shown."""
    Config(
        repositories=(
            RepositoryConfig(git_dir),
            RepositoryConfig(Path("/definitely/missing"), enabled=False),
        )
    ).save(config_path)

    cli.list_repos(config_path=config_path)

    out = capsys.readouterr().out
    assert "Enabled" in out
    assert "Missing" in out


def test_show_status_daemon_down(
    config_path: Path, capsys: pytest.CaptureFixture, mocker: MagicMock
) -> None:
    """Verifies status still shows configuration when the daemon is down."""
    mocker.patch("git_autosync.cli.send_command", side_effect=DaemonNotRunning("no"))

    cli.show_status(config_path=config_path)

    out = capsys.readouterr().out
    assert "not running" in out
    assert "Repositories: 0" in out


def test_show_status_daemon_up(
    config_path: Path, capsys: pytest.CaptureFixture, mocker: MagicMock
) -> None:
    """Verifies live status data is shown when the daemon answers."""
    mocker.patch(
        "git_autosync.cli.send_command",
        return_value=Response.success(
            "Daemon status", StatusData(125, 300, 0, suspended=True)
        ),
    )

    cli.show_status(config_path=config_path)

    out = capsys.readouterr().out
    assert "suspended" in out
    assert "2 minutes 5 seconds" in out


def test_trigger_now_prints_details(
    capsys: pytest.CaptureFixture, mocker: MagicMock
) -> None:
    """Verifies per-repository results, including warnings, are printed."""
    data = TriggerData(
        repos_checked=2,
        repos_committed=1,
        details=[
            RepoDetail("/r1", True, 3, warning="push failed: rejected"),
            RepoDetail("/r2", False, error="Not a git repository"),
        ],
    )
    mocker.patch(
        "git_autosync.cli.send_command",
        return_value=Response.success(
            "Checked 2 repositories, committed changes in 1", data
        ),
    )

    cli.trigger_now()

    out = capsys.readouterr().out
    assert "Checked 2 repositories" in out
    assert "committed 3 files" in out
    assert "push failed" in out
    assert "Not a git repository" in out


def test_trigger_now_requires_daemon(mocker: MagicMock) -> None:
    """Verifies `now` fails clearly when the daemon is down."""
    mocker.patch("git_autosync.cli.send_command", side_effect=DaemonNotRunning("no"))

    with pytest.raises(SystemExit) as exc_info:
        cli.trigger_now()

    assert exc_info.value.code == 1


def test_simple_command_error_response(mocker: MagicMock) -> None:
    """Verifies an error response from the daemon exits non-zero."""
    mocker.patch(
        "git_autosync.cli.send_command", return_value=Response.error("Invalid request")
    )

    with pytest.raises(SystemExit):
        cli.simple_command(CommandKind.SUSPEND)


def test_open_config_uses_editor(
    config_path: Path, mocker: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Verifies `edit` creates the file if needed and launches $EDITOR."""
    monkeypatch.setenv("EDITOR", "vim")
    mock_run = mocker.patch("subprocess.run")

    cli.open_config(config_path=config_path)

    assert config_path.exists()
    mock_run.assert_called_once_with(["vim", str(config_path)])


@pytest.mark.parametrize("command", ["ping", "suspend", "resume"])
def test_main_routes_daemon_commands(mocker: MagicMock, command: str) -> None:
    """Verifies simple daemon commands are dispatched by name."""
    mock_simple = mocker.patch("git_autosync.cli.simple_command")

    cli.main([command])

    mock_simple.assert_called_once_with(CommandKind(command))


def test_main_routes_add(mocker: MagicMock) -> None:
    """Verifies `add` flags reach the handler."""
    mock_add = mocker.patch("git_autosync.cli.add_repo")

    cli.main(["add", "~/code", "-m", "wip", "-i", "60"])

    mock_add.assert_called_once_with("~/code", "wip", "60")


def test_main_requires_a_command() -> None:
    """Verifies running without a subcommand is a usage error."""
    with pytest.raises(SystemExit) as exc_info:
        cli.main([])
    assert exc_info.value.code == 2


def test_add_repo_accepts_plain_seconds(config_path: Path, git_dir: Path) -> None:
    """Verifies `add -i 300` takes a unitless interval as seconds."""
    cli.add_repo(str(git_dir), interval="300", config_path=config_path)

    assert Config.load(config_path).check_interval == 300


def test_symlinked_entry_can_be_disabled_and_removed(
    config_path: Path, git_dir: Path, tmp_path: Path
) -> None:
    """Verifies a config entry written through a symlink is found by that path.

    Args:
        config_path (Path): Temporary config file location.
        git_dir (Path): A fake working copy.
        tmp_path (Path): Pytest fixture for a temporary directory.
    """
    link = tmp_path / "link"
    link.symlink_to(git_dir, target_is_directory=True)
    config_path.parent.mkdir(parents=True)
    config_path.write_text(f'[[repositories]]\npath = "{link}"\n')

    cli.set_enabled(str(link), False, config_path=config_path)
    assert Config.load(config_path).repositories[0].enabled is False

    cli.remove_repo(str(link), config_path=config_path)
    assert Config.load(config_path).repositories == ()
