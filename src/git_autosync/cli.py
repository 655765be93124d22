import argparse
import logging
import os
import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from typing import NoReturn

from rich.console import Console
from rich.table import Table

from . import service
from .config import Config, ConfigError, RepositoryConfig, expand_path, parse_time
from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_COMMIT_TEMPLATE,
    LOG_FILE,
    SOCKET_FILE,
)
from .ipc import DaemonNotRunning, send_command
from .protocol import CommandKind, ProtocolError, Response, StatusData, TriggerData

logger = logging.getLogger(APP_NAME)
console = Console()

RELOAD_HINT = (
    "[dim]Changes will be applied automatically (daemon auto-reloads config).[/dim]"
)


def _fail(message: str) -> NoReturn:
    console.print(f"[bold red]ERROR:[/bold red] {message}")
    sys.exit(1)


def _resolve(path: str) -> Path:
    """Makes a user-supplied path absolute, normalized like config entries.

    Symlinks are kept, so a path reached through a link matches the
    `config.toml` entry written with that same link.
    """
    return expand_path(Path(path).expanduser().absolute())


def _load(config_path: Path) -> Config:
    try:
        return Config.load_or_create_default(config_path)
    except ConfigError as e:
        _fail(str(e))


def _save(config: Config, config_path: Path) -> None:
    try:
        config.save(config_path)
    except OSError as e:
        _fail(f"Could not write {config_path}: {e}")


def _display(path: Path | str) -> str:
    return str(path).replace(str(Path.home()), "~")


def _format_interval(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    if minutes == 0:
        return f"{secs} second{'s' if secs != 1 else ''}"
    text = f"{minutes} minute{'s' if minutes != 1 else ''}"
    if secs:
        text += f" {secs} second{'s' if secs != 1 else ''}"
    return text


def add_repo(
    path: str,
    message: str | None = None,
    interval: str | None = None,
    config_path: Path = CONFIG_FILE,
) -> None:
    """Adds a repository to the configuration.

    Args:
        path (str): The working copy to track.
        message (str | None): Commit message template. Defaults to
            "Auto-commit: {timestamp}".
        interval (str | None): Optionally also sets the global check interval.
    """
    config = _load(config_path)
    repo_path = _resolve(path)

    if not (repo_path / ".git").exists():
        _fail(f"Not a git repository: {repo_path}")
    if config.find(repo_path) is not None:
        _fail(f"Repository already configured: {repo_path}")

    repos = list(config.repositories)
    repos.append(
        RepositoryConfig(
            path=repo_path,
            commit_message_template=message or DEFAULT_COMMIT_TEMPLATE,
        )
    )
    config = config.with_repositories(repos)

    if interval is not None:
        try:
            seconds = parse_time(interval)
        except ValueError as e:
            _fail(str(e))
        if seconds <= 0:
            _fail("Interval must be positive.")
        config = replace(config, check_interval=seconds)

    _save(config, config_path)
    console.print(f"✔ Added repository: [cyan]{repo_path}[/cyan]", style="green")
    console.print(f"Configuration saved to: {config_path}", style="dim")
    console.print(RELOAD_HINT)


def remove_repo(path: str, config_path: Path = CONFIG_FILE) -> None:
    """Stops tracking a repository. The working copy is left untouched."""
    config = _load(config_path)
    repo_path = _resolve(path)

    if config.find(repo_path) is None:
        _fail(f"Repository not found in configuration: {repo_path}")

    config = config.with_repositories(
        [r for r in config.repositories if r.path != repo_path]
    )
    _save(config, config_path)
    console.print(f"✔ Removed repository: [cyan]{repo_path}[/cyan]", style="green")
    console.print(RELOAD_HINT)


def set_enabled(path: str, enabled: bool, config_path: Path = CONFIG_FILE) -> None:
    """Enables or disables syncing for a configured repository."""
    config = _load(config_path)
    repo_path = _resolve(path)

    if config.find(repo_path) is None:
        _fail(f"Repository not found in configuration: {repo_path}")

    config = config.with_repositories(
        [
            replace(r, enabled=enabled)
            if r.path == repo_path
            else r
            for r in config.repositories
        ]
    )
    _save(config, config_path)
    state = "enabled" if enabled else "disabled"
    console.print(f"✔ Auto-commit {state} for: [cyan]{repo_path}[/cyan]", style="green")
    console.print(RELOAD_HINT)


def list_repos(config_path: Path = CONFIG_FILE) -> None:
    """Lists configured repositories and whether they are synced."""
    config = _load(config_path)
    if not config.repositories:
        console.print("[yellow]No repositories configured.[/yellow]")
        console.print("Use [cyan]git-autosync add <path>[/cyan] to add a repository.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="cyan")
    table.add_column("Status")
    table.add_column("Commit Message")

    for repo in config.repositories:
        if not repo.path.exists():
            status = "[red]Missing[/red]"
        elif repo.enabled:
            status = "[green]Enabled[/green]"
        else:
            status = "[yellow]Disabled[/yellow]"
        table.add_row(_display(repo.path), status, repo.commit_message_template)

    console.print(table)
    console.print(f"[dim]Check interval: {config.check_interval} seconds[/dim]")


def show_or_set_interval(
    seconds: str | None = None, config_path: Path = CONFIG_FILE
) -> None:
    """Prints the global check interval, or sets it when `seconds` is given."""
    config = _load(config_path)

    if seconds is None:
        console.print(
            f"Current check interval: [bold]{config.check_interval}[/bold] seconds "
            f"[dim]({_format_interval(config.check_interval)})[/dim]"
        )
        return

    try:
        value = parse_time(seconds)
    except ValueError as e:
        _fail(str(e))
    if value <= 0:
        _fail("Interval must be positive.")

    _save(replace(config, check_interval=value), config_path)
    console.print(f"✔ Check interval set to {value} seconds", style="green")
    console.print(RELOAD_HINT)


def _request(kind: CommandKind, socket_path: Path) -> Response | None:
    try:
        return send_command(kind, socket_path)
    except DaemonNotRunning:
        return None
    except (ProtocolError, OSError) as e:
        _fail(f"Could not talk to daemon: {e}")


def show_status(config_path: Path = CONFIG_FILE, socket_path: Path = SOCKET_FILE) -> None:
    """Shows daemon liveness and the configured repositories."""
    config = _load(config_path)
    response = _request(CommandKind.STATUS, socket_path)

    console.print("[bold underline]Git Autosync[/bold underline]\n")
    if response is None:
        console.print("Daemon: [red]not running[/red]")
        console.print(f"   [dim]Start with: systemctl --user start {APP_NAME}[/dim]")
    elif isinstance(response.data, StatusData):
        data = response.data
        state = "[yellow]suspended[/yellow]" if data.suspended else "[green]running[/green]"
        console.print(f"Daemon: {state} (uptime {_format_interval(data.uptime_seconds)})")
    else:
        console.print(f"Daemon: [green]running[/green] ({response.message})")

    console.print(f"Config file: [cyan]{config_path}[/cyan]")
    console.print(f"Check interval: {config.check_interval} seconds")
    console.print(f"Repositories: {len(config.repositories)}")
    for i, repo in enumerate(config.repositories, start=1):
        mark = "[green]✔[/green]" if repo.enabled else "[dim]✘[/dim]"
        console.print(f"  {i}. {mark} {_display(repo.path)}")


def open_config(config_path: Path = CONFIG_FILE) -> None:
    """Opens the configuration file in $EDITOR."""
    _load(config_path)

    editor = os.environ.get("EDITOR")
    if not editor:
        editor = "open" if sys.platform == "darwin" else "nano"

    console.print(f"Opening [cyan]{config_path}[/cyan]...")
    try:
        subprocess.run([editor, str(config_path)])
    except OSError as e:
        _fail(f"Could not open editor: {e}")
    console.print(RELOAD_HINT)


def trigger_now(socket_path: Path = SOCKET_FILE) -> None:
    """Asks the daemon to run a sync cycle immediately and prints the results."""
    with console.status("Triggering immediate sync cycle...", spinner="dots"):
        response = _request(CommandKind.TRIGGER, socket_path)

    if response is None:
        _fail("Daemon is not running.")
    if not response.ok:
        _fail(f"Daemon returned error: {response.message}")

    console.print(f"[bold green]✔[/bold green] {response.message}")
    if not isinstance(response.data, TriggerData):
        return

    if response.data.repos_committed == 0:
        console.print("[dim]No changes to commit in any repository.[/dim]")

    for detail in response.data.details:
        if detail.error:
            console.print(f"  [red]✘[/red] {_display(detail.path)}: {detail.error}")
        elif detail.committed:
            files = detail.files_changed or 0
            console.print(
                f"  [green]✔[/green] {_display(detail.path)}: "
                f"committed {files} file{'s' if files != 1 else ''}"
            )
        else:
            console.print(f"  [dim]-[/dim] {_display(detail.path)}: no changes")
        if detail.warning:
            console.print(f"    [yellow]⚠ {detail.warning}[/yellow]")


def simple_command(kind: CommandKind, socket_path: Path = SOCKET_FILE) -> None:
    """Sends ping/suspend/resume and prints the daemon's reply."""
    response = _request(kind, socket_path)
    if response is None:
        _fail("Daemon is not running.")
    if not response.ok:
        _fail(response.message)
    console.print(f"[bold green]✔[/bold green] {response.message}")


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Keep git working copies committed, pushed and rebased.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Add a repository to auto-commit")
    add_parser.add_argument("path", help="Path to the git repository")
    add_parser.add_argument(
        "-m",
        "--message",
        help='Commit message template (default: "Auto-commit: {timestamp}")',
    )
    add_parser.add_argument(
        "-i", "--interval", help="Also set the global check interval (e.g. 300, 5m)"
    )

    for name, help_text in (
        ("remove", "Stop tracking a repository"),
        ("enable", "Enable auto-commit for a repository"),
        ("disable", "Disable auto-commit for a repository"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("path", help="Path to the repository")

    interval_parser = subparsers.add_parser(
        "interval", help="Set or show the global check interval"
    )
    interval_parser.add_argument(
        "seconds", nargs="?", help="Interval (if omitted, shows the current one)"
    )

    subparsers.add_parser("list", help="List configured repositories")
    subparsers.add_parser("status", help="Show daemon and configuration status")
    subparsers.add_parser("edit", help="Edit the configuration file in $EDITOR")
    subparsers.add_parser("now", help="Trigger an immediate sync cycle")
    subparsers.add_parser("ping", help="Check that the daemon is responding")
    subparsers.add_parser("suspend", help="Pause automatic syncing")
    subparsers.add_parser("resume", help="Resume automatic syncing")
    subparsers.add_parser("log", help="Tail the daemon log file")
    subparsers.add_parser("install-service", help="Install the background daemon")
    subparsers.add_parser("uninstall-service", help="Uninstall the background daemon")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Git Autosync CLI."""
    args = build_parser().parse_args(argv)

    if args.command == "add":
        add_repo(args.path, args.message, args.interval)
    elif args.command == "remove":
        remove_repo(args.path)
    elif args.command == "enable":
        set_enabled(args.path, True)
    elif args.command == "disable":
        set_enabled(args.path, False)
    elif args.command == "interval":
        show_or_set_interval(args.seconds)
    elif args.command == "list":
        list_repos()
    elif args.command == "status":
        show_status()
    elif args.command == "edit":
        open_config()
    elif args.command == "now":
        trigger_now()
    elif args.command in ("ping", "suspend", "resume"):
        simple_command(CommandKind(args.command))
    elif args.command == "log":
        tail_log()
    elif args.command == "install-service":
        with console.status("Installing background service...", spinner="dots"):
            service.install()
    elif args.command == "uninstall-service":
        with console.status("Uninstalling service...", spinner="dots"):
            service.uninstall()


if __name__ == "__main__":
    main()
