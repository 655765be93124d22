import shutil
import subprocess
import sys
from pathlib import Path

from rich.console import Console

from .constants import APP_LABEL, APP_NAME

console = Console()

DAEMON_EXECUTABLE = f"{APP_NAME}-daemon"


def get_executable() -> str:
    """Locates the installed daemon executable in the system path.

    Returns:
        str: The absolute path to the 'git-autosync-daemon' executable.

    Raises:
        SystemExit: If the executable is not found in the PATH.
    """
    exe = shutil.which(DAEMON_EXECUTABLE)
    if not exe:
        console.print(
            f"[bold red]ERROR:[/bold red] Could not find '{DAEMON_EXECUTABLE}'. "
            "Ensure the package is installed."
        )
        sys.exit(1)
    return exe


def get_unit_path() -> Path:
    """Resolves the systemd user unit path.

    Raises:
        NotImplementedError: If called on a platform without systemd.
    """
    if sys.platform.startswith("linux"):
        return Path.home() / f".config/systemd/user/{APP_LABEL}.service"

    raise NotImplementedError("Service installation is only automated on Linux.")


def render_unit(executable: str) -> str:
    """Builds the systemd unit for a long-running daemon."""
    return f"""[Unit]
Description=Git Autosync Daemon
After=network-online.target

[Service]
Type=simple
ExecStart={executable}
Restart=on-failure
RestartSec=10

[Install]
WantedBy=default.target
"""


def install_linux(unit_path: Path, executable: str) -> None:
    """Writes the unit file, reloads systemd and starts the service.

    Args:
        unit_path (Path): The target path for the .service file.
        executable (str): The path to the daemon executable.
    """
    unit_path.parent.mkdir(parents=True, exist_ok=True)
    with open(unit_path, "w") as f:
        f.write(render_unit(executable))

    subprocess.run(["systemctl", "--user", "daemon-reload"], check=True)
    subprocess.run(
        ["systemctl", "--user", "enable", "--now", f"{APP_LABEL}.service"], check=True
    )
    console.print(
        f"[bold green]SUCCESS:[/bold green] Autosync service active (Linux).\n"
        f"Check status: systemctl --user status {APP_LABEL}.service"
    )


def install() -> None:
    """Installs the background daemon as a user service.

    On Linux this writes and enables a systemd user unit. On macOS it prints
    how to run the daemon under launchd instead.
    """
    if sys.platform == "darwin":
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Automatic service installation "
            "is not supported on macOS."
        )
        console.print("Run the daemon from a LaunchAgent, or in a terminal:")
        console.print(f"   [green]{DAEMON_EXECUTABLE} --foreground[/green]\n")
        return

    install_linux(get_unit_path(), get_executable())


def uninstall() -> None:
    """Stops and removes the background daemon service."""
    if sys.platform == "darwin":
        console.print(
            "\n[bold yellow]NOTE:[/bold yellow] Nothing to uninstall on macOS. "
            "Remove your LaunchAgent if you created one.\n"
        )
        return

    unit_path = get_unit_path()
    subprocess.run(
        ["systemctl", "--user", "disable", "--now", f"{APP_LABEL}.service"],
        stderr=subprocess.DEVNULL,
    )
    unit_path.unlink(missing_ok=True)
    subprocess.run(["systemctl", "--user", "daemon-reload"])

    console.print("[bold green]SUCCESS:[/bold green] Service uninstalled.")
