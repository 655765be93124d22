import logging
import subprocess
import sys

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)

NOTIFY_TIMEOUT = 5


class SystemStrategy:
    """Delivers sync failure alerts to the desktop.

    Alerts are fire-and-forget. Implementations log and swallow delivery
    problems, and this base class drops every alert, which is what headless
    platforms get.
    """

    def notify(self, title: str, message: str, urgent: bool = False) -> None:
        """Shows an alert about a repository.

        Args:
            title (str): Short headline, e.g. "Git Push Failed".
            message (str): Body naming the repository and the git error.
            urgent (bool): The user has to act (e.g. a rebase conflict was
                rolled back). Platforms that support it keep the alert on
                screen.
        """


class MacOSStrategy(SystemStrategy):
    """Alerts through Notification Center via `osascript`."""

    def notify(self, title: str, message: str, urgent: bool = False) -> None:
        # AppleScript string literals cannot contain raw double quotes.
        body = message.replace('"', "'")
        headline = title.replace('"', "'")
        script = f'display notification "{body}" with title "{headline}"'
        if urgent:
            script += ' sound name "Basso"'
        try:
            subprocess.run(
                ["osascript", "-e", script],
                stderr=subprocess.DEVNULL,
                timeout=NOTIFY_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Notification failed: {e}")


class LinuxStrategy(SystemStrategy):
    """Alerts through the freedesktop notification daemon via `notify-send`."""

    def notify(self, title: str, message: str, urgent: bool = False) -> None:
        cmd = [
            "notify-send",
            "--app-name",
            APP_NAME,
            "--urgency",
            "critical" if urgent else "normal",
            title,
            message,
        ]
        try:
            subprocess.run(cmd, stderr=subprocess.DEVNULL, timeout=NOTIFY_TIMEOUT)
        except FileNotFoundError:
            logger.debug("notify-send not installed; alert dropped.")
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Notification failed: {e}")


def get_system() -> SystemStrategy:
    """Picks the alert backend for the running platform.

    Returns:
        SystemStrategy: MacOSStrategy on macOS, LinuxStrategy on Linux, and the
        silent base class anywhere else.
    """
    if sys.platform == "darwin":
        return MacOSStrategy()
    if sys.platform.startswith("linux"):
        return LinuxStrategy()
    return SystemStrategy()
