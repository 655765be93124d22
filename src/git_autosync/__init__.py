"""Git Autosync: keep local git working copies committed, pushed and rebased.

This package provides the background daemon (timer, IPC socket, config hot
reload, status indicator), the per-repository sync engine, and the companion
command-line interface.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    git_wrapper,
    ipc,
    protocol,
    service,
    status,
    sync,
    system,
    watcher,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "git_wrapper",
    "ipc",
    "protocol",
    "service",
    "status",
    "sync",
    "system",
    "watcher",
]
