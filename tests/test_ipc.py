"""Tests for the Unix socket endpoint, using real sockets in a temp dir."""

import json
import socket
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from git_autosync.ipc import (
    DaemonNotRunning,
    IpcServer,
    handle_connection,
    send_command,
)
from git_autosync.protocol import Command, CommandKind, Response


def echo_dispatch(command: Command) -> Response:
    return Response.success(f"handled {command.kind.value}")


@pytest.fixture
def server(tmp_path: Path) -> Iterator[IpcServer]:
    """An IpcServer that serves each connection on its own thread."""

    def on_connection(conn: socket.socket) -> None:
        threading.Thread(
            target=handle_connection, args=(conn, echo_dispatch), daemon=True
        ).start()

    srv = IpcServer(on_connection, tmp_path / "d.sock")
    srv.start()
    yield srv
    srv.close()
    srv.remove_socket()


def raw_exchange(path: Path, payload: bytes) -> bytes:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(str(path))
        sock.sendall(payload)
        sock.shutdown(socket.SHUT_WR)
        chunks = []
        while chunk := sock.recv(4096):
            chunks.append(chunk)
    return b"".join(chunks)


def test_request_response_round_trip(server: IpcServer) -> None:
    """Verifies one request yields exactly one decoded response."""
    response = send_command(CommandKind.PING, server.socket_path, timeout=5)
    assert response.ok is True
    assert response.message == "handled ping"


def test_malformed_request_gets_error_response(server: IpcServer) -> None:
    """Verifies bad JSON is answered rather than dropped."""
    reply = raw_exchange(server.socket_path, b"this is not json\n")

    raw = json.loads(reply)
    assert raw["status"] == "error"
    assert "Invalid request" in raw["message"]


def test_unknown_command_gets_error_response(server: IpcServer) -> None:
    """Verifies unknown commands are answered with an error."""
    reply = raw_exchange(server.socket_path, b'{"command": "explode"}\n')
    assert json.loads(reply)["status"] == "error"


def test_request_without_newline_is_accepted(server: IpcServer) -> None:
    """Verifies a request terminated by EOF instead of newline still works."""
    reply = raw_exchange(server.socket_path, b'{"command": "status"}')
    assert json.loads(reply)["message"] == "handled status"


def test_empty_connection_is_silent(server: IpcServer) -> None:
    """Verifies a client that sends nothing gets nothing back."""
    assert raw_exchange(server.socket_path, b"") == b""


def test_handle_connection_closes_socket() -> None:
    """Verifies the handler closes the connection after responding."""
    ours, theirs = socket.socketpair()
    ours.sendall(b'{"command": "ping"}\n')

    handle_connection(theirs, echo_dispatch)

    assert ours.recv(4096).endswith(b"\n")
    assert ours.recv(4096) == b""  # peer closed
    ours.close()


def test_stale_socket_file_is_replaced(tmp_path: Path) -> None:
    """Verifies a leftover socket from a crashed daemon does not block bind."""
    path = tmp_path / "d.sock"
    stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    stale.bind(str(path))
    stale.close()  # file remains, nobody listening

    srv = IpcServer(lambda conn: conn.close(), path)
    srv.bind()
    srv.close()
    srv.remove_socket()

    assert not path.exists()


def test_refuses_to_steal_live_socket(server: IpcServer) -> None:
    """Verifies a second daemon cannot take over a live endpoint."""
    second = IpcServer(lambda conn: conn.close(), server.socket_path)

    with pytest.raises(OSError, match="Another daemon"):
        second.bind()

    assert server.socket_path.exists()


def test_bind_creates_parent_directory(tmp_path: Path) -> None:
    """Verifies the socket directory is created on demand."""
    path = tmp_path / "cfg" / "d.sock"
    srv = IpcServer(lambda conn: conn.close(), path)
    srv.bind()
    try:
        assert path.exists()
    finally:
        srv.close()
        srv.remove_socket()


def test_client_reports_missing_daemon(tmp_path: Path) -> None:
    """Verifies the client raises DaemonNotRunning when no socket exists."""
    with pytest.raises(DaemonNotRunning):
        send_command(CommandKind.STATUS, tmp_path / "none.sock", timeout=1)


def test_start_serves_on_previously_bound_socket(tmp_path: Path) -> None:
    """Verifies bind() then start() accepts on the socket bound first."""
    srv = IpcServer(
        lambda conn: handle_connection(conn, echo_dispatch), tmp_path / "d.sock"
    )
    srv.bind()
    srv.start()
    try:
        response = send_command(CommandKind.PING, srv.socket_path, timeout=5)
        assert response.message == "handled ping"
    finally:
        srv.close()
        srv.remove_socket()
