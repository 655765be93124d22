import logging
import socket
import threading
from collections.abc import Callable
from pathlib import Path

from .constants import APP_NAME, CONNECTION_TIMEOUT, SOCKET_FILE
from .protocol import Command, CommandKind, ProtocolError, Response

logger = logging.getLogger(APP_NAME)

MAX_REQUEST_BYTES = 64 * 1024


class DaemonNotRunning(ConnectionError):
    """Raised by the client when nothing is listening on the daemon socket."""


class IpcServer:
    """Unix domain socket endpoint for CLI commands.

    The server only accepts. Each accepted connection is handed to
    `on_connection`, which is expected to schedule the work elsewhere (the
    daemon posts it to its event inbox) and return quickly.

    Attributes:
        socket_path (Path): Filesystem path of the listening socket.
    """

    def __init__(
        self,
        on_connection: Callable[[socket.socket], None],
        socket_path: Path = SOCKET_FILE,
    ):
        self.socket_path = socket_path
        self._on_connection = on_connection
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._stopping = threading.Event()

    def bind(self) -> None:
        """Creates the listening socket, replacing a stale one.

        Raises:
            OSError: If the socket cannot be created or bound, or another
                daemon is already listening on it.
        """
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self.socket_path.exists():
            if _is_listening(self.socket_path):
                raise OSError(f"Another daemon is listening on {self.socket_path}")
            # Leftover from a crashed daemon; bind() would fail on it.
            self.socket_path.unlink(missing_ok=True)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(self.socket_path))
            sock.listen()
        except OSError:
            sock.close()
            raise
        # Periodic wakeups let the accept loop observe close().
        sock.settimeout(1.0)
        self._sock = sock
        logger.info(f"IPC server listening on {self.socket_path}")

    def start(self) -> None:
        """Binds if needed and starts the accept thread."""
        if self._sock is None:
            self.bind()
        self._thread = threading.Thread(
            target=self._accept_loop,
            args=(self._sock,),
            name="ipc-accept",
            daemon=True,
        )
        self._thread.start()

    def _accept_loop(self, sock: socket.socket) -> None:
        while not self._stopping.is_set():
            try:
                conn, _ = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._stopping.is_set():
                    logger.error(f"IPC ERROR: Accept failed: {e}")
                break

            conn.settimeout(CONNECTION_TIMEOUT)
            try:
                self._on_connection(conn)
            except Exception as e:
                logger.error(f"IPC ERROR: Could not schedule connection: {e}")
                conn.close()

    def close(self) -> None:
        """Stops accepting and closes the listening socket.

        The socket file stays in place until `remove_socket()`, so in-flight
        handlers can finish first.
        """
        self._stopping.set()
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def remove_socket(self) -> None:
        self.socket_path.unlink(missing_ok=True)


def _is_listening(path: Path) -> bool:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
        client.settimeout(1.0)
        try:
            client.connect(str(path))
        except OSError:
            return False
    return True


def _read_line(conn: socket.socket) -> bytes:
    buf = b""
    while b"\n" not in buf and len(buf) < MAX_REQUEST_BYTES:
        chunk = conn.recv(4096)
        if not chunk:
            break
        buf += chunk
    return buf.split(b"\n", 1)[0]


def handle_connection(
    conn: socket.socket, dispatch: Callable[[Command], Response]
) -> None:
    """Serves exactly one request on an accepted connection, then closes it.

    A peer that disconnects without sending anything is ignored. Undecodable
    requests get an error response rather than an abrupt close.

    Args:
        conn (socket.socket): The accepted client connection.
        dispatch (Callable): Maps a decoded Command to its Response.
    """
    with conn:
        try:
            line = _read_line(conn)
        except (socket.timeout, OSError) as e:
            logger.warning(f"IPC ERROR: Failed to read request: {e}")
            return

        if not line.strip():
            return

        try:
            command = Command.from_json(line)
        except ProtocolError as e:
            logger.warning(f"IPC ERROR: Bad request: {e}")
            response = Response.error(f"Invalid request: {e}")
        else:
            logger.debug(f"IPC request: {command.kind.value}")
            response = dispatch(command)

        try:
            conn.sendall(response.to_json().encode("utf-8"))
        except OSError as e:
            logger.warning(f"IPC ERROR: Failed to send response: {e}")


def send_command(
    kind: CommandKind,
    socket_path: Path = SOCKET_FILE,
    timeout: float | None = 300.0,
) -> Response:
    """Sends one command to the daemon and waits for its response.

    Args:
        kind (CommandKind): The command to send.
        socket_path (Path): The daemon socket.
        timeout (float | None): Seconds to wait. A trigger runs a full sync
            cycle, so the default is generous.

    Returns:
        Response: The decoded reply.

    Raises:
        DaemonNotRunning: If the socket is missing or refuses connections.
        ProtocolError: If the reply cannot be decoded.
    """
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            sock.connect(str(socket_path))
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise DaemonNotRunning(
                f"Daemon is not running (no socket at {socket_path})"
            ) from e
        sock.sendall(Command(kind).to_json().encode("utf-8"))
        line = _read_line(sock)

    if not line:
        raise ProtocolError("Daemon closed the connection without a response")
    return Response.from_json(line)
