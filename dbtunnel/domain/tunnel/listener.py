"""
Local listener forwarding each accepted connection through the tunnel
"""
import socket
import threading
from typing import Callable, Optional

from ...core.constants import (
    ACCEPT_POLL_INTERVAL,
    FORWARD_CHUNK_SIZE,
    LISTEN_BACKLOG,
    THREAD_JOIN_TIMEOUT,
)
from ...core.exceptions import ForwardError
from ...core.interfaces import ChannelOpener, Stream
from ...core.logging import get_logger
from .models import Endpoint

logger = get_logger(__name__)


def close_stream(stream: Stream) -> None:
    """Shut down both directions, then close; wakes any blocked reader"""
    shutdown = getattr(stream, "shutdown", None)
    if shutdown is not None:
        try:
            shutdown(socket.SHUT_RDWR)
        except (OSError, EOFError) as e:
            logger.debug(f"shutdown: {e}")
    try:
        stream.close()
    except (OSError, EOFError) as e:
        logger.debug(f"close: {e}")


class ForwardedConnection:
    """
    One local socket paired with its remote stream.

    Owned by its two copy threads; whichever finishes first closes both
    ends, which unblocks and ends the other.
    """

    def __init__(self, local: socket.socket, remote: Stream, peer: tuple, endpoint: Endpoint):
        self.local = local
        self.remote = remote
        self.peer = peer
        self.endpoint = endpoint
        self._closed = False
        self._lock = threading.Lock()

    def start(self) -> None:
        tag = f"{self.peer[0]}:{self.peer[1]}"
        for name, reader, writer in (
            ("up", self.local, self.remote),
            ("down", self.remote, self.local),
        ):
            threading.Thread(
                target=self._copy,
                args=(reader, writer, name),
                daemon=True,
                name=f"Forward-{name}-{tag}",
            ).start()

    def _copy(self, reader: Stream, writer: Stream, direction: str) -> None:
        total = 0
        try:
            while True:
                data = reader.recv(FORWARD_CHUNK_SIZE)
                if not data:
                    break
                writer.sendall(data)
                total += len(data)
        except (OSError, EOFError) as e:
            if not self._closed:
                logger.debug(f"{self.peer} {direction}: copy ended: {e}")
        finally:
            logger.debug(f"{self.peer} {direction}: {total} bytes")
            self.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        close_stream(self.local)
        close_stream(self.remote)


class PortForwardListener:
    """
    Owns the local TCP listener for a tunnel.

    Every accepted connection gets a fresh remote stream from ``opener``
    and is serviced independently. A failure on one connection never
    touches the others or the accept loop.

    Args:
        host: Local bind address (expected to be loopback)
        port: Local port; 0 picks a free one, see ``port`` after start
        opener: Opens a remote stream to ``endpoint``
        endpoint: Database endpoint on the far side
        stop_event: Cancellation token, checked before every accept
    """

    def __init__(
        self,
        host: str,
        port: int,
        opener: ChannelOpener,
        endpoint: Endpoint,
        stop_event: Optional[threading.Event] = None,
    ):
        self.host = host
        self.port = port
        self.opener = opener
        self.endpoint = endpoint
        self.stop_event = stop_event or threading.Event()
        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._lock = threading.Lock()

    def start(self) -> None:
        """
        Bind and start the accept loop.

        Raises:
            RuntimeError: If already started
            OSError: If the port cannot be bound
        """
        if self._socket is not None:
            raise RuntimeError("Listener is already running")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(LISTEN_BACKLOG)
            sock.settimeout(ACCEPT_POLL_INTERVAL)
        except OSError:
            sock.close()
            raise

        self._socket = sock
        self.port = sock.getsockname()[1]
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"PortForward-{self.port}",
        )
        self._thread.start()
        logger.info(f"Forwarding {self.host}:{self.port} -> {self.endpoint}")

    def _accept(self):
        return self._socket.accept()

    def _run(self) -> None:
        """Accept loop: timeouts are retried, any other error ends it"""
        try:
            while not self.stop_event.is_set():
                try:
                    local, addr = self._accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if not self.stop_event.is_set():
                        logger.error(f"Accept on {self.host}:{self.port} failed: {e}")
                    break
                if self.stop_event.is_set():
                    close_stream(local)
                    break
                threading.Thread(
                    target=self._handle,
                    args=(local, addr),
                    daemon=True,
                    name=f"PortForward-open-{addr[0]}:{addr[1]}",
                ).start()
        finally:
            self._close_socket()

    def _handle(self, local: socket.socket, addr: tuple) -> None:
        """Open the remote side for one accepted socket; runs on its own thread"""
        local.settimeout(None)
        try:
            remote = self.opener(self.endpoint)
        except ForwardError as e:
            logger.warning(f"Connection from {addr[0]}:{addr[1]} dropped: {e}")
            close_stream(local)
            return
        except Exception as e:
            # Caller-supplied openers may raise anything
            logger.warning(f"Connection from {addr[0]}:{addr[1]} dropped: {e!r}")
            close_stream(local)
            return
        if self.stop_event.is_set():
            close_stream(remote)
            close_stream(local)
            return
        logger.debug(f"Forwarding {addr[0]}:{addr[1]} -> {self.endpoint}")
        ForwardedConnection(local, remote, addr, self.endpoint).start()

    def _close_socket(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sock = self._socket
        if sock is not None:
            sock.close()
            logger.debug(f"Listener {self.host}:{self.port} closed")

    def is_running(self) -> bool:
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self.stop_event.is_set()
        )

    def close(self) -> None:
        """Stop accepting; connections already forwarding are left to finish"""
        self.stop_event.set()
        self._close_socket()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=THREAD_JOIN_TIMEOUT)
