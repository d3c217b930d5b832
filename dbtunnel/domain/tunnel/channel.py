"""
Byte streams to the SSH intermediary: direct TCP or a piped plugin process
"""
import os
import socket
import subprocess
import threading
from typing import Optional

from ...core.constants import FORWARD_CHUNK_SIZE
from ...core.exceptions import ConnectError
from ...core.logging import get_logger
from .broker import BrokerChannel
from .models import Endpoint, ForwardingPlan, Strategy

logger = get_logger(__name__)


class ProxyConnection:
    """
    Stream the SSH client runs over, plus the logical peer it reaches.

    ``peer`` is what host keys are checked against: the bastion endpoint,
    or the broker target in carrier mode. ``sock`` may be a TCP socket or
    one end of a local socket pair.
    """

    def __init__(self, sock: socket.socket, peer: Endpoint, pipe: Optional["ProcessPipe"] = None):
        self.sock = sock
        self.peer = peer
        self.pipe = pipe
        self._closed = False

    @property
    def is_pipe(self) -> bool:
        return self.pipe is not None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.pipe is not None:
            self.pipe.close()
        else:
            _shutdown_and_close(self.sock)


class ProcessPipe:
    """
    In-process duplex pipe wired to a child's stdin/stdout.

    A socket pair is created; the near end is handed to the SSH client and
    two pump threads copy between the far end and the process pipes. The
    child's stderr is not touched.
    """

    def __init__(self, process: subprocess.Popen, name: str = "pipe"):
        if process.stdin is None or process.stdout is None:
            raise ConnectError("Process stdin/stdout must be pipes")
        self.process = process
        self.name = name
        self.near, self._far = socket.socketpair()
        self._closed = False
        self._far_closed = False
        self._lock = threading.Lock()
        self._threads = [
            threading.Thread(target=self._pump_to_process, daemon=True, name=f"PipeIn-{name}"),
            threading.Thread(target=self._pump_from_process, daemon=True, name=f"PipeOut-{name}"),
        ]
        for t in self._threads:
            t.start()

    def _pump_to_process(self) -> None:
        stdin = self.process.stdin
        try:
            while True:
                data = self._far.recv(FORWARD_CHUNK_SIZE)
                if not data:
                    break
                view = memoryview(data)
                while view:
                    written = stdin.write(view)
                    if written is None:
                        written = 0
                    view = view[written:]
                stdin.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"{self.name}: stdin pump stopped: {e}")
        finally:
            self._release_far()

    def _pump_from_process(self) -> None:
        fd = self.process.stdout.fileno()
        try:
            while True:
                data = os.read(fd, FORWARD_CHUNK_SIZE)
                if not data:
                    break
                self._far.sendall(data)
        except (OSError, ValueError) as e:
            logger.debug(f"{self.name}: stdout pump stopped: {e}")
        finally:
            self._release_far()

    def _release_far(self) -> None:
        """End the pumps' side; the near end then reads EOF but stays open"""
        with self._lock:
            if self._far_closed:
                return
            self._far_closed = True
        _shutdown_and_close(self._far)
        try:
            self.process.stdin.close()
        except (OSError, ValueError) as e:
            logger.debug(f"{self.name}: closing process stdin: {e}")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        _shutdown_and_close(self.near)
        self._release_far()


def _shutdown_and_close(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class ProxyChannelProvider:
    """Produces the connection SSHTunnelClient authenticates over"""

    def connect(
        self,
        plan: ForwardingPlan,
        broker_channel: Optional[BrokerChannel] = None,
        timeout: Optional[float] = None,
    ) -> ProxyConnection:
        """
        Raises:
            ConnectError: If the bastion cannot be dialed or the carrier is unusable
        """
        if plan.strategy is Strategy.DIRECT_SSH:
            return self._dial(plan.ssh_endpoint, timeout)
        if plan.strategy is Strategy.BROKER_SSH_CARRIER:
            return self._pipe(plan, broker_channel)
        raise ConnectError(f"{plan.strategy.value} does not use an SSH connection")

    def _dial(self, endpoint: Endpoint, timeout: Optional[float]) -> ProxyConnection:
        try:
            sock = socket.create_connection(endpoint.as_tuple(), timeout=timeout)
        except OSError as e:
            raise ConnectError(f"Failed to connect to {endpoint}: {e}") from e
        sock.settimeout(None)
        logger.debug(f"Connected to bastion {endpoint}")
        return ProxyConnection(sock, endpoint)

    def _pipe(self, plan: ForwardingPlan, broker_channel: Optional[BrokerChannel]) -> ProxyConnection:
        if broker_channel is None or broker_channel.process is None:
            raise ConnectError("Carrier mode needs a running broker channel")
        if broker_channel.process.poll() is not None:
            raise ConnectError(
                f"session-manager-plugin for {broker_channel.session_id} already exited "
                f"({broker_channel.process.returncode})"
            )
        pipe = ProcessPipe(broker_channel.process, name=broker_channel.session_id)
        logger.debug(f"Piped SSH carrier over session {broker_channel.session_id}")
        return ProxyConnection(pipe.near, plan.ssh_endpoint, pipe=pipe)
