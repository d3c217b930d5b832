"""
Tunnel establishment sequencing and teardown
"""
import socket
import threading
from typing import Any, Callable, List, Mapping, Optional, Tuple

from ...core.exceptions import TeardownError, TunnelSetupError
from ...core.interfaces import HostKeyStore
from ...core.logging import get_logger
from .broker import BrokerChannel, SessionBroker
from .channel import ProxyChannelProvider, ProxyConnection
from .hostkeys import HostKeyVerifier
from .listener import PortForwardListener
from .models import ForwardingPlan, Strategy
from .resolver import ConfigResolver
from .ssh import SSHTunnelClient

logger = get_logger(__name__)


class ReleaseStack:
    """Acquired resources, released in reverse order with every failure kept"""

    def __init__(self):
        self._items: List[Tuple[str, Callable[[], Any]]] = []

    def push(self, name: str, release: Callable[[], Any]) -> None:
        self._items.append((name, release))

    def unwind(self) -> List[BaseException]:
        errors: List[BaseException] = []
        while self._items:
            name, release = self._items.pop()
            try:
                release()
                logger.debug(f"Released {name}")
            except Exception as e:
                logger.warning(f"Releasing {name} failed: {e}")
                errors.append(e)
        return errors

    def __len__(self) -> int:
        return len(self._items)


class TunnelHandle:
    """
    A running tunnel.

    Sub-resources live exactly as long as the handle; ``teardown`` releases
    them in reverse acquisition order and is safe to call more than once.
    """

    def __init__(
        self,
        plan: ForwardingPlan,
        listener: PortForwardListener,
        releases: ReleaseStack,
        stop_event: threading.Event,
        ssh_client: Optional[SSHTunnelClient] = None,
        broker_channel: Optional[BrokerChannel] = None,
        connection: Optional[ProxyConnection] = None,
    ):
        self.plan = plan
        self.listener = listener
        self.ssh_client = ssh_client
        self.broker_channel = broker_channel
        self.connection = connection
        self.stop_event = stop_event
        self._releases = releases
        self._torn_down = False
        self._lock = threading.Lock()

    @property
    def local_address(self) -> Tuple[str, int]:
        return (self.listener.host, self.listener.port)

    @property
    def session_id(self) -> Optional[str]:
        return self.broker_channel.session_id if self.broker_channel else None

    def is_alive(self) -> bool:
        if self._torn_down or not self.listener.is_running():
            return False
        if self.ssh_client is not None and not self.ssh_client.is_alive():
            return False
        if self.broker_channel is not None and not self.broker_channel.is_alive():
            return False
        return True

    def stop(self) -> None:
        """Signal the accept loop to stop without releasing anything"""
        self.stop_event.set()

    def teardown(self) -> None:
        """
        Release every resource in reverse order.

        Raises:
            TeardownError: Aggregating every release failure (first call only)
        """
        with self._lock:
            if self._torn_down:
                return
            self._torn_down = True
        self.stop_event.set()
        errors = self._releases.unwind()
        if errors:
            raise TeardownError(errors)
        logger.info(f"Tunnel on {self.listener.host}:{self.listener.port} torn down")

    close = teardown

    def __enter__(self) -> "TunnelHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.teardown()


def free_loopback_port() -> int:
    """Ask the OS for a currently unused loopback port"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TunnelOrchestrator:
    """
    Establishes a tunnel for a ForwardingPlan.

    Steps: broker session (broker strategies), proxy connection and SSH
    handshake (SSH strategies), then the local listener. A failure at any
    step releases what earlier steps acquired, newest first.

    Args:
        broker: Session broker (AWS by default)
        channels: Proxy connection provider
        ssh_client_factory: Callable with SSHTunnelClient.handshake's signature
        host_keys: Trust store for host key checks (~/.ssh/known_hosts by default)
        listener_factory: Callable with PortForwardListener's signature
        timeout: Optional bound on dialing and SSH negotiation
    """

    def __init__(
        self,
        broker: Optional[SessionBroker] = None,
        channels: Optional[ProxyChannelProvider] = None,
        ssh_client_factory: Optional[Callable[..., SSHTunnelClient]] = None,
        host_keys: Optional[HostKeyStore] = None,
        listener_factory: Optional[Callable[..., PortForwardListener]] = None,
        timeout: Optional[float] = None,
    ):
        self.broker = broker or SessionBroker()
        self.channels = channels or ProxyChannelProvider()
        self.ssh_client_factory = ssh_client_factory or SSHTunnelClient.handshake
        self.verifier = HostKeyVerifier(host_keys)
        self.listener_factory = listener_factory or PortForwardListener
        self.timeout = timeout

    def establish(self, plan: ForwardingPlan) -> TunnelHandle:
        """
        Raises:
            TunnelSetupError: Carrying the failing step's error as ``cause``
                and every release failure in ``errors``
        """
        releases = ReleaseStack()
        stop_event = threading.Event()
        broker_channel: Optional[BrokerChannel] = None
        connection: Optional[ProxyConnection] = None
        ssh_client: Optional[SSHTunnelClient] = None

        try:
            if plan.strategy.requires_broker:
                forward_port = None
                if plan.strategy is Strategy.BROKER_REMOTE_FORWARD:
                    forward_port = free_loopback_port()
                broker_channel = self.broker.open_channel(
                    plan.broker, plan.strategy, plan.db_endpoint, forward_port
                )
                releases.push("broker session", broker_channel.terminate)

            if plan.strategy.requires_ssh:
                connection = self.channels.connect(plan, broker_channel, timeout=self.timeout)
                releases.push("proxy connection", connection.close)
                ssh_client = self.ssh_client_factory(
                    connection.sock,
                    connection.peer,
                    plan.principal,
                    self.verifier,
                    timeout=self.timeout,
                )
                releases.push("ssh client", ssh_client.close)
                opener = ssh_client.open_channel
            else:
                opener = broker_channel.open_stream

            listener = self.listener_factory(
                plan.local_host,
                plan.local_port,
                opener,
                plan.db_endpoint,
                stop_event=stop_event,
            )
            listener.start()
            releases.push("listener", listener.close)
        except BaseException as e:
            stop_event.set()
            release_errors = releases.unwind()
            if not isinstance(e, Exception):
                raise
            logger.error(f"Tunnel setup ({plan.strategy.value}) failed: {e}")
            raise TunnelSetupError(e, release_errors) from e

        logger.info(
            f"Tunnel up ({plan.strategy.value}): "
            f"{listener.host}:{listener.port} -> {plan.db_endpoint}"
        )
        return TunnelHandle(
            plan=plan,
            listener=listener,
            releases=releases,
            stop_event=stop_event,
            ssh_client=ssh_client,
            broker_channel=broker_channel,
            connection=connection,
        )


def open_tunnel(
    config: Mapping[str, Any],
    env: Optional[Mapping[str, str]] = None,
    orchestrator: Optional[TunnelOrchestrator] = None,
) -> Optional[TunnelHandle]:
    """
    Resolve ``config`` and establish the tunnel it asks for.

    Returns None when the configuration requests no tunnel. Callers must
    bind the local endpoint to loopback and tear the handle down when done.
    """
    plan = ConfigResolver(env=env).resolve(config)
    if plan is None:
        return None
    return (orchestrator or TunnelOrchestrator()).establish(plan)
