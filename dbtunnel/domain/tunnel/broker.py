"""
AWS Systems Manager session broker and session-manager-plugin supervision
"""
import json
import os
import shutil
import socket
import subprocess
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ...core.constants import (
    DEFAULT_SSH_PORT,
    PROCESS_KILL_TIMEOUT,
    SESSION_MANAGER_PLUGIN,
    SSM_REMOTE_PORT_FORWARD_DOCUMENT,
    SSM_SSH_DOCUMENT,
    SSM_START_SESSION_OPERATION,
)
from ...core.exceptions import BrokerError, DialError
from ...core.logging import get_logger
from ...core.utils import plugin_profile
from .models import BrokerTarget, Endpoint, Strategy

logger = get_logger(__name__)

SSMClientFactory = Callable[[BrokerTarget], Any]


def default_client_factory(target: BrokerTarget) -> Any:
    """boto3 SSM client for the target's profile and region"""
    session = boto3.Session(
        profile_name=target.profile or None,
        region_name=target.region,
    )
    return session.client("ssm")


def find_plugin() -> List[str]:
    """
    Locate session-manager-plugin on PATH.

    Raises:
        FileNotFoundError: If the executable is not installed
    """
    name = SESSION_MANAGER_PLUGIN + (".exe" if os.name == "nt" else "")
    path = shutil.which(name)
    if path is None:
        raise FileNotFoundError(f"{name} not found on PATH")
    return [path]


class BrokerChannel:
    """
    One live Session Manager session plus the plugin process bridging it.

    In carrier mode the plugin's stdin/stdout are pipes carrying the SSH
    stream; in remote-forward mode the plugin itself listens on
    ``local_port`` and forwards to the database.
    """

    def __init__(
        self,
        session_id: str,
        mode: Strategy,
        target: BrokerTarget,
        terminate_session: Callable[[], Any],
        local_port: Optional[int] = None,
    ):
        self.session_id = session_id
        self.mode = mode
        self.target = target
        self.local_port = local_port
        self.process: Optional[subprocess.Popen] = None
        self._terminate_session = terminate_session
        self._terminated = False
        self._lock = threading.Lock()
        self._reaper: Optional[threading.Thread] = None

    def attach(self, process: subprocess.Popen) -> None:
        """Adopt the plugin process and start reaping it in the background"""
        self.process = process
        self._reaper = threading.Thread(
            target=self._reap,
            daemon=True,
            name=f"BrokerReaper-{self.session_id}",
        )
        self._reaper.start()

    def _reap(self) -> None:
        process = self.process
        code = process.wait()
        if self._terminated:
            logger.debug(f"session-manager-plugin for {self.session_id} exited ({code})")
        else:
            logger.warning(
                f"session-manager-plugin for {self.session_id} exited unexpectedly ({code})"
            )

    def is_alive(self) -> bool:
        return (
            not self._terminated
            and self.process is not None
            and self.process.poll() is None
        )

    def open_stream(self, endpoint: Endpoint, timeout: Optional[float] = None) -> socket.socket:
        """
        Connect to the plugin's local forward port.

        Only meaningful in remote-forward mode, where the plugin already
        forwards that port to ``endpoint``.

        Raises:
            DialError: If the plugin is not accepting connections
        """
        if self.mode is not Strategy.BROKER_REMOTE_FORWARD or self.local_port is None:
            raise DialError(f"Session {self.session_id} does not forward a local port")
        try:
            sock = socket.create_connection(("127.0.0.1", self.local_port), timeout=timeout)
        except OSError as e:
            raise DialError(
                f"Session {self.session_id} forward to {endpoint} is not reachable: {e}"
            ) from e
        sock.settimeout(None)
        return sock

    def terminate(self) -> None:
        """
        Kill the plugin (if running) and end the session.

        Idempotent. Both steps are always attempted; their failures are
        reported together and not retried.

        Raises:
            BrokerError: Aggregating every failure
        """
        with self._lock:
            if self._terminated:
                return
            self._terminated = True

        errors: List[BaseException] = []
        process = self.process
        if process is not None:
            if process.poll() is None:
                try:
                    process.kill()
                    process.wait(timeout=PROCESS_KILL_TIMEOUT)
                except (OSError, subprocess.TimeoutExpired) as e:
                    errors.append(e)
            for pipe in (process.stdin, process.stdout):
                if pipe is not None:
                    try:
                        pipe.close()
                    except OSError as e:
                        errors.append(e)

        try:
            self._terminate_session()
        except Exception as e:
            errors.append(e)

        if errors:
            raise BrokerError(f"Failed to terminate session {self.session_id}", errors)
        logger.info(f"Session {self.session_id} terminated")


class SessionBroker:
    """
    Opens Session Manager sessions and launches the bridging plugin.

    Args:
        client_factory: Builds an SSM client for a target (boto3 by default)
        plugin: Command prefix for the plugin (PATH lookup by default)
    """

    def __init__(
        self,
        client_factory: Optional[SSMClientFactory] = None,
        plugin: Optional[Sequence[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.client_factory = client_factory or default_client_factory
        self.plugin = list(plugin) if plugin else None
        self.env = env

    def open_channel(
        self,
        target: BrokerTarget,
        mode: Strategy,
        endpoint: Optional[Endpoint] = None,
        local_port: Optional[int] = None,
    ) -> BrokerChannel:
        """
        Start a session to ``target`` and launch the plugin for it.

        Args:
            target: Instance id with region/profile
            mode: BROKER_SSH_CARRIER or BROKER_REMOTE_FORWARD
            endpoint: Database endpoint (remote-forward mode)
            local_port: Port the plugin should listen on (remote-forward mode)

        Raises:
            BrokerError: Session start or plugin launch failed
        """
        request = self._build_request(target, mode, endpoint, local_port)

        try:
            ssm = self.client_factory(target)
            response = ssm.start_session(**request)
        except (BotoCoreError, ClientError) as e:
            raise BrokerError(f"Failed to start session to {target.target_id}", [e]) from e

        session_id = response["SessionId"]
        logger.info(f"Started session {session_id} to {target.target_id} ({mode.value})")

        channel = BrokerChannel(
            session_id=session_id,
            mode=mode,
            target=target,
            terminate_session=lambda: ssm.terminate_session(SessionId=session_id),
            local_port=local_port if mode is Strategy.BROKER_REMOTE_FORWARD else None,
        )

        carrier = mode is Strategy.BROKER_SSH_CARRIER
        try:
            command = self._plugin_command(ssm, target, request, response)
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE if carrier else None,
                stdout=subprocess.PIPE if carrier else None,
                stderr=None,
                bufsize=0,
            )
        except (OSError, ValueError) as e:
            errors: List[BaseException] = [e]
            try:
                channel.terminate()
            except BrokerError as te:
                errors.extend(te.errors)
            raise BrokerError(
                f"Failed to launch {SESSION_MANAGER_PLUGIN} for session {session_id}", errors
            ) from e

        channel.attach(process)
        logger.debug(f"{SESSION_MANAGER_PLUGIN} running as pid {process.pid}")
        return channel

    def _build_request(
        self,
        target: BrokerTarget,
        mode: Strategy,
        endpoint: Optional[Endpoint],
        local_port: Optional[int],
    ) -> Dict[str, Any]:
        if mode is Strategy.BROKER_SSH_CARRIER:
            return {
                "Target": target.target_id,
                "DocumentName": SSM_SSH_DOCUMENT,
                "Parameters": {"portNumber": [str(DEFAULT_SSH_PORT)]},
            }
        if mode is Strategy.BROKER_REMOTE_FORWARD:
            if endpoint is None or local_port is None:
                raise ValueError("remote forward needs a database endpoint and a local port")
            return {
                "Target": target.target_id,
                "DocumentName": SSM_REMOTE_PORT_FORWARD_DOCUMENT,
                "Parameters": {
                    "host": [endpoint.host],
                    "portNumber": [str(endpoint.port)],
                    "localPortNumber": [str(local_port)],
                },
            }
        raise ValueError(f"{mode.value} does not use a session broker")

    def _plugin_command(
        self,
        ssm: Any,
        target: BrokerTarget,
        request: Dict[str, Any],
        response: Dict[str, Any],
    ) -> List[str]:
        prefix = self.plugin or find_plugin()
        profile = target.explicit_profile or plugin_profile(self.env)
        return prefix + [
            json.dumps(response, default=str),
            target.region,
            SSM_START_SESSION_OPERATION,
            profile,
            json.dumps(request),
            ssm.meta.endpoint_url,
        ]
