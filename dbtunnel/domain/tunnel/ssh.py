"""
SSH session over an already-open byte stream
"""
import socket
import threading
from pathlib import Path
from typing import Callable, Optional

import paramiko

from ...core.exceptions import AuthError, DialError, HandshakeError
from ...core.logging import get_logger
from .models import Endpoint, SSHPrincipal

logger = get_logger(__name__)

# Key types tried in order when loading the private key
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

# (host, port, key) -> result; raises to reject the key
HostKeyCallback = Callable[[str, int, paramiko.PKey], object]


def load_private_key(path: str) -> paramiko.PKey:
    """
    Load a private key, probing Ed25519, ECDSA and RSA.

    Raises:
        AuthError: If the file is unreadable or holds no supported key
    """
    p = Path(path).expanduser()
    last_error: Optional[Exception] = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(p))
        except paramiko.PasswordRequiredException as e:
            raise AuthError(f"Private key {p} is encrypted; passphrases are not supported") from e
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
        except OSError as e:
            raise AuthError(f"Cannot read private key {p}: {e}") from e
    raise AuthError(f"Failed to load private key at {p}: {last_error}")


class SSHTunnelClient:
    """
    Authenticated SSH transport able to open direct-tcpip channels.

    Holds nothing about local forwarding. Channel opens may come from many
    threads at once; paramiko serializes them on the transport.
    """

    def __init__(self, transport: paramiko.Transport, target: Endpoint):
        self.transport = transport
        self.target = target
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def handshake(
        cls,
        conn: socket.socket,
        target: Endpoint,
        principal: SSHPrincipal,
        verify_host_key: HostKeyCallback,
        timeout: Optional[float] = None,
    ) -> "SSHTunnelClient":
        """
        Negotiate, verify the server key and authenticate over ``conn``.

        Args:
            conn: Open socket-like stream to the SSH server
            target: Logical SSH address, used for host key lookup
            principal: User and private key
            verify_host_key: Raises to reject the presented key
            timeout: Negotiation timeout; None waits indefinitely

        Raises:
            HandshakeError: Transport negotiation failed
            AuthError: Key loading or authentication failed
            TrustMismatchError: Host key differs from the recorded one
        """
        pkey = load_private_key(principal.key_path)

        transport = paramiko.Transport(conn)
        try:
            try:
                transport.start_client(timeout=timeout)
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise HandshakeError(f"SSH negotiation with {target} failed: {e}") from e
            if not transport.is_active():
                raise HandshakeError(f"SSH negotiation with {target} did not complete")

            server_key = transport.get_remote_server_key()
            verify_host_key(target.host, target.port, server_key)

            try:
                transport.auth_publickey(principal.user, pkey)
            except paramiko.AuthenticationException as e:
                raise AuthError(f"Authentication as {principal.user}@{target} failed: {e}") from e
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise HandshakeError(f"SSH session with {target} dropped during auth: {e}") from e
            if not transport.is_authenticated():
                raise AuthError(f"Authentication as {principal.user}@{target} was not accepted")
        except BaseException:
            transport.close()
            raise

        logger.info(f"SSH session established to {principal.user}@{target}")
        return cls(transport, target)

    def open_channel(self, endpoint: Endpoint) -> paramiko.Channel:
        """
        Open a direct-tcpip channel to ``endpoint`` as seen from the server.

        Raises:
            DialError: If the server refuses or the transport is gone
        """
        if self._closed or not self.transport.is_active():
            raise DialError(f"SSH session to {self.target} is not active")
        try:
            channel = self.transport.open_channel(
                "direct-tcpip",
                endpoint.as_tuple(),
                ("127.0.0.1", 0),
            )
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise DialError(f"Failed to open channel to {endpoint} via {self.target}: {e}") from e
        if channel is None:
            raise DialError(f"Failed to open channel to {endpoint} via {self.target}")
        return channel

    def is_alive(self) -> bool:
        return not self._closed and self.transport.is_active()

    def close(self) -> None:
        """Close the transport, and with it every channel opened from it"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.transport.close()
        logger.debug(f"SSH session to {self.target} closed")
