"""
Unified exception definitions
"""
from typing import Iterable, List, Optional


class TunnelError(Exception):
    """Base exception class"""
    pass


class AggregateError(TunnelError):
    """Error carrying every independent cause that was collected"""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()):
        self.errors: List[BaseException] = list(errors)
        self.message = message
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.errors:
            return self.message
        lines = [f"{self.message} ({len(self.errors)} error(s)):"]
        lines.extend(f"  * {err}" for err in self.errors)
        return "\n".join(lines)


class ConfigurationError(AggregateError):
    """Configuration error, listing every violation found"""

    def __init__(self, errors: Iterable[object] = (), message: str = "invalid tunnel configuration"):
        causes = [e if isinstance(e, BaseException) else ValueError(str(e)) for e in errors]
        super().__init__(message, causes)


class TrustMismatchError(TunnelError):
    """A known host presented a key that differs from every recorded key"""

    def __init__(self, hostname: str, wanted: Optional[list] = None):
        self.hostname = hostname
        self.wanted = list(wanted or [])
        types = ", ".join(sorted({k.get_name() for k in self.wanted})) or "unknown"
        super().__init__(
            f"host key mismatch for {hostname}: presented key does not match "
            f"recorded key(s) [{types}]"
        )


class TrustStoreError(TunnelError):
    """Trust file could not be read or appended"""
    pass


class BrokerError(AggregateError):
    """Session broker or bridging process failure"""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()):
        super().__init__(message, errors)


class HandshakeError(TunnelError):
    """SSH transport negotiation failure"""
    pass


class AuthError(TunnelError):
    """SSH authentication failure"""
    pass


class ConnectError(TunnelError):
    """Could not produce the byte stream to the intermediary"""
    pass


class ForwardError(TunnelError):
    """Per-connection forwarding failure"""
    pass


class DialError(ForwardError):
    """Remote channel could not be opened"""
    pass


class TunnelSetupError(AggregateError):
    """Tunnel establishment failed; carries the cause and any release failures"""

    def __init__(self, cause: BaseException, release_errors: Iterable[BaseException] = ()):
        self.cause = cause
        self.release_errors = list(release_errors)
        super().__init__(f"tunnel setup failed: {cause}", self.release_errors)


class TeardownError(AggregateError):
    """One or more tunnel resources failed to release"""

    def __init__(self, errors: Iterable[BaseException]):
        super().__init__("tunnel teardown failed", errors)
