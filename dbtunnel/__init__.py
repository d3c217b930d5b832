"""
dbtunnel - reach a private database through an SSH or Session Manager tunnel

Supports three forwarding strategies:
- Direct SSH through a reachable bastion host
- SSH carried over an AWS Session Manager session (no inbound port 22)
- Session Manager native port forwarding to the database (no SSH at all)
"""

__version__ = "0.1.0"

from .core import (
    setup_logging,
    get_logger,
    resolve_socks_proxy,
)
from .core.exceptions import (
    TunnelError,
    AggregateError,
    ConfigurationError,
    TrustMismatchError,
    TrustStoreError,
    BrokerError,
    HandshakeError,
    AuthError,
    ConnectError,
    ForwardError,
    DialError,
    TunnelSetupError,
    TeardownError,
)
from .domain.tunnel import (
    Strategy,
    Endpoint,
    ForwardingPlan,
    ConfigResolver,
    TunnelOrchestrator,
    TunnelHandle,
    open_tunnel,
)

__all__ = [
    "__version__",
    "setup_logging",
    "get_logger",
    "resolve_socks_proxy",
    # Errors
    "TunnelError",
    "AggregateError",
    "ConfigurationError",
    "TrustMismatchError",
    "TrustStoreError",
    "BrokerError",
    "HandshakeError",
    "AuthError",
    "ConnectError",
    "ForwardError",
    "DialError",
    "TunnelSetupError",
    "TeardownError",
    # Tunnel
    "Strategy",
    "Endpoint",
    "ForwardingPlan",
    "ConfigResolver",
    "TunnelOrchestrator",
    "TunnelHandle",
    "open_tunnel",
]
