"""
Tunnel domain module
"""
from .models import Strategy, Endpoint, SSHPrincipal, BrokerTarget, ForwardingPlan
from .resolver import ConfigResolver, resolve_plan
from .hostkeys import (
    HostKeyStatus,
    HostKeyResult,
    HostKeyVerifier,
    KnownHostsStore,
    MemoryHostKeyStore,
    known_hosts_name,
)
from .ssh import SSHTunnelClient, load_private_key
from .broker import SessionBroker, BrokerChannel
from .channel import ProxyChannelProvider, ProxyConnection, ProcessPipe
from .listener import PortForwardListener, ForwardedConnection
from .orchestrator import TunnelOrchestrator, TunnelHandle, open_tunnel

__all__ = [
    "Strategy",
    "Endpoint",
    "SSHPrincipal",
    "BrokerTarget",
    "ForwardingPlan",
    "ConfigResolver",
    "resolve_plan",
    "HostKeyStatus",
    "HostKeyResult",
    "HostKeyVerifier",
    "KnownHostsStore",
    "MemoryHostKeyStore",
    "known_hosts_name",
    "SSHTunnelClient",
    "load_private_key",
    "SessionBroker",
    "BrokerChannel",
    "ProxyChannelProvider",
    "ProxyConnection",
    "ProcessPipe",
    "PortForwardListener",
    "ForwardedConnection",
    "TunnelOrchestrator",
    "TunnelHandle",
    "open_tunnel",
]
