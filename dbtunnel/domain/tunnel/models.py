"""
Tunnel domain models
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

from ...core.constants import DEFAULT_SSH_PORT
from ...core.exceptions import ConfigurationError


class Strategy(str, Enum):
    """How the local port reaches the database"""
    DIRECT_SSH = "direct_ssh"
    BROKER_REMOTE_FORWARD = "broker_remote_forward"
    BROKER_SSH_CARRIER = "broker_ssh_carrier"

    @property
    def requires_ssh(self) -> bool:
        return self is not Strategy.BROKER_REMOTE_FORWARD

    @property
    def requires_broker(self) -> bool:
        return self is not Strategy.DIRECT_SSH


@dataclass(frozen=True)
class Endpoint:
    """TCP endpoint (host, port)"""
    host: str
    port: int

    @classmethod
    def parse(cls, text: str, default_port: int) -> "Endpoint":
        """
        Parse ``host`` or ``host:port``.

        Bracketed IPv6 literals (``[::1]:5432``) are accepted.

        Raises:
            ValueError: If the port segment is not a valid TCP port
        """
        text = text.strip()
        host, port = text, default_port
        if text.startswith("["):
            close = text.find("]")
            if close == -1:
                raise ValueError(f"unterminated IPv6 literal in {text!r}")
            host = text[1:close]
            rest = text[close + 1:]
            if rest.startswith(":"):
                port = _parse_port(rest[1:], text)
        elif text.count(":") == 1:
            host, raw_port = text.split(":", 1)
            port = _parse_port(raw_port, text)
        return cls(host=host, port=port)

    def as_tuple(self) -> tuple:
        return (self.host, self.port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def _parse_port(raw: str, text: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"invalid port in {text!r}") from None
    if not (1 <= port <= 65535):
        raise ValueError(f"port out of range in {text!r}")
    return port


@dataclass(frozen=True)
class SSHPrincipal:
    """SSH login identity"""
    user: str
    key_path: str


@dataclass(frozen=True)
class BrokerTarget:
    """Session Manager target and the AWS context used to reach it"""
    target_id: str
    region: str
    profile: str = ""
    # aws_profile exactly as configured, without environment fallbacks
    explicit_profile: str = ""

    @property
    def ssh_endpoint(self) -> Endpoint:
        """Logical SSH address of the target when used as a carrier"""
        return Endpoint(self.target_id, DEFAULT_SSH_PORT)


@dataclass(frozen=True)
class ForwardingPlan:
    """
    Resolved, validated tunnel configuration.

    Exactly one strategy; SSH fields are set iff the strategy needs SSH and
    the broker field is set iff it needs a broker.
    """
    strategy: Strategy
    local_port: int
    db_endpoint: Endpoint
    local_host: str = "127.0.0.1"
    ssh_endpoint: Optional[Endpoint] = None
    principal: Optional[SSHPrincipal] = None
    broker: Optional[BrokerTarget] = None

    def __post_init__(self) -> None:
        errors = []
        has_ssh = self.principal is not None and self.ssh_endpoint is not None
        has_partial_ssh = self.principal is not None or self.ssh_endpoint is not None
        if self.strategy.requires_ssh and not has_ssh:
            errors.append(f"{self.strategy.value} requires an SSH principal and endpoint")
        if not self.strategy.requires_ssh and has_partial_ssh:
            errors.append(f"{self.strategy.value} must not carry SSH settings")
        if self.strategy.requires_broker != (self.broker is not None):
            state = "requires" if self.strategy.requires_broker else "must not carry"
            errors.append(f"{self.strategy.value} {state} a broker target")
        if errors:
            raise ConfigurationError(errors, message="inconsistent forwarding plan")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            "strategy": self.strategy.value,
            "local": f"{self.local_host}:{self.local_port}",
            "db_endpoint": str(self.db_endpoint),
            "ssh_endpoint": str(self.ssh_endpoint) if self.ssh_endpoint else None,
            "ssh_user": self.principal.user if self.principal else None,
            "ssh_key_path": self.principal.key_path if self.principal else None,
            "target": self.broker.target_id if self.broker else None,
            "region": self.broker.region if self.broker else None,
            "profile": self.broker.profile if self.broker else None,
        }
