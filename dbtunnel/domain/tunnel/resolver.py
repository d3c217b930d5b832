"""
Raw configuration -> ForwardingPlan resolution
"""
import os
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple

from ...core.constants import (
    BROKER_BLOCK,
    DEFAULT_DB_PORT,
    DEFAULT_LOCAL_HOST,
    DEFAULT_SSH_PORT,
    DIRECT_BLOCK,
)
from ...core.exceptions import ConfigurationError
from ...core.logging import get_logger
from ...core.utils import (
    current_username,
    default_ssh_key_path,
    is_truthy,
    resolve_aws_profile,
    resolve_aws_region,
)
from .models import BrokerTarget, Endpoint, ForwardingPlan, SSHPrincipal, Strategy

logger = get_logger(__name__)


class ConfigResolver:
    """
    Turns the raw configuration mapping into one ForwardingPlan.

    Expected shape (blocks may also be a one-element list, as schema layers
    tend to represent nested blocks)::

        endpoint = "127.0.0.1:3306"

        [ssm_session_manager]
        ec2_instance_id = "i-0123456789abcdef0"
        rds_endpoint = "db.internal:3306"
        use_remote_port_forward = false
        ssh_user = "ec2-user"
        ssh_key_path = "~/.ssh/id_rsa"
        aws_profile = "default"
        region = "ap-northeast-1"

        [port_forward]
        remote_host = "bastion.example.com"
        db_endpoint = "db.internal:3306"
        ssh_user = "ec2-user"
        ssh_key_path = "~/.ssh/id_rsa"

    The session manager block wins when both are present.
    """

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        current_user: Optional[Callable[[], str]] = None,
    ):
        self.env = os.environ if env is None else env
        self.current_user = current_user or current_username

    def resolve(self, config: Mapping[str, Any]) -> Optional[ForwardingPlan]:
        """
        Resolve configuration into a plan.

        Returns:
            ForwardingPlan, or None when no tunnel block is configured

        Raises:
            ConfigurationError: Listing every violation found
        """
        errors: List[str] = []
        broker_block = self._block(config, BROKER_BLOCK, errors)
        direct_block = self._block(config, DIRECT_BLOCK, errors)
        if errors:
            raise ConfigurationError(errors)

        if broker_block is None and direct_block is None:
            logger.debug("No tunnel block configured; tunneling disabled")
            return None

        if broker_block is not None:
            if direct_block is not None:
                logger.warning(f"Both {BROKER_BLOCK} and {DIRECT_BLOCK} set; using {BROKER_BLOCK}")
            if is_truthy(broker_block.get("use_remote_port_forward")):
                strategy = Strategy.BROKER_REMOTE_FORWARD
            else:
                strategy = Strategy.BROKER_SSH_CARRIER
            block = broker_block
            db_text = _text(block, "rds_endpoint") or _text(block, "db_endpoint")
        else:
            strategy = Strategy.DIRECT_SSH
            block = direct_block
            db_text = _text(block, "db_endpoint")

        local_host, local_port = self._local_endpoint(config.get("endpoint"), errors)
        db_endpoint = self._endpoint(db_text, DEFAULT_DB_PORT, "database endpoint", errors)

        principal = None
        ssh_endpoint = None
        broker = None

        if strategy.requires_ssh:
            principal = self._principal(block, errors)

        if strategy.requires_broker:
            broker = self._broker(block, errors)
            if broker is not None and strategy.requires_ssh:
                ssh_endpoint = broker.ssh_endpoint
        else:
            ssh_endpoint = self._endpoint(
                _text(block, "remote_host"), DEFAULT_SSH_PORT, "remote_host", errors
            )

        if errors:
            raise ConfigurationError(errors)

        plan = ForwardingPlan(
            strategy=strategy,
            local_host=local_host,
            local_port=local_port,
            db_endpoint=db_endpoint,
            ssh_endpoint=ssh_endpoint,
            principal=principal,
            broker=broker,
        )
        logger.debug(f"Resolved forwarding plan: {plan.to_dict()}")
        return plan

    # --------------------
    # Block helpers
    # --------------------
    def _block(
        self, config: Mapping[str, Any], name: str, errors: List[str]
    ) -> Optional[Mapping[str, Any]]:
        value = config.get(name)
        if value is None:
            return None
        if isinstance(value, list):
            if len(value) != 1 or not isinstance(value[0], Mapping):
                errors.append(f"{name}: expected exactly one block")
                return None
            value = value[0]
        if not isinstance(value, Mapping):
            errors.append(f"{name}: expected a table of settings")
            return None
        return value

    def _local_endpoint(self, raw: Any, errors: List[str]) -> Tuple[str, int]:
        text = str(raw or "").strip()
        if not text:
            errors.append("endpoint: not set (host:port of the local listener)")
            return DEFAULT_LOCAL_HOST, 0
        if text.startswith("/"):
            errors.append(f"endpoint: {text} is a unix socket; tunneling needs host:port")
            return DEFAULT_LOCAL_HOST, 0
        try:
            endpoint = Endpoint.parse(text, default_port=0)
        except ValueError as e:
            errors.append(f"endpoint: {e}")
            return DEFAULT_LOCAL_HOST, 0
        if endpoint.port == 0:
            errors.append(f"endpoint: {text!r} has no port")
        return endpoint.host or DEFAULT_LOCAL_HOST, endpoint.port

    def _endpoint(
        self, text: str, default_port: int, label: str, errors: List[str]
    ) -> Optional[Endpoint]:
        if not text:
            errors.append(f"not set {label}")
            return None
        try:
            return Endpoint.parse(text, default_port)
        except ValueError as e:
            errors.append(f"{label}: {e}")
            return None

    def _principal(self, block: Mapping[str, Any], errors: List[str]) -> Optional[SSHPrincipal]:
        user = _text(block, "ssh_user") or self.current_user()
        key_path = _text(block, "ssh_key_path") or default_ssh_key_path()
        key_path = str(Path(key_path).expanduser())

        ok = True
        if not user:
            errors.append("not set ssh_user")
            ok = False
        if not Path(key_path).is_file():
            errors.append(f"ssh_key_path: {key_path} does not exist")
            ok = False
        return SSHPrincipal(user=user, key_path=key_path) if ok else None

    def _broker(self, block: Mapping[str, Any], errors: List[str]) -> Optional[BrokerTarget]:
        target_id = _text(block, "ec2_instance_id")
        region = resolve_aws_region(_text(block, "region"), self.env)
        explicit_profile = _text(block, "aws_profile")
        profile = resolve_aws_profile(explicit_profile, self.env)

        ok = True
        if not target_id:
            errors.append("not set ec2_instance_id")
            ok = False
        if not region:
            errors.append("not set region (config, AWS_REGION or AWS_DEFAULT_REGION)")
            ok = False
        if not ok:
            return None
        return BrokerTarget(
            target_id=target_id,
            region=region,
            profile=profile,
            explicit_profile=explicit_profile,
        )


def _text(block: Mapping[str, Any], key: str) -> str:
    value = block.get(key)
    if value is None:
        return ""
    return str(value).strip()


def resolve_plan(
    config: Mapping[str, Any],
    env: Optional[Mapping[str, str]] = None,
) -> Optional[ForwardingPlan]:
    """Shortcut for ConfigResolver(env).resolve(config)"""
    return ConfigResolver(env=env).resolve(config)
