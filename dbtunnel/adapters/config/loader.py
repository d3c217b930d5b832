"""
Configuration loader with priority: CLI > env > TOML > defaults
"""
import os
import tomllib
from pathlib import Path
from typing import Dict, Any, Optional, Mapping

from ...core.constants import BROKER_BLOCK, DIRECT_BLOCK, ENV_PREFIX
from ...core.exceptions import ConfigurationError


class ConfigLoader:
    """
    Builds the raw configuration mapping consumed by ConfigResolver.

    Sources, later ones winning: TOML file, ``DBTUNNEL_*`` environment
    variables, CLI overrides.
    """

    ENV_MAPPINGS = {
        "ENDPOINT": "endpoint",
        "PROXY": "proxy",
        "SSM_INSTANCE_ID": f"{BROKER_BLOCK}.ec2_instance_id",
        "SSM_DB_ENDPOINT": f"{BROKER_BLOCK}.rds_endpoint",
        "SSM_REMOTE_PORT_FORWARD": f"{BROKER_BLOCK}.use_remote_port_forward",
        "SSM_SSH_USER": f"{BROKER_BLOCK}.ssh_user",
        "SSM_SSH_KEY_PATH": f"{BROKER_BLOCK}.ssh_key_path",
        "SSM_PROFILE": f"{BROKER_BLOCK}.aws_profile",
        "SSM_REGION": f"{BROKER_BLOCK}.region",
        "PF_REMOTE_HOST": f"{DIRECT_BLOCK}.remote_host",
        "PF_DB_ENDPOINT": f"{DIRECT_BLOCK}.db_endpoint",
        "PF_SSH_USER": f"{DIRECT_BLOCK}.ssh_user",
        "PF_SSH_KEY_PATH": f"{DIRECT_BLOCK}.ssh_key_path",
    }

    # Values kept as strings even when they look numeric or boolean
    STRING_KEYS = {"endpoint", "proxy", "ec2_instance_id", "rds_endpoint", "db_endpoint",
                   "remote_host", "ssh_user", "ssh_key_path", "aws_profile", "region"}

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self._env_prefix = ENV_PREFIX
        self._env = os.environ if env is None else env

    def load_toml(self, path: Path) -> Dict[str, Any]:
        """Load TOML configuration file"""
        if not path.exists():
            raise ConfigurationError([f"configuration file not found: {path}"])

        try:
            return tomllib.loads(path.read_text(encoding='utf-8'))
        except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError([f"failed to parse {path}: {e}"]) from e

    def load_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config: Dict[str, Any] = {}

        for suffix, config_key in self.ENV_MAPPINGS.items():
            value = self._env.get(self._env_prefix + suffix)
            if not value:
                continue
            if "." in config_key:
                block, key = config_key.split(".", 1)
                config.setdefault(block, {})[key] = self._convert_value(key, value)
            else:
                config[config_key] = self._convert_value(config_key, value)

        return config

    def _convert_value(self, key: str, value: str) -> Any:
        """Convert string value to appropriate type"""
        if key in self.STRING_KEYS:
            return value

        if value.lower() in ("true", "yes", "1"):
            return True
        if value.lower() in ("false", "no", "0"):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        return value

    def merge_configs(self, *configs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge multiple configurations with priority.
        Later configs override earlier ones.
        """
        result: Dict[str, Any] = {}

        for config in configs:
            result = self._deep_merge(result, config)

        return result

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, skipping None overrides"""
        result = base.copy()

        for key, value in override.items():
            if value is None:
                continue
            if isinstance(value, dict):
                current = result.get(key)
                merged = self._deep_merge(current if isinstance(current, dict) else {}, value)
                # A block holding only None overrides must not create the block
                if merged or not value:
                    result[key] = merged
            else:
                result[key] = value

        return result

    def load(
        self,
        toml_path: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
        use_env: bool = True,
    ) -> Dict[str, Any]:
        """
        Load configuration with priority: CLI > env > TOML

        Args:
            toml_path: Path to TOML configuration file
            cli_overrides: CLI parameter overrides (None values are ignored)
            use_env: Whether to load from environment variables

        Returns:
            Merged configuration dictionary
        """
        configs = []

        if toml_path:
            configs.append(self.load_toml(toml_path))

        if use_env:
            env_config = self.load_env()
            if env_config:
                configs.append(env_config)

        if cli_overrides:
            configs.append(cli_overrides)

        return self.merge_configs(*configs)
