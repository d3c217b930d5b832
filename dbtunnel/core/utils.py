"""
Core utility functions
"""
import getpass
import os
import re
from pathlib import Path
from typing import Mapping, Optional

from .constants import DEFAULT_SSH_KEY_PATH, SOCKS_PROXY_PATTERN
from .exceptions import ConfigurationError


# ============================================================
# Local Identity
# ============================================================

def current_username() -> str:
    """Name of the OS user running this process, or empty string"""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


def default_ssh_key_path() -> str:
    """Default private key location (~/.ssh/id_rsa)"""
    return str(Path(DEFAULT_SSH_KEY_PATH).expanduser())


def is_truthy(value: object) -> bool:
    """Interpret config or environment flags ("1", "true", "yes", True)"""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "t", "true", "y", "yes", "on")


# ============================================================
# AWS Environment Fallbacks
# ============================================================

def first_env(env: Mapping[str, str], *names: str) -> str:
    """First non-empty environment value among names"""
    for name in names:
        value = env.get(name, "")
        if value:
            return value
    return ""


def resolve_aws_region(explicit: Optional[str], env: Optional[Mapping[str, str]] = None) -> str:
    """Region from config, then AWS_REGION, then AWS_DEFAULT_REGION"""
    if explicit:
        return explicit
    env = os.environ if env is None else env
    return first_env(env, "AWS_REGION", "AWS_DEFAULT_REGION")


def resolve_aws_profile(explicit: Optional[str], env: Optional[Mapping[str, str]] = None) -> str:
    """Profile from config, then AWS_PROFILE, then AWS_DEFAULT_PROFILE"""
    if explicit:
        return explicit
    env = os.environ if env is None else env
    return first_env(env, "AWS_PROFILE", "AWS_DEFAULT_PROFILE")


def plugin_profile(env: Optional[Mapping[str, str]] = None) -> str:
    """
    Profile argument handed to the session manager plugin.
    
    AWS_DEFAULT_PROFILE is only honoured when AWS_SDK_LOAD_CONFIG is set,
    matching how the AWS SDK treats shared config.
    """
    env = os.environ if env is None else env
    profile = env.get("AWS_PROFILE", "")
    if profile:
        return profile
    if is_truthy(env.get("AWS_SDK_LOAD_CONFIG", "")):
        return env.get("AWS_DEFAULT_PROFILE", "")
    return ""


# ============================================================
# Database Connection Proxy
# ============================================================

def resolve_socks_proxy(
    explicit: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """
    SOCKS proxy URL for the database connection itself.
    
    Independent of the tunnel: read from config, then ALL_PROXY / all_proxy.
    
    Raises:
        ConfigurationError: If the URL is not a socks5/socks5h URL with a port
    """
    env = os.environ if env is None else env
    url = explicit or first_env(env, "ALL_PROXY", "all_proxy")
    if not url:
        return None
    if not re.match(SOCKS_PROXY_PATTERN, url):
        raise ConfigurationError([f"proxy: {url!r} is not a valid socks url"])
    return url
