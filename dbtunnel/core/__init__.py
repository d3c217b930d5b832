"""
Core infrastructure layer
"""
from .constants import *
from .exceptions import *
from .logging import setup_logging, get_logger, get_stdout_console, get_stderr_console
from .interfaces import HostKeyStore, Stream, ChannelOpener
from .utils import (
    current_username,
    default_ssh_key_path,
    resolve_aws_profile,
    resolve_aws_region,
    resolve_socks_proxy,
    plugin_profile,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "get_stdout_console",
    "get_stderr_console",
    "HostKeyStore",
    "Stream",
    "ChannelOpener",
    "current_username",
    "default_ssh_key_path",
    "resolve_aws_profile",
    "resolve_aws_region",
    "resolve_socks_proxy",
    "plugin_profile",
]
