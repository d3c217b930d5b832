"""
Trust-on-first-use host key verification
"""
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import paramiko
from paramiko.hostkeys import HostKeyEntry

from ...core.constants import DEFAULT_SSH_PORT, KNOWN_HOSTS_PATH
from ...core.exceptions import TrustMismatchError, TrustStoreError
from ...core.interfaces import HostKeyStore
from ...core.logging import get_logger

logger = get_logger(__name__)

# Serializes appends for stores that carry no lock of their own
_append_lock = threading.Lock()


class HostKeyStatus(str, Enum):
    OK = "ok"
    APPENDED = "appended"
    MISMATCH = "mismatch"


@dataclass
class HostKeyResult:
    """Outcome of verifying one presented key"""
    status: HostKeyStatus
    hostname: str
    wanted: List[paramiko.PKey] = field(default_factory=list)


def known_hosts_name(host: str, port: int = DEFAULT_SSH_PORT) -> str:
    """Name a host the way OpenSSH writes it to known_hosts"""
    if port == DEFAULT_SSH_PORT:
        return host
    return f"[{host}]:{port}"


def _same_key(a: paramiko.PKey, b: paramiko.PKey) -> bool:
    return a.get_name() == b.get_name() and a.asbytes() == b.asbytes()


def verify_host_key(
    store: HostKeyStore,
    hostname: str,
    key: paramiko.PKey,
    lock: Optional[threading.Lock] = None,
) -> HostKeyResult:
    """
    Check ``key`` against ``store`` for ``hostname``.

    Unknown hosts are appended; a known host whose recorded keys all differ
    from the presented one is reported as a mismatch and left untouched.
    """
    recorded = store.lookup(hostname)
    if any(_same_key(k, key) for k in recorded):
        return HostKeyResult(HostKeyStatus.OK, hostname)
    if recorded:
        return HostKeyResult(HostKeyStatus.MISMATCH, hostname, recorded)

    lock = lock or getattr(store, "lock", None) or _append_lock
    with lock:
        # Another connection may have recorded it meanwhile
        recorded = store.lookup(hostname)
        if any(_same_key(k, key) for k in recorded):
            return HostKeyResult(HostKeyStatus.OK, hostname)
        if recorded:
            return HostKeyResult(HostKeyStatus.MISMATCH, hostname, recorded)
        store.append(hostname, key)

    logger.info(f"Trusted new host key for {hostname} ({key.get_name()})")
    return HostKeyResult(HostKeyStatus.APPENDED, hostname)


class KnownHostsStore(HostKeyStore):
    """
    OpenSSH known_hosts file.

    The file is re-read on every lookup and only ever appended to; existing
    lines, including hashed ones, are never rewritten.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path or KNOWN_HOSTS_PATH).expanduser()
        self.lock = threading.Lock()

    def _load(self) -> paramiko.HostKeys:
        keys = paramiko.HostKeys()
        if not self.path.exists():
            return keys
        try:
            keys.load(str(self.path))
        except OSError as e:
            raise TrustStoreError(f"Cannot read {self.path}: {e}") from e
        return keys

    def lookup(self, hostname: str) -> List[paramiko.PKey]:
        entry = self._load().lookup(hostname)
        if not entry:
            return []
        return list(entry.values())

    def append(self, hostname: str, key: paramiko.PKey) -> None:
        line = HostKeyEntry([hostname], key).to_line()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise TrustStoreError(f"Cannot append to {self.path}: {e}") from e


class MemoryHostKeyStore(HostKeyStore):
    """In-memory store with the same contract as KnownHostsStore"""

    def __init__(self, entries: Optional[Dict[str, List[paramiko.PKey]]] = None):
        self._entries: Dict[str, List[paramiko.PKey]] = {
            host: list(keys) for host, keys in (entries or {}).items()
        }
        self.lock = threading.Lock()
        self.appends = 0

    def lookup(self, hostname: str) -> List[paramiko.PKey]:
        return list(self._entries.get(hostname, []))

    def append(self, hostname: str, key: paramiko.PKey) -> None:
        self._entries.setdefault(hostname, []).append(key)
        self.appends += 1


class HostKeyVerifier:
    """
    Callable used by the SSH client once the server key is known.

    Keyed by the logical SSH target (bastion host, or the broker target id
    in carrier mode); the transport's own peer is never consulted, since for
    a piped carrier it is only an anonymous socket pair.
    """

    def __init__(self, store: Optional[HostKeyStore] = None):
        self.store = store or KnownHostsStore()

    def verify(self, host: str, port: int, key: paramiko.PKey) -> HostKeyResult:
        return verify_host_key(self.store, known_hosts_name(host, port), key)

    def __call__(self, host: str, port: int, key: paramiko.PKey) -> HostKeyResult:
        """
        Raises:
            TrustMismatchError: If the host is known under a different key
            TrustStoreError: If a new key cannot be recorded
        """
        result = self.verify(host, port, key)
        if result.status is HostKeyStatus.MISMATCH:
            raise TrustMismatchError(result.hostname, result.wanted)
        return result
