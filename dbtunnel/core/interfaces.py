"""
Core interfaces for dependency injection
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Protocol

import paramiko


class Stream(Protocol):
    """Duplex byte stream: a socket or an SSH channel"""

    def recv(self, bufsize: int) -> bytes: ...

    def sendall(self, data: bytes) -> Any: ...

    def close(self) -> None: ...


# Opens a fresh stream to the given endpoint on the far side of the tunnel
ChannelOpener = Callable[[Any], Stream]


class HostKeyStore(ABC):
    """Trusted host key storage interface"""
    
    @abstractmethod
    def lookup(self, hostname: str) -> List[paramiko.PKey]:
        """Return every key recorded for hostname"""
        pass
    
    @abstractmethod
    def append(self, hostname: str, key: paramiko.PKey) -> None:
        """Record a newly trusted key for hostname"""
        pass
