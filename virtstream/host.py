"""
Hypervisor Control API boundary.

StreamChannel never talks to a hypervisor directly. It routes every call
through a HostConnection, which owns the session and the native stream
objects. Implementations signal failure by raising HostError and signal a
non-blocking stall by returning STREAM_WOULD_BLOCK.
"""

from abc import ABC, abstractmethod
from typing import Callable, Union

from .protocol import STREAM_WOULD_BLOCK

# Host-level callback, invoked with the events that fired
HostEventCallback = Callable[[int], None]

__all__ = ["HostConnection", "HostEventCallback", "STREAM_WOULD_BLOCK"]


class HostConnection(ABC):
    """A session with the host that allocated one or more native streams.

    The connection's lifetime is managed by its owner. Streams keep only a
    weak reference to it and must stop working once `closed` is True.
    """

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the session has been torn down."""

    @abstractmethod
    def stream_flags(self, handle) -> int:
        """Return the StreamFlags the native stream was allocated with."""

    @abstractmethod
    def stream_abort(self, handle) -> int:
        ...

    @abstractmethod
    def stream_finish(self, handle) -> int:
        ...

    @abstractmethod
    def stream_free(self, handle) -> int:
        """Drop the caller's reference to the native stream."""

    @abstractmethod
    def stream_recv(self, handle, nbytes: int) -> Union[bytes, int]:
        """Read up to nbytes.

        Returns the data read (b"" at end of stream) or STREAM_WOULD_BLOCK.
        """

    @abstractmethod
    def stream_send(self, handle, data: bytes) -> int:
        """Write data, returning the number of bytes accepted or STREAM_WOULD_BLOCK."""

    @abstractmethod
    def event_add_callback(self, handle, events: int, callback: HostEventCallback) -> int:
        ...

    @abstractmethod
    def event_update_callback(self, handle, events: int) -> int:
        ...

    @abstractmethod
    def event_remove_callback(self, handle) -> int:
        ...
