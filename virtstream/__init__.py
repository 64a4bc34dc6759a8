"""
virtstream

Bidirectional data-transfer channels over native streams owned by a
virtualization host: console I/O, volume upload/download, migration data.

Architecture:
- A HostConnection allocates native streams and exposes their primitives
- StreamChannel owns one native handle and frees it exactly once
- Batch drivers move whole payloads, driven by readiness events on
  non-blocking streams

Usage:
    from virtstream import LoopbackHost, StreamFlags

    host = LoopbackHost()
    sender, receiver = host.open_channels(StreamFlags.NONE)

    with sender, receiver:
        sender.send(b"hello")
        sender.finish()
        receiver.recv(1024)  # b"hello"
"""

from .errors import (
    HostError,
    StreamError,
    InvalidStateError,
    TransferError,
    RegistrationError,
)

from .protocol import (
    CHUNK_SIZE,
    WOULD_BLOCK,
    StreamEvent,
    StreamFlags,
    StreamState,
    TransferSignal,
)

from .host import HostConnection
from .stream import StreamChannel
from .driver import SendAllDriver, ReceiveAllDriver
from .loopback import LoopbackHost, EventPump

__all__ = [
    # Errors
    "HostError",
    "StreamError",
    "InvalidStateError",
    "TransferError",
    "RegistrationError",
    # Protocol types
    "CHUNK_SIZE",
    "WOULD_BLOCK",
    "StreamEvent",
    "StreamFlags",
    "StreamState",
    "TransferSignal",
    # Streams
    "HostConnection",
    "StreamChannel",
    "SendAllDriver",
    "ReceiveAllDriver",
    "LoopbackHost",
    "EventPump",
]
