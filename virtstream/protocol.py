"""
Stream Protocol Definitions

Flags, readiness events and lifecycle states shared by the host boundary,
StreamChannel and the batch drivers.

Readiness model:
1. A caller registers interest in events (READABLE, WRITABLE, ...) for a stream
2. The host's event pump notices the stream is ready
3. The host invokes the registered callback with the events that fired
4. The callback performs non-blocking transfers until WOULD_BLOCK

Event values match the hypervisor's native stream event bits so masks can be
passed through to a host untouched.
"""

from enum import Enum, IntFlag


class StreamFlags(IntFlag):
    """Flags a native stream is allocated with."""

    NONE = 0
    NONBLOCK = 1 << 0  # Transfers return WOULD_BLOCK instead of suspending


class StreamEvent(IntFlag):
    """Readiness events a callback can be registered for."""

    NONE = 0
    READABLE = 1 << 0  # Data (or EOF) is available to receive
    WRITABLE = 1 << 1  # Room is available to send
    ERROR = 1 << 2  # The stream hit an error condition
    HANGUP = 1 << 3  # The peer closed its end


class StreamState(str, Enum):
    """Lifecycle states of a StreamChannel."""

    OPEN = "open"
    FINISHED = "finished"
    ABORTED = "aborted"
    RELEASED = "released"


class TransferSignal(Enum):
    """Non-error outcomes of a single-shot transfer."""

    WOULD_BLOCK = "would_block"  # Non-blocking stream cannot progress yet

    def __repr__(self) -> str:
        return f"<{self.name}>"


WOULD_BLOCK = TransferSignal.WOULD_BLOCK

# Constants
CHUNK_SIZE = 64 * 1024  # Batch driver read/write size
STREAM_WOULD_BLOCK = -2  # Native status returned by the host for WOULD_BLOCK
ALL_EVENTS = (
    StreamEvent.READABLE | StreamEvent.WRITABLE | StreamEvent.ERROR | StreamEvent.HANGUP
)


def describe_events(events: int) -> str:
    """Render an event mask for log messages, e.g. "READABLE|HANGUP"."""
    names = [
        event.name
        for event in StreamEvent
        if event & ALL_EVENTS and events & event
    ]
    return "|".join(names) if names else "NONE"
