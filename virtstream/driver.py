"""
Batch transfer drivers.

A driver moves a whole payload through a StreamChannel using a caller-supplied
source (send direction) or sink (receive direction), handling partial
transfers itself.

Blocking streams are driven inline. Non-blocking streams are driven from the
stream's event callback: each readiness event pumps data until the stream
reports WOULD_BLOCK, and the driver then waits for the next event instead of
retrying.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Optional

from .errors import StreamError, TransferError
from .protocol import CHUNK_SIZE, WOULD_BLOCK, StreamEvent, describe_events

if TYPE_CHECKING:
    from .stream import StreamChannel

logger = logging.getLogger(__name__)

# source(nbytes) -> next chunk, b"" (or None) at end of data
Source = Callable[[int], Optional[bytes]]
# sink(chunk) -> bytes consumed, None meaning the whole chunk
Sink = Callable[[bytes], Optional[int]]

_FAILURE_EVENTS = StreamEvent.ERROR | StreamEvent.HANGUP


class BatchDriver(ABC):
    """Common run/start/wait machinery for the send and receive drivers."""

    interest = StreamEvent.NONE

    def __init__(self, channel: "StreamChannel", chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.channel = channel
        self.chunk_size = chunk_size
        self.bytes_transferred = 0
        self.error: Optional[BaseException] = None
        self._started = False
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @abstractmethod
    def _pump(self, events: StreamEvent) -> bool:
        """Move data until the stream would block.

        Returns True once the payload is exhausted.
        """

    def _would_block(self, events: StreamEvent) -> bool:
        if not self.channel.nonblocking:
            raise TransferError("Blocking stream reported WOULD_BLOCK")
        if events & _FAILURE_EVENTS:
            raise TransferError(
                f"Stream reported {describe_events(events)} and cannot make progress"
            )
        return False

    def run(self, timeout: Optional[float] = None):
        """Drive the transfer to completion on the calling thread."""
        if self.channel.nonblocking:
            self.start()
            self.wait(timeout)
            return

        self._started = True
        try:
            self._pump(StreamEvent.NONE)
            self.channel.finish()
        except BaseException as e:
            self.error = e
            raise
        finally:
            self._done.set()

    def start(self):
        """Register for readiness events on a non-blocking stream.

        The transfer then progresses as the host dispatches events; use
        wait() or poll `done` to observe completion.
        """
        if self._started:
            raise RuntimeError(f"{type(self).__name__} already started")
        if not self.channel.nonblocking:
            raise ValueError("Event-driven transfers require a non-blocking stream")

        self.channel.add_callback(self.interest | _FAILURE_EVENTS, self._on_event)
        self._started = True
        logger.debug(f"{type(self).__name__} started on {self.channel!r}")

    def wait(self, timeout: Optional[float] = None):
        """Block until the transfer completes and re-raise its error, if any.

        Raises TimeoutError if it has not completed within `timeout` seconds;
        the registration stays in place, so the caller should abort and
        release the channel.
        """
        if not self._started:
            raise RuntimeError(f"{type(self).__name__} was never started")
        if not self._done.wait(timeout):
            raise TimeoutError(f"{type(self).__name__} timed out")
        if self.error is not None:
            raise self.error

    def _on_event(self, channel: "StreamChannel", events: StreamEvent):
        if self.done:
            return
        try:
            exhausted = self._pump(events)
        except Exception as e:
            self._fail(e)
            return
        if exhausted:
            self._complete()

    def _complete(self):
        try:
            self.channel.remove_callback()
            self.channel.finish()
            logger.debug(
                f"{type(self).__name__} complete: {self.bytes_transferred} bytes"
            )
        except Exception as e:
            self.error = e
        finally:
            self._done.set()

    def _fail(self, error: Exception):
        logger.warning(f"{type(self).__name__} failed on {self.channel!r}: {error}")
        self.error = error
        try:
            self.channel.remove_callback()
        except StreamError as e:
            logger.warning(f"Failed to remove driver callback: {e}")
        finally:
            self._done.set()


class SendAllDriver(BatchDriver):
    """Sends everything a source produces, then finishes the stream."""

    interest = StreamEvent.WRITABLE

    def __init__(
        self, channel: "StreamChannel", source: Source, chunk_size: int = CHUNK_SIZE
    ):
        super().__init__(channel, chunk_size)
        self._source = source
        # Unsent remainder of the current chunk; re-presented before pulling again
        self._pending = memoryview(b"")

    def _pump(self, events: StreamEvent) -> bool:
        while True:
            if not self._pending:
                chunk = self._source(self.chunk_size)
                if not chunk:
                    return True
                self._pending = memoryview(bytes(chunk))

            sent = self.channel.send(self._pending)
            if sent is WOULD_BLOCK:
                return self._would_block(events)
            if sent == 0:
                if not self.channel.nonblocking:
                    raise TransferError("Blocking stream accepted no data")
                return False

            self._pending = self._pending[sent:]
            self.bytes_transferred += sent


class ReceiveAllDriver(BatchDriver):
    """Feeds everything received to a sink until end of stream, then finishes it."""

    interest = StreamEvent.READABLE

    def __init__(
        self, channel: "StreamChannel", sink: Sink, chunk_size: int = CHUNK_SIZE
    ):
        super().__init__(channel, chunk_size)
        self._sink = sink
        # Received bytes the sink has not consumed yet
        self._pending = memoryview(b"")
        self.eof = False

    def _deliver(self):
        while self._pending:
            consumed = self._sink(bytes(self._pending))
            if consumed is None:
                consumed = len(self._pending)
            if consumed <= 0 or consumed > len(self._pending):
                raise TransferError(
                    f"Sink consumed {consumed} of {len(self._pending)} bytes"
                )
            self._pending = self._pending[consumed:]

    def _pump(self, events: StreamEvent) -> bool:
        while True:
            self._deliver()

            data = self.channel.recv(self.chunk_size)
            if data is WOULD_BLOCK:
                return self._would_block(events)
            if not data:
                self.eof = True
                return True

            self.bytes_transferred += len(data)
            self._pending = memoryview(data)
