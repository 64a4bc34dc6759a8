"""
Console bridge.

Pumps a non-blocking console stream through its event callback: READABLE
events drain guest output into `on_output`, and input queued with write() is
flushed when the stream reports WRITABLE. WRITABLE interest is only enabled
while input is pending so an idle console never keeps the event pump busy.

All channel operations happen under the bridge's lock, which serializes the
event pump thread against callers of write() and close().
"""

import logging
import threading
from typing import Callable, Optional

from .errors import InvalidStateError, StreamError
from .protocol import WOULD_BLOCK, StreamEvent
from .stream import StreamChannel

logger = logging.getLogger(__name__)

_READ_EVENTS = StreamEvent.READABLE | StreamEvent.ERROR | StreamEvent.HANGUP


class ConsoleBridge:
    def __init__(
        self,
        channel: StreamChannel,
        on_output: Callable[[bytes], None],
        on_close: Optional[Callable[[str], None]] = None,
        chunk_size: int = 4096,
    ):
        """
        Args:
            channel: Non-blocking console stream
            on_output: Called with each chunk of console output
            on_close: Called once with the reason the console closed
            chunk_size: Maximum bytes read per receive call
        """
        if not channel.nonblocking:
            raise ValueError("ConsoleBridge requires a non-blocking stream")
        self.channel = channel
        self.on_output = on_output
        self.on_close = on_close
        self.chunk_size = chunk_size

        self.closed = False
        self.close_reason: Optional[str] = None
        self._pending = bytearray()
        self._lock = threading.Lock()

    def start(self):
        with self._lock:
            self.channel.add_callback(_READ_EVENTS, self._on_event)
        logger.debug(f"Console bridge attached to {self.channel!r}")

    def write(self, data: bytes):
        """Queue console input; it is sent as the stream becomes writable."""
        if not data:
            return
        with self._lock:
            if self.closed:
                raise InvalidStateError(f"Console is closed: {self.close_reason}")
            was_idle = not self._pending
            self._pending += data
            if was_idle:
                self.channel.update_callback(_READ_EVENTS | StreamEvent.WRITABLE)

    @property
    def pending(self) -> int:
        """Bytes of input not yet accepted by the stream."""
        return len(self._pending)

    def close(self, reason: str = "closed"):
        with self._lock:
            self._close(reason)

    def _close(self, reason: str):
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self._pending.clear()
        try:
            self.channel.remove_callback()
        except StreamError as e:
            logger.warning(f"Failed to detach console callback: {e}")

        logger.info(f"Console on {self.channel!r} closed: {reason}")
        if self.on_close:
            try:
                self.on_close(reason)
            except Exception:
                logger.error("Console close callback failed", exc_info=True)

    def _on_event(self, channel: StreamChannel, events: StreamEvent):
        with self._lock:
            if self.closed:
                return
            try:
                if events & StreamEvent.WRITABLE:
                    self._flush_input()
                if events & (StreamEvent.READABLE | StreamEvent.ERROR | StreamEvent.HANGUP):
                    self._drain_output()
            except StreamError as e:
                self._close(f"stream error: {e}")
            except Exception as e:
                logger.error(f"Console bridge error: {e}", exc_info=True)
                self._close(f"bridge error: {e}")

    def _drain_output(self):
        while not self.closed:
            data = self.channel.recv(self.chunk_size)
            if data is WOULD_BLOCK:
                return
            if not data:
                self._close("end of stream")
                return
            self.on_output(data)

    def _flush_input(self):
        while self._pending:
            sent = self.channel.send(self._pending)
            if sent is WOULD_BLOCK or sent == 0:
                return
            del self._pending[:sent]
        self.channel.update_callback(_READ_EVENTS)
