"""
StreamChannel

A bidirectional data-transfer channel bound to a native stream allocated by a
HostConnection (console I/O, volume upload/download, migration data).

The channel owns the native handle and frees it exactly once. Use it as a
context manager so every exit path releases it:

    with StreamChannel(connection, handle) as channel:
        channel.send_all(open("disk.img", "rb").read)
"""

import logging
import weakref
from typing import Callable, Optional, Union

from .driver import ReceiveAllDriver, SendAllDriver, Sink, Source
from .errors import (
    HostError,
    InvalidStateError,
    RegistrationError,
    StreamError,
    TransferError,
)
from .host import HostConnection
from .protocol import (
    CHUNK_SIZE,
    STREAM_WOULD_BLOCK,
    WOULD_BLOCK,
    StreamEvent,
    StreamFlags,
    StreamState,
    TransferSignal,
    describe_events,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[["StreamChannel", StreamEvent], None]


class StreamChannel:
    """Owned wrapper around a native stream handle.

    Not safe for unsynchronized use from several threads; callers serialize
    access to one channel. Distinct channels are independent.
    """

    def __init__(
        self,
        connection: HostConnection,
        handle,
        flags: Optional[int] = None,
    ):
        """Take ownership of an already-allocated native stream.

        Args:
            connection: Session that allocated the stream (referenced weakly)
            handle: Native stream handle
            flags: StreamFlags the stream was opened with; queried from the
                host when omitted
        """
        self._handle = handle
        self._connection = weakref.ref(connection)
        self.state = StreamState.OPEN
        self.nonblocking = False

        self._callback: Optional[EventCallback] = None
        self._events = StreamEvent.NONE

        if flags is None:
            try:
                flags = connection.stream_flags(handle)
            except HostError as e:
                raise TransferError.from_host(e) from e
        self.nonblocking = bool(flags & StreamFlags.NONBLOCK)

    def __repr__(self) -> str:
        mode = "nonblocking" if self.nonblocking else "blocking"
        return f"<StreamChannel handle={self._handle!r} {mode} {self.state.value}>"

    def __enter__(self) -> "StreamChannel":
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is not None and self.state is StreamState.OPEN:
                try:
                    self.abort()
                except StreamError as e:
                    logger.warning(f"Failed to abort stream {self._handle!r}: {e}")
        finally:
            self.release()

    def __del__(self):
        if getattr(self, "_handle", None) is None:
            return
        logger.warning(
            f"Stream {self._handle!r} was never released, releasing from finalizer"
        )
        try:
            self.release()
        except Exception as e:
            logger.error(f"Finalizer failed to release stream: {e}")

    @property
    def handle(self):
        """The native handle, or None once released."""
        return self._handle

    @property
    def connection(self) -> Optional[HostConnection]:
        return self._connection()

    @property
    def callback_registered(self) -> bool:
        return self._callback is not None

    @property
    def events(self) -> StreamEvent:
        """Event mask of the current callback registration."""
        return self._events

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _host(self) -> HostConnection:
        connection = self._connection()
        if connection is None or connection.closed:
            raise InvalidStateError("Host connection has been closed")
        return connection

    def _require_open(self, action: str) -> HostConnection:
        if self.state is not StreamState.OPEN:
            raise InvalidStateError(f"Cannot {action} a {self.state.value} stream")
        return self._host()

    # ------------------------------------------------------------------
    # Single-shot transfer
    # ------------------------------------------------------------------

    def recv(self, nbytes: int) -> Union[bytes, TransferSignal]:
        """Read up to nbytes from the stream.

        Returns the data read, b"" at end of stream, or WOULD_BLOCK when a
        non-blocking stream has nothing available yet.
        """
        host = self._require_open("receive from")
        if nbytes < 0:
            raise ValueError(f"nbytes must be >= 0, got {nbytes}")
        if nbytes == 0:
            return b""

        try:
            ret = host.stream_recv(self._handle, nbytes)
        except HostError as e:
            raise TransferError.from_host(e) from e

        if isinstance(ret, int):
            if ret == STREAM_WOULD_BLOCK:
                return WOULD_BLOCK
            raise TransferError(f"Host returned unexpected receive status {ret}", code=ret)
        return ret

    def receive(self, buffer) -> Union[int, TransferSignal]:
        """Read into a writable buffer.

        Returns the number of bytes read (0 at end of stream) or WOULD_BLOCK.
        A zero-length buffer returns 0 without touching the stream.
        """
        self._require_open("receive from")
        view = memoryview(buffer)
        if view.readonly:
            raise TypeError("receive() requires a writable buffer")
        view = view.cast("B")

        data = self.recv(len(view))
        if data is WOULD_BLOCK:
            return data
        view[: len(data)] = data
        return len(data)

    def send(self, data) -> Union[int, TransferSignal]:
        """Write data to the stream.

        Returns the number of bytes accepted, which may be fewer than
        len(data), or WOULD_BLOCK when a non-blocking stream is full.
        """
        host = self._require_open("send on")
        # Buffer objects only
        payload = memoryview(data).cast("B").tobytes()
        if not payload:
            return 0

        try:
            ret = host.stream_send(self._handle, payload)
        except HostError as e:
            raise TransferError.from_host(e) from e

        if ret == STREAM_WOULD_BLOCK:
            return WOULD_BLOCK
        if ret < 0 or ret > len(payload):
            raise TransferError(f"Host returned unexpected send status {ret}", code=ret)
        return ret

    # ------------------------------------------------------------------
    # Batch transfer
    # ------------------------------------------------------------------

    def send_all(
        self,
        source: Source,
        chunk_size: int = CHUNK_SIZE,
        timeout: Optional[float] = None,
    ) -> int:
        """Send everything `source` produces, then finish the stream.

        `source(nbytes)` returns the next chunk, b"" at end of data.
        Non-blocking streams are driven by WRITABLE events, so the host's
        event pump must run on another thread. Returns the bytes sent.
        """
        driver = SendAllDriver(self, source, chunk_size=chunk_size)
        driver.run(timeout=timeout)
        return driver.bytes_transferred

    def receive_all(
        self,
        sink: Sink,
        chunk_size: int = CHUNK_SIZE,
        timeout: Optional[float] = None,
    ) -> int:
        """Feed the whole stream to `sink`, then finish the stream.

        `sink(chunk)` returns how many bytes it consumed (None means all of
        them). Returns the bytes received.
        """
        driver = ReceiveAllDriver(self, sink, chunk_size=chunk_size)
        driver.run(timeout=timeout)
        return driver.bytes_transferred

    # ------------------------------------------------------------------
    # Event notification
    # ------------------------------------------------------------------

    def _make_dispatcher(self):
        # The host only sees a weak reference, so a registration never keeps
        # an abandoned channel alive.
        ref = weakref.ref(self)

        def dispatch(events: int):
            channel = ref()
            if channel is not None:
                channel._dispatch(events)

        return dispatch

    def _dispatch(self, events: int):
        callback = self._callback
        fired = StreamEvent(int(events) & int(self._events))
        if callback is None or not fired:
            return
        try:
            callback(self, fired)
        except Exception:
            logger.error(
                f"Event callback for stream {self._handle!r} failed", exc_info=True
            )

    def add_callback(self, events: int, callback: EventCallback):
        """Register `callback(channel, events)` for readiness events.

        Only one registration exists at a time; registering again replaces
        the previous callback and mask.
        """
        host = self._require_open("register a callback on")
        if self._callback is not None:
            logger.debug(f"Replacing event callback on stream {self._handle!r}")
            self.remove_callback()

        try:
            host.event_add_callback(self._handle, int(events), self._make_dispatcher())
        except HostError as e:
            raise RegistrationError.from_host(e) from e

        self._callback = callback
        self._events = StreamEvent(events)
        logger.debug(
            f"Registered callback on stream {self._handle!r} for {describe_events(events)}"
        )

    def update_callback(self, events: int):
        """Change the event mask of the current registration."""
        host = self._require_open("update a callback on")
        if self._callback is None:
            raise RegistrationError(
                f"No callback registered on stream {self._handle!r}"
            )

        try:
            host.event_update_callback(self._handle, int(events))
        except HostError as e:
            raise RegistrationError.from_host(e) from e
        self._events = StreamEvent(events)

    def remove_callback(self):
        """Deregister the callback. Does nothing when none is registered."""
        if self._callback is None:
            return
        host = self._host()
        try:
            host.event_remove_callback(self._handle)
        except HostError as e:
            raise RegistrationError.from_host(e) from e
        finally:
            self._callback = None
            self._events = StreamEvent.NONE

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def finish(self):
        """Signal orderly end of transmission. No further sends are valid."""
        host = self._require_open("finish")
        try:
            host.stream_finish(self._handle)
        except HostError as e:
            raise TransferError.from_host(e) from e
        self.state = StreamState.FINISHED
        logger.debug(f"Finished stream {self._handle!r}")

    def abort(self):
        """Cancel the transfer. The stream is ABORTED even if the host call fails."""
        host = self._require_open("abort")
        try:
            host.stream_abort(self._handle)
        except HostError as e:
            raise TransferError.from_host(e) from e
        finally:
            self.state = StreamState.ABORTED
            logger.debug(f"Aborted stream {self._handle!r}")

    def release(self):
        """Free the native handle. Safe to call any number of times."""
        if self._handle is None:
            return

        handle = self._handle
        connection = self._connection()
        try:
            if connection is None or connection.closed:
                logger.warning(
                    f"Host connection gone, dropping handle of stream {handle!r}"
                )
                return

            if self._callback is not None:
                try:
                    connection.event_remove_callback(handle)
                except HostError as e:
                    logger.warning(f"Failed to remove callback of stream {handle!r}: {e}")

            try:
                connection.stream_free(handle)
            except HostError as e:
                raise TransferError.from_host(e) from e
        finally:
            self._handle = None
            self._callback = None
            self._events = StreamEvent.NONE
            self.state = StreamState.RELEASED
            logger.debug(f"Released stream {handle!r}")
