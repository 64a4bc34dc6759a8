"""
Loopback Host

An in-process HostConnection whose native streams come in connected pairs,
like a socketpair: bytes sent on one end are received on the other.

- finish() on one end is end-of-stream for the other end's receive side
- abort() on one end is an error for the other end
- releasing an end that never finished is an error for the other end; a
  released peer also raises HANGUP

Readiness is level-triggered. dispatch() invokes every callback whose stream
is currently ready for one of its registered events. EventPump runs dispatch()
on a daemon thread and sleeps on the host's condition while nothing is ready.
"""

import errno
import itertools
import logging
import threading
from typing import Dict, Optional, Tuple, Union

from .config import DEFAULT_PIPE_CAPACITY
from .errors import HostError
from .host import HostConnection, HostEventCallback
from .protocol import STREAM_WOULD_BLOCK, StreamEvent, StreamFlags
from .stream import StreamChannel

logger = logging.getLogger(__name__)


class _Endpoint:
    """One end of a loopback pipe."""

    def __init__(self, handle: int, flags: int, capacity: int):
        self.handle = handle
        self.flags = flags
        self.capacity = capacity
        self.inbox = bytearray()  # Bytes sent by the peer, not yet received
        self.peer: Optional["_Endpoint"] = None

        self.finished = False
        self.aborted = False
        self.peer_finished = False
        self.peer_gone = False
        self.error: Optional[HostError] = None

        self.callback: Optional[HostEventCallback] = None
        self.events = 0

    @property
    def nonblocking(self) -> bool:
        return bool(self.flags & StreamFlags.NONBLOCK)

    def ready(self) -> int:
        """Events that are currently true for this endpoint."""
        mask = 0
        if self.inbox or self.peer_finished or self.peer_gone or self.error:
            mask |= StreamEvent.READABLE
        if (
            not self.finished
            and not self.aborted
            and not self.peer_gone
            and self.peer is not None
            and len(self.peer.inbox) < self.peer.capacity
        ):
            mask |= StreamEvent.WRITABLE
        if self.error:
            mask |= StreamEvent.ERROR
        if self.peer_gone:
            mask |= StreamEvent.HANGUP
        return int(mask)


class LoopbackHost(HostConnection):
    def __init__(self, capacity: int = DEFAULT_PIPE_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._endpoints: Dict[int, _Endpoint] = {}
        self._handles = itertools.count(1)
        self._closed = False
        self._cond = threading.Condition()
        # Bumped on every state change so EventPump never misses a wakeup
        self._generation = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _changed(self):
        self._generation += 1
        self._cond.notify_all()

    def _lookup(self, handle) -> _Endpoint:
        if self._closed:
            raise HostError(errno.ENOTCONN, "Connection is closed")
        ep = self._endpoints.get(handle)
        if ep is None:
            raise HostError(errno.EBADF, f"Invalid stream handle {handle!r}")
        return ep

    # ------------------------------------------------------------------
    # Allocation and teardown
    # ------------------------------------------------------------------

    def open_pipe(
        self, flags: int = StreamFlags.NONE, peer_flags: Optional[int] = None
    ) -> Tuple[int, int]:
        """Allocate a connected pair of streams and return their handles."""
        if peer_flags is None:
            peer_flags = flags
        with self._cond:
            if self._closed:
                raise HostError(errno.ENOTCONN, "Connection is closed")
            a = _Endpoint(next(self._handles), int(flags), self.capacity)
            b = _Endpoint(next(self._handles), int(peer_flags), self.capacity)
            a.peer, b.peer = b, a
            self._endpoints[a.handle] = a
            self._endpoints[b.handle] = b
            self._changed()
        logger.debug(f"Opened loopback pipe {a.handle} <-> {b.handle}")
        return a.handle, b.handle

    def open_channels(
        self, flags: int = StreamFlags.NONE, peer_flags: Optional[int] = None
    ) -> Tuple[StreamChannel, StreamChannel]:
        """Like open_pipe(), but wraps both handles in StreamChannels."""
        if peer_flags is None:
            peer_flags = flags
        a, b = self.open_pipe(flags, peer_flags)
        return StreamChannel(self, a, flags), StreamChannel(self, b, peer_flags)

    def handles(self):
        with self._cond:
            return sorted(self._endpoints)

    def close(self):
        """Tear down the connection, freeing every stream it still holds."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._endpoints.clear()
            self._changed()
        logger.info("Loopback host connection closed")

    def inject_error(self, handle, message: str, code: int = errno.EIO):
        """Make every further transfer on `handle` fail with HostError."""
        with self._cond:
            ep = self._lookup(handle)
            ep.error = HostError(code, message)
            self._changed()

    def buffered(self, handle) -> int:
        """Bytes waiting to be received on `handle`."""
        with self._cond:
            return len(self._lookup(handle).inbox)

    # ------------------------------------------------------------------
    # HostConnection primitives
    # ------------------------------------------------------------------

    def stream_flags(self, handle) -> int:
        with self._cond:
            return self._lookup(handle).flags

    def stream_recv(self, handle, nbytes: int) -> Union[bytes, int]:
        with self._cond:
            while True:
                ep = self._lookup(handle)
                if ep.error:
                    raise ep.error
                if ep.inbox:
                    data = bytes(ep.inbox[:nbytes])
                    del ep.inbox[:nbytes]
                    self._changed()
                    return data
                if ep.peer_finished:
                    return b""
                if ep.peer_gone:
                    raise HostError(errno.EPIPE, "Peer released the stream")
                if ep.nonblocking:
                    return STREAM_WOULD_BLOCK
                self._cond.wait()

    def stream_send(self, handle, data: bytes) -> int:
        with self._cond:
            while True:
                ep = self._lookup(handle)
                if ep.error:
                    raise ep.error
                if ep.finished or ep.aborted:
                    raise HostError(errno.EINVAL, "Stream is no longer writable")
                if ep.peer_gone:
                    raise HostError(errno.EPIPE, "Peer released the stream")

                peer = ep.peer
                room = peer.capacity - len(peer.inbox)
                if room > 0:
                    accepted = min(room, len(data))
                    peer.inbox += data[:accepted]
                    self._changed()
                    return accepted
                if ep.nonblocking:
                    return STREAM_WOULD_BLOCK
                self._cond.wait()

    def stream_finish(self, handle) -> int:
        with self._cond:
            ep = self._lookup(handle)
            if ep.error:
                raise ep.error
            if ep.finished or ep.aborted:
                raise HostError(errno.EINVAL, "Stream already terminated")
            ep.finished = True
            if not ep.peer_gone:
                ep.peer.peer_finished = True
            self._changed()
        return 0

    def stream_abort(self, handle) -> int:
        with self._cond:
            ep = self._lookup(handle)
            ep.aborted = True
            ep.inbox.clear()
            if not ep.peer_gone and ep.peer.error is None:
                ep.peer.error = HostError(errno.ECONNABORTED, "Stream aborted by peer")
            self._changed()
        return 0

    def stream_free(self, handle) -> int:
        with self._cond:
            ep = self._lookup(handle)
            del self._endpoints[handle]
            if not ep.peer_gone:
                peer = ep.peer
                peer.peer_gone = True
                if not ep.finished and not ep.aborted and peer.error is None:
                    peer.error = HostError(
                        errno.EPIPE, "Peer released the stream without finishing"
                    )
            ep.peer = None
            ep.callback = None
            self._changed()
        logger.debug(f"Freed loopback stream {handle}")
        return 0

    def event_add_callback(self, handle, events: int, callback: HostEventCallback) -> int:
        with self._cond:
            ep = self._lookup(handle)
            if ep.callback is not None:
                raise HostError(errno.EBUSY, "A callback is already registered")
            ep.callback = callback
            ep.events = int(events)
            self._changed()
        return 0

    def event_update_callback(self, handle, events: int) -> int:
        with self._cond:
            ep = self._lookup(handle)
            if ep.callback is None:
                raise HostError(errno.ENOENT, "No callback registered")
            ep.events = int(events)
            self._changed()
        return 0

    def event_remove_callback(self, handle) -> int:
        with self._cond:
            ep = self._lookup(handle)
            if ep.callback is None:
                raise HostError(errno.ENOENT, "No callback registered")
            ep.callback = None
            ep.events = 0
            self._changed()
        return 0

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    def dispatch(self) -> int:
        """Invoke the callback of every ready stream once.

        Returns how many callbacks were invoked.
        """
        with self._cond:
            if self._closed:
                return 0
            ready = []
            for ep in self._endpoints.values():
                if ep.callback is None:
                    continue
                fired = ep.ready() & ep.events
                if fired:
                    ready.append((ep, ep.callback, fired))

        invoked = 0
        for ep, callback, fired in ready:
            # An earlier callback may have removed or replaced this registration
            if ep.callback is not callback:
                continue
            try:
                callback(fired)
            except Exception:
                logger.error(f"Callback for stream {ep.handle} raised", exc_info=True)
            invoked += 1
        return invoked

    def wait_for_activity(self, generation: int, timeout: Optional[float] = None) -> bool:
        """Sleep until the host state changes past `generation`."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._generation != generation or self._closed, timeout
            )

    @property
    def generation(self) -> int:
        return self._generation

    def wakeup(self):
        with self._cond:
            self._changed()


class EventPump:
    """Runs LoopbackHost.dispatch() on a background thread."""

    def __init__(self, host: LoopbackHost, idle_timeout: float = 1.0):
        self.host = host
        self.idle_timeout = idle_timeout
        self.thread: Optional[threading.Thread] = None
        self.running = False
        self._lock = threading.Lock()

    def start(self):
        with self._lock:
            if self.running:
                logger.warning("EventPump already running")
                return
            self.running = True
            self.thread = threading.Thread(
                target=self._loop, daemon=True, name="virtstream-event-pump"
            )
            self.thread.start()
            logger.debug("EventPump started")

    def stop(self):
        with self._lock:
            if not self.running:
                return
            self.running = False

        self.host.wakeup()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=2)
        self.thread = None
        logger.debug("EventPump stopped")

    def __enter__(self) -> "EventPump":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def _loop(self):
        while self.running and not self.host.closed:
            generation = self.host.generation
            try:
                invoked = self.host.dispatch()
            except Exception as e:
                logger.error(f"Event dispatch error: {e}", exc_info=True)
                invoked = 0
            if not invoked:
                # Timeout allows periodic checks for shutdown
                self.host.wait_for_activity(generation, self.idle_timeout)
