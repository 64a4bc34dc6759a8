"""
HTTP surface for a host's streams.

Exposes the stream primitives of a LoopbackHost over HTTP so remote callers
can drive StreamChannels through HttpHostConnection, plus a websocket that
bridges a non-blocking stream to an interactive console.

Endpoints:
    GET    /api/streams                 list open streams
    POST   /api/pipes                   allocate a connected stream pair
    GET    /api/streams/{id}            stream info (state, flags)
    POST   /api/streams/{id}/send       raw body; returns {"count", "would_block"}
    GET    /api/streams/{id}/recv       raw body; 204 means would block
    POST   /api/streams/{id}/finish
    POST   /api/streams/{id}/abort
    DELETE /api/streams/{id}            release the stream
    WS     /api/streams/{id}/console    base64 console bridge
"""

import asyncio
import base64
import json
import logging
import threading
from contextlib import asynccontextmanager
from typing import Dict, List

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import load_settings
from .console import ConsoleBridge
from .errors import InvalidStateError, RegistrationError, StreamError, TransferError
from .loopback import EventPump, LoopbackHost
from .protocol import WOULD_BLOCK, StreamFlags
from .stream import StreamChannel

logger = logging.getLogger(__name__)

settings = load_settings()


class StreamRegistry:
    """Channels served by this process, keyed by their string id."""

    def __init__(self, host: LoopbackHost):
        self.host = host
        self.pump = EventPump(host)
        self._channels: Dict[str, StreamChannel] = {}
        self._lock = threading.Lock()

    def open_pipe(self, nonblocking: bool = False) -> List[StreamChannel]:
        flags = StreamFlags.NONBLOCK if nonblocking else StreamFlags.NONE
        channels = list(self.host.open_channels(flags))
        with self._lock:
            for channel in channels:
                self._channels[str(channel.handle)] = channel
        return channels

    def get(self, stream_id: str) -> StreamChannel:
        with self._lock:
            channel = self._channels.get(stream_id)
        if channel is None:
            raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
        return channel

    def release(self, stream_id: str):
        with self._lock:
            channel = self._channels.pop(stream_id, None)
        if channel is None:
            raise HTTPException(status_code=404, detail=f"Stream {stream_id} not found")
        channel.release()

    def list(self) -> List[dict]:
        with self._lock:
            return [stream_info(sid, ch) for sid, ch in sorted(self._channels.items())]

    def close(self):
        self.pump.stop()
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            try:
                channel.release()
            except StreamError as e:
                logger.warning(f"Failed to release {channel!r}: {e}")


def stream_info(stream_id: str, channel: StreamChannel) -> dict:
    return {
        "id": stream_id,
        "state": channel.state.value,
        "nonblocking": channel.nonblocking,
        "flags": int(StreamFlags.NONBLOCK if channel.nonblocking else StreamFlags.NONE),
    }


registry = StreamRegistry(LoopbackHost(capacity=settings.pipe_capacity))


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    registry.close()


app = FastAPI(title="virtstream", lifespan=lifespan)


def _error_response(status_code: int, exc: StreamError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": {
                "error": type(exc).__name__,
                "code": exc.code,
                "message": exc.message,
            }
        },
    )


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return _error_response(409, exc)


@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    return _error_response(502, exc)


@app.exception_handler(RegistrationError)
async def registration_error_handler(request: Request, exc: RegistrationError):
    return _error_response(400, exc)


class PipeRequest(BaseModel):
    nonblocking: bool = False


@app.get("/api/streams")
def list_streams():
    return registry.list()


@app.post("/api/pipes")
def create_pipe(req: PipeRequest):
    channels = registry.open_pipe(nonblocking=req.nonblocking)
    logger.info(f"Created pipe {[ch.handle for ch in channels]}")
    return {"streams": [stream_info(str(ch.handle), ch) for ch in channels]}


@app.get("/api/streams/{stream_id}")
def get_stream(stream_id: str):
    return stream_info(stream_id, registry.get(stream_id))


@app.post("/api/streams/{stream_id}/send")
async def send(stream_id: str, request: Request):
    channel = registry.get(stream_id)
    data = await request.body()
    # Blocking streams may wait for room, keep them off the event loop
    sent = await asyncio.to_thread(channel.send, data)
    if sent is WOULD_BLOCK:
        return {"count": 0, "would_block": True}
    return {"count": sent, "would_block": False}


@app.get("/api/streams/{stream_id}/recv")
def recv(stream_id: str, nbytes: int = Query(settings.chunk_size, ge=1)):
    channel = registry.get(stream_id)
    data = channel.recv(nbytes)
    if data is WOULD_BLOCK:
        return Response(status_code=204)
    return Response(content=data, media_type="application/octet-stream")


@app.post("/api/streams/{stream_id}/finish")
def finish(stream_id: str):
    channel = registry.get(stream_id)
    channel.finish()
    return {"status": channel.state.value}


@app.post("/api/streams/{stream_id}/abort")
def abort(stream_id: str):
    channel = registry.get(stream_id)
    channel.abort()
    return {"status": channel.state.value}


@app.delete("/api/streams/{stream_id}")
def release(stream_id: str):
    registry.release(stream_id)
    return {"status": "released"}


@app.websocket("/api/streams/{stream_id}/console")
async def console(websocket: WebSocket, stream_id: str):
    await websocket.accept()

    try:
        channel = registry.get(stream_id)
    except HTTPException:
        await websocket.close(code=4404, reason="Stream not found")
        return
    if not channel.nonblocking:
        await websocket.close(code=4400, reason="Console requires a non-blocking stream")
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    bridge = ConsoleBridge(
        channel,
        on_output=lambda data: loop.call_soon_threadsafe(queue.put_nowait, data),
        on_close=lambda reason: loop.call_soon_threadsafe(queue.put_nowait, None),
    )
    bridge.start()
    if not registry.pump.running:
        registry.pump.start()

    async def forward_output():
        try:
            while True:
                data = await queue.get()
                if data is None:
                    break
                await websocket.send_text(base64.b64encode(data).decode("utf-8"))
            await websocket.close()
        except (WebSocketDisconnect, RuntimeError):
            # Client already went away
            pass

    sender = asyncio.create_task(forward_output())
    try:
        while not bridge.closed:
            message = await websocket.receive_text()
            try:
                msg = json.loads(message)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring malformed console message: {message[:80]!r}")
                continue
            if msg.get("type") == "input":
                bridge.write(base64.b64decode(msg.get("data", "")))
    except WebSocketDisconnect:
        logger.debug(f"Console client for stream {stream_id} disconnected")
    except InvalidStateError as e:
        logger.debug(f"Console input rejected: {e}")
    finally:
        bridge.close("client disconnected")
        await sender
