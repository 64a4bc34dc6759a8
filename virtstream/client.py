"""
HTTP host connection.

HttpHostConnection implements the HostConnection primitives against a
virtstream server, so a StreamChannel can be driven remotely:

    conn = HttpHostConnection("http://127.0.0.1:8000")
    with conn.attach("1") as channel:
        channel.send_all(open("disk.img", "rb").read)

Event callbacks need the host's readiness mechanism and are not available
over HTTP, so remote streams should be used in blocking mode.
"""

import errno
import logging
from typing import List, Optional, Union

import requests

from .errors import HostError
from .host import HostConnection, HostEventCallback
from .protocol import STREAM_WOULD_BLOCK
from .stream import StreamChannel

logger = logging.getLogger(__name__)


class HttpHostConnection(HostConnection):
    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            base_url: Server address, e.g. http://127.0.0.1:8000
            session: Session to reuse; one is created when omitted
            timeout: Per-request timeout in seconds (None waits indefinitely,
                matching blocking stream semantics)
        """
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.session.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        if self._closed:
            raise HostError(errno.ENOTCONN, "Connection is closed")
        try:
            resp = self.session.request(
                method, self._url(path), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise HostError(errno.ECONNREFUSED, f"Request to {path} failed: {e}") from e

        if resp.status_code >= 400:
            raise self._error_from(resp)
        return resp

    @staticmethod
    def _error_from(resp: requests.Response) -> HostError:
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = None

        if isinstance(detail, dict):
            code = detail.get("code")
            message = detail.get("message") or resp.reason
        else:
            code = None
            message = detail or resp.text or resp.reason
        return HostError(code if code is not None else resp.status_code, str(message))

    # ------------------------------------------------------------------
    # Stream allocation
    # ------------------------------------------------------------------

    def open_pipe(self, nonblocking: bool = False) -> List[str]:
        """Ask the server for a connected stream pair; returns both ids."""
        resp = self._request("POST", "/pipes", json={"nonblocking": nonblocking})
        return [stream["id"] for stream in resp.json()["streams"]]

    def list_streams(self) -> List[dict]:
        return self._request("GET", "/streams").json()

    def attach(self, stream_id: str) -> StreamChannel:
        """Wrap a server-side stream in a StreamChannel owned by the caller."""
        return StreamChannel(self, str(stream_id))

    # ------------------------------------------------------------------
    # HostConnection primitives
    # ------------------------------------------------------------------

    def stream_flags(self, handle) -> int:
        return int(self._request("GET", f"/streams/{handle}").json()["flags"])

    def stream_recv(self, handle, nbytes: int) -> Union[bytes, int]:
        resp = self._request("GET", f"/streams/{handle}/recv", params={"nbytes": nbytes})
        if resp.status_code == 204:
            return STREAM_WOULD_BLOCK
        return resp.content

    def stream_send(self, handle, data: bytes) -> int:
        resp = self._request(
            "POST",
            f"/streams/{handle}/send",
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        body = resp.json()
        if body.get("would_block"):
            return STREAM_WOULD_BLOCK
        return int(body["count"])

    def stream_finish(self, handle) -> int:
        self._request("POST", f"/streams/{handle}/finish")
        return 0

    def stream_abort(self, handle) -> int:
        self._request("POST", f"/streams/{handle}/abort")
        return 0

    def stream_free(self, handle) -> int:
        self._request("DELETE", f"/streams/{handle}")
        return 0

    def event_add_callback(self, handle, events: int, callback: HostEventCallback) -> int:
        raise HostError(errno.EOPNOTSUPP, "Event callbacks are not available over HTTP")

    def event_update_callback(self, handle, events: int) -> int:
        raise HostError(errno.EOPNOTSUPP, "Event callbacks are not available over HTTP")

    def event_remove_callback(self, handle) -> int:
        raise HostError(errno.EOPNOTSUPP, "Event callbacks are not available over HTTP")
