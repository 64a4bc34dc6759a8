"""
Stream error taxonomy.

Host implementations raise HostError; StreamChannel translates it into the
typed errors below so callers never have to inspect numeric status codes.
"""

from typing import Optional


class HostError(Exception):
    """Failure reported by a HostConnection primitive."""

    def __init__(self, code: int, message: str):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class StreamError(Exception):
    """Base class for StreamChannel failures."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message

    @classmethod
    def from_host(cls, err: HostError) -> "StreamError":
        return cls(err.message, code=err.code)


class InvalidStateError(StreamError):
    """Operation attempted on a finished, aborted or released channel."""


class TransferError(StreamError):
    """Underlying I/O failure during send, receive or a batch transfer."""


class RegistrationError(StreamError):
    """Event callback registration, update or removal failed."""
