"""
File and volume transfer helpers.

Thin adapters between files and the batch drivers, used for volume
upload/download and by the CLI. Each helper returns the byte count and an MD5
checksum so both ends of a transfer can verify it.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from .driver import Sink, Source
from .protocol import CHUNK_SIZE
from .stream import StreamChannel

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    """Outcome of a completed file transfer."""

    path: str
    size: int  # Total bytes transferred
    checksum: str  # MD5 of the bytes transferred

    def to_dict(self):
        return {"path": self.path, "size": self.size, "checksum": self.checksum}


def file_source(f: BinaryIO, md5=None) -> Source:
    """Source reading from a binary file object, optionally hashing as it goes."""

    def source(nbytes: int) -> bytes:
        chunk = f.read(nbytes)
        if chunk and md5 is not None:
            md5.update(chunk)
        return chunk

    return source


def file_sink(f: BinaryIO, md5=None) -> Sink:
    """Sink writing to a binary file object; short writes are re-presented."""

    def sink(chunk: bytes) -> int:
        written = f.write(chunk)
        if written is None:
            written = len(chunk)
        if md5 is not None:
            md5.update(chunk[:written])
        return written

    return sink


def upload_file(
    channel: StreamChannel,
    path: str,
    chunk_size: int = CHUNK_SIZE,
    timeout: Optional[float] = None,
) -> TransferResult:
    """Send a local file over the channel and finish it."""
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Local file not found: {path}")

    size = os.path.getsize(path)
    logger.info(f"Uploading {path} ({size} bytes) to {channel!r}")

    md5 = hashlib.md5()
    with open(path, "rb") as f:
        sent = channel.send_all(file_source(f, md5), chunk_size=chunk_size, timeout=timeout)

    result = TransferResult(path=path, size=sent, checksum=md5.hexdigest())
    logger.info(f"Upload complete: {path} ({sent} bytes)")
    return result


def download_file(
    channel: StreamChannel,
    path: str,
    chunk_size: int = CHUNK_SIZE,
    timeout: Optional[float] = None,
) -> TransferResult:
    """Receive the whole stream into a local file and finish the channel.

    A partially written file is removed if the transfer fails.
    """
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Downloading {channel!r} to {path}")

    md5 = hashlib.md5()
    try:
        with open(path, "wb") as f:
            received = channel.receive_all(
                file_sink(f, md5), chunk_size=chunk_size, timeout=timeout
            )
    except Exception:
        if os.path.exists(path):
            os.unlink(path)
        raise

    result = TransferResult(path=path, size=received, checksum=md5.hexdigest())
    logger.info(f"Download complete: {path} ({received} bytes)")
    return result
