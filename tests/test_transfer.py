"""Tests for file/volume transfer helpers."""

import errno
import hashlib
import io
import os
import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from virtstream.errors import TransferError
from virtstream.loopback import LoopbackHost
from virtstream.protocol import StreamFlags
from virtstream.transfer import download_file, file_sink, file_source, upload_file


class ShortWriter(io.BytesIO):
    """File object that writes at most 3 bytes per call."""

    def write(self, data):
        return super().write(bytes(data[:3]))


class TestFileAdapters:
    def test_file_source_hashes_what_it_reads(self):
        md5 = hashlib.md5()
        source = file_source(io.BytesIO(b"Hello, world!"), md5)

        assert source(5) == b"Hello"
        assert source(100) == b", world!"
        assert source(100) == b""
        assert md5.hexdigest() == "6cd3556deb0da54bca060b4c39479839"

    def test_file_sink_reports_short_writes(self):
        f = ShortWriter()
        md5 = hashlib.md5()
        sink = file_sink(f, md5)

        assert sink(b"abcdef") == 3
        assert f.getvalue() == b"abc"
        assert md5.hexdigest() == hashlib.md5(b"abc").hexdigest()


class TestFileTransfer:
    def test_upload_and_download_over_blocking_pipe(self, tmp_path):
        src = tmp_path / "volume.raw"
        dst = tmp_path / "copy" / "volume.raw"
        src.write_bytes(os.urandom(50 * 1024))

        host = LoopbackHost(capacity=1024)
        sender, receiver = host.open_channels(StreamFlags.NONE)
        results = {}

        def upload():
            results["up"] = upload_file(sender, str(src), chunk_size=4096)

        t = threading.Thread(target=upload)
        t.start()
        results["down"] = download_file(receiver, str(dst), chunk_size=1000)
        t.join(timeout=5)

        assert dst.read_bytes() == src.read_bytes()
        assert results["up"].checksum == results["down"].checksum
        assert results["down"].to_dict() == {
            "path": str(dst),
            "size": 50 * 1024,
            "checksum": hashlib.md5(src.read_bytes()).hexdigest(),
        }
        sender.release()
        receiver.release()

    def test_upload_missing_file(self, tmp_path):
        host = LoopbackHost()
        sender, receiver = host.open_channels()
        with pytest.raises(FileNotFoundError):
            upload_file(sender, str(tmp_path / "missing.img"))
        sender.release()
        receiver.release()

    def test_failed_download_removes_partial_file(self, tmp_path):
        dst = tmp_path / "partial.img"
        host = LoopbackHost()
        sender, receiver = host.open_channels()
        sender.send(b"some bytes")
        sender.abort()

        with pytest.raises(TransferError) as exc_info:
            download_file(receiver, str(dst))
        assert exc_info.value.code == errno.ECONNABORTED
        assert not dst.exists()
        sender.release()
        receiver.release()
