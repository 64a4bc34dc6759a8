import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import virtstream.cli as cli
import virtstream.server as server
from virtstream.client import HttpHostConnection
from virtstream.config import load_settings
from virtstream.loopback import LoopbackHost


class _Session:
    def __init__(self, client):
        self.client = client

    def request(self, method, url, timeout=None, data=None, **kwargs):
        if data is not None:
            kwargs["content"] = data
        return self.client.request(method, url, **kwargs)

    def close(self):
        pass


@pytest.fixture
def remote(monkeypatch):
    reg = server.StreamRegistry(LoopbackHost(capacity=1024 * 1024))
    monkeypatch.setattr(server, "registry", reg)
    client = TestClient(server.app)

    def connect(args):
        return HttpHostConnection("http://testserver", session=_Session(client))

    monkeypatch.setattr(cli, "_connect", connect)
    yield reg
    reg.close()
    reg.host.close()


def test_parser_defaults():
    parser = cli.build_parser(load_settings({}))
    args = parser.parse_args(["upload", "disk.img", "3"])
    assert args.command == "upload"
    assert args.file == "disk.img"
    assert args.stream_id == "3"
    assert args.host == "127.0.0.1"
    assert args.port == 8000


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_pipe_upload_download(remote, tmp_path, capsys):
    src = tmp_path / "in.bin"
    dst = tmp_path / "out.bin"
    src.write_bytes(b"volume contents" * 1000)

    assert cli.main(["pipe"]) == 0
    a, b = capsys.readouterr().out.split()

    assert cli.main(["upload", str(src), a]) == 0
    assert "Uploaded 15000 bytes" in capsys.readouterr().out

    assert cli.main(["download", b, str(dst)]) == 0
    assert dst.read_bytes() == src.read_bytes()


def test_upload_to_unknown_stream(remote, tmp_path, capsys):
    src = tmp_path / "in.bin"
    src.write_bytes(b"x")
    assert cli.main(["upload", str(src), "999"]) == 1
    assert "Error" in capsys.readouterr().out
