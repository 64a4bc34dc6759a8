"""Tests for the event-driven console bridge."""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from virtstream.console import ConsoleBridge
from virtstream.errors import InvalidStateError
from virtstream.loopback import LoopbackHost
from virtstream.protocol import StreamEvent, StreamFlags


class Recorder:
    def __init__(self):
        self.output = []
        self.closes = []

    def on_output(self, data):
        self.output.append(data)

    def on_close(self, reason):
        self.closes.append(reason)


@pytest.fixture
def host():
    h = LoopbackHost(capacity=8)
    yield h
    h.close()


@pytest.fixture
def console(host):
    """(bridge, guest-side channel, recorder)"""
    channel, guest = host.open_channels(StreamFlags.NONBLOCK)
    rec = Recorder()
    bridge = ConsoleBridge(channel, rec.on_output, rec.on_close)
    bridge.start()
    yield bridge, guest, rec
    bridge.close()
    channel.release()
    guest.release()


class TestConsoleBridge:
    def test_guest_output_is_forwarded(self, host, console):
        bridge, guest, rec = console
        guest.send(b"login: ")
        host.dispatch()
        assert rec.output == [b"login: "]

    def test_idle_console_only_listens_for_reads(self, host, console):
        bridge, guest, rec = console
        assert not bridge.channel.events & StreamEvent.WRITABLE
        assert host.dispatch() == 0

    def test_input_is_flushed_when_writable(self, host, console):
        bridge, guest, rec = console
        bridge.write(b"root\n")
        assert bridge.channel.events & StreamEvent.WRITABLE

        host.dispatch()

        assert guest.recv(100) == b"root\n"
        assert bridge.pending == 0
        assert not bridge.channel.events & StreamEvent.WRITABLE

    def test_input_larger_than_capacity(self, host, console):
        bridge, guest, rec = console
        bridge.write(b"0123456789ab")

        host.dispatch()
        assert bridge.pending == 4
        assert guest.recv(100) == b"01234567"

        host.dispatch()
        assert bridge.pending == 0
        assert guest.recv(100) == b"89ab"

    def test_end_of_stream_closes(self, host, console):
        bridge, guest, rec = console
        guest.send(b"bye")
        guest.finish()
        host.dispatch()

        assert rec.output == [b"bye"]
        assert bridge.closed
        assert bridge.close_reason == "end of stream"
        assert rec.closes == ["end of stream"]
        assert not bridge.channel.callback_registered

        bridge.close()
        assert rec.closes == ["end of stream"]

    def test_guest_abort_closes_with_error(self, host, console):
        bridge, guest, rec = console
        guest.abort()
        host.dispatch()

        assert bridge.closed
        assert bridge.close_reason.startswith("stream error")

    def test_write_after_close(self, console):
        bridge, guest, rec = console
        bridge.close("detached")
        with pytest.raises(InvalidStateError):
            bridge.write(b"ls\n")

    def test_requires_nonblocking_stream(self, host):
        a, b = host.open_channels(StreamFlags.NONE)
        with pytest.raises(ValueError):
            ConsoleBridge(a, lambda data: None)
        a.release()
        b.release()
