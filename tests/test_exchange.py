"""
Tests for transport/exchange.py: two live transports over loopback.
"""

import socket
import threading
import time

import pytest

from transport.exchange import FrameTransport, decode_jpeg
from transport.protocol import build_packet, parse_packet


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_transport(**kwargs):
    kwargs.setdefault("bind_host", "127.0.0.1")
    kwargs.setdefault("decoder", lambda data: data)
    return FrameTransport(0, **kwargs)


class FrameSink:
    """Collects on_frame callbacks from decode worker threads."""

    def __init__(self):
        self.frames = []
        self.event = threading.Event()

    def __call__(self, frame_id, frame):
        self.frames.append((frame_id, frame))
        self.event.set()

    def wait(self, timeout=2.0):
        return self.event.wait(timeout)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def pair():
    sink = FrameSink()
    sender = make_transport()
    receiver = make_transport(on_frame=sink)
    sender.start()
    receiver.start()
    sender.set_target("127.0.0.1", receiver.local_port).result(timeout=2)
    try:
        yield sender, receiver, sink
    finally:
        sender.stop()
        receiver.stop()


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


class TestFrameExchange:
    def test_frame_delivered(self, pair):
        sender, receiver, sink = pair
        frame = bytes(i % 256 for i in range(5000))
        sender.send_frame(frame)

        assert sink.wait()
        frame_id, received = sink.frames[0]
        assert received == frame
        assert frame_id == 1
        assert wait_for(lambda: sender.stats().frames_sent == 1)
        assert receiver.stats().frames_received == 1

    def test_jpeg_decoded(self, jpeg_bytes):
        sink = FrameSink()
        sender = make_transport()
        receiver = make_transport(on_frame=sink, decoder=decode_jpeg)
        sender.start()
        receiver.start()
        try:
            sender.set_target("127.0.0.1", receiver.local_port).result(timeout=2)
            sender.send_frame(jpeg_bytes)
            assert sink.wait()
            _, image = sink.frames[0]
            assert image.size == (64, 48)
        finally:
            sender.stop()
            receiver.stop()

    def test_corrupt_frame_counted_as_error(self):
        receiver = make_transport(decoder=decode_jpeg)
        receiver.start()
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(build_packet(1, 0, 1, b"not a jpeg"), ("127.0.0.1", receiver.local_port))
            assert wait_for(lambda: receiver.stats().errors == 1)
            assert receiver.stats().frames_received == 0
            assert receiver.is_healthy()
        finally:
            receiver.stop()

    def test_invalid_datagram_dropped(self):
        receiver = make_transport()
        receiver.start()
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(b"short", ("127.0.0.1", receiver.local_port))
            assert wait_for(lambda: receiver.stats().packets_dropped == 1)
            assert receiver.is_healthy()
        finally:
            receiver.stop()

    def test_no_target_sends_nothing(self):
        sender = make_transport()
        sender.start()
        try:
            sender.send_frame(b"x" * 100)
            time.sleep(0.05)
            stats = sender.stats()
            assert stats.frames_submitted == 1
            assert stats.frames_sent == 0
        finally:
            sender.stop()

    def test_oversized_frame_dropped(self, pair):
        sender, _, _ = pair
        sender.max_parts = 2
        sender.send_frame(b"x" * 5000)
        assert wait_for(lambda: sender.stats().frames_dropped == 1)
        assert sender.stats().frames_sent == 0


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_bind_failure_raises(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("127.0.0.1", 0))
        port = blocker.getsockname()[1]
        try:
            transport = FrameTransport(port, bind_host="127.0.0.1")
            with pytest.raises(OSError):
                transport.start()
            assert not transport.is_healthy()
        finally:
            blocker.close()

    def test_stop_is_idempotent(self):
        transport = make_transport()
        transport.start()
        assert transport.is_healthy()
        transport.stop()
        transport.stop()
        assert not transport.is_healthy()
        assert transport.target is None

    def test_restart(self):
        transport = make_transport()
        transport.start()
        try:
            transport.restart()
            assert transport.is_healthy()
        finally:
            transport.stop()

    def test_fail_stop_after_consecutive_errors(self, monkeypatch):
        transport = make_transport(max_consecutive_errors=3)
        monkeypatch.setattr("transport.exchange.ERROR_BACKOFF", 0)

        def boom(sock):
            raise ValueError("boom")

        monkeypatch.setattr(transport, "_run_once", boom)
        transport.start()
        try:
            assert wait_for(lambda: not transport.is_healthy())
            assert transport.stats().errors == 3
        finally:
            transport.stop()

    def test_unresolvable_target(self):
        transport = make_transport()
        assert transport.set_target("no-such-host.invalid").result(timeout=10) is None
        assert transport.target is None
        transport.stop()

    def test_stopped_transport_takes_no_target(self):
        transport = make_transport()
        transport.start()
        transport.stop()
        assert transport.set_target("127.0.0.1", 9).result(timeout=2) is None
        assert transport.target is None
        transport.stop()

    def test_resolution_finishing_after_stop_is_discarded(self, monkeypatch):
        entered = threading.Event()
        release = threading.Event()

        def slow_lookup(hostname):
            entered.set()
            release.wait(2)
            return "127.0.0.1"

        monkeypatch.setattr("transport.exchange.socket.gethostbyname", slow_lookup)
        transport = make_transport()
        transport.start()
        future = transport.set_target("node-a", 9)
        assert entered.wait(2)
        transport.stop()
        release.set()

        assert future.result(timeout=2) is None
        assert transport.target is None


# ---------------------------------------------------------------------------
# Send path, driven step by step without the loop thread
# ---------------------------------------------------------------------------


class RecordingSocket:
    def __init__(self):
        self.packets = []

    def sendto(self, packet, addr):
        self.packets.append((packet, addr))
        return len(packet)


class TestSendPath:
    def make_sender(self, burst_tx=2):
        transport = make_transport(burst_tx=burst_tx)
        transport._target = ("127.0.0.1", 9)
        return transport

    def test_burst_capped(self):
        transport = self.make_sender(burst_tx=2)
        sock = RecordingSocket()
        transport.send_frame(b"a" * 5000)  # 5 parts
        transport._admit_frame()

        assert transport._send_burst(sock) == 2
        assert len(sock.packets) == 2
        assert transport._send_burst(sock) == 2
        assert transport._send_burst(sock) == 1
        assert transport._send_burst(sock) == 0
        assert transport.stats().frames_sent == 1

    def test_new_frame_abandons_transmission(self):
        transport = self.make_sender(burst_tx=2)
        sock = RecordingSocket()
        transport.send_frame(b"a" * 5000)
        transport._admit_frame()
        assert transport._send_burst(sock) == 2

        transport.send_frame(b"b" * 5000)
        transport._admit_frame()
        assert transport.stats().frames_dropped == 1

        while True:
            sent = transport._send_burst(sock)
            assert sent <= 2
            if sent == 0:
                break

        headers = [parse_packet(packet)[0] for packet, _ in sock.packets]
        first = [h.part_index for h in headers if h.frame_id == 1]
        second = [h.part_index for h in headers if h.frame_id == 2]
        assert first == [0, 1]
        assert second == [0, 1, 2, 3, 4]
        assert all(addr == ("127.0.0.1", 9) for _, addr in sock.packets)
        assert transport.stats().frames_sent == 1

    def test_nothing_sent_without_target(self):
        transport = make_transport()
        sock = RecordingSocket()
        transport.send_frame(b"a" * 100)
        transport._admit_frame()
        assert transport._send_burst(sock) == 0
        assert sock.packets == []
