"""
Shared fixtures: fake collaborators for the pairing and node tests.
"""

import asyncio
import io
from concurrent.futures import Future

import pytest
from PIL import Image

from pairing.models import PairResponse


class FakePairingClient:
    """Scripted stand-in for PairingClient. Each entry is a value or an exception."""

    def __init__(self, responses=None, confirm_result=True):
        self.responses = list(responses or [])
        self.confirm_result = confirm_result
        self.requests: list[tuple[str, str]] = []
        self.confirms: list[tuple[str, str]] = []
        self.closed = False

    async def request_pairing(self, hostname, requester_id):
        self.requests.append((hostname, requester_id))
        result = self.responses.pop(0) if self.responses else PairResponse(status="accepted", peer_id="peer")
        if isinstance(result, BaseException):
            raise result
        return result

    async def confirm(self, hostname, local_id):
        self.confirms.append((hostname, local_id))
        if isinstance(self.confirm_result, BaseException):
            raise self.confirm_result
        return self.confirm_result

    async def start(self):
        pass

    async def close(self):
        self.closed = True


class FakeTransport:
    """Records target changes instead of touching sockets."""

    def __init__(self):
        self.targets: list[str | None] = []
        self.frames: list[bytes] = []
        self.healthy = True
        self.started = 0
        self.stopped = 0
        self.on_frame = None
        self.local_port = 0

    def set_target(self, hostname, port=None):
        self.targets.append(hostname)
        future = Future()
        future.set_result((hostname, port or 0))
        return future

    def clear_target(self):
        self.targets.append(None)

    def send_frame(self, data):
        self.frames.append(data)

    def is_healthy(self):
        return self.healthy

    def start(self):
        self.started += 1
        self.healthy = True

    def stop(self):
        self.stopped += 1

    def stats(self):
        from transport.models import TransportStats

        return TransportStats(running=self.healthy, healthy=self.healthy)


class FakeScanner:
    """PeerDiscoveryScanner without the network."""

    def __init__(self, peers=None):
        self.peers = list(peers or [])
        self.callbacks = []
        self.scans_triggered = 0
        self.self_address = None
        self.started = False

    def on_discovered(self, callback):
        self.callbacks.append(callback)

    def get_peers(self):
        return list(self.peers)

    def trigger_scan(self):
        self.scans_triggered += 1

    async def start(self):
        self.started = True

    async def stop(self):
        self.started = False


@pytest.fixture
def fake_client():
    return FakePairingClient()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_scanner():
    return FakeScanner()


@pytest.fixture
def jpeg_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (64, 48), color=(200, 40, 40)).save(buf, format="JPEG")
    return buf.getvalue()


async def wait_until(predicate, timeout=2.0, interval=0.01):
    """Poll *predicate* on the event loop until it holds or *timeout* passes."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True
