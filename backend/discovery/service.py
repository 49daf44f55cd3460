"""
Peer discovery.

Three mechanisms feed one verification queue:
  * name-pattern enumeration of candidate host names, every SCAN_INTERVAL,
  * a sweep of the local /24, every SCAN_INTERVAL,
  * UDP broadcast announcements sent and received on DISCOVERY_PORT.

Each candidate is probed at ``GET /status`` by a fixed pool of workers.
Only answers carrying the application marker and a foreign identity are
reported as discovered.
"""

import asyncio
import logging
import socket
import time
from typing import Awaitable, Callable

import aiohttp
from pydantic import ValidationError

from config import (
    API_PORT,
    APP_MARKER,
    BROADCAST_ADDRESS,
    BROADCAST_INTERVAL,
    DISCOVERY_PORT,
    PEER_NAME_RANGE,
    PEER_NAME_TEMPLATE,
    PROBE_TIMEOUT,
    PROBE_WORKERS,
    SCAN_INTERVAL,
    SUBNET_SCAN_LIMIT,
)
from discovery.models import Announcement, IdentityProbe, PeerRecord
from discovery.network import (
    candidate_hostnames,
    is_loopback,
    local_ipv4_addresses,
    pick_local_address,
    subnet_candidates,
)

logger = logging.getLogger(__name__)

DiscoveredCallback = Callable[[str, str], Awaitable[None]]


def parse_identity(body: str) -> IdentityProbe | None:
    """Validate a /status body. The marker must sit in the app field."""
    if APP_MARKER not in body:
        return None
    try:
        probe = IdentityProbe.model_validate_json(body)
    except ValidationError:
        return None
    return probe if probe.app == APP_MARKER else None


class AnnouncementProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery announcements."""

    def __init__(self, scanner: "PeerDiscoveryScanner"):
        self.scanner = scanner

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        announcement = Announcement.decode(data)
        if announcement is None:
            return
        if announcement.identity == self.scanner.local_id:
            return
        self.scanner.add_broadcast_candidate(addr[0])

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class PeerDiscoveryScanner:
    """Produces verified (hostname, identity) pairs."""

    def __init__(
        self,
        local_id: str,
        *,
        api_port: int = API_PORT,
        discovery_port: int = DISCOVERY_PORT,
        name_template: str = PEER_NAME_TEMPLATE,
        name_range=PEER_NAME_RANGE,
        subnet_limit: int = SUBNET_SCAN_LIMIT,
        scan_interval: float = SCAN_INTERVAL,
        broadcast_interval: float = BROADCAST_INTERVAL,
        probe_timeout: float = PROBE_TIMEOUT,
        workers: int = PROBE_WORKERS,
        enable_broadcast: bool = True,
    ) -> None:
        self.local_id = local_id
        self.api_port = api_port
        self.discovery_port = discovery_port
        self.name_template = name_template
        self.name_range = name_range
        self.subnet_limit = subnet_limit
        self.scan_interval = scan_interval
        self.broadcast_interval = broadcast_interval
        self.probe_timeout = probe_timeout
        self.workers = workers
        self.enable_broadcast = enable_broadcast

        self._peers: dict[str, PeerRecord] = {}
        self._on_discovered: list[DiscoveredCallback] = []
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._pending: set[str] = set()
        self._broadcast_ips: set[str] = set()
        self._rescan = asyncio.Event()
        self._session: aiohttp.ClientSession | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._tasks: list[asyncio.Task] = []

        self.self_address: str | None = None

    def on_discovered(self, callback: DiscoveredCallback) -> None:
        """Register callback: async fn(hostname, identity)."""
        self._on_discovered.append(callback)

    async def start(self) -> None:
        """Start the probe workers, the scan loop and the broadcast pair."""
        logger.info(f"Starting discovery ({self.workers} probe workers)")
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.probe_timeout)
        )

        for i in range(self.workers):
            self._tasks.append(asyncio.create_task(self._probe_worker(), name=f"probe-{i}"))
        self._tasks.append(asyncio.create_task(self._scan_loop()))

        if self.enable_broadcast:
            try:
                await self._open_broadcast_socket()
                self._tasks.append(asyncio.create_task(self._broadcast_loop()))
            except OSError as e:
                logger.error(f"UDP discovery unavailable on port {self.discovery_port}: {e}")

        logger.info("Discovery service started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._transport:
            self._transport.close()
            self._transport = None
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Discovery service stopped")

    def get_peers(self) -> list[PeerRecord]:
        return list(self._peers.values())

    def get_peer(self, identity: str) -> PeerRecord | None:
        return self._peers.get(identity)

    def trigger_scan(self) -> None:
        """Run the next scan now instead of waiting for the interval."""
        self._rescan.set()

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def enqueue(self, candidate: str) -> bool:
        """Queue a candidate for verification unless it is already queued."""
        if candidate in self._pending:
            return False
        self._pending.add(candidate)
        self._queue.put_nowait(candidate)
        return True

    def add_broadcast_candidate(self, ip: str) -> None:
        if ip in self._broadcast_ips:
            return
        self._broadcast_ips.add(ip)
        logger.info(f"[UDP] Discovered peer: {ip}")
        self.enqueue(ip)

    async def scan_once(self) -> int:
        """Queue known peers, the name pattern and the local subnet. Returns how many were queued."""
        queued = 0
        known = {peer.hostname for peer in self._peers.values()}
        for hostname in known:
            queued += self.enqueue(hostname)
        for hostname in candidate_hostnames(self.name_template, self.name_range):
            queued += self.enqueue(hostname)

        addresses = await asyncio.to_thread(local_ipv4_addresses)
        local_ip = pick_local_address(addresses)
        if local_ip:
            logger.debug(f"[SCAN] Scanning network around {local_ip}")
        skip = known | self._broadcast_ips
        for ip in subnet_candidates(local_ip, self.subnet_limit, skip=skip):
            queued += self.enqueue(ip)
        return queued

    async def _scan_loop(self) -> None:
        while True:
            self._rescan.clear()
            try:
                await self.scan_once()
            except Exception as e:
                logger.warning(f"Scan failed: {e}")
            try:
                await asyncio.wait_for(self._rescan.wait(), timeout=self.scan_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def _probe_worker(self) -> None:
        while True:
            candidate = await self._queue.get()
            try:
                await self.verify(candidate)
            except Exception as e:
                logger.error(f"[ERROR] Scan failed for {candidate}: {type(e).__name__}")
            finally:
                self._pending.discard(candidate)
                self._queue.task_done()

    async def probe(self, candidate: str) -> IdentityProbe | None:
        """Fetch and validate the identity probe. Any failure yields None."""
        if self._session is None:
            return None
        url = f"http://{candidate}:{self.api_port}/status"
        try:
            async with self._session.get(url) as response:
                if response.status != 200:
                    return None
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
            # Unknown host, refused, timed out: expected for empty slots
            return None

        return parse_identity(body)

    async def verify(self, candidate: str) -> PeerRecord | None:
        probe = await self.probe(candidate)
        if probe is None:
            return None

        if probe.id == self.local_id:
            if self.self_address is None:
                self.self_address = candidate
                logger.info(f"[INFO] Self-identified at: {candidate}")
            return None

        if is_loopback(candidate):
            return None

        record = PeerRecord(identity=probe.id, hostname=candidate, last_verified_at=time.time())
        is_new = probe.id not in self._peers
        self._peers[probe.id] = record
        if is_new:
            logger.info(f"[PEER] Found and verified: {candidate} ({probe.id[:8]}...)")

        for cb in self._on_discovered:
            await cb(candidate, probe.id)
        return record

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def _open_broadcast_socket(self) -> None:
        loop = asyncio.get_running_loop()

        # SO_REUSEADDR before bind so several nodes on one host can listen
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind(("0.0.0.0", self.discovery_port))
        except OSError:
            sock.close()
            raise

        transport, _ = await loop.create_datagram_endpoint(
            lambda: AnnouncementProtocol(self),
            sock=sock,
        )
        self._transport = transport
        logger.info(f"[UDP] Listening on port {self.discovery_port}")

    def broadcast_targets(self, addresses: list[str]) -> set[str]:
        targets = {BROADCAST_ADDRESS}
        for ip in addresses:
            parts = ip.split(".")
            if len(parts) == 4:
                parts[3] = "255"
                targets.add(".".join(parts))
        return targets

    async def _broadcast_loop(self) -> None:
        data = Announcement(identity=self.local_id, service_port=self.api_port).encode()
        while True:
            try:
                addresses = await asyncio.to_thread(local_ipv4_addresses)
                if self._transport:
                    for target in self.broadcast_targets(addresses):
                        try:
                            self._transport.sendto(data, (target, self.discovery_port))
                        except OSError:
                            # Some interfaces refuse broadcast
                            pass
            except Exception as e:
                logger.warning(f"Broadcast failed: {e}")

            await asyncio.sleep(self.broadcast_interval)
