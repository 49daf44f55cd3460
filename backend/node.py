"""
The node service object.

ShuffleNode wires discovery, pairing (or shuffle selection), the frame
transport and the event channel together behind one start()/stop()
lifecycle. Consumers hold a reference to it instead of reaching for
module-level singletons.
"""

import asyncio
import logging
import time

from config import (
    APP_MARKER,
    DEVICE_ID,
    DEVICE_NAME,
    NODE_MODE,
    RESTART_DELAY,
    SESSION_DURATION,
    WATCHDOG_INTERVAL,
)
from discovery.models import IdentityProbe
from discovery.service import PeerDiscoveryScanner
from events import EventBus, FrameReady, PeerDiscovered, SessionEnded
from pairing.client import PairingClient
from pairing.coordinator import PairingCoordinator
from pairing.models import SessionState
from shuffle.selector import ShuffleSelector
from transport.exchange import FrameTransport

logger = logging.getLogger(__name__)

MODES = ("handshake", "shuffle")


class ShuffleNode:
    """One participant in the shuffle network."""

    def __init__(
        self,
        device_id: str = DEVICE_ID,
        device_name: str = DEVICE_NAME,
        *,
        mode: str = NODE_MODE,
        bus: EventBus | None = None,
        scanner: PeerDiscoveryScanner | None = None,
        transport: FrameTransport | None = None,
        client: PairingClient | None = None,
        selector: ShuffleSelector | None = None,
        session_duration: float = SESSION_DURATION,
        watchdog_interval: float = WATCHDOG_INTERVAL,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f"Unknown mode {mode!r}, expected one of {MODES}")
        self.device_id = device_id
        self.device_name = device_name
        self.mode = mode
        self.session_duration = session_duration
        self.watchdog_interval = watchdog_interval

        self.bus = bus or EventBus()
        self.scanner = scanner or PeerDiscoveryScanner(device_id)
        self.transport = transport or FrameTransport()
        self.transport.on_frame = self._on_frame
        self.selector = selector or ShuffleSelector()
        self.client = client or PairingClient()
        self.coordinator = PairingCoordinator(
            device_id,
            self.client,
            transport=self.transport,
            bus=self.bus,
            session_duration=session_duration,
        )
        self.bus.subscribe(self._on_event)
        self.scanner.on_discovered(self._on_discovered)

        # Shuffle-mode state
        self.current_peer: str | None = None
        self._shuffle_timer: asyncio.TimerHandle | None = None

        self._started_at: float | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._restarting = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start every subsystem. Raises OSError if the frame socket cannot bind."""
        logger.info(f"Starting node {self.device_id} ({self.mode} mode)")
        await self.bus.start()
        self.transport.start()
        await self.scanner.start()

        self._started_at = time.time()
        self._watchdog_task = asyncio.create_task(self._watchdog_loop())
        logger.info("Node ready")

    async def stop(self) -> None:
        logger.info("Shutting down node...")
        if self._watchdog_task:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None
        self._cancel_shuffle_timer()

        await self.scanner.stop()
        await self.coordinator.close()
        await self.client.close()
        await asyncio.to_thread(self.transport.stop)
        await self.bus.stop()
        self._started_at = None

    # ------------------------------------------------------------------
    # Producer / collaborator API
    # ------------------------------------------------------------------

    def submit_frame(self, jpeg_data: bytes) -> None:
        self.transport.send_frame(jpeg_data)

    def identity_probe(self) -> IdentityProbe:
        return IdentityProbe(app=APP_MARKER, device=self.device_name, id=self.device_id)

    @property
    def status(self) -> str:
        """paired, searching or idle."""
        if self.mode == "handshake":
            if self.coordinator.is_paired:
                return "paired"
        elif self.current_peer is not None:
            return "paired"
        if self._started_at is None:
            return "idle"
        return "searching"

    def health(self) -> dict:
        stats = self.transport.stats()
        uptime = time.time() - self._started_at if self._started_at else 0.0
        session = self.coordinator.session
        fps = 0.0
        if uptime > 0:
            fps = stats.frames_received / uptime
        return {
            "device_id": self.device_id,
            "hostname": self.device_name,
            "mode": self.mode,
            "status": self.status,
            "peer": session.partner_hostname if self.mode == "handshake" else self.current_peer,
            "session_remaining": self.coordinator.seconds_remaining(),
            "uptime": uptime,
            "peers_known": len(self.scanner.get_peers()),
            "self_address": self.scanner.self_address,
            "fps_avg": fps,
            "transport": stats.model_dump(),
        }

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    async def _on_discovered(self, hostname: str, identity: str) -> None:
        self.bus.publish(PeerDiscovered(hostname=hostname, identity=identity))
        if self.mode == "handshake":
            self.coordinator.on_peer_discovered(hostname, identity)
        elif self.current_peer is None:
            self.shuffle_to_next_peer()

    def _on_frame(self, frame_id: int, frame) -> None:
        # Called from a decode worker thread
        self.bus.publish_threadsafe(FrameReady(frame_id=frame_id, frame=frame))

    async def _on_event(self, event) -> None:
        if isinstance(event, SessionEnded):
            self.scanner.trigger_scan()

    # ------------------------------------------------------------------
    # Shuffle mode
    # ------------------------------------------------------------------

    def shuffle_to_next_peer(self) -> str | None:
        """Point the transport at the least-shown verified peer and re-arm the tick."""
        peers = {p.identity: p for p in self.scanner.get_peers()}
        chosen = self.selector.pick_next(peers)
        self._cancel_shuffle_timer()

        if chosen is None:
            logger.info("[WAIT] No peers available, waiting for discovery")
            self.current_peer = None
            self.transport.clear_target()
            return None

        hostname = peers[chosen].hostname
        if hostname != self.current_peer:
            logger.info(f"[STREAM] Connecting to: {hostname}")
            self.current_peer = hostname
            self.transport.set_target(hostname)
        else:
            logger.info("[INFO] Same peer selected, waiting for next shuffle")

        loop = asyncio.get_running_loop()
        self._shuffle_timer = loop.call_later(self.session_duration, self.shuffle_to_next_peer)
        return hostname

    def _cancel_shuffle_timer(self) -> None:
        if self._shuffle_timer is not None:
            self._shuffle_timer.cancel()
            self._shuffle_timer = None

    # ------------------------------------------------------------------
    # Transport watchdog
    # ------------------------------------------------------------------

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval)
            await self.check_transport()

    async def check_transport(self) -> bool:
        """Restart a failed transport, ending the session it was carrying."""
        if self._restarting or self.transport.is_healthy():
            return True

        logger.error("Frame transport unhealthy, restarting")
        self._restarting = True
        try:
            if self.mode == "handshake":
                if self.coordinator.session.state is SessionState.PAIRED:
                    self.coordinator.end_session(reason="transport_failure")
            else:
                self._cancel_shuffle_timer()
                self.current_peer = None

            await asyncio.to_thread(self.transport.stop)
            await asyncio.sleep(RESTART_DELAY)
            try:
                await asyncio.to_thread(self.transport.start)
            except OSError as e:
                logger.error(f"Frame transport restart failed: {e}")
                return False

            if self.mode == "shuffle":
                self.shuffle_to_next_peer()
            return True
        finally:
            self._restarting = False
