"""
Pairing coordinator: one session per node, negotiated peer to peer.

Tie-break: when two nodes discover each other, the one whose identity
sorts lower accepts and never initiates. Only one direction of any pair
can therefore succeed.
"""

import asyncio
import logging
import time
from typing import Callable

import aiohttp

from config import (
    ATTEMPT_COOLDOWN,
    PAIR_MAX_RETRIES,
    PAIR_RETRY_DELAY,
    REJECTION_COOLDOWN,
    SESSION_DURATION,
)
from events import EventBus, Paired, SessionEnded
from pairing.client import PairingClient, PairingProtocolError
from pairing.models import Session, SessionState

logger = logging.getLogger(__name__)


class PairingCoordinator:
    """Idle -> Pairing -> Paired -> Idle."""

    def __init__(
        self,
        local_id: str,
        client: PairingClient,
        transport=None,
        bus: EventBus | None = None,
        *,
        session_duration: float = SESSION_DURATION,
        attempt_cooldown: float = ATTEMPT_COOLDOWN,
        rejection_cooldown: float = REJECTION_COOLDOWN,
        max_retries: int = PAIR_MAX_RETRIES,
        retry_delay: float = PAIR_RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.local_id = local_id
        self.client = client
        self.transport = transport
        self.bus = bus
        self.session_duration = session_duration
        self.attempt_cooldown = attempt_cooldown
        self.rejection_cooldown = rejection_cooldown
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._clock = clock

        self.session = Session()
        self._recent_attempts: dict[str, float] = {}
        self._recent_rejections: dict[str, float] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_paired(self) -> bool:
        return self.session.state is SessionState.PAIRED

    def seconds_remaining(self) -> float:
        if not self.is_paired or self.session.ends_at is None:
            return 0.0
        return max(0.0, self.session.ends_at - time.time())

    # ------------------------------------------------------------------
    # Discovery side
    # ------------------------------------------------------------------

    def on_peer_discovered(self, hostname: str, identity: str) -> asyncio.Task | None:
        """Start a pairing attempt unless busy or cooling down. Returns the attempt task."""
        if self.session.state is not SessionState.IDLE:
            return None

        now = self._clock()
        last_attempt = self._recent_attempts.get(hostname)
        if last_attempt is not None and now - last_attempt < self.attempt_cooldown:
            return None
        last_rejection = self._recent_rejections.get(hostname)
        if last_rejection is not None and now - last_rejection < self.rejection_cooldown:
            return None

        self._recent_attempts[hostname] = now
        self.session = Session(state=SessionState.PAIRING)
        logger.info(f"[PAIRING] Attempting to pair with {hostname}")

        task = asyncio.create_task(self._attempt_pairing(hostname))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _attempt_pairing(self, hostname: str) -> None:
        async with self._lock:
            try:
                await self._run_attempt(hostname)
            finally:
                if self.session.state is SessionState.PAIRING:
                    self.session = Session()

    async def _run_attempt(self, hostname: str) -> None:
        retries = 0
        while retries <= self.max_retries:
            if self.is_paired:
                return

            try:
                response = await self.client.request_pairing(hostname, self.local_id)
            except asyncio.TimeoutError:
                retries += 1
                if retries <= self.max_retries:
                    logger.info(
                        f"[PAIRING] Timeout connecting to {hostname}, "
                        f"retry {retries}/{self.max_retries}"
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue
                logger.info(f"[PAIRING] Failed to pair with {hostname} after {self.max_retries} retries")
                return
            except aiohttp.ClientConnectionError as e:
                # Absence is self-limiting, no cooldown
                logger.info(f"[PAIRING] Cannot reach {hostname}: {e}")
                return
            except (aiohttp.ClientError, PairingProtocolError) as e:
                self._recent_rejections[hostname] = self._clock()
                logger.warning(f"[PAIRING] Bad response from {hostname}: {e}")
                return

            if response.status != "accepted" or not response.peer_id:
                self._recent_rejections[hostname] = self._clock()
                logger.info(f"[PAIRING] Request rejected by {hostname} (backing off)")
                return

            if self.is_paired:
                logger.info(f"[PAIRING] Paired meanwhile, not confirming {hostname}")
                return

            try:
                confirmed = await self.client.confirm(hostname, self.local_id)
            except PairingProtocolError as e:
                self._recent_rejections[hostname] = self._clock()
                logger.warning(f"[PAIRING] {e}")
                return
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                logger.info(f"[PAIRING] Confirmation to {hostname} failed: {e}")
                return

            if confirmed:
                self.confirm_pairing(hostname, response.peer_id)
            return

    # ------------------------------------------------------------------
    # Inbound side
    # ------------------------------------------------------------------

    def handle_pair_request(self, requester_id: str) -> bool:
        """Decide an inbound request. True to accept, False to reject."""
        if self.is_paired and self.session.partner_identity != requester_id:
            logger.info(
                f"[PAIRING] Rejecting {requester_id} - already paired to "
                f"{self.session.partner_identity}"
            )
            return False

        if self.is_paired:
            logger.info(f"[PAIRING] Re-accepting {requester_id} - already paired")
            return True

        if requester_id < self.local_id:
            logger.info(f"[PAIRING] Accepting request from {requester_id} (their ID is smaller)")
            return True

        logger.info(f"[PAIRING] Rejecting {requester_id} (our ID is smaller, we initiate)")
        return False

    def confirm_pairing(self, hostname: str, peer_id: str) -> bool:
        """Enter (or renew) the Paired state with *peer_id* reachable at *hostname*."""
        current = self.session
        if current.state is SessionState.PAIRED and current.partner_identity != peer_id:
            logger.info(
                f"[PAIRING] Ignoring confirmation from {hostname} - already paired to "
                f"{current.partner_identity}"
            )
            return False

        renewed = current.state is SessionState.PAIRED
        if renewed:
            logger.info(f"[PAIRING] Re-confirmed with {hostname} (resetting UDP target)")
        else:
            logger.info(f"[PAIRING] Confirmed with {hostname}")

        now = time.time()
        self.session = Session(
            state=SessionState.PAIRED,
            partner_identity=peer_id,
            partner_hostname=hostname,
            started_at=current.started_at if renewed else now,
            ends_at=now + self.session_duration,
        )
        self._recent_rejections.pop(hostname, None)

        if self.transport is not None:
            self.transport.set_target(hostname)

        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.session_duration, self.end_session)

        if self.bus is not None:
            self.bus.publish(
                Paired(hostname=hostname, identity=peer_id, ends_at=self.session.ends_at, renewed=renewed)
            )
        return True

    # ------------------------------------------------------------------
    # Session end
    # ------------------------------------------------------------------

    def end_session(self, reason: str = "timer") -> None:
        """Leave Paired and forget every cooldown so re-pairing can start at once."""
        previous = self.session
        logger.info(f"[SESSION] Ending session with {previous.partner_hostname} ({reason})")

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        self.session = Session()
        self._recent_attempts.clear()
        self._recent_rejections.clear()

        if self.transport is not None:
            self.transport.clear_target()

        if self.bus is not None:
            self.bus.publish(
                SessionEnded(
                    hostname=previous.partner_hostname,
                    identity=previous.partner_identity,
                    reason=reason,
                )
            )

    async def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._recent_attempts.clear()
        self._recent_rejections.clear()
