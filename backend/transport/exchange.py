"""
UDP frame exchange: one socket, one loop, interleaved transmit and receive.

The loop thread is the only user of the socket. Each iteration it
  1. picks up the most recently captured frame (abandoning an older one
     still in flight),
  2. sends a burst of fragments to the current target,
  3. drains a burst of incoming datagrams into the reassembler,
  4. expires stale assembly buffers,
  5. sleeps briefly if there was nothing to do.

Completed frames are decoded on a small worker pool so decoding never
stalls the loop. Target resolution runs on its own single worker and is
published to the loop by plain attribute replacement.
"""

import io
import logging
import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from PIL import Image

from config import (
    ASSEMBLY_SLOTS,
    BURST_RX,
    BURST_TX,
    COMPLETENESS_THRESHOLD,
    DECODE_WORKERS,
    ERROR_BACKOFF,
    FRAME_TIMEOUT,
    IDLE_SLEEP,
    MAX_CONSECUTIVE_ERRORS,
    MAX_PACKET_SIZE,
    MAX_PARTS,
    REORDER_WINDOW,
    RESTART_DELAY,
    SHUTDOWN_TIMEOUT,
    SOCKET_BUFFER_SIZE,
    SOCKET_TIMEOUT,
    STALE_WINDOW,
    UDP_FRAME_PORT,
)
from transport.assembly import FrameReassembler
from transport.models import TransportStats
from transport.protocol import (
    FRAME_ID_MASK,
    PacketError,
    build_packet,
    count_parts,
    parse_packet,
)

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], Any]
FrameHandler = Callable[[int, Any], None]


def decode_jpeg(data: bytes) -> Image.Image:
    """Decode a JPEG frame. Raises on corrupt or truncated data."""
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


class FrameTransport:
    """Fragmenting, reassembling UDP transport for live frames."""

    def __init__(
        self,
        local_port: int = UDP_FRAME_PORT,
        peer_port: int | None = None,
        *,
        bind_host: str = "0.0.0.0",
        on_frame: FrameHandler | None = None,
        decoder: Decoder = decode_jpeg,
        max_packet_size: int = MAX_PACKET_SIZE,
        burst_tx: int = BURST_TX,
        burst_rx: int = BURST_RX,
        max_parts: int = MAX_PARTS,
        completeness_threshold: float = COMPLETENESS_THRESHOLD,
        frame_timeout: float = FRAME_TIMEOUT,
        assembly_slots: int = ASSEMBLY_SLOTS,
        reorder_window: int = REORDER_WINDOW,
        stale_window: int = STALE_WINDOW,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        decode_workers: int = DECODE_WORKERS,
    ) -> None:
        self.local_port = local_port
        self.peer_port = peer_port  # None means symmetric (same as local)
        self.bind_host = bind_host
        self.on_frame = on_frame
        self.decoder = decoder
        self.max_packet_size = max_packet_size
        self.burst_tx = burst_tx
        self.burst_rx = burst_rx
        self.max_parts = max_parts
        self.max_consecutive_errors = max_consecutive_errors
        self.decode_workers = decode_workers

        self._reassembler = FrameReassembler(
            completeness_threshold=completeness_threshold,
            slots=assembly_slots,
            frame_timeout=frame_timeout,
            reorder_window=reorder_window,
            stale_window=stale_window,
        )

        self._running = threading.Event()
        self._socket: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._decode_pool: ThreadPoolExecutor | None = None
        self._target_pool: ThreadPoolExecutor | None = None

        # Cross-thread state, replaced wholesale and never locked
        self._latest_frame: bytes | None = None
        self._target: tuple[str, int] | None = None
        self._target_name: str | None = None

        # Sender state, owned by the loop thread
        self._frame_seq = 0
        self._tx_data: bytes | None = None
        self._tx_frame_id = 0
        self._tx_part = 0
        self._tx_total = 0

        self._counter_lock = threading.Lock()
        self._frames_submitted = 0
        self._frames_sent = 0
        self._frames_received = 0
        self._frames_dropped = 0
        self._packets_dropped = 0
        self._errors = 0
        self._consecutive_errors = 0
        self._last_packet_time = 0.0
        self._last_frame_time = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Bind the socket and start the loop. Raises OSError if the bind fails."""
        if self._running.is_set():
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, SOCKET_BUFFER_SIZE)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, SOCKET_BUFFER_SIZE)
            sock.bind((self.bind_host, self.local_port))
        except OSError as e:
            sock.close()
            logger.error(f"Failed to bind UDP port {self.local_port}: {e}")
            raise
        sock.settimeout(SOCKET_TIMEOUT)
        self._ensure_executors()

        self._socket = sock
        self.local_port = sock.getsockname()[1]
        self._consecutive_errors = 0
        self._running.set()

        self._thread = threading.Thread(
            target=self._run, args=(sock,), name="frame-exchange", daemon=True
        )
        self._thread.start()
        logger.info(f"Frame exchange started on UDP port {self.local_port}")

    def stop(self) -> None:
        """Close the socket, then wind down the loop and worker pools."""
        if self._thread is None and self._socket is None:
            self._shutdown_executors()
            logger.debug("Frame exchange already stopped")
            return

        logger.info("Stopping frame exchange...")
        self._running.clear()

        # Closing first unblocks a pending receive
        sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.error(f"Error closing socket: {e}")

        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=SHUTDOWN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Exchange thread did not terminate in time")

        self._shutdown_executors()

        self._reassembler.reset()
        self._latest_frame = None
        self._tx_data = None
        self._target = None
        self._target_name = None
        logger.info("Frame exchange stopped")

    def restart(self) -> None:
        logger.info("Restarting frame exchange...")
        self.stop()
        time.sleep(RESTART_DELAY)
        self.start()

    def is_healthy(self) -> bool:
        thread = self._thread
        return (
            self._running.is_set()
            and self._socket is not None
            and thread is not None
            and thread.is_alive()
        )

    def _ensure_executors(self) -> None:
        if self._decode_pool is None:
            self._decode_pool = ThreadPoolExecutor(
                max_workers=self.decode_workers, thread_name_prefix="frame-decode"
            )
        if self._target_pool is None:
            self._target_pool = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="frame-target"
            )

    def _shutdown_executors(self) -> None:
        for pool in (self._decode_pool, self._target_pool):
            if pool is not None:
                pool.shutdown(wait=False, cancel_futures=True)
        self._decode_pool = None
        self._target_pool = None

    # ------------------------------------------------------------------
    # Producer / control API
    # ------------------------------------------------------------------

    def send_frame(self, data: bytes) -> None:
        """Offer a captured frame. Supersedes any frame not yet picked up."""
        self._latest_frame = data
        with self._counter_lock:
            self._frames_submitted += 1

    def set_target(self, hostname: str, port: int | None = None) -> Future:
        """Resolve *hostname* off the loop and start streaming to it."""
        self._ensure_executors()
        return self._target_pool.submit(self._resolve_target, hostname, port)

    def clear_target(self) -> None:
        self._target = None
        self._target_name = None
        self._tx_data = None

    @property
    def target(self) -> tuple[str, int] | None:
        return self._target

    def _resolve_target(self, hostname: str, port: int | None) -> tuple[str, int] | None:
        logger.debug(f"Setting target: {hostname}")
        try:
            address = socket.gethostbyname(hostname)
        except OSError as e:
            logger.error(f"Failed to resolve target {hostname}: {e}")
            self._target = None
            self._target_name = None
            return None
        if not self._running.is_set():
            # stop() already cleared the target; don't bring it back
            logger.debug(f"Transport stopped, not targeting {hostname}")
            return None
        target = (address, port or self.peer_port or self.local_port)
        self._target = target
        self._target_name = hostname
        logger.info(f"Target set to {hostname} ({address}:{target[1]})")
        return target

    def stats(self) -> TransportStats:
        with self._counter_lock:
            return TransportStats(
                running=self._running.is_set(),
                healthy=self.is_healthy(),
                target=self._target_name,
                frames_submitted=self._frames_submitted,
                frames_sent=self._frames_sent,
                frames_received=self._frames_received,
                frames_dropped=self._frames_dropped,
                packets_dropped=self._packets_dropped,
                errors=self._errors,
                consecutive_errors=self._consecutive_errors,
                last_packet_time=self._last_packet_time,
                last_frame_time=self._last_frame_time,
            )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run(self, sock: socket.socket) -> None:
        logger.debug("Exchange thread started")
        while self._running.is_set():
            try:
                busy = self._run_once(sock)
                self._consecutive_errors = 0
                if not busy:
                    time.sleep(IDLE_SLEEP)
            except OSError as e:
                if not self._running.is_set():
                    break
                self._record_loop_error(e)
            except Exception as e:
                self._record_loop_error(e)

            if self._consecutive_errors >= self.max_consecutive_errors:
                logger.error("Too many consecutive errors - stopping exchange thread")
                self._running.clear()
                break
        logger.debug("Exchange thread exited")

    def _record_loop_error(self, exc: Exception) -> None:
        with self._counter_lock:
            self._consecutive_errors += 1
            self._errors += 1
        logger.error(
            f"Loop error ({self._consecutive_errors}/{self.max_consecutive_errors}): "
            f"{type(exc).__name__} - {exc}"
        )
        time.sleep(ERROR_BACKOFF)

    def _run_once(self, sock: socket.socket) -> bool:
        self._admit_frame()
        sent = self._send_burst(sock)
        received = self._receive_burst(sock)
        self._reassembler.expire()
        return sent > 0 or received > 0

    def _admit_frame(self) -> None:
        frame = self._latest_frame
        if frame is None:
            return
        self._latest_frame = None

        if self._tx_data is not None:
            with self._counter_lock:
                self._frames_dropped += 1

        total = count_parts(len(frame), self.max_packet_size)
        self._frame_seq = (self._frame_seq + 1) & FRAME_ID_MASK
        if total == 0 or total > self.max_parts:
            logger.debug(f"Dropping frame of {len(frame)} bytes ({total} parts)")
            self._tx_data = None
            with self._counter_lock:
                self._frames_dropped += 1
            return

        self._tx_data = frame
        self._tx_frame_id = self._frame_seq
        self._tx_total = total
        self._tx_part = 0

    def _send_burst(self, sock: socket.socket) -> int:
        target = self._target
        data = self._tx_data
        if target is None or data is None:
            return 0

        sent = 0
        while sent < self.burst_tx and self._tx_part < self._tx_total:
            packet = build_packet(
                self._tx_frame_id, self._tx_part, self._tx_total, data, self.max_packet_size
            )
            try:
                sock.sendto(packet, target)
            except OSError as e:
                if not self._running.is_set():
                    raise
                logger.debug(f"Send to {target} failed: {e}")
            self._tx_part += 1
            sent += 1

        if self._tx_part >= self._tx_total:
            self._tx_data = None
            with self._counter_lock:
                self._frames_sent += 1
        return sent

    def _receive_burst(self, sock: socket.socket) -> int:
        received = 0
        while received < self.burst_rx:
            try:
                data, _ = sock.recvfrom(self.max_packet_size)
            except (socket.timeout, BlockingIOError):
                break
            received += 1
            self._process_datagram(data)
        return received

    def _process_datagram(self, data: bytes) -> None:
        self._last_packet_time = time.time()
        try:
            header, payload = parse_packet(data, self.max_packet_size, self.max_parts)
        except PacketError as e:
            logger.debug(f"Dropping datagram: {e}")
            with self._counter_lock:
                self._packets_dropped += 1
            return

        frame = self._reassembler.accept(header, payload)
        if frame is not None:
            self._last_frame_time = time.time()
            self._dispatch(header.frame_id, frame)

    def _dispatch(self, frame_id: int, frame: bytes) -> None:
        pool = self._decode_pool
        if pool is None:
            return
        try:
            pool.submit(self._decode, frame_id, frame)
        except RuntimeError:
            # Pool shut down during stop()
            pass

    def _decode(self, frame_id: int, frame: bytes) -> None:
        try:
            image = self.decoder(frame)
        except Exception as e:
            logger.debug(f"Frame {frame_id} not decodable: {e}")
            image = None

        if image is None:
            with self._counter_lock:
                self._errors += 1
            return

        with self._counter_lock:
            self._frames_received += 1

        handler = self.on_frame
        if handler is not None:
            try:
                handler(frame_id, image)
            except Exception as e:
                logger.error(f"Frame handler error: {e}")
