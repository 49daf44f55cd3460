"""Application-wide configuration constants."""

import os
import platform
import uuid
from pathlib import Path

# --- Identity ---
APP_MARKER = "VideoShuffle"
BROADCAST_PREFIX = "VIDEOSHUFFLE"
CONFIG_DIR = Path.home() / ".videoshuffle"

# Persistent device ID so the tie-break ordering survives restarts
_ID_FILE = CONFIG_DIR / "device_id"
try:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    if _ID_FILE.exists():
        DEVICE_ID = _ID_FILE.read_text().strip()
    else:
        DEVICE_ID = str(uuid.uuid4())
        _ID_FILE.write_text(DEVICE_ID)
except OSError:
    DEVICE_ID = str(uuid.uuid4())

DEVICE_NAME = platform.node() or "unknown"

# --- Mode ---
# "handshake": partners negotiated through /pair-request + /pair-confirm
# "shuffle": least-shown selection, no handshake
NODE_MODE = os.environ.get("VIDEOSHUFFLE_MODE", "handshake")

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("VIDEOSHUFFLE_API_PORT", "8080"))
UDP_FRAME_PORT = 50000
DISCOVERY_PORT = 8888  # UDP broadcast
BROADCAST_ADDRESS = "255.255.255.255"

# --- Discovery ---
BROADCAST_INTERVAL = 10  # seconds
SCAN_INTERVAL = 15  # seconds
PEER_NAME_TEMPLATE = os.environ.get("VIDEOSHUFFLE_NAME_TEMPLATE", "uninovis-tp-{:02d}")
PEER_NAME_RANGE = range(1, 21)
SUBNET_SCAN_LIMIT = 20
EXCLUDED_PREFIXES = ("10.0.2.",)  # emulator NAT
PREFERRED_PREFIX = "100.64.0."  # overlay network
PROBE_TIMEOUT = 10  # seconds
PROBE_WORKERS = 4

# --- Pairing ---
PAIR_TIMEOUT = 5  # seconds
ATTEMPT_COOLDOWN = 10  # seconds between attempts to the same host
REJECTION_COOLDOWN = 30  # seconds after an explicit rejection
PAIR_MAX_RETRIES = 2
PAIR_RETRY_DELAY = 1  # seconds
SESSION_DURATION = 5 * 60  # seconds

# --- Transport ---
MAX_PACKET_SIZE = 1200
BURST_TX = 30
BURST_RX = 30
SOCKET_TIMEOUT = 0.001  # seconds, non-blocking probe
SOCKET_BUFFER_SIZE = 2 * 1024 * 1024
IDLE_SLEEP = 0.005  # seconds
FRAME_TIMEOUT = 0.25  # seconds an incomplete frame may wait for parts
COMPLETENESS_THRESHOLD = float(os.environ.get("VIDEOSHUFFLE_COMPLETENESS", "1.0"))
MAX_PARTS = 200
ASSEMBLY_SLOTS = 5
REORDER_WINDOW = 50
STALE_WINDOW = 1000
MAX_CONSECUTIVE_ERRORS = 100
ERROR_BACKOFF = 0.1  # seconds
DECODE_WORKERS = 2
SHUTDOWN_TIMEOUT = 2  # seconds
RESTART_DELAY = 0.5  # seconds
WATCHDOG_INTERVAL = 5  # seconds
