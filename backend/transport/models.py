"""Pydantic models for the UDP frame transport."""

from pydantic import BaseModel


class TransportStats(BaseModel):
    """Counters exposed by the health query."""
    running: bool
    healthy: bool
    target: str | None = None
    frames_submitted: int = 0
    frames_sent: int = 0
    frames_received: int = 0
    frames_dropped: int = 0
    packets_dropped: int = 0
    errors: int = 0
    consecutive_errors: int = 0
    last_packet_time: float = 0.0  # Unix timestamp, 0 if never
    last_frame_time: float = 0.0
