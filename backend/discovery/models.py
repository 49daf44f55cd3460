"""Pydantic models for peer discovery."""

from pydantic import BaseModel

from config import BROADCAST_PREFIX


class PeerRecord(BaseModel):
    """A verified peer. Unique by identity; the address may churn."""
    identity: str
    hostname: str
    last_verified_at: float  # Unix timestamp


class IdentityProbe(BaseModel):
    """The JSON body served at /status."""
    app: str
    status: str = "ready"
    device: str
    id: str


class Announcement(BaseModel):
    """The ASCII datagram broadcast on the discovery port."""
    identity: str
    service_port: int

    def encode(self) -> bytes:
        return f"{BROADCAST_PREFIX}:{self.identity}:{self.service_port}".encode("ascii")

    @classmethod
    def decode(cls, data: bytes) -> "Announcement | None":
        """Parse a datagram, returning None for anything that is not an announcement."""
        try:
            text = data.decode("ascii")
        except UnicodeDecodeError:
            return None
        parts = text.strip().split(":")
        if len(parts) < 3 or parts[0] != BROADCAST_PREFIX or not parts[1]:
            return None
        try:
            port = int(parts[2])
        except ValueError:
            return None
        return cls(identity=parts[1], service_port=port)
