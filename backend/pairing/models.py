"""Pydantic models for the pairing handshake."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    IDLE = "idle"
    PAIRING = "pairing"
    PAIRED = "paired"


class Session(BaseModel):
    """The node's single session, exposed to the frontend."""
    state: SessionState = SessionState.IDLE
    partner_identity: str | None = None
    partner_hostname: str | None = None
    started_at: float | None = None  # Unix timestamp
    ends_at: float | None = None


# --- Wire messages ---

class PairRequest(BaseModel):
    requester_id: str = Field(alias="requesterId", min_length=1)

    model_config = {"populate_by_name": True}


class PairResponse(BaseModel):
    status: Literal["accepted", "rejected"]
    peer_id: str | None = Field(default=None, alias="peerId")
    reason: str | None = None

    model_config = {"populate_by_name": True}


class PairConfirm(BaseModel):
    peer_id: str = Field(alias="peerId", min_length=1)

    model_config = {"populate_by_name": True}


class PairConfirmResponse(BaseModel):
    status: Literal["confirmed"] = "confirmed"
