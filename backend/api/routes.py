"""HTTP routes: the peer-facing protocol surface and the local REST API."""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from discovery.models import IdentityProbe
from discovery.network import resolve_peer_hostname
from pairing.models import (
    PairConfirm,
    PairConfirmResponse,
    PairRequest,
    PairResponse,
    Session,
)

logger = logging.getLogger(__name__)

# Endpoints other nodes call
protocol_router = APIRouter()
# Endpoints for the local frontend / operators
router = APIRouter(prefix="/api")

# Injected by main.py at startup
_node = None


def init_routes(node) -> None:
    """Inject the node service into the routes module."""
    global _node
    _node = node


def _require_node():
    if _node is None:
        raise HTTPException(status_code=503, detail="Node not started")
    return _node


# --- Peer protocol ---

@protocol_router.get("/status", response_model=IdentityProbe)
async def identity_probe():
    """Identity probe answered to discovery scans."""
    return _require_node().identity_probe()


@protocol_router.post("/pair-request", response_model=PairResponse, response_model_exclude_none=True)
async def pair_request(body: PairRequest):
    node = _require_node()
    if node.coordinator.handle_pair_request(body.requester_id):
        return PairResponse(status="accepted", peer_id=node.device_id)
    return PairResponse(status="rejected", reason="already_paired")


@protocol_router.post("/pair-confirm", response_model=PairConfirmResponse)
async def pair_confirm(body: PairConfirm, request: Request):
    node = _require_node()
    remote_addr = request.client.host if request.client else ""
    hostname = await asyncio.to_thread(resolve_peer_hostname, remote_addr)
    if not node.coordinator.confirm_pairing(hostname, body.peer_id):
        raise HTTPException(status_code=409, detail="Already paired with another peer")
    return PairConfirmResponse()


# --- Local API ---

@router.get("/peers")
async def list_peers():
    """Return verified peers."""
    peers = _require_node().scanner.get_peers()
    return {"peers": [p.model_dump() for p in peers]}


@router.get("/session", response_model=Session)
async def get_session():
    return _require_node().coordinator.session


@router.post("/session/end")
async def end_session():
    node = _require_node()
    if node.mode == "shuffle":
        hostname = node.shuffle_to_next_peer()
        return {"status": "shuffled", "peer": hostname}
    if not node.coordinator.is_paired:
        raise HTTPException(status_code=409, detail="No active session")
    node.coordinator.end_session(reason="manual")
    return {"status": "ended"}


@router.get("/health")
async def health():
    return _require_node().health()
