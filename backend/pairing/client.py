"""Outbound HTTP calls of the pairing handshake."""

import logging

import aiohttp
from pydantic import ValidationError

from config import API_PORT, PAIR_TIMEOUT
from pairing.models import PairConfirm, PairConfirmResponse, PairRequest, PairResponse

logger = logging.getLogger(__name__)


class PairingProtocolError(Exception):
    """The peer answered, but not with a valid pairing message."""


class PairingClient:
    """Sends /pair-request and /pair-confirm to peers over one aiohttp session."""

    def __init__(self, port: int = API_PORT, timeout: float = PAIR_TIMEOUT) -> None:
        self.port = port
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _url(self, hostname: str, path: str) -> str:
        return f"http://{hostname}:{self.port}{path}"

    async def request_pairing(self, hostname: str, requester_id: str) -> PairResponse:
        """
        POST a pairing request.

        Network failures propagate as aiohttp / asyncio exceptions so the
        caller can tell timeouts from refused connections. Anything that is
        not a well-formed answer raises PairingProtocolError.
        """
        await self.start()
        body = PairRequest(requester_id=requester_id).model_dump(by_alias=True)
        async with self._session.post(self._url(hostname, "/pair-request"), json=body) as response:
            if response.status != 200:
                raise PairingProtocolError(f"HTTP {response.status} from {hostname}")
            try:
                data = await response.json(content_type=None)
                return PairResponse.model_validate(data)
            except (ValueError, ValidationError) as e:
                raise PairingProtocolError(f"Malformed pairing response from {hostname}: {e}")

    async def confirm(self, hostname: str, local_id: str) -> bool:
        """POST a pairing confirmation. Returns True when the peer confirmed."""
        await self.start()
        body = PairConfirm(peer_id=local_id).model_dump(by_alias=True)
        async with self._session.post(self._url(hostname, "/pair-confirm"), json=body) as response:
            if response.status != 200:
                logger.info(f"[PAIRING] Confirmation failed with status: {response.status}")
                return False
            try:
                data = await response.json(content_type=None)
                PairConfirmResponse.model_validate(data)
            except (ValueError, ValidationError) as e:
                raise PairingProtocolError(f"Malformed confirmation from {hostname}: {e}")
            return True
