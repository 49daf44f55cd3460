"""WebSocket relay for node events."""

import asyncio
import json
import logging
import time

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

# frame_ready fires at capture rate; clients only need a heartbeat of it
FRAME_EVENT_INTERVAL = 1.0  # seconds


class EventRelay:
    """Fans node events out to every connected WebSocket client."""

    def __init__(self, frame_interval: float = FRAME_EVENT_INTERVAL) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self.frame_interval = frame_interval
        self._last_frame_sent = float("-inf")
        self._frames_since_last = 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def serve(self, websocket: WebSocket, snapshot: dict | None = None) -> None:
        """Hold one client connection open until it goes away."""
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._clients)}")
        try:
            if snapshot is not None:
                await websocket.send_text(json.dumps({"event": "hello", "data": snapshot}))
            while True:
                # Clients only listen; anything they send is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            async with self._lock:
                self._clients.discard(websocket)
            logger.info(f"WebSocket client disconnected. Total: {len(self._clients)}")

    async def send(self, event: str, data: dict) -> None:
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead = []
            for ws in self._clients:
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug(f"Dropping WebSocket client: {e}")
                    dead.append(ws)
            self._clients.difference_update(dead)

    async def handle_event(self, event) -> None:
        """EventBus subscriber."""
        if not self._clients:
            return

        data = event.model_dump(mode="json")
        if event.type == "frame_ready":
            self._frames_since_last += 1
            now = time.monotonic()
            if now - self._last_frame_sent < self.frame_interval:
                return
            data["frames"] = self._frames_since_last
            self._last_frame_sent = now
            self._frames_since_last = 0

        await self.send(event.type, data)
