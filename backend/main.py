"""
Video Shuffle: FastAPI application entry point.

Starts the shuffle node (discovery, pairing, frame transport) on startup,
serves the peer protocol, the local REST API and the WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, protocol_router, router
from api.websocket import EventRelay
from config import API_HOST, API_PORT
from node import ShuffleNode

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ws_relay = EventRelay()


def create_app(node: ShuffleNode | None = None) -> FastAPI:
    """Build the application around *node* (a fresh ShuffleNode by default)."""
    node = node or ShuffleNode()
    node.bus.subscribe(ws_relay.handle_event)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop the node."""
        logger.info("Starting Video Shuffle services...")
        try:
            await node.start()
            logger.info(
                f"Video Shuffle ready. "
                f"API: {API_HOST}:{API_PORT}, "
                f"frame port: {node.transport.local_port}, "
                f"mode: {node.mode}"
            )
            yield
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down Video Shuffle services...")
            await node.stop()

    app = FastAPI(
        title="Video Shuffle",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.node = node

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173", "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Inject the node into routes
    init_routes(node)
    app.include_router(protocol_router)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ws_relay.serve(websocket, snapshot=node.health())

    return app


def run() -> None:
    uvicorn.run(
        create_app(),
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
