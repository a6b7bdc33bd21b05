from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.chat import chat_router
from backend import create_redis_backend
from relay.engine import WS_GOING_AWAY, RelayEngine, RelayPolicy
from relay.heartbeat import HeartbeatSweeper
from rate_limiter import RateLimiter
from constants import CHAT_ROOM, HEARTBEAT_INTERVAL_SECONDS
from typing import Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


async def websocket_endpoint(websocket: WebSocket):
    """Live chat, typing, voice presence and WebRTC signaling for one client.

    Frames from one connection are handled strictly in arrival order; the
    next frame is not read until the previous one has been dispatched.
    """
    engine: RelayEngine = websocket.app.state.engine
    client_host = websocket.client.host if websocket.client else "unknown"

    await websocket.accept()
    connection_id = await engine.connect(websocket)
    logger.info(f"WebSocket connection {connection_id} accepted from {client_host}")

    reason = "server closed"
    transport_closed = False
    try:
        message_count = 0
        while connection_id in engine.registry:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                transport_closed = True
                reason = f"client disconnected (code {message.get('code')})"
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            message_count += 1
            logger.debug(f"Received frame #{message_count} from connection {connection_id}")
            await engine.handle_frame(connection_id, raw)
    except (WebSocketDisconnect, RuntimeError) as e:
        # RuntimeError: receive() after the sweeper already closed this socket
        transport_closed = True
        reason = f"transport closed ({e!r})"
    except Exception as e:
        reason = "handler error"
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        await engine.close(connection_id, reason=reason, close_transport=not transport_closed)


def create_app(
    storage=None,
    policy: Optional[RelayPolicy] = None,
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    start_heartbeat: bool = True,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the application.

    ``storage`` defaults to a Redis backend created at startup; startup fails
    if Redis is unreachable.
    ``rate_limiter`` defaults to the per-client REST limit from the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        backend = storage if storage is not None else create_redis_backend()
        engine = RelayEngine(storage=backend, room=CHAT_ROOM, policy=policy)
        sweeper = HeartbeatSweeper(engine, interval=heartbeat_interval)
        app.state.engine = engine
        app.state.sweeper = sweeper
        if start_heartbeat:
            sweeper.start()
        logger.info(f"Relay started for room {engine.room}")
        try:
            yield
        finally:
            await sweeper.stop()
            for connection in await engine.registry.snapshot():
                await engine.close(connection.id, reason="server shutdown", code=WS_GOING_AWAY)
            logger.info("Relay stopped")

    app = FastAPI(lifespan=lifespan)
    app.state.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)
    # clients of the original server connect to the site root
    app.add_api_websocket_route("/", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
