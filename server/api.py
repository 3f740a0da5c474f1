"""API module: exposes the WebSocket endpoint and the health check.

This module provides a FastAPI application with a WebSocket endpoint at
`/ws`. Every frame in either direction is a JSON object of the form
`{"event": <name>, "data": <payload>}`; inbound frames are handed to the
`TimerAuthority`, which broadcasts the resulting state to every client.
"""

from contextlib import asynccontextmanager
import logging
import uuid
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from .websocket_manager import WebSocketManager, Connection
from .authority import TimerAuthority
from .models import WSEvent
from . import config

logger = logging.getLogger(__name__)

# load settings at module import so the FastAPI app can use them
settings = config.get_settings()

# singletons for now; the one timer lives as long as the process
ws_manager = WebSocketManager()
authority = TimerAuthority.from_settings(settings, ws_manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Timer sync server ready (max duration %sms)", settings.max_duration_ms)
    yield
    await authority.shutdown()
    logger.info("Timer sync server stopped")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    """Read-only process health: connected clients and the current timer state."""
    return {
        "status": "ok",
        "clients": await ws_manager.count(),
        "timerState": authority.timer_state().model_dump(mode="json", by_alias=True),
    }


def parse_event(data: object):
    """Validate one inbound frame. Returns a `WSEvent` or None if malformed."""
    if not isinstance(data, dict):
        return None
    try:
        return WSEvent.model_validate(data)
    except ValidationError:
        return None


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for sync clients.

    Any connected client may send any command; roles are advisory and are
    not checked here. Malformed frames are ignored and never close the
    connection.
    """
    await websocket.accept()

    conn_id = f"conn_{uuid.uuid4().hex[:8]}"
    conn = Connection(websocket=websocket, conn_id=conn_id, send_timeout=settings.send_timeout_seconds)
    if not await authority.connect(conn_id, conn):
        return
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, KeyError):
                # not a JSON text frame; keep the connection
                logger.debug("Ignoring non-JSON frame from %s", conn_id)
                continue
            event = parse_event(data)
            if event is None:
                logger.debug("Ignoring malformed frame from %s: %r", conn_id, data)
                continue
            try:
                await authority.handle_event(conn_id, event)
            except Exception:
                logger.exception("Failed to handle %s from %s", event.event.value, conn_id)
    except WebSocketDisconnect:
        pass
    finally:
        # completes even if this handler is being cancelled
        await authority.disconnect(conn_id)
