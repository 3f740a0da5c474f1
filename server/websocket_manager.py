from typing import Dict, Optional, List
import asyncio
import logging
from fastapi import WebSocket
from .models import WSEvent

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 2.0


"""WebSocket manager and connection helpers.

This module provides `Connection` which wraps a single FastAPI `WebSocket`
and `WebSocketManager` which tracks active connections by connection id and
provides helpers for sending `WSEvent` frames to one or all of them.
"""


class Connection:
    """Represents a single websocket connection.

    The `Connection` holds a per-connection lock so sends are serialized
    per-socket and frames reach the client in the order they were queued.
    Each send, including the wait for that lock, is bounded by
    `send_timeout`; a peer that stops reading raises `asyncio.TimeoutError`
    instead of stalling the sender.
    """

    def __init__(self, websocket: WebSocket, conn_id: str, send_timeout: Optional[float] = DEFAULT_SEND_TIMEOUT):
        self.websocket = websocket
        self.conn_id = conn_id
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()

    async def send_event(self, event: WSEvent) -> None:
        """Send a `WSEvent` to this connection."""
        payload = event.to_wire()
        await asyncio.wait_for(self._send(payload), self.send_timeout)

    async def _send(self, payload: dict) -> None:
        async with self._lock:
            logger.debug("Sending %s to %s", payload["event"], self.conn_id)
            await self.websocket.send_json(payload)


class WebSocketManager:
    """Track active `Connection` objects and provide send helpers."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def add(self, conn_id: str, conn: Connection) -> None:
        """Register a new connection under `conn_id`."""
        async with self._lock:
            self._connections[conn_id] = conn
            logger.info("Added websocket %s", conn_id)

    async def remove(self, conn_id: str) -> bool:
        """Remove the connection for `conn_id`. Returns False if it was already gone."""
        async with self._lock:
            removed = self._connections.pop(conn_id, None) is not None
            if removed:
                logger.info("Removed websocket %s", conn_id)
            return removed

    async def get(self, conn_id: str) -> Optional[Connection]:
        """Return the `Connection` for `conn_id` or `None` if not connected."""
        async with self._lock:
            return self._connections.get(conn_id)

    async def count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def send(self, conn_id: str, event: WSEvent) -> bool:
        """Send one event to one connection. Returns False if the send failed."""
        conn = await self.get(conn_id)
        if conn is None:
            return False
        try:
            await conn.send_event(event)
        except Exception:
            logger.warning("Error sending %s to %s", event.event.value, conn_id, exc_info=True)
            return False
        return True

    async def broadcast(self, event: WSEvent) -> List[str]:
        """Send one event to every connection concurrently.

        Returns the ids of connections whose send raised, so the caller can
        drop them.
        """
        # Snapshot connections under the manager lock, send outside it.
        async with self._lock:
            conns = list(self._connections.items())

        if not conns:
            return []

        tasks = [asyncio.create_task(conn.send_event(event)) for _, conn in conns]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        failed: List[str] = []
        for (conn_id, _), res in zip(conns, results):
            if isinstance(res, Exception):
                logger.warning("Error sending %s to %s", event.event.value, conn_id, exc_info=res)
                failed.append(conn_id)
        return failed

    async def list_ids(self) -> List[str]:
        """Return the ids of all connected websockets."""
        async with self._lock:
            return list(self._connections.keys())
