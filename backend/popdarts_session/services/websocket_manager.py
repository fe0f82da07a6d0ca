"""WebSocket connection manager for auth state updates and shell requests."""
import asyncio
import json
import logging
from datetime import datetime
from typing import Set, Dict, Any

from fastapi import WebSocket

from ..schemas.session import AuthSnapshot

logger = logging.getLogger(__name__)


def snapshot_message(snapshot: AuthSnapshot) -> Dict[str, Any]:
    """Serialize an auth snapshot for clients. Tokens are never sent."""
    session = snapshot.session
    return {
        "type": "auth_state",
        "state": snapshot.state.value,
        "user": {
            "id": session.user_id,
            "email": session.email,
            "display_name": session.display_name,
        } if session else None,
        "expires_at": session.expires_at.isoformat() if session else None,
        "is_guest": snapshot.guest.is_guest,
        "guest_name": snapshot.guest.display_name,
        "preferences": snapshot.preferences.to_storage() if snapshot.preferences else None,
        "sent_at": datetime.utcnow().isoformat(),
    }


class ConnectionManager:
    """Manages WebSocket connections and broadcasts to all connected clients."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        """Remove a disconnected WebSocket."""
        async with self._lock:
            self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: Dict[str, Any]):
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        message_json = json.dumps(message, default=str)

        # Copy the set to avoid modification during iteration
        async with self._lock:
            connections = list(self.active_connections)

        # Send to all connections, removing any that fail
        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_text(message_json)
            except Exception as e:
                logger.debug(f"Failed to send to WebSocket: {e}")
                disconnected.append(websocket)

        if disconnected:
            async with self._lock:
                for ws in disconnected:
                    self.active_connections.discard(ws)

    def publish_snapshot(self, snapshot: AuthSnapshot):
        """Auth manager listener: broadcast without blocking the state machine."""
        task = asyncio.create_task(self.broadcast(snapshot_message(snapshot)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def connection_count(self) -> int:
        """Return the number of active connections."""
        return len(self.active_connections)
