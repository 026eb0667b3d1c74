"""Websocket connection registry and broadcast rooms."""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import structlog
from fastapi import WebSocket

from .identity import Identity

logger = structlog.get_logger(__name__)


def session_room(session_id: str) -> str:
    """Broadcast group name for a session."""
    return f"session:{session_id}"


@dataclass(eq=False)
class ClientConnection:
    """One connected client."""
    websocket: WebSocket
    identity: Identity
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    session_id: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    message_count: int = 0
    error_count: int = 0
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConnectionManager:
    """Tracks connections and fans events out to rooms."""

    def __init__(self, max_connections: int = 500) -> None:
        """Initialize connection manager."""
        self.max_connections = max_connections
        self.active_connections: Dict[str, ClientConnection] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, identity: Identity) -> Optional[ClientConnection]:
        """Accept a websocket unless the connection limit is reached."""
        async with self._connection_lock:
            if len(self.active_connections) >= self.max_connections:
                logger.warning("Max connections reached", current=len(self.active_connections))
                await websocket.close(code=1013, reason="Service unavailable - too many connections")
                return None

            await websocket.accept()
            connection = ClientConnection(websocket=websocket, identity=identity)
            self.active_connections[connection.id] = connection

        logger.info(
            "WebSocket connected",
            connection_id=connection.id,
            user_id=identity.user_id,
            total_connections=len(self.active_connections),
        )
        return connection

    def disconnect(self, connection: ClientConnection) -> None:
        """Forget a connection and its room memberships."""
        for room in list(connection.rooms):
            self.leave(connection, room)
        self.active_connections.pop(connection.id, None)
        logger.info(
            "WebSocket disconnected",
            connection_id=connection.id,
            remaining_connections=len(self.active_connections),
        )

    def join(self, connection: ClientConnection, room: str) -> None:
        """Add a connection to a room."""
        self.rooms.setdefault(room, set()).add(connection.id)
        connection.rooms.add(room)

    def leave(self, connection: ClientConnection, room: str) -> None:
        """Remove a connection from a room."""
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.rooms[room]
        connection.rooms.discard(room)

    def room_members(self, room: str) -> List[ClientConnection]:
        """Connections currently in a room."""
        return [
            self.active_connections[cid]
            for cid in self.rooms.get(room, set())
            if cid in self.active_connections
        ]

    async def emit(self, connection: ClientConnection, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Send one event to one connection."""
        message = {"event": event, "data": data or {}}
        try:
            async with connection.send_lock:
                await connection.websocket.send_json(message)
        except Exception as exc:
            connection.error_count += 1
            logger.error(
                "Failed to send WebSocket message",
                connection_id=connection.id,
                event_name=event,
                error=str(exc),
            )
            return False

        connection.last_activity = time.time()
        connection.message_count += 1
        return True

    async def broadcast(self, room: str, event: str, data: Optional[Dict[str, Any]] = None) -> int:
        """Send an event to every member of a room; returns deliveries."""
        members = self.room_members(room)
        if not members:
            return 0
        results = await asyncio.gather(*(self.emit(member, event, data) for member in members))
        return sum(1 for delivered in results if delivered)

    async def close(self, connection: ClientConnection, code: int = 1000, reason: str = "") -> None:
        """Close a connection from the server side."""
        try:
            await connection.websocket.close(code=code, reason=reason)
        except Exception as exc:
            logger.warning("Error closing WebSocket", connection_id=connection.id, error=str(exc))
