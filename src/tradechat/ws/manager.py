"""WebSocket connection manager.

Tracks every live connection on this process, the single room each one
is subscribed to and which username it speaks for. Handles fan-out of
frames to local clients.
"""

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket
import structlog

logger = structlog.get_logger()


@dataclass
class ClientConnection:
    """Represents a single WebSocket client."""

    websocket: WebSocket
    username: str | None = None
    room: str | None = None
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class ConnectionManager:
    """Manages all active WebSocket connections.

    Only mutated from handlers running on the event loop, so no locking.
    """

    def __init__(self) -> None:
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._rooms: dict[str, set[str]] = defaultdict(set)  # room -> {conn_ids}
        self._user_connections: dict[str, set[str]] = defaultdict(set)  # username -> {conn_ids}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, conn_id: str) -> ClientConnection | None:
        return self._connections.get(conn_id)

    async def connect(self, websocket: WebSocket, conn_id: str) -> None:
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self._connections[conn_id] = ClientConnection(websocket=websocket)
        logger.info("ws_connected", conn_id=conn_id)

    async def disconnect(self, conn_id: str) -> ClientConnection | None:
        """Drop a connection with its room subscription. Returns the removed client."""
        client = self._connections.pop(conn_id, None)
        if client is None:
            return None

        if client.room is not None:
            self._discard_from_room(client.room, conn_id)

        if client.username is not None:
            self._user_connections[client.username].discard(conn_id)
            if not self._user_connections[client.username]:
                del self._user_connections[client.username]

        logger.info("ws_disconnected", conn_id=conn_id, username=client.username)
        return client

    def identify(self, conn_id: str, username: str) -> None:
        """Bind a connection to a username for direct delivery."""
        client = self._connections.get(conn_id)
        if client is None or client.username == username:
            return
        if client.username is not None:
            self._user_connections[client.username].discard(conn_id)
            if not self._user_connections[client.username]:
                del self._user_connections[client.username]
        client.username = username
        self._user_connections[username].add(conn_id)

    def join_room(self, conn_id: str, room: str) -> str | None:
        """Subscribe to ``room``, leaving any previous room. Returns the previous room."""
        client = self._connections.get(conn_id)
        if client is None:
            return None
        previous = client.room
        if previous is not None and previous != room:
            self._discard_from_room(previous, conn_id)
        client.room = room
        self._rooms[room].add(conn_id)
        logger.debug("ws_room_joined", conn_id=conn_id, room=room, previous=previous)
        return previous if previous != room else None

    def leave_room(self, conn_id: str) -> str | None:
        """Unsubscribe from the current room. Returns the room left, if any."""
        client = self._connections.get(conn_id)
        if client is None or client.room is None:
            return None
        room = client.room
        client.room = None
        self._discard_from_room(room, conn_id)
        return room

    def evict_user_from_room(self, username: str, room: str) -> list[str]:
        """Unsubscribe all of a user's connections from ``room``."""
        evicted = []
        for conn_id in list(self._user_connections.get(username, set())):
            client = self._connections.get(conn_id)
            if client is not None and client.room == room:
                client.room = None
                self._discard_from_room(room, conn_id)
                evicted.append(conn_id)
        return evicted

    def current_room(self, conn_id: str) -> str | None:
        client = self._connections.get(conn_id)
        return client.room if client else None

    def room_usernames(self, room: str) -> list[str]:
        """Distinct usernames currently subscribed to a room."""
        names = {
            self._connections[c].username
            for c in self._rooms.get(room, set())
            if c in self._connections and self._connections[c].username
        }
        return sorted(names)

    def _discard_from_room(self, room: str, conn_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(conn_id)
        if not members:
            del self._rooms[room]

    async def send(self, conn_id: str, message: dict[str, Any]) -> bool:
        """Send a frame to one connection. Drops the connection if the send fails."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        try:
            await client.websocket.send_text(json.dumps(message, default=str))
            client.messages_sent += 1
            return True
        except Exception:
            await self.disconnect(conn_id)
            return False

    async def _send_many(self, conn_ids: list[str], message: dict[str, Any]) -> int:
        payload = json.dumps(message, default=str)
        sent = 0
        failed: list[str] = []

        for conn_id in conn_ids:
            client = self._connections.get(conn_id)
            if client is None:
                failed.append(conn_id)
                continue
            try:
                await client.websocket.send_text(payload)
                client.messages_sent += 1
                sent += 1
            except Exception:
                failed.append(conn_id)

        # Clean up failed connections
        for conn_id in failed:
            await self.disconnect(conn_id)

        return sent

    async def broadcast_to_room(self, room: str, message: dict[str, Any]) -> int:
        """Send a frame to every connection in a room. Returns recipients reached."""
        conn_ids = list(self._rooms.get(room, set()))
        if not conn_ids:
            return 0
        return await self._send_many(conn_ids, message)

    async def send_to_user(self, username: str, message: dict[str, Any]) -> int:
        """Send a frame to every connection bound to a username."""
        conn_ids = list(self._user_connections.get(username, set()))
        if not conn_ids:
            return 0
        return await self._send_many(conn_ids, message)

    async def broadcast_all(self, message: dict[str, Any]) -> int:
        return await self._send_many(list(self._connections), message)

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "rooms": {room: len(conns) for room, conns in self._rooms.items() if conns},
            "messages_sent": sum(c.messages_sent for c in self._connections.values()),
        }
