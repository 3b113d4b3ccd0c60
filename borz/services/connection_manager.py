from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def chat_room(chat_id: str) -> str:
    return f"chat:{chat_id}"


# One authenticated realtime connection. Emits are queued and drained by a single writer task,
# so producers never await the socket and emitting after disconnect is a silent no-op.
class ClientConnection:
    def __init__(self, websocket: WebSocket, user_id: str):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.rooms: set[str] = set()
        self._queue: asyncio.Queue[Optional[dict]] = asyncio.Queue()
        self._open = asyncio.Event()
        self._open.set()

    def emit(self, event: str, data: dict[str, Any]) -> None:
        if not self._open.is_set():
            logger.debug("socket.emit.dropped: conn=%s event=%s", self.id, event)
            return
        self._queue.put_nowait({"event": event, "data": data})

    async def run_writer(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                await self.websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError, OSError):
                logger.info("socket.send.closed: conn=%s", self.id)
                self._open.clear()
                return

    def close(self) -> None:
        if not self._open.is_set():
            return
        self._open.clear()
        self._queue.put_nowait(None)


# Tracks live connections and their listener groups ("user:<id>", "chat:<id>")
class ConnectionManager:
    def __init__(self):
        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)

    def connect(self, websocket: WebSocket, user_id: str) -> ClientConnection:
        conn = ClientConnection(websocket, user_id)
        self._connections[conn.id] = conn
        self.join(conn, user_room(user_id))
        return conn

    def disconnect(self, conn: ClientConnection) -> None:
        conn.close()
        for room in list(conn.rooms):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(conn.id)
                if not members:
                    self._rooms.pop(room, None)
        conn.rooms.clear()
        self._connections.pop(conn.id, None)

    def join(self, conn: ClientConnection, room: str) -> None:
        self._rooms[room].add(conn.id)
        conn.rooms.add(room)

    def in_room(self, conn: ClientConnection, room: str) -> bool:
        return room in conn.rooms

    def emit_to_room(self, room: str, event: str, data: dict[str, Any], *, exclude: Optional[ClientConnection] = None) -> int:
        sent = 0
        for conn_id in list(self._rooms.get(room, ())):
            conn = self._connections.get(conn_id)
            if conn is None or conn is exclude:
                continue
            conn.emit(event, data)
            sent += 1
        return sent

    @property
    def connection_count(self) -> int:
        return len(self._connections)
