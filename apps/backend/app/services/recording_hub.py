"""
Fan-out of recording start/stop commands to SDK clients.

Clients join a room per project over ``WS /api/recordings/ws``; admin commands
are broadcast to every socket in that room. A client that joins while a
recording is active receives the pending ``recording-start`` right away.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

logger = logging.getLogger(__name__)

_MAX_CONNECTIONS = 500


class RecordingHub:
    def __init__(self, max_connections: int = _MAX_CONNECTIONS):
        self.rooms: dict[str, set[WebSocket]] = {}
        self.active: dict[str, Dict[str, Any]] = {}
        self.max_connections = max_connections
        self._lock = asyncio.Lock()

    def connection_count(self, project_id: Optional[str] = None) -> int:
        if project_id is not None:
            return len(self.rooms.get(project_id, ()))
        return sum(len(room) for room in self.rooms.values())

    async def join(self, websocket: WebSocket, project_id: str) -> bool:
        """Accepts the socket into the project room. False if the hub is full."""
        async with self._lock:
            await websocket.accept()
            if self.connection_count() >= self.max_connections:
                await websocket.close(code=4008, reason="Connection limit reached")
                return False
            self.rooms.setdefault(project_id, set()).add(websocket)
            pending = self.active.get(project_id)

        logger.info("recording client joined project %s", project_id)
        if pending is not None:
            await self._send(websocket, pending)
        return True

    async def leave(self, websocket: WebSocket, project_id: str) -> None:
        async with self._lock:
            room = self.rooms.get(project_id)
            if room is not None:
                room.discard(websocket)
                if not room:
                    del self.rooms[project_id]
        logger.info("recording client left project %s", project_id)

    async def start(self, project_id: str, recording_id: Optional[str] = None) -> int:
        message = {"type": "recording-start", "projectId": project_id, "recordingId": recording_id}
        self.active[project_id] = message
        return await self.broadcast(project_id, message)

    async def stop(self, project_id: str) -> int:
        self.active.pop(project_id, None)
        return await self.broadcast(project_id, {"type": "recording-stop", "projectId": project_id})

    async def broadcast(self, project_id: str, message: Dict[str, Any]) -> int:
        """Sends to every socket in the room concurrently; dead sockets are dropped."""
        async with self._lock:
            targets = list(self.rooms.get(project_id, ()))
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._send(ws, message) for ws in targets), return_exceptions=True
        )
        delivered = 0
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("dropping recording client after send failure: %s", result)
                await self.leave(ws, project_id)
            else:
                delivered += 1
        return delivered

    @staticmethod
    async def _send(websocket: WebSocket, message: Dict[str, Any]) -> None:
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.send_json(message)


hub = RecordingHub()
