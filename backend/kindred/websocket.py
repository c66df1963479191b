"""
WebSocket connection bookkeeping.

Tracks live voice sessions and their heartbeats, and serializes outbound
messages. Conversation state lives in each session's controller, not here.
"""

import logging
import time
import uuid
from typing import Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from kindred.errors import error_payload

logger = logging.getLogger(__name__)


class ConnectionManager:

    def __init__(self):
        self.active_connections: dict[str, WebSocket] = {}
        self.last_heartbeat: dict[str, float] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket, register it and send ``session_ready``."""
        await websocket.accept()
        session_id = uuid.uuid4().hex
        self.active_connections[session_id] = websocket
        self.last_heartbeat[session_id] = time.time()
        await self.send_message(session_id, {"type": "session_ready", "data": {"session_id": session_id}})
        return session_id

    async def disconnect(self, session_id: str):
        websocket = self.active_connections.pop(session_id, None)
        self.last_heartbeat.pop(session_id, None)
        if websocket and websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug(f"Session {session_id} already closed: {e}")

    async def send_message(self, session_id: str, message: dict):
        websocket: Optional[WebSocket] = self.active_connections.get(session_id)
        if websocket is None:
            logger.debug(f"Session {session_id} gone - dropping {message.get('type')}")
            return
        await websocket.send_json(message)

    async def send_state_change(self, session_id: str, from_state: str, to_state: str, turn_state: Optional[dict] = None):
        await self.send_message(session_id, {
            "type": "state_change",
            "data": {
                "from": from_state,
                "to": to_state,
                "turn_state": turn_state or {},
                "timestamp": int(time.time() * 1000),
            },
        })

    async def send_error(self, session_id: str, code: str, message_text: str, recoverable: bool = True):
        await self.send_message(session_id, error_payload(code, message_text, recoverable))

    def update_heartbeat(self, session_id: str):
        if session_id in self.active_connections:
            self.last_heartbeat[session_id] = time.time()

    def get_session_count(self) -> int:
        return len(self.active_connections)


connection_manager = ConnectionManager()
