# app/connections.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Live WebSocket sessions keyed by a generated connection id."""

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}

    def register(self, websocket: WebSocket) -> str:
        connection_id = uuid.uuid4().hex
        self._sockets[connection_id] = websocket
        return connection_id

    def unregister(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[WebSocket]:
        return self._sockets.get(connection_id)

    async def send(self, connection_id: str, payload: Dict[str, Any]) -> bool:
        ws = self._sockets.get(connection_id)
        if ws is None:
            return False
        try:
            await ws.send_json(payload)
        except Exception as e:
            logger.warning("Could not deliver to connection %s: %r", connection_id, e)
            self.unregister(connection_id)
            return False
        return True

    def __len__(self) -> int:
        return len(self._sockets)
