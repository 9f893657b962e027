"""
Notification Hub

Pushes server events to the browser over WebSocket. Every message has the
shape {"type": <event>, "notification": <payload>}. A user may have several
tabs open, so connections are tracked per user id.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationHub:
    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.lock = asyncio.Lock()

    async def register(self, user_id: str, websocket: WebSocket) -> None:
        async with self.lock:
            self._connections[str(user_id)].add(websocket)
        logger.info(f"[WS] Connected user {user_id} ({self.connection_count(user_id)} open)")

    async def unregister(self, user_id: str, websocket: WebSocket) -> None:
        async with self.lock:
            sockets = self._connections.get(str(user_id))
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._connections[str(user_id)]
        logger.info(f"[WS] Disconnected user {user_id}")

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(str(user_id), ()))

    async def send_notification_to_user(self, user_id: Any, event: str,
                                        payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver an event to every open connection of a user.

        Returns:
            Number of connections that received the message. Never raises.
        """
        message = {"type": event, "notification": payload}
        async with self.lock:
            sockets: List[WebSocket] = list(self._connections.get(str(user_id), ()))

        delivered = 0
        dead = []
        for websocket in sockets:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"[WS] Dropping connection for {user_id}: {e}")
                dead.append(websocket)

        for websocket in dead:
            await self.unregister(user_id, websocket)
        if not sockets:
            logger.debug(f"[WS] No connection for {user_id}, event '{event}' not delivered")
        return delivered
