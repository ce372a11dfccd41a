import asyncio
import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket

from gigmarket.api.v1.metrics import REALTIME_CONNECTIONS

logger = logging.getLogger(__name__)


class NotificationHub:
    """
    In-process registry of open notification websockets, keyed by user id.

    publish() never blocks the caller and never raises; sends run as
    background tasks and a socket that fails to receive is dropped.
    """

    def __init__(self):
        self._connections: dict[int, set[WebSocket]] = defaultdict(set)
        self._tasks: set[asyncio.Task] = set()

    async def connect(self, user_id: int, websocket: WebSocket):
        await websocket.accept()
        self._connections[user_id].add(websocket)
        REALTIME_CONNECTIONS.inc()
        logger.info(f"Realtime connection opened for user {user_id}")

    def disconnect(self, user_id: int, websocket: WebSocket):
        sockets = self._connections.get(user_id)
        if not sockets or websocket not in sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self._connections.pop(user_id, None)
        REALTIME_CONNECTIONS.dec()
        logger.info(f"Realtime connection closed for user {user_id}")

    def connection_count(self, user_id: int) -> int:
        return len(self._connections.get(user_id, ()))

    def publish(self, user_id: int, payload: dict[str, Any]):
        if not self._connections.get(user_id):
            return
        try:
            task = asyncio.get_running_loop().create_task(self._send(user_id, payload))
        except RuntimeError:
            logger.warning(f"No running loop; dropped realtime push for user {user_id}")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, user_id: int, payload: dict[str, Any]):
        for websocket in list(self._connections.get(user_id, ())):
            try:
                await websocket.send_json(payload)
            except Exception as e:
                logger.warning(f"Realtime push to user {user_id} failed: {e}")
                self.disconnect(user_id, websocket)

    async def drain(self):
        """Waits for in-flight pushes; used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


hub = NotificationHub()
