import asyncio
from typing import Dict, List

from fastapi import WebSocket


class ConnectionManager:
    """Websocket connections per user, each with a queue of changed store names."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._queues: Dict[WebSocket, "asyncio.Queue[str]"] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> "asyncio.Queue[str]":
        await websocket.accept()
        if user_id not in self.active_connections:
            self.active_connections[user_id] = []
        self.active_connections[user_id].append(websocket)
        queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._queues[websocket] = queue
        return queue

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        self._queues.pop(websocket, None)
        if user_id in self.active_connections:
            try:
                self.active_connections[user_id].remove(websocket)
            except ValueError:
                pass
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

    def notify(self, user_id: str, store_name: str) -> None:
        for conn in self.active_connections.get(user_id, []):
            queue = self._queues.get(conn)
            if queue is not None:
                queue.put_nowait(store_name)
