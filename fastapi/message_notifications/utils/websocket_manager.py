from typing import Dict, List

from fastapi import WebSocket
from starlette.websockets import WebSocketState


class ConnectionManager:

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.active_connections.get(user_id)
        if sockets is None:
            return
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            del self.active_connections[user_id]

    def is_connected(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    async def send_personal_message(self, receiver_id: str, message: str) -> None:
        for conn in list(self.active_connections.get(receiver_id, [])):
            if conn.client_state == WebSocketState.CONNECTED:
                await conn.send_text(message)
