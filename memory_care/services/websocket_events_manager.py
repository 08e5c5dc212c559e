from datetime import datetime, timezone
from typing import Dict, List
import uuid
from fastapi import WebSocket, WebSocketDisconnect, status
import json

from fastapi.websockets import WebSocketState

from loguru import logger


def get_websocket_client_ip(websocket: WebSocket) -> str:
    """
    Получение реального IP-адреса клиента WebSocket из scope.
    """
    scope = websocket.scope
    headers = {k.decode("utf-8"): v.decode("utf-8") for k, v in scope["headers"]}

    if "x-forwarded-for" in headers:
        client_ip = headers["x-forwarded-for"].split(",")[0].strip()
    elif "x-real-ip" in headers:
        client_ip = headers["x-real-ip"].strip()
    else:
        client = scope.get("client")
        if client:
            client_ip = client[0]
        else:
            client_ip = "unknown"

    return client_ip


class WebSocketEventsManager:
    """
    Управляет активными WebSocket-подключениями и рассылкой событий.
    Каждое подключение принадлежит аутентифицированному пользователю.
    """

    def __init__(self):

        self.active_connections: Dict[str, Dict] = {}
        logger.info("WebSocketEventsManager initialized.")

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        """
        Устанавливает новое WebSocket-соединение и присваивает ему уникальный ID.
        user_id - ID подписчика из access-токена.
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        client_ip = get_websocket_client_ip(websocket)

        self.active_connections[connection_id] = {
            "websocket": websocket,
            "ip": client_ip,
            "user_id": user_id,
            "connected_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info(
            f"WebSocket connected from {client_ip} with ID: {connection_id}. Total active: {len(self.active_connections)}"
        )
        return connection_id

    async def disconnect(self, connection_id: str):
        """
        Закрывает WebSocket-соединение по его ID.
        """
        conn_data = self.active_connections.pop(connection_id, None)
        if not conn_data:
            logger.warning(
                f"Attempted to disconnect non-existent WebSocket with ID: {connection_id}"
            )
            return

        websocket = conn_data["websocket"]
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)
            except RuntimeError as e:
                logger.warning(
                    f"Error when closing WebSocket {connection_id}, might be already closed: {e}"
                )
        logger.info(
            f"WebSocket {connection_id} ({conn_data['ip']}) disconnected. Total active: {len(self.active_connections)}"
        )

    async def broadcast_event(self, event_data: Dict, recipients: List[str]):
        """
        Рассылает событие активным подключениям.
        recipients - список ID пользователей, остальные подключения событие не получают.
        """
        message = json.dumps(event_data, default=str)
        for connection_id in list(self.active_connections.keys()):
            conn_data = self.active_connections.get(connection_id)
            if not conn_data:
                continue
            if conn_data["user_id"] not in recipients:
                continue

            connection = conn_data["websocket"]
            client_ip = conn_data["ip"]

            if connection.client_state != WebSocketState.CONNECTED:
                logger.warning(
                    f"Skipping disconnected/closing WebSocket ID {connection_id} from {client_ip}. State: {connection.client_state}"
                )
                self.active_connections.pop(connection_id, None)
                continue

            try:
                await connection.send_text(message)
                logger.debug(f"Event sent to {client_ip}: {message}")
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning(
                    f"WebSocket {client_ip} dropped during broadcast: {e}. Removing."
                )
                self.active_connections.pop(connection_id, None)

        logger.info(
            f"Broadcast complete. Total active connections after cleanup: {len(self.active_connections)}"
        )


websocket_events_manager = WebSocketEventsManager()
