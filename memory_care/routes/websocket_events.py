from typing import Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from memory_care.services.auth import auth_service
from memory_care.services.websocket_events_manager import websocket_events_manager

from loguru import logger

router = APIRouter()


@router.websocket("/ws/events")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    WebSocket-эндпоинт для подписки на события сессий.
    Подписчик определяется по access-токену из параметра token (поле sub)
    и получает только адресованные ему события.
    """
    try:
        if not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Токен не передан."
            )
        user_id = auth_service.decode_access_token(token)
    except HTTPException as e:
        logger.warning(f"WebSocket subscription rejected: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection_id = await websocket_events_manager.connect(websocket, user_id=user_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await websocket_events_manager.disconnect(connection_id)
    except Exception as e:
        logger.error(
            f"Unhandled error in WebSocket endpoint for ID {connection_id}: {e}",
            exc_info=True,
        )
        await websocket_events_manager.disconnect(connection_id)
