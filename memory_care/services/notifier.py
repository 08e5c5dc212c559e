from datetime import datetime, timezone
from typing import List

from loguru import logger

from memory_care.services.websocket_events_manager import websocket_events_manager

SESSION_ACTIVATED = "session_activated"
SESSION_DEACTIVATED = "session_deactivated"
SESSION_COMPLETED = "session_completed"
BASELINE_READY = "baseline_ready"


async def notify(
    event_type: str,
    recipients: List[str],
    **payload,
) -> None:
    """
    Отправляет событие по принципу fire-and-forget.
    Ошибка доставки только логируется и не откатывает изменение состояния.
    """
    event_data = {
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).timestamp(),
        **payload,
    }
    try:
        await websocket_events_manager.broadcast_event(event_data, recipients=recipients)
    except Exception as e:
        logger.error(f"Notification {event_type} failed: {e}", exc_info=True)
