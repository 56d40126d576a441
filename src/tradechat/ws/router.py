"""WebSocket endpoint carrying the chat event protocol."""

import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import structlog

from tradechat.config import get_settings
from tradechat.ws.session import ChatSession

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Single WebSocket endpoint; one ChatSession per connection.

    Protocol:
        Client -> Server:
            {"event": "join_room", "room": "forex", "username": "alice"}
            {"event": "send_message", "type": "signal", "username": "bob", "room": "forex",
             "signal": {...}, "isOfficial": true}
            {"event": "ping"}

        Server -> Client:
            {"event": "previous_messages", "data": [...]}
            {"event": "room_locked", "data": {"room": "forex", "requiredTier": "pro", "message": "..."}}
            {"event": "pong", "data": {}}
            {"event": "error", "data": {"message": "..."}}
    """
    manager = websocket.app.state.connection_manager
    bus = websocket.app.state.event_bus

    conn_id = str(uuid.uuid4())
    await manager.connect(websocket, conn_id)
    session = ChatSession(
        conn_id, manager, bus, websocket.app.state.session_factory, get_settings(),
    )

    try:
        while True:
            raw = await websocket.receive_text()
            await session.handle_raw(raw)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
    finally:
        await session.close()
