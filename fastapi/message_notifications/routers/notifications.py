import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from jose import JWTError

from message_notifications.schemas.notifications import UnreadSnapshot
from message_notifications.services.chat_service import ChatService, is_participant
from message_notifications.services.notification_service import UnreadNotificationService
from message_notifications.services.unread_state import UnreadState
from message_notifications.utils.dependencies import (
    get_chat_service,
    get_current_user,
    get_notification_service,
    user_from_token,
)
from message_notifications.utils.errors import RemoteStoreError
from message_notifications.utils.logging import get_logger
from message_notifications.utils.notifications import fire_and_forget


router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = get_logger(__name__)


def _unread_frame(service: UnreadNotificationService) -> str:
    return json.dumps({"type": "unread", **service.snapshot().model_dump()})


@router.get("/unread", response_model=UnreadSnapshot)
async def get_unread(service: UnreadNotificationService = Depends(get_notification_service)):
    if not service.has_channel:
        try:
            await service.refetch()
        except RemoteStoreError:
            logger.warning("unread count failed", extra={"user_id": service.user_id}, exc_info=True)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to load unread messages")
    return service.snapshot()


@router.post("/conversations/{conversation_id}/read", response_model=UnreadSnapshot)
async def mark_conversation_read(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
    service: UnreadNotificationService = Depends(get_notification_service),
):
    try:
        conversation = await chat.get_conversation(conversation_id)
        if conversation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        if not is_participant(conversation, current_user["_id"]):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant")
        await service.mark_as_read(conversation_id)
        if not service.has_channel:
            await service.refetch()
    except RemoteStoreError:
        logger.warning("mark as read failed", extra={"conversation_id": conversation_id}, exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to mark messages as read")
    return service.snapshot()


@router.post("/refetch", response_model=UnreadSnapshot)
async def refetch(service: UnreadNotificationService = Depends(get_notification_service)):
    try:
        await service.refetch()
    except RemoteStoreError:
        logger.warning("refetch failed", extra={"user_id": service.user_id}, exc_info=True)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to refresh unread messages")
    return service.snapshot()


async def _handle_command(websocket: WebSocket, service: UnreadNotificationService, msg: Dict[str, Any]) -> None:
    kind = msg.get("type")
    if kind == "ping":
        await websocket.send_text(json.dumps({"type": "pong"}))
        return
    try:
        if kind == "mark_read" and msg.get("conversation_id"):
            await service.mark_as_read(str(msg["conversation_id"]))
        elif kind == "refetch":
            await service.refetch()
        else:
            await websocket.send_text(json.dumps({"type": "error", "detail": "Unknown command"}))
            return
    except RemoteStoreError:
        await websocket.send_text(json.dumps({"type": "error", "command": kind, "detail": "Remote store unavailable"}))
        return
    await websocket.send_text(_unread_frame(service))


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket):
    # JWT via query ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        user_id = user_from_token(token)["_id"]
    except (JWTError, RuntimeError):
        await websocket.close(code=4401)
        return

    connections = websocket.app.state.connections
    sessions = websocket.app.state.sessions
    await connections.connect(user_id, websocket)
    service = await sessions.acquire(user_id)

    def _push_unread(_: UnreadState) -> None:
        fire_and_forget(websocket.send_text(_unread_frame(service)))

    remove_listener = service.add_listener(_push_unread)
    try:
        await websocket.send_text(_unread_frame(service))
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid payload"}))
                continue
            if not isinstance(msg, dict):
                await websocket.send_text(json.dumps({"type": "error", "detail": "Invalid payload"}))
                continue
            await _handle_command(websocket, service, msg)
    except WebSocketDisconnect:
        pass
    finally:
        remove_listener()
        connections.disconnect(user_id, websocket)
        await sessions.release(user_id)
