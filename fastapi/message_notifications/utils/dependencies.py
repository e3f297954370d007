from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from message_notifications.database.connection import mongo_db_dependency
from message_notifications.repositories.conversation_repository import ConversationRepository
from message_notifications.repositories.message_repository import MessageRepository
from message_notifications.services.chat_service import ChatService
from message_notifications.services.notification_service import UnreadNotificationService
from message_notifications.services.session_manager import SessionManager
from message_notifications.utils.security import decode_access_token


_bearer = HTTPBearer(auto_error=False)


def user_from_token(token: str) -> dict:
    payload = decode_access_token(token)
    sub = payload.get("sub")
    if not sub:
        raise JWTError("token has no subject")
    return {"_id": str(sub)}


async def get_current_user(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        return user_from_token(credentials.credentials)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_chat_service(db=Depends(mongo_db_dependency)) -> ChatService:
    return ChatService(MessageRepository(db), ConversationRepository(db))


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


async def get_notification_service(
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_session_manager),
) -> AsyncIterator[UnreadNotificationService]:
    async with sessions.borrow(current_user["_id"]) as service:
        yield service
