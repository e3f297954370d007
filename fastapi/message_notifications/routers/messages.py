from fastapi import APIRouter, Depends, HTTPException, status

from message_notifications.schemas.notifications import SendMessageRequest
from message_notifications.services.chat_service import ChatService
from message_notifications.utils.dependencies import get_chat_service, get_current_user
from message_notifications.utils.errors import RemoteStoreError


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("/{conversation_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    try:
        saved = await service.send_message(conversation_id, current_user["_id"], body.content, body.client_message_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    except PermissionError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant")
    except RemoteStoreError:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to send message")
    return {"ack": {"message_id": saved["_id"], "conversation_id": conversation_id, "client_message_id": body.client_message_id}}
