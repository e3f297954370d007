from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from message_notifications.repositories.conversation_repository import ConversationRepository
from message_notifications.repositories.message_repository import MessageRepository
from message_notifications.schemas.events import InsertEvent, MessageRow, PreviousRow, UpdateEvent, encode_change_event
from message_notifications.utils.errors import RemoteStoreError
from message_notifications.utils.logging import get_logger
from message_notifications.utils.realtime_bus import get_bus, messages_channel


logger = get_logger(__name__)


def is_participant(conversation: Dict[str, Any], user_id: str) -> bool:
    return user_id in (conversation.get("buyer_id"), conversation.get("seller_id"))


class ChatService:
    """Reads and writes against the message store, echoing row changes on the realtime channel."""

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo

    async def list_conversation_ids(self, user_id: str) -> List[str]:
        try:
            return await self._conversation_repo.list_ids_for_user(user_id)
        except PyMongoError as exc:
            raise RemoteStoreError("conversation lookup failed", context={"user_id": user_id}) from exc

    async def list_unread_rows(self, conversation_ids: List[str], user_id: str) -> List[Dict[str, Any]]:
        try:
            return await self._message_repo.list_unread_for_recipient(conversation_ids, user_id)
        except PyMongoError as exc:
            raise RemoteStoreError("unread query failed", context={"user_id": user_id}) from exc

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._conversation_repo.get_with_listing(conversation_id)
        except PyMongoError as exc:
            raise RemoteStoreError("conversation lookup failed", context={"conversation_id": conversation_id}) from exc

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        try:
            pending = await self._message_repo.list_unread_in_conversation(conversation_id, user_id)
            modified = await self._message_repo.mark_read([doc["_id"] for doc in pending])
        except PyMongoError as exc:
            raise RemoteStoreError(
                "mark as read failed", context={"conversation_id": conversation_id, "user_id": user_id}
            ) from exc
        for doc in pending:
            new = MessageRow.model_validate({**doc, "is_read": True})
            old = PreviousRow(id=new.id, is_read=False, conversation_id=new.conversation_id, sender_id=new.sender_id)
            await self._publish(UpdateEvent(old=old, new=new))
        return modified

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not content or not content.strip():
            raise ValueError("Message content cannot be empty")
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise LookupError(conversation_id)
        if not is_participant(conversation, sender_id):
            raise PermissionError(conversation_id)
        try:
            saved = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content.strip(),
                client_message_id=client_message_id,
            )
            await self._conversation_repo.touch_on_new_message(conversation_id, content.strip()[:200])
        except PyMongoError as exc:
            raise RemoteStoreError("message insert failed", context={"conversation_id": conversation_id}) from exc
        await self._publish(
            InsertEvent(new=MessageRow.model_validate(saved), commit_timestamp=datetime.now(timezone.utc).isoformat())
        )
        return saved

    async def _publish(self, event: InsertEvent | UpdateEvent) -> None:
        bus = await get_bus()
        try:
            await bus.publish(messages_channel(), encode_change_event(event))
        except RedisError:
            # row is committed either way; a resync picks it up
            logger.warning("change event publish failed", extra={"event_type": event.type}, exc_info=True)
