from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from message_notifications.models.message import MessageDocument


MARK_READ_BATCH = 500


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("is_read", ASCENDING), ("sender_id", ASCENDING)]
        )

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "_id": str(ObjectId()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "is_read": False,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "client_message_id": client_message_id,
        }
        await self.collection.insert_one(doc)
        return doc

    async def list_unread_for_recipient(self, conversation_ids: List[str], user_id: str) -> List[Dict[str, Any]]:
        if not conversation_ids:
            return []
        cursor = self.collection.find(
            {
                "conversation_id": {"$in": conversation_ids},
                "sender_id": {"$ne": user_id},
                "is_read": False,
            },
            {"_id": 1, "conversation_id": 1},
        )
        items = []
        async for doc in cursor:
            items.append({"_id": str(doc["_id"]), "conversation_id": str(doc["conversation_id"])})
        return items

    async def list_unread_in_conversation(self, conversation_id: str, user_id: str) -> List[MessageDocument]:
        cursor = self.collection.find(
            {"conversation_id": conversation_id, "sender_id": {"$ne": user_id}, "is_read": False}
        ).sort("_id", ASCENDING)
        items = []
        async for doc in cursor:
            doc["_id"] = str(doc.get("_id"))
            items.append(doc)
        return items

    async def mark_read(self, message_ids: List[str]) -> int:
        modified = 0
        for start in range(0, len(message_ids), MARK_READ_BATCH):
            batch = message_ids[start:start + MARK_READ_BATCH]
            result = await self.collection.update_many(
                {"_id": {"$in": batch}, "is_read": False},
                {"$set": {"is_read": True}},
            )
            modified += result.modified_count or 0
        return modified
