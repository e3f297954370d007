from datetime import datetime, timezone
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from message_notifications.models.conversation import AnnouncementDocument, ConversationDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    @property
    def announcements(self):
        return self._db["announcements"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("buyer_id", ASCENDING)])
        await self.collection.create_index([("seller_id", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def list_ids_for_user(self, user_id: str) -> List[str]:
        cursor = self.collection.find(
            {"$or": [{"buyer_id": user_id}, {"seller_id": user_id}]},
            {"_id": 1},
        )
        return [str(doc["_id"]) async for doc in cursor]

    async def get_with_listing(self, conversation_id: str) -> Optional[ConversationDocument]:
        """Conversation row plus the title of the listing it is about."""
        convo = await self.collection.find_one({"_id": conversation_id})
        if not convo:
            return None
        convo["_id"] = str(convo["_id"])
        title = None
        announcement_id = convo.get("announcement_id")
        if announcement_id:
            listing: Optional[AnnouncementDocument] = await self.announcements.find_one({"_id": announcement_id}, {"title": 1})
            if listing:
                title = listing.get("title")
        convo["announcement_title"] = title
        return convo

    async def touch_on_new_message(self, conversation_id: str, preview: str) -> None:
        await self.collection.update_one(
            {"_id": conversation_id},
            {
                "$set": {
                    "last_message_at": datetime.now(timezone.utc),
                    "last_message_preview": preview,
                },
            },
        )
