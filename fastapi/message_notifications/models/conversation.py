from typing import Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    buyer_id: str
    seller_id: str
    announcement_id: Optional[str]
    # joined from announcements.title by the repository
    announcement_title: Optional[str]
    last_message_at: str
    last_message_preview: Optional[str]


class AnnouncementDocument(TypedDict, total=False):
    _id: str
    user_id: str
    title: str
