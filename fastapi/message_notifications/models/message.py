from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: str
    # flips to True only through the recipient's mark-as-read
    is_read: bool
    client_message_id: Optional[str]
