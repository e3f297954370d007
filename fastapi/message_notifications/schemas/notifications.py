from typing import Dict, Optional

from pydantic import BaseModel, Field


class UnreadSnapshot(BaseModel):

    total: int = Field(ge=0)
    by_conversation: Dict[str, int] = Field(default_factory=dict)
    subscribed: bool = False


class MessageNotice(BaseModel):
    """What a sink needs to present a "new message" alert."""

    conversation_id: str
    subject_text: str
    message_id: Optional[str] = None
    title: str = "New message"

    @property
    def href(self) -> str:
        return f"/chat/{self.conversation_id}"


class SendMessageRequest(BaseModel):

    content: str = Field(min_length=1, max_length=5000)
    client_message_id: Optional[str] = None


class DeviceRegistration(BaseModel):

    platform: str = Field(pattern="^(fcm|webpush)$")
    token: str = Field(min_length=1)
