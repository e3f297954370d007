"""Change events carried on the realtime messages channel.

Payloads arrive as loosely shaped JSON; they are validated here into a tagged
union so the reconciliation code only ever sees ``InsertEvent`` or
``UpdateEvent`` with the fields it needs.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

MESSAGES_TABLE = "messages"


class MessageRow(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(alias="_id")
    conversation_id: str
    sender_id: str
    is_read: bool = False
    content: Optional[str] = None
    created_at: Optional[str] = None


class PreviousRow(BaseModel):
    """Row image before an update; only the read flag is relied on."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(alias="_id")
    is_read: bool
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None


class _ChangeEventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    table: str = MESSAGES_TABLE
    commit_timestamp: Optional[str] = None


class InsertEvent(_ChangeEventBase):
    type: Literal["INSERT"] = "INSERT"
    new: MessageRow


class UpdateEvent(_ChangeEventBase):
    type: Literal["UPDATE"] = "UPDATE"
    old: PreviousRow
    new: MessageRow


ChangeEvent = Annotated[Union[InsertEvent, UpdateEvent], Field(discriminator="type")]

_adapter: TypeAdapter[ChangeEvent] = TypeAdapter(ChangeEvent)


def decode_change_event(raw: str | bytes | dict[str, Any]) -> InsertEvent | UpdateEvent | None:
    """Return the typed event, or None for anything that is not a messages row change."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except (UnicodeDecodeError, ValueError):
            return None
    if not isinstance(raw, dict):
        return None
    event_type = raw.get("type")
    if isinstance(event_type, str):
        raw = {**raw, "type": event_type.upper()}
    try:
        event = _adapter.validate_python(raw)
    except ValidationError:
        return None
    if event.table != MESSAGES_TABLE:
        return None
    return event


def encode_change_event(event: InsertEvent | UpdateEvent) -> str:
    return event.model_dump_json(by_alias=True)


__all__ = [
    "ChangeEvent",
    "InsertEvent",
    "MESSAGES_TABLE",
    "MessageRow",
    "PreviousRow",
    "UpdateEvent",
    "decode_change_event",
    "encode_change_event",
]
