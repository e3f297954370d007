"""Unread message counts and the folds that keep them consistent.

Every function returns a new ``UnreadState``; none of them mutates its input.
All of them preserve ``total == sum(by_conversation.values())`` with strictly
positive per-conversation entries.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Protocol

from message_notifications.schemas.events import MessageRow, PreviousRow


@dataclass(frozen=True)
class UnreadState:

    total: int = 0
    by_conversation: Mapping[str, int] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, int]:
        return dict(self.by_conversation)

    def count_for(self, conversation_id: str) -> int:
        return self.by_conversation.get(conversation_id, 0)


EMPTY = UnreadState()


class UnreadDataSource(Protocol):
    async def list_conversation_ids(self, user_id: str) -> List[str]:
        ...

    async def list_unread_rows(self, conversation_ids: List[str], user_id: str) -> List[Dict[str, Any]]:
        ...


def from_unread_rows(rows: Iterable[Mapping[str, Any]]) -> UnreadState:
    counts = Counter(str(row["conversation_id"]) for row in rows)
    by_conversation = {cid: n for cid, n in counts.items() if n > 0}
    return UnreadState(total=sum(by_conversation.values()), by_conversation=by_conversation)


async def full_resync(source: UnreadDataSource, user_id: str) -> UnreadState:
    conversation_ids = await source.list_conversation_ids(user_id)
    if not conversation_ids:
        return EMPTY
    rows = await source.list_unread_rows(conversation_ids, user_id)
    return from_unread_rows(rows)


def apply_insert(state: UnreadState, message: MessageRow, user_id: str) -> UnreadState:
    if message.sender_id == user_id:
        return state
    by_conversation = dict(state.by_conversation)
    by_conversation[message.conversation_id] = by_conversation.get(message.conversation_id, 0) + 1
    return UnreadState(total=state.total + 1, by_conversation=by_conversation)


def is_read_transition(old: PreviousRow, new: MessageRow, user_id: str) -> bool:
    return old.is_read is False and new.is_read is True and new.sender_id != user_id


def apply_update(state: UnreadState, old: PreviousRow, new: MessageRow, user_id: str) -> UnreadState:
    if not is_read_transition(old, new, user_id):
        return state
    current = state.count_for(new.conversation_id)
    # Already cleared locally (mark-as-read echo) or never counted.
    if current <= 0:
        return state
    by_conversation = dict(state.by_conversation)
    if current - 1 <= 0:
        del by_conversation[new.conversation_id]
    else:
        by_conversation[new.conversation_id] = current - 1
    return UnreadState(total=max(0, state.total - 1), by_conversation=by_conversation)


def mark_conversation_read(state: UnreadState, conversation_id: str) -> UnreadState:
    current = state.count_for(conversation_id)
    by_conversation = dict(state.by_conversation)
    by_conversation.pop(conversation_id, None)
    return UnreadState(total=max(0, state.total - current), by_conversation=by_conversation)
