import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from jose import jwt

# Ensure the service package is importable when tests run from the repo root
SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

from message_notifications.utils.errors import RemoteStoreError
from message_notifications.utils.realtime_bus import SUBSCRIBED


TEST_SECRET = "test-secret"


class FakeStore:
    """In-memory stand-in for the conversations/messages store."""

    def __init__(self) -> None:
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.lookups = 0
        self.fail_resync = False
        self.fail_mark = False
        self.lookup_gate: Optional[asyncio.Event] = None

    def add_conversation(self, conversation_id: str, buyer_id: str, seller_id: str, title: Optional[str] = None) -> None:
        self.conversations[conversation_id] = {
            "_id": conversation_id,
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "announcement_title": title,
        }

    def add_message(self, message_id: str, conversation_id: str, sender_id: str, is_read: bool = False) -> Dict[str, Any]:
        doc = {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": "hello",
            "is_read": is_read,
        }
        self.messages.append(doc)
        return doc

    async def list_conversation_ids(self, user_id: str) -> List[str]:
        if self.fail_resync:
            raise RemoteStoreError("conversation lookup failed")
        return [
            cid for cid, c in self.conversations.items() if user_id in (c["buyer_id"], c["seller_id"])
        ]

    async def list_unread_rows(self, conversation_ids: List[str], user_id: str) -> List[Dict[str, Any]]:
        if self.fail_resync:
            raise RemoteStoreError("unread query failed")
        return [
            {"_id": m["_id"], "conversation_id": m["conversation_id"]}
            for m in self.messages
            if m["conversation_id"] in conversation_ids and m["sender_id"] != user_id and not m["is_read"]
        ]

    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        self.lookups += 1
        if self.lookup_gate is not None:
            await self.lookup_gate.wait()
        return self.conversations.get(conversation_id)

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        if self.fail_mark:
            raise RemoteStoreError("mark as read failed")
        count = 0
        for m in self.messages:
            if m["conversation_id"] == conversation_id and m["sender_id"] != user_id and not m["is_read"]:
                m["is_read"] = True
                count += 1
        return count


class FakeSubscription:

    def __init__(self, bus: "FakeBus", channel: str, on_message, on_status) -> None:
        self.bus = bus
        self.channel = channel
        self.on_message = on_message
        self.on_status = on_status
        self.cancelled = False
        self._closed = asyncio.Event()

    async def run(self) -> None:
        await self._closed.wait()

    async def cancel(self) -> None:
        self.cancelled = True
        self._closed.set()
        if self in self.bus.subscriptions:
            self.bus.subscriptions.remove(self)


class FakeBus:

    enabled = True

    def __init__(self, auto_ack: bool = True, fail: bool = False) -> None:
        self.auto_ack = auto_ack
        self.fail = fail
        self.subscriptions: List[FakeSubscription] = []
        self.published: List[tuple] = []

    async def subscribe(self, channel: str, on_message, on_status=None) -> FakeSubscription:
        if self.fail:
            raise ConnectionError("redis unavailable")
        sub = FakeSubscription(self, channel, on_message, on_status)
        self.subscriptions.append(sub)
        if self.auto_ack and on_status is not None:
            on_status(SUBSCRIBED)
        return sub

    def ack(self, status: str = SUBSCRIBED) -> None:
        for sub in list(self.subscriptions):
            sub.on_status(status)

    async def emit(self, payload) -> None:
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        for sub in list(self.subscriptions):
            await sub.on_message(raw)

    async def publish(self, channel: str, message: str) -> None:
        self.published.append((channel, message))


class RecordingSink:

    def __init__(self) -> None:
        self.notices = []

    def notify(self, notice) -> None:
        self.notices.append(notice)


def insert_event(message_id: str, conversation_id: str, sender_id: str) -> Dict[str, Any]:
    return {
        "type": "INSERT",
        "table": "messages",
        "new": {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": "hi",
            "is_read": False,
        },
    }


def read_event(message_id: str, conversation_id: str, sender_id: str) -> Dict[str, Any]:
    return {
        "type": "UPDATE",
        "table": "messages",
        "old": {"_id": message_id, "is_read": False},
        "new": {
            "_id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": "hi",
            "is_read": True,
        },
    }


def make_token(user_id: str) -> str:
    return jwt.encode({"sub": user_id}, TEST_SECRET, algorithm="HS256")


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("JWT_ALGORITHM", "HS256")


@pytest.fixture
def store() -> FakeStore:
    store = FakeStore()
    store.add_conversation("c1", buyer_id="me", seller_id="other", title="Vintage bike")
    store.add_conversation("c2", buyer_id="other", seller_id="me")
    store.add_conversation("c9", buyer_id="stranger", seller_id="other")
    return store


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def service(store, bus, sink):
    from message_notifications.services.notification_service import UnreadNotificationService

    svc = UnreadNotificationService(store, bus, sink, channel="realtime:messages")
    try:
        yield svc
    finally:
        await svc.stop()
