import json

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from message_notifications.services.chat_service import ChatService
from message_notifications.utils import realtime_bus
from message_notifications.utils.errors import RemoteStoreError

from conftest import FakeBus


class FakeConversationRepo:
    def __init__(self) -> None:
        self.rows = {
            "c1": {"_id": "c1", "buyer_id": "me", "seller_id": "other", "announcement_title": "Bike"},
        }
        self.touched = []

    async def get_with_listing(self, conversation_id):
        return self.rows.get(conversation_id)

    async def list_ids_for_user(self, user_id):
        raise ServerSelectionTimeoutError("no servers")

    async def touch_on_new_message(self, conversation_id, preview):
        self.touched.append((conversation_id, preview))


class FakeMessageRepo:
    def __init__(self) -> None:
        self.docs = []

    async def save_message(self, conversation_id, sender_id, content, client_message_id=None):
        doc = {
            "_id": f"m{len(self.docs) + 1}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "is_read": False,
            "client_message_id": client_message_id,
        }
        self.docs.append(doc)
        return doc

    async def list_unread_in_conversation(self, conversation_id, user_id):
        return [
            dict(d) for d in self.docs
            if d["conversation_id"] == conversation_id and d["sender_id"] != user_id and not d["is_read"]
        ]

    async def mark_read(self, message_ids):
        count = 0
        for d in self.docs:
            if d["_id"] in message_ids and not d["is_read"]:
                d["is_read"] = True
                count += 1
        return count


@pytest.fixture
def fake_bus():
    bus = FakeBus()
    realtime_bus.set_bus(bus)
    try:
        yield bus
    finally:
        realtime_bus.set_bus(None)


@pytest.fixture
def chat():
    return ChatService(FakeMessageRepo(), FakeConversationRepo())


@pytest.mark.asyncio
async def test_send_message_publishes_insert(chat, fake_bus):
    saved = await chat.send_message("c1", "other", "  Is it still available?  ", "client-1")

    assert saved["content"] == "Is it still available?"
    assert len(fake_bus.published) == 1
    channel, raw = fake_bus.published[0]
    assert channel == "realtime:messages"
    event = json.loads(raw)
    assert event["type"] == "INSERT"
    assert event["new"]["_id"] == saved["_id"]
    assert event["new"]["sender_id"] == "other"


@pytest.mark.asyncio
async def test_send_message_rejects_outsiders_and_unknown_conversations(chat, fake_bus):
    with pytest.raises(PermissionError):
        await chat.send_message("c1", "stranger", "hello")
    with pytest.raises(LookupError):
        await chat.send_message("nope", "me", "hello")
    with pytest.raises(ValueError):
        await chat.send_message("c1", "me", "   ")
    assert fake_bus.published == []


@pytest.mark.asyncio
async def test_mark_read_echoes_one_update_per_row(chat, fake_bus):
    await chat.send_message("c1", "other", "first")
    await chat.send_message("c1", "other", "second")
    await chat.send_message("c1", "me", "mine")
    fake_bus.published.clear()

    modified = await chat.mark_conversation_read("c1", "me")

    assert modified == 2
    events = [json.loads(raw) for _, raw in fake_bus.published]
    assert [e["type"] for e in events] == ["UPDATE", "UPDATE"]
    assert all(e["old"]["is_read"] is False and e["new"]["is_read"] is True for e in events)
    assert {e["new"]["_id"] for e in events} == {"m1", "m2"}


@pytest.mark.asyncio
async def test_store_errors_are_wrapped(chat):
    with pytest.raises(RemoteStoreError):
        await chat.list_conversation_ids("me")


@pytest.mark.asyncio
async def test_mark_read_only_touches_the_rows_it_echoes(fake_bus):
    repo = FakeMessageRepo()
    chat = ChatService(repo, FakeConversationRepo())
    await chat.send_message("c1", "other", "first")
    listed = repo.list_unread_in_conversation

    async def list_then_race(conversation_id, user_id):
        rows = await listed(conversation_id, user_id)
        await repo.save_message(conversation_id, "other", "arrived mid-update")
        return rows

    repo.list_unread_in_conversation = list_then_race
    fake_bus.published.clear()

    modified = await chat.mark_conversation_read("c1", "me")

    assert modified == 1
    echoed = [json.loads(raw)["new"]["_id"] for _, raw in fake_bus.published]
    assert echoed == ["m1"]
    assert [d["is_read"] for d in repo.docs] == [True, False]
