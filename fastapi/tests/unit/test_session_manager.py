import pytest

from message_notifications.services.notification_service import SubscriptionState, UnreadNotificationService
from message_notifications.services.session_manager import SessionManager

from conftest import FakeBus, RecordingSink


@pytest.fixture
def manager(store):
    bus = FakeBus()
    created = []

    def _factory(user_id: str) -> UnreadNotificationService:
        svc = UnreadNotificationService(store, bus, RecordingSink())
        created.append(svc)
        return svc

    mgr = SessionManager(_factory)
    mgr.bus = bus
    mgr.created = created
    return mgr


@pytest.mark.asyncio
async def test_one_service_per_user(manager):
    first = await manager.acquire("me")
    second = await manager.acquire("me")

    assert first is second
    assert len(manager.created) == 1
    assert len(manager.bus.subscriptions) == 1
    assert first.user_id == "me"
    await manager.shutdown()


@pytest.mark.asyncio
async def test_service_stops_on_last_release(manager):
    service = await manager.acquire("me")
    await manager.acquire("me")

    await manager.release("me")
    assert service.is_subscribed is True

    await manager.release("me")
    assert service.state is SubscriptionState.CLOSED
    assert manager.get("me") is None
    assert manager.bus.subscriptions == []


@pytest.mark.asyncio
async def test_borrow_without_a_session_opens_no_channel(manager, store):
    store.add_message("m1", "c1", "other")

    async with manager.borrow("me") as service:
        assert service.has_channel is False
        assert service.user_id == "me"
        await service.refetch()
        assert service.unread_total == 1

    assert service.state is SubscriptionState.CLOSED
    assert manager.bus.subscriptions == []
    assert len(manager) == 0


@pytest.mark.asyncio
async def test_borrow_reuses_the_live_session(manager):
    live = await manager.acquire("me")

    async with manager.borrow("me") as service:
        assert service is live

    assert live.is_subscribed is True
    await manager.release("me")
    assert live.state is SubscriptionState.CLOSED


@pytest.mark.asyncio
async def test_release_forgets_idle_users(manager):
    await manager.acquire("me")
    await manager.release("me")

    assert len(manager) == 0
    assert manager._locks == {}


@pytest.mark.asyncio
async def test_shutdown_stops_every_session(manager):
    mine = await manager.acquire("me")
    theirs = await manager.acquire("other")

    await manager.shutdown()

    assert mine.state is SubscriptionState.CLOSED
    assert theirs.state is SubscriptionState.CLOSED
    assert len(manager) == 0
