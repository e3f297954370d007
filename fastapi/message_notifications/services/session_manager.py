import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict

from message_notifications.services.notification_service import UnreadNotificationService
from message_notifications.utils.logging import get_logger


logger = get_logger(__name__)

ServiceFactory = Callable[[str], UnreadNotificationService]


class SessionManager:
    """Owns one UnreadNotificationService per connected user.

    WebSocket sessions are reference counted: the service is started on the
    first ``acquire`` and stopped when the last session calls ``release``.
    HTTP requests ``borrow`` the live service when there is one, otherwise a
    channel-less service that is stopped when the request ends.
    """

    def __init__(self, factory: ServiceFactory) -> None:
        self._factory = factory
        self._services: Dict[str, UnreadNotificationService] = {}
        self._refs: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    def _prune_lock(self, user_id: str) -> None:
        lock = self._locks.get(user_id)
        if lock is not None and not lock.locked() and user_id not in self._services:
            del self._locks[user_id]

    def get(self, user_id: str) -> UnreadNotificationService | None:
        return self._services.get(user_id)

    async def ensure(self, user_id: str) -> UnreadNotificationService:
        async with self._lock(user_id):
            service = self._services.get(user_id)
            if service is None:
                service = self._factory(user_id)
                self._services[user_id] = service
                await service.start(user_id)
            return service

    async def acquire(self, user_id: str) -> UnreadNotificationService:
        service = await self.ensure(user_id)
        self._refs[user_id] = self._refs.get(user_id, 0) + 1
        return service

    async def release(self, user_id: str) -> None:
        async with self._lock(user_id):
            remaining = self._refs.get(user_id, 0) - 1
            if remaining > 0:
                self._refs[user_id] = remaining
                return
            self._refs.pop(user_id, None)
            service = self._services.pop(user_id, None)
            if service is not None:
                await service.stop()
        self._prune_lock(user_id)

    @asynccontextmanager
    async def borrow(self, user_id: str) -> AsyncIterator[UnreadNotificationService]:
        live = self._services.get(user_id)
        if live is not None:
            yield live
            return
        service = self._factory(user_id)
        service.attach(user_id)
        try:
            yield service
        finally:
            await service.stop()

    async def shutdown(self) -> None:
        services = list(self._services.values())
        self._services.clear()
        self._refs.clear()
        self._locks.clear()
        for service in services:
            await service.stop()
        logger.info("session manager stopped", extra={"sessions": len(services)})

    def __len__(self) -> int:
        return len(self._services)
