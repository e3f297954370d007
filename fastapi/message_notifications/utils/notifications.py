import asyncio
import json
import os
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional, Protocol, Set

from pyfcm import FCMNotification

from message_notifications.schemas.notifications import MessageNotice
from message_notifications.utils.logging import get_logger
from message_notifications.utils.websocket_manager import ConnectionManager


logger = get_logger(__name__)

TOAST_DURATION_MS = 5000

_pending: Set[asyncio.Task] = set()


class NotificationSink(Protocol):
    def notify(self, notice: MessageNotice) -> None:
        ...


def _log_failure(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("notification delivery failed", extra={"error": repr(exc)})


def fire_and_forget(coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task]:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        logger.warning("no running loop, notification dropped")
        return None
    task = loop.create_task(coro)
    _pending.add(task)
    task.add_done_callback(_log_failure)
    return task


def toast_payload(notice: MessageNotice) -> Dict[str, Any]:
    return {
        "type": "new_message",
        "conversation_id": notice.conversation_id,
        "message_id": notice.message_id,
        "title": notice.title,
        "description": notice.subject_text,
        "action": {"label": "View", "href": notice.href},
        "duration_ms": TOAST_DURATION_MS,
    }


class NoopSink:

    enabled = False

    def notify(self, notice: MessageNotice) -> None:
        return


class WebSocketSink:
    """Pushes a toast to every socket the user has open."""

    enabled = True

    def __init__(self, manager: ConnectionManager, user_id: str) -> None:
        self._manager = manager
        self._user_id = user_id

    def notify(self, notice: MessageNotice) -> None:
        fire_and_forget(self._manager.send_personal_message(self._user_id, json.dumps(toast_payload(notice))))


class FcmSink:

    enabled = True

    def __init__(
        self,
        client: FCMNotification,
        user_id: str,
        token_lookup: Callable[[str], Awaitable[List[str]]],
    ) -> None:
        self._client = client
        self._user_id = user_id
        self._token_lookup = token_lookup

    def notify(self, notice: MessageNotice) -> None:
        fire_and_forget(self._deliver(notice))

    async def _deliver(self, notice: MessageNotice) -> None:
        tokens = await self._token_lookup(self._user_id)
        data = {"conversation_id": notice.conversation_id, "href": notice.href}
        for token in tokens:
            # pyfcm is sync
            await asyncio.to_thread(
                self._client.notify,
                fcm_token=token,
                notification_title=notice.title,
                notification_body=notice.subject_text,
                data_payload=data,
            )


class FanoutSink:

    def __init__(self, sinks: Iterable[NotificationSink]) -> None:
        self._sinks = list(sinks)

    def notify(self, notice: MessageNotice) -> None:
        for sink in self._sinks:
            try:
                sink.notify(notice)
            except Exception:
                logger.exception("notification sink failed", extra={"sink": type(sink).__name__})


_fcm_client: Optional[FCMNotification] = None


def get_fcm_client() -> Optional[FCMNotification]:
    global _fcm_client
    if _fcm_client is not None:
        return _fcm_client
    service_account_file = os.getenv("FCM_SERVICE_ACCOUNT_FILE")
    project_id = os.getenv("FCM_PROJECT_ID")
    if not service_account_file or not project_id:
        return None
    _fcm_client = FCMNotification(service_account_file=service_account_file, project_id=project_id)
    return _fcm_client
