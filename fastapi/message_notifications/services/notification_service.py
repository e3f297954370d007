"""Per-session unread message tracking fed by the realtime messages channel.

Lifecycle: IDLE -> CONNECTING -> SUBSCRIBED -> CLOSED, or CONNECTING -> CLOSED
when the channel cannot be opened.

``start`` runs a full resync and opens one channel; the transport's
acknowledgement moves the service to SUBSCRIBED. ``stop`` closes the channel
and everything received afterwards is discarded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Protocol

from message_notifications.schemas.events import InsertEvent, decode_change_event
from message_notifications.schemas.notifications import MessageNotice, UnreadSnapshot
from message_notifications.services import unread_state
from message_notifications.services.unread_state import EMPTY, UnreadDataSource, UnreadState
from message_notifications.utils.errors import RemoteStoreError
from message_notifications.utils.logging import get_logger
from message_notifications.utils.notifications import NoopSink, NotificationSink
from message_notifications.utils.realtime_bus import CHANNEL_ERROR, SUBSCRIBED, messages_channel


logger = get_logger(__name__)

DEFAULT_SUBJECT = "a listing"


class SubscriptionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"


class MessageStore(UnreadDataSource, Protocol):
    async def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        ...


@dataclass(frozen=True)
class ConversationParticipants:

    conversation_id: str
    buyer_id: Optional[str]
    seller_id: Optional[str]
    listing_title: Optional[str] = None

    def includes(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    @property
    def subject_text(self) -> str:
        return f'You have a new message about "{self.listing_title or DEFAULT_SUBJECT}"'


StateListener = Callable[[UnreadState], None]


class UnreadNotificationService:

    def __init__(
        self,
        store: MessageStore,
        bus,
        sink: Optional[NotificationSink] = None,
        *,
        channel: Optional[str] = None,
    ) -> None:
        self._store = store
        self._bus = bus
        self._sink = sink or NoopSink()
        self._channel = channel or messages_channel()
        self._user_id: Optional[str] = None
        self._status = SubscriptionState.IDLE
        self._unread: UnreadState = EMPTY
        self._subscription = None
        self._task: Optional[asyncio.Task] = None
        self._conversations: Dict[str, ConversationParticipants] = {}
        self._listeners: List[StateListener] = []
        # bumped on every start/stop; callbacks carrying an older value are stale
        self._generation = 0
        self._resync_after_ack = False
        self._resync_task: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def state(self) -> SubscriptionState:
        return self._status

    @property
    def is_subscribed(self) -> bool:
        return self._status is SubscriptionState.SUBSCRIBED

    @property
    def has_channel(self) -> bool:
        return self._subscription is not None

    @property
    def unread_total(self) -> int:
        return self._unread.total

    @property
    def unread_by_conversation(self) -> Dict[str, int]:
        return self._unread.snapshot()

    def snapshot(self) -> UnreadSnapshot:
        return UnreadSnapshot(
            total=self._unread.total,
            by_conversation=self._unread.snapshot(),
            subscribed=self.is_subscribed,
        )

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self, user_id: str) -> None:
        if self._status in (SubscriptionState.CONNECTING, SubscriptionState.SUBSCRIBED) or self._subscription:
            await self.stop()
        self._generation += 1
        generation = self._generation
        self._user_id = user_id
        self._status = SubscriptionState.CONNECTING
        self._conversations.clear()
        self._set_unread(EMPTY)

        try:
            fresh = await unread_state.full_resync(self._store, user_id)
        except RemoteStoreError:
            logger.warning("initial unread count failed", extra={"user_id": user_id}, exc_info=True)
        else:
            if generation == self._generation:
                self._set_unread(fresh)
        if generation != self._generation:
            return

        try:
            subscription = await self._bus.subscribe(
                self._channel,
                partial(self._handle_raw_event, generation),
                partial(self._handle_status, generation),
            )
        except Exception:
            logger.warning("realtime channel could not be opened", extra={"user_id": user_id}, exc_info=True)
            if generation == self._generation:
                self._status = SubscriptionState.CLOSED
            return

        if generation != self._generation:
            await subscription.cancel()
            return
        self._subscription = subscription
        self._task = asyncio.create_task(subscription.run())
        logger.info("unread notifications started", extra={"user_id": user_id, "channel": self._channel})

    def attach(self, user_id: str) -> None:
        """Bind to a user for one-shot reads and writes; no channel is opened."""
        if self._subscription is not None:
            raise RuntimeError("service already has a live channel")
        self._generation += 1
        self._user_id = user_id
        self._status = SubscriptionState.IDLE
        self._set_unread(EMPTY)

    async def stop(self) -> None:
        self._generation += 1
        subscription, task, resync = self._subscription, self._task, self._resync_task
        self._subscription = None
        self._task = None
        self._resync_task = None
        user_id = self._user_id
        self._user_id = None
        self._status = SubscriptionState.CLOSED
        self._resync_after_ack = False
        self._conversations.clear()
        self._set_unread(EMPTY)
        if subscription is not None:
            await subscription.cancel()
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if resync is not None and not resync.done():
            resync.cancel()
        if user_id is not None:
            logger.info("unread notifications stopped", extra={"user_id": user_id})

    async def mark_as_read(self, conversation_id: str) -> None:
        user_id = self._user_id
        if user_id is None:
            return
        generation = self._generation
        await self._store.mark_conversation_read(conversation_id, user_id)
        if generation != self._generation:
            return
        self._set_unread(unread_state.mark_conversation_read(self._unread, conversation_id))

    async def refetch(self) -> UnreadState:
        user_id = self._user_id
        if user_id is None:
            return self._unread
        generation = self._generation
        fresh = await unread_state.full_resync(self._store, user_id)
        if generation == self._generation:
            self._set_unread(fresh)
        return self._unread

    def _set_unread(self, value: UnreadState) -> None:
        changed = value != self._unread
        self._unread = value
        if not changed:
            return
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("unread listener failed")

    def _is_live(self, generation: int) -> bool:
        return generation == self._generation and self._status is SubscriptionState.SUBSCRIBED

    def _handle_status(self, generation: int, status: str) -> None:
        if generation != self._generation or self._status is SubscriptionState.CLOSED:
            return
        if status == SUBSCRIBED:
            self._status = SubscriptionState.SUBSCRIBED
            if self._resync_after_ack:
                self._resync_after_ack = False
                self._resync_task = asyncio.get_running_loop().create_task(self._background_resync(generation))
        elif status == CHANNEL_ERROR:
            self._status = SubscriptionState.CONNECTING
            self._resync_after_ack = True

    async def _background_resync(self, generation: int) -> None:
        if generation != self._generation:
            return
        try:
            await self.refetch()
        except RemoteStoreError:
            logger.warning("resync after reconnect failed", extra={"user_id": self._user_id}, exc_info=True)

    async def _handle_raw_event(self, generation: int, raw) -> None:
        if not self._is_live(generation):
            return
        event = decode_change_event(raw)
        if event is None:
            logger.debug("ignored undecodable change event")
            return
        user_id = self._user_id
        message = event.new
        if isinstance(event, InsertEvent):
            if message.sender_id == user_id:
                return
        elif not unread_state.is_read_transition(event.old, message, user_id):
            return

        try:
            participants = await self._participants(message.conversation_id)
        except RemoteStoreError:
            logger.debug("participant lookup failed", extra={"conversation_id": message.conversation_id})
            return
        if not self._is_live(generation):
            return
        if participants is None or not participants.includes(user_id):
            return

        if isinstance(event, InsertEvent):
            self._set_unread(unread_state.apply_insert(self._unread, message, user_id))
            self._notify(
                MessageNotice(
                    conversation_id=message.conversation_id,
                    subject_text=participants.subject_text,
                    message_id=message.id,
                )
            )
        else:
            self._set_unread(unread_state.apply_update(self._unread, event.old, message, user_id))

    async def _participants(self, conversation_id: str) -> Optional[ConversationParticipants]:
        cached = self._conversations.get(conversation_id)
        if cached is not None:
            return cached
        row = await self._store.get_conversation(conversation_id)
        if row is None:
            return None
        participants = ConversationParticipants(
            conversation_id=conversation_id,
            buyer_id=row.get("buyer_id"),
            seller_id=row.get("seller_id"),
            listing_title=row.get("announcement_title"),
        )
        self._conversations[conversation_id] = participants
        return participants

    def _notify(self, notice: MessageNotice) -> None:
        try:
            self._sink.notify(notice)
        except Exception:
            logger.exception("notification sink failed", extra={"conversation_id": notice.conversation_id})
