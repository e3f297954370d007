from contextlib import asynccontextmanager

from fastapi import FastAPI

from message_notifications.database.connection import close_mongo_connection, connect_to_mongo, get_database
from message_notifications.repositories.conversation_repository import ConversationRepository
from message_notifications.repositories.device_repository import DeviceRepository
from message_notifications.repositories.message_repository import MessageRepository
from message_notifications.routers.devices import router as devices_router
from message_notifications.routers.messages import router as messages_router
from message_notifications.routers.notifications import router as notifications_router
from message_notifications.services.chat_service import ChatService
from message_notifications.services.notification_service import UnreadNotificationService
from message_notifications.services.session_manager import SessionManager
from message_notifications.utils.logging import configure_logging
from message_notifications.utils.notifications import FanoutSink, FcmSink, WebSocketSink, get_fcm_client
from message_notifications.utils.realtime_bus import get_bus
from message_notifications.utils.websocket_manager import ConnectionManager


def build_session_manager(db, bus, connections: ConnectionManager) -> SessionManager:
    chat = ChatService(MessageRepository(db), ConversationRepository(db))
    devices = DeviceRepository(db)
    fcm = get_fcm_client()

    async def _fcm_tokens(user_id: str):
        return await devices.get_tokens(user_id, platform="fcm")

    def _factory(user_id: str) -> UnreadNotificationService:
        sinks = [WebSocketSink(connections, user_id)]
        if fcm is not None:
            sinks.append(FcmSink(fcm, user_id, _fcm_tokens))
        return UnreadNotificationService(chat, bus, FanoutSink(sinks))

    return SessionManager(_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = configure_logging()
    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    bus = await get_bus()
    app.state.connections = ConnectionManager()
    app.state.sessions = build_session_manager(db, bus, app.state.connections)
    logger.info("service started", extra={"realtime": getattr(bus, "enabled", False)})
    try:
        yield
    finally:
        await app.state.sessions.shutdown()
        if getattr(bus, "enabled", False):
            await bus.close()
        await close_mongo_connection()


app = FastAPI(title="Marketplace message notifications", lifespan=lifespan)


app.include_router(notifications_router)
app.include_router(messages_router)
app.include_router(devices_router)


@app.get("/")
async def root():
    return {"service": "message-notifications"}
