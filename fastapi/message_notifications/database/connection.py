import os
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from message_notifications.utils.logging import get_logger


logger = get_logger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> None:
    global _client
    if _client is not None:
        return
    url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    _client = AsyncIOMotorClient(url)
    logger.info("mongo client created", extra={"db": _db_name()})


async def close_mongo_connection() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None


def _db_name() -> str:
    return os.getenv("MONGODB_DB", "marketplace")


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("Mongo client has not been initialised")
    return _client[_db_name()]


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
