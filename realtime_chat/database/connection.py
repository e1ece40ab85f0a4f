import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from realtime_chat.config import get_settings


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> AsyncIOMotorDatabase:
    global _client
    settings = get_settings()
    _client = AsyncIOMotorClient(settings.mongodb_url, tz_aware=True)
    db = _client[settings.mongodb_db]
    await ensure_indexes(db)
    logger.info("Connected to MongoDB database %s", settings.mongodb_db)
    return db


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB connection is not initialised")
    return _client[get_settings().mongodb_db]


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db["messages"].create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)])
    await db["message_read_status"].create_index([("message_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    await db["conversation_participants"].create_index([("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    await db["conversation_participants"].create_index([("user_id", ASCENDING)])
    await db["conversations"].create_index([("last_message_at", DESCENDING)])
    await db["calls"].create_index([("conversation_id", ASCENDING), ("started_at", DESCENDING)])
