import logging
import os
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from chat_relay.repositories.conversation_repository import ConversationRepository
from chat_relay.repositories.message_repository import MessageRepository


logger = logging.getLogger(__name__)

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "chat_relay")

_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo() -> None:
    global _client, _database
    _client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    _database = _client[MONGO_DB_NAME]
    await ConversationRepository(_database).ensure_indexes()
    await MessageRepository(_database).ensure_indexes()
    logger.info("Connected to MongoDB database %s", MONGO_DB_NAME)


async def close_mongo_connection() -> None:
    global _client, _database
    if _client is not None:
        _client.close()
    _client = None
    _database = None


def get_database() -> AsyncIOMotorDatabase:
    if _database is None:
        raise RuntimeError("MongoDB is not connected")
    return _database


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
