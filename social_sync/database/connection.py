import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from social_sync.config import Settings, get_settings


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_database: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo(settings: Optional[Settings] = None) -> AsyncIOMotorDatabase:
    global _client, _database
    settings = settings or get_settings()
    if _database is not None:
        return _database
    _client = AsyncIOMotorClient(settings.mongo_url, serverSelectionTimeoutMS=int(settings.light_request_timeout * 1000))
    _database = _client[settings.mongo_db_name]
    logger.info("Connected to MongoDB database %s", settings.mongo_db_name)
    return _database


async def close_mongo_connection() -> None:
    global _client, _database
    if _client is not None:
        _client.close()
        logger.info("Closed MongoDB connection")
    _client = None
    _database = None
