from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from social_sync.models.post import PostDocument


class PostRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["posts"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("created_at", DESCENDING)])

    async def list_recent(self, limit: int = 50) -> List[PostDocument]:
        cursor = self.collection.find({}).sort("created_at", DESCENDING).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items
