from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from social_sync.models.follow import FollowDocument


class FollowRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["follows"]

    async def ensure_indexes(self) -> None:
        # at most one edge per ordered pair; duplicates surface as DuplicateKeyError
        await self.collection.create_index([("follower_id", ASCENDING), ("following_id", ASCENDING)], unique=True)
        await self.collection.create_index([("following_id", ASCENDING)])

    async def insert(self, follower_id: str, following_id: str) -> FollowDocument:
        doc: FollowDocument = {
            "follower_id": follower_id,
            "following_id": following_id,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def delete(self, follower_id: str, following_id: str) -> bool:
        result = await self.collection.delete_one({"follower_id": follower_id, "following_id": following_id})
        return result.deleted_count > 0

    async def find(self, follower_id: str, following_id: str) -> Optional[FollowDocument]:
        doc = await self.collection.find_one({"follower_id": follower_id, "following_id": following_id})
        if not doc:
            return None
        doc["_id"] = str(doc["_id"])
        return doc

    async def count_followers(self, user_id: str) -> int:
        return await self.collection.count_documents({"following_id": user_id})

    async def count_following(self, user_id: str) -> int:
        return await self.collection.count_documents({"follower_id": user_id})
