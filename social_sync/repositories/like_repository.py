from datetime import datetime, timezone
from typing import Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from social_sync.models.like import LikeDocument


class LikeRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["likes"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("user_id", ASCENDING), ("post_id", ASCENDING)], unique=True)
        await self.collection.create_index([("post_id", ASCENDING)])

    async def insert(self, user_id: str, post_id: str) -> LikeDocument:
        doc: LikeDocument = {
            "user_id": user_id,
            "post_id": post_id,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def delete(self, user_id: str, post_id: str) -> bool:
        result = await self.collection.delete_one({"user_id": user_id, "post_id": post_id})
        return result.deleted_count > 0

    async def find(self, user_id: str, post_id: str) -> Optional[LikeDocument]:
        doc = await self.collection.find_one({"user_id": user_id, "post_id": post_id})
        if not doc:
            return None
        doc["_id"] = str(doc["_id"])
        return doc

    async def count_for_post(self, post_id: str) -> int:
        return await self.collection.count_documents({"post_id": post_id})

    async def count_for_posts(self, post_ids: List[str]) -> Dict[str, int]:
        if not post_ids:
            return {}
        pipeline = [
            {"$match": {"post_id": {"$in": post_ids}}},
            {"$group": {"_id": "$post_id", "count": {"$sum": 1}}},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=None)
        counts = {post_id: 0 for post_id in post_ids}
        for row in rows:
            counts[row["_id"]] = row["count"]
        return counts
