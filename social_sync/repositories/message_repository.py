from datetime import datetime, timezone
from typing import Any, Dict, List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from social_sync.models.message import MessageDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING)])
        await self.collection.create_index([("conversation_id", ASCENDING), ("is_read", ASCENDING)])

    async def insert(self, conversation_id: str, sender_id: str, text: str) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "created_at": datetime.now(timezone.utc),
            "is_read": False,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def list_by_conversation(self, conversation_id: str, limit: int = 500) -> List[MessageDocument]:
        cursor = self.collection.find({"conversation_id": conversation_id}).sort([("created_at", ASCENDING), ("_id", ASCENDING)]).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def latest_per_conversation(self, conversation_ids: List[str]) -> Dict[str, MessageDocument]:
        if not conversation_ids:
            return {}
        pipeline = [
            {"$match": {"conversation_id": {"$in": conversation_ids}}},
            {"$sort": {"created_at": -1}},
            {"$group": {"_id": "$conversation_id", "message": {"$first": "$$ROOT"}}},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=None)
        latest: Dict[str, MessageDocument] = {}
        for row in rows:
            message = row["message"]
            message["_id"] = str(message.get("_id"))
            latest[row["_id"]] = message
        return latest

    def _unread_query(self, user_id: str) -> Dict[str, Any]:
        return {"is_read": False, "sender_id": {"$ne": user_id}}

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        query = self._unread_query(user_id)
        query["conversation_id"] = conversation_id
        return await self.collection.count_documents(query)

    async def count_unread_by_conversation(self, conversation_ids: List[str], user_id: str) -> Dict[str, int]:
        """Unread counts for many conversations in one aggregation."""
        counts = {cid: 0 for cid in conversation_ids}
        if not conversation_ids:
            return counts
        match = self._unread_query(user_id)
        match["conversation_id"] = {"$in": conversation_ids}
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$conversation_id", "count": {"$sum": 1}}},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=None)
        for row in rows:
            counts[row["_id"]] = row["count"]
        return counts

    async def count_unread_total(self, conversation_ids: List[str], user_id: str) -> int:
        if not conversation_ids:
            return 0
        query = self._unread_query(user_id)
        query["conversation_id"] = {"$in": conversation_ids}
        return await self.collection.count_documents(query)

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        query = self._unread_query(user_id)
        query["conversation_id"] = conversation_id
        result = await self.collection.update_many(
            query,
            {"$set": {"is_read": True, "updated_at": datetime.now(timezone.utc)}},
        )
        return result.modified_count or 0
