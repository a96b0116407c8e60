from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from social_sync.models.conversation import ConversationDocument


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        # one conversation per unordered pair, stored in canonical order
        await self.collection.create_index([("participant_one", ASCENDING), ("participant_two", ASCENDING)], unique=True)
        await self.collection.create_index([("participant_two", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])

    async def find_pair(self, participant_one: str, participant_two: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"participant_one": participant_one, "participant_two": participant_two})
        if not doc:
            return None
        doc["_id"] = str(doc["_id"])
        return doc

    async def insert_pair(self, participant_one: str, participant_two: str) -> ConversationDocument:
        now = datetime.now(timezone.utc)
        doc: ConversationDocument = {
            "participant_one": participant_one,
            "participant_two": participant_two,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_by_id(self, conversation_id: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"_id": ObjectId(conversation_id)})
        if not doc:
            return None
        doc["_id"] = str(doc["_id"])
        return doc

    async def touch(self, conversation_id: str) -> None:
        await self.collection.update_one(
            {"_id": ObjectId(conversation_id)},
            {"$set": {"updated_at": datetime.now(timezone.utc)}},
        )

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[ConversationDocument]:
        query = {"$or": [{"participant_one": user_id}, {"participant_two": user_id}]}
        cursor = self.collection.find(query).sort([("updated_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
        items = await cursor.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items
