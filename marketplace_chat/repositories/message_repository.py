from datetime import datetime, timezone
from typing import Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from marketplace_chat.models.message import MessageDocument


def to_object_ids(ids: Iterable[str]) -> List[ObjectId]:
    # placeholder ids and other foreign strings never match a stored message
    return [ObjectId(i) for i in ids if ObjectId.is_valid(i)]


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("buyer_email", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("seller_email", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("listing_id", ASCENDING), ("created_at", ASCENDING)])

    async def save_message(
        self,
        listing_id: str,
        buyer_email: str,
        seller_email: str,
        author: str,
        content: str,
        buyer_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "listing_id": listing_id,
            "buyer_email": buyer_email,
            "seller_email": seller_email,
            "buyer_id": buyer_id,
            "author": author,
            "message": content,
            "read": False,
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def find_for_participant(self, email: str) -> List[MessageDocument]:
        cursor = self.collection.find(
            {"$or": [{"buyer_email": email}, {"seller_email": email}]}
        ).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        items = await cursor.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def find_conversation(self, listing_id: str, email_a: str, email_b: str) -> List[MessageDocument]:
        cursor = self.collection.find(
            {
                "listing_id": listing_id,
                "$or": [
                    {"buyer_email": email_a, "seller_email": email_b},
                    {"buyer_email": email_b, "seller_email": email_a},
                ],
            }
        ).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        items = await cursor.to_list(length=None)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def find_unread_by_ids(self, message_ids: Iterable[str]) -> List[MessageDocument]:
        oids = to_object_ids(message_ids)
        if not oids:
            return []
        cursor = self.collection.find({"_id": {"$in": oids}, "read": {"$ne": True}})
        items = await cursor.to_list(length=len(oids))
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items

    async def set_read(self, message_ids: Iterable[str]) -> int:
        oids = to_object_ids(message_ids)
        if not oids:
            return 0
        result = await self.collection.update_many(
            {"_id": {"$in": oids}, "read": {"$ne": True}},
            {"$set": {"read": True}},
        )
        return result.modified_count or 0
