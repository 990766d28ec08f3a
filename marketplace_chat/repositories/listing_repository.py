from typing import Dict, Iterable, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketplace_chat.models.listing import ListingDocument


class ListingRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("listings")

    async def get_listing(self, listing_id: str) -> Optional[ListingDocument]:
        if not ObjectId.is_valid(listing_id):
            return None
        doc = await self._collection.find_one({"_id": ObjectId(listing_id)})
        if not doc:
            return None
        doc["_id"] = str(doc["_id"])
        return doc

    async def get_listings(self, listing_ids: Iterable[str]) -> Dict[str, ListingDocument]:
        oids = [ObjectId(i) for i in set(listing_ids) if ObjectId.is_valid(i)]
        if not oids:
            return {}
        results: Dict[str, ListingDocument] = {}
        async for doc in self._collection.find({"_id": {"$in": oids}}):
            doc["_id"] = str(doc["_id"])
            results[doc["_id"]] = doc
        return results
