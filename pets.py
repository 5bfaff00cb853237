import logging
from typing import List, Tuple

from pymongo.database import Database

from database import NEWEST_FIRST, create_document, oid, paginate, to_public
from errors import NotFound
from schemas import Pet

logger = logging.getLogger(__name__)

# Only changed through set_adopted / the adoption workflow, never by a generic update.
PROTECTED_FIELDS = ("id", "_id", "created_at", "adopted")


class PetRegistry:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database["pet"]

    def create(self, pet: Pet) -> str:
        pet_id = create_document(self.db, "pet", pet)
        logger.info("Pet %s listed by %s", pet_id, pet.owner_email)
        return pet_id

    def get(self, pet_id: str) -> dict:
        doc = self.collection.find_one({"_id": oid(pet_id)})
        if not doc:
            raise NotFound("Pet not found")
        return to_public(doc)

    def list_available(self, page: int, limit: int) -> Tuple[List[dict], int]:
        return paginate(self.db, "pet", {"adopted": {"$ne": True}}, page, limit, NEWEST_FIRST)

    def list_all(self, page: int, limit: int) -> Tuple[List[dict], int]:
        return paginate(self.db, "pet", {}, page, limit, NEWEST_FIRST)

    def list_by_owner(self, email: str, page: int, limit: int) -> Tuple[List[dict], int]:
        return paginate(self.db, "pet", {"owner_email": email}, page, limit, NEWEST_FIRST)

    def update(self, pet_id: str, patch: dict) -> None:
        patch = {k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}
        if not patch:
            # Nothing left to write, but the pet must still exist.
            self.get(pet_id)
            return
        result = self.collection.update_one({"_id": oid(pet_id)}, {"$set": patch})
        if result.matched_count == 0:
            raise NotFound("Pet not found")

    def set_adopted(self, pet_id: str, value: bool = True) -> None:
        result = self.collection.update_one({"_id": oid(pet_id)}, {"$set": {"adopted": bool(value)}})
        if result.matched_count == 0:
            raise NotFound("Pet not found")
        logger.info("Pet %s adopted=%s", pet_id, value)

    def mark_adopted(self, pet_id: str) -> bool:
        """Flip adopted to true once; returns False when it was already set."""
        result = self.collection.update_one(
            {"_id": oid(pet_id), "adopted": {"$ne": True}}, {"$set": {"adopted": True}}
        )
        if result.matched_count:
            logger.info("Pet %s marked adopted", pet_id)
            return True
        if not self.collection.find_one({"_id": oid(pet_id)}, {"_id": 1}):
            raise NotFound("Pet not found")
        return False

    def delete(self, pet_id: str) -> None:
        result = self.collection.delete_one({"_id": oid(pet_id)})
        if result.deleted_count == 0:
            raise NotFound("Pet not found")
        logger.info("Pet %s deleted", pet_id)
