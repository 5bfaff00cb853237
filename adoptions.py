"""
Adoption requests and their effect on pets.

A request moves pending -> approved or pending -> rejected. Approval marks the
pet adopted; that flag is never cleared from here.
"""
import logging
from typing import List

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import NEWEST_FIRST, create_document, get_documents, now_utc, oid, to_public
from errors import Conflict, Invalid, NotFound
from pets import PetRegistry
from schemas import ADOPTION_STATUSES, AdoptionRequest

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("pet_id", "pet_name", "pet_image", "requester_name", "requester_email", "phone", "address")


class AdoptionWorkflow:
    def __init__(self, database: Database, pets: PetRegistry = None):
        self.db = database
        self.collection = database["adoption"]
        self.pets = pets or PetRegistry(database)

    def submit_request(self, request: AdoptionRequest) -> str:
        data = request.model_dump()
        for field in REQUIRED_FIELDS:
            if not data.get(field):
                raise Invalid(f"{field} is required")

        pet = self.pets.get(data["pet_id"])
        if pet.get("adopted"):
            raise Conflict("Pet is already adopted")

        if self.collection.find_one({"pet_id": data["pet_id"], "requester_email": data["requester_email"]}):
            raise Conflict("You have already submitted an adoption request for this pet")

        data["pet_owner_email"] = pet.get("owner_email")
        data["status"] = "pending"
        try:
            request_id = create_document(self.db, "adoption", data)
        except DuplicateKeyError:
            # lost a race with an identical submission
            raise Conflict("You have already submitted an adoption request for this pet")
        logger.info("Adoption request %s submitted for pet %s by %s",
                    request_id, data["pet_id"], data["requester_email"])
        return request_id

    def get(self, request_id: str) -> dict:
        doc = self.collection.find_one({"_id": oid(request_id)})
        if not doc:
            raise NotFound("Adoption request not found")
        return to_public(doc)

    def list_all(self, newest_first: bool = True) -> List[dict]:
        sort = NEWEST_FIRST if newest_first else [("created_at", 1)]
        return get_documents(self.db, "adoption", sort=sort)

    def list_by_requester(self, email: str) -> List[dict]:
        return get_documents(self.db, "adoption", {"requester_email": email}, sort=NEWEST_FIRST)

    def list_for_owner(self, email: str) -> List[dict]:
        return get_documents(self.db, "adoption", {"pet_owner_email": email}, sort=NEWEST_FIRST)

    def set_status(self, request_id: str, status: str) -> None:
        if status not in ADOPTION_STATUSES:
            raise Invalid("Invalid status. Must be pending, approved, or rejected")

        adoption = self.collection.find_one_and_update(
            {"_id": oid(request_id)},
            {"$set": {"status": status, "updated_at": now_utc()}},
        )
        if adoption is None:
            raise NotFound("Adoption request not found")
        logger.info("Adoption request %s: %s -> %s", request_id, adoption.get("status"), status)

        if status == "approved":
            try:
                self.pets.mark_adopted(adoption["pet_id"])
            except NotFound:
                # pet removed after the request was filed; nothing left to flag
                logger.warning("Approved request %s references missing pet %s", request_id, adoption["pet_id"])
