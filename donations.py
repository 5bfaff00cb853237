"""
Donation campaigns and their funding totals.

total_donations only grows through record_donation, which refuses anything
that would push it past max_amount, and through recorded payments.
"""
import logging
import math
from datetime import datetime, timezone
from typing import List, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database

from database import NEWEST_FIRST, create_document, now_utc, oid, paginate, to_public
from errors import Conflict, Invalid, NotFound
from schemas import CAMPAIGN_STATUSES, DonationCampaign

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("image", "max_amount", "last_date", "short_description", "long_description", "owner_email")
PROTECTED_FIELDS = ("id", "_id", "created_at", "owner_email", "owner_name", "total_donations")
# attempts at the compare-and-swap before giving up under contention
MAX_CAS_ATTEMPTS = 5


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def valid_amount(value) -> bool:
    """True for a finite number above zero; NaN and infinities never pass."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def progress_percent(total: float, max_amount: float) -> float:
    return min(total * 100 / max_amount, 100)


class DonationLedger:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database["donation"]

    def create(self, campaign: DonationCampaign) -> str:
        data = campaign.model_dump()
        for field in REQUIRED_FIELDS:
            if data.get(field) is None or data.get(field) == "":
                raise Invalid(f"{field} is required")
        if _aware(data["last_date"]) <= now_utc():
            raise Invalid("Last date must be in the future")
        if not valid_amount(data["max_amount"]):
            raise Invalid("Maximum amount must be greater than 0")
        data["total_donations"] = 0
        campaign_id = create_document(self.db, "donation", data)
        logger.info("Campaign %s created by %s (cap %s)", campaign_id, data["owner_email"], data["max_amount"])
        return campaign_id

    def get(self, campaign_id: str) -> dict:
        doc = self.collection.find_one({"_id": oid(campaign_id)})
        if not doc:
            raise NotFound("Donation campaign not found")
        return to_public(doc)

    def list_active(self, page: int, limit: int) -> Tuple[List[dict], int]:
        return paginate(self.db, "donation", {"status": "active"}, page, limit, NEWEST_FIRST)

    def list_all(self, page: int, limit: int) -> Tuple[List[dict], int]:
        return paginate(self.db, "donation", {}, page, limit, NEWEST_FIRST)

    def list_by_owner(self, email: str, page: int, limit: int) -> Tuple[List[dict], int]:
        return paginate(self.db, "donation", {"owner_email": email}, page, limit, NEWEST_FIRST)

    def update(self, campaign_id: str, patch: dict) -> None:
        patch = {k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}
        if "status" in patch and patch["status"] not in CAMPAIGN_STATUSES:
            raise Invalid("Invalid status. Must be active, paused, completed, or cancelled")

        query = {"_id": oid(campaign_id)}
        if "max_amount" in patch:
            if not valid_amount(patch["max_amount"]):
                raise Invalid("Maximum amount must be greater than 0")
            # the new cap must still cover whatever has been donated at write time
            query["total_donations"] = {"$not": {"$gt": patch["max_amount"]}}

        patch["updated_at"] = now_utc()
        result = self.collection.update_one(query, {"$set": patch})
        if result.matched_count == 0:
            if not self.collection.find_one({"_id": query["_id"]}, {"_id": 1}):
                raise NotFound("Donation campaign not found")
            raise Invalid("Maximum amount cannot be lower than the donations already received")

    def set_status(self, campaign_id: str, status: str) -> None:
        if status not in CAMPAIGN_STATUSES:
            raise Invalid("Invalid status. Must be active, paused, completed, or cancelled")
        result = self.collection.update_one(
            {"_id": oid(campaign_id)},
            {"$set": {"status": status, "updated_at": now_utc()}},
        )
        if result.matched_count == 0:
            raise NotFound("Donation campaign not found")
        logger.info("Campaign %s status -> %s", campaign_id, status)

    def record_donation(self, campaign_id: str, amount: float) -> dict:
        if not valid_amount(amount):
            raise Invalid("Valid donation amount is required")
        _id = oid(campaign_id)

        for _ in range(MAX_CAS_ATTEMPTS):
            campaign = self.collection.find_one({"_id": _id})
            if not campaign:
                raise NotFound("Donation campaign not found")
            if campaign.get("status") != "active":
                raise Conflict("Campaign is not active for donations")

            seen_total = campaign.get("total_donations")
            new_total = (seen_total or 0) + amount
            if new_total > campaign["max_amount"]:
                raise Conflict("Donation would exceed campaign goal")

            # Only applies if nobody changed the total or status since the read above.
            updated = self.collection.find_one_and_update(
                {"_id": _id, "status": "active", "total_donations": seen_total,
                 "max_amount": campaign["max_amount"]},
                {"$set": {"total_donations": new_total, "updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                logger.info("Donation of %s to campaign %s, total now %s", amount, campaign_id, new_total)
                return {
                    "new_total": new_total,
                    "progress": progress_percent(new_total, updated["max_amount"]),
                }
            logger.debug("Campaign %s changed during donation, retrying", campaign_id)

        raise Conflict("Campaign is busy, please retry the donation")

    def delete(self, campaign_id: str) -> None:
        result = self.collection.delete_one({"_id": oid(campaign_id)})
        if result.deleted_count == 0:
            raise NotFound("Donation campaign not found")
        logger.info("Campaign %s deleted", campaign_id)
