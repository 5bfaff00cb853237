"""
Confirmed donation payments and the payment-intent gateway.

Payments are completed off-system by the client using the intent's client
secret; this module only records confirmations and reverses them on refund.
"""
import logging
import os
from typing import List, Optional

import requests
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, get_documents, now_utc, oid
from donations import valid_amount
from errors import Internal, Invalid, NotFound
from schemas import Payment

logger = logging.getLogger(__name__)

PAYMENT_GATEWAY_KEY = os.getenv("PAYMENT_GATEWAY_KEY")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
STRIPE_INTENTS_URL = "https://api.stripe.com/v1/payment_intents"

REQUIRED_FIELDS = ("campaign_id", "payer_email", "amount", "payment_method", "transaction_id")


class PaymentRecorder:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database["payment"]
        self.campaigns = database["donation"]

    def record_payment(self, payment: Payment) -> str:
        data = payment.model_dump()
        for field in REQUIRED_FIELDS:
            if not data.get(field):
                raise Invalid("Missing required payment fields")
        if not valid_amount(data["amount"]):
            raise Invalid("Payment amount must be a finite number greater than 0")
        campaign_oid = oid(data["campaign_id"])

        # Ledger row first, so a campaign total is never raised without a refundable entry behind it.
        paid_at = now_utc()
        data["paid_at"] = paid_at
        data["created_at"] = paid_at
        payment_id = create_document(self.db, "payment", data)

        # The money has already moved, so the cap is not enforced here.
        try:
            campaign = self.campaigns.find_one_and_update(
                {"_id": campaign_oid},
                {"$inc": {"total_donations": data["amount"]}, "$set": {"updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError:
            self.collection.delete_one({"_id": oid(payment_id)})
            raise
        if campaign is None:
            self.collection.delete_one({"_id": oid(payment_id)})
            raise NotFound("Campaign not found")
        if campaign["total_donations"] > campaign.get("max_amount", float("inf")):
            logger.warning("Payment %s pushed campaign %s over its goal (%s > %s)",
                           data["transaction_id"], data["campaign_id"],
                           campaign["total_donations"], campaign.get("max_amount"))

        logger.info("Payment %s of %s recorded for campaign %s", payment_id, data["amount"], data["campaign_id"])
        return payment_id

    def list_payments(self, campaign_id: Optional[str] = None, payer_email: Optional[str] = None) -> List[dict]:
        q = {}
        if campaign_id:
            q["campaign_id"] = campaign_id
        if payer_email:
            q["payer_email"] = payer_email
        payments = get_documents(self.db, "payment", q, sort=[("paid_at", DESCENDING)])
        return self._with_campaign_details(payments)

    def _with_campaign_details(self, payments: List[dict]) -> List[dict]:
        ids = set()
        for p in payments:
            try:
                ids.add(oid(p["campaign_id"]))
            except Invalid:
                continue
        campaigns = {
            str(c["_id"]): c
            for c in self.campaigns.find({"_id": {"$in": list(ids)}}, {"image": 1, "short_description": 1})
        }
        for p in payments:
            c = campaigns.get(p["campaign_id"], {})
            p["campaign_image"] = c.get("image")
            p["campaign_short_description"] = c.get("short_description")
        return payments

    def refund(self, payment_id: str) -> None:
        payment = self.collection.find_one_and_delete({"_id": oid(payment_id)})
        if payment is None:
            raise NotFound("Payment not found")
        logger.info("Payment %s of %s refunded", payment_id, payment["amount"])

        try:
            campaign_oid = oid(payment["campaign_id"])
        except Invalid:
            return
        self._reverse(campaign_oid, payment["amount"])

    def _reverse(self, campaign_oid, amount: float) -> None:
        """Take amount off the campaign total, flooring at 0.

        The two filters are complementary, so a pass only falls through when
        another write moved the total in between. Neither write goes below 0.
        """
        while True:
            stamp = now_utc()
            result = self.campaigns.update_one(
                {"_id": campaign_oid, "total_donations": {"$gte": amount}},
                {"$inc": {"total_donations": -amount}, "$set": {"updated_at": stamp}},
            )
            if result.matched_count:
                return
            result = self.campaigns.update_one(
                {"_id": campaign_oid, "total_donations": {"$not": {"$gte": amount}}},
                {"$set": {"total_donations": 0, "updated_at": stamp}},
            )
            if result.matched_count:
                return
            if not self.campaigns.find_one({"_id": campaign_oid}, {"_id": 1}):
                logger.info("Campaign %s no longer exists, nothing to reverse", campaign_oid)
                return


class PaymentIntentGateway:
    """Creates Stripe payment intents and hands back their client secret."""

    def __init__(self, secret_key: Optional[str] = None, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.secret_key = secret_key or PAYMENT_GATEWAY_KEY
        self.timeout = timeout

    def create_intent(self, amount_in_cents: int, currency: str = "usd") -> str:
        if not amount_in_cents or amount_in_cents <= 0:
            raise Invalid("amountInCents must be a positive integer")
        if not self.secret_key:
            raise Internal("PAYMENT_GATEWAY_KEY is not configured")
        try:
            resp = requests.post(
                STRIPE_INTENTS_URL,
                auth=(self.secret_key, ""),
                data={
                    "amount": amount_in_cents,
                    "currency": currency,
                    "payment_method_types[]": "card",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.exception("Payment provider unreachable")
            raise Internal("Payment provider unavailable") from e
        body = resp.json() if resp.content else {}
        if resp.status_code != 200 or "client_secret" not in body:
            message = (body.get("error") or {}).get("message") or f"status {resp.status_code}"
            logger.error("Payment intent creation failed: %s", message)
            raise Internal(f"Payment intent creation failed: {message}")
        return body["client_secret"]


_gateway = PaymentIntentGateway()


def get_gateway():
    return _gateway
