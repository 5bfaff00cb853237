from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from donations import DonationLedger
from errors import Conflict, Invalid, NotFound
from schemas import DonationCampaign

from conftest import future


def campaign(**kw):
    data = dict(
        owner_email="owner@example.com",
        owner_name="Olive",
        image="https://img.example.com/c.jpg",
        max_amount=100,
        last_date=future(),
        short_description="Vet bills",
        long_description="Surgery for Milo",
    )
    data.update(kw)
    return DonationCampaign(**data)


@pytest.fixture
def ledger(db):
    return DonationLedger(db)


def test_funding_scenario(ledger):
    cid = ledger.create(campaign(max_amount=100))

    assert ledger.record_donation(cid, 60) == {"new_total": 60, "progress": 60}
    with pytest.raises(Conflict, match="exceed"):
        ledger.record_donation(cid, 50)
    assert ledger.get(cid)["total_donations"] == 60

    result = ledger.record_donation(cid, 40)
    assert result["new_total"] == 100
    assert result["progress"] == 100


def test_total_never_exceeds_cap(ledger):
    cid = ledger.create(campaign(max_amount=50))
    for amount in [10, 25, 30, 15, 5, 1]:
        try:
            ledger.record_donation(cid, amount)
        except Conflict:
            pass
        total = ledger.get(cid)["total_donations"]
        assert 0 <= total <= 50
    assert ledger.get(cid)["total_donations"] == 50


@pytest.mark.parametrize("status", ["paused", "completed", "cancelled"])
def test_inactive_campaign_rejects_donations(ledger, status):
    cid = ledger.create(campaign())
    ledger.record_donation(cid, 10)
    ledger.set_status(cid, status)
    with pytest.raises(Conflict, match="not active"):
        ledger.record_donation(cid, 10)
    assert ledger.get(cid)["total_donations"] == 10


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_donation(ledger, amount):
    cid = ledger.create(campaign())
    with pytest.raises(Invalid):
        ledger.record_donation(cid, amount)


def test_donation_to_missing_campaign(ledger):
    with pytest.raises(NotFound):
        ledger.record_donation("64b7f0c2a1b2c3d4e5f60718", 10)


def test_donation_retries_when_total_moves(ledger, db, monkeypatch):
    cid = ledger.create(campaign(max_amount=100))
    collection = db["donation"]
    real_update = collection.find_one_and_update
    calls = []

    def racing_update(filter, update, **kw):
        if not calls:
            # another donor gets in between the read and the write
            collection.update_one({"_id": filter["_id"]}, {"$set": {"total_donations": 70}})
        calls.append(filter)
        return real_update(filter, update, **kw)

    monkeypatch.setattr(collection, "find_one_and_update", racing_update)
    ledger.collection = collection

    with pytest.raises(Conflict, match="exceed"):
        ledger.record_donation(cid, 40)
    assert ledger.get(cid)["total_donations"] == 70
    assert len(calls) == 1


def test_create_rejects_past_last_date(ledger):
    with pytest.raises(Invalid, match="future"):
        ledger.create(campaign(last_date=datetime.now(timezone.utc) - timedelta(days=1)))


def test_create_accepts_naive_future_date(ledger):
    naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(days=3)
    assert ledger.create(campaign(last_date=naive))


def test_create_rejects_zero_cap(ledger):
    with pytest.raises(Invalid, match="greater than 0"):
        ledger.create(campaign(max_amount=0))


def test_create_rejects_empty_description(ledger):
    with pytest.raises(Invalid, match="short_description"):
        ledger.create(campaign(short_description=""))


def test_create_defaults(ledger):
    saved = ledger.get(ledger.create(campaign(total_donations=999)))
    assert saved["status"] == "active"
    assert saved["total_donations"] == 0


def test_update_strips_protected_fields(ledger):
    cid = ledger.create(campaign())
    ledger.record_donation(cid, 20)
    ledger.update(cid, {
        "owner_email": "thief@example.com",
        "owner_name": "Thief",
        "total_donations": 0,
        "short_description": "Updated",
    })
    saved = ledger.get(cid)
    assert saved["owner_email"] == "owner@example.com"
    assert saved["owner_name"] == "Olive"
    assert saved["total_donations"] == 20
    assert saved["short_description"] == "Updated"
    assert saved["updated_at"] is not None


def test_update_validates_status_and_cap(ledger):
    cid = ledger.create(campaign())
    ledger.record_donation(cid, 40)
    with pytest.raises(Invalid):
        ledger.update(cid, {"status": "archived"})
    with pytest.raises(Invalid):
        ledger.update(cid, {"max_amount": 30})
    ledger.update(cid, {"max_amount": 40, "status": "paused"})
    saved = ledger.get(cid)
    assert saved["max_amount"] == 40
    assert saved["status"] == "paused"


def test_update_missing_campaign(ledger):
    with pytest.raises(NotFound):
        ledger.update("64b7f0c2a1b2c3d4e5f60718", {"short_description": "x"})


def test_set_status_validation(ledger):
    cid = ledger.create(campaign())
    with pytest.raises(Invalid):
        ledger.set_status(cid, "approved")
    with pytest.raises(NotFound):
        ledger.set_status("64b7f0c2a1b2c3d4e5f60718", "paused")


def test_listings(ledger):
    first = ledger.create(campaign(owner_email="a@example.com"))
    ledger.create(campaign(owner_email="a@example.com"))
    ledger.create(campaign(owner_email="b@example.com"))
    ledger.set_status(first, "paused")

    active, total = ledger.list_active(1, 10)
    assert total == 2
    assert all(c["status"] == "active" for c in active)

    _, total = ledger.list_all(1, 10)
    assert total == 3

    mine, total = ledger.list_by_owner("a@example.com", 1, 1)
    assert total == 2
    assert len(mine) == 1


def test_delete(ledger):
    cid = ledger.create(campaign())
    ledger.delete(cid)
    with pytest.raises(NotFound):
        ledger.get(cid)
    with pytest.raises(NotFound):
        ledger.delete(cid)


@pytest.mark.parametrize("amount", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_donation_leaves_total_alone(ledger, amount):
    cid = ledger.create(campaign(max_amount=100))
    ledger.record_donation(cid, 10)
    with pytest.raises(Invalid):
        ledger.record_donation(cid, amount)
    assert ledger.get(cid)["total_donations"] == 10
    assert ledger.record_donation(cid, 90)["new_total"] == 100


@pytest.mark.parametrize("cap", [float("nan"), float("inf")])
def test_non_finite_cap_is_rejected(ledger, cap):
    with pytest.raises(ValidationError):
        campaign(max_amount=cap)
    with pytest.raises(Invalid):
        ledger.create(campaign().model_copy(update={"max_amount": cap}))

    cid = ledger.create(campaign(max_amount=100))
    with pytest.raises(Invalid):
        ledger.update(cid, {"max_amount": cap})
    assert ledger.get(cid)["max_amount"] == 100


def test_cap_update_checks_total_at_write_time(ledger, db, monkeypatch):
    cid = ledger.create(campaign(max_amount=100))
    ledger.record_donation(cid, 20)
    collection = db["donation"]
    real_update = collection.update_one

    def racing_update(filter, update, **kw):
        # a donation lands after the cap was read
        real_update({"_id": filter["_id"]}, {"$set": {"total_donations": 45}})
        return real_update(filter, update, **kw)

    monkeypatch.setattr(collection, "update_one", racing_update)
    ledger.collection = collection

    with pytest.raises(Invalid):
        ledger.update(cid, {"max_amount": 30})
    saved = ledger.get(cid)
    assert saved["max_amount"] == 100
    assert saved["total_donations"] == 45
