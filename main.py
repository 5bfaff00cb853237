import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from adoptions import AdoptionWorkflow
from auth import Identity, is_admin, require_admin, require_self_or_admin, require_user
from database import ensure_indexes, get_db, page_envelope
from donations import DonationLedger
from errors import Forbidden, ServiceError
from payments import PaymentRecorder, get_gateway
from pets import PetRegistry
from schemas import (
    AdoptedFlag, AdoptionRequest, BanUpdate, DonateRequest, DonationCampaign, DonationCampaignUpdate,
    Payment, PaymentIntentRequest, Pet, PetUpdate, RoleUpdate, StatusUpdate, User,
)
from users import UserDirectory

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError:
            logger.exception("Could not create indexes")
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
    yield


def cors_origins(frontend_url):
    """Only the configured frontend when one is set; any origin otherwise."""
    return [frontend_url] if frontend_url else ["*"]


app = FastAPI(title="Petify Adoption & Donation API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(FRONTEND_URL),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----- Error handling -----

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
    return JSONResponse(
        status_code=400,
        content={"detail": f"{field}: {first.get('msg', 'invalid value')}"},
    )


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Database error"})

# ----- Components -----

def get_users(db: Database = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


def get_pets(db: Database = Depends(get_db)) -> PetRegistry:
    return PetRegistry(db)


def get_adoptions(db: Database = Depends(get_db)) -> AdoptionWorkflow:
    return AdoptionWorkflow(db)


def get_ledger(db: Database = Depends(get_db)) -> DonationLedger:
    return DonationLedger(db)


def get_payments(db: Database = Depends(get_db)) -> PaymentRecorder:
    return PaymentRecorder(db)

# ----- Health -----

@app.get("/")
def root():
    return {"message": "Server is running"}

# ----- Users -----

@app.get("/users/{email}/role")
def get_user_role(email: str, users: UserDirectory = Depends(get_users)):
    return {"role": users.get_role(email)}


@app.get("/users", dependencies=[Depends(require_admin)])
def list_users(users: UserDirectory = Depends(get_users)):
    return users.list_all()


@app.get("/users/search", dependencies=[Depends(require_admin)])
def search_users(email: str = "", users: UserDirectory = Depends(get_users)):
    return users.search(email)


@app.post("/users", status_code=201)
def create_user(user: User, users: UserDirectory = Depends(get_users)):
    # self-signup never grants privileges
    user = user.model_copy(update={"role": "user", "is_banned": False})
    return {"id": users.signup(user)}


@app.patch("/users/{user_id}/role", dependencies=[Depends(require_admin)])
def update_user_role(user_id: str, body: RoleUpdate, users: UserDirectory = Depends(get_users)):
    users.set_role(user_id, body.role)
    return {"message": "User role updated successfully"}


@app.patch("/users/{user_id}/ban", dependencies=[Depends(require_admin)])
def update_user_ban(user_id: str, body: BanUpdate, users: UserDirectory = Depends(get_users)):
    users.set_banned(user_id, body.is_banned)
    return {"message": "User ban status updated successfully"}

# ----- Pets -----

def _owned_pet(pets: PetRegistry, db: Database, identity: Identity, pet_id: str) -> dict:
    pet = pets.get(pet_id)
    require_self_or_admin(db, identity, pet.get("owner_email"))
    return pet


@app.get("/pets/available")
def list_available_pets(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), pets: PetRegistry = Depends(get_pets)):
    items, total = pets.list_available(page, limit)
    return page_envelope("pets", items, total, page, limit)


@app.get("/pets/all", dependencies=[Depends(require_admin)])
def list_all_pets(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), pets: PetRegistry = Depends(get_pets)):
    items, total = pets.list_all(page, limit)
    return page_envelope("pets", items, total, page, limit)


@app.get("/pets/{pet_id}")
def get_pet(pet_id: str, pets: PetRegistry = Depends(get_pets)):
    return pets.get(pet_id)


@app.get("/pets")
def list_pets_by_owner(
    email: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    pets: PetRegistry = Depends(get_pets),
):
    require_self_or_admin(db, identity, email)
    items, total = pets.list_by_owner(email, page, limit)
    return page_envelope("pets", items, total, page, limit)


@app.post("/pets", status_code=201)
def create_pet(
    pet: Pet,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    pets: PetRegistry = Depends(get_pets),
):
    require_self_or_admin(db, identity, pet.owner_email)
    return {"id": pets.create(pet)}


@app.put("/pets/{pet_id}")
def update_pet(
    pet_id: str,
    patch: PetUpdate,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    pets: PetRegistry = Depends(get_pets),
):
    _owned_pet(pets, db, identity, pet_id)
    pets.update(pet_id, patch.model_dump(exclude_unset=True))
    return {"message": "Pet updated successfully"}


@app.put("/pets/{pet_id}/adopt")
def mark_pet_adopted(
    pet_id: str,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    pets: PetRegistry = Depends(get_pets),
):
    _owned_pet(pets, db, identity, pet_id)
    pets.mark_adopted(pet_id)
    return {"message": "Pet marked as adopted successfully"}


@app.put("/pets/{pet_id}/adoption-status", dependencies=[Depends(require_admin)])
def set_pet_adoption_status(pet_id: str, body: AdoptedFlag, pets: PetRegistry = Depends(get_pets)):
    pets.set_adopted(pet_id, body.adopted)
    return {"message": "Pet adoption status updated successfully"}


@app.delete("/pets/{pet_id}")
def delete_pet(
    pet_id: str,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    pets: PetRegistry = Depends(get_pets),
):
    _owned_pet(pets, db, identity, pet_id)
    pets.delete(pet_id)
    return {"message": "Pet deleted successfully"}


@app.delete("/admin/pets/{pet_id}", dependencies=[Depends(require_admin)])
def admin_delete_pet(pet_id: str, pets: PetRegistry = Depends(get_pets)):
    pets.delete(pet_id)
    return {"message": "Pet deleted successfully"}

# ----- Adoptions -----

@app.post("/adoptions", status_code=201)
def submit_adoption(
    adoption: AdoptionRequest,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    adoptions: AdoptionWorkflow = Depends(get_adoptions),
):
    require_self_or_admin(db, identity, adoption.requester_email)
    adoption_id = adoptions.submit_request(adoption)
    return {"message": "Adoption request submitted successfully", "id": adoption_id}


@app.get("/adoptions", dependencies=[Depends(require_admin)])
def list_adoptions(adoptions: AdoptionWorkflow = Depends(get_adoptions)):
    return adoptions.list_all(newest_first=True)


@app.get("/adoptions/user/{email}")
def list_user_adoptions(
    email: str,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    adoptions: AdoptionWorkflow = Depends(get_adoptions),
):
    require_self_or_admin(db, identity, email)
    return adoptions.list_by_requester(email)


@app.get("/adoptions/owner/{email}")
def list_owner_adoptions(
    email: str,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    adoptions: AdoptionWorkflow = Depends(get_adoptions),
):
    require_self_or_admin(db, identity, email)
    return adoptions.list_for_owner(email)


@app.put("/adoptions/{adoption_id}/status")
def update_adoption_status(
    adoption_id: str,
    body: StatusUpdate,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    adoptions: AdoptionWorkflow = Depends(get_adoptions),
):
    adoption = adoptions.get(adoption_id)
    require_self_or_admin(db, identity, adoption.get("pet_owner_email"))
    adoptions.set_status(adoption_id, body.status)
    return {"message": "Adoption status updated successfully"}

# ----- Donation campaigns -----

def _owned_campaign(ledger: DonationLedger, db: Database, identity: Identity, campaign_id: str) -> dict:
    campaign = ledger.get(campaign_id)
    require_self_or_admin(db, identity, campaign.get("owner_email"))
    return campaign


@app.post("/donations", status_code=201)
def create_campaign(
    campaign: DonationCampaign,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    ledger: DonationLedger = Depends(get_ledger),
):
    require_self_or_admin(db, identity, campaign.owner_email)
    campaign_id = ledger.create(campaign)
    return {"message": "Donation campaign created successfully", "id": campaign_id}


@app.get("/donations")
def list_active_campaigns(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), ledger: DonationLedger = Depends(get_ledger)):
    items, total = ledger.list_active(page, limit)
    return page_envelope("campaigns", items, total, page, limit)


@app.get("/donations/all", dependencies=[Depends(require_admin)])
def list_all_campaigns(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), ledger: DonationLedger = Depends(get_ledger)):
    items, total = ledger.list_all(page, limit)
    return page_envelope("campaigns", items, total, page, limit)


@app.get("/donations/user/{email}")
def list_user_campaigns(
    email: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    ledger: DonationLedger = Depends(get_ledger),
):
    require_self_or_admin(db, identity, email)
    items, total = ledger.list_by_owner(email, page, limit)
    return page_envelope("campaigns", items, total, page, limit)


@app.get("/donations/{campaign_id}")
def get_campaign(campaign_id: str, ledger: DonationLedger = Depends(get_ledger)):
    return ledger.get(campaign_id)


@app.put("/donations/{campaign_id}")
def update_campaign(
    campaign_id: str,
    patch: DonationCampaignUpdate,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    ledger: DonationLedger = Depends(get_ledger),
):
    _owned_campaign(ledger, db, identity, campaign_id)
    ledger.update(campaign_id, patch.model_dump(exclude_unset=True))
    return {"message": "Donation campaign updated successfully"}


@app.put("/donations/{campaign_id}/status")
def update_campaign_status(
    campaign_id: str,
    body: StatusUpdate,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    ledger: DonationLedger = Depends(get_ledger),
):
    _owned_campaign(ledger, db, identity, campaign_id)
    ledger.set_status(campaign_id, body.status)
    return {"message": "Donation campaign status updated successfully"}


@app.put("/donations/{campaign_id}/donate", dependencies=[Depends(require_user)])
def donate(campaign_id: str, body: DonateRequest, ledger: DonationLedger = Depends(get_ledger)):
    result = ledger.record_donation(campaign_id, body.amount)
    return {
        "message": "Donation added successfully",
        "newTotal": result["new_total"],
        "progress": result["progress"],
    }


@app.delete("/donations/{campaign_id}")
def delete_campaign(
    campaign_id: str,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    ledger: DonationLedger = Depends(get_ledger),
):
    _owned_campaign(ledger, db, identity, campaign_id)
    ledger.delete(campaign_id)
    return {"message": "Donation campaign deleted successfully"}


@app.delete("/admin/donations/{campaign_id}", dependencies=[Depends(require_admin)])
def admin_delete_campaign(campaign_id: str, ledger: DonationLedger = Depends(get_ledger)):
    ledger.delete(campaign_id)
    return {"message": "Donation campaign deleted successfully"}

# ----- Payments -----

@app.post("/create-payment-intent", dependencies=[Depends(require_user)])
def create_payment_intent(body: PaymentIntentRequest, gateway=Depends(get_gateway)):
    return {"clientSecret": gateway.create_intent(body.amount_in_cents, body.currency)}


@app.post("/payments", status_code=201)
def record_payment(
    payment: Payment,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    payments: PaymentRecorder = Depends(get_payments),
):
    require_self_or_admin(db, identity, payment.payer_email)
    payment_id = payments.record_payment(payment)
    return {"message": "Donation payment recorded", "id": payment_id}


@app.get("/payments")
def list_payments(
    campaign_id: Optional[str] = Query(None, alias="campaignId"),
    email: Optional[str] = None,
    identity: Identity = Depends(require_user),
    db: Database = Depends(get_db),
    payments: PaymentRecorder = Depends(get_payments),
    ledger: DonationLedger = Depends(get_ledger),
):
    if not is_admin(db, identity):
        if campaign_id:
            # campaign owners see every payment to their campaign
            if ledger.get(campaign_id).get("owner_email") != identity.email:
                raise Forbidden("Forbidden access")
        else:
            if email and email.lower() != identity.email.lower():
                raise Forbidden("Forbidden access")
            email = identity.email
    return payments.list_payments(campaign_id=campaign_id, payer_email=email)


@app.delete("/payments/{payment_id}", dependencies=[Depends(require_admin)])
def refund_payment(payment_id: str, payments: PaymentRecorder = Depends(get_payments)):
    payments.refund(payment_id)
    return {"message": "Payment refunded successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
