"""
Database Schemas for the Petify Adoption & Donation API

Each Pydantic model represents a MongoDB collection (collection name is the lowercase of the class name,
with AdoptionRequest stored in "adoption" and DonationCampaign in "donation").
"""
from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Optional, Literal

Role = Literal['user', 'admin']
CampaignStatus = Literal['active', 'paused', 'completed', 'cancelled']

ADOPTION_STATUSES = ('pending', 'approved', 'rejected')
CAMPAIGN_STATUSES = ('active', 'paused', 'completed', 'cancelled')

# ========== Core Schemas ==========

class User(BaseModel):
    email: EmailStr = Field(..., description="Unique user email")
    name: Optional[str] = None
    photo_url: Optional[str] = None
    role: Role = Field('user', description="Stored role used for authorization")
    is_banned: bool = False

class Pet(BaseModel):
    # Callers may attach extra attributes; they are stored as given.
    model_config = ConfigDict(extra='allow')

    owner_email: EmailStr = Field(..., description="Email of the user who listed the pet")
    name: str
    species: str = Field(..., description="e.g. dog, cat, rabbit")
    age: Optional[int] = Field(None, ge=0, le=50)
    location: Optional[str] = None
    image: Optional[str] = Field(None, description="Image URL")
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    adopted: bool = False
    created_at: Optional[datetime] = None

class PetUpdate(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: Optional[str] = None
    species: Optional[str] = None
    age: Optional[int] = Field(None, ge=0, le=50)
    location: Optional[str] = None
    image: Optional[str] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None

class AdoptionRequest(BaseModel):
    pet_id: str
    pet_name: str
    pet_image: str
    requester_name: str
    requester_email: EmailStr
    phone: str
    address: str

class DonationCampaign(BaseModel):
    owner_email: EmailStr
    owner_name: Optional[str] = None
    pet_name: Optional[str] = None
    image: str = Field(..., description="Campaign image URL")
    max_amount: float = Field(..., allow_inf_nan=False, description="Funding cap, must be positive")
    last_date: datetime = Field(..., description="Last day donations are accepted")
    short_description: str
    long_description: str
    status: CampaignStatus = 'active'
    total_donations: float = Field(0, allow_inf_nan=False)

class DonationCampaignUpdate(BaseModel):
    model_config = ConfigDict(extra='allow')

    pet_name: Optional[str] = None
    image: Optional[str] = None
    max_amount: Optional[float] = Field(None, allow_inf_nan=False)
    last_date: Optional[datetime] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    status: Optional[str] = None

class Payment(BaseModel):
    campaign_id: str
    payer_email: EmailStr
    donor_name: Optional[str] = None
    amount: float = Field(..., allow_inf_nan=False)
    payment_method: str
    transaction_id: str

# ========== Request bodies ==========

class StatusUpdate(BaseModel):
    status: str

class RoleUpdate(BaseModel):
    role: str

class BanUpdate(BaseModel):
    is_banned: bool

class AdoptedFlag(BaseModel):
    adopted: bool

class DonateRequest(BaseModel):
    amount: float = Field(..., allow_inf_nan=False)

class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount_in_cents: int = Field(..., alias='amountInCents')
    currency: str = 'usd'
