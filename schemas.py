"""
Database Schemas for the E-Waste Marketplace

Each document model maps to one MongoDB collection:

- User            -> user
- Listing         -> ewaste
- Bid             -> bid
- DonationRequest -> donation_request

Request models further down are the typed inputs of the core operations and
of the HTTP bodies.
"""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

DonationOrSale = Literal["donate", "sell"]
ListingStatus = Literal["pending", "approved", "rejected", "sold", "donated"]
BiddingStatus = Literal["active", "stopped", "completed"]
OfferStatus = Literal["pending", "accepted", "rejected"]

# Statuses a caller may set through the status endpoint
SETTABLE_STATUSES = ("pending", "approved", "rejected", "sold")
TERMINAL_STATUSES = ("sold", "donated")

DEFAULT_DONATION_MESSAGE = "Interested in this donation"


# ---------- Core Domain Schemas ----------

class User(BaseModel):
    name: str = Field(..., description="Display name")
    email: Optional[str] = Field(None, description="Contact email")
    wallet_address: str = Field(..., description="Wallet address used as the caller identity")
    recycled_items: List[str] = Field(default_factory=list, description="Ids of listings posted by this user")
    is_admin: bool = Field(False, description="May moderate listing status")


class StatusEntry(BaseModel):
    status: str
    timestamp: datetime


class Listing(BaseModel):
    user: str = Field(..., description="Owner user id (stringified ObjectId)")
    wallet_address: str = Field(..., description="Owner wallet address")
    owner_name: Optional[str] = None
    item_name: str
    category: str
    condition: str
    weight: float = Field(..., gt=0, description="Weight in kg")
    quantity: int = Field(..., gt=0)
    location: str
    donation_or_sale: DonationOrSale
    price: Optional[float] = Field(None, description="Asking price, sale items only")
    bidding_enabled: bool = False
    bidding_end_time: Optional[datetime] = None
    bidding_status: BiddingStatus = "active"
    last_bid: Optional[float] = Field(None, description="Highest bid placed so far")
    final_price: Optional[float] = None
    status: ListingStatus = "pending"
    status_history: List[StatusEntry] = Field(default_factory=list)
    image_url: str


class Bid(BaseModel):
    ewaste: str = Field(..., description="Listing id")
    bidder: str = Field(..., description="Bidder user id")
    bidder_wallet: str
    bidder_name: Optional[str] = None
    amount: float = Field(..., gt=0)
    status: OfferStatus = "pending"


class DonationRequest(BaseModel):
    ewaste: str = Field(..., description="Listing id")
    requester: str = Field(..., description="Requester user id")
    requester_wallet: str
    requester_name: Optional[str] = None
    message: str = DEFAULT_DONATION_MESSAGE
    status: OfferStatus = "pending"


# ---------- Operation inputs ----------

class Identity(BaseModel):
    """The authenticated caller as resolved from the wallet header."""
    user_id: str
    wallet_address: str
    name: Optional[str] = None
    is_admin: bool = False


class ListingCreate(BaseModel):
    item_name: str
    category: str
    condition: str
    weight: float = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    location: str
    donation_or_sale: DonationOrSale
    price: Optional[float] = Field(None, gt=0)
    bidding_enabled: bool = False
    bidding_end_time: Optional[datetime] = None


class PlaceBidRequest(BaseModel):
    listing_id: str
    bidder: Identity
    amount: Union[float, str, None] = None


class AcceptBidRequest(BaseModel):
    bid_id: str
    caller: Identity


class CreateDonationRequest(BaseModel):
    listing_id: str
    requester: Identity
    message: Optional[str] = None


class AcceptDonationRequest(BaseModel):
    request_id: str
    caller: Identity


class UpdateStatusRequest(BaseModel):
    listing_id: str
    caller: Identity
    status: str


# ---------- HTTP bodies ----------

class RegisterRequest(BaseModel):
    name: str
    wallet_address: str
    email: Optional[str] = None


class BidBody(BaseModel):
    amount: Union[float, str, None] = None


class DonationRequestBody(BaseModel):
    message: Optional[str] = None


class StatusUpdateBody(BaseModel):
    status: Optional[str] = None
    bidding_status: Optional[str] = None
