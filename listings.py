"""
Listing lifecycle: creation, lookups, moderation status, deletion.

status:          pending -> approved | rejected   (update_status)
                 * -> sold, bidding completed      (update_status)
                 approved -> sold                  (BidLedger.accept_bid)
                 approved -> donated               (DonationLedger.accept_request)
bidding_status:  active -> stopped                 (BidLedger.stop_bidding)
                 active -> completed               (BidLedger.accept_bid)
"""

import logging
from typing import List, Optional

from pydantic import ValidationError
from pymongo import DESCENDING, ReturnDocument

from database import LISTINGS, USERS, Database, now_utc, object_id, serialize
from errors import Forbidden, InvalidInput, InvalidState
from schemas import (
    SETTABLE_STATUSES,
    TERMINAL_STATUSES,
    Identity,
    Listing,
    ListingCreate,
    UpdateStatusRequest,
)
from storage import ImageStorage

logger = logging.getLogger(__name__)

LISTING = "E-Waste item"

REQUIRED_FIELDS = ("item_name", "category", "condition", "weight", "quantity", "location", "donation_or_sale")


def require_owner(listing: dict, caller: Identity, message: str) -> None:
    if listing.get("wallet_address") != caller.wallet_address:
        logger.warning(
            "Unauthorized attempt on listing %s by %s (owner %s)",
            listing["_id"], caller.wallet_address, listing.get("wallet_address"),
        )
        raise Forbidden(message)


def _blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"Invalid value for {field}: {err.get('msg')}"


class ListingController:
    def __init__(self, database: Database, storage: ImageStorage):
        self.database = database
        self.storage = storage

    @property
    def listings(self):
        return self.database[LISTINGS]

    def create_listing(self, owner: Identity, attrs: dict, image: Optional[bytes], filename: Optional[str] = None) -> dict:
        if any(_blank(attrs.get(f)) for f in REQUIRED_FIELDS):
            raise InvalidInput("Missing required fields")

        fields = {k: v for k, v in attrs.items() if not _blank(v)}
        try:
            data = ListingCreate(**fields)
        except ValidationError as e:
            raise InvalidInput(_validation_message(e))

        if data.donation_or_sale == "sell" and data.price is None:
            raise InvalidInput("Price is required for selling")
        # bidding only applies to sale items
        bidding_enabled = data.bidding_enabled and data.donation_or_sale == "sell"
        if bidding_enabled and data.bidding_end_time is None:
            raise InvalidInput("Bidding end time is required if bidding is enabled")
        if not image:
            raise InvalidInput("No image file provided")

        image_url = self.storage.upload(image, filename)

        listing = Listing(
            user=owner.user_id,
            wallet_address=owner.wallet_address,
            owner_name=owner.name,
            item_name=data.item_name,
            category=data.category,
            condition=data.condition,
            weight=data.weight,
            quantity=data.quantity,
            location=data.location,
            donation_or_sale=data.donation_or_sale,
            price=data.price if data.donation_or_sale == "sell" else None,
            bidding_enabled=bidding_enabled,
            bidding_end_time=data.bidding_end_time if bidding_enabled else None,
            image_url=image_url,
            status_history=[{"status": "pending", "timestamp": now_utc()}],
        )
        listing_id = self.database.create_document(LISTINGS, listing)
        self.database[USERS].update_one(
            {"_id": object_id(owner.user_id, "User")},
            {"$push": {"recycled_items": listing_id}, "$set": {"updated_at": now_utc()}},
        )
        logger.info("Listing %s created by %s (%s)", listing_id, owner.wallet_address, data.donation_or_sale)
        return self.get_listing(listing_id)

    def get_listing(self, listing_id: str) -> dict:
        return serialize(self.database.get_by_id(LISTINGS, listing_id, LISTING))

    def list_listings(self) -> List[dict]:
        return self.database.get_documents(LISTINGS, sort=[("created_at", DESCENDING)])

    def list_user_listings(self, owner: Identity) -> List[dict]:
        return self.database.get_documents(
            LISTINGS, {"wallet_address": owner.wallet_address}, sort=[("created_at", DESCENDING)]
        )

    def update_status(self, req: UpdateStatusRequest) -> dict:
        if req.status not in SETTABLE_STATUSES:
            raise InvalidInput("Invalid status")

        listing_oid = object_id(req.listing_id, LISTING)
        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            if not req.caller.is_admin:
                require_owner(listing, req.caller, "You are not authorized to update this item")

            current = listing.get("status", "pending")
            if current in TERMINAL_STATUSES:
                raise InvalidState(f"Item is already {current}")
            if current == req.status:
                return serialize(listing)

            stamp = now_utc()
            changes = {"status": req.status, "updated_at": stamp}
            if req.status == "sold":
                # a sale closed by hand takes no more bids
                changes["bidding_status"] = "completed"
            updated = self.listings.find_one_and_update(
                {"_id": listing_oid, "status": current},
                {
                    "$set": changes,
                    "$push": {"status_history": {"status": req.status, "timestamp": stamp}},
                },
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise InvalidState("Item status changed, please retry")

        logger.info("Listing %s status %s -> %s by %s", req.listing_id, current, req.status, req.caller.wallet_address)
        return serialize(updated)

    def delete_listing(self, listing_id: str, caller: Identity) -> None:
        listing_oid = object_id(listing_id, LISTING)
        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            require_owner(listing, caller, "You are not authorized to delete this item")
            self.listings.delete_one({"_id": listing_oid})

        self.database[USERS].update_one(
            {"wallet_address": caller.wallet_address},
            {"$pull": {"recycled_items": str(listing_oid)}},
        )
        logger.info("Listing %s deleted by %s", listing_id, caller.wallet_address)
