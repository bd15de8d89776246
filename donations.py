"""Donation requests against donate-type listings."""

import logging
from typing import List

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from database import DONATION_REQUESTS, LISTINGS, Database, now_utc, object_id, serialize
from errors import Internal, InvalidState
from listings import LISTING, require_owner
from schemas import DEFAULT_DONATION_MESSAGE, AcceptDonationRequest, CreateDonationRequest, DonationRequest

logger = logging.getLogger(__name__)


class DonationLedger:
    def __init__(self, database: Database):
        self.database = database

    @property
    def requests(self):
        return self.database[DONATION_REQUESTS]

    @property
    def listings(self):
        return self.database[LISTINGS]

    def create_request(self, req: CreateDonationRequest) -> dict:
        listing_oid = object_id(req.listing_id, LISTING)
        listing_id = str(listing_oid)

        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            if listing.get("donation_or_sale") != "donate":
                raise InvalidState("This item is not available for donation")
            if listing.get("wallet_address") == req.requester.wallet_address:
                raise InvalidState("You cannot request your own donation item")
            if listing.get("status") == "donated":
                raise InvalidState("This item has already been donated")

            existing = self.requests.find_one({
                "ewaste": listing_id,
                "requester": req.requester.user_id,
                "status": "pending",
            })
            if existing:
                raise InvalidState("You already have a pending request for this item")

            request = DonationRequest(
                ewaste=listing_id,
                requester=req.requester.user_id,
                requester_wallet=req.requester.wallet_address,
                requester_name=req.requester.name,
                message=req.message or DEFAULT_DONATION_MESSAGE,
            )
            request_id = self.database.create_document(DONATION_REQUESTS, request)

        logger.info("Donation request %s on %s from %s", request_id, listing_id, req.requester.wallet_address)
        return serialize(self.requests.find_one({"_id": ObjectId(request_id)}))

    def accept_request(self, req: AcceptDonationRequest) -> dict:
        request = self.database.get_by_id(DONATION_REQUESTS, req.request_id, "Request")
        request_oid = request["_id"]
        listing_oid = object_id(request["ewaste"], LISTING)
        listing_id = str(listing_oid)

        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            require_owner(listing, req.caller, "You are not authorized to accept requests on this item")

            request = self.requests.find_one({"_id": request_oid})
            already = listing.get("accepted_request") or self.requests.find_one(
                {"ewaste": listing_id, "status": "accepted"}
            )
            if already or listing.get("status") == "donated":
                raise InvalidState("A donation request has already been accepted for this item")
            if request["status"] != "pending":
                raise InvalidState("Only pending requests can be accepted")

            stamp = now_utc()
            claimed = self.listings.find_one_and_update(
                {"_id": listing_oid, "accepted_request": None, "status": {"$ne": "donated"}},
                {
                    "$set": {"status": "donated", "accepted_request": str(request_oid), "updated_at": stamp},
                    "$push": {"status_history": {"status": "donated", "timestamp": stamp}},
                },
                return_document=ReturnDocument.AFTER,
            )
            if claimed is None:
                raise InvalidState("A donation request has already been accepted for this item")

            try:
                self.requests.update_many(
                    {"ewaste": listing_id, "status": "pending", "_id": {"$ne": request_oid}},
                    {"$set": {"status": "rejected", "updated_at": stamp}},
                )
                self.requests.update_one(
                    {"_id": request_oid},
                    {"$set": {"status": "accepted", "updated_at": stamp}},
                )
            except PyMongoError as e:
                logger.exception("Failed to settle donation requests on %s, restoring listing: %s", listing_id, e)
                self.listings.update_one(
                    {"_id": listing_oid},
                    {"$set": {
                        "status": listing.get("status", "pending"),
                        "accepted_request": None,
                        "status_history": listing.get("status_history", []),
                    }},
                )
                # requests are only ever rejected by an acceptance
                self.requests.update_many(
                    {"ewaste": listing_id, "status": {"$in": ["accepted", "rejected"]}},
                    {"$set": {"status": "pending"}},
                )
                raise Internal("Failed to accept donation request") from e

        logger.info("Donation request %s accepted on %s", request_oid, listing_id)
        return {
            "donation_request": serialize(self.requests.find_one({"_id": request_oid})),
            "ewaste": serialize(claimed),
        }

    def list_requests(self, listing_id: str) -> List[dict]:
        listing_oid = object_id(listing_id, LISTING)
        return self.database.get_documents(
            DONATION_REQUESTS, {"ewaste": str(listing_oid)}, sort=[("created_at", DESCENDING)]
        )
