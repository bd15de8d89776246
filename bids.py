"""
Bid ledger for sale listings.

Bids on a listing form a strictly increasing sequence: the first must beat
the asking price, each later one must beat `last_bid`. At most one bid per
listing is ever accepted, and accepting it closes the listing.

Every read-then-write on a listing runs under that listing's lock and uses a
guarded `find_one_and_update`, so concurrent requests (or processes sharing
the database) cannot store a non-increasing `last_bid` or accept twice.

Accepting a bid writes in this order:

1. the listing is claimed in one guarded write (status sold, bidding
   completed, final_price, accepted_bid);
2. the other bids are set to rejected;
3. the chosen bid is set to accepted.

Between steps 1 and 3 other readers may see a sold listing whose bids are
still pending. They never see an accepted bid on an unsold listing. If step
2 or 3 fails the listing and its bids are put back as they were before the
claim and the caller gets `Internal`.
"""

import logging
import math
from typing import Any, List

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from database import BIDS, LISTINGS, Database, as_utc, now_utc, object_id, serialize
from errors import Internal, InvalidInput, InvalidState
from listings import LISTING, require_owner
from schemas import TERMINAL_STATUSES, AcceptBidRequest, Bid, Identity, PlaceBidRequest

logger = logging.getLogger(__name__)


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def parse_amount(value: Any) -> float:
    if isinstance(value, bool):
        raise InvalidInput("Invalid bid amount")
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise InvalidInput("Invalid bid amount")
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidInput("Invalid bid amount")
    return amount


class BidLedger:
    def __init__(self, database: Database, clock=now_utc):
        self.database = database
        self.clock = clock

    @property
    def bids(self):
        return self.database[BIDS]

    @property
    def listings(self):
        return self.database[LISTINGS]

    def _check_biddable(self, listing: dict) -> None:
        if not listing.get("bidding_enabled"):
            raise InvalidState("Bidding is not enabled for this item")
        if listing.get("status") in TERMINAL_STATUSES:
            raise InvalidState(f"Item is already {listing['status']}")
        if listing.get("bidding_status", "active") != "active":
            raise InvalidState("Bidding is no longer active for this item")
        end_time = as_utc(listing.get("bidding_end_time"))
        if end_time is not None and end_time <= self.clock():
            raise InvalidState("Bidding has ended for this item")

    def place_bid(self, req: PlaceBidRequest) -> dict:
        """
        Record a new highest bid.

        Returns `{"bid": ..., "minimum_next_bid": ...}`.
        """
        listing_oid = object_id(req.listing_id, LISTING)
        listing_id = str(listing_oid)

        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            self._check_biddable(listing)
            amount = parse_amount(req.amount)

            is_first_bid = self.bids.find_one({"ewaste": listing_id}) is None
            if is_first_bid:
                price = listing.get("price") or 0
                if amount <= price:
                    raise InvalidInput(
                        f"First bid must be greater than the item price. Minimum bid: ₹{_fmt(price + 1)}"
                    )
            else:
                last_bid = listing.get("last_bid") or 0
                if amount <= last_bid:
                    raise InvalidInput(
                        f"Bid amount must be greater than the current highest bid (₹{_fmt(last_bid)})"
                    )

            previous = listing.get("last_bid")
            updated = self.listings.find_one_and_update(
                {
                    "_id": listing_oid,
                    "bidding_status": "active",
                    "status": {"$nin": list(TERMINAL_STATUSES)},
                    "$or": [{"last_bid": None}, {"last_bid": {"$lt": amount}}],
                },
                {"$set": {"last_bid": amount, "updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise InvalidState("A higher bid was placed for this item, please refresh and bid again")

            bid = Bid(
                ewaste=listing_id,
                bidder=req.bidder.user_id,
                bidder_wallet=req.bidder.wallet_address,
                bidder_name=req.bidder.name,
                amount=amount,
            )
            try:
                bid_id = self.database.create_document(BIDS, bid)
            except PyMongoError as e:
                logger.exception("Failed to store bid on %s: %s", listing_id, e)
                self.listings.update_one(
                    {"_id": listing_oid, "last_bid": amount},
                    {"$set": {"last_bid": previous}},
                )
                raise Internal("Failed to place bid") from e
            stored = self.bids.find_one({"_id": ObjectId(bid_id)})

        logger.info("Bid %s placed on %s by %s: %s", bid_id, listing_id, req.bidder.wallet_address, amount)
        return {"bid": serialize(stored), "minimum_next_bid": amount + 1}

    def accept_bid(self, req: AcceptBidRequest) -> dict:
        bid = self.database.get_by_id(BIDS, req.bid_id, "Bid")
        bid_oid = bid["_id"]
        listing_oid = object_id(bid["ewaste"], LISTING)
        listing_id = str(listing_oid)

        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            require_owner(listing, req.caller, "You are not authorized to accept bids on this item")

            already = listing.get("accepted_bid") or self.bids.find_one(
                {"ewaste": listing_id, "status": "accepted"}
            )
            if already:
                raise InvalidState("A bid has already been accepted for this item")
            if listing.get("status") in TERMINAL_STATUSES:
                raise InvalidState(f"Item is already {listing['status']}")

            stamp = now_utc()
            amount = bid["amount"]
            claimed = self.listings.find_one_and_update(
                {"_id": listing_oid, "accepted_bid": None, "bidding_status": {"$ne": "completed"}},
                {
                    "$set": {
                        "status": "sold",
                        "bidding_status": "completed",
                        "final_price": amount,
                        "accepted_bid": str(bid_oid),
                        "updated_at": stamp,
                    },
                    "$push": {"status_history": {"status": "sold", "timestamp": stamp}},
                },
                return_document=ReturnDocument.AFTER,
            )
            if claimed is None:
                raise InvalidState("A bid has already been accepted for this item")

            try:
                self.bids.update_many(
                    {"ewaste": listing_id, "_id": {"$ne": bid_oid}},
                    {"$set": {"status": "rejected", "updated_at": stamp}},
                )
                self.bids.update_one(
                    {"_id": bid_oid},
                    {"$set": {"status": "accepted", "updated_at": stamp}},
                )
            except PyMongoError as e:
                logger.exception("Failed to settle bids on %s, restoring listing: %s", listing_id, e)
                self._restore_listing(listing)
                raise Internal("Failed to accept bid") from e

        logger.info("Bid %s accepted on %s for %s", bid_oid, listing_id, amount)
        return {
            "bid": serialize(self.bids.find_one({"_id": bid_oid})),
            "ewaste": serialize(claimed),
        }

    def _restore_listing(self, listing: dict) -> None:
        # only pending bids exist before the first acceptance
        self.listings.update_one(
            {"_id": listing["_id"]},
            {"$set": {
                "status": listing.get("status", "pending"),
                "bidding_status": listing.get("bidding_status", "active"),
                "final_price": listing.get("final_price"),
                "accepted_bid": None,
                "status_history": listing.get("status_history", []),
            }},
        )
        self.bids.update_many({"ewaste": str(listing["_id"])}, {"$set": {"status": "pending"}})

    def list_bids(self, listing_id: str) -> List[dict]:
        listing_oid = object_id(listing_id, LISTING)
        return self.database.get_documents(
            BIDS, {"ewaste": str(listing_oid)}, sort=[("amount", DESCENDING), ("created_at", DESCENDING)]
        )

    def list_all_bids(self) -> List[dict]:
        return self.database.get_documents(BIDS, sort=[("created_at", DESCENDING)])

    def stop_bidding(self, listing_id: str, caller: Identity) -> dict:
        listing_oid = object_id(listing_id, LISTING)
        with self.database.listing_lock(listing_oid):
            listing = self.database.get_by_id(LISTINGS, listing_oid, LISTING)
            require_owner(listing, caller, "You are not authorized to update this item")

            if listing.get("donation_or_sale") != "sell" or not listing.get("bidding_enabled"):
                raise InvalidState("Bidding is not enabled for this item")
            current = listing.get("bidding_status", "active")
            if current == "completed":
                raise InvalidState("Bidding has already completed for this item")
            if current == "stopped":
                return serialize(listing)

            updated = self.listings.find_one_and_update(
                {"_id": listing_oid, "bidding_status": "active"},
                {"$set": {"bidding_status": "stopped", "updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise InvalidState("Bidding is no longer active for this item")

        logger.info("Bidding stopped on %s by %s", listing_id, caller.wallet_address)
        return serialize(updated)
