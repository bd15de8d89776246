import random
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from pymongo.errors import PyMongoError

from bids import BidLedger
from database import BIDS, LISTINGS, now_utc, object_id
from errors import Forbidden, Internal, InvalidInput, InvalidState, MarketplaceError, NotFound
from schemas import AcceptBidRequest, PlaceBidRequest
from tests.conftest import sale_attrs


def bid(ledger, listing, who, amount):
    return ledger.place_bid(PlaceBidRequest(listing_id=listing["_id"], bidder=who, amount=amount))


def test_first_bid_must_beat_price_then_last_bid(ledger, sale_listing, bidder, other, database):
    with pytest.raises(InvalidInput) as exc:
        bid(ledger, sale_listing, bidder, 100)
    assert "Minimum bid: ₹101" in exc.value.message

    result = bid(ledger, sale_listing, bidder, 150)
    assert result["minimum_next_bid"] == 151
    assert result["bid"]["amount"] == 150
    assert result["bid"]["status"] == "pending"
    listing = database[LISTINGS].find_one({"_id": object_id(sale_listing["_id"])})
    assert listing["last_bid"] == 150

    with pytest.raises(InvalidInput) as exc:
        bid(ledger, sale_listing, other, 150)
    assert "current highest bid (₹150)" in exc.value.message

    result = bid(ledger, sale_listing, other, "200")
    assert result["minimum_next_bid"] == 201
    listing = database[LISTINGS].find_one({"_id": object_id(sale_listing["_id"])})
    assert listing["last_bid"] == 200


@pytest.mark.parametrize("amount", ["abc", "", None, "-5", "0", "nan", "inf", True])
def test_invalid_amount_rejected(ledger, sale_listing, bidder, amount):
    with pytest.raises(InvalidInput):
        bid(ledger, sale_listing, bidder, amount)


def test_bidding_not_enabled(listings, ledger, owner, bidder):
    listing = listings.create_listing(owner, sale_attrs(bidding_enabled="false"), b"img")
    with pytest.raises(InvalidState) as exc:
        bid(ledger, listing, bidder, 500)
    assert exc.value.message == "Bidding is not enabled for this item"


def test_bidding_ended(database, sale_listing, bidder):
    later = BidLedger(database, clock=lambda: now_utc() + timedelta(days=2))
    with pytest.raises(InvalidState) as exc:
        bid(later, sale_listing, bidder, 500)
    assert exc.value.message == "Bidding has ended for this item"


def test_unknown_or_malformed_listing(ledger, bidder):
    with pytest.raises(NotFound):
        ledger.place_bid(PlaceBidRequest(listing_id="not-an-id", bidder=bidder, amount=10))
    with pytest.raises(NotFound):
        ledger.place_bid(PlaceBidRequest(listing_id="0" * 24, bidder=bidder, amount=10))


def test_accept_bid_closes_listing(ledger, sale_listing, owner, bidder, other, database):
    low = bid(ledger, sale_listing, bidder, 150)["bid"]
    high = bid(ledger, sale_listing, other, 200)["bid"]

    result = ledger.accept_bid(AcceptBidRequest(bid_id=high["_id"], caller=owner))
    assert result["bid"]["status"] == "accepted"
    assert result["ewaste"]["status"] == "sold"
    assert result["ewaste"]["bidding_status"] == "completed"
    assert result["ewaste"]["final_price"] == 200
    assert result["ewaste"]["status_history"][-1]["status"] == "sold"

    statuses = {str(b["_id"]): b["status"] for b in database[BIDS].find()}
    assert statuses == {high["_id"]: "accepted", low["_id"]: "rejected"}

    with pytest.raises(InvalidState):
        ledger.accept_bid(AcceptBidRequest(bid_id=low["_id"], caller=owner))
    with pytest.raises(InvalidState):
        ledger.accept_bid(AcceptBidRequest(bid_id=high["_id"], caller=owner))
    assert database[BIDS].count_documents({"status": "accepted"}) == 1

    # no further bids once the sale is completed
    with pytest.raises(InvalidState):
        bid(ledger, sale_listing, bidder, 1000)


def test_only_owner_accepts_bid(ledger, sale_listing, bidder, other):
    placed = bid(ledger, sale_listing, bidder, 150)["bid"]
    with pytest.raises(Forbidden):
        ledger.accept_bid(AcceptBidRequest(bid_id=placed["_id"], caller=other))
    with pytest.raises(Forbidden):
        ledger.accept_bid(AcceptBidRequest(bid_id=placed["_id"], caller=bidder))


def test_accept_unknown_bid(ledger, owner):
    with pytest.raises(NotFound):
        ledger.accept_bid(AcceptBidRequest(bid_id="0" * 24, caller=owner))


def test_list_bids_highest_first(ledger, sale_listing, bidder, other):
    for who, amount in [(bidder, 120), (other, 130), (bidder, 175)]:
        bid(ledger, sale_listing, who, amount)
    bids = ledger.list_bids(sale_listing["_id"])
    assert [b["amount"] for b in bids] == [175, 130, 120]
    assert bids[0]["bidder_wallet"] == "0xbidder"
    assert bids[1]["bidder_name"] == "Omar"
    assert len(ledger.list_all_bids()) == 3


def test_stop_bidding(ledger, sale_listing, owner, bidder):
    with pytest.raises(Forbidden):
        ledger.stop_bidding(sale_listing["_id"], bidder)

    stopped = ledger.stop_bidding(sale_listing["_id"], owner)
    assert stopped["bidding_status"] == "stopped"
    # stopping again is a no-op
    assert ledger.stop_bidding(sale_listing["_id"], owner)["bidding_status"] == "stopped"

    with pytest.raises(InvalidState) as exc:
        bid(ledger, sale_listing, bidder, 500)
    assert exc.value.message == "Bidding is no longer active for this item"


def test_stop_bidding_after_sale(ledger, sale_listing, owner, bidder):
    placed = bid(ledger, sale_listing, bidder, 150)["bid"]
    ledger.accept_bid(AcceptBidRequest(bid_id=placed["_id"], caller=owner))
    with pytest.raises(InvalidState):
        ledger.stop_bidding(sale_listing["_id"], owner)


def test_stop_bidding_on_donation(ledger, donate_listing, owner):
    with pytest.raises(InvalidState):
        ledger.stop_bidding(donate_listing["_id"], owner)


def test_concurrent_bids_stay_strictly_increasing(ledger, sale_listing, bidder, database):
    amounts = list(range(101, 161))
    random.Random(7).shuffle(amounts)

    def attempt(amount):
        try:
            return bid(ledger, sale_listing, bidder, amount)["bid"]["amount"]
        except MarketplaceError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        accepted = [a for a in pool.map(attempt, amounts) if a is not None]

    stored = [b["amount"] for b in database[BIDS].find({"ewaste": sale_listing["_id"]}).sort("_id", 1)]
    assert sorted(stored) == sorted(accepted)
    assert all(a < b for a, b in zip(stored, stored[1:]))
    listing = database[LISTINGS].find_one({"_id": object_id(sale_listing["_id"])})
    assert listing["last_bid"] == max(stored)


class FailingAccept:
    """Bid collection whose single-bid update fails."""

    def __init__(self, inner):
        self.inner = inner

    def update_one(self, *args, **kwargs):
        raise PyMongoError("write failed")

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_failed_settlement_restores_listing(monkeypatch, ledger, sale_listing, owner, bidder, other, database):
    low = bid(ledger, sale_listing, bidder, 150)["bid"]
    high = bid(ledger, sale_listing, other, 200)["bid"]
    monkeypatch.setattr(BidLedger, "bids", property(lambda self: FailingAccept(self.database[BIDS])))

    with pytest.raises(Internal):
        ledger.accept_bid(AcceptBidRequest(bid_id=high["_id"], caller=owner))

    listing = database[LISTINGS].find_one({"_id": object_id(sale_listing["_id"])})
    assert listing["status"] == "pending"
    assert listing["bidding_status"] == "active"
    assert listing["accepted_bid"] is None
    assert listing["final_price"] is None
    assert [h["status"] for h in listing["status_history"]] == ["pending"]
    statuses = {str(b["_id"]): b["status"] for b in database[BIDS].find()}
    assert statuses == {low["_id"]: "pending", high["_id"]: "pending"}

    monkeypatch.undo()
    result = ledger.accept_bid(AcceptBidRequest(bid_id=high["_id"], caller=owner))
    assert result["ewaste"]["status"] == "sold"
