from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from bids import BidLedger
from config import Settings
from database import USERS, Database, now_utc
from donations import DonationLedger
from listings import ListingController
from main import create_app
from schemas import Identity, User


class FakeStorage:
    def __init__(self):
        self.uploads = []

    def upload(self, data: bytes, filename=None) -> str:
        self.uploads.append((filename, data))
        return f"https://images.test/{len(self.uploads)}.jpg"


def make_user(database: Database, name: str, wallet: str, is_admin: bool = False) -> Identity:
    user_id = database.create_document(USERS, User(name=name, wallet_address=wallet, is_admin=is_admin))
    return Identity(user_id=user_id, wallet_address=wallet, name=name, is_admin=is_admin)


def sale_attrs(**overrides) -> dict:
    attrs = {
        "item_name": "Old laptop",
        "category": "Computers",
        "condition": "Used",
        "weight": "2.5",
        "quantity": "1",
        "location": "Pune",
        "donation_or_sale": "sell",
        "price": "100",
        "bidding_enabled": "true",
        "bidding_end_time": (now_utc() + timedelta(days=1)).isoformat(),
    }
    attrs.update(overrides)
    return attrs


def donate_attrs(**overrides) -> dict:
    attrs = {
        "item_name": "CRT monitor",
        "category": "Displays",
        "condition": "Working",
        "weight": "12",
        "quantity": "2",
        "location": "Delhi",
        "donation_or_sale": "donate",
    }
    attrs.update(overrides)
    return attrs


@pytest.fixture
def database():
    return Database(mongomock.MongoClient()["ewaste_test"])


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def owner(database):
    return make_user(database, "Olivia", "0xowner")


@pytest.fixture
def bidder(database):
    return make_user(database, "Ben", "0xbidder")


@pytest.fixture
def other(database):
    return make_user(database, "Omar", "0xother")


@pytest.fixture
def listings(database, storage):
    return ListingController(database, storage)


@pytest.fixture
def ledger(database):
    return BidLedger(database)


@pytest.fixture
def donations(database):
    return DonationLedger(database)


@pytest.fixture
def sale_listing(listings, owner):
    return listings.create_listing(owner, sale_attrs(), b"jpeg-bytes", "laptop.jpg")


@pytest.fixture
def donate_listing(listings, owner):
    return listings.create_listing(owner, donate_attrs(), b"jpeg-bytes", "monitor.jpg")


@pytest.fixture
def client(database, storage):
    app = create_app(settings=Settings(ADMIN_WALLETS="0xadmin"), database=database, storage=storage)
    with TestClient(app) as c:
        yield c
