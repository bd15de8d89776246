"""
MongoDB access for the marketplace.

Each Pydantic document model in schemas.py is stored in the collection named
by the service that owns it (`user`, `ewaste`, `bid`, `donation_request`).
The `Database` object is constructed once by the app factory and handed to
every service; nothing here is a module-level connection.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import NotFound

logger = logging.getLogger(__name__)

USERS = "user"
LISTINGS = "ewaste"
BIDS = "bid"
DONATION_REQUESTS = "donation_request"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id(value: Any, label: str = "Document") -> ObjectId:
    """Parse a path id, treating malformed ids the same as missing ones."""
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise NotFound(f"{label} not found")
    return ObjectId(value)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])  # stringify
    return doc


class ListingLocks:
    """
    Registry of per-listing locks shared by the request worker threads.

    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class Database:
    def __init__(self, db, client: Optional[MongoClient] = None):
        self.db = db
        self.client = client
        self.locks = ListingLocks()

    @classmethod
    def connect(cls, url: str, name: str) -> "Database":
        client = MongoClient(url)
        logger.info("Connecting to MongoDB database %s", name)
        return cls(client[name], client)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            logger.info("MongoDB connection closed")

    def __getitem__(self, collection_name: str):
        return self.db[collection_name]

    def ensure_indexes(self) -> None:
        self.db[USERS].create_index("wallet_address", unique=True)
        self.db[LISTINGS].create_index([("wallet_address", ASCENDING), ("created_at", DESCENDING)])
        self.db[BIDS].create_index([("ewaste", ASCENDING), ("amount", DESCENDING)])
        self.db[DONATION_REQUESTS].create_index([("ewaste", ASCENDING), ("requester", ASCENDING), ("status", ASCENDING)])

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)
        stamp = now_utc()
        data_dict.setdefault("created_at", stamp)
        data_dict["updated_at"] = stamp
        result = self.db[collection_name].insert_one(data_dict)
        return str(result.inserted_id)

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Optional[dict] = None,
        sort: Optional[List[tuple]] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        cursor = self.db[collection_name].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize(doc) for doc in cursor]

    def get_by_id(self, collection_name: str, doc_id: Any, label: str) -> dict:
        doc = self.db[collection_name].find_one({"_id": object_id(doc_id, label)})
        if not doc:
            raise NotFound(f"{label} not found")
        return doc

    @contextmanager
    def listing_lock(self, listing_id: Any) -> Iterator[None]:
        with self.locks.hold(str(listing_id)):
            yield
