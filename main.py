import logging
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

from bids import BidLedger
from config import Settings
from database import USERS, Database, now_utc, serialize
from donations import DonationLedger
from errors import InvalidInput, MarketplaceError, NotFound, Unauthorized
from impact import impact_stats, leaderboard
from listings import ListingController
from schemas import (
    AcceptBidRequest, AcceptDonationRequest, BidBody, CreateDonationRequest,
    DonationRequestBody, Identity, PlaceBidRequest, RegisterRequest,
    StatusUpdateBody, UpdateStatusRequest, User,
)
from storage import ImageStorage

logger = logging.getLogger("ewaste")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


# ---------- Service wiring ----------
def get_database(request: Request) -> Database:
    return request.app.state.database


def get_listings(request: Request) -> ListingController:
    return request.app.state.listings


def get_bids(request: Request) -> BidLedger:
    return request.app.state.bids


def get_donations(request: Request) -> DonationLedger:
    return request.app.state.donations


# ---------- Identity ----------
def current_user(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    """Resolve the wallet address in the Authorization header to a known user."""
    wallet = (authorization or "").strip()
    if not wallet:
        raise Unauthorized("No wallet address provided")
    user = get_database(request)[USERS].find_one({"wallet_address": wallet})
    if not user:
        raise NotFound("User with this wallet address not found")
    admin_wallets = request.app.state.settings.admin_wallets
    return Identity(
        user_id=str(user["_id"]),
        wallet_address=wallet,
        name=user.get("name"),
        is_admin=bool(user.get("is_admin")) or wallet in admin_wallets,
    )


router = APIRouter(prefix="/api")


# ---------- Auth ----------
@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_database)):
    wallet = payload.wallet_address.strip()
    if not wallet:
        raise InvalidInput("Wallet address is required")
    if db[USERS].find_one({"wallet_address": wallet}):
        raise InvalidInput("Wallet address already registered")
    user = User(name=payload.name, email=payload.email, wallet_address=wallet)
    try:
        user_id = db.create_document(USERS, user)
    except DuplicateKeyError:
        raise InvalidInput("Wallet address already registered")
    return {"user": {"_id": user_id, "name": user.name, "email": user.email, "wallet_address": wallet}}


@router.get("/auth/me")
def me(user: Identity = Depends(current_user), db: Database = Depends(get_database)):
    return serialize(db.get_by_id(USERS, user.user_id, "User"))


# ---------- E-waste listings ----------
@router.post("/ewaste/create", status_code=201)
def create_ewaste(
    item_name: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    condition: Optional[str] = Form(None),
    weight: Optional[str] = Form(None),
    quantity: Optional[str] = Form(None),
    location: Optional[str] = Form(None),
    donation_or_sale: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    bidding_enabled: Optional[str] = Form(None),
    bidding_end_time: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: Identity = Depends(current_user),
    listings: ListingController = Depends(get_listings),
):
    attrs = {
        "item_name": item_name,
        "category": category,
        "condition": condition,
        "weight": weight,
        "quantity": quantity,
        "location": location,
        "donation_or_sale": donation_or_sale,
        "price": price,
        "bidding_enabled": bidding_enabled,
        "bidding_end_time": bidding_end_time,
    }
    image = file.file.read() if file is not None else None
    ewaste = listings.create_listing(user, attrs, image, file.filename if file is not None else None)
    return {"message": "E-Waste created successfully", "ewaste": ewaste}


@router.get("/ewaste/all")
def all_ewaste(listings: ListingController = Depends(get_listings)):
    return listings.list_listings()


@router.get("/ewaste/user-posts")
def user_posts(user: Identity = Depends(current_user), listings: ListingController = Depends(get_listings)):
    return listings.list_user_listings(user)


@router.get("/ewaste/impact-stats")
def get_impact_stats(db: Database = Depends(get_database)):
    return {"success": True, "stats": impact_stats(db)}


@router.get("/ewaste/{listing_id}")
def get_ewaste(listing_id: str, listings: ListingController = Depends(get_listings)):
    return listings.get_listing(listing_id)


@router.delete("/ewaste/{listing_id}")
def delete_ewaste(listing_id: str, user: Identity = Depends(current_user), listings: ListingController = Depends(get_listings)):
    listings.delete_listing(listing_id, user)
    return {"message": "E-Waste item deleted successfully"}


@router.patch("/ewaste/{listing_id}/status")
def update_ewaste_status(
    listing_id: str,
    data: StatusUpdateBody,
    user: Identity = Depends(current_user),
    listings: ListingController = Depends(get_listings),
    bids: BidLedger = Depends(get_bids),
):
    if data.bidding_status is not None:
        # bidding can only be closed by the owner, never reopened
        if data.bidding_status != "stopped":
            raise InvalidInput("Invalid bidding status")
        ewaste = bids.stop_bidding(listing_id, user)
        return {"message": "Bidding status updated successfully", "bidding_status": ewaste["bidding_status"]}
    if data.status is not None:
        ewaste = listings.update_status(UpdateStatusRequest(listing_id=listing_id, caller=user, status=data.status))
        return {"message": "E-Waste status updated successfully", "ewaste": ewaste}
    raise InvalidInput("Nothing to update")


@router.get("/ewaste/{listing_id}/bids")
def ewaste_bids(listing_id: str, _user: Identity = Depends(current_user), bids: BidLedger = Depends(get_bids)):
    return bids.list_bids(listing_id)


# ---------- Donation requests ----------
@router.get("/ewaste/{listing_id}/donation-requests")
def donation_requests(listing_id: str, _user: Identity = Depends(current_user), donations: DonationLedger = Depends(get_donations)):
    return donations.list_requests(listing_id)


@router.post("/ewaste/{listing_id}/donation-request", status_code=201)
def create_donation_request(
    listing_id: str,
    data: Optional[DonationRequestBody] = None,
    user: Identity = Depends(current_user),
    donations: DonationLedger = Depends(get_donations),
):
    request = donations.create_request(CreateDonationRequest(
        listing_id=listing_id,
        requester=user,
        message=data.message if data else None,
    ))
    return {"message": "Donation request sent successfully", "donation_request": request}


@router.post("/ewaste/donation-request/{request_id}/accept")
def accept_donation_request(request_id: str, user: Identity = Depends(current_user), donations: DonationLedger = Depends(get_donations)):
    result = donations.accept_request(AcceptDonationRequest(request_id=request_id, caller=user))
    return {"message": "Donation request accepted", **result}


# ---------- Bids ----------
@router.post("/ewaste/bid/{bid_id}/accept")
@router.post("/bid/{bid_id}/accept")
def accept_bid(bid_id: str, user: Identity = Depends(current_user), bids: BidLedger = Depends(get_bids)):
    result = bids.accept_bid(AcceptBidRequest(bid_id=bid_id, caller=user))
    return {"message": "Bid accepted", **result}


@router.post("/bid/{listing_id}", status_code=201)
def place_bid(listing_id: str, data: BidBody, user: Identity = Depends(current_user), bids: BidLedger = Depends(get_bids)):
    result = bids.place_bid(PlaceBidRequest(listing_id=listing_id, bidder=user, amount=data.amount))
    return {"message": "Bid placed successfully", **result}


@router.get("/bid/{listing_id}")
def list_bids(listing_id: str, bids: BidLedger = Depends(get_bids)):
    return bids.list_bids(listing_id)


@router.get("/bid")
def list_all_bids(bids: BidLedger = Depends(get_bids)):
    return bids.list_all_bids()


# ---------- Dashboard ----------
@router.get("/dashboard/leaderboard")
def get_leaderboard(db: Database = Depends(get_database)):
    return {"success": True, "users": leaderboard(db)}


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    storage: Optional[ImageStorage] = None,
) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database.connect(settings.DATABASE_URL, settings.DATABASE_NAME)
        db.ensure_indexes()
        app.state.database = db
        app.state.listings = ListingController(db, storage or ImageStorage(settings))
        app.state.bids = BidLedger(db)
        app.state.donations = DonationLedger(db)
        logger.info("E-Waste marketplace API started")
        try:
            yield
        finally:
            # injected databases belong to the caller
            if database is None:
                db.close()

    app = FastAPI(title="E-Waste Marketplace API", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_logger(request: Request, call_next):
        rid = uuid.uuid4().hex[:8]
        request.state.rid = rid
        logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
        try:
            resp = await call_next(request)
        except Exception as e:
            logger.exception("Unhandled error rid=%s: %s", rid, e)
            resp = JSONResponse({"error": "Something went wrong!", "rid": rid}, status_code=500)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp

    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(PyMongoError)
    async def database_error(request: Request, exc: PyMongoError):
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse({"error": "Database error"}, status_code=500)

    @app.get("/")
    def health():
        return {"status": "ok", "service": "ewaste-marketplace", "time": now_utc().isoformat()}

    @app.get("/test")
    def test_database(request: Request):
        resp = {"backend": "ok", "db": "not configured"}
        db = getattr(request.app.state, "database", None)
        if db is not None:
            try:
                resp["collections"] = db.db.list_collection_names()
                resp["db"] = "connected"
            except PyMongoError as e:
                resp["db_error"] = str(e)
        return resp

    app.include_router(router)
    return app


settings = Settings()
configure_logging(settings.LOG_LEVEL)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
