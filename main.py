import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pymongo import ReturnDocument
from pymongo.database import Database

import database
import realtime
from auth import CurrentUser, get_current_user, require_roles
from bidding import minimum_bid, place_bid
from database import create_document, get_db, get_documents, parse_object_id
from errors import AuctionError, AuctionLocked, AuctionNotFound, NotAuthorized, auction_error_handler
from lifecycle import (
    ACTIVE,
    ENDED,
    SCHEDULED,
    annotate_bids,
    end_auction,
    highest_bid,
    lags,
    mark_paid,
    resolve,
    resolve_status,
    status_filter,
    sweep,
    sync_status,
    utcnow,
)
from realtime import Broadcaster, get_broadcaster
from schemas import (
    Auction as AuctionSchema,
    AuctionStatus,
    Category,
    CreateAuctionRequest,
    PaymentStatus,
    PlaceBidRequest,
    UpdateAuctionRequest,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
        logger.info("indexes ensured on %s", database.db.name)
    yield


app = FastAPI(title="Live Auction API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(AuctionError, auction_error_handler)


def get_now() -> datetime:
    """Wall clock for the request; overridden in tests"""
    return utcnow()


def _auction_out(doc: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    a = resolve(doc, now)
    a["id"] = str(a.pop("_id"))
    a["is_live"] = a["status"] == ACTIVE
    a["has_ended"] = a["status"] == ENDED
    a["minimum_bid"] = minimum_bid(a)
    # the reserve is advisory: reported, never enforced
    reserve = a.get("reserve_price")
    a["reserve_met"] = reserve is None or (a.get("total_bids", 0) > 0 and a["current_price"] >= reserve)
    return a


def _bid_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    b = dict(doc)
    b["id"] = str(b.pop("_id"))
    return b


def _load_auction(db: Database, auction_id: str) -> Dict[str, Any]:
    oid = parse_object_id(auction_id)
    doc = db["auction"].find_one({"_id": oid})
    if not doc:
        raise AuctionNotFound(auction_id)
    return doc


def _check_owner(auction: Dict[str, Any], user: CurrentUser) -> None:
    if auction["seller_id"] != user.id and not user.is_admin:
        raise NotAuthorized("Not authorized to modify this auction")


def _announce_end(background_tasks: BackgroundTasks, hub: Broadcaster, auction: Dict[str, Any], now: datetime) -> None:
    auction_id = str(auction["_id"])
    event = realtime.auction_end(auction_id, auction.get("winner_id"), auction["current_price"], now)
    background_tasks.add_task(hub.publish, auction_id, event)


def _observe(db: Database, doc: Dict[str, Any], now: datetime, background_tasks: BackgroundTasks, hub: Broadcaster) -> Dict[str, Any]:
    """Persist a status a read found stale; the first reader after the end closes the auction"""
    if not lags(doc, now):
        return doc
    synced, ended_now = sync_status(db, doc["_id"], now)
    if ended_now:
        _announce_end(background_tasks, hub, synced, now)
    return synced


def _seller_summary(db: Database, auction: Dict[str, Any]) -> Dict[str, Any]:
    seller_id = auction["seller_id"]
    total = db["auction"].count_documents({"seller_id": seller_id})
    successful = db["auction"].count_documents(
        {"seller_id": seller_id, "status": ENDED, "payment_status": PaymentStatus.paid.value}
    )
    # share of paid-off listings on a five point scale, one decimal
    rating = min(5, math.floor(successful / total * 50 + 0.5) / 10) if total else None
    return {
        "id": seller_id,
        "name": auction.get("seller_name"),
        "rating": rating,
        "successful_auctions": successful,
    }


@app.get("/")
def read_root():
    return {"message": "Live Auction API is running"}


@app.get("/auctions")
def list_auctions(
    background_tasks: BackgroundTasks,
    status: Optional[AuctionStatus] = None,
    category: Optional[Category] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    """List auctions, optionally by resolved status and category"""
    filter_dict: Dict[str, Any] = {}
    if status:
        filter_dict.update(status_filter(status.value, now))
    if category:
        filter_dict["category"] = category.value

    total = db["auction"].count_documents(filter_dict)
    auctions = get_documents(
        "auction", filter_dict, limit, database=db, skip=(page - 1) * limit, sort=[("created_at", -1)]
    )
    auctions = [_observe(db, a, now, background_tasks, hub) for a in auctions]
    return {
        "auctions": [_auction_out(a, now) for a in auctions],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@app.get("/auctions/seller")
def list_seller_auctions(
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_roles("seller", "admin")),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    auctions = get_documents("auction", {"seller_id": user.id}, database=db, sort=[("created_at", -1)])
    auctions = [_observe(db, a, now, background_tasks, hub) for a in auctions]
    return {"auctions": [_auction_out(a, now) for a in auctions]}


@app.get("/auctions/recommended")
def recommended_auctions(
    limit: int = Query(4, ge=1, le=20),
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """Active auctions in the categories the caller bids in, most bid on first"""
    recent_bids = db["bid"].find({"bidder_id": user.id}).sort("created_at", -1).limit(10)
    bid_on = list({parse_object_id(b["auction_id"]) for b in recent_bids})
    categories = sorted({
        a["category"] for a in db["auction"].find({"_id": {"$in": bid_on}}, {"category": 1})
    })

    filter_dict = status_filter(ACTIVE, now)
    if categories:
        filter_dict["category"] = {"$in": categories}
    if bid_on:
        filter_dict["_id"] = {"$nin": bid_on}
    auctions = get_documents("auction", filter_dict, limit, database=db, sort=[("total_bids", -1)])
    return {"auctions": [_auction_out(a, now) for a in auctions]}


@app.post("/auctions", status_code=201)
def create_auction(
    payload: CreateAuctionRequest,
    user: CurrentUser = Depends(require_roles("seller", "admin")),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """Create a new auction"""
    data = AuctionSchema(
        seller_id=user.id,
        seller_name=user.name,
        title=payload.title,
        description=payload.description,
        category=payload.category,
        condition=payload.condition,
        images=payload.images,
        starting_price=payload.starting_price,
        current_price=payload.starting_price,
        bid_increment=payload.bid_increment,
        reserve_price=payload.reserve_price,
        start_time=payload.start_time,
        end_time=payload.end_time,
        status=resolve_status(now, payload.start_time, payload.end_time),
    )

    inserted_id = create_document("auction", data, database=db)
    logger.info("auction %s created by %s", inserted_id, user.id)
    doc = db["auction"].find_one({"_id": parse_object_id(inserted_id)})
    return {"id": inserted_id, "auction": _auction_out(doc, now)}


@app.get("/auctions/{auction_id}")
def get_auction(
    auction_id: str,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    """Auction with its status resolved against now, recent bids and seller standing"""
    doc = _observe(db, _load_auction(db, auction_id), now, background_tasks, hub)
    key = str(doc["_id"])

    winning = highest_bid(db, key)
    recent = list(db["bid"].find({"auction_id": key}).sort("created_at", -1).limit(10))
    recent_bids = [_bid_out(b) for b in annotate_bids(recent, doc, winning, now)]
    auction = _auction_out(doc, now)
    auction["seller"] = _seller_summary(db, doc)
    return {"auction": auction, "recent_bids": recent_bids}


@app.put("/auctions/{auction_id}")
def update_auction(
    auction_id: str,
    payload: UpdateAuctionRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_roles("seller", "admin")),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    """Edit a listing; only allowed before the auction starts"""
    auction = _load_auction(db, auction_id)
    _check_owner(auction, user)
    if resolve_status(now, auction["start_time"], auction["end_time"], auction.get("status")) != SCHEDULED:
        raise AuctionLocked("Cannot update auction that has started or ended")

    updates = payload.model_dump(exclude_unset=True, mode="json")
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    changes = dict(updates)
    if "starting_price" in changes:
        changes["current_price"] = changes["starting_price"]
    changes["updated_at"] = now

    updated = db["auction"].find_one_and_update(
        {"_id": auction["_id"], **status_filter(SCHEDULED, now)},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise AuctionLocked("Cannot update auction that has started or ended")

    key = str(updated["_id"])
    background_tasks.add_task(hub.publish, key, realtime.product_update(key, updates, now))
    if "images" in updates:
        background_tasks.add_task(hub.publish, key, realtime.image_update(key, updates["images"], now))
    return {"message": "Auction updated successfully", "auction": _auction_out(updated, now)}


@app.delete("/auctions/{auction_id}")
def delete_auction(
    auction_id: str,
    user: CurrentUser = Depends(require_roles("seller", "admin")),
    db: Database = Depends(get_db),
):
    auction = _load_auction(db, auction_id)
    _check_owner(auction, user)
    if db["bid"].count_documents({"auction_id": str(auction["_id"])}) > 0:
        raise AuctionLocked("Cannot delete auction with existing bids")

    result = db["auction"].delete_one({"_id": auction["_id"], "total_bids": 0})
    if result.deleted_count == 0:
        raise AuctionLocked("Cannot delete auction with existing bids")
    logger.info("auction %s deleted by %s", auction["_id"], user.id)
    return {"message": "Auction deleted successfully"}


@app.post("/auctions/{auction_id}/bids", status_code=201)
def submit_bid(
    auction_id: str,
    payload: PlaceBidRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    """Place a bid if the auction is active and the amount clears the increment"""
    placement = place_bid(db, parse_object_id(auction_id), user, payload.amount, now)
    auction = placement.auction
    key = str(auction["_id"])

    event = realtime.bid_update(key, auction["current_price"], user.name, auction["total_bids"], now)
    background_tasks.add_task(hub.publish, key, event)
    return {
        "message": "Bid placed successfully",
        "bid": _bid_out(placement.bid),
        "current_price": auction["current_price"],
        "total_bids": auction["total_bids"],
        "minimum_bid": minimum_bid(auction),
    }


@app.get("/auctions/{auction_id}/bids")
def list_bids(
    auction_id: str,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    doc = _observe(db, _load_auction(db, auction_id), now, background_tasks, hub)
    key = str(doc["_id"])
    bids = list(db["bid"].find({"auction_id": key}).sort("created_at", -1))
    winning = highest_bid(db, key)
    return {"bids": [_bid_out(b) for b in annotate_bids(bids, doc, winning, now)]}


@app.post("/auctions/sweep")
def sweep_auctions(
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_roles("admin")),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    """Persist lagging statuses for every auction"""
    ended = sweep(db, now)
    for auction in ended:
        _announce_end(background_tasks, hub, auction, now)
    return {"ended": [str(a["_id"]) for a in ended]}


@app.post("/auctions/{auction_id}/status")
def sync_auction_status(
    auction_id: str,
    background_tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    """Write the resolved status; the first call after the end finalizes the winner"""
    auction, ended_now = sync_status(db, parse_object_id(auction_id), now)
    if ended_now:
        _announce_end(background_tasks, hub, auction, now)
    return {"auction": _auction_out(auction, now), "ended_now": ended_now}


@app.post("/auctions/{auction_id}/end")
def end_auction_early(
    auction_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_roles("seller", "admin")),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
    hub: Broadcaster = Depends(get_broadcaster),
):
    auction = _load_auction(db, auction_id)
    _check_owner(auction, user)
    finalized = end_auction(db, auction["_id"], now)
    logger.info("auction %s ended early by %s", auction["_id"], user.id)
    _announce_end(background_tasks, hub, finalized, now)
    return {"message": "Auction ended", "auction": _auction_out(finalized, now)}


@app.post("/auctions/{auction_id}/payment")
def confirm_payment(
    auction_id: str,
    user: CurrentUser = Depends(require_roles("seller", "admin")),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
):
    auction = _load_auction(db, auction_id)
    _check_owner(auction, user)
    updated = mark_paid(db, auction["_id"])
    return {"message": "Payment recorded", "auction": _auction_out(updated, now)}


@app.get("/users/me/bids")
def my_bids(
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    now: datetime = Depends(get_now),
):
    """Bid history of the caller with each bid's derived status"""
    bids = list(db["bid"].find({"bidder_id": user.id}).sort("created_at", -1))
    auctions: Dict[str, Optional[Dict[str, Any]]] = {}
    winners: Dict[str, Optional[Dict[str, Any]]] = {}
    history = []
    for bid in bids:
        auction_id = bid["auction_id"]
        if auction_id not in auctions:
            auctions[auction_id] = db["auction"].find_one({"_id": parse_object_id(auction_id)})
            winners[auction_id] = highest_bid(db, auction_id)
        auction = auctions[auction_id]
        if auction is None:
            continue
        annotated = _bid_out(annotate_bids([bid], auction, winners[auction_id], now)[0])
        annotated["auction_title"] = auction.get("title")
        annotated["current_price"] = auction["current_price"]
        annotated["end_time"] = auction["end_time"]
        history.append(annotated)
    return {"bids": history}


@app.websocket("/ws")
async def auction_updates(websocket: WebSocket, hub: Broadcaster = Depends(get_broadcaster)):
    await realtime.serve(websocket, hub)


@app.get("/schema")
def get_schema_info():
    """Expose schema classes for tooling."""
    from schemas import Bid, Auction
    return {
        "bid": Bid.model_json_schema(),
        "auction": Auction.model_json_schema(),
    }


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            logger.warning("database check failed: %s", e)
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
