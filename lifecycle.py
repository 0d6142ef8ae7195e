"""
Auction lifecycle: status resolution, closing and settlement.

Status is derived from the scheduled window. `resolve_status` is the pure rule
used on every read; `sync_status`, `end_auction` and `sweep` are the write
paths that persist it. Read handlers call `sync_status` when `lags` reports a
stale stored status, so the first reader after the end finalizes the auction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from errors import AuctionLocked, AuctionNotFound
from schemas import AuctionStatus, BidStatus, PaymentStatus, as_utc

logger = logging.getLogger(__name__)

SCHEDULED = AuctionStatus.scheduled.value
ACTIVE = AuctionStatus.active.value
ENDED = AuctionStatus.ended.value

_RANK = {SCHEDULED: 0, ACTIVE: 1, ENDED: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_status(now: datetime, start_time: datetime, end_time: datetime, stored_status: Optional[str] = None) -> str:
    """Status of an auction at `now`.

    `ended` is terminal, and the result never ranks below the stored status,
    so an auction only moves scheduled -> active -> ended.
    """
    if stored_status == ENDED:
        return ENDED
    now = as_utc(now)
    if now >= as_utc(end_time):
        computed = ENDED
    elif now >= as_utc(start_time):
        computed = ACTIVE
    else:
        computed = SCHEDULED
    if _RANK.get(stored_status, -1) > _RANK[computed]:
        return stored_status
    return computed


def resolve(auction: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Copy of an auction document with its status resolved against `now`"""
    resolved = dict(auction)
    resolved["status"] = resolve_status(now, auction["start_time"], auction["end_time"], auction.get("status"))
    return resolved


def lags(auction: Dict[str, Any], now: datetime) -> bool:
    """Whether the stored status is behind the clock"""
    return resolve_status(now, auction["start_time"], auction["end_time"], auction.get("status")) != auction.get("status")


def status_filter(status: str, now: datetime) -> Dict[str, Any]:
    """Mongo filter matching auctions whose resolved status is `status`"""
    if status == SCHEDULED:
        return {"status": SCHEDULED, "start_time": {"$gt": now}}
    if status == ACTIVE:
        return {
            "status": {"$ne": ENDED},
            "end_time": {"$gt": now},
            "$or": [{"start_time": {"$lte": now}}, {"status": ACTIVE}],
        }
    if status == ENDED:
        return {"$or": [{"status": ENDED}, {"end_time": {"$lte": now}}]}
    raise ValueError(f"unknown auction status: {status}")


def highest_bid(db: Database, auction_id: str) -> Optional[Dict[str, Any]]:
    """The winning bid: highest amount, earliest first on ties"""
    cursor = db["bid"].find({"auction_id": auction_id}).sort(
        [("amount", -1), ("created_at", 1), ("_id", 1)]
    ).limit(1)
    return next(iter(cursor), None)


def annotate_bids(bids: List[Dict[str, Any]], auction: Dict[str, Any], winning_bid: Optional[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
    """Attach the derived `status` and `is_winning` flag to bid documents"""
    ended = resolve_status(now, auction["start_time"], auction["end_time"], auction.get("status")) == ENDED
    winning_id = winning_bid["_id"] if winning_bid else None
    annotated = []
    for bid in bids:
        bid = dict(bid)
        is_winning = bid["_id"] == winning_id
        if ended:
            bid["status"] = BidStatus.won.value if is_winning else BidStatus.lost.value
        else:
            bid["status"] = BidStatus.active.value if is_winning else BidStatus.outbid.value
        bid["is_winning"] = is_winning
        annotated.append(bid)
    return annotated


def _finalize(db: Database, oid: ObjectId, now: datetime) -> Tuple[Dict[str, Any], bool]:
    # Claiming the transition first closes the auction to new bids, whose
    # conditional update requires status != ended.
    claimed = db["auction"].find_one_and_update(
        {"_id": oid, "status": {"$ne": ENDED}},
        {"$set": {"status": ENDED, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        return db["auction"].find_one({"_id": oid}), False

    # Every accepted bid moved price and winner before the claim, so the claimed
    # document is authoritative even if its bid row is not inserted yet.
    updates: Dict[str, Any] = {"ended_at": min(as_utc(now), as_utc(claimed["end_time"]))}
    if claimed.get("total_bids", 0) > 0 and claimed.get("winner_id"):
        updates["payment_status"] = PaymentStatus.pending.value
    else:
        updates.update(winner_id=None, winner_name=None, payment_status=PaymentStatus.not_required.value)

    finalized = db["auction"].find_one_and_update(
        {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    logger.info("auction %s ended, winner=%s price=%s", oid, finalized.get("winner_id"), finalized.get("current_price"))
    return finalized, True


def sync_status(db: Database, oid: ObjectId, now: datetime) -> Tuple[Dict[str, Any], bool]:
    """Persist the resolved status of one auction.

    Returns the stored auction and whether this call ended it. Only the first
    caller observing the end finalizes the winner.
    """
    auction = db["auction"].find_one({"_id": oid})
    if auction is None:
        raise AuctionNotFound(str(oid))
    stored = auction.get("status")
    resolved = resolve_status(now, auction["start_time"], auction["end_time"], stored)
    if resolved == stored:
        return auction, False
    if resolved == ENDED:
        return _finalize(db, oid, now)

    updated = db["auction"].find_one_and_update(
        {"_id": oid, "status": stored},
        {"$set": {"status": resolved, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        updated = db["auction"].find_one({"_id": oid})
    return updated, False


def end_auction(db: Database, oid: ObjectId, now: datetime) -> Dict[str, Any]:
    """End an auction ahead of its schedule"""
    auction = db["auction"].find_one({"_id": oid})
    if auction is None:
        raise AuctionNotFound(str(oid))
    if resolve_status(now, auction["start_time"], auction["end_time"], auction.get("status")) == ENDED:
        raise AuctionLocked("Auction has already ended")
    finalized, ended_now = _finalize(db, oid, now)
    if not ended_now:
        raise AuctionLocked("Auction has already ended")
    return finalized


def sweep(db: Database, now: datetime) -> List[Dict[str, Any]]:
    """Sync every auction whose stored status lags the clock; returns those that ended"""
    lagging = db["auction"].find({
        "status": {"$ne": ENDED},
        "$or": [
            {"end_time": {"$lte": now}},
            {"status": SCHEDULED, "start_time": {"$lte": now}},
        ],
    }, {"_id": 1})
    ended = []
    for doc in list(lagging):
        auction, ended_now = sync_status(db, doc["_id"], now)
        if ended_now:
            ended.append(auction)
    logger.info("status sweep ended %d auction(s)", len(ended))
    return ended


def mark_paid(db: Database, oid: ObjectId) -> Dict[str, Any]:
    updated = db["auction"].find_one_and_update(
        {"_id": oid, "payment_status": PaymentStatus.pending.value},
        {"$set": {"payment_status": PaymentStatus.paid.value}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        return updated
    if db["auction"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise AuctionNotFound(str(oid))
    raise AuctionLocked("Auction has no pending payment")
