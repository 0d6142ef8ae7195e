"""
Bid acceptance.

A bid is applied with a single conditional update on the auction document that
matches the price read during validation. Two concurrent bids that both read
the same price cannot both match: the loser gets `stale_price` and has to
resubmit against the fresh price.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import CurrentUser
from errors import AuctionError, AuctionNotFound, BidRejected
from lifecycle import ACTIVE, resolve_status, status_filter
from schemas import Bid

logger = logging.getLogger(__name__)


@dataclass
class BidPlacement:
    auction: Dict[str, Any]
    bid: Dict[str, Any]


def minimum_bid(auction: Dict[str, Any]) -> float:
    return auction["current_price"] + auction["bid_increment"]


def place_bid(db: Database, oid: ObjectId, bidder: CurrentUser, amount: float, now: datetime) -> BidPlacement:
    auction = db["auction"].find_one({"_id": oid})
    if auction is None:
        raise AuctionNotFound(str(oid))

    if auction["seller_id"] == bidder.id:
        raise BidRejected(BidRejected.SELF_BID, "Sellers cannot bid on their own auction")

    status = resolve_status(now, auction["start_time"], auction["end_time"], auction.get("status"))
    if status != ACTIVE:
        raise BidRejected(BidRejected.AUCTION_NOT_ACTIVE, f"Auction is {status}", status=status)

    observed_price = auction["current_price"]
    required = minimum_bid(auction)
    if amount < required:
        raise BidRejected(
            BidRejected.BID_TOO_LOW,
            f"Bid must be at least {required}",
            current_price=observed_price,
            minimum_bid=required,
        )

    updated = db["auction"].find_one_and_update(
        {"_id": oid, "current_price": observed_price, **status_filter(ACTIVE, now)},
        {
            "$set": {
                "current_price": float(amount),
                "winner_id": bidder.id,
                "winner_name": bidder.name,
                "status": ACTIVE,
                "updated_at": now,
            },
            "$inc": {"total_bids": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise _lost_race(db, oid, now)

    bid = Bid(auction_id=str(oid), bidder_id=bidder.id, bidder_name=bidder.name, amount=amount).model_dump()
    bid["created_at"] = now
    try:
        bid["_id"] = db["bid"].insert_one(bid).inserted_id
    except PyMongoError:
        logger.exception("failed to record bid on auction %s, reverting price", oid)
        db["auction"].update_one(
            {"_id": oid, "current_price": float(amount), "winner_id": bidder.id, "total_bids": updated["total_bids"]},
            {
                "$set": {
                    "current_price": observed_price,
                    "winner_id": auction.get("winner_id"),
                    "winner_name": auction.get("winner_name"),
                },
                "$inc": {"total_bids": -1},
            },
        )
        raise

    logger.info("bid %s accepted on auction %s: %s by %s", bid["_id"], oid, amount, bidder.id)
    return BidPlacement(auction=updated, bid=bid)


def _lost_race(db: Database, oid: ObjectId, now: datetime) -> AuctionError:
    """Explain why the conditional update matched nothing"""
    fresh = db["auction"].find_one({"_id": oid})
    if fresh is None:
        return AuctionNotFound(str(oid))
    status = resolve_status(now, fresh["start_time"], fresh["end_time"], fresh.get("status"))
    if status != ACTIVE:
        return BidRejected(BidRejected.AUCTION_NOT_ACTIVE, f"Auction is {status}", status=status)
    return BidRejected(
        BidRejected.STALE_PRICE,
        "Auction price changed, refresh and bid again",
        current_price=fresh["current_price"],
        minimum_bid=minimum_bid(fresh),
    )
