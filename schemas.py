"""
Database Schemas for the Live Auction API

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name by convention (e.g., Auction -> "auction").
Request models validate payloads at the HTTP boundary before they reach the
bidding and lifecycle code.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum


class AuctionStatus(str, Enum):
    scheduled = "scheduled"
    active = "active"
    ended = "ended"


class BidStatus(str, Enum):
    active = "active"
    outbid = "outbid"
    won = "won"
    lost = "lost"


class PaymentStatus(str, Enum):
    none = "none"
    pending = "pending"
    paid = "paid"
    not_required = "not_required"


class Category(str, Enum):
    watches = "watches"
    art = "art"
    jewelry = "jewelry"
    cars = "cars"
    books = "books"
    electronics = "electronics"
    collectibles = "collectibles"
    other = "other"


class Condition(str, Enum):
    new = "new"
    like_new = "like_new"
    good = "good"
    fair = "fair"
    poor = "poor"


MIN_STARTING_PRICE = 100
MAX_IMAGES = 10


def as_utc(value: datetime) -> datetime:
    # naive datetimes, from clients or from a client without tz_aware, are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Image(BaseModel):
    """Reference to an image already stored by the media service"""
    url: str = Field(..., min_length=1)
    public_id: str = Field(..., min_length=1)


class Bid(BaseModel):
    """A bid placed on an auction. Bids are never modified once stored."""
    auction_id: str = Field(..., description="Auction ID")
    bidder_id: str = Field(..., description="User id of the bidder")
    bidder_name: str = Field(..., description="Display name for bidder")
    amount: float = Field(..., gt=0, description="Bid amount")


class Auction(BaseModel):
    """Auction metadata"""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    seller_id: str = Field(..., description="User id of the seller")
    seller_name: Optional[str] = Field(None, description="Seller display name")
    title: str = Field(..., description="Auction title")
    description: str = Field(..., description="Auction description")
    category: Category = Field(..., description="Listing category")
    condition: Optional[Condition] = Field(None, description="Item condition")
    images: List[Image] = Field(default_factory=list, description="Listing images")
    starting_price: float = Field(..., ge=0, description="Starting price")
    current_price: float = Field(..., ge=0, description="Cached current price")
    bid_increment: float = Field(..., ge=1, description="Minimum raise over the current price")
    reserve_price: Optional[float] = Field(None, ge=0, description="Advisory minimum winning price")
    start_time: datetime = Field(..., description="When the auction starts")
    end_time: datetime = Field(..., description="When the auction ends")
    status: AuctionStatus = Field(AuctionStatus.scheduled, description="scheduled | active | ended")
    winner_id: Optional[str] = Field(None, description="Current highest bidder")
    winner_name: Optional[str] = Field(None, description="Display name of the current highest bidder")
    total_bids: int = Field(0, ge=0, description="Number of accepted bids")
    payment_status: PaymentStatus = Field(PaymentStatus.none, description="Settlement state once ended")
    ended_at: Optional[datetime] = Field(None, description="When the auction was finalized")

    @model_validator(mode="after")
    def _check_prices(self):
        if self.current_price < self.starting_price:
            raise ValueError("current_price must not be below starting_price")
        return self


class CreateAuctionRequest(BaseModel):
    title: str = Field(..., min_length=5, max_length=200)
    description: str = Field(..., min_length=10, max_length=2000)
    category: Category
    condition: Optional[Condition] = None
    images: List[Image] = Field(..., min_length=1, max_length=MAX_IMAGES)
    starting_price: float = Field(..., ge=MIN_STARTING_PRICE)
    bid_increment: float = Field(..., ge=1)
    reserve_price: Optional[float] = Field(None, ge=0)
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class UpdateAuctionRequest(BaseModel):
    """Fields a seller may change before the auction starts"""
    title: Optional[str] = Field(None, min_length=5, max_length=200)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    category: Optional[Category] = None
    condition: Optional[Condition] = None
    images: Optional[List[Image]] = Field(None, min_length=1, max_length=MAX_IMAGES)
    starting_price: Optional[float] = Field(None, ge=MIN_STARTING_PRICE)
    bid_increment: Optional[float] = Field(None, ge=1)
    reserve_price: Optional[float] = Field(None, ge=0)

    # condition and reserve_price may be cleared with null, the rest may not
    @field_validator("title", "description", "category", "images", "starting_price", "bid_increment", mode="before")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("field cannot be null")
        return value


class PlaceBidRequest(BaseModel):
    amount: float = Field(..., gt=0)


class WebSocketCommand(BaseModel):
    """Message sent by a realtime client"""
    action: str = Field(..., pattern="^(join|leave|ping)$")
    auctionId: Optional[str] = None

    @model_validator(mode="after")
    def _check_target(self):
        if self.action != "ping" and not self.auctionId:
            raise ValueError("auctionId is required for join and leave")
        return self
