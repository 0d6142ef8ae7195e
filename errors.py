"""
Domain errors raised by the bidding and lifecycle code.

Each error carries the HTTP status and a machine readable reason code. The
handler registered in main.py turns them into structured JSON responses, so
route handlers never have to translate them by hand.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AuctionError(Exception):
    status_code = 400
    reason = "error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"message": self.message, "reason": self.reason, **self.context}


class AuctionNotFound(AuctionError):
    status_code = 404
    reason = "not_found"

    def __init__(self, auction_id: str):
        super().__init__("Auction not found", auction_id=auction_id)


class NotAuthorized(AuctionError):
    status_code = 403
    reason = "forbidden"


class AuctionLocked(AuctionError):
    """The requested change is not allowed in the auction's current state"""
    reason = "auction_locked"


class BidRejected(AuctionError):
    BID_TOO_LOW = "bid_too_low"
    AUCTION_NOT_ACTIVE = "auction_not_active"
    SELF_BID = "self_bid"
    STALE_PRICE = "stale_price"

    def __init__(self, reason: str, message: str, **context):
        super().__init__(message, **context)
        self.reason = reason
        if reason == self.STALE_PRICE:
            self.status_code = 409


async def auction_error_handler(request: Request, exc: AuctionError) -> JSONResponse:
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.reason, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
