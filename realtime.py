"""
Realtime broadcast of auction events over WebSockets.

One channel per auction. Events are pushed to whoever is subscribed at publish
time and are not stored; a client that missed an event re-fetches the auction.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from schemas import WebSocketCommand, as_utc

logger = logging.getLogger(__name__)

BID_UPDATE = "bidUpdate"
PRODUCT_UPDATE = "productUpdate"
IMAGE_UPDATE = "imageUpdate"
AUCTION_END = "auctionEnd"


def channel_name(auction_id: str) -> str:
    return f"auction_{auction_id}"


class Broadcaster:
    """Channel-per-auction publish/subscribe.

    A connection is anything with an async ``send_json``. Each channel has its
    own lock, so subscribers of a channel see events in publish order while
    different channels fan out independently.
    """

    def __init__(self):
        self._channels: Dict[str, Set[Any]] = defaultdict(set)
        self._locks: Dict[str, asyncio.Lock] = {}

    def subscribe(self, auction_id: str, connection) -> None:
        self._channels[channel_name(auction_id)].add(connection)
        logger.debug("subscribed to %s (%d)", auction_id, len(self._channels[channel_name(auction_id)]))

    def unsubscribe(self, auction_id: str, connection) -> None:
        channel = channel_name(auction_id)
        members = self._channels.get(channel)
        if members is None:
            return
        members.discard(connection)
        if not members:
            self._drop_channel(channel)

    def disconnect(self, connection) -> None:
        """Remove a connection from every channel it joined"""
        for channel in list(self._channels):
            members = self._channels[channel]
            members.discard(connection)
            if not members:
                self._drop_channel(channel)

    def _drop_channel(self, channel: str) -> None:
        # a publish still holding the lock keeps its own reference
        self._channels.pop(channel, None)
        self._locks.pop(channel, None)

    def subscribers(self, auction_id: str) -> Set[Any]:
        return set(self._channels.get(channel_name(auction_id), ()))

    async def publish(self, auction_id: str, event: Dict[str, Any]) -> int:
        """Send an event to the auction's subscribers; returns how many received it"""
        channel = channel_name(auction_id)
        if channel not in self._channels:
            return 0
        lock = self._locks.setdefault(channel, asyncio.Lock())
        delivered = 0
        async with lock:
            for connection in list(self._channels.get(channel, ())):
                try:
                    await connection.send_json(event)
                    delivered += 1
                except Exception:
                    logger.warning("dropping subscriber of %s after failed send", channel, exc_info=True)
                    self.disconnect(connection)
        logger.debug("published %s to %s (%d delivered)", event.get("event"), channel, delivered)
        return delivered


broadcaster = Broadcaster()


def get_broadcaster() -> Broadcaster:
    return broadcaster


def _event(name: str, auction_id: str, now: datetime, **fields) -> Dict[str, Any]:
    return {"event": name, "auctionId": auction_id, **fields, "timestamp": as_utc(now).isoformat()}


def bid_update(auction_id: str, new_bid: float, bidder_name: str, total_bids: int, now: datetime) -> Dict[str, Any]:
    return _event(BID_UPDATE, auction_id, now, newBid=new_bid, bidderName=bidder_name, totalBids=total_bids)


def product_update(auction_id: str, updates: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return _event(PRODUCT_UPDATE, auction_id, now, updates=updates)


def image_update(auction_id: str, images: List[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    return _event(IMAGE_UPDATE, auction_id, now, images=images)


def auction_end(auction_id: str, winner_id: Optional[str], final_price: float, now: datetime) -> Dict[str, Any]:
    return _event(AUCTION_END, auction_id, now, winnerId=winner_id, finalPrice=final_price)


async def serve(websocket: WebSocket, hub: Broadcaster) -> None:
    """Run one client connection: join/leave auction channels until it disconnects"""
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                command = WebSocketCommand.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                await websocket.send_json({"event": "error", "message": str(e)})
                continue

            if command.action == "ping":
                await websocket.send_json({"event": "pong"})
            elif command.action == "join":
                hub.subscribe(command.auctionId, websocket)
                await websocket.send_json({"event": "joined", "auctionId": command.auctionId})
            else:
                hub.unsubscribe(command.auctionId, websocket)
                await websocket.send_json({"event": "left", "auctionId": command.auctionId})
    except WebSocketDisconnect:
        logger.debug("websocket client disconnected")
    finally:
        hub.disconnect(websocket)
