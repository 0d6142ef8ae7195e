from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import auth
from auth import CurrentUser
from database import get_db
from main import app, get_now
from realtime import Broadcaster, get_broadcaster

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingConnection:
    """Stands in for a websocket: keeps what it was sent"""

    def __init__(self):
        self.events = []

    async def send_json(self, data):
        self.events.append(data)


SELLER = CurrentUser(id="seller-1", name="Sam Seller", role="seller")
ALICE = CurrentUser(id="buyer-1", name="Alice", role="buyer")
BOB = CurrentUser(id="buyer-2", name="Bob", role="buyer")
ADMIN = CurrentUser(id="admin-1", name="Ada Admin", role="admin")


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["auctions_test"]


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def hub():
    return Broadcaster()


@pytest.fixture
def client(db, clock, hub):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_now] = lambda: clock.now
    app.dependency_overrides[get_broadcaster] = lambda: hub
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def make(user: CurrentUser):
        token = jwt.encode(
            {"sub": user.id, "name": user.name, "role": user.role},
            auth.JWT_SECRET_KEY,
            algorithm=auth.JWT_ALGORITHM,
        )
        return {"Authorization": f"Bearer {token}"}

    return make


@pytest.fixture
def make_auction(db):
    """Insert an auction document directly; active around NOW by default"""

    def make(**overrides):
        doc = {
            "seller_id": SELLER.id,
            "seller_name": SELLER.name,
            "title": "Vintage Submariner",
            "description": "Serviced watch with box and papers",
            "category": "watches",
            "condition": "good",
            "images": [{"url": "https://img.example/1.jpg", "public_id": "img-1"}],
            "starting_price": 100.0,
            "current_price": 100.0,
            "bid_increment": 10.0,
            "reserve_price": None,
            "start_time": NOW - timedelta(hours=1),
            "end_time": NOW + timedelta(hours=1),
            "status": "active",
            "winner_id": None,
            "winner_name": None,
            "total_bids": 0,
            "payment_status": "none",
            "created_at": NOW - timedelta(days=1),
            "updated_at": NOW - timedelta(days=1),
        }
        doc.update(overrides)
        return db["auction"].insert_one(doc).inserted_id

    return make
