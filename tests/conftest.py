from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from gateway import MarketGateway
from main import create_app
from payments import PaymentClient, PaymentError


class FakePaymentClient(PaymentClient):
    def __init__(self, fail: bool = False):
        super().__init__(secret_key="sk_test_fake")
        self.fail = fail
        self.calls = []

    def create_session(self, req, origin=None):
        self.calls.append(req)
        if self.fail:
            raise PaymentError("Failed to create payment session")
        return f"https://checkout.example.test/pay/{req.order_id}"


@pytest.fixture
def db():
    return mongomock.MongoClient().farm_market


@pytest.fixture
def gateway(db):
    return MarketGateway(db)


@pytest.fixture
def payments():
    return FakePaymentClient()


@pytest.fixture
def client(db, payments):
    app = create_app(database=db, payment_client=payments)
    return TestClient(app)


def register(client, email, role, username=None, **extra):
    body = {
        "email": email,
        "password": "secret123",
        "username": username or email.split("@")[0],
        "role": role,
        **extra,
    }
    res = client.post("/api/auth/register", json=body)
    assert res.status_code == 201, res.text
    return res.json()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def farmer(client):
    data = register(client, "farmer@example.com", "farmer", username="farmer_joe", farm_name="Green Acres", farm_location="Gaborone")
    me = client.get("/api/auth/me", headers=auth(data["token"])).json()
    return {"token": data["token"], "user_id": data["user"]["id"], "farmer_id": me["farmer"]["id"]}


@pytest.fixture
def consumer(client):
    data = register(client, "shopper@example.com", "consumer", username="shopper", location="Francistown")
    me = client.get("/api/auth/me", headers=auth(data["token"])).json()
    return {"token": data["token"], "user_id": data["user"]["id"], "consumer_id": me["consumer"]["id"]}


@pytest.fixture
def add_product(db):
    counter = {"n": 0}

    def _add(farmer_id, name="Tomatoes", price=10.0, stock_level=5, category="Vegetables", **extra):
        counter["n"] += 1
        row = {
            "name": name,
            "description": extra.pop("description", f"Fresh {name.lower()}"),
            "price": price,
            "stock_level": stock_level,
            "farmer_id": farmer_id,
            "image_url": None,
            "category": category,
            "is_organic": False,
            "unit": "kg",
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
        }
        row.update(extra)
        return str(db.products.insert_one(row).inserted_id)

    return _add
