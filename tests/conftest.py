import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return mongomock.MongoClient()["farmfresh_test"]


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    def _register(name, email, user_type="customer", password="secret123"):
        res = client.post("/auth/register", json={
            "name": name, "email": email, "password": password, "userType": user_type,
        })
        assert res.status_code == 200, res.text
        body = res.json()
        return {
            "id": body["user"]["id"],
            "email": body["user"]["email"],
            "token": body["token"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }
    return _register


@pytest.fixture
def buyer(register):
    return register("Bea Buyer", "bea@example.com")


@pytest.fixture
def farmer(register):
    return register("Frank Fields", "frank@farm.example", user_type="farmer")


@pytest.fixture
def other_farmer(register):
    return register("Olive Orchard", "olive@farm.example", user_type="farmer")


@pytest.fixture
def make_product(db):
    def _make(name="Tomatoes", price=2.5, stock=10, farmer_email="frank@farm.example",
              farmer_name="Frank Fields", **extra):
        doc = {
            "name": name,
            "description": f"Fresh {name.lower()}",
            "price": price,
            "stock": stock,
            "category": extra.pop("category", "Vegetables"),
            "status": extra.pop("status", "active"),
            "averageRating": 0,
            "reviewCount": 0,
            "totalReviews": 0,
            "purchaseCount": 0,
            "farmer": {"id": str(ObjectId()), "name": farmer_name, "email": farmer_email},
        }
        doc.update(extra)
        return str(db["product"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def make_user(db):
    def _make(name="Bea Buyer", email="bea@example.com", **extra):
        doc = {"name": name, "email": email, "userType": "customer", **extra}
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc
    return _make
