import mongomock
import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext

import database
import main

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line1": "12 Analytical Way",
    "city": "London",
    "state": "LDN",
    "postal_code": "N1 9GU",
    "country": "GB",
}


@pytest.fixture
def mongo(monkeypatch):
    """Point the app at a fresh in-memory database."""
    test_db = mongomock.MongoClient()["furniture_test"]
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    monkeypatch.setattr(main, "password_ctx", CryptContext(schemes=["bcrypt"], bcrypt__rounds=4))
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def register(client, email, password="secret123"):
    resp = client.post("/auth/register", json={"email": email, "password": password, "full_name": email.split("@")[0]})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def customer(client):
    return register(client, "customer@example.com")


@pytest.fixture
def admin(client, mongo):
    headers = register(client, "manager@example.com")
    mongo["user"].update_one({"email": "manager@example.com"}, {"$set": {"role": "admin_manager"}})
    return headers


@pytest.fixture
def viewer(client, mongo):
    headers = register(client, "viewer@example.com")
    mongo["user"].update_one({"email": "viewer@example.com"}, {"$set": {"role": "admin_viewer"}})
    return headers


@pytest.fixture
def catalog(client, admin):
    """Two categories and three products, ids keyed by short name."""
    ids = {}
    resp = client.post("/admin/categories", json={"name": "Living Room"}, headers=admin)
    ids["living"] = resp.json()["id"]
    resp = client.post("/admin/categories", json={"name": "Office"}, headers=admin)
    ids["office"] = resp.json()["id"]
    for key, name, price, category, stock in [
        ("sofa", "Modern Sectional Sofa", 1000.0, "living", 3),
        ("chair", "Leather Armchair", 200.0, "living", 10),
        ("desk", "Executive Office Desk", 150.0, "office", 5),
    ]:
        resp = client.post("/admin/products", json={
            "name": name, "price": price, "category_id": ids[category], "stock_quantity": stock,
        }, headers=admin)
        assert resp.status_code == 200, resp.text
        ids[key] = resp.json()["id"]
    return ids
