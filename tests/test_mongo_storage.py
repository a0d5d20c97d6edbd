from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import (
    DuplicateKeyError,
    InsufficientStockError,
    InvalidTransitionError,
    MongoStorage,
    utcnow,
)
from main import create_app


def make_storage(**policies):
    storage = MongoStorage(
        "mongodb://localhost:27017",
        "divineshop_test",
        client=mongomock.MongoClient(tz_aware=True),
        **policies,
    )
    storage.ensure_indexes()
    return storage


@pytest.fixture
def mongo():
    return make_storage()


@pytest.fixture
def shopper(mongo):
    return mongo.create_customer({"name": "Dana Whitfield", "email": "dana@example.com", "phone": "555-0101"})


@pytest.fixture
def catalog(mongo):
    return [
        mongo.create_product({"name": "Starfall Odyssey", "description": "Space game", "category": "game", "price": 19.99, "stock": 10}),
        mongo.create_product({"name": "CodeForge", "description": "IDE for your laptop", "category": "software", "price": 5.00, "stock": 3}),
        mongo.create_product({"name": "DiskSweep", "description": "Disk cleanup", "category": "utility", "price": 2.50, "stock": 0}),
    ]


def line(product, quantity=1):
    return {"product_id": product["id"], "quantity": quantity, "price": 0}


# ============ CRUD ============
def test_ids_come_from_counters(mongo):
    created = [mongo.create_customer({"name": f"C{i}", "email": f"c{i}@example.com"}) for i in range(3)]
    assert [c["id"] for c in created] == [1, 2, 3]
    assert mongo.db["counters"].find_one({"_id": "customers"})["seq"] == 3
    assert mongo.create_product({"name": "P", "category": "game", "price": 1})["id"] == 1
    for c in created:
        assert mongo.get_customer(c["id"])["email"] == c["email"]


def test_create_fills_defaults_and_patch_keeps_identity(mongo):
    product = mongo.create_product({"name": "Thing", "category": "utility", "price": 1.0})
    assert product["stock"] == 0
    assert product["description"] is None
    customer = mongo.create_customer({"name": "A", "email": "a@example.com"})
    assert customer["phone"] is None

    assert mongo.update_customer(customer["id"], {})["name"] == "A"
    updated = mongo.update_customer(customer["id"], {"id": 50, "name": "B"})
    assert updated["id"] == customer["id"]
    assert updated["name"] == "B"
    assert mongo.update_customer(99, {"name": "x"}) is None


def test_delete_then_get(mongo, shopper):
    assert mongo.delete_customer(shopper["id"]) is True
    assert mongo.get_customer(shopper["id"]) is None
    assert mongo.delete_customer(shopper["id"]) is False


def test_unique_email_and_username(mongo, shopper):
    with pytest.raises(DuplicateKeyError):
        mongo.create_customer({"name": "Copy", "email": shopper["email"]})
    other = mongo.create_customer({"name": "Other", "email": "other@example.com"})
    with pytest.raises(DuplicateKeyError):
        mongo.update_customer(other["id"], {"email": shopper["email"]})

    mongo.create_user({"username": "alex", "password_hash": "x", "name": "Alex", "role": "customer"})
    with pytest.raises(DuplicateKeyError):
        mongo.create_user({"username": "alex", "password_hash": "y", "name": "Alex 2", "role": "customer"})


def test_regex_search(mongo, shopper, catalog):
    mongo.create_customer({"name": "Lee Park", "email": "lee@example.org"})
    assert [c["id"] for c in mongo.search_customers("DANA")] == [shopper["id"]]
    assert [c["id"] for c in mongo.search_customers("0101")] == [shopper["id"]]
    assert len(mongo.search_customers("example")) == 2

    mongo.create_product({"name": "Laptop Stand", "category": "utility", "price": 10})
    assert sorted(p["name"] for p in mongo.search_products("LAPTOP")) == ["CodeForge", "Laptop Stand"]
    assert mongo.search_products("c++") == []
    assert [p["name"] for p in mongo.get_products_by_category("game")] == ["Starfall Odyssey"]


# ============ Orders ============
def test_create_order_reserves_stock(mongo, shopper, catalog):
    game, ide, _ = catalog
    order = mongo.create_order({"customer_id": shopper["id"], "total": 1}, [line(game, 2), line(ide, 3)])
    assert order["total"] == 44.98
    assert order["status"] == "pending"
    assert "payment_intent_id" not in mongo.db["orders"].find_one({"_id": order["id"]})

    items = mongo.get_order_items(order["id"])
    assert [(i["product_id"], i["quantity"], i["price"]) for i in items] == [(game["id"], 2, 19.99), (ide["id"], 3, 5.0)]
    assert mongo.get_product(game["id"])["stock"] == 8
    assert mongo.get_product(ide["id"])["stock"] == 0


def test_stock_guard_rejects_and_restores(mongo, shopper, catalog):
    game, ide, _ = catalog
    with pytest.raises(InsufficientStockError):
        mongo.create_order({"customer_id": shopper["id"]}, [line(game, 4), line(ide, 4)])
    assert mongo.get_product(game["id"])["stock"] == 10
    assert mongo.get_product(ide["id"])["stock"] == 3
    assert mongo.get_orders() == []


def test_allow_negative_stock_policy():
    mongo = make_storage(stock_policy="allow_negative")
    customer = mongo.create_customer({"name": "N", "email": "n@example.com"})
    product = mongo.create_product({"name": "P", "category": "game", "price": 1, "stock": 1})
    mongo.create_order({"customer_id": customer["id"]}, [line(product, 5)])
    assert mongo.get_product(product["id"])["stock"] == -4


def test_payment_intent_confirms_one_order(mongo, shopper, catalog):
    game = catalog[0]
    mongo.create_order({"customer_id": shopper["id"]}, [line(game)])
    mongo.create_order({"customer_id": shopper["id"]}, [line(game)])
    first = mongo.create_order({"customer_id": shopper["id"], "payment_intent_id": "pi_1"}, [line(game)])
    assert mongo.get_order_by_payment_intent("pi_1")["id"] == first["id"]

    with pytest.raises(DuplicateKeyError):
        mongo.create_order({"customer_id": shopper["id"], "payment_intent_id": "pi_1"}, [line(game, 2)])
    assert len(mongo.get_orders()) == 3
    assert mongo.get_product(game["id"])["stock"] == 7


def test_status_transitions(mongo, shopper, catalog):
    order = mongo.create_order({"customer_id": shopper["id"]}, [line(catalog[0])])
    assert mongo._set_order_status(order["id"], "processing", "completed") is None
    assert mongo.update_order_status(order["id"], "processing")["status"] == "processing"
    assert mongo.update_order_status(order["id"], "completed")["status"] == "completed"
    with pytest.raises(InvalidTransitionError):
        mongo.update_order_status(order["id"], "pending")
    assert mongo.update_order_status(99, "processing") is None


def test_recent_orders_with_details(mongo, shopper, catalog):
    ids = [mongo.create_order({"customer_id": shopper["id"]}, [line(catalog[0])])["id"] for _ in range(3)]
    recent = mongo.get_recent_orders(2)
    assert [o["id"] for o in recent] == [ids[2], ids[1]]
    assert recent[0]["customer"]["name"] == shopper["name"]
    assert recent[0]["items"][0]["product"]["name"] == "Starfall Odyssey"
    assert len(mongo.get_orders_by_customer(shopper["id"])) == 3


# ============ Dashboard ============
def test_dashboard_aggregations(mongo, shopper, catalog):
    game, ide, _ = catalog
    suite = mongo.create_product({"name": "Suite", "category": "software", "price": 100.0, "stock": 5})
    for product in (game, ide):
        order = mongo.create_order({"customer_id": shopper["id"]}, [line(product)])
        mongo.update_order_status(order["id"], "completed")
    mongo.create_order({"customer_id": shopper["id"]}, [line(suite)])

    old = mongo.create_customer({"name": "Old", "email": "old@example.com"})
    mongo.db["customers"].update_one({"_id": old["id"]}, {"$set": {"created_at": utcnow() - timedelta(days=45)}})

    metrics = mongo.get_dashboard_metrics()
    assert metrics["total_sales"] == 24.99
    assert metrics["pending_orders"] == 1
    assert metrics["new_customers"] == 1
    assert metrics["top_product"] == {"name": game["name"], "units_sold": 1}

    stats = {s["category"]: s["percentage"] for s in mongo.get_product_category_stats()}
    assert stats == {"game": 25, "software": 50, "utility": 25}
    assert [p["id"] for p in mongo.get_popular_products(2)] == [game["id"], ide["id"]]


def test_dashboard_on_empty_database(mongo):
    assert mongo.get_dashboard_metrics()["top_product"] == {"name": "No product", "units_sold": 0}
    assert [s["percentage"] for s in mongo.get_product_category_stats()] == [0, 0, 0]


# ============ Sessions ============
def test_sessions(mongo):
    token = mongo.create_session(5, max_age=60)
    assert mongo.get_session_user_id(token) == 5
    mongo.delete_session(token)
    assert mongo.get_session_user_id(token) is None

    expired = mongo.create_session(6, max_age=-1)
    assert mongo.get_session_user_id(expired) is None
    assert mongo.db["sessions"].find_one({"_id": expired}) is None


# ============ API ============
def test_order_flow_through_api(settings, gateway):
    mongo = make_storage()
    app = create_app(settings, storage=mongo, payments=gateway)
    with TestClient(app) as client:
        customer = client.post("/api/customers", json={"name": "Dana", "email": "dana@example.com"}).json()
        product = client.post("/api/products", json={"name": "Game", "category": "game", "price": 9.5, "stock": 2}).json()
        res = client.post("/api/orders", json={
            "order": {"customer_id": customer["id"]},
            "items": [{"product_id": product["id"], "quantity": 2}],
        })
        assert res.status_code == 201
        assert res.json()["total"] == 19.0

        again = client.post("/api/orders", json={
            "order": {"customer_id": customer["id"]},
            "items": [{"product_id": product["id"], "quantity": 1}],
        })
        assert again.status_code == 409
        assert client.get(f"/api/products/{product['id']}").json()["stock"] == 0
        assert [a["type"] for a in client.get("/api/activities").json()] == ["account_created", "purchase"]
