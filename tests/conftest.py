import uuid

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from tests.memstorage import MemStorage


class FakeGateway:
    """Stands in for PaymentGateway; intents live in a dict keyed by id."""

    def __init__(self):
        self.intents = {}
        self.idempotency_keys = []

    def create_payment_intent(self, amount, idempotency_key=None):
        self.idempotency_keys.append(idempotency_key)
        intent_id = f"pi_{uuid.uuid4().hex[:12]}"
        intent = {
            "id": intent_id,
            "amount": int(round(amount * 100)),
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_test",
        }
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, payment_intent_id):
        return self.intents.get(payment_intent_id, {"id": payment_intent_id, "status": "canceled", "amount": 0})

    def succeed(self, intent_id):
        self.intents[intent_id]["status"] = "succeeded"


@pytest.fixture
def settings():
    return Settings(stripe_secret_key="sk_test_dummy", log_level="WARNING")


@pytest.fixture
def storage():
    return MemStorage()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(settings, storage, gateway):
    app = create_app(settings, storage=storage, payments=gateway)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def customer(storage):
    return storage.create_customer({"name": "Dana Whitfield", "email": "dana@example.com", "phone": "555-0101"})


@pytest.fixture
def products(storage):
    return [
        storage.create_product({"name": "Starfall Odyssey", "description": "Space game", "category": "game", "price": 19.99, "stock": 10}),
        storage.create_product({"name": "CodeForge", "description": "IDE for your laptop", "category": "software", "price": 5.00, "stock": 3}),
        storage.create_product({"name": "DiskSweep", "description": "Disk cleanup", "category": "utility", "price": 2.50, "stock": 0}),
    ]
