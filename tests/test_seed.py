from auth import verify_password
from seed import SAMPLE_PRODUCTS, main, seed


def test_seed_creates_admin_and_catalog(storage):
    created = seed(storage, "admin123")
    assert created == {"users": 1, "products": len(SAMPLE_PRODUCTS)}
    admin = storage.get_user_by_username("admin")
    assert admin["role"] == "Administrator"
    assert verify_password("admin123", admin["password_hash"])
    assert {s["category"] for s in storage.get_product_category_stats() if s["percentage"] > 0} == {"game", "software", "utility"}


def test_seed_is_idempotent(storage):
    seed(storage, "admin123")
    assert seed(storage, "other-pass1") == {"users": 0, "products": 0}
    assert len(storage.get_products()) == len(SAMPLE_PRODUCTS)


def test_seed_refuses_production(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    assert main([]) == 1
