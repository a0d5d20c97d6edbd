"""
Development seed: an admin account and a small catalog.

Run explicitly against a development database:

    python seed.py [--admin-password secret123]

Refuses to run when ENVIRONMENT=production. Existing records are left alone,
so running it twice is harmless.
"""

import argparse
import logging
import sys

from auth import hash_password
from config import Settings
from database import MongoStorage, Storage

logger = logging.getLogger("divineshop.seed")

SAMPLE_PRODUCTS = [
    {"name": "Starfall Odyssey", "description": "Open-world space adventure game", "category": "game", "price": 59.99, "stock": 40},
    {"name": "Pixel Dungeon Deluxe", "description": "Retro roguelike dungeon crawler", "category": "game", "price": 14.99, "stock": 120},
    {"name": "CodeForge Studio", "description": "Lightweight IDE for laptop and desktop", "category": "software", "price": 89.00, "stock": 25},
    {"name": "PhotoLab Pro", "description": "Photo editing suite", "category": "software", "price": 129.00, "stock": 15},
    {"name": "DiskSweep", "description": "Disk cleanup and duplicate finder utility", "category": "utility", "price": 19.99, "stock": 200},
    {"name": "VaultGuard", "description": "Password manager with encrypted sync", "category": "utility", "price": 29.99, "stock": 80},
]


def seed(storage: Storage, admin_password: str) -> dict:
    created = {"users": 0, "products": 0}
    if storage.get_user_by_username("admin") is None:
        storage.create_user({
            "username": "admin",
            "password_hash": hash_password(admin_password),
            "name": "Alex Johnson",
            "role": "Administrator",
            "avatar": None,
        })
        created["users"] += 1

    existing = {p["name"] for p in storage.get_products()}
    for product in SAMPLE_PRODUCTS:
        if product["name"] not in existing:
            storage.create_product(dict(product, image=None))
            created["products"] += 1
    return created


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed a development DivineShop database")
    parser.add_argument("--admin-password", default="admin123", help="password for the 'admin' account")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if settings.is_production:
        logger.error("Refusing to seed a production database")
        return 1

    storage = MongoStorage(settings.database_url, settings.database_name)
    try:
        storage.ensure_indexes()
        created = seed(storage, args.admin_password)
    finally:
        storage.close()
    logger.info("Seeded %d user(s) and %d product(s) into %s", created["users"], created["products"], settings.database_name)
    return 0


if __name__ == "__main__":
    sys.exit(main())
