"""
Application configuration for DivineShop.

Values come from the environment (optionally a local .env file) and are read
once at process start via Settings.from_env().
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

STOCK_POLICIES = ("reject", "allow_negative")
STATUS_POLICIES = ("strict", "permissive")


def _csv(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "divineshop"
    environment: str = "development"
    session_max_age: int = 60 * 60 * 24
    stripe_secret_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com/v1"
    payment_currency: str = "usd"
    payment_max_retries: int = 3
    payment_timeout: float = 10.0
    stock_policy: str = "reject"
    status_policy: str = "strict"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    def __post_init__(self):
        if self.stock_policy not in STOCK_POLICIES:
            raise ValueError(f"STOCK_POLICY must be one of {STOCK_POLICIES}, got {self.stock_policy!r}")
        if self.status_policy not in STATUS_POLICIES:
            raise ValueError(f"STATUS_POLICY must be one of {STATUS_POLICIES}, got {self.status_policy!r}")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            environment=os.getenv("ENVIRONMENT", cls.environment),
            session_max_age=int(os.getenv("SESSION_MAX_AGE", cls.session_max_age)),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_api_base=os.getenv("STRIPE_API_BASE", cls.stripe_api_base),
            payment_currency=os.getenv("PAYMENT_CURRENCY", cls.payment_currency),
            payment_max_retries=int(os.getenv("PAYMENT_MAX_RETRIES", cls.payment_max_retries)),
            payment_timeout=float(os.getenv("PAYMENT_TIMEOUT", cls.payment_timeout)),
            stock_policy=os.getenv("STOCK_POLICY", cls.stock_policy),
            status_policy=os.getenv("STATUS_POLICY", cls.status_policy),
            cors_origins=_csv(os.getenv("CORS_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            port=int(os.getenv("PORT", cls.port)),
        )
