"""
Stripe PaymentIntents over plain HTTP.

Only two calls are needed: create an intent for the checkout amount and
retrieve it again to check its status before an order is written. Transient
failures are retried by the session's adapter; POSTs carry an Idempotency-Key
so a retried create can never produce a second charge attempt.
"""

import logging
import uuid
from urllib.parse import quote
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


class PaymentError(Exception):
    pass


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class PaymentGateway:
    def __init__(
        self,
        secret_key: Optional[str],
        api_base: str = "https://api.stripe.com/v1",
        currency: str = "usd",
        max_retries: int = 3,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.session = session or requests.Session()
        retry = Retry(
            total=max_retries,
            connect=max_retries,
            read=max_retries,
            status=max_retries,
            backoff_factor=0.5,
            status_forcelist=RETRY_STATUSES,
            allowed_methods=frozenset({"GET", "POST"}),
            raise_on_status=False,
        )
        self.session.mount("https://", HTTPAdapter(max_retries=retry))

    def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.secret_key:
            raise PaymentError("Payment processor is not configured (STRIPE_SECRET_KEY missing)")
        try:
            res = self.session.request(
                method,
                f"{self.api_base}{path}",
                auth=(self.secret_key, ""),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            logger.error("Payment processor unreachable: %s", e)
            raise PaymentError("Payment processor unreachable") from e

        try:
            body = res.json()
        except ValueError:
            body = {}
        if res.status_code >= 400:
            message = body.get("error", {}).get("message") or f"Payment processor error ({res.status_code})"
            logger.error("%s %s failed with %s: %s", method, path, res.status_code, message)
            raise PaymentError(message)
        return body

    def create_payment_intent(self, amount: float, idempotency_key: Optional[str] = None) -> dict:
        key = idempotency_key or str(uuid.uuid4())
        intent = self._request(
            "POST",
            "/payment_intents",
            data={
                "amount": to_minor_units(amount),
                "currency": self.currency,
                "automatic_payment_methods[enabled]": "true",
            },
            headers={"Idempotency-Key": key},
        )
        logger.info("Created payment intent %s for %.2f %s", intent.get("id"), amount, self.currency)
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict:
        return self._request("GET", f"/payment_intents/{quote(payment_intent_id, safe='')}")
