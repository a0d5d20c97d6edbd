"""
Storage layer for DivineShop.

Storage is the repository contract the API is written against. It owns the
derived reads (order details, dashboard metrics, popular products), order
creation with stock reservation and order status transitions; subclasses only
provide the per-collection primitives.

MongoStorage is the production backing. Every collection uses an integer _id
handed out by the "counters" collection so ids stay short and route-friendly.
"""

import logging
import re
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo import errors as mongo_errors

from schemas import OrderStatus, ProductCategory

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

CATEGORIES = [c.value for c in ProductCategory]
NEW_CUSTOMER_WINDOW = timedelta(days=30)
IMMUTABLE_FIELDS = ("id", "_id", "created_at")

TRANSITIONS = {
    OrderStatus.PENDING.value: {
        OrderStatus.PROCESSING.value, OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.PROCESSING.value: {
        OrderStatus.COMPLETED.value, OrderStatus.FAILED.value, OrderStatus.CANCELLED.value,
    },
    OrderStatus.COMPLETED.value: set(),
    OrderStatus.FAILED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============ Errors ============
class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    def __init__(self, field: str, value: Any):
        super().__init__(f"A record with {field} {value!r} already exists")
        self.field = field
        self.value = value


class ProductNotFoundError(StorageError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InsufficientStockError(StorageError):
    def __init__(self, product_id: int, quantity: int):
        super().__init__(f"Insufficient stock for product {product_id} (requested {quantity})")
        self.product_id = product_id
        self.quantity = quantity


class InvalidTransitionError(StorageError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change order status from {current} to {requested}")
        self.current = current
        self.requested = requested


def clean_patch(patch: Record) -> Record:
    return {k: v for k, v in patch.items() if k not in IMMUTABLE_FIELDS}


def placeholder_customer(customer_id: int) -> Record:
    return {
        "id": customer_id,
        "name": "Unknown Customer",
        "email": "",
        "phone": None,
        "address": None,
        "created_at": None,
        "missing": True,
    }


def placeholder_product(product_id: int) -> Record:
    return {
        "id": product_id,
        "name": "Unknown Product",
        "description": None,
        "category": "unknown",
        "price": 0.0,
        "stock": 0,
        "image": None,
        "created_at": None,
        "missing": True,
    }


def rank_units_sold(units: Dict[int, int]) -> List[Tuple[int, int]]:
    """Order (product_id, units) by units desc; equal units go to the lower product id."""
    return sorted(units.items(), key=lambda pair: (-pair[1], pair[0]))


class Storage(ABC):
    """Repository contract shared by every backing store."""

    def __init__(self, stock_policy: str = "reject", status_policy: str = "strict"):
        self.stock_policy = stock_policy
        self.status_policy = status_policy

    # ---- customers ----
    @abstractmethod
    def get_customers(self) -> List[Record]: ...

    @abstractmethod
    def get_customer(self, customer_id: int) -> Optional[Record]: ...

    @abstractmethod
    def get_customer_by_email(self, email: str) -> Optional[Record]: ...

    @abstractmethod
    def create_customer(self, fields: Record) -> Record: ...

    @abstractmethod
    def update_customer(self, customer_id: int, patch: Record) -> Optional[Record]: ...

    @abstractmethod
    def delete_customer(self, customer_id: int) -> bool: ...

    @abstractmethod
    def search_customers(self, query: str) -> List[Record]: ...

    # ---- products ----
    @abstractmethod
    def get_products(self) -> List[Record]: ...

    @abstractmethod
    def get_product(self, product_id: int) -> Optional[Record]: ...

    @abstractmethod
    def create_product(self, fields: Record) -> Record: ...

    @abstractmethod
    def update_product(self, product_id: int, patch: Record) -> Optional[Record]: ...

    @abstractmethod
    def delete_product(self, product_id: int) -> bool: ...

    @abstractmethod
    def search_products(self, query: str) -> List[Record]: ...

    @abstractmethod
    def get_products_by_category(self, category: str) -> List[Record]: ...

    # ---- orders ----
    @abstractmethod
    def get_orders(self) -> List[Record]: ...

    @abstractmethod
    def get_order(self, order_id: int) -> Optional[Record]: ...

    @abstractmethod
    def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Record]: ...

    @abstractmethod
    def get_order_items(self, order_id: int) -> List[Record]: ...

    # ---- activities ----
    @abstractmethod
    def get_activities(self) -> List[Record]: ...

    @abstractmethod
    def create_activity(self, fields: Record) -> Record: ...

    # ---- users ----
    @abstractmethod
    def get_user(self, user_id: int) -> Optional[Record]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[Record]: ...

    @abstractmethod
    def create_user(self, fields: Record) -> Record: ...

    # ---- backing-store primitives ----
    @abstractmethod
    def _insert_order(self, fields: Record) -> Record: ...

    @abstractmethod
    def _insert_order_item(self, fields: Record) -> Record: ...

    @abstractmethod
    def _delete_order_records(self, order_id: int) -> None:
        """Remove an order and its items; only used to undo a failed create_order."""

    @abstractmethod
    def _adjust_stock(self, product_id: int, delta: int, floor: Optional[int]) -> bool:
        """Atomically add delta to stock.

        With a floor, the change only applies when the resulting stock stays
        >= floor. Returns False when the product is missing or the guard fails.
        """

    @abstractmethod
    def _set_order_status(self, order_id: int, expected: str, status: str) -> Optional[Record]:
        """Set status only if the order still has the expected status."""

    @abstractmethod
    def _orders_for_customer(self, customer_id: int) -> List[Record]: ...

    @abstractmethod
    def _latest_orders(self, limit: int) -> List[Record]: ...

    @abstractmethod
    def _latest_activities(self, limit: int) -> List[Record]: ...

    @abstractmethod
    def _sum_order_totals(self, status: str) -> float: ...

    @abstractmethod
    def _count_orders(self, status: str) -> int: ...

    @abstractmethod
    def _count_customers_since(self, since: datetime) -> int: ...

    @abstractmethod
    def _category_counts(self) -> Dict[str, int]: ...

    @abstractmethod
    def _units_sold(self) -> Dict[int, int]: ...

    @abstractmethod
    def _insert_session(self, token: str, user_id: int, expires_at: datetime) -> None: ...

    @abstractmethod
    def _find_session(self, token: str) -> Optional[Record]: ...

    @abstractmethod
    def delete_session(self, token: str) -> None: ...

    def ping(self) -> bool:
        return True

    def ensure_indexes(self):
        pass

    def close(self):
        pass

    # ============ Orders ============
    def price_items(self, items: Iterable[Record]) -> Tuple[List[Record], float]:
        """Snapshot current product prices onto the items and total them."""
        lines = []
        for item in items:
            product = self.get_product(item["product_id"])
            if product is None:
                raise ProductNotFoundError(item["product_id"])
            lines.append({
                "product_id": product["id"],
                "quantity": int(item["quantity"]),
                "price": float(product["price"]),
            })
        if not lines:
            raise StorageError("An order needs at least one item")
        return lines, round(sum(line["price"] * line["quantity"] for line in lines), 2)

    def check_stock(self, lines: Iterable[Record]):
        """Raise InsufficientStockError when a priced order could not be filled right now.

        Only a pre-check for callers that must not write anything else first;
        create_order still reserves stock atomically.
        """
        if self.stock_policy != "reject":
            return
        wanted: Dict[int, int] = {}
        for line in lines:
            wanted[line["product_id"]] = wanted.get(line["product_id"], 0) + line["quantity"]
        for product_id, quantity in wanted.items():
            product = self.get_product(product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            if product["stock"] < quantity:
                raise InsufficientStockError(product_id, quantity)

    def create_order(self, order: Record, items: Iterable[Record]) -> Record:
        """Create one order plus its items and take the items out of stock.

        Item prices are snapshotted from the current product price and the
        total is recomputed from them; order["total"] is only compared for
        logging. Stock is reserved first, so nothing is written for an order
        that cannot be filled. Any failure part way through restores the stock
        already taken and removes the partially written records.
        """
        lines, total = self.price_items(items)
        client_total = order.get("total")
        if client_total is not None and abs(float(client_total) - total) >= 0.01:
            logger.info("Order total %.2f from client replaced by computed total %.2f", client_total, total)

        floor = 0 if self.stock_policy == "reject" else None
        reserved: List[Record] = []
        order_id = None
        try:
            for line in lines:
                if not self._adjust_stock(line["product_id"], -line["quantity"], floor):
                    if self.get_product(line["product_id"]) is None:
                        raise ProductNotFoundError(line["product_id"])
                    raise InsufficientStockError(line["product_id"], line["quantity"])
                reserved.append(line)

            new_order = self._insert_order({
                "customer_id": order["customer_id"],
                "status": OrderStatus(order.get("status") or OrderStatus.PENDING).value,
                "total": total,
                "order_date": utcnow(),
                "payment_intent_id": order.get("payment_intent_id"),
            })
            order_id = new_order["id"]
            for line in lines:
                self._insert_order_item(dict(line, order_id=order_id))
        except Exception:
            for line in reserved:
                self._adjust_stock(line["product_id"], line["quantity"], None)
            if order_id is not None:
                self._delete_order_records(order_id)
            if reserved:
                logger.warning("Order creation failed, restored stock for %d line(s)", len(reserved))
            raise
        return new_order

    def update_order_status(self, order_id: int, status: str) -> Optional[Record]:
        status = OrderStatus(status).value
        current = self.get_order(order_id)
        if current is None:
            return None
        if self.status_policy == "strict":
            previous = current["status"]
            if previous == status:
                if not TRANSITIONS[previous]:
                    raise InvalidTransitionError(previous, status)
                return current
            if status not in TRANSITIONS[previous]:
                raise InvalidTransitionError(previous, status)
        updated = self._set_order_status(order_id, current["status"], status)
        if updated is None:
            latest = self.get_order(order_id)
            if latest is None:
                return None
            # lost a race with another writer
            raise InvalidTransitionError(latest["status"], status)
        return updated

    def get_order_with_details(self, order_id: int) -> Optional[Record]:
        order = self.get_order(order_id)
        if order is None:
            return None
        return self._with_details(order)

    def _with_details(self, order: Record) -> Record:
        customer = self.get_customer(order["customer_id"])
        if customer is None:
            logger.warning("Order %s references missing customer %s", order["id"], order["customer_id"])
            customer = placeholder_customer(order["customer_id"])
        items = []
        for item in self.get_order_items(order["id"]):
            product = self.get_product(item["product_id"])
            if product is None:
                logger.warning("Order %s references missing product %s", order["id"], item["product_id"])
                product = placeholder_product(item["product_id"])
            items.append(dict(item, product=product))
        return dict(order, customer=customer, items=items)

    def get_orders_by_customer(self, customer_id: int) -> List[Record]:
        return [self._with_details(o) for o in self._orders_for_customer(customer_id)]

    def get_recent_orders(self, limit: int) -> List[Record]:
        return [self._with_details(o) for o in self._latest_orders(limit)]

    def get_recent_activities(self, limit: int) -> List[Record]:
        result = []
        for activity in self._latest_activities(limit):
            customer = self.get_customer(activity["customer_id"])
            if customer is None:
                customer = placeholder_customer(activity["customer_id"])
            result.append(dict(activity, customer=customer))
        return result

    # ============ Dashboard ============
    def get_dashboard_metrics(self) -> Record:
        ranked = rank_units_sold(self._units_sold())
        top_name, top_units = "No product", 0
        if ranked and ranked[0][1] > 0:
            product_id, top_units = ranked[0]
            product = self.get_product(product_id)
            top_name = product["name"] if product else placeholder_product(product_id)["name"]
        return {
            "total_sales": round(self._sum_order_totals(OrderStatus.COMPLETED.value), 2),
            "new_customers": self._count_customers_since(utcnow() - NEW_CUSTOMER_WINDOW),
            "pending_orders": self._count_orders(OrderStatus.PENDING.value),
            "top_product": {"name": top_name, "units_sold": top_units},
        }

    def get_product_category_stats(self) -> List[Record]:
        counts = self._category_counts()
        total = sum(counts.values())
        stats = []
        for category in CATEGORIES:
            percentage = round(counts.get(category, 0) / total * 100) if total else 0
            stats.append({"category": category, "percentage": percentage})
        return stats

    def get_popular_products(self, limit: int) -> List[Record]:
        popular = []
        for product_id, sales in rank_units_sold(self._units_sold())[:max(limit, 0)]:
            product = self.get_product(product_id) or placeholder_product(product_id)
            popular.append({
                "id": product_id,
                "name": product["name"],
                "sales": sales,
                "category": product["category"],
            })
        return popular

    # ============ Sessions ============
    def create_session(self, user_id: int, max_age: int) -> str:
        token = secrets.token_urlsafe(32)
        self._insert_session(token, user_id, utcnow() + timedelta(seconds=max_age))
        return token

    def get_session_user_id(self, token: str) -> Optional[int]:
        session = self._find_session(token)
        if session is None:
            return None
        if session["expires_at"] <= utcnow():
            self.delete_session(token)
            return None
        return session["user_id"]


# ============ MongoDB ============
def _out(doc: Optional[Record]) -> Optional[Record]:
    if doc is None:
        return None
    doc["id"] = doc.pop("_id")
    return doc


def _contains(field: str, query: str) -> Record:
    return {field: {"$regex": re.escape(query), "$options": "i"}}


class MongoStorage(Storage):
    def __init__(self, url: str, name: str, client: Optional[MongoClient] = None, **policies):
        super().__init__(**policies)
        self.client = client or MongoClient(url, tz_aware=True)
        self.db = self.client[name]

    def ensure_indexes(self):
        self.db["customers"].create_index("email", unique=True)
        self.db["users"].create_index("username", unique=True)
        self.db["orders"].create_index([("order_date", DESCENDING)])
        self.db["orders"].create_index("customer_id")
        self.db["orders"].create_index("payment_intent_id", unique=True, sparse=True)
        self.db["order_items"].create_index("order_id")
        self.db["activities"].create_index([("timestamp", DESCENDING)])
        self.db["sessions"].create_index("expires_at", expireAfterSeconds=0)

    def ping(self):
        self.client.admin.command("ping")
        return True

    def close(self):
        self.client.close()

    # ---- helpers ----
    def _next_id(self, collection: str) -> int:
        counter = self.db["counters"].find_one_and_update(
            {"_id": collection},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]

    def _create(self, collection: str, fields: Record, unique_field: Optional[str] = None) -> Record:
        doc = dict(fields)
        doc["_id"] = self._next_id(collection)
        try:
            self.db[collection].insert_one(doc)
        except mongo_errors.DuplicateKeyError:
            raise DuplicateKeyError(unique_field or "id", fields.get(unique_field))
        return _out(doc)

    def _list(self, collection: str, flt: Optional[Record] = None, sort=None, limit: int = 0) -> List[Record]:
        cursor = self.db[collection].find(flt or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [_out(doc) for doc in cursor]

    def _get(self, collection: str, _id: Any) -> Optional[Record]:
        return _out(self.db[collection].find_one({"_id": _id}))

    def _update(self, collection: str, _id: int, patch: Record, unique_field: Optional[str] = None) -> Optional[Record]:
        patch = clean_patch(patch)
        if not patch:
            return self._get(collection, _id)
        try:
            doc = self.db[collection].find_one_and_update(
                {"_id": _id}, {"$set": patch}, return_document=ReturnDocument.AFTER
            )
        except mongo_errors.DuplicateKeyError:
            raise DuplicateKeyError(unique_field or "id", patch.get(unique_field))
        return _out(doc)

    def _delete(self, collection: str, _id: int) -> bool:
        return self.db[collection].delete_one({"_id": _id}).deleted_count == 1

    # ---- customers ----
    def get_customers(self):
        return self._list("customers")

    def get_customer(self, customer_id):
        return self._get("customers", customer_id)

    def get_customer_by_email(self, email):
        return _out(self.db["customers"].find_one({"email": email}))

    def create_customer(self, fields):
        doc = {"phone": None, "address": None}
        doc.update(fields)
        doc["created_at"] = utcnow()
        return self._create("customers", doc, unique_field="email")

    def update_customer(self, customer_id, patch):
        return self._update("customers", customer_id, patch, unique_field="email")

    def delete_customer(self, customer_id):
        return self._delete("customers", customer_id)

    def search_customers(self, query):
        return self._list("customers", {"$or": [
            _contains("name", query), _contains("email", query), _contains("phone", query),
        ]})

    # ---- products ----
    def get_products(self):
        return self._list("products")

    def get_product(self, product_id):
        return self._get("products", product_id)

    def create_product(self, fields):
        doc = {"description": None, "stock": 0, "image": None}
        doc.update(fields)
        doc["created_at"] = utcnow()
        return self._create("products", doc)

    def update_product(self, product_id, patch):
        return self._update("products", product_id, patch)

    def delete_product(self, product_id):
        return self._delete("products", product_id)

    def search_products(self, query):
        return self._list("products", {"$or": [_contains("name", query), _contains("description", query)]})

    def get_products_by_category(self, category):
        return self._list("products", {"category": category})

    # ---- orders ----
    def get_orders(self):
        return self._list("orders")

    def get_order(self, order_id):
        return self._get("orders", order_id)

    def get_order_by_payment_intent(self, payment_intent_id):
        return _out(self.db["orders"].find_one({"payment_intent_id": payment_intent_id}))

    def get_order_items(self, order_id):
        return self._list("order_items", {"order_id": order_id}, sort=[("_id", ASCENDING)])

    def _insert_order(self, fields):
        doc = dict(fields)
        if doc.get("payment_intent_id") is None:
            # sparse unique index: leave the field out instead of storing null
            doc.pop("payment_intent_id", None)
        return self._create("orders", doc, unique_field="payment_intent_id")

    def _insert_order_item(self, fields):
        return self._create("order_items", fields)

    def _delete_order_records(self, order_id):
        self.db["order_items"].delete_many({"order_id": order_id})
        self.db["orders"].delete_one({"_id": order_id})

    def _adjust_stock(self, product_id, delta, floor):
        flt: Record = {"_id": product_id}
        if floor is not None:
            flt["stock"] = {"$gte": floor - delta}
        return self.db["products"].update_one(flt, {"$inc": {"stock": delta}}).matched_count == 1

    def _set_order_status(self, order_id, expected, status):
        return _out(self.db["orders"].find_one_and_update(
            {"_id": order_id, "status": expected},
            {"$set": {"status": status}},
            return_document=ReturnDocument.AFTER,
        ))

    def _orders_for_customer(self, customer_id):
        return self._list("orders", {"customer_id": customer_id}, sort=[("order_date", DESCENDING), ("_id", DESCENDING)])

    def _latest_orders(self, limit):
        return self._list("orders", sort=[("order_date", DESCENDING), ("_id", DESCENDING)], limit=limit)

    def _latest_activities(self, limit):
        return self._list("activities", sort=[("timestamp", DESCENDING), ("_id", DESCENDING)], limit=limit)

    # ---- aggregations ----
    def _sum_order_totals(self, status):
        rows = list(self.db["orders"].aggregate([
            {"$match": {"status": status}},
            {"$group": {"_id": None, "total": {"$sum": "$total"}}},
        ]))
        return float(rows[0]["total"]) if rows else 0.0

    def _count_orders(self, status):
        return self.db["orders"].count_documents({"status": status})

    def _count_customers_since(self, since):
        return self.db["customers"].count_documents({"created_at": {"$gt": since}})

    def _category_counts(self):
        rows = self.db["products"].aggregate([{"$group": {"_id": "$category", "count": {"$sum": 1}}}])
        return {row["_id"]: row["count"] for row in rows}

    def _units_sold(self):
        rows = self.db["order_items"].aggregate([
            {"$group": {"_id": "$product_id", "units": {"$sum": "$quantity"}}},
        ])
        return {row["_id"]: row["units"] for row in rows}

    # ---- activities ----
    def get_activities(self):
        return self._list("activities")

    def create_activity(self, fields):
        doc = dict(fields, timestamp=utcnow())
        doc.setdefault("metadata", None)
        return self._create("activities", doc)

    # ---- users ----
    def get_user(self, user_id):
        return self._get("users", user_id)

    def get_user_by_username(self, username):
        return _out(self.db["users"].find_one({"username": username}))

    def create_user(self, fields):
        doc = dict(fields)
        doc.setdefault("avatar", None)
        return self._create("users", doc, unique_field="username")

    # ---- sessions ----
    def _insert_session(self, token, user_id, expires_at):
        self.db["sessions"].insert_one({"_id": token, "user_id": user_id, "expires_at": expires_at})

    def _find_session(self, token):
        return self.db["sessions"].find_one({"_id": token})

    def delete_session(self, token):
        self.db["sessions"].delete_one({"_id": token})
