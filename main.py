import json
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    SESSION_COOKIE,
    clear_session_cookie,
    get_optional_user,
    get_settings,
    get_storage,
    hash_password,
    public_user,
    set_session_cookie,
    verify_password,
)
from config import Settings
from database import (
    DuplicateKeyError,
    InsufficientStockError,
    InvalidTransitionError,
    MongoStorage,
    ProductNotFoundError,
    Record,
    Storage,
    StorageError,
)
from payments import PaymentError, PaymentGateway, to_minor_units
from schemas import (
    ActivityType,
    Activity,
    ConfirmOrder,
    CreateOrder,
    Credentials,
    Customer,
    CustomerUpdate,
    OrderStatus,
    PaymentIntentRequest,
    Product,
    ProductUpdate,
    UpdateOrderStatus,
    User,
)

logger = logging.getLogger("divineshop")

router = APIRouter(prefix="/api")

STORAGE_ERROR_STATUS = {
    DuplicateKeyError: 409,
    ProductNotFoundError: 404,
    InsufficientStockError: 409,
    InvalidTransitionError: 400,
}

# Routes answering with the {success, data, message} envelope
ENVELOPE_PREFIXES = ("/api/auth", "/api/payments")


# Helpers
def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_payments(request: Request) -> PaymentGateway:
    return request.app.state.payments


def parse_limit(raw: str, default: int) -> int:
    try:
        limit = int(raw)
    except ValueError:
        return default
    return limit if limit > 0 else default


def patch_from(model: BaseModel, required: tuple = ()) -> dict:
    """Fields the client actually sent; null is ignored for required fields."""
    patch = model.model_dump(mode="json", exclude_unset=True)
    return {k: v for k, v in patch.items() if not (k in required and v is None)}


def envelope(status_code: int, success: bool, message: Optional[str] = None, data=None) -> JSONResponse:
    body = {"success": success}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def log_activity(storage: Storage, customer_id: int, type_: ActivityType, description: str, metadata: Optional[dict] = None):
    return storage.create_activity({
        "customer_id": customer_id,
        "type": type_.value,
        "description": description,
        "metadata": json.dumps(metadata) if metadata is not None else None,
    })


def change_order_status(storage: Storage, order_id: int, status: OrderStatus) -> Optional[Record]:
    """Apply a status transition and record completion in the activity log."""
    before = storage.get_order(order_id)
    if before is None:
        return None
    order = storage.update_order_status(order_id, status.value)
    if order is None:
        return None
    if status == OrderStatus.COMPLETED and before["status"] != OrderStatus.COMPLETED.value:
        customer = storage.get_customer(order["customer_id"])
        name = customer["name"] if customer else f"Customer #{order['customer_id']}"
        log_activity(
            storage,
            order["customer_id"],
            ActivityType.ORDER_COMPLETED,
            f"{name} completed purchase",
            {"order_id": order_id},
        )
    return order


@router.get("/health")
def health(storage: Storage = Depends(get_storage)):
    response = {"status": "ok", "database": "Connected"}
    try:
        storage.ping()
    except Exception as e:
        logger.warning("Database ping failed: %s", e)
        response["database"] = f"Error: {str(e)[:80]}"
    return response


# ============ Customer Endpoints ============
@router.get("/customers", response_model=List[dict])
def list_customers(storage: Storage = Depends(get_storage)):
    return storage.get_customers()


@router.get("/customers/search/{query}", response_model=List[dict])
def search_customers(query: str, storage: Storage = Depends(get_storage)):
    return storage.search_customers(query)


@router.get("/customers/{customer_id}", response_model=dict)
def get_customer(customer_id: int, storage: Storage = Depends(get_storage)):
    customer = storage.get_customer(customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.post("/customers", response_model=dict, status_code=201)
def create_customer(customer: Customer, storage: Storage = Depends(get_storage)):
    record = storage.create_customer(customer.model_dump(mode="json"))
    log_activity(storage, record["id"], ActivityType.ACCOUNT_CREATED, f"{record['name']} created a new account")
    return record


@router.put("/customers/{customer_id}", response_model=dict)
def update_customer(customer_id: int, payload: CustomerUpdate, storage: Storage = Depends(get_storage)):
    customer = storage.update_customer(customer_id, patch_from(payload, required=("name", "email")))
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.delete("/customers/{customer_id}")
def delete_customer(customer_id: int, storage: Storage = Depends(get_storage)):
    if not storage.delete_customer(customer_id):
        raise HTTPException(status_code=404, detail="Customer not found")
    return {"success": True}


# ============ Product Endpoints ============
@router.get("/products", response_model=List[dict])
def list_products(storage: Storage = Depends(get_storage)):
    return storage.get_products()


@router.get("/products/category/{category}", response_model=List[dict])
def products_by_category(category: str, storage: Storage = Depends(get_storage)):
    return storage.get_products_by_category(category)


@router.get("/products/search/{query}", response_model=List[dict])
def search_products(query: str, storage: Storage = Depends(get_storage)):
    return storage.search_products(query)


@router.get("/products/{product_id}", response_model=dict)
def get_product(product_id: int, storage: Storage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.post("/products", response_model=dict, status_code=201)
def add_product(product: Product, storage: Storage = Depends(get_storage)):
    return storage.create_product(product.model_dump(mode="json"))


@router.put("/products/{product_id}", response_model=dict)
def update_product(product_id: int, payload: ProductUpdate, storage: Storage = Depends(get_storage)):
    product = storage.update_product(product_id, patch_from(payload, required=("name", "category", "price", "stock")))
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.delete("/products/{product_id}")
def delete_product(product_id: int, storage: Storage = Depends(get_storage)):
    if not storage.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True}


# ============ Orders Endpoints ============
@router.get("/orders", response_model=List[dict])
def list_orders(storage: Storage = Depends(get_storage)):
    return storage.get_orders()


@router.get("/orders/recent/{limit}", response_model=List[dict])
def recent_orders(limit: str, storage: Storage = Depends(get_storage)):
    return storage.get_recent_orders(parse_limit(limit, 5))


@router.get("/orders/customer/{customer_id}", response_model=List[dict])
def customer_orders(customer_id: int, storage: Storage = Depends(get_storage)):
    return storage.get_orders_by_customer(customer_id)


@router.get("/orders/{order_id}", response_model=dict)
def get_order(order_id: int, storage: Storage = Depends(get_storage)):
    order = storage.get_order_with_details(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post("/orders", response_model=dict, status_code=201)
def create_order(payload: CreateOrder, storage: Storage = Depends(get_storage)):
    if storage.status_policy == "strict" and payload.order.status != OrderStatus.PENDING:
        raise HTTPException(status_code=400, detail="New orders must start as pending")
    customer = storage.get_customer(payload.order.customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")

    order = storage.create_order(
        payload.order.model_dump(mode="json"),
        [item.model_dump(mode="json") for item in payload.items],
    )
    log_activity(
        storage,
        customer["id"],
        ActivityType.PURCHASE,
        f"{customer['name']} placed an order",
        {"order_id": order["id"]},
    )
    return order


@router.put("/orders/{order_id}/status", response_model=dict)
def update_order_status(order_id: int, payload: UpdateOrderStatus, storage: Storage = Depends(get_storage)):
    order = change_order_status(storage, order_id, payload.status)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


# ============ Activity Endpoints ============
@router.get("/activities", response_model=List[dict])
def list_activities(storage: Storage = Depends(get_storage)):
    return storage.get_activities()


@router.get("/activities/recent/{limit}", response_model=List[dict])
def recent_activities(limit: str, storage: Storage = Depends(get_storage)):
    return storage.get_recent_activities(parse_limit(limit, 5))


@router.post("/activities", response_model=dict, status_code=201)
def create_activity(activity: Activity, storage: Storage = Depends(get_storage)):
    return storage.create_activity(activity.model_dump(mode="json"))


# ============ Dashboard ============
@router.get("/dashboard/metrics", response_model=dict)
def dashboard_metrics(storage: Storage = Depends(get_storage)):
    return storage.get_dashboard_metrics()


@router.get("/dashboard/category-stats", response_model=List[dict])
def category_stats(storage: Storage = Depends(get_storage)):
    return storage.get_product_category_stats()


@router.get("/dashboard/popular-products/{limit}", response_model=List[dict])
def popular_products(limit: str, storage: Storage = Depends(get_storage)):
    return storage.get_popular_products(parse_limit(limit, 3))


# ============ Users & Auth ============
@router.get("/users/{user_id}", response_model=dict)
def get_user(user_id: int, storage: Storage = Depends(get_storage)):
    user = storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@router.post("/auth/signup")
def signup(payload: User, storage: Storage = Depends(get_storage)):
    if storage.get_user_by_username(payload.username):
        return envelope(409, False, "Username already exists. Please choose a different username.")
    fields = payload.model_dump(exclude={"password"})
    fields["password_hash"] = hash_password(payload.password)
    try:
        user = storage.create_user(fields)
    except DuplicateKeyError:
        return envelope(409, False, "Username already exists. Please choose a different username.")
    logger.info("Created user %s", user["username"])
    return envelope(201, True, "User created successfully", public_user(user))


@router.post("/auth/login")
def login(
    payload: Credentials,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    if not payload.username or not payload.password:
        return envelope(400, False, "Username and password are required")

    user = storage.get_user_by_username(payload.username)
    if not user or not verify_password(payload.password, user.get("password_hash")):
        return envelope(401, False, "Invalid username or password")

    token = storage.create_session(user["id"], settings.session_max_age)
    response = envelope(200, True, "Login successful", public_user(user))
    set_session_cookie(response, token, settings)
    return response


@router.post("/auth/logout")
def logout(
    request: Request,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        storage.delete_session(token)
    response = envelope(200, True, "Logged out successfully")
    clear_session_cookie(response, settings)
    return response


@router.get("/auth/me")
def me(user: Optional[Record] = Depends(get_optional_user)):
    if not user:
        return envelope(401, False, "Not authenticated")
    return envelope(200, True, "Authentication successful", public_user(user))


# ============ Payments ============
@router.post("/payments/create-payment-intent")
def create_payment_intent(
    payload: PaymentIntentRequest,
    payments: PaymentGateway = Depends(get_payments),
    idempotency_key: Optional[str] = Header(None),
):
    intent = payments.create_payment_intent(payload.amount, idempotency_key=idempotency_key)
    return {
        "success": True,
        "client_secret": intent.get("client_secret"),
        "payment_intent_id": intent.get("id"),
    }


def resolve_checkout_customer(storage: Storage, payload: ConfirmOrder) -> Record:
    if payload.order.customer_id is not None:
        customer = storage.get_customer(payload.order.customer_id)
        if not customer:
            raise HTTPException(status_code=404, detail="Customer not found")
        return customer
    if payload.customer is None:
        raise HTTPException(status_code=400, detail="Customer details are required")

    customer = storage.get_customer_by_email(payload.customer.email)
    if customer:
        return customer
    customer = storage.create_customer(payload.customer.model_dump(mode="json"))
    log_activity(
        storage,
        customer["id"],
        ActivityType.ACCOUNT_CREATED,
        f"{customer['name']} created an account during checkout",
    )
    return customer


@router.post("/payments/confirm-order")
def confirm_order(
    payload: ConfirmOrder,
    storage: Storage = Depends(get_storage),
    payments: PaymentGateway = Depends(get_payments),
):
    if storage.get_order_by_payment_intent(payload.payment_intent_id):
        return envelope(409, False, "An order was already placed for this payment")

    intent = payments.retrieve_payment_intent(payload.payment_intent_id)
    if intent.get("status") != "succeeded":
        return envelope(400, False, "Payment has not been completed")

    items = [item.model_dump(mode="json") for item in payload.items]
    try:
        lines, total = storage.price_items(items)
        if int(intent.get("amount", 0)) < to_minor_units(total):
            logger.warning(
                "Payment intent %s amount %s does not cover order total %.2f",
                payload.payment_intent_id, intent.get("amount"), total,
            )
            return envelope(400, False, "Payment amount does not cover the order total")
        storage.check_stock(lines)

        try:
            customer = resolve_checkout_customer(storage, payload)
        except HTTPException as e:
            return envelope(e.status_code, False, e.detail)

        order = storage.create_order(
            {
                "customer_id": customer["id"],
                "status": OrderStatus.PROCESSING.value,
                "total": payload.order.total,
                "payment_intent_id": payload.payment_intent_id,
            },
            items,
        )
    except DuplicateKeyError as e:
        if e.field == "payment_intent_id":
            return envelope(409, False, "An order was already placed for this payment")
        return envelope(409, False, str(e))
    except StorageError as e:
        return envelope(STORAGE_ERROR_STATUS.get(type(e), 400), False, str(e))

    log_activity(
        storage,
        customer["id"],
        ActivityType.PURCHASE,
        f"Order #{order['id']} placed successfully",
        {"order_id": order["id"], "payment_intent_id": payload.payment_intent_id},
    )
    order = change_order_status(storage, order["id"], OrderStatus.COMPLETED)
    return envelope(201, True, "Order placed successfully", order)


# ============ Error handling ============
def wants_envelope(request: Request) -> bool:
    return request.url.path.startswith(ENVELOPE_PREFIXES)


def describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"Invalid request body: {field}: {first.get('msg')}" if field else f"Invalid request body: {first.get('msg')}"


def register_error_handlers(app: FastAPI):
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if wants_envelope(request):
            return envelope(exc.status_code, False, str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        if wants_envelope(request):
            return envelope(400, False, describe_validation_error(exc))
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        status_code = STORAGE_ERROR_STATUS.get(type(exc), 400)
        if wants_envelope(request):
            return envelope(status_code, False, str(exc))
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    @app.exception_handler(PaymentError)
    async def payment_error(request: Request, exc: PaymentError):
        return JSONResponse(status_code=502, content={"success": False, "message": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    payments: Optional[PaymentGateway] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    if storage is None:
        storage = MongoStorage(
            settings.database_url,
            settings.database_name,
            stock_policy=settings.stock_policy,
            status_policy=settings.status_policy,
        )
    if payments is None:
        payments = PaymentGateway(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            currency=settings.payment_currency,
            max_retries=settings.payment_max_retries,
            timeout=settings.payment_timeout,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage.ensure_indexes()
        yield
        storage.close()

    app = FastAPI(title="DivineShop API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage
    app.state.payments = payments

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response: Response = await call_next(request)
        if request.url.path.startswith("/api"):
            duration = (time.perf_counter() - start) * 1000
            logger.info("%s %s %s in %.0fms", request.method, request.url.path, response.status_code, duration)
        return response

    @app.get("/")
    def root():
        return {"name": "DivineShop", "status": "ok"}

    register_error_handlers(app)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
