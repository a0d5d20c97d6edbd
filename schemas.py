"""
Database Schemas for DivineShop (CRM + storefront)

Each Pydantic model represents a MongoDB collection. The collection name is the
snake_case plural of the entity (e.g., OrderItem -> "order_items"). Server-owned
fields (id, created_at, order_date, timestamp) are never part of these insert
shapes; the storage layer fills them in.

Update models carry only optional fields so a PUT body works as a partial patch.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProductCategory(str, Enum):
    GAME = "game"
    SOFTWARE = "software"
    UTILITY = "utility"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ActivityType(str, Enum):
    ACCOUNT_CREATED = "account_created"
    PURCHASE = "purchase"
    PAYMENT_UPDATED = "payment_updated"
    ORDER_COMPLETED = "order_completed"
    OTHER = "other"


class Customer(BaseModel):
    """
    Customers collection schema
    Collection: "customers"
    """
    name: str = Field(..., min_length=1, description="Full name")
    email: str = Field(..., min_length=3, description="Unique contact email")
    phone: Optional[str] = Field(None, description="Phone number")
    address: Optional[str] = Field(None, description="Postal address")


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[str] = Field(None, min_length=3)
    phone: Optional[str] = None
    address: Optional[str] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection: "products"
    """
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    category: ProductCategory = Field(..., description="game|software|utility")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units in stock")
    image: Optional[str] = Field(None, description="Image URL")


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[ProductCategory] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection: "orders"

    total is whatever the client computed; the storage layer recomputes it.
    """
    customer_id: int
    status: OrderStatus = Field(OrderStatus.PENDING)
    total: float = Field(0, ge=0, description="Client-side total, advisory only")


class OrderItem(BaseModel):
    """
    Order items collection schema
    Collection: "order_items"
    """
    product_id: int
    quantity: int = Field(..., gt=0)
    price: float = Field(0, ge=0, description="Replaced by the product's current price")


class Activity(BaseModel):
    """
    Activities collection schema (append-only audit log)
    Collection: "activities"
    """
    customer_id: int
    type: ActivityType
    description: str = Field(..., min_length=1)
    metadata: Optional[str] = Field(None, description="JSON-encoded extra data")


class User(BaseModel):
    """
    CRM and storefront accounts
    Collection: "users"
    """
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, description="Plaintext on input only, stored hashed")
    name: str = Field(..., min_length=1)
    role: str = Field("customer", description="Administrator|customer|...")
    avatar: Optional[str] = None


# Request bodies

class CreateOrder(BaseModel):
    order: Order
    items: List[OrderItem] = Field(..., min_length=1)


class UpdateOrderStatus(BaseModel):
    status: OrderStatus


class Credentials(BaseModel):
    username: str = ""
    password: str = ""


class PaymentIntentRequest(BaseModel):
    amount: float = Field(..., gt=0, description="Amount in major currency units")


class CheckoutOrder(BaseModel):
    customer_id: Optional[int] = None
    total: float = Field(0, ge=0)


class ConfirmOrder(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: str = Field(..., alias="paymentIntentId", min_length=1)
    order: CheckoutOrder = Field(default_factory=CheckoutOrder)
    items: List[OrderItem] = Field(..., min_length=1)
    customer: Optional[Customer] = None
