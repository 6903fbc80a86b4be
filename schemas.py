"""
Record Schemas for the storefront ledgers

Each Pydantic model corresponds to one record kind kept in the key-value
store. Stored JSON uses camelCase field names (productId, createdAt, ...),
so every record model accepts and emits camelCase aliases while Python code
uses snake_case attributes.

- Product      -> "adminProducts"
- CartItem     -> "cart_<userId>"
- WishlistItem -> "wishlist_<userId>"
- Order        -> "all_orders" (+ order numbers under "user_orders_<userId>")
- User         -> "users"
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

PLACEHOLDER_IMAGE = "https://via.placeholder.com/300"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StockStatus(str, Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class OrderStatus(str, Enum):
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit-card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank-transfer"
    CASH_ON_DELIVERY = "cash-on-delivery"


class Product(Record):
    """Catalog product schema"""
    id: str = Field(..., description="Product id")
    title: str = Field(..., description="Product title")
    price: float = Field(..., ge=0, description="Unit price")
    category: str = Field("", description="Product category")
    image: str = Field(PLACEHOLDER_IMAGE, description="Primary image URL")
    stock: int = Field(0, ge=0, description="Units in stock")
    description: str = Field("", description="Product description")
    created_at: datetime = Field(default_factory=utcnow)


class ProductCreate(Record):
    title: str
    price: float = Field(..., ge=0)
    category: str = ""
    image: Optional[str] = None
    stock: int = Field(0, ge=0)
    description: str = ""


class ProductUpdate(Record):
    title: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    image: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None


class ProductSnapshot(Record):
    """Product fields captured into a cart or wishlist line at add time."""
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None


class CartItem(Record):
    product_id: str = Field(..., description="ID of the product")
    name: str = Field(..., description="Product title at add time")
    price: float = Field(..., ge=0, description="Unit price at add time")
    quantity: int = Field(1, ge=1, description="Quantity of the product")
    image: Optional[str] = None
    added_at: datetime = Field(default_factory=utcnow)


class CartLine(CartItem):
    """Cart line enriched with current catalog availability."""
    available: bool = True
    stock: int = 0


class WishlistItem(Record):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    added_at: datetime = Field(default_factory=utcnow)


class OrderItem(Record):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class ShippingAddress(Record):
    full_name: str = ""
    email: Optional[EmailStr] = None
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


class Totals(Record):
    subtotal: float = 0.0
    tax: float = 0.0
    shipping: float = 0.0
    total: float = 0.0


class Order(Record):
    order_number: str = Field(..., description="Globally unique order number")
    user_id: str
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = Field(0.0, ge=0)
    tax: float = Field(0.0, ge=0)
    shipping: float = Field(0.0, ge=0)
    total: float = Field(0.0, ge=0)
    status: OrderStatus = OrderStatus.PROCESSING
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_status: str = Field("completed", description="Reference from payment step")
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    created_at: datetime = Field(default_factory=utcnow)


class CartSummary(Totals):
    items: List[CartLine] = Field(default_factory=list)
    item_count: int = 0


class User(Record):
    """Users directory schema"""
    id: str = Field(..., description="Identity provider uid")
    email: EmailStr = Field(..., description="Email address")
    display_name: str = Field("", description="Display name")
    created_at: datetime = Field(default_factory=utcnow)
    last_login: datetime = Field(default_factory=utcnow)
    login_count: int = Field(1, ge=0)
    is_active: bool = Field(True, description="Whether user is active")
    role: str = Field("user", description="Role: user or admin")
