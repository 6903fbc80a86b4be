import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field

import database
from cart import CartLedger
from dashboard import DashboardAggregator, DashboardStats
from errors import Result
from events import EventBus
from inventory import InventoryLedger, stock_status
from orders import OrderLedger
from schemas import (
    CartItem,
    CartSummary,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    Product,
    ProductCreate,
    ProductSnapshot,
    ProductUpdate,
    ShippingAddress,
    User,
    WishlistItem,
)
from users import UserDirectory
from wishlist import WishlistLedger

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")


class Services:
    """The ledgers sharing one store, lock registry and event bus."""

    def __init__(self, store, locks=None, bus: Optional[EventBus] = None):
        self.store = store
        self.locks = locks or database.KeyLocks()
        self.bus = bus or EventBus()
        self.inventory = InventoryLedger(store, self.locks, self.bus)
        self.cart = CartLedger(store, self.locks, self.inventory, self.bus)
        self.wishlist = WishlistLedger(store, self.locks, self.inventory, self.bus)
        self.orders = OrderLedger(store, self.locks, self.bus, cart=self.cart)
        self.users = UserDirectory(store, self.locks, self.bus)
        self.dashboard = DashboardAggregator(self.inventory, self.orders, self.users, self.bus)


services = Services(database.store, database.locks)


def get_services() -> Services:
    return services


app = FastAPI(title="Storefront Ledger API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Utilities

ERROR_STATUS = {
    "validation_error": 400,
    "not_found": 404,
    "out_of_stock": 409,
    "storage_error": 503,
}


def unwrap(result: Result) -> Any:
    if not result.ok:
        raise HTTPException(status_code=ERROR_STATUS.get(result.error.kind, 400), detail=result.error.message)
    return result.value


def require_admin(admin_key: Optional[str]):
    expected = os.getenv("ADMIN_KEY", "admin123")
    if admin_key != expected:
        logger.warning("Rejected admin request with invalid key")
        raise HTTPException(status_code=401, detail="Unauthorized: invalid admin key")


# Request models

class AddToCartRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = 1
    snapshot: Optional[ProductSnapshot] = None


class QuantityRequest(BaseModel):
    quantity: int


class StockRequest(BaseModel):
    stock: int


class AddToWishlistRequest(BaseModel):
    user_id: str
    product_id: str
    snapshot: Optional[ProductSnapshot] = None


class CheckoutRequest(BaseModel):
    user_id: str
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    items: Optional[List[OrderItem]] = Field(None, description="Buy-now items; cart is used when omitted")


class StatusRequest(BaseModel):
    status: str


class LoginEvent(BaseModel):
    user_id: str
    email: EmailStr
    display_name: Optional[str] = None


class UserUpdate(BaseModel):
    is_active: bool


class MutationResponse(BaseModel):
    ok: bool = True
    note: Optional[str] = None


# Routes
@app.get("/")
def root():
    return {"message": "Storefront ledger API running"}


@app.get("/test")
def test_database(svc: Services = Depends(get_services)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "store": type(svc.store).__name__,
        "keys": [],
    }
    try:
        resp["keys"] = sorted(svc.store.keys())[:10]
        resp["database"] = "✅ Connected & Working" if database.db is not None else "⚠️ In-memory store"
    except Exception as e:
        resp["database"] = f"❌ Error: {str(e)[:80]}"
    return resp


@app.get("/health")
def health():
    return {"ok": True}


# Products
@app.get("/products", response_model=List[Product])
def list_products(category: Optional[str] = None, svc: Services = Depends(get_services)):
    products = svc.inventory.list_products()
    if category:
        products = [p for p in products if p.category == category]
    return products


@app.get("/products/{product_id}")
def get_product(product_id: str, svc: Services = Depends(get_services)):
    product = svc.inventory.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return {**product.to_json(), "stockStatus": stock_status(product.stock).value}


@app.post("/products", response_model=Product)
def create_product(payload: ProductCreate, x_admin_key: Optional[str] = Header(None),
                   svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return unwrap(svc.inventory.create_product(payload))


@app.patch("/products/{product_id}", response_model=Product)
def update_product(product_id: str, payload: ProductUpdate, x_admin_key: Optional[str] = Header(None),
                   svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return unwrap(svc.inventory.update_product(product_id, payload))


@app.put("/products/{product_id}/stock", response_model=Product)
def adjust_stock(product_id: str, payload: StockRequest, x_admin_key: Optional[str] = Header(None),
                 svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return unwrap(svc.inventory.adjust_stock(product_id, payload.stock))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, x_admin_key: Optional[str] = Header(None),
                   svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return {"deleted": unwrap(svc.inventory.delete_product(product_id))}


# Cart
@app.get("/cart/{user_id}", response_model=CartSummary)
def get_cart(user_id: str, svc: Services = Depends(get_services)):
    return svc.cart.summary(user_id)


@app.post("/cart/add")
def add_to_cart(payload: AddToCartRequest, svc: Services = Depends(get_services)):
    result = svc.cart.add_item(payload.user_id, payload.product_id, payload.snapshot, payload.quantity)
    item: CartItem = unwrap(result)
    return {"ok": True, "note": result.note, "item": item.to_json()}


@app.put("/cart/{user_id}/{product_id}")
def set_cart_quantity(user_id: str, product_id: str, payload: QuantityRequest,
                      svc: Services = Depends(get_services)):
    result = svc.cart.set_quantity(user_id, product_id, payload.quantity)
    item = unwrap(result)
    return {"ok": True, "note": result.note, "quantity": item.quantity if item else 0}


@app.delete("/cart/{user_id}/{product_id}", response_model=MutationResponse)
def remove_from_cart(user_id: str, product_id: str, svc: Services = Depends(get_services)):
    result = svc.cart.remove_item(user_id, product_id)
    unwrap(result)
    return MutationResponse(note=result.note)


@app.delete("/cart/{user_id}", response_model=MutationResponse)
def clear_cart(user_id: str, svc: Services = Depends(get_services)):
    unwrap(svc.cart.clear(user_id))
    return MutationResponse()


# Wishlist
@app.get("/wishlist/{user_id}", response_model=List[WishlistItem])
def get_wishlist(user_id: str, svc: Services = Depends(get_services)):
    return svc.wishlist.get_wishlist(user_id)


@app.post("/wishlist/add", response_model=MutationResponse)
def add_to_wishlist(payload: AddToWishlistRequest, svc: Services = Depends(get_services)):
    result = svc.wishlist.add_item(payload.user_id, payload.product_id, payload.snapshot)
    unwrap(result)
    return MutationResponse(note=result.note)


@app.delete("/wishlist/{user_id}/{product_id}", response_model=MutationResponse)
def remove_from_wishlist(user_id: str, product_id: str, svc: Services = Depends(get_services)):
    result = svc.wishlist.remove_item(user_id, product_id)
    unwrap(result)
    return MutationResponse(note=result.note)


@app.post("/wishlist/{user_id}/{product_id}/move", response_model=MutationResponse)
def move_wishlist_to_cart(user_id: str, product_id: str, svc: Services = Depends(get_services)):
    result = svc.wishlist.move_to_cart(user_id, product_id, svc.cart)
    unwrap(result)
    return MutationResponse(note=result.note)


# Checkout
@app.post("/checkout", response_model=Order)
def checkout(payload: CheckoutRequest, svc: Services = Depends(get_services)):
    return unwrap(svc.orders.checkout(
        payload.user_id,
        payload.shipping_address,
        payload.payment_method,
        items=payload.items,
    ))


# Orders
@app.get("/orders/user/{user_id}", response_model=List[Order])
def user_orders(user_id: str, svc: Services = Depends(get_services)):
    return svc.orders.get_orders_for_user(user_id)


@app.get("/orders", response_model=List[Order])
def all_orders(status: Optional[OrderStatus] = None, x_admin_key: Optional[str] = Header(None),
               svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return svc.orders.get_all_orders(status)


@app.get("/orders/{order_number}", response_model=Order)
def get_order(order_number: str, svc: Services = Depends(get_services)):
    order = svc.orders.get_order(order_number)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.patch("/orders/{order_number}", response_model=Order)
def update_order_status(order_number: str, payload: StatusRequest, x_admin_key: Optional[str] = Header(None),
                        svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return unwrap(svc.orders.update_status(order_number, payload.status))


@app.delete("/orders/{order_number}")
def delete_order(order_number: str, x_admin_key: Optional[str] = Header(None),
                 svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return {"deleted": unwrap(svc.orders.delete_order(order_number))}


@app.post("/orders/reconcile")
def reconcile_orders(x_admin_key: Optional[str] = Header(None), svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return {"repaired": svc.orders.reconcile_indexes()}


# Users
@app.post("/auth/login-event", response_model=User)
def login_event(payload: LoginEvent, svc: Services = Depends(get_services)):
    return unwrap(svc.users.record_login(payload.user_id, payload.email, payload.display_name))


@app.get("/users", response_model=List[User])
def list_users(x_admin_key: Optional[str] = Header(None), svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return svc.users.list_users()


@app.patch("/users/{user_id}", response_model=User)
def update_user(user_id: str, payload: UserUpdate, x_admin_key: Optional[str] = Header(None),
                svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return unwrap(svc.users.set_active(user_id, payload.is_active))


@app.delete("/users/{user_id}")
def delete_user(user_id: str, x_admin_key: Optional[str] = Header(None), svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return {"deleted": unwrap(svc.users.delete_user(user_id))}


# Admin
@app.get("/admin/stats", response_model=DashboardStats)
def admin_stats(x_admin_key: Optional[str] = Header(None), svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return svc.dashboard.stats()


@app.post("/admin/catalog/merge")
def merge_catalog(products: List[Dict[str, Any]], x_admin_key: Optional[str] = Header(None),
                  svc: Services = Depends(get_services)):
    require_admin(x_admin_key)
    return unwrap(svc.inventory.merge_catalog(products))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
