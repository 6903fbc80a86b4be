import logging
import threading
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

import events
from inventory import LOW_STOCK_THRESHOLD
from schemas import Order, OrderStatus, Product, User

logger = logging.getLogger(__name__)

RECENT_ORDERS = 5


class DashboardStats(BaseModel):
    total_orders: int = 0
    total_products: int = 0
    total_users: int = 0
    total_revenue: float = 0.0
    pending_orders: int = 0
    low_stock_products: int = 0
    out_of_stock_products: int = 0
    in_stock_products: int = 0
    recent_orders: List[Order] = Field(default_factory=list)


def summarize(products: Iterable[Product], orders: Iterable[Order], users: Iterable[User],
              low_stock_threshold: int = LOW_STOCK_THRESHOLD) -> DashboardStats:
    """Admin summary over point-in-time snapshots. Empty inputs give all zeros."""
    products = list(products or [])
    orders = list(orders or [])
    users = list(users or [])
    revenue = round(sum(o.total for o in orders), 2)
    newest = sorted(orders, key=lambda o: o.created_at, reverse=True)
    return DashboardStats(
        total_orders=len(orders),
        total_products=len(products),
        total_users=len(users),
        total_revenue=revenue,
        pending_orders=sum(1 for o in orders if o.status == OrderStatus.PROCESSING),
        low_stock_products=sum(1 for p in products if 0 < p.stock <= low_stock_threshold),
        out_of_stock_products=sum(1 for p in products if p.stock == 0),
        in_stock_products=sum(1 for p in products if p.stock > low_stock_threshold),
        recent_orders=newest[:RECENT_ORDERS],
    )


class DashboardAggregator:
    """Caches the admin summary and recomputes it after any ledger change.

    A summary computed while a change event arrives is returned but not
    cached, since some of its reads may predate the change.
    """

    def __init__(self, inventory, orders, users, bus: Optional[events.EventBus] = None):
        self.inventory = inventory
        self.orders = orders
        self.users = users
        self._stats: Optional[DashboardStats] = None
        self._generation = 0
        self._lock = threading.Lock()
        self._cached = bus is not None
        if bus is not None:
            bus.subscribe(events.ALL, self._invalidate)

    def _invalidate(self, topic, payload):
        with self._lock:
            self._generation += 1
            self._stats = None

    def stats(self) -> DashboardStats:
        with self._lock:
            stats, generation = self._stats, self._generation
        if stats is None:
            stats = summarize(self.inventory.list_products(), self.orders.get_all_orders(),
                              self.users.list_users())
            if self._cached:
                with self._lock:
                    if generation == self._generation:
                        self._stats = stats
        return stats

    def refresh(self) -> DashboardStats:
        self._invalidate(None, {})
        return self.stats()
