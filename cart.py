import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as SchemaError

import codec
import events
from database import cart_key
from errors import NotFound, OutOfStock, Result, ValidationError, as_result
from orders import quote
from schemas import CartItem, CartLine, CartSummary, ProductSnapshot, utcnow

logger = logging.getLogger(__name__)


def _check_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"Quantity must be an integer, got {quantity!r}")
    return quantity


class CartLedger:
    """Per-user cart lines, one line per product, in insertion order."""

    def __init__(self, store, locks, inventory, bus: Optional[events.EventBus] = None):
        self.store = store
        self.locks = locks
        self.inventory = inventory
        self.bus = bus

    def _load(self, user_id: str) -> List[CartItem]:
        return codec.load(self.store, cart_key(user_id), codec.decode_cart_item)

    def _save(self, user_id: str, items: List[CartItem]) -> None:
        codec.save(self.store, cart_key(user_id), items)

    def _publish(self, action: str, user_id: str, product_id: Optional[str] = None) -> None:
        if self.bus is not None:
            self.bus.publish(events.CART, action=action, user_id=user_id, product_id=product_id)

    def _snapshot(self, product_id: str, snapshot) -> ProductSnapshot:
        if snapshot is not None:
            try:
                if isinstance(snapshot, ProductSnapshot):
                    return snapshot
                data = dict(snapshot)
                data.setdefault("name", data.get("title"))
                return ProductSnapshot.model_validate(data)
            except SchemaError as e:
                raise ValidationError(f"Invalid product snapshot: {e.errors()[0]['msg']}")
        product = self.inventory.get_product(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        return ProductSnapshot(name=product.title, price=product.price, image=product.image)

    def get_cart(self, user_id: str) -> List[CartItem]:
        if not user_id:
            return []
        return self._load(user_id)

    def get_lines(self, user_id: str) -> List[CartLine]:
        """Cart lines with current availability; vanished products show as unavailable."""
        lines = []
        for item in self.get_cart(user_id):
            product = self.inventory.get_product(item.product_id)
            stock = product.stock if product is not None else 0
            lines.append(CartLine(**item.model_dump(), available=stock > 0, stock=stock))
        return lines

    def summary(self, user_id: str) -> CartSummary:
        lines = self.get_lines(user_id)
        totals = quote(lines) if lines else None
        return CartSummary(
            items=lines,
            item_count=sum(line.quantity for line in lines),
            **(totals.model_dump() if totals else {}),
        )

    @as_result
    def add_item(self, user_id: str, product_id: str,
                 snapshot: Union[ProductSnapshot, Dict[str, Any], None] = None,
                 quantity: int = 1) -> Result:
        """Add ``quantity`` units (default one) of a product to the cart.

        The requested quantity is clamped to the stock on hand; a product with
        no stock, or missing from the catalog, is rejected with OutOfStock.
        """
        if not user_id:
            raise ValidationError("Cart requires a user id")
        product_id = str(product_id)
        quantity = _check_quantity(quantity)
        if quantity < 1:
            raise ValidationError(f"Quantity must be at least 1, got {quantity}")
        stock = self.inventory.stock_of(product_id)
        if stock == 0:
            raise OutOfStock(f"Product {product_id} is out of stock")
        note = None
        if quantity > stock:
            quantity, note = stock, "clamped"
        snap = self._snapshot(product_id, snapshot)

        with self.locks.hold(cart_key(user_id)):
            items = self._load(user_id)
            for item in items:
                if item.product_id == product_id:
                    item.quantity += quantity
                    line = item
                    break
            else:
                line = CartItem(product_id=product_id, name=snap.name, price=snap.price,
                                quantity=quantity, image=snap.image, added_at=utcnow())
                items.append(line)
            self._save(user_id, items)
        self._publish("added", user_id, product_id)
        return Result.success(line, note=note)

    @as_result
    def set_quantity(self, user_id: str, product_id: str, quantity: int) -> Result:
        """Set a line's quantity: below 1 removes it, above stock clamps to stock."""
        product_id = str(product_id)
        quantity = _check_quantity(quantity)
        if quantity < 1:
            removed = self.remove_item(user_id, product_id)
            if not removed.ok:
                return removed
            return Result.success(None, note="removed" if removed.note is None else removed.note)

        stock = self.inventory.stock_of(product_id)
        if stock == 0:
            raise OutOfStock(f"Product {product_id} is out of stock")
        note = None
        if quantity > stock:
            quantity, note = stock, "clamped"

        with self.locks.hold(cart_key(user_id)):
            items = self._load(user_id)
            for item in items:
                if item.product_id == product_id:
                    item.quantity = quantity
                    break
            else:
                raise NotFound(f"Product {product_id} is not in the cart")
            self._save(user_id, items)
        self._publish("quantity", user_id, product_id)
        return Result.success(item, note=note)

    @as_result
    def remove_item(self, user_id: str, product_id: str) -> Result:
        product_id = str(product_id)
        with self.locks.hold(cart_key(user_id)):
            items = self._load(user_id)
            remaining = [i for i in items if i.product_id != product_id]
            if len(remaining) == len(items):
                return Result.success(None, note="absent")
            self._save(user_id, remaining)
        self._publish("removed", user_id, product_id)
        return Result.success(None)

    @as_result
    def clear(self, user_id: str) -> None:
        with self.locks.hold(cart_key(user_id)):
            self._save(user_id, [])
        self._publish("cleared", user_id)

    @as_result
    def remove_ordered(self, user_id: str, lines: Iterable[Any]) -> None:
        """Take checked-out quantities out of the cart.

        Each line's quantity is subtracted from the matching cart line, so units
        added after the order was built stay in the cart.
        """
        ordered: Dict[str, int] = {}
        for line in lines:
            ordered[line.product_id] = ordered.get(line.product_id, 0) + line.quantity
        with self.locks.hold(cart_key(user_id)):
            remaining = []
            for item in self._load(user_id):
                item.quantity -= ordered.pop(item.product_id, 0)
                if item.quantity > 0:
                    remaining.append(item)
            self._save(user_id, remaining)
        self._publish("checked_out", user_id)
