import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as SchemaError

import codec
import events
from database import wishlist_key
from errors import NotFound, OutOfStock, Result, ValidationError, as_result
from schemas import ProductSnapshot, WishlistItem, utcnow

logger = logging.getLogger(__name__)


class WishlistLedger:
    """Per-user wishlist: no quantities, no duplicates."""

    def __init__(self, store, locks, inventory, bus: Optional[events.EventBus] = None):
        self.store = store
        self.locks = locks
        self.inventory = inventory
        self.bus = bus

    def _load(self, user_id: str) -> List[WishlistItem]:
        return codec.load(self.store, wishlist_key(user_id), codec.decode_wishlist_item)

    def _publish(self, action: str, user_id: str, product_id: str) -> None:
        if self.bus is not None:
            self.bus.publish(events.WISHLIST, action=action, user_id=user_id, product_id=product_id)

    def get_wishlist(self, user_id: str) -> List[WishlistItem]:
        if not user_id:
            return []
        return self._load(user_id)

    def contains(self, user_id: str, product_id: str) -> bool:
        return any(i.product_id == str(product_id) for i in self.get_wishlist(user_id))

    @as_result
    def add_item(self, user_id: str, product_id: str,
                 snapshot: Union[ProductSnapshot, Dict[str, Any], None] = None) -> Result:
        if not user_id:
            raise ValidationError("Wishlist requires a user id")
        product_id = str(product_id)
        product = self.inventory.get_product(product_id)
        if product is not None and product.stock == 0:
            raise OutOfStock(f"Cannot wishlist out-of-stock product {product_id}")
        if snapshot is None:
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            snap = ProductSnapshot(name=product.title, price=product.price, image=product.image)
        else:
            try:
                data = snapshot.model_dump() if isinstance(snapshot, ProductSnapshot) else dict(snapshot)
                data.setdefault("name", data.get("title"))
                snap = ProductSnapshot.model_validate(data)
            except SchemaError as e:
                raise ValidationError(f"Invalid product snapshot: {e.errors()[0]['msg']}")

        with self.locks.hold(wishlist_key(user_id)):
            items = self._load(user_id)
            for item in items:
                if item.product_id == product_id:
                    return Result.success(item, note="already_exists")
            item = WishlistItem(product_id=product_id, name=snap.name, price=snap.price,
                                image=snap.image, added_at=utcnow())
            items.append(item)
            codec.save(self.store, wishlist_key(user_id), items)
        self._publish("added", user_id, product_id)
        return Result.success(item)

    @as_result
    def remove_item(self, user_id: str, product_id: str) -> Result:
        product_id = str(product_id)
        with self.locks.hold(wishlist_key(user_id)):
            items = self._load(user_id)
            remaining = [i for i in items if i.product_id != product_id]
            if len(remaining) == len(items):
                return Result.success(None, note="absent")
            codec.save(self.store, wishlist_key(user_id), remaining)
        self._publish("removed", user_id, product_id)
        return Result.success(None)

    @as_result
    def move_to_cart(self, user_id: str, product_id: str, cart) -> Result:
        """Add a wishlist product to the cart, then drop it from the wishlist."""
        product_id = str(product_id)
        item = next((i for i in self.get_wishlist(user_id) if i.product_id == product_id), None)
        if item is None:
            raise NotFound(f"Product {product_id} is not in the wishlist")
        added = cart.add_item(user_id, product_id,
                              ProductSnapshot(name=item.name, price=item.price, image=item.image))
        if not added.ok:
            return added
        removed = self.remove_item(user_id, product_id)
        if not removed.ok:
            return removed
        return added
