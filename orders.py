"""
Order ledger.

Order records live under a single global key, which is the only place an
order's items, totals and status are stored. Each user's entry holds just
the numbers of that user's orders, so the per-user history and the admin
listing are two views over the same records and cannot disagree.
Entries in the older layout (full orders under each user, or the global
records under allOrders) are read as part of the global records and are
folded into them on the next write.

Status moves along a fixed table:

    processing -> shipped -> delivered
    processing -> cancelled
    shipped    -> cancelled

delivered and cancelled are terminal.

Checkout does not touch product stock, neither on placement nor on
cancellation.
"""

import logging
import secrets
import string
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError as SchemaError

import codec
import events
from database import (
    GLOBAL_ORDERS_KEY,
    LEGACY_GLOBAL_ORDERS_KEY,
    USER_ORDERS_PREFIX,
    cart_key,
    user_orders_key,
)
from errors import NotFound, Result, StorageError, ValidationError, as_result
from schemas import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    ShippingAddress,
    Totals,
    utcnow,
)

logger = logging.getLogger(__name__)

TAX_RATE = Decimal("0.10")
FREE_SHIPPING_OVER = Decimal("50")
FLAT_SHIPPING = Decimal("5.99")
CENT = Decimal("0.01")

TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS.get(current, set())


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS.get(status)


def quote(items: Iterable[Any]) -> Totals:
    """Price a list of lines (anything with ``price`` and ``quantity``).

    subtotal = sum(price * quantity); tax = 10% of subtotal; shipping is free
    above 50, otherwise a flat 5.99.
    """
    subtotal = sum((Decimal(str(i.price)) * i.quantity for i in items), Decimal("0"))
    subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)
    tax = (subtotal * TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping = Decimal("0.00") if subtotal > FREE_SHIPPING_OVER else FLAT_SHIPPING
    total = subtotal + tax + shipping
    return Totals(subtotal=float(subtotal), tax=float(tax), shipping=float(shipping), total=float(total))


def new_order_number() -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def _parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status {value!r}")


def _parse_payment(value: Union[str, PaymentMethod]) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"Unknown payment method {value!r}")


def _newest_first(orders: List[Order]) -> List[Order]:
    return sorted(orders, key=lambda o: o.created_at, reverse=True)


class OrderLedger:
    def __init__(self, store, locks, bus: Optional[events.EventBus] = None, cart=None):
        self.store = store
        self.locks = locks
        self.bus = bus
        self.cart = cart

    # ---------- storage ----------

    def _load_stored(self) -> List[Order]:
        orders = codec.load(self.store, GLOBAL_ORDERS_KEY, codec.decode_order)
        known = {o.order_number for o in orders}
        # older layout kept the global records under allOrders
        for order in codec.load(self.store, LEGACY_GLOBAL_ORDERS_KEY, codec.decode_order):
            if order.order_number not in known:
                orders.append(order)
                known.add(order.order_number)
        return orders

    def _load_embedded(self) -> List[Order]:
        embedded: List[Order] = []
        for key in sorted(k for k in self.store.keys() if k.startswith(USER_ORDERS_PREFIX)):
            embedded.extend(codec.decode_order_index(key, self.store.get(key))[1])
        return embedded

    def _load_global(self) -> List[Order]:
        """Every order record, including orders still embedded in legacy user entries.

        The global entry wins over an embedded copy with the same number, so an
        order updated since the legacy entry was written reads its new state.
        """
        orders = self._load_stored()
        known = {o.order_number for o in orders}
        for order in self._load_embedded():
            if order.order_number not in known:
                orders.append(order)
                known.add(order.order_number)
        return orders

    def _load_index(self, user_id: str):
        key = user_orders_key(user_id)
        return codec.decode_order_index(key, self.store.get(key))

    def _retire_legacy_key(self) -> None:
        if self.store.get(LEGACY_GLOBAL_ORDERS_KEY) is not None:
            self.store.delete(LEGACY_GLOBAL_ORDERS_KEY)
            logger.info("Migrated %s into %s", LEGACY_GLOBAL_ORDERS_KEY, GLOBAL_ORDERS_KEY)

    def _save_global(self, orders: List[Order]) -> None:
        codec.save(self.store, GLOBAL_ORDERS_KEY, orders)
        self._retire_legacy_key()

    def _commit(self, orders: List[Order], user_id: str, numbers: List[str]) -> None:
        """Write the global records then the user's index as one logical write.

        If the index write fails the global entry is restored to its previous
        text, so a failed call leaves both entries as they were.
        """
        previous = self.store.get(GLOBAL_ORDERS_KEY)
        codec.save(self.store, GLOBAL_ORDERS_KEY, orders)
        try:
            self.store.set(user_orders_key(user_id), codec.encode_order_index(numbers))
        except StorageError:
            logger.error("Order index write for %s failed, rolling back global orders", user_id)
            if previous is None:
                self.store.delete(GLOBAL_ORDERS_KEY)
            else:
                self.store.set(GLOBAL_ORDERS_KEY, previous)
            raise
        self._retire_legacy_key()

    def _publish(self, action: str, order: Order) -> None:
        if self.bus is not None:
            self.bus.publish(events.ORDERS, action=action, order_number=order.order_number,
                             user_id=order.user_id, status=order.status.value)

    # ---------- reads ----------

    def get_order(self, order_number: str) -> Optional[Order]:
        for order in self._load_global():
            if order.order_number == order_number:
                return order
        return None

    def get_all_orders(self, status: Optional[Union[str, OrderStatus]] = None) -> List[Order]:
        orders = self._load_global()
        if status is not None:
            wanted = _parse_status(status)
            orders = [o for o in orders if o.status == wanted]
        return _newest_first(orders)

    def get_orders_for_user(self, user_id: str) -> List[Order]:
        if not user_id:
            return []
        numbers, _ = self._load_index(user_id)
        by_number = {o.order_number: o for o in self._load_global()}
        found: Dict[str, Order] = {}
        for number in numbers:
            if number in by_number:
                found[number] = by_number[number]
        for order in by_number.values():
            if order.user_id == user_id and order.order_number not in found:
                logger.warning("Order %s missing from index of user %s", order.order_number, user_id)
                found[order.order_number] = order
        missing = [n for n in numbers if n not in found]
        if missing:
            logger.warning("Index of user %s references unknown orders: %s", user_id, missing)
        return _newest_first([o for o in found.values() if o.user_id == user_id])

    def count_for_user(self, user_id: str) -> int:
        return len(self.get_orders_for_user(user_id))

    # ---------- mutations ----------

    @as_result
    def place_order(self, user_id: str, items: Iterable[Any], shipping_address=None,
                    payment_method: Union[str, PaymentMethod] = PaymentMethod.CREDIT_CARD) -> Order:
        if not user_id:
            raise ValidationError("Order requires a user id")
        try:
            lines = [i if isinstance(i, OrderItem) else OrderItem.model_validate(
                i if isinstance(i, dict) else i.model_dump()) for i in items or []]
            address = (shipping_address if isinstance(shipping_address, ShippingAddress)
                       else ShippingAddress.model_validate(shipping_address or {}))
        except SchemaError as e:
            raise ValidationError(f"Invalid order: {e.errors()[0]['msg']}")
        if not lines:
            raise ValidationError("Order has no items")
        method = _parse_payment(payment_method)
        totals = quote(lines)

        with self.locks.hold(GLOBAL_ORDERS_KEY, user_orders_key(user_id)):
            orders = self._load_global()
            taken = {o.order_number for o in orders}
            number = new_order_number()
            while number in taken:
                number = new_order_number()
            order = Order(
                order_number=number,
                user_id=user_id,
                items=lines,
                subtotal=totals.subtotal,
                tax=totals.tax,
                shipping=totals.shipping,
                total=totals.total,
                status=OrderStatus.PROCESSING,
                payment_method=method,
                shipping_address=address,
                created_at=utcnow(),
            )
            orders.append(order)
            numbers, _ = self._load_index(user_id)
            numbers.insert(0, number)
            self._commit(orders, user_id, numbers)
        logger.info("Placed order %s for %s, total %.2f", number, user_id, order.total)
        self._publish("placed", order)
        return order

    @as_result
    def import_order(self, data: Dict[str, Any]) -> Order:
        """Upsert a complete order record (replaces an existing order number)."""
        if not data.get("userId") and not data.get("user_id"):
            raise ValidationError("Order requires a user id")
        if not data.get("orderNumber") and not data.get("order_number"):
            raise ValidationError("Order requires an order number")
        try:
            order = codec.decode_order(data)
        except (SchemaError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid order: {str(e)[:120]}")
        with self.locks.hold(GLOBAL_ORDERS_KEY, user_orders_key(order.user_id)):
            orders = [o for o in self._load_global() if o.order_number != order.order_number]
            orders.append(order)
            numbers, _ = self._load_index(order.user_id)
            if order.order_number not in numbers:
                numbers.insert(0, order.order_number)
            self._commit(orders, order.user_id, numbers)
        self._publish("imported", order)
        return order

    @as_result
    def update_status(self, order_number: str, new_status: Union[str, OrderStatus]) -> Order:
        target = _parse_status(new_status)
        with self.locks.hold(GLOBAL_ORDERS_KEY):
            orders = self._load_global()
            for order in orders:
                if order.order_number == order_number:
                    break
            else:
                raise NotFound(f"Order {order_number} not found")
            if not can_transition(order.status, target):
                raise ValidationError(
                    f"Cannot move order {order_number} from {order.status.value} to {target.value}")
            previous = order.status
            order.status = target
            self._save_global(orders)
        logger.info("Order %s: %s -> %s", order_number, previous.value, target.value)
        self._publish("status", order)
        return order

    @as_result
    def delete_order(self, order_number: str) -> str:
        with self.locks.hold(GLOBAL_ORDERS_KEY):
            orders = self._load_global()
            owner = next((o for o in orders if o.order_number == order_number), None)
            if owner is None:
                raise NotFound(f"Order {order_number} not found")
            with self.locks.hold(user_orders_key(owner.user_id)):
                remaining = [o for o in orders if o.order_number != order_number]
                numbers, _ = self._load_index(owner.user_id)
                self._commit(remaining, owner.user_id, [n for n in numbers if n != order_number])
        logger.info("Deleted order %s", order_number)
        self._publish("deleted", owner)
        return order_number

    @as_result
    def checkout(self, user_id: str, shipping_address=None,
                 payment_method: Union[str, PaymentMethod] = PaymentMethod.CREDIT_CARD,
                 items: Optional[Iterable[Any]] = None) -> Result:
        """Place an order from the user's cart and take the ordered lines out of it.

        The cart stays locked from the read to the removal, and only the
        quantities that went into the order are removed. With explicit
        ``items`` ("buy now") the cart is left untouched.
        """
        if items is not None:
            return self.place_order(user_id, items, shipping_address, payment_method)
        if self.cart is None:
            raise ValidationError("No cart ledger configured for checkout")
        with self.locks.hold(GLOBAL_ORDERS_KEY, user_orders_key(user_id), cart_key(user_id)):
            cart_items = self.cart.get_cart(user_id)
            if not cart_items:
                raise ValidationError("Cart is empty")
            lines = [OrderItem(product_id=i.product_id, name=i.name, price=i.price,
                               quantity=i.quantity, image=i.image) for i in cart_items]
            result = self.place_order(user_id, lines, shipping_address, payment_method)
            if result.ok:
                taken = self.cart.remove_ordered(user_id, lines)
                if not taken.ok:
                    logger.error("Order %s placed but cart of %s not updated: %s",
                                 result.value.order_number, user_id, taken.error.message)
        return result

    def reconcile_indexes(self) -> int:
        """Rebuild every per-user index from the global records.

        Legacy per-user entries holding full orders are merged into the global
        records first. Returns the number of user entries rewritten.
        """
        with self.locks.hold(GLOBAL_ORDERS_KEY):
            orders = self._load_stored()
            known = {o.order_number for o in orders}
            index_keys = [k for k in self.store.keys() if k.startswith(USER_ORDERS_PREFIX)]
            current: Dict[str, List[str]] = {}
            legacy: Set[str] = set()
            merged = 0
            for key in index_keys:
                numbers, embedded = codec.decode_order_index(key, self.store.get(key))
                current[key[len(USER_ORDERS_PREFIX):]] = numbers
                if embedded:
                    legacy.add(key[len(USER_ORDERS_PREFIX):])
                for order in embedded:
                    if order.order_number not in known:
                        orders.append(order)
                        known.add(order.order_number)
                        merged += 1
            if merged:
                logger.warning("Merged %d legacy per-user orders into global records", merged)
            self._save_global(orders)

            expected: Dict[str, List[str]] = {user_id: [] for user_id in current}
            for order in _newest_first(orders):
                expected.setdefault(order.user_id, []).append(order.order_number)
            repaired = 0
            for user_id, numbers in expected.items():
                if current.get(user_id) == numbers and user_id not in legacy:
                    continue
                with self.locks.hold(user_orders_key(user_id)):
                    self.store.set(user_orders_key(user_id), codec.encode_order_index(numbers))
                repaired += 1
            if repaired:
                logger.warning("Rebuilt order index for %d users", repaired)
        return repaired
