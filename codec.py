"""
Encoding of ledger records to and from the store's JSON text.

Every entity has one ``decode_*`` function that applies the defaults older
records may be missing (numeric ids, string prices, ``timestamp`` instead of
``addedAt``, ...) and validates the result against its schema. Collections
that cannot be parsed are treated as empty and logged; individual entries
that fail validation are skipped and logged.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from errors import StorageError
from schemas import (
    PLACEHOLDER_IMAGE,
    CartItem,
    Order,
    OrderStatus,
    Product,
    User,
    WishlistItem,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _number(value: Any, cast: Callable[[Any], Any], default: Any = 0) -> Any:
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def decode_product(raw: Dict[str, Any]) -> Product:
    data = dict(raw)
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    if data.get("title") is None:
        data["title"] = data.pop("name", None)
    data["price"] = _number(data.get("price"), float, 0.0)
    data["stock"] = _number(data.get("stock"), lambda v: int(float(v)), 0)
    if not data.get("image"):
        data["image"] = PLACEHOLDER_IMAGE
    for field in ("category", "description"):
        if data.get(field) is None:
            data[field] = ""
    product = Product.model_validate(data)
    product.created_at = _aware(product.created_at)
    return product


def _line_defaults(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(raw)
    if data.get("productId") is not None:
        data["productId"] = str(data["productId"])
    if "name" not in data and "title" in data:
        data["name"] = data.pop("title")
    data["price"] = _number(data.get("price"), float, 0.0)
    if "addedAt" not in data and data.get("timestamp"):
        data["addedAt"] = data.pop("timestamp")
    return data


def decode_cart_item(raw: Dict[str, Any]) -> CartItem:
    data = _line_defaults(raw)
    data["quantity"] = _number(data.get("quantity"), int, 1)
    item = CartItem.model_validate(data)
    item.added_at = _aware(item.added_at)
    return item


def decode_wishlist_item(raw: Dict[str, Any]) -> WishlistItem:
    item = WishlistItem.model_validate(_line_defaults(raw))
    item.added_at = _aware(item.added_at)
    return item


def decode_order(raw: Dict[str, Any]) -> Order:
    data = dict(raw)
    for field in ("subtotal", "tax", "shipping", "total"):
        data[field] = _number(data.get(field), float, 0.0)
    data["status"] = data.get("status") or OrderStatus.PROCESSING.value
    data["items"] = [_line_defaults(i) for i in data.get("items") or []]
    for item in data["items"]:
        item["quantity"] = _number(item.get("quantity"), int, 1)
    order = Order.model_validate(data)
    order.created_at = _aware(order.created_at)
    return order


def decode_user(raw: Dict[str, Any]) -> User:
    data = dict(raw)
    data.setdefault("id", data.get("uid"))
    if not data.get("displayName") and data.get("email"):
        data["displayName"] = str(data["email"]).split("@")[0]
    data["loginCount"] = _number(data.get("loginCount"), int, 1)
    user = User.model_validate(data)
    user.created_at = _aware(user.created_at)
    user.last_login = _aware(user.last_login)
    return user


def parse_json_list(key: str, raw: Optional[str]) -> List[Any]:
    """Parse a stored collection, degrading to [] on corrupt or non-list data."""
    if raw is None:
        return []
    try:
        data = json.loads(raw)
    except ValueError as e:
        err = StorageError(f"Corrupt JSON under {key}: {e}")
        logger.warning("%s: %s", err.kind, err.message)
        return []
    if data is None:
        return []
    if not isinstance(data, list):
        err = StorageError(f"Expected a list under {key}, got {type(data).__name__}")
        logger.warning("%s: %s", err.kind, err.message)
        return []
    return data


def decode_list(key: str, raw: Optional[str], decoder: Callable[[Dict[str, Any]], M]) -> List[M]:
    records: List[M] = []
    for entry in parse_json_list(key, raw):
        if not isinstance(entry, dict):
            logger.warning("Skipping non-object entry under %s", key)
            continue
        try:
            records.append(decoder(entry))
        except (SchemaError, TypeError, ValueError) as e:
            logger.warning("Skipping invalid record under %s: %s", key, str(e)[:120])
    return records


def encode_list(records: Iterable[BaseModel]) -> str:
    return json.dumps([r.model_dump(mode="json", by_alias=True) for r in records])


def decode_order_index(key: str, raw: Optional[str]) -> Tuple[List[str], List[Order]]:
    """Split a per-user order entry into order numbers and legacy embedded orders.

    Current entries hold order numbers only. Older entries hold full order
    objects; those are decoded so they can be merged into the global index.
    """
    numbers: List[str] = []
    embedded: List[Order] = []
    for entry in parse_json_list(key, raw):
        if isinstance(entry, str):
            numbers.append(entry)
        elif isinstance(entry, dict):
            try:
                order = decode_order(entry)
            except (SchemaError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid order under %s: %s", key, str(e)[:120])
                continue
            embedded.append(order)
            numbers.append(order.order_number)
    return numbers, embedded


def encode_order_index(numbers: Iterable[str]) -> str:
    return json.dumps(list(numbers))


# Store-level helpers used by the ledgers

def load(store, key: str, decoder: Callable[[Dict[str, Any]], M]) -> List[M]:
    return decode_list(key, store.get(key), decoder)


def save(store, key: str, records: Iterable[BaseModel]) -> None:
    store.set(key, encode_list(records))
