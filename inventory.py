import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from pydantic import ValidationError as SchemaError

import codec
import events
from database import CATALOG_KEY
from errors import NotFound, Result, ValidationError, as_result
from schemas import PLACEHOLDER_IMAGE, Product, ProductCreate, ProductUpdate, StockStatus, utcnow

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", "5"))

# Stock given to products arriving from the external catalog feed
FEED_DEFAULT_STOCK = 10


def stock_status(stock: int, threshold: int = LOW_STOCK_THRESHOLD) -> StockStatus:
    if stock <= 0:
        return StockStatus.OUT_OF_STOCK
    if stock <= threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def _fields(payload: Union[Dict[str, Any], ProductCreate, ProductUpdate], model) -> Dict[str, Any]:
    if isinstance(payload, model):
        return payload.model_dump(exclude_none=True)
    try:
        return model.model_validate(payload or {}).model_dump(exclude_none=True)
    except SchemaError as e:
        raise ValidationError(f"Invalid product fields: {e.errors()[0]['msg']}")


class InventoryLedger:
    """Owns the product catalog. Stock and price are never negative."""

    def __init__(self, store, locks, bus: Optional[events.EventBus] = None):
        self.store = store
        self.locks = locks
        self.bus = bus

    def _load(self) -> List[Product]:
        return codec.load(self.store, CATALOG_KEY, codec.decode_product)

    def _save(self, products: Iterable[Product]) -> None:
        codec.save(self.store, CATALOG_KEY, products)

    def _publish(self, action: str, product_id: str) -> None:
        if self.bus is not None:
            self.bus.publish(events.PRODUCTS, action=action, product_id=product_id)

    def list_products(self) -> List[Product]:
        return self._load()

    def get_product(self, product_id: str) -> Optional[Product]:
        for product in self._load():
            if product.id == str(product_id):
                return product
        return None

    def stock_of(self, product_id: str) -> int:
        """Current stock, 0 for products no longer in the catalog."""
        product = self.get_product(product_id)
        if product is None:
            logger.warning("Product %s not in catalog, treating as unavailable", product_id)
            return 0
        return product.stock

    def low_stock_products(self) -> List[Product]:
        return [p for p in self._load() if stock_status(p.stock) == StockStatus.LOW_STOCK]

    @as_result
    def create_product(self, fields) -> Product:
        data = _fields(fields, ProductCreate)
        if not data.get("image"):
            data["image"] = PLACEHOLDER_IMAGE
        product = Product(id=str(ObjectId()), created_at=utcnow(), **data)
        with self.locks.hold(CATALOG_KEY):
            products = self._load()
            products.append(product)
            self._save(products)
        logger.info("Created product %s (%s)", product.id, product.title)
        self._publish("created", product.id)
        return product

    @as_result
    def update_product(self, product_id: str, fields) -> Product:
        changes = _fields(fields, ProductUpdate)
        with self.locks.hold(CATALOG_KEY):
            products = self._load()
            for index, product in enumerate(products):
                if product.id == str(product_id):
                    break
            else:
                raise NotFound(f"Product {product_id} not found")
            merged = product.model_copy(update=changes)
            products[index] = merged
            self._save(products)
        self._publish("updated", merged.id)
        return merged

    @as_result
    def delete_product(self, product_id: str) -> str:
        # Cart, wishlist and order lines keep their references.
        with self.locks.hold(CATALOG_KEY):
            products = self._load()
            remaining = [p for p in products if p.id != str(product_id)]
            if len(remaining) == len(products):
                raise NotFound(f"Product {product_id} not found")
            self._save(remaining)
        logger.info("Deleted product %s", product_id)
        self._publish("deleted", str(product_id))
        return str(product_id)

    @as_result
    def adjust_stock(self, product_id: str, new_stock: int) -> Product:
        if isinstance(new_stock, bool) or not isinstance(new_stock, int):
            raise ValidationError(f"Stock must be an integer, got {new_stock!r}")
        if new_stock < 0:
            raise ValidationError(f"Stock cannot be negative ({new_stock})")
        with self.locks.hold(CATALOG_KEY):
            products = self._load()
            for product in products:
                if product.id == str(product_id):
                    product.stock = new_stock
                    break
            else:
                raise NotFound(f"Product {product_id} not found")
            self._save(products)
        self._publish("stock", product.id)
        return product

    @as_result
    def merge_catalog(self, snapshots: Iterable[Dict[str, Any]]) -> Result:
        """Merge product records from the external catalog feed.

        New ids are inserted with FEED_DEFAULT_STOCK unless the feed carries a
        stock figure; known ids get their descriptive fields refreshed and
        keep the stock the admin has set.
        """
        with self.locks.hold(CATALOG_KEY):
            products = self._load()
            by_id = {p.id: i for i, p in enumerate(products)}
            added = updated = 0
            for raw in snapshots:
                data = dict(raw)
                data.setdefault("stock", FEED_DEFAULT_STOCK)
                try:
                    incoming = codec.decode_product(data)
                except (SchemaError, TypeError, ValueError) as e:
                    logger.warning("Skipping feed product %r: %s", raw.get("id"), str(e)[:120])
                    continue
                if incoming.id in by_id:
                    current = products[by_id[incoming.id]]
                    products[by_id[incoming.id]] = current.model_copy(update={
                        "title": incoming.title,
                        "price": incoming.price,
                        "category": incoming.category,
                        "image": incoming.image,
                        "description": incoming.description,
                    })
                    updated += 1
                else:
                    by_id[incoming.id] = len(products)
                    products.append(incoming)
                    added += 1
            self._save(products)
        logger.info("Merged catalog feed: %d added, %d updated", added, updated)
        self._publish("merged", "")
        return Result.success({"added": added, "updated": updated})
