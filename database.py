"""
Key-value storage for the storefront ledgers.

Every ledger persists its records as JSON text under a string key. The store
is either a MongoDB collection (one document per key) when DATABASE_URL and
DATABASE_NAME are set, or a process-local dictionary otherwise.

Key layout:
- cart_<userId>, wishlist_<userId>, user_orders_<userId>  per user
- all_orders    global order records
- adminProducts product catalog
- users         user directory
"""

import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Protocol, Set

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from errors import StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> Set[str]: ...


class MemoryStore:
    """Dictionary-backed store, used when no database is configured and in tests."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(data or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for {key} must be text")
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> Set[str]:
        with self._lock:
            return set(self._data)


class MongoStore:
    """Store backed by a MongoDB collection: {_id: key, value: text, updated_at}."""

    def __init__(self, collection):
        self.collection = collection

    def get(self, key: str) -> Optional[str]:
        try:
            doc = self.collection.find_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Read of {key} failed: {str(e)[:80]}")
        return doc["value"] if doc else None

    def set(self, key: str, value: str) -> None:
        try:
            self.collection.update_one(
                {"_id": key},
                {"$set": {"value": value, "updated_at": datetime.now(timezone.utc)}},
                upsert=True,
            )
        except PyMongoError as e:
            raise StorageError(f"Write of {key} failed: {str(e)[:80]}")

    def delete(self, key: str) -> None:
        try:
            self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            raise StorageError(f"Delete of {key} failed: {str(e)[:80]}")

    def keys(self) -> Set[str]:
        try:
            return {doc["_id"] for doc in self.collection.find({}, {"_id": 1})}
        except PyMongoError as e:
            raise StorageError(f"Key listing failed: {str(e)[:80]}")


class KeyLocks:
    """One re-entrant lock per logical key.

    ``hold`` takes several keys at once in sorted order, so two callers locking
    overlapping key sets cannot deadlock. Acquisition gives up after
    ``timeout`` seconds with a StorageError.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._registry = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        acquired = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout):
                    raise StorageError(f"Timed out waiting for lock on {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def cart_key(user_id: str) -> str:
    return f"cart_{user_id}"


def wishlist_key(user_id: str) -> str:
    return f"wishlist_{user_id}"


def user_orders_key(user_id: str) -> str:
    return f"user_orders_{user_id}"


USER_ORDERS_PREFIX = "user_orders_"
GLOBAL_ORDERS_KEY = "all_orders"
LEGACY_GLOBAL_ORDERS_KEY = "allOrders"
CATALOG_KEY = "adminProducts"
USERS_KEY = "users"


def connect(database_url: Optional[str], database_name: Optional[str]):
    """Return (db, store) for the configured environment."""
    if database_url and database_name:
        client = MongoClient(database_url)
        database = client[database_name]
        collection = database[os.getenv("KV_COLLECTION", "kv")]
        logger.info("Using MongoDB store %s.%s", database_name, collection.name)
        return database, MongoStore(collection)
    logger.info("DATABASE_URL/DATABASE_NAME not set, using in-memory store")
    return None, MemoryStore()


db, store = connect(os.getenv("DATABASE_URL"), os.getenv("DATABASE_NAME"))
locks = KeyLocks(timeout=float(os.getenv("LOCK_TIMEOUT", "5")))
