import logging
from collections import defaultdict
from threading import RLock
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Topics published by the ledgers
PRODUCTS = "products"
CART = "cart"
WISHLIST = "wishlist"
ORDERS = "orders"
USERS = "users"

ALL = "*"

Callback = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """In-process publish/subscribe channel for ledger change notifications.

    Subscribers registered on ``ALL`` receive every topic. A failing subscriber
    is logged and does not affect the mutation that published the event.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)
        self._lock = RLock()

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        with self._lock:
            self._subscribers[topic].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers[topic]:
                    self._subscribers[topic].remove(callback)
        return unsubscribe

    def publish(self, topic: str, **payload: Any) -> None:
        with self._lock:
            targets = list(self._subscribers.get(topic, [])) + list(self._subscribers.get(ALL, []))
        for callback in targets:
            try:
                callback(topic, payload)
            except Exception:
                logger.exception("Subscriber %r failed on %s event", callback, topic)
