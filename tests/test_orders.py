import json
import threading

import pytest

from database import GLOBAL_ORDERS_KEY, LEGACY_GLOBAL_ORDERS_KEY, MemoryStore, user_orders_key
from errors import StorageError, ValidationError
from orders import can_transition, is_terminal, new_order_number, quote
from schemas import OrderItem, OrderStatus

ADDRESS = {"fullName": "Ada Lovelace", "email": "ada@analytical.org", "address": "1 Main St",
           "city": "London", "state": "LDN", "zipCode": "N1", "country": "UK"}


def _place(svc, user_id="u1", price=20.0, quantity=2, **kwargs):
    items = [OrderItem(product_id="p1", name="Widget", price=price, quantity=quantity)]
    result = svc.orders.place_order(user_id, items, ADDRESS, "credit-card", **kwargs)
    assert result.ok, result.error
    return result.value


def _legacy_order(number, user_id, created_at, total=10.0, status="processing"):
    return {"orderNumber": number, "userId": user_id, "createdAt": created_at, "status": status,
            "items": [{"productId": 1, "name": "Old", "price": "10", "quantity": 1}],
            "subtotal": "10", "tax": "1", "shipping": "5.99", "total": total}


def test_quote_below_free_shipping():
    totals = quote([OrderItem(product_id="p", name="n", price=20, quantity=2)])
    assert (totals.subtotal, totals.tax, totals.shipping, totals.total) == (40.0, 4.0, 5.99, 49.99)


def test_quote_free_shipping_above_fifty():
    totals = quote([OrderItem(product_id="p", name="n", price=25.5, quantity=2)])
    assert totals.subtotal == 51.0
    assert totals.shipping == 0.0
    assert totals.total == 56.1


def test_quote_exactly_fifty_pays_shipping():
    totals = quote([OrderItem(product_id="p", name="n", price=50, quantity=1)])
    assert totals.shipping == 5.99


def test_order_number_format():
    number = new_order_number()
    prefix, millis, suffix = number.split("-")
    assert prefix == "ORD"
    assert millis.isdigit()
    assert len(suffix) == 9


def test_place_order_fields(svc):
    order = _place(svc)
    assert order.status == OrderStatus.PROCESSING
    assert order.total == 49.99
    assert order.payment_method.value == "credit-card"
    assert order.shipping_address.city == "London"
    assert order.payment_status == "completed"


def test_user_and_global_views_agree(svc):
    order = _place(svc)
    mine = svc.orders.get_orders_for_user("u1")
    everyone = svc.orders.get_all_orders()
    assert [o.order_number for o in mine] == [order.order_number]
    assert mine[0].total == everyone[0].total
    assert mine[0].status == everyone[0].status
    svc.orders.update_status(order.order_number, "shipped")
    assert svc.orders.get_orders_for_user("u1")[0].status == OrderStatus.SHIPPED
    assert svc.orders.get_all_orders()[0].status == OrderStatus.SHIPPED


def test_user_index_holds_order_numbers(svc, store):
    order = _place(svc)
    assert json.loads(store.get(user_orders_key("u1"))) == [order.order_number]
    assert json.loads(store.get(GLOBAL_ORDERS_KEY))[0]["orderNumber"] == order.order_number


def test_order_numbers_unique(svc):
    numbers = {_place(svc).order_number for _ in range(25)}
    assert len(numbers) == 25


def test_place_order_validation(svc):
    assert svc.orders.place_order("u1", [], ADDRESS).error_kind == "validation_error"
    assert svc.orders.place_order("", [{"productId": "p", "name": "n", "price": 1, "quantity": 1}]
                                  ).error_kind == "validation_error"
    bad_qty = [{"productId": "p", "name": "n", "price": 1, "quantity": 0}]
    assert svc.orders.place_order("u1", bad_qty).error_kind == "validation_error"
    items = [{"productId": "p", "name": "n", "price": 1, "quantity": 1}]
    assert svc.orders.place_order("u1", items, ADDRESS, "bitcoin").error_kind == "validation_error"
    assert svc.orders.get_all_orders() == []


@pytest.mark.parametrize("path", [
    ["shipped", "delivered"],
    ["cancelled"],
    ["shipped", "cancelled"],
])
def test_allowed_transitions(svc, path):
    order = _place(svc)
    for status in path:
        result = svc.orders.update_status(order.order_number, status)
        assert result.ok, result.error
    assert svc.orders.get_order(order.order_number).status.value == path[-1]


@pytest.mark.parametrize("path,rejected", [
    (["shipped", "delivered"], "processing"),
    (["shipped", "delivered"], "cancelled"),
    (["cancelled"], "shipped"),
    ([], "delivered"),
    (["shipped"], "processing"),
])
def test_rejected_transitions(svc, path, rejected):
    order = _place(svc)
    for status in path:
        svc.orders.update_status(order.order_number, status)
    result = svc.orders.update_status(order.order_number, rejected)
    assert not result.ok
    assert result.error_kind == "validation_error"


def test_unknown_status_string(svc):
    order = _place(svc)
    assert svc.orders.update_status(order.order_number, "lost").error_kind == "validation_error"
    assert svc.orders.get_order(order.order_number).status == OrderStatus.PROCESSING


def test_update_unknown_order(svc):
    assert svc.orders.update_status("ORD-0-missing", "shipped").error_kind == "not_found"


def test_transition_table():
    assert can_transition(OrderStatus.PROCESSING, OrderStatus.SHIPPED)
    assert not can_transition(OrderStatus.DELIVERED, OrderStatus.PROCESSING)
    assert is_terminal(OrderStatus.DELIVERED)
    assert is_terminal(OrderStatus.CANCELLED)
    assert not is_terminal(OrderStatus.SHIPPED)


def test_newest_first(svc):
    svc.orders.import_order(_legacy_order("ORD-1", "u1", "2024-01-01T10:00:00Z"))
    svc.orders.import_order(_legacy_order("ORD-3", "u1", "2024-03-01T10:00:00Z"))
    svc.orders.import_order(_legacy_order("ORD-2", "u2", "2024-02-01T10:00:00Z"))
    assert [o.order_number for o in svc.orders.get_orders_for_user("u1")] == ["ORD-3", "ORD-1"]
    assert [o.order_number for o in svc.orders.get_all_orders()] == ["ORD-3", "ORD-2", "ORD-1"]


def test_import_order_upserts(svc):
    svc.orders.import_order(_legacy_order("ORD-9", "u1", "2024-01-01T10:00:00Z", total=10.0))
    svc.orders.import_order(_legacy_order("ORD-9", "u1", "2024-01-01T10:00:00Z", total=12.0))
    orders = svc.orders.get_orders_for_user("u1")
    assert len(orders) == 1
    assert orders[0].total == 12.0


def test_status_filter(svc):
    first = _place(svc)
    _place(svc)
    svc.orders.update_status(first.order_number, "shipped")
    assert [o.order_number for o in svc.orders.get_all_orders("shipped")] == [first.order_number]
    assert len(svc.orders.get_all_orders(OrderStatus.PROCESSING)) == 1


def test_delete_order_removes_from_both_views(svc, store):
    order = _place(svc)
    kept = _place(svc)
    assert svc.orders.delete_order(order.order_number).ok
    assert svc.orders.get_order(order.order_number) is None
    assert [o.order_number for o in svc.orders.get_orders_for_user("u1")] == [kept.order_number]
    assert json.loads(store.get(user_orders_key("u1"))) == [kept.order_number]
    assert svc.orders.delete_order(order.order_number).error_kind == "not_found"


def test_checkout_end_to_end(svc, make_product):
    product = make_product(price=20, stock=5)
    assert svc.cart.add_item("u1", product.id).value.quantity == 1
    assert svc.cart.add_item("u1", product.id).value.quantity == 2
    result = svc.orders.checkout("u1", ADDRESS, "cash-on-delivery")
    assert result.ok, result.error
    order = result.value
    assert order.subtotal == 40.0
    assert order.tax == 4.0
    assert order.shipping == 5.99
    assert order.total == 49.99
    assert order.items[0].quantity == 2
    assert svc.cart.get_cart("u1") == []
    # checkout leaves stock alone
    assert svc.inventory.get_product(product.id).stock == 5


def test_cancellation_does_not_restore_stock(svc, make_product):
    product = make_product(stock=5)
    svc.cart.add_item("u1", product.id)
    order = svc.orders.checkout("u1", ADDRESS).value
    svc.orders.update_status(order.order_number, "cancelled")
    assert svc.inventory.get_product(product.id).stock == 5


def test_checkout_empty_cart(svc):
    assert svc.orders.checkout("u1", ADDRESS).error_kind == "validation_error"


def test_buy_now_leaves_cart(svc, make_product):
    product = make_product(price=30)
    svc.cart.add_item("u1", product.id)
    items = [{"productId": product.id, "name": product.title, "price": 30, "quantity": 2}]
    result = svc.orders.checkout("u1", ADDRESS, "paypal", items=items)
    assert result.ok
    assert result.value.total == 66.0
    assert len(svc.cart.get_cart("u1")) == 1


def test_order_survives_product_delete(svc, make_product):
    product = make_product()
    svc.cart.add_item("u1", product.id)
    order = svc.orders.checkout("u1", ADDRESS).value
    svc.inventory.delete_product(product.id)
    assert svc.orders.get_order(order.order_number).items[0].product_id == product.id


class FailingIndexStore(MemoryStore):
    def set(self, key, value):
        if key.startswith("user_orders_"):
            raise StorageError(f"Write of {key} failed")
        super().set(key, value)


def test_failed_index_write_rolls_back(svc):
    from main import Services

    services = Services(FailingIndexStore())
    items = [{"productId": "p", "name": "n", "price": 5, "quantity": 1}]
    result = services.orders.place_order("u1", items, ADDRESS)
    assert result.error_kind == "storage_error"
    assert services.orders.get_all_orders() == []
    assert services.store.get(GLOBAL_ORDERS_KEY) is None


def test_legacy_layout_is_one_view_and_reconciles(store, svc):
    store.set(user_orders_key("u1"), json.dumps([_legacy_order("ORD-A", "u1", "2024-01-01T00:00:00Z")]))
    store.set(LEGACY_GLOBAL_ORDERS_KEY, json.dumps([_legacy_order("ORD-B", "u2", "2024-02-01T00:00:00Z")]))
    assert [o.order_number for o in svc.orders.get_orders_for_user("u1")] == ["ORD-A"]
    assert [o.order_number for o in svc.orders.get_all_orders()] == ["ORD-B", "ORD-A"]
    assert svc.orders.get_order("ORD-A").user_id == "u1"

    assert svc.orders.update_status("ORD-A", "shipped").ok
    assert svc.orders.get_orders_for_user("u1")[0].status == OrderStatus.SHIPPED
    assert svc.orders.get_all_orders("shipped")[0].order_number == "ORD-A"
    assert store.get(LEGACY_GLOBAL_ORDERS_KEY) is None

    repaired = svc.orders.reconcile_indexes()
    assert repaired == 2
    assert json.loads(store.get(user_orders_key("u1"))) == ["ORD-A"]
    assert json.loads(store.get(user_orders_key("u2"))) == ["ORD-B"]
    assert {o.order_number for o in svc.orders.get_all_orders()} == {"ORD-A", "ORD-B"}
    assert svc.orders.get_order("ORD-A").status == OrderStatus.SHIPPED
    assert svc.orders.reconcile_indexes() == 0


def test_empty_global_entry_falls_back_to_legacy_key(store, svc):
    store.set(GLOBAL_ORDERS_KEY, "[]")
    store.set(LEGACY_GLOBAL_ORDERS_KEY, json.dumps([_legacy_order("ORD-B", "u2", "2024-02-01T00:00:00Z")]))
    assert [o.order_number for o in svc.orders.get_all_orders()] == ["ORD-B"]

    assert svc.orders.delete_order("ORD-B").ok
    assert svc.orders.get_all_orders() == []
    assert store.get(LEGACY_GLOBAL_ORDERS_KEY) is None


def test_unknown_status_filter_is_validation_error(svc):
    with pytest.raises(ValidationError):
        svc.orders.get_all_orders("lost")


def test_checkout_keeps_items_added_after_cart_read(svc, make_product, monkeypatch):
    first = make_product(title="A")
    second = make_product(title="B")
    svc.cart.add_item("u1", first.id)
    place_order = svc.orders.place_order

    def place_then_add(*args, **kwargs):
        svc.cart.add_item("u1", second.id)
        svc.cart.add_item("u1", first.id)
        return place_order(*args, **kwargs)

    monkeypatch.setattr(svc.orders, "place_order", place_then_add)
    order = svc.orders.checkout("u1", ADDRESS).value
    assert [i.product_id for i in order.items] == [first.id]
    cart = {i.product_id: i.quantity for i in svc.cart.get_cart("u1")}
    assert cart == {first.id: 1, second.id: 1}


def test_checkout_blocks_cart_writes_until_done(svc, make_product, monkeypatch):
    first = make_product(title="A")
    second = make_product(title="B")
    svc.cart.add_item("u1", first.id)
    place_order = svc.orders.place_order
    results = []
    adder = threading.Thread(target=lambda: results.append(svc.cart.add_item("u1", second.id)))

    def place_while_other_thread_adds(*args, **kwargs):
        adder.start()
        adder.join(timeout=0.2)
        assert adder.is_alive()
        return place_order(*args, **kwargs)

    monkeypatch.setattr(svc.orders, "place_order", place_while_other_thread_adds)
    order = svc.orders.checkout("u1", ADDRESS).value
    adder.join()
    assert results[0].ok
    assert [i.product_id for i in order.items] == [first.id]
    assert [i.product_id for i in svc.cart.get_cart("u1")] == [second.id]


def test_order_missing_from_index_still_listed(store, svc):
    order = _place(svc)
    store.set(user_orders_key("u1"), "[]")
    assert [o.order_number for o in svc.orders.get_orders_for_user("u1")] == [order.order_number]
    assert svc.orders.reconcile_indexes() == 1
    assert json.loads(store.get(user_orders_key("u1"))) == [order.order_number]


def test_corrupt_global_orders_degrade(store, svc):
    store.set(GLOBAL_ORDERS_KEY, "[{broken")
    assert svc.orders.get_all_orders() == []
    assert svc.orders.get_orders_for_user("u1") == []


def test_order_events(svc):
    seen = []
    svc.bus.subscribe("orders", lambda topic, payload: seen.append((payload["action"], payload["status"])))
    order = _place(svc)
    svc.orders.update_status(order.order_number, "shipped")
    assert seen == [("placed", "processing"), ("status", "shipped")]


def test_count_for_user(svc):
    _place(svc, "u1")
    _place(svc, "u1")
    _place(svc, "u2")
    assert svc.orders.count_for_user("u1") == 2
    assert svc.orders.count_for_user("u2") == 1
    assert svc.orders.count_for_user("nobody") == 0
