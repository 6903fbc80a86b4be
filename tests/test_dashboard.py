from dashboard import DashboardAggregator, summarize
from schemas import Order, Product


def test_empty_inputs_are_zero():
    stats = summarize([], [], [])
    assert stats.total_orders == 0
    assert stats.total_products == 0
    assert stats.total_users == 0
    assert stats.total_revenue == 0
    assert stats.pending_orders == 0
    assert stats.low_stock_products == 0
    assert stats.out_of_stock_products == 0
    assert stats.recent_orders == []


def test_counts():
    products = [Product(id=str(i), title=f"p{i}", price=1, stock=s) for i, s in enumerate([0, 0, 3, 5, 6, 40])]
    orders = [
        Order(order_number="a", user_id="u1", total=49.99, status="processing"),
        Order(order_number="b", user_id="u1", total=10.01, status="shipped"),
        Order(order_number="c", user_id="u2", total=20, status="processing"),
    ]
    stats = summarize(products, orders, [])
    assert stats.total_products == 6
    assert stats.out_of_stock_products == 2
    assert stats.low_stock_products == 2
    assert stats.in_stock_products == 2
    assert stats.total_orders == 3
    assert stats.pending_orders == 2
    assert stats.total_revenue == 80.0


def test_aggregator_refreshes_on_change(svc, make_product):
    assert svc.dashboard.stats().total_products == 0
    product = make_product(stock=2)
    assert svc.dashboard.stats().total_products == 1
    assert svc.dashboard.stats().low_stock_products == 1
    svc.cart.add_item("u1", product.id)
    svc.orders.checkout("u1")
    stats = svc.dashboard.stats()
    assert stats.total_orders == 1
    assert stats.pending_orders == 1
    assert stats.total_revenue == svc.orders.get_all_orders()[0].total


def test_aggregator_without_bus_recomputes(svc, make_product):
    aggregator = DashboardAggregator(svc.inventory, svc.orders, svc.users)
    assert aggregator.stats().total_products == 0
    make_product()
    assert aggregator.stats().total_products == 1


def test_change_during_computation_is_not_cached(svc, make_product, monkeypatch):
    make_product()
    read_orders = svc.orders.get_all_orders

    def orders_with_concurrent_create(*args, **kwargs):
        monkeypatch.setattr(svc.orders, "get_all_orders", read_orders)
        make_product(title="Gadget")
        return read_orders(*args, **kwargs)

    monkeypatch.setattr(svc.orders, "get_all_orders", orders_with_concurrent_create)
    assert svc.dashboard.stats().total_products == 1
    assert svc.dashboard.stats().total_products == 2
