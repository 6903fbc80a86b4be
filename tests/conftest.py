import pytest
from fastapi.testclient import TestClient

import main
from database import KeyLocks, MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def svc(store):
    return main.Services(store, KeyLocks(timeout=2))


@pytest.fixture
def make_product(svc):
    def _make(title="Widget", price=20.0, stock=5, **extra):
        result = svc.inventory.create_product({"title": title, "price": price, "stock": stock, **extra})
        assert result.ok, result.error
        return result.value
    return _make


@pytest.fixture
def client(svc, monkeypatch):
    monkeypatch.delenv("ADMIN_KEY", raising=False)
    main.app.dependency_overrides[main.get_services] = lambda: svc
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()
