import threading
from decimal import Decimal

import pytest

from storefront.domain.exceptions import CatalogUnavailableError
from storefront.domain.schemas import CatalogProduct, ProductLookup, Tenant
from storefront.repos.cart_repo import InMemoryCartStorage
from storefront.services.cart_service import CartEngine


class FakeCatalog:
    """Catalog double: records every batched lookup, can fail or block."""

    def __init__(self, products=None):
        self.products = {p.id: p for p in (products or [])}
        self.tenants = {}
        self.categories = {}
        self.calls = []
        self.fail = False
        self.unreadable = set()
        self.gate = None

    def put(self, product_id, name, price, is_active=True, **extra):
        self.products[product_id] = CatalogProduct(
            id=product_id, name=name, unit_price=price, is_active=is_active, **extra
        )

    def get_products_by_ids(self, ids):
        self.calls.append(list(ids))
        if self.gate is not None:
            self.gate.wait(timeout=2)
        if self.fail:
            raise CatalogUnavailableError("catalog down")
        return ProductLookup(
            products=[self.products[i] for i in ids if i in self.products and i not in self.unreadable],
            unreadable=[i for i in ids if i in self.unreadable],
        )

    def fetch_tenant_by_slug(self, slug):
        if self.fail:
            raise CatalogUnavailableError("catalog down")
        return self.tenants.get(slug)

    def fetch_categories_by_tenant(self, tenant_id):
        return self.categories.get(tenant_id, [])

    def fetch_products_by_tenant(self, tenant_id):
        return [p for p in self.products.values() if p.tenant_id == tenant_id and p.is_active]


@pytest.fixture
def catalog():
    fake = FakeCatalog()
    fake.put("p1", "Pizza", 5000)
    fake.put("p2", "Bebida", 1200)
    fake.put("p3", "Empanada", 900)
    return fake


@pytest.fixture
def storage():
    return InMemoryCartStorage()


@pytest.fixture
def engine(storage, catalog):
    eng = CartEngine(storage=storage, catalog=catalog, lookup_timeout=1.0)
    yield eng
    eng.dispose()


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def tenant():
    return Tenant(
        id="t-1",
        name="Pizza Juan",
        slug="pizza-juan",
        whatsapp_phone="+56 9 1234 5678",
        address="Av. Libertad 123",
        delivery_fee=Decimal("1500"),
        pickup_enabled=True,
        delivery_enabled=True,
        is_active=True,
    )
