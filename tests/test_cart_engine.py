import asyncio
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from storefront.domain.exceptions import CartStorageError
from storefront.domain.schemas import PLACEHOLDER_NAME
from storefront.repos.cart_repo import storage_key
from storefront.services.cart_service import CartEngine, clamp_quantity
from storefront.services.catalog_client import CatalogClient


def stored(storage, slug):
    raw = storage.read(storage_key(slug))
    return None if raw is None else json.loads(raw)


def seed(storage, slug, pairs):
    storage.write(
        storage_key(slug),
        json.dumps([{"productId": pid, "qty": qty} for pid, qty in pairs]),
    )


def assert_aggregates(engine):
    items = engine.items
    assert engine.count == sum(i.quantity for i in items)
    assert engine.subtotal == sum((i.unit_price * i.quantity for i in items), Decimal("0"))


# =====================================================
# mutations
# =====================================================
def test_add_item_without_active_store_is_ignored(engine, storage):
    engine.add_item("p1", "Pizza", 5000)
    assert engine.items == ()
    assert storage.data == {}


def test_repeated_add_merges_into_one_line(engine):
    engine.set_active_store("shop-a")
    for _ in range(3):
        engine.add_item("p1", "Pizza", 5000)
    engine.add_item("p2", "Bebida", 1200)
    engine.add_item("p1", "Renamed", 1)

    items = engine.items
    assert [i.product_id for i in items] == ["p1", "p2"]
    assert items[0].quantity == 4
    # cached data of an existing line is kept
    assert items[0].name == "Pizza"
    assert items[0].unit_price == Decimal("5000")
    assert_aggregates(engine)


def test_every_mutation_is_persisted(engine, storage):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 1}]

    engine.add_item("p1", "Pizza", 5000)
    engine.add_item("p2", "Bebida", 1200)
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 2}, {"productId": "p2", "qty": 1}]

    engine.set_quantity("p2", 5)
    assert stored(storage, "shop-a")[1] == {"productId": "p2", "qty": 5}

    engine.remove_item("p1")
    assert stored(storage, "shop-a") == [{"productId": "p2", "qty": 5}]


def test_remove_item_is_idempotent(engine):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.remove_item("p1")
    engine.remove_item("p1")
    engine.remove_item("missing")
    assert engine.items == ()
    assert engine.count == 0


@pytest.mark.parametrize("requested", [0, -3, 0.4, 1.9, None, float("nan"), float("-inf")])
def test_set_quantity_never_goes_below_one(engine, requested):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.set_quantity("p1", requested)

    assert len(engine.items) == 1
    assert engine.items[0].quantity == 1


def test_set_quantity_floors_fractions(engine):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.set_quantity("p1", 3.7)
    assert engine.items[0].quantity == 3
    assert engine.subtotal == Decimal("15000")


def test_set_quantity_for_unknown_product_is_noop(engine, storage):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.set_quantity("nope", 7)
    assert [(i.product_id, i.quantity) for i in engine.items] == [("p1", 1)]


def test_clamp_quantity():
    assert clamp_quantity(5) == 5
    assert clamp_quantity(2.99) == 2
    assert clamp_quantity(0) == 1
    assert clamp_quantity(float("inf")) == 1


def test_clear_deletes_the_stored_entry(engine, storage):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.clear()

    assert engine.items == ()
    assert storage_key("shop-a") not in storage.data


def test_aggregates_follow_every_mutation(engine):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    assert_aggregates(engine)
    engine.add_item("p2", "Bebida", Decimal("1200.50"))
    engine.add_item("p2", "Bebida", Decimal("1200.50"))
    assert_aggregates(engine)
    assert engine.count == 3
    assert engine.subtotal == Decimal("7401.00")
    engine.set_quantity("p1", 4)
    assert_aggregates(engine)
    engine.remove_item("p2")
    assert_aggregates(engine)
    assert engine.subtotal == Decimal("20000")


def test_items_are_a_read_only_snapshot(engine):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.items[0].quantity = 99
    assert engine.items[0].quantity == 1


# =====================================================
# store switching / persistence
# =====================================================
def test_store_isolation_roundtrip(engine):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.add_item("p1", "Pizza", 5000)

    engine.set_active_store("shop-b")
    assert engine.items == ()
    engine.add_item("p2", "Bebida", 1200)

    engine.set_active_store("shop-a")
    assert [(i.product_id, i.quantity) for i in engine.items] == [("p1", 2)]


def test_reload_restores_ids_and_quantities(storage, catalog):
    first = CartEngine(storage, catalog)
    first.set_active_store("shop-a")
    first.add_item("p1", "Pizza", 5000)
    first.add_item("p2", "Bebida", 1200)
    first.add_item("p3", "Empanada", 900)
    first.set_quantity("p2", 4)
    first.dispose()

    second = CartEngine(storage, catalog)
    second.set_active_store("shop-a")
    assert [(i.product_id, i.quantity) for i in second.items] == [("p1", 1), ("p2", 4), ("p3", 1)]
    # name/price wait for reconciliation
    assert all(i.name == PLACEHOLDER_NAME and i.unit_price == 0 for i in second.items)
    assert not any(i.hydrated for i in second.items)


def test_unset_store_empties_lines_but_keeps_storage(engine, storage):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.set_active_store(None)

    assert engine.items == ()
    assert engine.active_store_key is None
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 1}]


def test_set_same_store_twice_gives_same_result(engine):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.set_active_store("shop-a")
    engine.set_active_store("shop-a")
    assert [(i.product_id, i.quantity) for i in engine.items] == [("p1", 1)]


def test_epoch_increments_on_every_switch(engine):
    start = engine.epoch
    engine.set_active_store("shop-a")
    engine.set_active_store("shop-a")
    engine.set_active_store(None)
    assert engine.epoch == start + 3


def test_malformed_storage_gives_empty_cart(engine, storage):
    storage.write(storage_key("shop-a"), "{broken")
    assert engine.set_active_store("shop-a") is None
    assert engine.items == ()


def test_storage_failures_do_not_break_the_cart(catalog):
    broken = MagicMock()
    broken.read.side_effect = CartStorageError("down")
    broken.write.side_effect = CartStorageError("down")
    broken.delete.side_effect = CartStorageError("down")
    engine = CartEngine(broken, catalog)

    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    engine.set_quantity("p1", 3)
    assert engine.count == 3
    engine.clear()
    assert engine.count == 0


def test_no_reconciliation_is_scheduled_outside_an_event_loop(engine, storage, catalog):
    seed(storage, "shop-a", [("p1", 2)])
    assert engine.set_active_store("shop-a") is None
    assert catalog.calls == []


# =====================================================
# reconciliation
# =====================================================
@pytest.mark.asyncio
async def test_switching_store_schedules_reconciliation(engine, storage, catalog):
    seed(storage, "shop-a", [("p1", 2), ("p2", 1)])

    task = engine.set_active_store("shop-a")
    assert task is not None
    outcome = await task

    assert outcome.applied
    assert outcome.refreshed == ["p1", "p2"]
    assert catalog.calls == [["p1", "p2"]]
    assert [(i.name, i.unit_price, i.quantity) for i in engine.items] == [
        ("Pizza", Decimal("5000"), 2),
        ("Bebida", Decimal("1200"), 1),
    ]
    assert engine.subtotal == Decimal("11200")


@pytest.mark.asyncio
async def test_reconcile_drops_inactive_and_missing_products(engine, storage, catalog):
    catalog.put("p1", "Pizza grande", 5500)
    catalog.put("p2", "Bebida", 1200, is_active=False)
    seed(storage, "shop-a", [("p1", 3), ("p2", 1), ("gone", 4)])

    outcome = await engine.set_active_store("shop-a")

    assert sorted(outcome.dropped) == ["gone", "p2"]
    items = engine.items
    assert len(items) == 1
    assert (items[0].product_id, items[0].name, items[0].unit_price, items[0].quantity) == (
        "p1",
        "Pizza grande",
        Decimal("5500"),
        3,
    )
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 3}]


@pytest.mark.asyncio
async def test_default_reconcile_targets_unhydrated_lines_only(engine, storage, catalog):
    seed(storage, "shop-a", [("p1", 1)])
    catalog.fail = True
    await engine.set_active_store("shop-a")
    assert engine.items[0].hydrated is False

    catalog.fail = False
    catalog.calls.clear()
    engine.add_item("p2", "Bebida", 1200)

    outcome = await engine.hydrate()
    assert catalog.calls == [["p1"]]
    assert outcome.refreshed == ["p1"]
    assert [i.product_id for i in engine.items] == ["p1", "p2"]


@pytest.mark.asyncio
async def test_free_product_is_not_refetched(engine, catalog):
    catalog.put("gift", "Regalo", 0)
    engine.set_active_store("shop-a")
    engine.add_item("gift", "Regalo", 0)

    outcome = await engine.hydrate()
    assert catalog.calls == []
    assert not outcome.applied
    assert engine.items[0].name == "Regalo"


@pytest.mark.asyncio
async def test_explicit_ids_refresh_hydrated_lines(engine, catalog):
    engine.set_active_store("shop-a")
    engine.add_item("p1", "Pizza", 5000)
    catalog.put("p1", "Pizza", 5200)

    await engine.reconcile(["p1"])
    assert engine.items[0].unit_price == Decimal("5200")


@pytest.mark.asyncio
async def test_catalog_failure_keeps_cached_lines(engine, storage, catalog):
    seed(storage, "shop-a", [("p1", 2)])
    catalog.fail = True

    outcome = await engine.set_active_store("shop-a")

    assert not outcome.applied
    assert [(i.product_id, i.quantity, i.name) for i in engine.items] == [("p1", 2, PLACEHOLDER_NAME)]
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 2}]


@pytest.mark.asyncio
async def test_unreadable_catalog_rows_keep_their_lines(engine, storage, catalog):
    seed(storage, "shop-a", [("p1", 3), ("p2", 1)])
    catalog.unreadable = {"p2"}

    outcome = await engine.set_active_store("shop-a")

    assert outcome.refreshed == ["p1"]
    assert outcome.dropped == []
    assert outcome.unreadable == ["p2"]
    assert [(i.product_id, i.quantity, i.hydrated) for i in engine.items] == [
        ("p1", 3, True),
        ("p2", 1, False),
    ]
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 3}, {"productId": "p2", "qty": 1}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, payload",
    [(404, {"detail": "Not Found"}), (200, {"error": "db down"})],
)
async def test_broken_catalog_answer_never_empties_the_saved_cart(storage, status, payload):
    seed(storage, "shop", [("p1", 3), ("p2", 1)])
    resp = MagicMock(status_code=status)
    resp.json.return_value = payload
    engine = CartEngine(storage, CatalogClient(base_url="http://catalog.test", timeout=1))

    with patch("storefront.services.catalog_client.requests.get", return_value=resp):
        outcome = await engine.set_active_store("shop")

    assert not outcome.applied
    assert engine.count == 4
    assert stored(storage, "shop") == [{"productId": "p1", "qty": 3}, {"productId": "p2", "qty": 1}]


@pytest.mark.asyncio
async def test_catalog_timeout_keeps_cached_lines(storage, catalog, gate):
    engine = CartEngine(storage, catalog, lookup_timeout=0.05)
    seed(storage, "shop-a", [("p1", 2)])
    catalog.gate = gate

    outcome = await engine.set_active_store("shop-a")
    gate.set()

    assert not outcome.applied
    assert [(i.product_id, i.quantity) for i in engine.items] == [("p1", 2)]


@pytest.mark.asyncio
async def test_late_result_for_previous_store_is_discarded(engine, storage, catalog, gate):
    seed(storage, "shop-a", [("p1", 1)])
    catalog.put("p1", "Pizza", 5000, is_active=False)
    catalog.gate = gate

    task_a = engine.set_active_store("shop-a")
    await asyncio.sleep(0.05)

    # shop-b has nothing stored, so no reconciliation of its own
    assert engine.set_active_store("shop-b") is None
    engine.add_item("p1", "Pizza", 5000)
    gate.set()
    outcome = await task_a

    assert not outcome.applied
    assert engine.active_store_key == "shop-b"
    assert [(i.product_id, i.quantity) for i in engine.items] == [("p1", 1)]
    assert stored(storage, "shop-a") == [{"productId": "p1", "qty": 1}]
    assert stored(storage, "shop-b") == [{"productId": "p1", "qty": 1}]


@pytest.mark.asyncio
async def test_line_removed_during_lookup_stays_removed(engine, storage, catalog, gate):
    seed(storage, "shop-a", [("p1", 1), ("p2", 1)])
    catalog.gate = gate

    task = engine.set_active_store("shop-a")
    await asyncio.sleep(0.05)
    engine.remove_item("p2")
    gate.set()
    await task

    assert [i.product_id for i in engine.items] == ["p1"]
    assert engine.items[0].name == "Pizza"


@pytest.mark.asyncio
async def test_reconcile_without_store_does_nothing(engine, catalog):
    outcome = await engine.reconcile(["p1"])
    assert not outcome.applied
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_dispose_cancels_pending_reconciliation(engine, storage):
    seed(storage, "shop-a", [("p1", 1)])
    task = engine.set_active_store("shop-a")
    engine.dispose()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert engine.active_store_key is None
    assert engine.items == ()
