# storefront/services/cart_service.py
import asyncio
import math
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from storefront.domain.exceptions import CartStorageError, CatalogUnavailableError
from storefront.domain.schemas import (
    CartLine,
    CartLineOut,
    CartOut,
    PersistedCartLine,
    ReconcileOutcome,
)
from storefront.repos.cart_repo import (
    CartStorage,
    dump_persisted_lines,
    load_persisted_lines,
    storage_key,
)
from storefront.services.catalog_client import CatalogStore
from storefront.utils.logging import get_logger
from storefront.utils.settings import CART_NAMESPACE, RECONCILE_TIMEOUT_SECONDS

logger = get_logger(__name__)


def clamp_quantity(quantity) -> int:
    #0, negative, fractional and NaN all become >= 1, removal only via remove_item
    if quantity is None:
        return 1
    if isinstance(quantity, float) and not math.isfinite(quantity):
        return 1
    return max(1, math.floor(quantity))


class CartEngine:
    """
    Cart of the currently active store.

    - commands (set_active_store, add_item, remove_item, set_quantity, clear)
      change the lines and write them to the device storage right away
    - reconcile refreshes name/price from the catalog and drops lines of
      products that no longer exist or were deactivated
    - count and subtotal are always computed from the lines, never stored

    Every set_active_store call bumps an epoch. A reconciliation remembers the
    epoch it started in and throws its result away if the store changed
    while the catalog was answering.
    """

    def __init__(
        self,
        storage: CartStorage,
        catalog: CatalogStore,
        *,
        namespace: str = CART_NAMESPACE,
        lookup_timeout: float = RECONCILE_TIMEOUT_SECONDS,
    ):
        self.storage = storage
        self.catalog = catalog
        self.namespace = namespace
        self.lookup_timeout = lookup_timeout

        self.active_store_key: Optional[str] = None
        self._lines: List[CartLine] = []
        self._epoch = 0
        self._pending: Optional[asyncio.Task] = None

    # =====================================================
    # QUERY
    # =====================================================
    @property
    def items(self) -> Tuple[CartLine, ...]:
        return tuple(line.model_copy() for line in self._lines)

    @property
    def count(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_total for line in self._lines), Decimal("0"))

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def pending(self) -> Optional[asyncio.Task]:
        return self._pending

    def snapshot(self) -> CartOut:
        return CartOut(
            store_key=self.active_store_key,
            items=[
                CartLineOut(
                    product_id=line.product_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=line.quantity,
                    line_total=line.line_total,
                )
                for line in self._lines
            ],
            count=self.count,
            subtotal=self.subtotal,
        )

    # =====================================================
    # COMMANDS
    # =====================================================
    def set_active_store(self, key: Optional[str]) -> Optional[asyncio.Task]:
        """
        Switch the cart to another store (or to none).

        The in-memory lines are always discarded. Lines restored from storage
        start as unhydrated placeholders; when running inside an event loop a
        reconciliation for them is scheduled and the task returned. Outside a
        loop nothing is scheduled and the caller can await hydrate() later.
        """
        self._epoch += 1
        self._lines = []
        self._pending = None
        self.active_store_key = key or None

        if self.active_store_key is None:
            logger.info("Cart detached from any store")
            return None

        persisted = self._read_persisted(self.active_store_key)
        self._lines = [
            CartLine(product_id=p.product_id, quantity=p.qty) for p in persisted
        ]
        logger.info(
            f"Active store {self.active_store_key} (epoch {self._epoch}), "
            f"restored {len(self._lines)} lines"
        )

        if not self._lines:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, reconciliation left to the caller")
            return None

        ids = [line.product_id for line in self._lines]
        self._pending = loop.create_task(self.reconcile(ids))
        return self._pending

    def add_item(self, product_id: str, name: str, unit_price) -> None:
        # cart without owning store could leak between tenants
        if self.active_store_key is None:
            logger.warning(f"add_item({product_id}) ignored, no active store")
            return

        existing = self._find(product_id)
        if existing:
            existing.quantity += 1
            logger.info(
                f"Product {product_id} already in cart {self.active_store_key}, "
                f"quantity -> {existing.quantity}"
            )
        else:
            self._lines.append(
                CartLine(
                    product_id=product_id,
                    name=name,
                    unit_price=unit_price,
                    quantity=1,
                    hydrated=True,
                )
            )
            logger.info(f"Product {product_id} added to cart {self.active_store_key}")

        self._persist()

    def remove_item(self, product_id: str) -> None:
        before = len(self._lines)
        self._lines = [line for line in self._lines if line.product_id != product_id]
        if len(self._lines) != before:
            logger.info(f"Product {product_id} removed from cart {self.active_store_key}")
        self._persist()

    def set_quantity(self, product_id: str, quantity) -> None:
        line = self._find(product_id)
        if line is None:
            return

        line.quantity = clamp_quantity(quantity)
        self._persist()

    def clear(self) -> None:
        self._lines = []
        if self.active_store_key is None:
            return

        logger.info(f"Cart {self.active_store_key} cleared")
        try:
            self.storage.delete(self._key(self.active_store_key))
        except CartStorageError as e:
            logger.error(f"Could not delete stored cart {self.active_store_key}: {e}")

    async def reconcile(self, product_ids: Optional[Sequence[str]] = None) -> ReconcileOutcome:
        """
        Refresh cached name/price of the given products (default: every line
        not hydrated yet) with one batched catalog lookup.

        Missing or inactive products lose their line, quantities are never
        touched. A failed or timed out lookup keeps the cached data.
        """
        store_key = self.active_store_key
        if store_key is None:
            return ReconcileOutcome()

        if product_ids is None:
            product_ids = [line.product_id for line in self._lines if not line.hydrated]
        targets = list(dict.fromkeys(product_ids))
        if not targets:
            return ReconcileOutcome()

        epoch = self._epoch
        try:
            lookup = await asyncio.wait_for(
                asyncio.to_thread(self.catalog.get_products_by_ids, targets),
                timeout=self.lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Catalog lookup for cart {store_key} timed out after "
                f"{self.lookup_timeout}s, keeping cached lines"
            )
            return ReconcileOutcome()
        except CatalogUnavailableError as e:
            logger.warning(f"Catalog lookup for cart {store_key} failed: {e}")
            return ReconcileOutcome()

        if epoch != self._epoch:
            logger.debug(
                f"Discarding reconciliation for {store_key} (epoch {epoch}), "
                f"active store is now {self.active_store_key} (epoch {self._epoch})"
            )
            return ReconcileOutcome()

        fresh = {record.id: record for record in lookup.products}
        # unreadable rows say nothing about availability, their lines stay as they are
        wanted = set(targets) - set(lookup.unreadable)
        outcome = ReconcileOutcome(applied=True, unreadable=list(lookup.unreadable))
        kept: List[CartLine] = []

        for line in self._lines:
            if line.product_id not in wanted:
                kept.append(line)
                continue

            record = fresh.get(line.product_id)
            if record is None or not record.is_active:
                outcome.dropped.append(line.product_id)
                continue

            line.name = record.name
            line.unit_price = record.unit_price
            line.hydrated = True
            kept.append(line)
            outcome.refreshed.append(line.product_id)

        self._lines = kept

        if outcome.dropped:
            logger.info(
                f"Dropped unavailable products {outcome.dropped} from cart {store_key}"
            )
            # blocking write, run it off the event loop
            await asyncio.to_thread(self._persist)

        return outcome

    async def hydrate(self) -> ReconcileOutcome:
        return await self.reconcile()

    def dispose(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self.set_active_store(None)

    # =====================================================
    # helpers
    # =====================================================
    def _key(self, store_key: str) -> str:
        return storage_key(store_key, self.namespace)

    def _find(self, product_id: str) -> Optional[CartLine]:
        return next((line for line in self._lines if line.product_id == product_id), None)

    def _read_persisted(self, store_key: str) -> List[PersistedCartLine]:
        try:
            raw = self.storage.read(self._key(store_key))
        except CartStorageError as e:
            logger.warning(f"Could not read stored cart {store_key}, starting empty: {e}")
            return []
        return load_persisted_lines(raw)

    def _persist(self) -> None:
        if self.active_store_key is None:
            return
        try:
            self.storage.write(self._key(self.active_store_key), dump_persisted_lines(self._lines))
        except CartStorageError as e:
            #cart keeps working in memory, next mutation tries again
            logger.error(f"Could not persist cart {self.active_store_key}: {e}")
