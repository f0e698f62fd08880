#storefront/api/routers/carts.py
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool

from storefront.api.deps import get_cart_engine, get_cart_lock, get_catalog_client
from storefront.domain.exceptions import (
    CartBusyError,
    CatalogUnavailableError,
    CheckoutRejectedError,
)
from storefront.domain.schemas import (
    CartOut,
    CheckoutDraft,
    CheckoutOut,
    ItemIn,
    QuantityIn,
    Tenant,
)
from storefront.services.cart_service import CartEngine
from storefront.services.catalog_client import CatalogClient
from storefront.services.checkout_service import prepare_checkout
from storefront.services.lock_service import CartLock

router = APIRouter(prefix="/carts", tags=["carts"])


@asynccontextmanager
async def open_cart(engine: CartEngine, lock: CartLock, slug: str, hydrate: bool = True):
    """
    Hold the cart lock for the whole read-modify-write of one request.

    Storage calls go through the threadpool (redis client is blocking); no
    event loop runs there, so set_active_store schedules nothing and the
    catalog refresh is awaited here instead.
    """
    try:
        token = await lock.acquire(slug)
    except CartBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    try:
        await run_in_threadpool(engine.set_active_store, slug)
        if hydrate:
            await engine.hydrate()
        yield engine
    finally:
        await lock.release(slug, token)


async def load_tenant(catalog: CatalogClient, slug: str) -> Tenant:
    try:
        tenant = await run_in_threadpool(catalog.fetch_tenant_by_slug, slug)
    except CatalogUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if tenant is None:
        raise HTTPException(status_code=404, detail="Catálogo no encontrado")
    return tenant


@router.get("/{slug}", response_model=CartOut)
async def get_cart(
    slug: str,
    engine: CartEngine = Depends(get_cart_engine),
    lock: CartLock = Depends(get_cart_lock),
):
    async with open_cart(engine, lock, slug):
        return engine.snapshot()


@router.post("/{slug}/items", response_model=CartOut)
async def add_item(
    slug: str,
    payload: ItemIn,
    engine: CartEngine = Depends(get_cart_engine),
    lock: CartLock = Depends(get_cart_lock),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    tenant = await load_tenant(catalog, slug)
    if not tenant.is_active:
        raise HTTPException(status_code=410, detail="Este catálogo está inactivo")

    try:
        lookup = await run_in_threadpool(catalog.get_products_by_ids, [payload.product_id])
    except CatalogUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if payload.product_id in lookup.unreadable:
        raise HTTPException(status_code=503, detail="Producto ilegible en el catálogo")

    product = next((p for p in lookup.products if p.id == payload.product_id), None)
    if product is None or not product.is_active:
        raise HTTPException(status_code=404, detail="Producto no disponible")
    if product.tenant_id is not None and product.tenant_id != tenant.id:
        raise HTTPException(status_code=404, detail="Producto no disponible")
    if product.is_sold_out:
        raise HTTPException(status_code=409, detail="Producto agotado")

    async with open_cart(engine, lock, slug):
        await run_in_threadpool(engine.add_item, product.id, product.name, product.unit_price)
        return engine.snapshot()


@router.put("/{slug}/items/{product_id}", response_model=CartOut)
async def set_quantity(
    slug: str,
    product_id: str,
    payload: QuantityIn,
    engine: CartEngine = Depends(get_cart_engine),
    lock: CartLock = Depends(get_cart_lock),
):
    async with open_cart(engine, lock, slug):
        await run_in_threadpool(engine.set_quantity, product_id, payload.quantity)
        return engine.snapshot()


@router.delete("/{slug}/items/{product_id}", response_model=CartOut)
async def remove_item(
    slug: str,
    product_id: str,
    engine: CartEngine = Depends(get_cart_engine),
    lock: CartLock = Depends(get_cart_lock),
):
    async with open_cart(engine, lock, slug):
        await run_in_threadpool(engine.remove_item, product_id)
        return engine.snapshot()


@router.delete("/{slug}", response_model=CartOut)
async def clear_cart(
    slug: str,
    engine: CartEngine = Depends(get_cart_engine),
    lock: CartLock = Depends(get_cart_lock),
):
    # no catalog round trip needed to empty a cart
    async with open_cart(engine, lock, slug, hydrate=False):
        await run_in_threadpool(engine.clear)
        return engine.snapshot()


@router.post("/{slug}/checkout", response_model=CheckoutOut)
async def checkout(
    slug: str,
    payload: CheckoutDraft,
    engine: CartEngine = Depends(get_cart_engine),
    lock: CartLock = Depends(get_cart_lock),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    tenant = await load_tenant(catalog, slug)
    async with open_cart(engine, lock, slug):
        lines = engine.items
    try:
        return prepare_checkout(tenant, lines, payload)
    except CheckoutRejectedError as e:
        raise HTTPException(status_code=400, detail=str(e))
