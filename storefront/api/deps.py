# storefront/api/deps.py
from functools import lru_cache

import redis
from fastapi import Depends, Header

from storefront.repos.cart_repo import CartStorage, RedisCartStorage
from storefront.services.cart_service import CartEngine
from storefront.services.catalog_client import CatalogClient
from storefront.services.lock_service import CartLock
from storefront.utils.settings import REDIS_URL


@lru_cache()
def get_redis() -> redis.Redis:
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def get_catalog_client() -> CatalogClient:
    return CatalogClient()


def get_cart_storage(
    x_device_id: str = Header(..., alias="X-Device-Id", min_length=1, max_length=64),
) -> CartStorage:
    return RedisCartStorage(device_id=x_device_id, client=get_redis())


def get_cart_lock(storage: CartStorage = Depends(get_cart_storage)) -> CartLock:
    return CartLock(storage)


async def get_cart_engine(
    storage: CartStorage = Depends(get_cart_storage),
    catalog: CatalogClient = Depends(get_catalog_client),
):
    engine = CartEngine(storage=storage, catalog=catalog)
    try:
        yield engine
    finally:
        engine.dispose()
