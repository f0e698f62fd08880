# storefront/services/lock_service.py
import asyncio
import time
import uuid
from typing import Optional

from storefront.domain.exceptions import CartBusyError, CartStorageError
from storefront.repos.cart_repo import CartStorage, storage_key
from storefront.utils.logging import get_logger
from storefront.utils.settings import (
    CART_LOCK_TTL_SECONDS,
    CART_LOCK_WAIT_SECONDS,
    CART_NAMESPACE,
)

logger = get_logger(__name__)


class CartLock:
    """
    Per device, per store lock around a cart read-modify-write.

    - acquire: SET NX EX on ``<cart key>:lock`` with a random token, polled
      until ``wait`` runs out
    - release: compare and delete, a lock that expired and was taken by
      another request is left alone
    - the TTL bounds how long a crashed request can block the cart
    """

    def __init__(
        self,
        storage: CartStorage,
        *,
        namespace: str = CART_NAMESPACE,
        ttl: int = CART_LOCK_TTL_SECONDS,
        wait: float = CART_LOCK_WAIT_SECONDS,
        poll: float = 0.05,
    ):
        self.storage = storage
        self.namespace = namespace
        self.ttl = ttl
        self.wait = wait
        self.poll = poll

    def _lock_key(self, store_key: str) -> str:
        return f"{storage_key(store_key, self.namespace)}:lock"

    async def acquire(self, store_key: str) -> Optional[str]:
        """
        Returns the owner token. None means the storage is down: the cart
        then runs unlocked, nothing it does would be persisted anyway.
        """
        key = self._lock_key(store_key)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait

        while True:
            try:
                taken = await asyncio.to_thread(self.storage.acquire_lock, key, token, self.ttl)
            except CartStorageError as e:
                logger.warning(f"Could not lock cart {store_key}, continuing unlocked: {e}")
                return None

            if taken:
                logger.debug(f"Locked cart {store_key}")
                return token
            if time.monotonic() >= deadline:
                raise CartBusyError(f"Cart {store_key} is busy, try again")
            await asyncio.sleep(self.poll)

    async def release(self, store_key: str, token: Optional[str]) -> None:
        if token is None:
            return
        try:
            released = await asyncio.to_thread(
                self.storage.release_lock, self._lock_key(store_key), token
            )
        except CartStorageError as e:
            #the TTL frees it
            logger.warning(f"Could not unlock cart {store_key}: {e}")
            return
        if not released:
            logger.warning(f"Lock of cart {store_key} expired before release")
