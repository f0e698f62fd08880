# storefront/repos/cart_repo.py
import json
import math
import threading
from typing import Dict, Iterable, List, Optional, Protocol

import redis
from redis.exceptions import RedisError

from storefront.domain.exceptions import CartStorageError
from storefront.domain.schemas import CartLine, PersistedCartLine
from storefront.utils.logging import get_logger
from storefront.utils.retry import redis_retry
from storefront.utils.settings import CART_NAMESPACE, CART_TTL_SECONDS, REDIS_URL

logger = get_logger(__name__)

#compare and delete in one step, a lock is only released by its owner
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


def storage_key(store_key: str, namespace: str = CART_NAMESPACE) -> str:
    #catalog_cart_v1:pizza-juan
    return f"{namespace}:{store_key}"


def _normalize_qty(value) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        return 1
    return max(1, math.floor(value or 1))


def load_persisted_lines(raw: Optional[str]) -> List[PersistedCartLine]:
    """
    Decode a stored cart.

    Anything that is not a JSON array gives an empty cart. Entries without a
    string productId or a numeric qty are skipped, quantities are clamped to
    >= 1 and repeated ids are merged into the first occurrence.
    """
    if not raw:
        return []

    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Stored cart is not valid JSON, starting empty")
        return []

    if not isinstance(parsed, list):
        return []

    merged: Dict[str, int] = {}
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        product_id = entry.get("productId")
        qty = entry.get("qty")
        if not isinstance(product_id, str) or not product_id:
            continue
        # bool is an int subclass but never a valid quantity
        if isinstance(qty, bool) or not isinstance(qty, (int, float)):
            continue
        merged[product_id] = merged.get(product_id, 0) + _normalize_qty(qty)

    return [PersistedCartLine(product_id=pid, qty=qty) for pid, qty in merged.items()]


def dump_persisted_lines(lines: Iterable[CartLine]) -> str:
    minimal = [line.to_persisted().model_dump(by_alias=True) for line in lines]
    return json.dumps(minimal, separators=(",", ":"))


class CartStorage(Protocol):
    """Durable string storage of one device."""

    def read(self, key: str) -> Optional[str]: ...

    def write(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def acquire_lock(self, key: str, token: str, ttl: int) -> bool: ...

    def release_lock(self, key: str, token: str) -> bool: ...


class InMemoryCartStorage:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})
        self.locks: Dict[str, str] = {}
        self._guard = threading.Lock()

    def read(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def write(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def acquire_lock(self, key: str, token: str, ttl: int) -> bool:
        #ttl ignored, the process owns every lock
        with self._guard:
            if key in self.locks:
                return False
            self.locks[key] = token
            return True

    def release_lock(self, key: str, token: str) -> bool:
        with self._guard:
            if self.locks.get(key) != token:
                return False
            del self.locks[key]
            return True


class RedisCartStorage:
    """
    Cart storage of a single device kept in redis.

    Keys are prefixed with ``device:<id>:`` so devices never share a cart.
    The TTL is refreshed on every write (0 disables expiry).
    """

    def __init__(
        self,
        device_id: str,
        url: str | None = None,
        ttl: int = CART_TTL_SECONDS,
        client: redis.Redis | None = None,
    ):
        if not device_id:
            raise ValueError("device_id is required")
        self.prefix = f"device:{device_id}"
        self.ttl = ttl
        self.redis = client or redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def read(self, key: str) -> Optional[str]:
        try:
            return self._get(self._key(key))
        except RedisError as e:
            raise CartStorageError(f"Cannot read {key}: {e}") from e

    def write(self, key: str, value: str) -> None:
        try:
            self._set(self._key(key), value)
        except RedisError as e:
            raise CartStorageError(f"Cannot write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._delete(self._key(key))
        except RedisError as e:
            raise CartStorageError(f"Cannot delete {key}: {e}") from e

    def acquire_lock(self, key: str, token: str, ttl: int) -> bool:
        try:
            return bool(self._set_nx(self._key(key), token, ttl))
        except RedisError as e:
            raise CartStorageError(f"Cannot lock {key}: {e}") from e

    def release_lock(self, key: str, token: str) -> bool:
        try:
            return bool(self._release(self._key(key), token))
        except RedisError as e:
            raise CartStorageError(f"Cannot unlock {key}: {e}") from e

    @redis_retry()
    def _get(self, full_key: str) -> Optional[str]:
        return self.redis.get(full_key)

    @redis_retry()
    def _set(self, full_key: str, value: str) -> None:
        logger.debug(f"SET {full_key}")
        if self.ttl > 0:
            #SET device:abc:catalog_cart_v1:pizza-juan "[...]" EX 2592000
            self.redis.set(name=full_key, value=value, ex=self.ttl)
        else:
            self.redis.set(name=full_key, value=value)

    @redis_retry()
    def _delete(self, full_key: str) -> None:
        logger.debug(f"DEL {full_key}")
        self.redis.delete(full_key)

    @redis_retry()
    def _set_nx(self, full_key: str, token: str, ttl: int):
        #SET device:abc:catalog_cart_v1:pizza-juan:lock "<token>" NX EX 30
        return self.redis.set(name=full_key, value=token, nx=True, ex=ttl)

    @redis_retry()
    def _release(self, full_key: str, token: str):
        return self.redis.eval(_RELEASE_LUA, 1, full_key, token)
