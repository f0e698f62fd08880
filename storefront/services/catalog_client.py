# storefront/services/catalog_client.py
from typing import List, Optional, Protocol, Sequence

import requests
from pydantic import ValidationError
from requests import RequestException

from storefront.domain.exceptions import CatalogUnavailableError
from storefront.domain.schemas import (
    CatalogProduct,
    Category,
    ProductLookup,
    ProductSnapshot,
    Tenant,
)
from storefront.utils.logging import get_logger
from storefront.utils.retry import http_retry
from storefront.utils.settings import CATALOG_SERVICE_URL, CATALOG_TIMEOUT_SECONDS

logger = get_logger(__name__)


class CatalogStore(Protocol):
    """What the cart needs from the catalog: a batched product lookup."""

    def get_products_by_ids(self, ids: Sequence[str]) -> ProductLookup: ...


def _validate_rows(rows, model):
    if not isinstance(rows, list):
        logger.warning(f"Catalog returned {type(rows).__name__} instead of a list")
        return []

    valid = []
    for row in rows:
        try:
            valid.append(model.model_validate(row))
        except ValidationError as e:
            #bad row is skipped, the rest of the answer is still usable
            logger.warning(f"Dropping malformed {model.__name__} row: {e.errors()}")
    return valid


class CatalogClient:
    """HTTP client of catalog-service (tenants, categories, products)."""

    def __init__(self, base_url: str | None = None, timeout: float = CATALOG_TIMEOUT_SECONDS):
        self.base_url = (base_url or CATALOG_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def _get(self, path: str, params: dict | None = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.info(f"CatalogClient GET {url}")

        resp = requests.get(url, params=params, timeout=self.timeout)
        if resp.status_code != 404:
            resp.raise_for_status()
        return resp

    def _get_json(self, path: str, params: dict | None = None):
        try:
            resp = self._get(path, params)
        except RequestException as e:
            raise CatalogUnavailableError(f"Catalog request {path} failed: {e}") from e

        if resp.status_code == 404:
            return None

        try:
            return resp.json()
        except ValueError as e:
            raise CatalogUnavailableError(f"Catalog returned invalid JSON for {path}") from e

    def get_products_by_ids(self, ids: Sequence[str]) -> ProductLookup:
        """
        Batched lookup. Ids unknown to the catalog are simply absent from the
        result, an empty id list never hits the network.

        A 404 or a body that is not a list is an outage, not an empty answer.
        Rows failing validation are reported in ``unreadable``; if a bad row
        carries no usable id, every requested id missing from the answer is
        reported there too.
        """
        unique = list(dict.fromkeys(ids))
        if not unique:
            return ProductLookup()

        data = self._get_json("/products", params={"ids": ",".join(unique)})
        if data is None:
            raise CatalogUnavailableError("Catalog product lookup returned 404")
        if not isinstance(data, list):
            raise CatalogUnavailableError(
                f"Catalog product lookup returned {type(data).__name__} instead of a list"
            )

        products: List[ProductSnapshot] = []
        unreadable: List[str] = []
        anonymous_failure = False
        for row in data:
            try:
                products.append(ProductSnapshot.model_validate(row))
            except ValidationError as e:
                row_id = row.get("id") if isinstance(row, dict) else None
                logger.warning(f"Malformed product row {row_id!r}: {e.errors()}")
                if row_id is None or isinstance(row_id, (dict, list)):
                    anonymous_failure = True
                else:
                    unreadable.append(str(row_id))

        if anonymous_failure:
            answered = {p.id for p in products}
            unreadable.extend(i for i in unique if i not in answered)

        return ProductLookup(products=products, unreadable=list(dict.fromkeys(unreadable)))

    def fetch_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        data = self._get_json(f"/tenants/{slug}")
        if data is None:
            return None

        try:
            return Tenant.model_validate(data)
        except ValidationError as e:
            raise CatalogUnavailableError(f"Malformed tenant {slug}: {e.errors()}") from e

    def fetch_categories_by_tenant(self, tenant_id: str) -> List[Category]:
        data = self._get_json(f"/tenants/{tenant_id}/categories")
        categories = [c for c in _validate_rows(data or [], Category) if c.is_active]
        return sorted(categories, key=lambda c: c.sort_order)

    def fetch_products_by_tenant(self, tenant_id: str) -> List[CatalogProduct]:
        data = self._get_json(f"/tenants/{tenant_id}/products")
        return [p for p in _validate_rows(data or [], CatalogProduct) if p.is_active]
