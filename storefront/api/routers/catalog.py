# storefront/api/routers/catalog.py
from fastapi import APIRouter, Depends, HTTPException

from storefront.api.deps import get_catalog_client
from storefront.domain.exceptions import CatalogUnavailableError
from storefront.domain.schemas import CatalogOut
from storefront.services.catalog_client import CatalogClient

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("/{slug}", response_model=CatalogOut)
def get_catalog(slug: str, catalog: CatalogClient = Depends(get_catalog_client)):
    try:
        tenant = catalog.fetch_tenant_by_slug(slug)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Catálogo no encontrado")
        if not tenant.is_active:
            raise HTTPException(status_code=410, detail="Este catálogo está inactivo")

        return CatalogOut(
            tenant=tenant,
            categories=catalog.fetch_categories_by_tenant(tenant.id),
            products=catalog.fetch_products_by_tenant(tenant.id),
        )
    except CatalogUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
