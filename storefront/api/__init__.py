# storefront/api/__init__.py
from fastapi import FastAPI

from storefront.api.routers import carts, catalog
from storefront.api.routers.health import router as health_router


def create_app() -> FastAPI:
    app = FastAPI(
        title="Storefront Cart Service",
        version="1.0.0",
    )
    app.include_router(health_router)
    app.include_router(catalog.router)
    app.include_router(carts.router)
    return app
