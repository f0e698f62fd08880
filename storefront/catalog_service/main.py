# storefront/catalog_service/main.py
from fastapi import FastAPI, HTTPException, Query

app = FastAPI(title="Catalog Service (dev mock)")


TENANTS = {
    "pizza-juan": {
        "id": "t-1",
        "name": "Pizza Juan",
        "slug": "pizza-juan",
        "whatsapp_phone": "+56 9 1234 5678",
        "address": "Av. Libertad 123, Chillán",
        "delivery_fee": 1500,
        "pickup_enabled": True,
        "delivery_enabled": True,
        "lead_time_text": "30-40 min",
        "is_active": True,
    },
}

CATEGORIES = [
    {"id": "c-2", "tenant_id": "t-1", "name": "Bebidas", "sort_order": 2, "is_active": True},
    {"id": "c-1", "tenant_id": "t-1", "name": "Pizzas", "sort_order": 1, "is_active": True},
]

PRODUCTS = {
    "p-1": {"id": "p-1", "tenant_id": "t-1", "category_id": "c-1", "name": "Pizza", "base_price": 5000, "is_active": True, "is_sold_out": False},
    "p-2": {"id": "p-2", "tenant_id": "t-1", "category_id": "c-2", "name": "Bebida", "base_price": 1200, "is_active": True, "is_sold_out": False},
    "p-3": {"id": "p-3", "tenant_id": "t-1", "category_id": "c-1", "name": "Calzone", "base_price": 6500, "is_active": False, "is_sold_out": False},
}


@app.get("/products")
def get_products(ids: str = Query("")):
    wanted = [i for i in ids.split(",") if i]
    return [PRODUCTS[i] for i in wanted if i in PRODUCTS]


@app.get("/tenants/{slug}")
def get_tenant(slug: str):
    tenant = TENANTS.get(slug)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return tenant


@app.get("/tenants/{tenant_id}/categories")
def get_categories(tenant_id: str):
    return [c for c in CATEGORIES if c["tenant_id"] == tenant_id]


@app.get("/tenants/{tenant_id}/products")
def get_tenant_products(tenant_id: str):
    return [p for p in PRODUCTS.values() if p["tenant_id"] == tenant_id]
