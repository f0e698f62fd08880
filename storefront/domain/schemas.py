# storefront/domain/schemas.py
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# name shown for a line restored from storage before the catalog answers
PLACEHOLDER_NAME = "Producto"


def _to_decimal(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


class Fulfillment(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


# =====================================================
# CART
# =====================================================
class PersistedCartLine(BaseModel):
    """Durable part of a cart line: product id and quantity only."""

    product_id: str = Field(..., min_length=1, alias="productId")
    qty: int = Field(..., ge=1)

    model_config = ConfigDict(populate_by_name=True)


class CartLine(BaseModel):
    """One product in the active cart, with a cached copy of its catalog data."""

    product_id: str = Field(..., min_length=1)
    name: str = PLACEHOLDER_NAME
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    quantity: int = Field(default=1, ge=1)
    hydrated: bool = False

    @field_validator("unit_price", mode="before")
    @classmethod
    def _price(cls, v):
        return _to_decimal(v)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_persisted(self) -> PersistedCartLine:
        return PersistedCartLine(product_id=self.product_id, qty=self.quantity)


class ReconcileOutcome(BaseModel):
    """Result of one reconciliation pass against the catalog."""

    applied: bool = False
    refreshed: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    unreadable: List[str] = Field(default_factory=list)


# =====================================================
# CATALOG (validated at the client boundary)
# =====================================================
class ProductSnapshot(BaseModel):
    """Current catalog truth for a product, as used by reconciliation."""

    id: str
    name: str
    tenant_id: str | None = None
    unit_price: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        validation_alias=AliasChoices("unit_price", "base_price"),
    )
    is_active: bool = False
    is_sold_out: bool = False

    @field_validator("id", "tenant_id", mode="before")
    @classmethod
    def _id(cls, v):
        return None if v is None else str(v)

    @field_validator("unit_price", mode="before")
    @classmethod
    def _price(cls, v):
        return _to_decimal(v)

    @field_validator("is_active", "is_sold_out", mode="before")
    @classmethod
    def _active(cls, v):
        return bool(v)


class ProductLookup(BaseModel):
    """
    Answer of a batched product lookup.

    ``unreadable`` lists requested ids the catalog answered for but whose rows
    could not be validated; they are neither fresh nor known to be gone.
    """

    products: List[ProductSnapshot] = Field(default_factory=list)
    unreadable: List[str] = Field(default_factory=list)


class CatalogProduct(ProductSnapshot):
    description: str | None = None
    category_id: str | None = None


class Category(BaseModel):
    id: str
    name: str
    sort_order: int = 0
    is_active: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v):
        return str(v)


class Tenant(BaseModel):
    """Public view of a shop, including its fulfillment config."""

    id: str
    name: str
    slug: str
    whatsapp_phone: str = ""
    address: str | None = None
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    pickup_enabled: bool = True
    delivery_enabled: bool = False
    lead_time_text: str | None = None
    is_active: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, v):
        return str(v)

    @field_validator("delivery_fee", mode="before")
    @classmethod
    def _fee(cls, v):
        return _to_decimal(v)


# =====================================================
# CHECKOUT
# =====================================================
class CheckoutDraft(BaseModel):
    """Customer input collected on the checkout page."""

    customer_name: str = Field(..., min_length=2, max_length=60)
    fulfillment: Fulfillment | None = None
    delivery_address: str | None = Field(default=None, max_length=120)
    note: str | None = Field(default=None, max_length=300)

    model_config = ConfigDict(str_strip_whitespace=True)

    @model_validator(mode="after")
    def _address_for_delivery(self):
        if self.fulfillment == Fulfillment.DELIVERY:
            if not self.delivery_address or len(self.delivery_address) < 4:
                raise ValueError("La dirección es obligatoria para delivery")
        return self


class OrderMessage(BaseModel):
    text: str
    total: Decimal


# =====================================================
# API
# =====================================================
class ItemIn(BaseModel):
    """Schema for adding a product to the cart."""

    product_id: str = Field(..., min_length=1, description="Catalog product id")


class QuantityIn(BaseModel):
    """Schema for setting a line quantity (clamped to >= 1 by the cart)."""

    quantity: float = Field(..., description="Requested quantity")


class CartLineOut(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class CartOut(BaseModel):
    store_key: str | None
    items: List[CartLineOut]
    count: int
    subtotal: Decimal


class CheckoutOut(BaseModel):
    text: str
    total: Decimal
    link: str


class CatalogOut(BaseModel):
    tenant: Tenant
    categories: List[Category]
    products: List[CatalogProduct]
