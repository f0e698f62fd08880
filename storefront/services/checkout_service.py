# storefront/services/checkout_service.py
import re
from decimal import Decimal
from typing import Iterable, Optional, Sequence
from urllib.parse import quote

from storefront.domain.exceptions import CheckoutRejectedError
from storefront.domain.schemas import (
    CartLine,
    CheckoutDraft,
    CheckoutOut,
    Fulfillment,
    OrderMessage,
    Tenant,
)
from storefront.utils.logging import get_logger
from storefront.utils.settings import WHATSAPP_BASE_URL

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"[^0-9]")


def format_money(amount) -> str:
    """5000 -> '5000', 12.50 -> '12.5' (no trailing zeros, no exponent)."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    if value == value.to_integral_value():
        return str(value.quantize(Decimal(1)))
    return format(value.normalize(), "f")


def build_order_message(
    tenant_name: str,
    lines: Iterable[CartLine],
    fulfillment: Fulfillment | str,
    delivery_fee,
    address: Optional[str] = None,
    customer_name: str = "",
    note: Optional[str] = None,
) -> OrderMessage:
    """
    Order summary sent to the shop over WhatsApp.

    Subtotal is recomputed from the given lines, the delivery fee only counts
    for delivery. Output depends on the arguments only.
    """
    fulfillment = Fulfillment(fulfillment)
    lines = list(lines)
    fee = delivery_fee if isinstance(delivery_fee, Decimal) else Decimal(str(delivery_fee or 0))

    subtotal = sum((line.unit_price * line.quantity for line in lines), Decimal("0"))
    is_delivery = fulfillment == Fulfillment.DELIVERY
    total = subtotal + (fee if is_delivery else Decimal("0"))

    parts = [f"Hola! Quiero hacer un pedido en {tenant_name} 🛒", "", "Pedido:"]
    parts.extend(
        f"• {line.quantity}x {line.name} = ${format_money(line.unit_price * line.quantity)}"
        for line in lines
    )
    parts.append("")
    parts.append(f"Subtotal: ${format_money(subtotal)}")
    if is_delivery:
        parts.append(f"Delivery: ${format_money(fee)}")
    parts.append(f"Total: ${format_money(total)}")
    parts.append("")
    parts.append("Delivery ✅" if is_delivery else "Retiro en local ✅")
    if is_delivery and address and address.strip():
        parts.append(f"Dirección: {address.strip()}")
    parts.append("")
    parts.append(f"Nombre: {customer_name}")
    if note and note.strip():
        parts.append(f"Comentario: {note.strip()}")

    return OrderMessage(text="\n".join(parts), total=total)


def build_deep_link(phone: str, text: str, base_url: str = WHATSAPP_BASE_URL) -> str:
    digits = _NON_DIGITS.sub("", phone or "")
    return f"{base_url.rstrip('/')}/{digits}?text={quote(text, safe='')}"


def default_fulfillment(tenant: Tenant) -> Fulfillment:
    if tenant.delivery_enabled and not tenant.pickup_enabled:
        return Fulfillment.DELIVERY
    return Fulfillment.PICKUP


def prepare_checkout(
    tenant: Tenant,
    lines: Sequence[CartLine],
    draft: CheckoutDraft,
    base_url: str = WHATSAPP_BASE_URL,
) -> CheckoutOut:
    """
    Use case: checkout preview (message + WhatsApp link).

    Checks:
    - tenant is active and has a WhatsApp number
    - cart is not empty
    - the chosen (or default) fulfillment is enabled for the tenant
    - delivery has an address
    """
    if not tenant.is_active:
        raise CheckoutRejectedError("Este catálogo está inactivo")

    if not lines:
        raise CheckoutRejectedError("Tu carrito está vacío")

    fulfillment = draft.fulfillment or default_fulfillment(tenant)

    if fulfillment == Fulfillment.PICKUP and not tenant.pickup_enabled:
        raise CheckoutRejectedError("Este negocio no ofrece retiro en local")

    if fulfillment == Fulfillment.DELIVERY:
        if not tenant.delivery_enabled:
            raise CheckoutRejectedError("Este negocio no ofrece delivery")
        if not draft.delivery_address or len(draft.delivery_address) < 4:
            raise CheckoutRejectedError("La dirección es obligatoria para delivery")

    if not _NON_DIGITS.sub("", tenant.whatsapp_phone):
        raise CheckoutRejectedError("El negocio no tiene WhatsApp configurado")

    message = build_order_message(
        tenant_name=tenant.name,
        lines=lines,
        fulfillment=fulfillment,
        delivery_fee=tenant.delivery_fee,
        address=draft.delivery_address if fulfillment == Fulfillment.DELIVERY else None,
        customer_name=draft.customer_name,
        note=draft.note,
    )
    link = build_deep_link(tenant.whatsapp_phone, message.text, base_url)

    logger.info(
        f"Checkout prepared for {tenant.slug}: {len(lines)} lines, "
        f"{fulfillment.value}, total {format_money(message.total)}"
    )
    return CheckoutOut(text=message.text, total=message.total, link=link)
