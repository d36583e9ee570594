# backend/services/pricing.py
"""
Order pricing in integer minor units.

Money never passes through ``float`` here: prices, adjustments, fees and
totals are ``int`` and any non-integral input is rejected rather than rounded.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from services.errors import InvalidQuantity, InvalidShippingFee, ValidationFailed

logger = logging.getLogger(__name__)


def _as_money(value, name: str) -> int:
    # bool is an int subclass and never a price
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailed(f"{name} must be an integer amount of minor units", field=name, value=repr(value))
    return value


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    variant_id: Optional[int]
    quantity: int
    unit_price: int
    line_total: int
    product_name: str = ""
    variant_label: Optional[str] = None
    warnings: Sequence[str] = ()


@dataclass(frozen=True)
class OrderTotals:
    lines: Sequence[PricedLine]
    subtotal: int
    shipping_fee: int
    total: int
    warnings: Sequence[str] = field(default_factory=tuple)


def unit_price(base_price: int, adjustment: int = 0, *, context: str = "") -> Tuple[int, List[str]]:
    """Base price plus a signed variant adjustment, clamped at zero.

    A negative result is a catalogue data error, not a customer error: the price
    is clamped and a warning returned so the caller can surface it.
    """
    price = _as_money(base_price, "base_price") + _as_money(adjustment or 0, "price_adjustment")
    if price < 0:
        logger.warning("Negative unit price %s clamped to 0 (%s)", price, context or "unknown item")
        return 0, [f"Unit price for {context or 'item'} was negative ({price}) and was clamped to 0"]
    return price, []


def price_line(
    product_id: int,
    quantity: int,
    base_price: int,
    adjustment: int = 0,
    *,
    variant_id: Optional[int] = None,
    product_name: str = "",
    variant_label: Optional[str] = None,
) -> PricedLine:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(product_id=product_id, variant_id=variant_id, quantity=quantity)
    context = f"product {product_id}" + (f" variant {variant_id}" if variant_id else "")
    price, warnings = unit_price(base_price, adjustment, context=context)
    return PricedLine(
        product_id=product_id,
        variant_id=variant_id,
        quantity=quantity,
        unit_price=price,
        line_total=price * quantity,
        product_name=product_name,
        variant_label=variant_label,
        warnings=tuple(warnings),
    )


def order_totals(lines: Sequence[PricedLine], shipping_fee: int = 0) -> OrderTotals:
    fee = _as_money(shipping_fee, "shipping_fee")
    if fee < 0:
        raise InvalidShippingFee(shipping_fee=fee)
    subtotal = sum(line.line_total for line in lines)
    warnings = tuple(w for line in lines for w in line.warnings)
    return OrderTotals(lines=tuple(lines), subtotal=subtotal, shipping_fee=fee, total=subtotal + fee, warnings=warnings)
