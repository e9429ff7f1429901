from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP
from typing import Literal


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def quantize_money(value: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return Decimal(value).quantize(MONEY_QUANT, rounding=mode)


def line_total(unit_price: Decimal, quantity: int, *, rounding: MoneyRounding = "half_up") -> Decimal:
    return quantize_money(Decimal(unit_price) * int(quantity), rounding=rounding)


def sum_lines(lines: Iterable[tuple[Decimal, int]], *, rounding: MoneyRounding = "half_up") -> Decimal:
    """Subtotal of (unit_price, quantity) pairs, each line rounded before summing."""
    total = ZERO
    for unit_price, quantity in lines:
        total += line_total(unit_price, quantity, rounding=rounding)
    return quantize_money(total, rounding=rounding)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    shipping_discount: Decimal
    total: Decimal


def compute_order_totals(
    *,
    subtotal: Decimal,
    shipping: Decimal,
    discount: Decimal = ZERO,
    shipping_discount: Decimal = ZERO,
    rounding: MoneyRounding = "half_up",
) -> OrderTotals:
    subtotal_q = quantize_money(subtotal, rounding=rounding)
    shipping_q = quantize_money(shipping, rounding=rounding) if shipping > 0 else ZERO
    discount_q = min(quantize_money(discount, rounding=rounding), subtotal_q) if discount > 0 else ZERO
    shipping_discount_q = (
        min(quantize_money(shipping_discount, rounding=rounding), shipping_q) if shipping_discount > 0 else ZERO
    )
    total = subtotal_q - discount_q + shipping_q - shipping_discount_q
    if total < 0:
        total = ZERO
    return OrderTotals(
        subtotal=subtotal_q,
        discount=discount_q,
        shipping=shipping_q,
        shipping_discount=shipping_discount_q,
        total=quantize_money(total, rounding=rounding),
    )
