"""Pricing and cost arithmetic for the stock ledger.

Every function is pure and works on :class:`~decimal.Decimal` values. Monetary
results are rounded to two decimals (half away from zero) at the point of
computation, so summing rounded results never accumulates sub-cent drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol, Union

from .constants import BILL_NUMBER_WIDTH


Number = Union[Decimal, int, str]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


class PricedLine(Protocol):
    qty: int
    unit_price: Decimal


class CostedLine(Protocol):
    qty: int
    unit_price: Decimal
    unit_cost_at_sale: Decimal


def to_decimal(value: Number) -> Decimal:
    """Coerce ints, strings and decimals into :class:`Decimal` without float noise."""

    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Number) -> Decimal:
    """Round ``value`` to cents using half-away-from-zero."""

    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def weighted_avg_cost(cur_qty: int, cur_avg_cost: Number, add_qty: int, add_unit_cost: Number) -> Decimal:
    """Blend an inbound lot into the current weighted-average unit cost.

    ``(cur_qty * cur_avg_cost + add_qty * add_unit_cost) / (cur_qty + add_qty)``
    rounded to cents, or ``0.00`` when the combined quantity is zero.
    """

    total_qty = cur_qty + add_qty
    if total_qty == 0:
        return ZERO
    total_value = cur_qty * to_decimal(cur_avg_cost) + add_qty * to_decimal(add_unit_cost)
    return round_money(total_value / total_qty)


def discount_amount(subtotal: Number, pct: Number) -> Decimal:
    return round_money(to_decimal(subtotal) * to_decimal(pct) / HUNDRED)


def tax_amount(after_discount: Number, pct: Number) -> Decimal:
    return round_money(to_decimal(after_discount) * to_decimal(pct) / HUNDRED)


def grand_total(subtotal: Number, discount: Number, tax: Number) -> Decimal:
    return round_money(to_decimal(subtotal) - to_decimal(discount) + to_decimal(tax))


def line_subtotal(items: Iterable[PricedLine]) -> Decimal:
    """Sum ``qty * unit_price`` over cart lines."""

    return round_money(sum((item.qty * to_decimal(item.unit_price) for item in items), ZERO))


@dataclass(frozen=True)
class SaleTotals:
    """Bill arithmetic derived from cart lines and the two percentages."""

    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total: Decimal


def compute_sale_totals(items: Iterable[PricedLine], discount_percent: Number, tax_percent: Number) -> SaleTotals:
    """Compute subtotal, discount, tax and total the way the till does.

    Discount applies to the subtotal, tax applies to the discounted amount.
    """

    subtotal = line_subtotal(items)
    discount = discount_amount(subtotal, discount_percent)
    tax = tax_amount(subtotal - discount, tax_percent)
    return SaleTotals(
        subtotal=subtotal,
        discount_amount=discount,
        tax_amount=tax,
        total=grand_total(subtotal, discount, tax),
    )


def item_profit(unit_price: Number, unit_cost_at_sale: Number, qty: int) -> Decimal:
    return round_money((to_decimal(unit_price) - to_decimal(unit_cost_at_sale)) * qty)


def sale_profit(items: Iterable[CostedLine]) -> Decimal:
    """Total profit of a sale from its frozen cost snapshots."""

    return round_money(
        sum((item_profit(item.unit_price, item.unit_cost_at_sale, item.qty) for item in items), ZERO)
    )


def margin_percent(price: Number, cost: Number) -> Decimal:
    """Profit as a share of selling price, e.g. cost 100 / price 150 -> 33.33."""

    price = to_decimal(price)
    if price == 0:
        return ZERO
    return round_money((price - to_decimal(cost)) / price * HUNDRED)


def markup_percent(price: Number, cost: Number) -> Decimal:
    """Profit as a share of cost, e.g. cost 100 / price 150 -> 50.00."""

    cost = to_decimal(cost)
    if cost == 0:
        return ZERO
    return round_money((to_decimal(price) - cost) / cost * HUNDRED)


def stock_value(stock_qty: int, avg_cost: Number) -> Decimal:
    return round_money(stock_qty * to_decimal(avg_cost))


def is_low_stock(stock_qty: int, threshold: int) -> bool:
    return stock_qty <= threshold


def format_bill_number(prefix: str, last_number: int) -> str:
    """Return the bill number that follows ``last_number``.

    >>> format_bill_number("MJT", 41)
    'MJT000042'
    """

    return f"{prefix}{last_number + 1:0{BILL_NUMBER_WIDTH}d}"


__all__ = [
    "CENT",
    "ZERO",
    "to_decimal",
    "round_money",
    "weighted_avg_cost",
    "discount_amount",
    "tax_amount",
    "grand_total",
    "line_subtotal",
    "SaleTotals",
    "compute_sale_totals",
    "item_profit",
    "sale_profit",
    "margin_percent",
    "markup_percent",
    "stock_value",
    "is_low_stock",
    "format_bill_number",
]
