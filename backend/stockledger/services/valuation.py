# Overview: Weighted-average cost math and fixed-precision rounding for the stock ledger.
"""
Pure valuation helpers.

Quantities carry 3 fractional digits, money and cost carry 2. Every value
written to the ledger or compared for drift goes through quantize_quantity /
quantize_money first, otherwise reprocessing keeps finding sub-cent noise.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple

from ..models.stock import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_TRANSFER_IN,
)


QUANTITY_EXPONENT = Decimal("0.001")
MONEY_EXPONENT = Decimal("0.01")
ZERO = Decimal("0")

# Movement types whose price participates in the weighted average.
COST_AFFECTING_TYPES = frozenset({
    MOVEMENT_PURCHASE,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_RETURN,
})


class Position(NamedTuple):
    quantity: Decimal
    cost: Decimal


EMPTY_POSITION = Position(Decimal("0.000"), Decimal("0.00"))


def to_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def quantize_quantity(value) -> Decimal:
    return to_decimal(value).quantize(QUANTITY_EXPONENT, rounding=ROUND_HALF_UP)


def quantize_money(value) -> Decimal:
    return to_decimal(value).quantize(MONEY_EXPONENT, rounding=ROUND_HALF_UP)


def new_cost(qty_before, cost_before, qty_incoming, price_incoming) -> Decimal:
    """
    Weighted-average cost after `qty_incoming` units arrive at `price_incoming`.

    Returns cost_before unchanged when the resulting quantity is exactly zero,
    so selling or reverting down to an empty balance never resets cost.
    """
    qty_before = to_decimal(qty_before)
    qty_incoming = to_decimal(qty_incoming)
    total = qty_before + qty_incoming
    if total == 0:
        return quantize_money(cost_before)
    value = qty_before * to_decimal(cost_before) + qty_incoming * to_decimal(price_incoming)
    return quantize_money(value / total)


def unit_price(amount, quantity_delta, fallback=ZERO) -> Decimal:
    """Price per unit implied by a ledger amount; `fallback` when the delta is zero."""
    quantity_delta = to_decimal(quantity_delta)
    if quantity_delta == 0:
        return quantize_money(fallback)
    return quantize_money(abs(to_decimal(amount)) / abs(quantity_delta))


def changes_cost(movement_type: str, quantity_delta, *, reversal: bool = False) -> bool:
    """
    Incoming movements average in; a reversal of one unwinds it.

    Everything else (sales, transfers out, write-offs and reversals of
    write-offs) carries cost unchanged.
    """
    if movement_type not in COST_AFFECTING_TYPES:
        return False
    quantity_delta = to_decimal(quantity_delta)
    return quantity_delta < 0 if reversal else quantity_delta > 0


def roll_forward(position: Position, *, movement_type: str, quantity_delta, price, reversal: bool = False) -> Position:
    """Apply one ledger movement to a running (quantity, cost) position."""
    quantity = quantize_quantity(position.quantity + to_decimal(quantity_delta))
    if changes_cost(movement_type, quantity_delta, reversal=reversal):
        cost = new_cost(position.quantity, position.cost, quantity_delta, price)
    else:
        cost = quantize_money(position.cost)
    return Position(quantity, cost)


def movement_amount(quantity_delta, price) -> Decimal:
    """Signed value moved: delta x price, kept exact (3dp x 2dp)."""
    return to_decimal(quantity_delta) * quantize_money(price)
