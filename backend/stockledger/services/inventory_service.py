# Overview: Service-layer read access to stock positions and the revert guard.

from __future__ import annotations

from typing import Iterable

from ..errors import InsufficientStockToRevert, NegativeValuationOnRevert
from ..extensions import db
from ..models import Stock
from .ledger_service import MovementItem
from .valuation import EMPTY_POSITION, Position, quantize_money, quantize_quantity, to_decimal


def get_stock(store_id: int, product_id: int) -> Stock | None:
    return db.session.query(Stock).filter_by(store_id=store_id, product_id=product_id).first()


def get_position(store_id: int, product_id: int) -> Position:
    """Current (quantity, average cost); empty position when nothing was ever recorded."""
    stock = get_stock(store_id, product_id)
    if stock is None:
        return EMPTY_POSITION
    return Position(quantize_quantity(stock.quantity), quantize_money(stock.average_cost))


def list_stocks(*, store_id: int | None = None, product_id: int | None = None) -> list[Stock]:
    q = db.session.query(Stock)
    if store_id is not None:
        q = q.filter(Stock.store_id == store_id)
    if product_id is not None:
        q = q.filter(Stock.product_id == product_id)
    return q.order_by(Stock.store_id.asc(), Stock.product_id.asc()).all()


def validate_revert(store_id: int, items: Iterable[MovementItem]) -> None:
    """
    Refuse to revert a stock-increasing movement that is no longer covered.

    For every item, the store must still hold at least `quantity` units and
    at least `quantity * price` of value, where price is the unit cost the
    original movement came in at.

    Raises:
        InsufficientStockToRevert
        NegativeValuationOnRevert
    """
    for item in items:
        quantity = quantize_quantity(item.quantity)
        position = get_position(store_id, item.product_id)

        if position.quantity < quantity:
            raise InsufficientStockToRevert(
                store_id=store_id,
                product_id=item.product_id,
                available=position.quantity,
                requested=quantity,
            )

        available_value = position.quantity * position.cost
        required_value = quantity * quantize_money(to_decimal(item.price))
        if available_value < required_value:
            raise NegativeValuationOnRevert(
                store_id=store_id,
                product_id=item.product_id,
                available_value=quantize_money(available_value),
                required_value=quantize_money(required_value),
            )
