# Overview: Service-layer operations for the stock ledger; appends movements and keeps the aggregate current.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import func

from ..errors import InsufficientStock
from ..extensions import db
from ..models import LedgerEntry, Stock
from ..models.stock import (
    DOCUMENT_FK_COLUMNS,
    MOVEMENT_TYPES,
    REASON_CORRECTION,
    REASON_INITIAL,
    REASON_REVERSAL,
)
from ..time_utils import normalize_utc, parse_iso_datetime
from .concurrency import lock_for_update
from .valuation import (
    movement_amount,
    new_cost,
    quantize_money,
    quantize_quantity,
    to_decimal,
)
"""
Stock Ledger Invariants (authoritative)

- The ledger is append-only. Healing happens through REVERSAL/CORRECTION
  entries, never through UPDATE or DELETE.
- Every entry stores the full before/after snapshot of (quantity, cost) for
  its (store, product).
- The Stock row for a key is updated in the same transaction as the entry.
- Quantity may not go below zero when a movement is applied.
- Cost changes only for INITIAL incoming movements with a positive
  quantity; outgoing movements, write-offs and every REVERSAL written here
  carry cost unchanged. Replay unwinds reversed receipts afterwards.
- Re-applying a completed document is a no-op: the net recorded delta for
  (document, product, store, movement type) already equals the target.

This module never commits; callers own the transaction.
"""


DIRECTION_IN = "IN"
DIRECTION_OUT = "OUT"


@dataclass(frozen=True)
class MovementContext:
    """Where, when and why a batch of movements happens."""
    store_id: int
    movement_type: str
    date: datetime
    document: object
    reason: str = REASON_INITIAL
    causation_id: Optional[str] = None


@dataclass(frozen=True)
class MovementItem:
    product_id: int
    quantity: Decimal
    # Incoming unit price; outgoing movements are always valued at current cost.
    price: Optional[Decimal] = None


def _document_filter(document):
    column = getattr(LedgerEntry, DOCUMENT_FK_COLUMNS[document.document_type])
    return column == document.id


def _load_stock(store_id: int, product_id: int) -> Stock:
    """Fetch (and row-lock) the aggregate, creating an empty one on first touch."""
    stock = lock_for_update(
        db.session.query(Stock).filter_by(store_id=store_id, product_id=product_id)
    ).first()
    if stock is None:
        stock = Stock(
            store_id=store_id,
            product_id=product_id,
            quantity=Decimal("0.000"),
            average_cost=Decimal("0.00"),
        )
        db.session.add(stock)
        db.session.flush()
    return stock


def net_recorded_delta(*, document, store_id: int, product_id: int, movement_type: str) -> Decimal:
    """Sum of every quantity_delta already written for this document/product/store/type."""
    total = (
        db.session.query(func.coalesce(func.sum(LedgerEntry.quantity_delta), 0))
        .filter(
            _document_filter(document),
            LedgerEntry.store_id == store_id,
            LedgerEntry.product_id == product_id,
            LedgerEntry.movement_type == movement_type,
        )
        .scalar()
    )
    return quantize_quantity(total)


def _latest_initial_entry_id(*, document, store_id: int, product_id: int, movement_type: str) -> Optional[int]:
    return (
        db.session.query(LedgerEntry.id)
        .filter(
            _document_filter(document),
            LedgerEntry.store_id == store_id,
            LedgerEntry.product_id == product_id,
            LedgerEntry.movement_type == movement_type,
            LedgerEntry.reason == REASON_INITIAL,
        )
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(1)
        .scalar()
    )


def document_link(document) -> dict:
    """LedgerEntry keyword pointing at the causing document."""
    return {DOCUMENT_FK_COLUMNS[document.document_type]: document.id}


def apply_movements(context: MovementContext, items: Iterable[MovementItem], direction: str) -> list[Stock]:
    """
    Apply stock movements for one document inside the caller's transaction.

    IN adds `quantity` units, OUT removes them; a revert passes the same
    direction with negated quantities and reason REVERSAL.

    Returns the Stock rows that changed. Items already fully recorded for the
    document are skipped.

    Raises:
        InsufficientStock: a movement would leave a negative quantity.
    """
    if direction not in (DIRECTION_IN, DIRECTION_OUT):
        raise ValueError(f"direction must be {DIRECTION_IN} or {DIRECTION_OUT}, got {direction!r}")
    if context.movement_type not in MOVEMENT_TYPES:
        raise ValueError(f"Unknown movement type: {context.movement_type}")
    if context.reason not in (REASON_INITIAL, REASON_REVERSAL):
        raise ValueError(f"apply_movements writes INITIAL or REVERSAL entries, got {context.reason}")

    document = context.document
    ref = document.ref
    causation_id = context.causation_id or ref
    entry_date = normalize_utc(context.date)
    updated: list[Stock] = []

    for item in items:
        quantity = quantize_quantity(item.quantity)
        delta = quantity if direction == DIRECTION_IN else -quantity
        if delta == 0:
            continue

        recorded = net_recorded_delta(
            document=document,
            store_id=context.store_id,
            product_id=item.product_id,
            movement_type=context.movement_type,
        )
        if context.reason == REASON_INITIAL and recorded == delta:
            current_app.logger.debug(
                "Skipping %s for product %s: already applied", ref, item.product_id
            )
            continue
        if context.reason == REASON_REVERSAL and recorded == 0:
            current_app.logger.debug(
                "Skipping reversal of %s for product %s: nothing recorded", ref, item.product_id
            )
            continue

        stock = _load_stock(context.store_id, item.product_id)
        qty_before = quantize_quantity(stock.quantity)
        cost_before = quantize_money(stock.average_cost)
        qty_after = quantize_quantity(qty_before + delta)
        if qty_after < 0:
            raise InsufficientStock(
                store_id=context.store_id,
                product_id=item.product_id,
                available=qty_before,
                requested=abs(delta),
            )

        if direction == DIRECTION_IN:
            price = quantize_money(item.price) if item.price is not None else cost_before
        else:
            price = cost_before

        # Receipts average in; reversals and outgoing movements carry cost.
        if direction == DIRECTION_IN and quantity > 0 and context.reason == REASON_INITIAL:
            cost_after = new_cost(qty_before, cost_before, delta, price)
        else:
            cost_after = cost_before

        parent_entry_id = None
        if context.reason == REASON_REVERSAL:
            parent_entry_id = _latest_initial_entry_id(
                document=document,
                store_id=context.store_id,
                product_id=item.product_id,
                movement_type=context.movement_type,
            )

        entry = LedgerEntry(
            movement_type=context.movement_type,
            store_id=context.store_id,
            product_id=item.product_id,
            date=entry_date,
            quantity_delta=delta,
            quantity_before=qty_before,
            quantity_after=qty_after,
            cost_before=cost_before,
            cost_after=cost_after,
            monetary_amount=movement_amount(delta, price),
            reason=context.reason,
            parent_entry_id=parent_entry_id,
            causation_id=causation_id,
            batch_id=ref,
            **document_link(document),
        )
        db.session.add(entry)

        stock.quantity = qty_after
        stock.average_cost = cost_after
        updated.append(stock)

    db.session.flush()
    return updated


def append_entry(
    *,
    source: LedgerEntry,
    reason: str,
    quantity_delta,
    quantity_before,
    quantity_after,
    cost_before,
    cost_after,
    monetary_amount,
    causation_id: str,
) -> LedgerEntry:
    """
    Append a REVERSAL or CORRECTION superseding `source`.

    The new entry shares the source's movement type, key, date, batch and
    causing document, and points at it through parent_entry_id.
    """
    if reason not in (REASON_REVERSAL, REASON_CORRECTION):
        raise ValueError(f"append_entry writes REVERSAL or CORRECTION entries, got {reason}")
    entry = LedgerEntry(
        movement_type=source.movement_type,
        store_id=source.store_id,
        product_id=source.product_id,
        date=source.date,
        quantity_delta=quantize_quantity(quantity_delta),
        quantity_before=quantize_quantity(quantity_before),
        quantity_after=quantize_quantity(quantity_after),
        cost_before=quantize_money(cost_before),
        cost_after=quantize_money(cost_after),
        monetary_amount=to_decimal(monetary_amount),
        reason=reason,
        parent_entry_id=source.id,
        causation_id=causation_id,
        batch_id=source.batch_id,
        purchase_document_id=source.purchase_document_id,
        sale_document_id=source.sale_document_id,
        return_document_id=source.return_document_id,
        adjustment_document_id=source.adjustment_document_id,
        transfer_document_id=source.transfer_document_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def _coerce_datetime(value):
    if value is None or isinstance(value, datetime):
        return normalize_utc(value) if value is not None else None
    return parse_iso_datetime(value)


def list_ledger_entries(
    *,
    store_id: int | None = None,
    product_id: int | None = None,
    movement_type: str | None = None,
    start=None,
    end=None,
    limit: int | None = None,
) -> list[LedgerEntry]:
    """
    Read-only ledger query for reporting layers.

    Date bounds are inclusive and accept datetimes or ISO-8601 strings.
    Rows come back in insertion order within a date.
    """
    q = db.session.query(LedgerEntry)
    if store_id is not None:
        q = q.filter(LedgerEntry.store_id == store_id)
    if product_id is not None:
        q = q.filter(LedgerEntry.product_id == product_id)
    if movement_type is not None:
        q = q.filter(LedgerEntry.movement_type == movement_type)
    start = _coerce_datetime(start)
    end = _coerce_datetime(end)
    if start is not None:
        q = q.filter(LedgerEntry.date >= start)
    if end is not None:
        q = q.filter(LedgerEntry.date <= end)
    q = q.order_by(LedgerEntry.date.asc(), LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()
