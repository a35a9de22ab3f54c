# Overview: Service-layer retroactive reprocessing; replays a key's ledger, heals drift, refreshes the aggregate.
"""
Reprocessing replays the ledger of one (store, product) from a date forward
and heals every entry whose stored snapshot no longer matches the replay.

Canonical order (used by replay and by fold_ledger):
    date, root created_at, root id, created_at, id
where the root is found by following parent_entry_id to the INITIAL entry.
A REVERSAL/CORRECTION pair therefore always sorts right after the entries
of the chain it supersedes, on the same date.

Each pass walks the ordered entries with a running (quantity, cost):
- An INITIAL entry whose document is no longer COMPLETED and that has no
  REVERSAL yet gets one, and the pass restarts.
- An entry of a COMPLETED document whose snapshot differs from the replay
  (3dp quantity, 2dp cost), that is not a REVERSAL and not reversed yet,
  gets a REVERSAL followed by a CORRECTION, and the pass restarts.
- A pass without repairs writes the final position into the Stock row.

Healing entries carry the snapshot of their own position in canonical
order, so the following pass recomputes exactly what was written.

The baseline is the fold of every entry dated before from_date rather than
the snapshot of the latest one: REVERSAL entries written when a document is
reverted describe the end of the ledger at that moment, not their own
position.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from flask import current_app

from ..errors import ReprocessingNonConvergence
from ..extensions import db
from ..models import LedgerEntry, ReprocessingRun, ReprocessingRunItem, Stock
from ..models.stock import (
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
    REASON_CORRECTION,
    REASON_INITIAL,
    REASON_REVERSAL,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_NOT_CONVERGED,
    RUN_STATUS_PENDING,
)
from ..time_utils import normalize_utc, utcnow
from .advisory_lock import acquire_advisory_locks
from .concurrency import lock_for_update, run_serializable
from .inventory_service import get_position
from .ledger_service import append_entry
from .valuation import (
    EMPTY_POSITION,
    Position,
    changes_cost,
    movement_amount,
    quantize_money,
    quantize_quantity,
    roll_forward,
    unit_price,
)


@dataclass(frozen=True)
class ReprocessOutcome:
    store_id: int
    product_id: int
    run_id: int
    converged: bool
    passes: int
    repairs: int
    old_position: Position
    new_position: Optional[Position]


@dataclass(frozen=True)
class LedgerCheck:
    store_id: int
    product_id: int
    stored: Position
    folded: Position

    @property
    def consistent(self) -> bool:
        return self.stored == self.folded


def canonical_order(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    entries = list(entries)
    by_id = {entry.id: entry for entry in entries}
    roots: dict[int, LedgerEntry] = {}

    def root_of(entry: LedgerEntry) -> LedgerEntry:
        path = []
        node = entry
        while node.id not in roots and node.parent_entry_id is not None:
            path.append(node)
            node = by_id.get(node.parent_entry_id) or node.parent
        root = roots.get(node.id, node)
        roots[node.id] = root
        for visited in path:
            roots[visited.id] = root
        return root

    def sort_key(entry: LedgerEntry):
        root = root_of(entry)
        return (entry.date, root.created_at, root.id, entry.created_at, entry.id)

    return sorted(entries, key=sort_key)


def _entry_price(entry: LedgerEntry, document, fallback) -> Decimal:
    # INITIAL purchases and returns are valued at the document line price.
    if (
        entry.reason == REASON_INITIAL
        and entry.movement_type in (MOVEMENT_PURCHASE, MOVEMENT_RETURN)
        and document is not None
    ):
        line = document.line_for(entry.product_id)
        if line is not None and line.price is not None:
            return quantize_money(line.price)
    return unit_price(entry.monetary_amount, entry.quantity_delta, fallback=fallback)


def _step(position: Position, entry: LedgerEntry, document) -> tuple[Position, Decimal]:
    price = _entry_price(entry, document, position.cost)
    after = roll_forward(
        position,
        movement_type=entry.movement_type,
        quantity_delta=entry.quantity_delta,
        price=price,
        reversal=entry.reason == REASON_REVERSAL,
    )
    return after, price


def _load_entries(store_id: int, product_id: int, *, since=None, before=None) -> list[LedgerEntry]:
    q = db.session.query(LedgerEntry).filter(
        LedgerEntry.store_id == store_id,
        LedgerEntry.product_id == product_id,
    )
    if since is not None:
        q = q.filter(LedgerEntry.date >= since)
    if before is not None:
        q = q.filter(LedgerEntry.date < before)
    return q.all()


def fold_ledger(store_id: int, product_id: int, *, before: datetime | None = None) -> Position:
    """
    Replay the ledger for a key from an empty position, without writing.

    With `before`, only entries dated strictly earlier are replayed.
    """
    before = normalize_utc(before) if before is not None else None
    position = EMPTY_POSITION
    for entry in canonical_order(_load_entries(store_id, product_id, before=before)):
        position, _ = _step(position, entry, entry.causing_document)
    return position


def verify_stock(store_id: int, product_id: int) -> LedgerCheck:
    return LedgerCheck(
        store_id=store_id,
        product_id=product_id,
        stored=get_position(store_id, product_id),
        folded=fold_ledger(store_id, product_id),
    )


def needs_reprocessing(store_id: int, product_ids: Iterable[int], date: datetime) -> bool:
    """True when any of the keys already has a ledger entry dated after `date`."""
    product_ids = list(product_ids)
    if not product_ids:
        return False
    later = (
        db.session.query(LedgerEntry.id)
        .filter(
            LedgerEntry.store_id == store_id,
            LedgerEntry.product_id.in_(product_ids),
            LedgerEntry.date > normalize_utc(date),
        )
        .first()
    )
    return later is not None


def _append_reversal(entry: LedgerEntry, after: Position, price, causation_id: str) -> Position:
    reversal_delta = -entry.quantity_delta
    restored = roll_forward(
        after,
        movement_type=entry.movement_type,
        quantity_delta=reversal_delta,
        price=price,
        reversal=True,
    )
    append_entry(
        source=entry,
        reason=REASON_REVERSAL,
        quantity_delta=reversal_delta,
        quantity_before=after.quantity,
        quantity_after=restored.quantity,
        cost_before=after.cost,
        cost_after=restored.cost,
        monetary_amount=-entry.monetary_amount,
        causation_id=causation_id,
    )
    return restored


def _append_correction(entry: LedgerEntry, restored: Position, price, causation_id: str) -> Position:
    # Outgoing movements are valued at the cost they leave at.
    if not changes_cost(entry.movement_type, entry.quantity_delta):
        price = restored.cost
    corrected = roll_forward(
        restored,
        movement_type=entry.movement_type,
        quantity_delta=entry.quantity_delta,
        price=price,
    )
    append_entry(
        source=entry,
        reason=REASON_CORRECTION,
        quantity_delta=entry.quantity_delta,
        quantity_before=restored.quantity,
        quantity_after=corrected.quantity,
        cost_before=restored.cost,
        cost_after=corrected.cost,
        monetary_amount=movement_amount(entry.quantity_delta, price),
        causation_id=causation_id,
    )
    return corrected


def _record_cost_at_sale(document, product_id: int, cost) -> None:
    line = document.line_for(product_id)
    if line is not None and line.cost_price != cost:
        line.cost_price = cost


def _run_passes(store_id: int, product_id: int, from_date: datetime, causation_id: str, max_passes: int):
    """Returns (passes, repairs, final position or None, converged)."""
    baseline = fold_ledger(store_id, product_id, before=from_date)
    repairs = 0

    for pass_number in range(1, max_passes + 1):
        entries = _load_entries(store_id, product_id, since=from_date)
        reversed_ids = {e.parent_entry_id for e in entries if e.reason == REASON_REVERSAL}
        position = baseline
        repaired = False

        for entry in canonical_order(entries):
            document = entry.causing_document
            still_valid = document is not None and document.is_completed
            after, price = _step(position, entry, document)

            if entry.reason == REASON_INITIAL and not still_valid and entry.id not in reversed_ids:
                _append_reversal(entry, after, price, causation_id)
                repaired = True
                break

            if entry.movement_type == MOVEMENT_SALE and still_valid and entry.reason != REASON_REVERSAL:
                _record_cost_at_sale(document, product_id, position.cost)

            stale = (
                quantize_quantity(entry.quantity_after) != after.quantity
                or quantize_money(entry.cost_after) != after.cost
            )
            if stale and still_valid and entry.id not in reversed_ids and entry.reason != REASON_REVERSAL:
                restored = _append_reversal(entry, after, price, causation_id)
                _append_correction(entry, restored, price, causation_id)
                repaired = True
                break

            position = after

        if repaired:
            repairs += 1
            continue
        return pass_number, repairs, position, True

    return max_passes, repairs, None, False


def _get_or_create_run(run_id: int | None, causation_id: str, from_date: datetime) -> ReprocessingRun:
    if run_id is not None:
        run = db.session.get(ReprocessingRun, run_id)
        if run is not None:
            return run
    run = ReprocessingRun(causation_id=causation_id, from_date=from_date, status=RUN_STATUS_PENDING)
    db.session.add(run)
    db.session.flush()
    return run


def _write_stock(store_id: int, product_id: int, position: Position) -> None:
    stock = lock_for_update(
        db.session.query(Stock).filter_by(store_id=store_id, product_id=product_id)
    ).first()
    if stock is None:
        stock = Stock(store_id=store_id, product_id=product_id)
        db.session.add(stock)
    if stock.quantity != position.quantity or stock.average_cost != position.cost:
        stock.quantity = position.quantity
        stock.average_cost = position.cost


def reprocess_product_history(
    store_id: int,
    product_id: int,
    from_date: datetime,
    causation_id: str,
    *,
    run_id: int | None = None,
) -> ReprocessOutcome:
    """
    Replay and heal the ledger of (store_id, product_id) from `from_date` in its own transaction.

    Holds the advisory lock for the key for the whole transaction. When the
    run is attached to an existing ReprocessingRun (`run_id`), the caller
    finalizes the run status; otherwise a run is created and closed here.

    Raises:
        ReprocessingNonConvergence: still repairing after REPROCESS_MAX_PASSES.
            Healing entries written so far are committed; the Stock row is
            left as it was.
        ConcurrencyConflict: the transaction lost a serialization race.
    """
    from_date = normalize_utc(from_date)
    max_passes = int(current_app.config.get("REPROCESS_MAX_PASSES", 5))
    owns_run = run_id is None

    def _op():
        acquire_advisory_locks([(store_id, product_id)])
        run = _get_or_create_run(run_id, causation_id, from_date)
        old_position = get_position(store_id, product_id)

        passes, repairs, final, converged = _run_passes(
            store_id, product_id, from_date, causation_id, max_passes
        )

        item = ReprocessingRunItem(
            run=run,
            store_id=store_id,
            product_id=product_id,
            old_quantity=old_position.quantity,
            old_average_cost=old_position.cost,
            passes=passes,
            repairs=repairs,
            converged=converged,
        )
        db.session.add(item)
        if converged:
            _write_stock(store_id, product_id, final)
            item.new_quantity = final.quantity
            item.new_average_cost = final.cost
            if owns_run:
                run.status = RUN_STATUS_COMPLETED
                run.finished_at = utcnow()
        else:
            item.new_quantity = old_position.quantity
            item.new_average_cost = old_position.cost
            run.status = RUN_STATUS_NOT_CONVERGED
            run.error_message = (
                f"product {product_id} in store {store_id} still drifting after {passes} passes"
            )
            if owns_run:
                run.finished_at = utcnow()
        db.session.flush()

        return ReprocessOutcome(
            store_id=store_id,
            product_id=product_id,
            run_id=run.id,
            converged=converged,
            passes=passes,
            repairs=repairs,
            old_position=old_position,
            new_position=final,
        )

    outcome = run_serializable(_op)

    if not outcome.converged:
        current_app.logger.warning(
            "Reprocessing store=%s product=%s from %s did not converge after %s passes "
            "(%s repairs committed, causation=%s)",
            store_id, product_id, from_date, outcome.passes, outcome.repairs, causation_id,
        )
        raise ReprocessingNonConvergence(
            store_id=store_id,
            product_id=product_id,
            passes=outcome.passes,
            repairs=outcome.repairs,
        )

    current_app.logger.info(
        "Reprocessed store=%s product=%s from %s: %s passes, %s repairs, %s -> %s",
        store_id, product_id, from_date, outcome.passes, outcome.repairs,
        tuple(outcome.old_position), tuple(outcome.new_position),
    )
    return outcome
