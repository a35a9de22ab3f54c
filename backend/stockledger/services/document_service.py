# Overview: Service-layer status changes for causing documents; drives the ledger, revert guard and reprocessing.

"""
Stock Document Status Orchestration

================================================================================
PURPOSE: Turn document status changes into ledger movements
================================================================================

STATES:
    DRAFT, SCHEDULED, COMPLETED, CANCELLED

    Only COMPLETED documents have a live effect on stock. Ledger entries of a
    document that leaves COMPLETED are neutralized by REVERSAL entries.

RULES:
1. Requesting COMPLETED for a document dated in the future stores SCHEDULED
   instead; an external scheduler completes it when the date arrives.
2. CANCELLED is terminal: no further status change is accepted.
3. DRAFT/SCHEDULED -> COMPLETED applies INITIAL movements.
4. COMPLETED -> DRAFT/SCHEDULED/CANCELLED runs the revert guard for
   stock-increasing movements, then applies the same direction with negated
   quantities as REVERSAL entries.
5. The status change and its movements commit together in one serializable
   transaction that holds the advisory lock of every affected key.
6. After commit, every affected key is reprocessed sequentially, each in its
   own locked transaction: always after a revert, and after a completion only
   when the key already has entries dated later than the document.
7. A failed reprocessing run is logged and reported; it never undoes the
   committed status change. The next reprocessing of that key heals it.

MOVEMENTS BY DOCUMENT TYPE:
    PURCHASE    IN at the line price
    RETURN      IN at the line price (current average cost when left empty)
    ADJUSTMENT  IN with signed quantity at the current average cost
    SALE        OUT at the current average cost, recorded on the line
    TRANSFER    OUT at the source, then IN at the destination at the
                source's average cost
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    DocumentStatusError,
    DocumentValidationError,
    InventoryError,
    ReprocessingNonConvergence,
)
from ..extensions import db
from ..models import ReprocessingRun
from ..models.documents import (
    DOCUMENT_MODELS,
    DOCUMENT_STATUS_CANCELLED,
    DOCUMENT_STATUS_COMPLETED,
    DOCUMENT_STATUS_DRAFT,
    DOCUMENT_STATUS_SCHEDULED,
    DOCUMENT_STATUSES,
    AdjustmentLine,
    PurchaseLine,
    ReturnLine,
    SaleLine,
    TransferLine,
)
from ..models.stock import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_PURCHASE,
    MOVEMENT_RETURN,
    MOVEMENT_SALE,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
    REASON_INITIAL,
    REASON_REVERSAL,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_NOT_CONVERGED,
    RUN_STATUS_PENDING,
)
from ..time_utils import normalize_utc, utcnow
from .advisory_lock import acquire_advisory_locks
from .concurrency import lock_for_update, run_serializable
from .inventory_service import get_position, validate_revert
from .ledger_service import (
    DIRECTION_IN,
    DIRECTION_OUT,
    MovementContext,
    MovementItem,
    apply_movements,
)
from .reprocessing_service import ReprocessOutcome, needs_reprocessing, reprocess_product_history
from .valuation import quantize_money, quantize_quantity


ACTION_COMPLETE = "COMPLETE"
ACTION_REVERT = "REVERT"

_LINE_MODELS = {
    "PURCHASE": PurchaseLine,
    "SALE": SaleLine,
    "RETURN": ReturnLine,
    "ADJUSTMENT": AdjustmentLine,
    "TRANSFER": TransferLine,
}


@dataclass
class StatusChange:
    document_ref: str
    old_status: str
    new_status: str
    action: Optional[str] = None
    run_id: Optional[int] = None
    reprocessed: list[ReprocessOutcome] = field(default_factory=list)
    failures: list[tuple[int, int, str]] = field(default_factory=list)

    @property
    def fully_reprocessed(self) -> bool:
        return not self.failures


def _model_for(document_type: str):
    model = DOCUMENT_MODELS.get(document_type)
    if model is None:
        raise DocumentStatusError(
            f"Unknown document type '{document_type}'. Must be one of: {', '.join(sorted(DOCUMENT_MODELS))}"
        )
    return model


def get_document(document_type: str, document_id: int):
    return db.session.get(_model_for(document_type), document_id)


def affected_keys(document) -> list[tuple[int, int]]:
    """(store_id, product_id) pairs whose stock the document moves."""
    if document.document_type == "TRANSFER":
        keys = []
        for line in document.lines:
            keys.append((document.source_store_id, line.product_id))
            keys.append((document.destination_store_id, line.product_id))
        return keys
    return [(document.store_id, line.product_id) for line in document.lines]


# ============================================================================
# Creation
# ============================================================================

def _validate_lines(document_type: str, lines: list[dict]) -> None:
    if not lines:
        raise DocumentValidationError("A document needs at least one line")
    seen = set()
    for line in lines:
        product_id = line.get("product_id")
        if product_id is None:
            raise DocumentValidationError("Every line needs a product_id")
        if product_id in seen:
            raise DocumentValidationError(f"Product {product_id} appears on more than one line")
        seen.add(product_id)

        quantity = quantize_quantity(line.get("quantity"))
        if document_type == "ADJUSTMENT":
            if quantity == 0:
                raise DocumentValidationError("Adjustment quantity cannot be zero")
        elif quantity <= 0:
            raise DocumentValidationError("Line quantity must be positive")

        price = line.get("price")
        if document_type in ("PURCHASE", "SALE") and price is None:
            raise DocumentValidationError(f"{document_type} lines need a price")
        if price is not None and quantize_money(price) < 0:
            raise DocumentValidationError("Line price cannot be negative")


def create_document(
    document_type: str,
    *,
    lines: list[dict],
    date: datetime | None = None,
    store_id: int | None = None,
    source_store_id: int | None = None,
    destination_store_id: int | None = None,
    notes: str | None = None,
):
    """
    Create a DRAFT document with its lines and commit it.

    `lines` holds dicts with product_id, quantity and (where the type uses
    one) price. Transfers take source_store_id/destination_store_id; all
    other types take store_id.
    """
    model = _model_for(document_type)
    line_model = _LINE_MODELS[document_type]
    _validate_lines(document_type, lines)

    if document_type == "TRANSFER":
        if source_store_id is None or destination_store_id is None:
            raise DocumentValidationError("Transfers need a source and a destination store")
        if source_store_id == destination_store_id:
            raise DocumentValidationError("Cannot transfer to the same store")
        header = {"source_store_id": source_store_id, "destination_store_id": destination_store_id}
    else:
        if store_id is None:
            raise DocumentValidationError(f"{document_type} documents need a store_id")
        header = {"store_id": store_id}

    document = model(
        status=DOCUMENT_STATUS_DRAFT,
        date=normalize_utc(date) if date is not None else utcnow(),
        notes=notes,
        **header,
    )
    for line in lines:
        values = {"product_id": line["product_id"], "quantity": quantize_quantity(line["quantity"])}
        if document_type != "TRANSFER" and line.get("price") is not None:
            values["price"] = quantize_money(line["price"])
        document.lines.append(line_model(**values))

    db.session.add(document)
    db.session.commit()
    return document


# ============================================================================
# Movements
# ============================================================================

def _context(document, store_id: int, movement_type: str, reason: str) -> MovementContext:
    return MovementContext(
        store_id=store_id,
        movement_type=movement_type,
        date=document.date,
        document=document,
        reason=reason,
        causation_id=document.ref,
    )


def _complete(document) -> None:
    kind = document.document_type

    if kind == "PURCHASE":
        items = [MovementItem(line.product_id, line.quantity, line.price) for line in document.lines]
        apply_movements(_context(document, document.store_id, MOVEMENT_PURCHASE, REASON_INITIAL), items, DIRECTION_IN)

    elif kind in ("RETURN", "ADJUSTMENT"):
        for line in document.lines:
            if line.price is None:
                line.price = get_position(document.store_id, line.product_id).cost
        movement_type = MOVEMENT_RETURN if kind == "RETURN" else MOVEMENT_ADJUSTMENT
        items = [MovementItem(line.product_id, line.quantity, line.price) for line in document.lines]
        apply_movements(_context(document, document.store_id, movement_type, REASON_INITIAL), items, DIRECTION_IN)

    elif kind == "SALE":
        for line in document.lines:
            line.cost_price = get_position(document.store_id, line.product_id).cost
        items = [MovementItem(line.product_id, line.quantity) for line in document.lines]
        apply_movements(_context(document, document.store_id, MOVEMENT_SALE, REASON_INITIAL), items, DIRECTION_OUT)

    elif kind == "TRANSFER":
        for line in document.lines:
            line.cost_price = get_position(document.source_store_id, line.product_id).cost
        apply_movements(
            _context(document, document.source_store_id, MOVEMENT_TRANSFER_OUT, REASON_INITIAL),
            [MovementItem(line.product_id, line.quantity) for line in document.lines],
            DIRECTION_OUT,
        )
        apply_movements(
            _context(document, document.destination_store_id, MOVEMENT_TRANSFER_IN, REASON_INITIAL),
            [MovementItem(line.product_id, line.quantity, line.cost_price) for line in document.lines],
            DIRECTION_IN,
        )


def _revert(document) -> None:
    kind = document.document_type

    if kind in ("PURCHASE", "RETURN", "ADJUSTMENT"):
        movement_type = {
            "PURCHASE": MOVEMENT_PURCHASE,
            "RETURN": MOVEMENT_RETURN,
            "ADJUSTMENT": MOVEMENT_ADJUSTMENT,
        }[kind]
        # Only lines that added stock can leave the store short when taken back.
        guarded = [
            MovementItem(line.product_id, line.quantity, line.price)
            for line in document.lines
            if line.quantity > 0
        ]
        validate_revert(document.store_id, guarded)
        items = [MovementItem(line.product_id, -line.quantity, line.price) for line in document.lines]
        apply_movements(_context(document, document.store_id, movement_type, REASON_REVERSAL), items, DIRECTION_IN)

    elif kind == "SALE":
        items = [MovementItem(line.product_id, -line.quantity) for line in document.lines]
        apply_movements(_context(document, document.store_id, MOVEMENT_SALE, REASON_REVERSAL), items, DIRECTION_OUT)

    elif kind == "TRANSFER":
        validate_revert(
            document.destination_store_id,
            [MovementItem(line.product_id, line.quantity, line.cost_price) for line in document.lines],
        )
        apply_movements(
            _context(document, document.destination_store_id, MOVEMENT_TRANSFER_IN, REASON_REVERSAL),
            [MovementItem(line.product_id, -line.quantity, line.cost_price) for line in document.lines],
            DIRECTION_IN,
        )
        apply_movements(
            _context(document, document.source_store_id, MOVEMENT_TRANSFER_OUT, REASON_REVERSAL),
            [MovementItem(line.product_id, -line.quantity) for line in document.lines],
            DIRECTION_OUT,
        )


def _backdated_keys(document, keys: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    return [
        (store_id, product_id)
        for store_id, product_id in keys
        if needs_reprocessing(store_id, [product_id], document.date)
    ]


# ============================================================================
# Status changes
# ============================================================================

def change_document_status(
    document_type: str,
    document_id: int,
    new_status: str,
    *,
    now: datetime | None = None,
) -> StatusChange:
    """
    Move a document to `new_status`, applying or reverting its stock movements.

    Returns a StatusChange describing the stored status and the reprocessing
    that followed the commit.

    Raises:
        DocumentStatusError: unknown document/status, or the document is CANCELLED.
        InsufficientStock: completing would drive stock negative.
        InsufficientStockToRevert / NegativeValuationOnRevert: revert guard.
        ConcurrencyConflict: lost a serialization race; nothing was written.
    """
    if new_status not in DOCUMENT_STATUSES:
        raise DocumentStatusError(
            f"Invalid status '{new_status}'. Must be one of: {', '.join(DOCUMENT_STATUSES)}"
        )
    model = _model_for(document_type)
    now = normalize_utc(now) if now is not None else utcnow()

    def _op():
        document = lock_for_update(db.session.query(model).filter_by(id=document_id)).first()
        if document is None:
            raise DocumentStatusError(f"{document_type} document {document_id} not found")

        old_status = document.status
        if old_status == DOCUMENT_STATUS_CANCELLED:
            raise DocumentStatusError(f"{document.ref} is cancelled and cannot change status")

        target = new_status
        if target == DOCUMENT_STATUS_COMPLETED and normalize_utc(document.date) > now:
            target = DOCUMENT_STATUS_SCHEDULED

        change = StatusChange(document_ref=document.ref, old_status=old_status, new_status=target)
        if target == old_status:
            return change, [], None

        keys = affected_keys(document)
        to_reprocess: list[tuple[int, int]] = []

        if target == DOCUMENT_STATUS_COMPLETED:
            acquire_advisory_locks(keys)
            to_reprocess = _backdated_keys(document, keys)
            _complete(document)
            change.action = ACTION_COMPLETE
        elif old_status == DOCUMENT_STATUS_COMPLETED:
            acquire_advisory_locks(keys)
            _revert(document)
            to_reprocess = list(dict.fromkeys(keys))
            change.action = ACTION_REVERT

        document.status = target
        db.session.flush()
        return change, to_reprocess, document.date

    change, to_reprocess, from_date = run_serializable(_op)

    if change.action is not None:
        current_app.logger.info(
            "%s: %s -> %s (%s)", change.document_ref, change.old_status, change.new_status, change.action
        )
    if to_reprocess:
        _reprocess_after_commit(change, to_reprocess, from_date)
    return change


def _reprocess_after_commit(change: StatusChange, keys: list[tuple[int, int]], from_date: datetime) -> None:
    run = ReprocessingRun(
        causation_id=change.document_ref,
        document_ref=change.document_ref,
        from_date=from_date,
        status=RUN_STATUS_PENDING,
    )
    db.session.add(run)
    db.session.commit()
    change.run_id = run.id

    not_converged = False
    for store_id, product_id in keys:
        try:
            outcome = reprocess_product_history(
                store_id, product_id, from_date, change.document_ref, run_id=change.run_id
            )
        except ReprocessingNonConvergence as exc:
            not_converged = True
            change.failures.append((store_id, product_id, str(exc)))
        except (InventoryError, SQLAlchemyError) as exc:
            current_app.logger.exception(
                "Reprocessing store=%s product=%s after %s failed", store_id, product_id, change.document_ref
            )
            change.failures.append((store_id, product_id, str(exc)))
        else:
            change.reprocessed.append(outcome)

    run = db.session.get(ReprocessingRun, change.run_id)
    if not change.failures:
        run.status = RUN_STATUS_COMPLETED
    else:
        run.status = RUN_STATUS_NOT_CONVERGED if not_converged else RUN_STATUS_FAILED
        run.error_message = "; ".join(
            f"store {store_id} product {product_id}: {message}"
            for store_id, product_id, message in change.failures
        )
    run.finished_at = utcnow()
    db.session.commit()
