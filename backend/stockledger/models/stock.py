from __future__ import annotations

from sqlalchemy import event, inspect

from ..errors import LedgerImmutabilityError
from ..extensions import db
from ..time_utils import to_utc_z, utcnow


MOVEMENT_PURCHASE = "PURCHASE"
MOVEMENT_SALE = "SALE"
MOVEMENT_RETURN = "RETURN"
MOVEMENT_ADJUSTMENT = "ADJUSTMENT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"

MOVEMENT_TYPES = (
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_RETURN,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
)

REASON_INITIAL = "INITIAL"
REASON_REVERSAL = "REVERSAL"
REASON_CORRECTION = "CORRECTION"

RUN_STATUS_PENDING = "PENDING"
RUN_STATUS_COMPLETED = "COMPLETED"
RUN_STATUS_FAILED = "FAILED"
RUN_STATUS_NOT_CONVERGED = "NOT_CONVERGED"

# Column on LedgerEntry holding the causing document's id, per document type.
DOCUMENT_FK_COLUMNS = {
    "PURCHASE": "purchase_document_id",
    "SALE": "sale_document_id",
    "RETURN": "return_document_id",
    "ADJUSTMENT": "adjustment_document_id",
    "TRANSFER": "transfer_document_id",
}


def _decimal_str(value):
    return None if value is None else str(value)


class Stock(db.Model):
    """
    Current quantity and weighted-average cost for one (store, product).

    The row is a cache of the ledger: after reprocessing it equals the fold
    of every ledger entry for the key in canonical order. Only the ledger
    writer and the reprocessing engine write to it.
    """
    __tablename__ = "stocks"
    __table_args__ = (
        db.UniqueConstraint("store_id", "product_id", name="uq_stocks_store_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Numeric(18, 3), nullable=False, default=0)
    average_cost = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Stock store_id={self.store_id} product_id={self.product_id} "
            f"quantity={self.quantity} average_cost={self.average_cost}>"
        )

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "product_id": self.product_id,
            "quantity": _decimal_str(self.quantity),
            "average_cost": _decimal_str(self.average_cost),
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class LedgerEntry(db.Model):
    """
    Append-only stock movement with full before/after snapshots.

    Inventory invariants (authoritative):
    1. Rows are never updated or deleted; mistakes are healed by appending a
       REVERSAL (exact negation) and, when the movement is still valid, a
       CORRECTION carrying recomputed values. Both share the date of the
       entry they supersede and point at it through parent_entry_id.
    2. quantity_after = quantity_before + quantity_delta on every row.
    3. Outgoing movements never change cost: cost_after = cost_before.
    4. Exactly one causing document column is set.
    5. (date, root created_at, root id, created_at, id) is the canonical
       replay order; created_at carries microseconds so insertion order is
       stable within a date.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_store_product_date", "store_id", "product_id", "date"),
        db.CheckConstraint(
            "(CASE WHEN purchase_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN sale_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN return_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN adjustment_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN transfer_document_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_ledger_entries_single_document",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Event time of the movement (document date), not insertion time.
    date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    quantity_delta = db.Column(db.Numeric(18, 3), nullable=False)
    quantity_before = db.Column(db.Numeric(18, 3), nullable=False)
    quantity_after = db.Column(db.Numeric(18, 3), nullable=False)
    cost_before = db.Column(db.Numeric(18, 2), nullable=False)
    cost_after = db.Column(db.Numeric(18, 2), nullable=False)

    # Signed like quantity_delta; exact product of a 3dp quantity and a 2dp price.
    monetary_amount = db.Column(db.Numeric(20, 5), nullable=False)

    reason = db.Column(db.String(16), nullable=False, default=REASON_INITIAL, index=True)
    parent_entry_id = db.Column(db.Integer, db.ForeignKey("ledger_entries.id"), nullable=True, index=True)
    causation_id = db.Column(db.String(64), nullable=True, index=True)
    batch_id = db.Column(db.String(64), nullable=True, index=True)

    purchase_document_id = db.Column(db.Integer, db.ForeignKey("purchase_documents.id"), nullable=True, index=True)
    sale_document_id = db.Column(db.Integer, db.ForeignKey("sale_documents.id"), nullable=True, index=True)
    return_document_id = db.Column(db.Integer, db.ForeignKey("return_documents.id"), nullable=True, index=True)
    adjustment_document_id = db.Column(db.Integer, db.ForeignKey("adjustment_documents.id"), nullable=True, index=True)
    transfer_document_id = db.Column(db.Integer, db.ForeignKey("transfer_documents.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # No backrefs: collection changes on the other side must never dirty a ledger row.
    parent = db.relationship("LedgerEntry", remote_side=[id])
    purchase_document = db.relationship("PurchaseDocument")
    sale_document = db.relationship("SaleDocument")
    return_document = db.relationship("ReturnDocument")
    adjustment_document = db.relationship("AdjustmentDocument")
    transfer_document = db.relationship("TransferDocument")

    @property
    def causing_document(self):
        return (
            self.purchase_document
            or self.sale_document
            or self.return_document
            or self.adjustment_document
            or self.transfer_document
        )

    @property
    def root_entry_id(self) -> int:
        node = self
        while node.parent_entry_id is not None:
            node = node.parent
        return node.id

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry id={self.id} {self.movement_type}/{self.reason} "
            f"delta={self.quantity_delta} qty={self.quantity_after} cost={self.cost_after}>"
        )

    def to_dict(self) -> dict:
        document = self.causing_document
        return {
            "id": self.id,
            "movement_type": self.movement_type,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "date": to_utc_z(self.date),
            "quantity_delta": _decimal_str(self.quantity_delta),
            "quantity_before": _decimal_str(self.quantity_before),
            "quantity_after": _decimal_str(self.quantity_after),
            "cost_before": _decimal_str(self.cost_before),
            "cost_after": _decimal_str(self.cost_after),
            "monetary_amount": _decimal_str(self.monetary_amount),
            "reason": self.reason,
            "parent_entry_id": self.parent_entry_id,
            "causation_id": self.causation_id,
            "batch_id": self.batch_id,
            "document": document.ref if document is not None else None,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    state = inspect(target)
    changed = [
        attr.key
        for attr in mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    ]
    if changed:
        raise LedgerImmutabilityError(
            f"Ledger entry {target.id} is immutable (attempted change: {', '.join(changed)})"
        )


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutabilityError(f"Ledger entry {target.id} is immutable and cannot be deleted")


class ReprocessingRun(db.Model):
    """Audit record for one reprocessing request (one or more store/product keys)."""
    __tablename__ = "reprocessing_runs"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    causation_id = db.Column(db.String(64), nullable=False, index=True)
    document_ref = db.Column(db.String(64), nullable=True)
    from_date = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=RUN_STATUS_PENDING, index=True)
    error_message = db.Column(db.Text, nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    items = db.relationship(
        "ReprocessingRunItem",
        back_populates="run",
        order_by="ReprocessingRunItem.id",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "causation_id": self.causation_id,
            "document_ref": self.document_ref,
            "from_date": to_utc_z(self.from_date),
            "status": self.status,
            "error_message": self.error_message,
            "started_at": to_utc_z(self.started_at),
            "finished_at": to_utc_z(self.finished_at),
            "items": [item.to_dict() for item in self.items],
        }


class ReprocessingRunItem(db.Model):
    __tablename__ = "reprocessing_run_items"
    __table_args__ = (
        db.Index("ix_reprocessing_items_store_product", "store_id", "product_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("reprocessing_runs.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    old_quantity = db.Column(db.Numeric(18, 3), nullable=True)
    new_quantity = db.Column(db.Numeric(18, 3), nullable=True)
    old_average_cost = db.Column(db.Numeric(18, 2), nullable=True)
    new_average_cost = db.Column(db.Numeric(18, 2), nullable=True)

    passes = db.Column(db.Integer, nullable=False, default=0)
    repairs = db.Column(db.Integer, nullable=False, default=0)
    converged = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    run = db.relationship("ReprocessingRun", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "old_quantity": _decimal_str(self.old_quantity),
            "new_quantity": _decimal_str(self.new_quantity),
            "old_average_cost": _decimal_str(self.old_average_cost),
            "new_average_cost": _decimal_str(self.new_average_cost),
            "passes": self.passes,
            "repairs": self.repairs,
            "converged": self.converged,
        }
