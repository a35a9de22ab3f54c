# Overview: Causing documents (purchase, sale, return, adjustment, transfer) and their lines.

from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


DOCUMENT_STATUS_DRAFT = "DRAFT"
DOCUMENT_STATUS_SCHEDULED = "SCHEDULED"
DOCUMENT_STATUS_COMPLETED = "COMPLETED"
DOCUMENT_STATUS_CANCELLED = "CANCELLED"

DOCUMENT_STATUSES = (
    DOCUMENT_STATUS_DRAFT,
    DOCUMENT_STATUS_SCHEDULED,
    DOCUMENT_STATUS_COMPLETED,
    DOCUMENT_STATUS_CANCELLED,
)


def _decimal_str(value):
    return None if value is None else str(value)


class StockDocumentMixin:
    """
    Capability shared by every document that can cause ledger entries.

    A ledger entry stays valid only while its causing document is COMPLETED.
    Subclasses set document_type and define a `lines` relationship.
    """
    document_type: str = ""

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(16), nullable=False, default=DOCUMENT_STATUS_DRAFT, index=True)
    date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def ref(self) -> str:
        return f"{self.document_type}:{self.id}"

    @property
    def is_completed(self) -> bool:
        return self.status == DOCUMENT_STATUS_COMPLETED

    def line_for(self, product_id: int):
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "ref": self.ref,
            "document_type": self.document_type,
            "status": self.status,
            "date": to_utc_z(self.date),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PurchaseDocument(StockDocumentMixin, db.Model):
    __tablename__ = "purchase_documents"
    __table_args__ = ({"sqlite_autoincrement": True},)
    document_type = "PURCHASE"

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    vendor_name = db.Column(db.String(255), nullable=True)

    lines = db.relationship("PurchaseLine", back_populates="document", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "store_id": self.store_id,
            "vendor_name": self.vendor_name,
            "lines": [line.to_dict() for line in self.lines],
        })
        return data


class PurchaseLine(db.Model):
    __tablename__ = "purchase_lines"
    __table_args__ = (
        db.UniqueConstraint("document_id", "product_id", name="uq_purchase_lines_document_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("purchase_documents.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(18, 3), nullable=False)
    price = db.Column(db.Numeric(18, 2), nullable=False)

    document = db.relationship("PurchaseDocument", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": _decimal_str(self.quantity),
            "price": _decimal_str(self.price),
        }


class SaleDocument(StockDocumentMixin, db.Model):
    __tablename__ = "sale_documents"
    __table_args__ = ({"sqlite_autoincrement": True},)
    document_type = "SALE"

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    lines = db.relationship("SaleLine", back_populates="document", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "store_id": self.store_id,
            "lines": [line.to_dict() for line in self.lines],
        })
        return data


class SaleLine(db.Model):
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.UniqueConstraint("document_id", "product_id", name="uq_sale_lines_document_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("sale_documents.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(18, 3), nullable=False)
    price = db.Column(db.Numeric(18, 2), nullable=False)

    # Weighted-average cost at the moment of sale; rewritten by reprocessing.
    cost_price = db.Column(db.Numeric(18, 2), nullable=True)

    document = db.relationship("SaleDocument", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": _decimal_str(self.quantity),
            "price": _decimal_str(self.price),
            "cost_price": _decimal_str(self.cost_price),
        }


class ReturnDocument(StockDocumentMixin, db.Model):
    """Customer return; stock comes back in at the line price."""
    __tablename__ = "return_documents"
    __table_args__ = ({"sqlite_autoincrement": True},)
    document_type = "RETURN"

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    lines = db.relationship("ReturnLine", back_populates="document", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "store_id": self.store_id,
            "lines": [line.to_dict() for line in self.lines],
        })
        return data


class ReturnLine(db.Model):
    __tablename__ = "return_lines"
    __table_args__ = (
        db.UniqueConstraint("document_id", "product_id", name="uq_return_lines_document_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("return_documents.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(18, 3), nullable=False)

    # Filled with the current average cost on completion when left empty.
    price = db.Column(db.Numeric(18, 2), nullable=True)

    document = db.relationship("ReturnDocument", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": _decimal_str(self.quantity),
            "price": _decimal_str(self.price),
        }


class AdjustmentDocument(StockDocumentMixin, db.Model):
    """Stock count correction; quantities are signed."""
    __tablename__ = "adjustment_documents"
    __table_args__ = ({"sqlite_autoincrement": True},)
    document_type = "ADJUSTMENT"

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    lines = db.relationship("AdjustmentLine", back_populates="document", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "store_id": self.store_id,
            "lines": [line.to_dict() for line in self.lines],
        })
        return data


class AdjustmentLine(db.Model):
    __tablename__ = "adjustment_lines"
    __table_args__ = (
        db.UniqueConstraint("document_id", "product_id", name="uq_adjustment_lines_document_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("adjustment_documents.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(18, 3), nullable=False)

    # Valued at the average cost at completion time.
    price = db.Column(db.Numeric(18, 2), nullable=True)

    document = db.relationship("AdjustmentDocument", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": _decimal_str(self.quantity),
            "price": _decimal_str(self.price),
        }


class TransferDocument(StockDocumentMixin, db.Model):
    __tablename__ = "transfer_documents"
    __table_args__ = (
        db.CheckConstraint("source_store_id <> destination_store_id", name="ck_transfer_documents_distinct_stores"),
        {"sqlite_autoincrement": True},
    )
    document_type = "TRANSFER"

    source_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    destination_store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    lines = db.relationship("TransferLine", back_populates="document", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        data = self._base_dict()
        data.update({
            "source_store_id": self.source_store_id,
            "destination_store_id": self.destination_store_id,
            "lines": [line.to_dict() for line in self.lines],
        })
        return data


class TransferLine(db.Model):
    __tablename__ = "transfer_lines"
    __table_args__ = (
        db.UniqueConstraint("document_id", "product_id", name="uq_transfer_lines_document_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("transfer_documents.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Numeric(18, 3), nullable=False)

    # Source average cost at shipment; the destination receives at this price.
    cost_price = db.Column(db.Numeric(18, 2), nullable=True)

    document = db.relationship("TransferDocument", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "quantity": _decimal_str(self.quantity),
            "cost_price": _decimal_str(self.cost_price),
        }


DOCUMENT_MODELS = {
    PurchaseDocument.document_type: PurchaseDocument,
    SaleDocument.document_type: SaleDocument,
    ReturnDocument.document_type: ReturnDocument,
    AdjustmentDocument.document_type: AdjustmentDocument,
    TransferDocument.document_type: TransferDocument,
}
