"""
Document status orchestration: scheduling, completion, revert guards, transfers.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from stockledger.errors import (
    DocumentStatusError,
    DocumentValidationError,
    InsufficientStock,
    InsufficientStockToRevert,
    NegativeValuationOnRevert,
)
from stockledger.models import LedgerEntry
from stockledger.services import document_service
from stockledger.services.inventory_service import get_position
from stockledger.services.reprocessing_service import verify_stock

from conftest import day


def _purchase_draft(store, product, quantity=10, price=100, date=None):
    return document_service.create_document(
        "PURCHASE", store_id=store.id, date=date or day(1),
        lines=[{"product_id": product.id, "quantity": quantity, "price": price}],
    )


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================


class TestStatusTransitions:

    def test_future_completion_is_scheduled(self, db_session, store, product):
        document = _purchase_draft(store, product, date=day(10))

        change = document_service.change_document_status(
            "PURCHASE", document.id, "COMPLETED", now=datetime(2024, 1, 5, tzinfo=timezone.utc),
        )

        assert change.new_status == "SCHEDULED"
        assert change.action is None
        assert db_session.query(LedgerEntry).count() == 0
        assert get_position(store.id, product.id) == (Decimal("0"), Decimal("0"))

    def test_scheduled_completes_when_due(self, store, product):
        document = _purchase_draft(store, product, date=day(10))
        document_service.change_document_status("PURCHASE", document.id, "COMPLETED", now=day(5))

        change = document_service.change_document_status("PURCHASE", document.id, "COMPLETED", now=day(11))

        assert change.old_status == "SCHEDULED"
        assert change.new_status == "COMPLETED"
        assert change.action == "COMPLETE"
        assert get_position(store.id, product.id) == (Decimal("10"), Decimal("100"))

    def test_same_status_is_a_no_op(self, db_session, store, product, post):
        purchase, _ = post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])

        change = document_service.change_document_status("PURCHASE", purchase.id, "COMPLETED")

        assert change.action is None
        assert db_session.query(LedgerEntry).count() == 1

    def test_cancelled_is_terminal(self, store, product, post):
        purchase, _ = post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        document_service.change_document_status("PURCHASE", purchase.id, "CANCELLED")

        with pytest.raises(DocumentStatusError):
            document_service.change_document_status("PURCHASE", purchase.id, "COMPLETED")
        assert get_position(store.id, product.id) == (Decimal("0"), Decimal("100"))

    def test_draft_to_cancelled_writes_nothing(self, db_session, store, product):
        document = _purchase_draft(store, product)

        change = document_service.change_document_status("PURCHASE", document.id, "CANCELLED")

        assert change.new_status == "CANCELLED"
        assert change.action is None
        assert db_session.query(LedgerEntry).count() == 0

    def test_revert_then_complete_again(self, db_session, store, product, post):
        purchase, _ = post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])

        document_service.change_document_status("PURCHASE", purchase.id, "DRAFT")
        assert get_position(store.id, product.id) == (Decimal("0"), Decimal("100"))

        change = document_service.change_document_status("PURCHASE", purchase.id, "COMPLETED")

        assert change.action == "COMPLETE"
        assert get_position(store.id, product.id) == (Decimal("10"), Decimal("100"))
        reasons = [e.reason for e in db_session.query(LedgerEntry).order_by(LedgerEntry.id)]
        assert reasons == ["INITIAL", "REVERSAL", "INITIAL"]
        assert verify_stock(store.id, product.id).consistent

    @pytest.mark.parametrize("document_type, status", [
        ("INVOICE", "COMPLETED"),
        ("PURCHASE", "POSTED"),
    ])
    def test_unknown_type_or_status(self, store, product, document_type, status):
        document = _purchase_draft(store, product)
        with pytest.raises(DocumentStatusError):
            document_service.change_document_status(document_type, document.id, status)

    def test_missing_document(self, db_session):
        with pytest.raises(DocumentStatusError):
            document_service.change_document_status("SALE", 9999, "COMPLETED")


# =============================================================================
# REVERT GUARD
# =============================================================================


class TestRevertGuard:

    def test_not_enough_units_left(self, db_session, store, product, post):
        purchase, _ = post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        post("SALE", store_id=store.id, date=day(2), lines=[(product.id, 8, 150)])

        with pytest.raises(InsufficientStockToRevert) as excinfo:
            document_service.change_document_status("PURCHASE", purchase.id, "CANCELLED")

        assert excinfo.value.available == Decimal("2")
        assert excinfo.value.requested == Decimal("10")
        assert db_session.get(type(purchase), purchase.id).status == "COMPLETED"
        assert db_session.query(LedgerEntry).count() == 2

    def test_not_enough_value_left(self, db_session, store, product, post):
        purchase_a, _ = post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        post("PURCHASE", store_id=store.id, date=day(2), lines=[(product.id, 10, 0)])
        post("SALE", store_id=store.id, date=day(3), lines=[(product.id, 5, 150)])
        assert get_position(store.id, product.id) == (Decimal("15"), Decimal("50"))

        with pytest.raises(NegativeValuationOnRevert) as excinfo:
            document_service.change_document_status("PURCHASE", purchase_a.id, "CANCELLED")

        assert excinfo.value.available_value == Decimal("750")
        assert excinfo.value.required_value == Decimal("1000")
        assert get_position(store.id, product.id) == (Decimal("15"), Decimal("50"))

    def test_sale_revert_needs_no_guard(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        sale, _ = post("SALE", store_id=store.id, date=day(2), lines=[(product.id, 4, 150)])
        assert get_position(store.id, product.id) == (Decimal("6"), Decimal("100"))

        change = document_service.change_document_status("SALE", sale.id, "CANCELLED")

        assert change.action == "REVERT"
        assert get_position(store.id, product.id) == (Decimal("10"), Decimal("100"))
        assert verify_stock(store.id, product.id).consistent


# =============================================================================
# RETURNS AND ADJUSTMENTS
# =============================================================================


class TestReturnsAndAdjustments:

    def test_return_without_price_uses_current_cost(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        document, _ = post("RETURN", store_id=store.id, date=day(2), lines=[(product.id, 2)])

        assert document.lines[0].price == Decimal("100")
        assert get_position(store.id, product.id) == (Decimal("12"), Decimal("100"))

    def test_positive_adjustment_at_current_cost(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        post("ADJUSTMENT", store_id=store.id, date=day(2), lines=[(product.id, 5)])

        assert get_position(store.id, product.id) == (Decimal("15"), Decimal("100"))

    def test_negative_adjustment_keeps_cost(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        post("ADJUSTMENT", store_id=store.id, date=day(2), lines=[(product.id, -3)])

        assert get_position(store.id, product.id) == (Decimal("7"), Decimal("100"))
        assert verify_stock(store.id, product.id).consistent

    def test_negative_adjustment_cannot_oversell(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 2, 100)])

        with pytest.raises(InsufficientStock):
            post("ADJUSTMENT", store_id=store.id, date=day(2), lines=[(product.id, -3)])

    def test_reverting_negative_adjustment_skips_guard(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        adjustment, _ = post("ADJUSTMENT", store_id=store.id, date=day(2), lines=[(product.id, -3)])

        document_service.change_document_status("ADJUSTMENT", adjustment.id, "CANCELLED")

        assert get_position(store.id, product.id) == (Decimal("10"), Decimal("100"))


# =============================================================================
# TRANSFERS
# =============================================================================


class TestTransfers:

    def _stock_source(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 20, 10)])

    def test_destination_inherits_source_cost(self, store, other_store, product, post):
        self._stock_source(store, product, post)

        transfer, change = post(
            "TRANSFER", source_store_id=store.id, destination_store_id=other_store.id,
            date=day(2), lines=[(product.id, 5)],
        )

        assert change.action == "COMPLETE"
        assert transfer.lines[0].cost_price == Decimal("10")
        assert get_position(store.id, product.id) == (Decimal("15"), Decimal("10"))
        assert get_position(other_store.id, product.id) == (Decimal("5"), Decimal("10"))

        out_entry, in_entry = (
            LedgerEntry.query.filter_by(transfer_document_id=transfer.id).order_by(LedgerEntry.id).all()
        )
        assert (out_entry.movement_type, out_entry.store_id) == ("TRANSFER_OUT", store.id)
        assert (in_entry.movement_type, in_entry.store_id) == ("TRANSFER_IN", other_store.id)
        assert out_entry.batch_id == in_entry.batch_id == transfer.ref

    def test_revert_restores_both_stores(self, store, other_store, product, post):
        self._stock_source(store, product, post)
        transfer, _ = post(
            "TRANSFER", source_store_id=store.id, destination_store_id=other_store.id,
            date=day(2), lines=[(product.id, 5)],
        )

        change = document_service.change_document_status("TRANSFER", transfer.id, "CANCELLED")

        assert change.fully_reprocessed
        assert {(o.store_id, o.product_id) for o in change.reprocessed} == {
            (store.id, product.id),
            (other_store.id, product.id),
        }
        assert get_position(store.id, product.id) == (Decimal("20"), Decimal("10"))
        assert get_position(other_store.id, product.id) == (Decimal("0"), Decimal("10"))

    def test_revert_blocked_once_destination_sold(self, store, other_store, product, post):
        self._stock_source(store, product, post)
        transfer, _ = post(
            "TRANSFER", source_store_id=store.id, destination_store_id=other_store.id,
            date=day(2), lines=[(product.id, 5)],
        )
        post("SALE", store_id=other_store.id, date=day(3), lines=[(product.id, 1, 20)])

        with pytest.raises(InsufficientStockToRevert):
            document_service.change_document_status("TRANSFER", transfer.id, "CANCELLED")

    def test_source_shortage(self, store, other_store, product, post):
        self._stock_source(store, product, post)

        with pytest.raises(InsufficientStock):
            post(
                "TRANSFER", source_store_id=store.id, destination_store_id=other_store.id,
                date=day(2), lines=[(product.id, 30)],
            )
        assert get_position(other_store.id, product.id) == (Decimal("0"), Decimal("0"))


# =============================================================================
# CREATION
# =============================================================================


class TestCreateDocument:

    def test_draft_is_created_with_lines(self, store, product):
        document = _purchase_draft(store, product, quantity="2.5", price="19.99")

        assert document.status == "DRAFT"
        assert document.ref == f"PURCHASE:{document.id}"
        assert document.lines[0].quantity == Decimal("2.500")
        assert document.to_dict()["lines"][0]["price"] == "19.99"

    @pytest.mark.parametrize("document_type, lines", [
        ("PURCHASE", []),
        ("PURCHASE", [{"product_id": 1, "quantity": 0, "price": 1}]),
        ("PURCHASE", [{"product_id": 1, "quantity": 1}]),
        ("SALE", [{"product_id": 1, "quantity": -1, "price": 1}]),
        ("RETURN", [{"product_id": 1, "quantity": 1, "price": -5}]),
        ("ADJUSTMENT", [{"product_id": 1, "quantity": 0}]),
        ("PURCHASE", [
            {"product_id": 1, "quantity": 1, "price": 1},
            {"product_id": 1, "quantity": 2, "price": 1},
        ]),
    ])
    def test_invalid_lines(self, store, document_type, lines):
        with pytest.raises(DocumentValidationError):
            document_service.create_document(document_type, store_id=store.id, date=day(1), lines=lines)

    def test_store_required(self, db_session, product):
        with pytest.raises(DocumentValidationError):
            document_service.create_document(
                "SALE", date=day(1), lines=[{"product_id": product.id, "quantity": 1, "price": 1}],
            )

    def test_transfer_needs_two_stores(self, store, product):
        with pytest.raises(DocumentValidationError):
            document_service.create_document(
                "TRANSFER", source_store_id=store.id, destination_store_id=store.id,
                date=day(1), lines=[{"product_id": product.id, "quantity": 1}],
            )
