"""
Ledger writer: snapshots, cost rules, idempotency, immutability.
"""

from decimal import Decimal

import pytest

from stockledger.errors import InsufficientStock, LedgerImmutabilityError
from stockledger.models import LedgerEntry
from stockledger.services import document_service
from stockledger.services.inventory_service import get_position
from stockledger.services.ledger_service import (
    DIRECTION_IN,
    MovementContext,
    MovementItem,
    apply_movements,
    list_ledger_entries,
)

from conftest import day


# =============================================================================
# WEIGHTED AVERAGE THROUGH COMPLETED DOCUMENTS
# =============================================================================


class TestPurchasesAndSales:

    def test_purchases_average_cost(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 5000)])
        assert get_position(store.id, product.id) == (Decimal("10"), Decimal("5000"))

        post("PURCHASE", store_id=store.id, date=day(2), lines=[(product.id, 5, 5000)])
        assert get_position(store.id, product.id) == (Decimal("15"), Decimal("5000"))

        post("PURCHASE", store_id=store.id, date=day(3), lines=[(product.id, 10, 6000)])
        assert get_position(store.id, product.id) == (Decimal("25"), Decimal("5400"))

    def test_sale_keeps_cost_and_records_cost_at_sale(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 5000)])
        post("PURCHASE", store_id=store.id, date=day(2), lines=[(product.id, 5, 5000)])
        post("PURCHASE", store_id=store.id, date=day(3), lines=[(product.id, 10, 6000)])

        sale, _ = post("SALE", store_id=store.id, date=day(4), lines=[(product.id, 5, 9000)])

        assert get_position(store.id, product.id) == (Decimal("20"), Decimal("5400"))
        assert sale.lines[0].cost_price == Decimal("5400")

        entry = list_ledger_entries(store_id=store.id, product_id=product.id, movement_type="SALE")[0]
        assert entry.quantity_delta == Decimal("-5")
        assert entry.cost_before == entry.cost_after == Decimal("5400")
        assert entry.monetary_amount == Decimal("-27000")

    def test_snapshots_chain(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        post("SALE", store_id=store.id, date=day(2), lines=[(product.id, 4, 150)])
        post("PURCHASE", store_id=store.id, date=day(3), lines=[(product.id, 6, 200)])

        entries = list_ledger_entries(store_id=store.id, product_id=product.id)
        assert len(entries) == 3
        previous_after = Decimal("0")
        for entry in entries:
            assert entry.quantity_before == previous_after
            assert entry.quantity_after == entry.quantity_before + entry.quantity_delta
            assert entry.reason == "INITIAL"
            assert entry.parent_entry_id is None
            previous_after = entry.quantity_after
        assert get_position(store.id, product.id) == (Decimal("12"), Decimal("150"))

    def test_oversell_is_rejected_and_nothing_is_written(self, db_session, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 3, 100)])
        sale = document_service.create_document(
            "SALE", store_id=store.id, date=day(2),
            lines=[{"product_id": product.id, "quantity": 5, "price": 150}],
        )

        with pytest.raises(InsufficientStock) as excinfo:
            document_service.change_document_status("SALE", sale.id, "COMPLETED")

        assert excinfo.value.available == Decimal("3")
        assert db_session.get(type(sale), sale.id).status == "DRAFT"
        assert db_session.query(LedgerEntry).count() == 1
        assert get_position(store.id, product.id) == (Decimal("3"), Decimal("100"))


# =============================================================================
# DIRECT WRITER BEHAVIOUR
# =============================================================================


class TestApplyMovements:

    def _purchase(self, store, product):
        return document_service.create_document(
            "PURCHASE", store_id=store.id, date=day(1),
            lines=[{"product_id": product.id, "quantity": 10, "price": 100}],
        )

    def test_reapplying_initial_is_a_no_op(self, db_session, store, product):
        document = self._purchase(store, product)
        context = MovementContext(store_id=store.id, movement_type="PURCHASE", date=day(1), document=document)
        items = [MovementItem(product.id, Decimal("10"), Decimal("100"))]

        first = apply_movements(context, items, DIRECTION_IN)
        second = apply_movements(context, items, DIRECTION_IN)
        db_session.commit()

        assert len(first) == 1
        assert second == []
        assert db_session.query(LedgerEntry).count() == 1
        entry = db_session.query(LedgerEntry).one()
        assert entry.causation_id == document.ref
        assert entry.batch_id == document.ref
        assert entry.purchase_document_id == document.id
        assert entry.causing_document is document

    def test_reversal_links_to_initial_entry(self, db_session, store, product):
        document = self._purchase(store, product)
        initial = MovementContext(store_id=store.id, movement_type="PURCHASE", date=day(1), document=document)
        apply_movements(initial, [MovementItem(product.id, Decimal("10"), Decimal("100"))], DIRECTION_IN)

        reversal = MovementContext(
            store_id=store.id, movement_type="PURCHASE", date=day(1), document=document, reason="REVERSAL",
        )
        apply_movements(reversal, [MovementItem(product.id, Decimal("-10"), Decimal("100"))], DIRECTION_IN)
        db_session.commit()

        first, second = list_ledger_entries(store_id=store.id, product_id=product.id)
        assert second.reason == "REVERSAL"
        assert second.parent_entry_id == first.id
        assert second.quantity_delta == -first.quantity_delta
        assert second.monetary_amount == -first.monetary_amount
        # Negated incoming movement carries cost.
        assert second.cost_after == second.cost_before == Decimal("100")
        assert get_position(store.id, product.id) == (Decimal("0"), Decimal("100"))

    def test_unknown_direction_rejected(self, store, product):
        document = self._purchase(store, product)
        context = MovementContext(store_id=store.id, movement_type="PURCHASE", date=day(1), document=document)
        with pytest.raises(ValueError):
            apply_movements(context, [MovementItem(product.id, Decimal("1"), Decimal("1"))], "SIDEWAYS")


# =============================================================================
# IMMUTABILITY AND READS
# =============================================================================


class TestLedgerImmutability:

    def test_update_is_refused(self, db_session, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        entry = db_session.query(LedgerEntry).one()

        entry.quantity_delta = Decimal("11")
        with pytest.raises(LedgerImmutabilityError):
            db_session.flush()
        db_session.rollback()

        assert db_session.query(LedgerEntry).one().quantity_delta == Decimal("10")

    def test_delete_is_refused(self, db_session, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        entry = db_session.query(LedgerEntry).one()

        db_session.delete(entry)
        with pytest.raises(LedgerImmutabilityError):
            db_session.flush()
        db_session.rollback()

        assert db_session.query(LedgerEntry).count() == 1


class TestListLedgerEntries:

    def test_filters_by_type_and_date_range(self, store, product, post):
        post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        post("SALE", store_id=store.id, date=day(5), lines=[(product.id, 2, 150)])
        post("PURCHASE", store_id=store.id, date=day(9), lines=[(product.id, 1, 100)])

        purchases = list_ledger_entries(store_id=store.id, movement_type="PURCHASE")
        assert [e.date for e in purchases] == [day(1), day(9)]

        window = list_ledger_entries(store_id=store.id, start=day(2), end="2024-01-09T00:00:00Z")
        assert [e.movement_type for e in window] == ["SALE"]

    def test_to_dict_serializes_decimals_and_document(self, store, product, post):
        purchase, _ = post("PURCHASE", store_id=store.id, date=day(1), lines=[(product.id, 10, 100)])
        data = list_ledger_entries(store_id=store.id)[0].to_dict()
        assert data["document"] == f"PURCHASE:{purchase.id}"
        assert data["date"] == "2024-01-01T12:00:00Z"
        assert Decimal(data["quantity_after"]) == Decimal("10")
