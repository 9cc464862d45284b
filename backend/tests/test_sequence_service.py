"""
Sequence allocation tests.

Verifies:
- Families start at their floor and step past the denylist
- Manual numbers are checked for uniqueness and bump the counter
- Abandoned headers (DRAFT / REJECTED, no token) give their number back
- Warehouse-scoped families number each warehouse independently
"""

from datetime import datetime

import pytest

from erpcore.errors import ConflictError, DuplicateNumberError, ValidationError
from erpcore.models import DocumentHeader, SequenceCounter
from erpcore.services import document_service, sequence_service


def _invoice_payload(customer, warehouse, product, quantity="1", **extra):
    payload = {
        "client_id": customer.id,
        "warehouse_id": warehouse.id,
        "lines": [{"product_id": product.id, "quantity": quantity}],
    }
    payload.update(extra)
    return payload


def _insert_header(db_session, family, number, scope_key=0):
    header = DocumentHeader(
        family=family,
        sequence_number=number,
        document_number=f"X-{number}",
        scope_key=scope_key,
        status="COMMITTED",
    )
    db_session.add(header)
    db_session.commit()
    return header


# =============================================================================
# COUNTER
# =============================================================================


class TestCounter:
    def test_invoice_numbering_starts_at_floor(self, app, db_session):
        allocation = sequence_service.allocate("invoice")
        assert allocation.number == 89000
        assert allocation.document_number == "FV-089000"
        assert allocation.reused is False

    def test_numbers_increase(self, app, db_session):
        first = sequence_service.allocate("order")
        second = sequence_service.allocate("order")
        assert (first.number, second.number) == (1, 2)

    def test_denylisted_number_is_skipped(self, app, db_session, monkeypatch):
        monkeypatch.setitem(app.config, "DOCUMENT_FAMILIES", {"invoice": {"floor": 50}})
        first = sequence_service.allocate("invoice")
        second = sequence_service.allocate("invoice")
        assert (first.number, second.number) == (50, 52)

    def test_counter_seeded_from_existing_headers(self, app, db_session):
        _insert_header(db_session, "order", 40)
        assert sequence_service.allocate("order").number == 41
        counter = db_session.query(SequenceCounter).filter_by(family="order").one()
        assert counter.last_number == 41

    def test_search_skips_numbers_taken_behind_the_counter(self, app, db_session):
        sequence_service.allocate("order")
        db_session.commit()
        _insert_header(db_session, "order", 2)
        assert sequence_service.allocate("order").number == 3

    def test_ceiling_exhaustion(self, app, db_session, monkeypatch):
        monkeypatch.setitem(app.config, "DOCUMENT_FAMILIES", {"credit_note": {"floor": 99999}})
        assert sequence_service.allocate("credit_note").number == 99999
        assert sequence_service.allocate("credit_note").number == 100000
        with pytest.raises(ConflictError) as exc:
            sequence_service.allocate("credit_note")
        assert exc.value.code == "SEQUENCE_EXHAUSTED"

    def test_unknown_family(self, app, db_session):
        with pytest.raises(ValidationError) as exc:
            sequence_service.allocate("receipt")
        assert exc.value.code == "UNKNOWN_FAMILY"

    def test_format_display(self):
        assert sequence_service.format_display(7, datetime(2026, 3, 5)) == "2026-03-7"


# =============================================================================
# MANUAL NUMBERS
# =============================================================================


class TestRequestedNumbers:
    def test_duplicate_manual_number_rejected(self, app, db_session, customer, warehouse, widget):
        payload = _invoice_payload(customer, warehouse, widget, number=7)
        document_service.create_document("order", payload)

        with pytest.raises(DuplicateNumberError) as exc:
            document_service.create_document("order", payload)
        assert exc.value.http_status == 409
        assert db_session.query(DocumentHeader).filter_by(family="order").count() == 1

    def test_manual_number_moves_counter_forward(self, app, db_session, customer, warehouse, widget):
        document_service.create_document("order", _invoice_payload(customer, warehouse, widget, number=7))
        result = document_service.create_document("order", _invoice_payload(customer, warehouse, widget))
        assert result.header.sequence_number == 8

    def test_manual_number_outside_range_leaves_counter(self, app, db_session, customer, warehouse, widget):
        document_service.create_document("invoice", _invoice_payload(customer, warehouse, widget, number=51))
        result = document_service.create_document("invoice", _invoice_payload(customer, warehouse, widget))
        assert result.header.sequence_number == 89000


# =============================================================================
# RECLAMATION
# =============================================================================


class TestReclamation:
    def test_draft_number_is_reclaimed(self, app, db_session, customer, warehouse, widget, monkeypatch):
        monkeypatch.setitem(app.config, "DOCUMENT_FAMILIES", {"invoice": {"floor": 1040}})
        for _ in range(2):
            document_service.create_document("invoice", _invoice_payload(customer, warehouse, widget))
        draft = document_service.create_document(
            "invoice", _invoice_payload(customer, warehouse, widget), as_draft=True
        )
        assert draft.header.sequence_number == 1042
        draft_id = draft.header.id

        peek = sequence_service.peek_next("invoice")
        assert peek == {"family": "invoice", "number": 1042, "document_number": "FV-001042", "reused": True}

        result = document_service.create_document("invoice", _invoice_payload(customer, warehouse, widget, "2"))
        assert result.header.sequence_number == 1042
        assert result.allocation.reused is True
        assert result.allocation.reclaimed_document_id == draft_id
        assert db_session.get(DocumentHeader, draft_id) is None
        assert db_session.query(DocumentHeader).filter_by(family="invoice").count() == 3

    def test_committed_number_is_not_reclaimed(self, app, db_session, customer, warehouse, widget):
        document_service.create_document("invoice", _invoice_payload(customer, warehouse, widget))
        result = document_service.create_document("invoice", _invoice_payload(customer, warehouse, widget))
        assert result.header.sequence_number == 89001
        assert result.allocation.reused is False

    def test_orders_never_reclaim(self, app, db_session, customer, warehouse, widget):
        document_service.create_document("order", _invoice_payload(customer, warehouse, widget), as_draft=True)
        result = document_service.create_document("order", _invoice_payload(customer, warehouse, widget))
        assert result.header.sequence_number == 2

    def test_peek_does_not_consume(self, app, db_session):
        assert sequence_service.peek_next("order")["number"] == 1
        assert sequence_service.peek_next("order")["number"] == 1
        assert db_session.query(SequenceCounter).count() == 0


# =============================================================================
# WAREHOUSE SCOPE
# =============================================================================


class TestWarehouseScope:
    def test_purchase_orders_numbered_per_warehouse(self, app, db_session, warehouse, other_warehouse):
        a1 = sequence_service.allocate("purchase_order", warehouse_id=warehouse.id)
        b1 = sequence_service.allocate("purchase_order", warehouse_id=other_warehouse.id)
        a2 = sequence_service.allocate("purchase_order", warehouse_id=warehouse.id)
        assert (a1.number, b1.number, a2.number) == (1, 1, 2)
        assert a1.document_number == "OC-000001"
        assert b1.scope_key == other_warehouse.id

    def test_scoped_family_requires_warehouse(self, app, db_session):
        with pytest.raises(ValidationError) as exc:
            sequence_service.allocate("purchase_order")
        assert exc.value.code == "WAREHOUSE_REQUIRED"
