"""
Kardex ledger tests.

Verifies:
- Outbound entries carry base price and cost as distinct values
- Snapshot and balance_after move with every append
- Reversals are append-only and cannot be applied twice
- Replay of the ledger reproduces the cached balances
"""

from decimal import Decimal

import pytest

from erpcore.errors import ConflictError
from erpcore.models import LedgerEntry, Product, StockBalance
from erpcore.services import inventory_service, ledger_service
from erpcore.services.ledger_service import DocumentRef


REF = DocumentRef(family="remission", document_id=1001, number=7)


def _out(product, warehouse, quantity, ref=REF):
    valuation = ledger_service.resolve_valuation(product)
    return ledger_service.record_out(
        product_id=product.id,
        warehouse_id=warehouse.id,
        quantity=quantity,
        unit_price="95.00",
        base_price=valuation.base_price,
        cost=valuation.cost,
        ref=ref,
        actor="tester",
    )


def _in(product, warehouse, quantity, cost="60.00", ref=REF, **kwargs):
    return ledger_service.record_in(
        product_id=product.id,
        warehouse_id=warehouse.id,
        quantity=quantity,
        unit_price="0",
        base_price="0",
        cost=cost,
        ref=ref,
        **kwargs,
    )


# =============================================================================
# VALUATION
# =============================================================================


class TestValuation:
    def test_base_price_strips_tax_from_list_price(self, app, widget):
        valuation = ledger_service.resolve_valuation(widget)
        assert valuation.base_price == Decimal("100.0000")
        assert valuation.cost == Decimal("60.0000")

    def test_base_price_falls_back_to_last_cost(self, app, gadget):
        valuation = ledger_service.resolve_valuation(gadget)
        assert valuation.base_price == Decimal("45.5000")
        assert valuation.cost == Decimal("45.5000")

    def test_product_missing_from_price_list_uses_cost(self, app, widget):
        valuation = ledger_service.resolve_valuation(widget, price_list="99")
        assert valuation.base_price == Decimal("60.0000")
        assert valuation.cost == Decimal("60.0000")


# =============================================================================
# APPENDING
# =============================================================================


class TestAppend:
    def test_record_out_writes_signed_quantity_and_valuation(self, app, db_session, widget, warehouse):
        entry = _out(widget, warehouse, "3")
        db_session.commit()

        assert entry.kind == "OUT"
        assert entry.quantity == Decimal("-3")
        assert entry.base_price == Decimal("100")
        assert entry.unit_cost == Decimal("60")
        assert entry.unit_price == Decimal("95")
        assert entry.document_number == 7
        assert entry.actor == "tester"

    def test_snapshot_follows_every_append(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "10")
        second = _out(widget, warehouse, "4")
        db_session.commit()

        assert second.balance_after == Decimal("6")
        assert inventory_service.get_on_hand(widget.id, warehouse.id) == Decimal("6")
        balance = db_session.query(StockBalance).filter_by(product_id=widget.id, warehouse_id=warehouse.id).one()
        assert balance.last_entry_id == second.id

    def test_value_moves_at_unit_cost(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "10")
        _out(widget, warehouse, "4")
        _in(widget, warehouse, "2", cost="72.50")
        db_session.commit()

        # 600.00 - 240.00 + 145.00
        assert inventory_service.get_stock_value(widget.id, warehouse.id) == Decimal("505.00")
        summary = inventory_service.get_stock_summary(widget.id, warehouse.id)
        assert Decimal(summary["value"]) == Decimal("505.00")
        assert Decimal(summary["on_hand"]) == Decimal("8")

    def test_negative_stock_allowed_by_default(self, app, db_session, widget, warehouse):
        entry = _out(widget, warehouse, "2")
        db_session.commit()
        assert entry.balance_after == Decimal("-2")

    def test_negative_stock_blocked_when_disabled(self, app, db_session, widget, warehouse, monkeypatch):
        monkeypatch.setitem(app.config, "ALLOW_NEGATIVE_STOCK", False)
        _in(widget, warehouse, "1")

        with pytest.raises(ConflictError) as exc:
            _out(widget, warehouse, "2")
        assert exc.value.code == "INSUFFICIENT_STOCK"

    def test_receipt_updates_last_cost(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "5", cost="72.5", update_last_cost=True)
        db_session.commit()
        assert db_session.get(Product, widget.id).last_cost == Decimal("72.5")

    def test_plain_inbound_leaves_last_cost(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "5", cost="10")
        db_session.commit()
        assert db_session.get(Product, widget.id).last_cost == Decimal("60")


# =============================================================================
# REVERSALS
# =============================================================================


class TestReversal:
    def test_reverse_document_nets_to_zero(self, app, db_session, widget, gadget, warehouse):
        _out(widget, warehouse, "2")
        _out(gadget, warehouse, "1.5")
        reversals = ledger_service.reverse_document(REF, actor="tester", note="void")
        db_session.commit()

        assert len(reversals) == 2
        assert all(r.reversal_of_id is not None for r in reversals)
        assert all(r.kind == "IN" for r in reversals)
        assert inventory_service.get_on_hand(widget.id, warehouse.id) == Decimal("0")
        assert inventory_service.get_on_hand(gadget.id, warehouse.id) == Decimal("0")
        assert ledger_service.outstanding_entries(REF) == []
        # Originals are kept
        assert len(ledger_service.document_entries(REF)) == 4

    def test_reverse_document_is_idempotent(self, app, db_session, widget, warehouse):
        _out(widget, warehouse, "2")
        ledger_service.reverse_document(REF)
        assert ledger_service.reverse_document(REF) == []

    def test_entry_cannot_be_reversed_twice(self, app, db_session, widget, warehouse):
        entry = _out(widget, warehouse, "2")
        ledger_service.reverse_entry(entry)

        with pytest.raises(ConflictError) as exc:
            ledger_service.reverse_entry(entry)
        assert exc.value.code == "ENTRY_ALREADY_REVERSED"

    def test_reversal_cannot_be_reversed(self, app, db_session, widget, warehouse):
        entry = _out(widget, warehouse, "2")
        reversal = ledger_service.reverse_entry(entry)

        with pytest.raises(ConflictError) as exc:
            ledger_service.reverse_entry(reversal)
        assert exc.value.code == "CANNOT_REVERSE_REVERSAL"

    def test_reverse_last_picks_most_recent_entry(self, app, db_session, widget, warehouse):
        _out(widget, warehouse, "1")
        latest = _out(widget, warehouse, "4")
        reversal = ledger_service.reverse_last(REF, widget.id)
        assert reversal.reversal_of_id == latest.id
        assert reversal.quantity == Decimal("4")

    def test_reverse_last_without_entries(self, app, db_session, widget):
        with pytest.raises(ConflictError) as exc:
            ledger_service.reverse_last(REF, widget.id)
        assert exc.value.code == "NOTHING_TO_REVERSE"

    def test_reversal_cancels_value_at_original_cost(self, app, db_session, widget, warehouse):
        _out(widget, warehouse, "2")
        widget.last_cost = Decimal("80")
        db_session.commit()

        ledger_service.reverse_document(REF)
        db_session.commit()
        assert inventory_service.get_stock_value(widget.id, warehouse.id) == Decimal("0")
        assert inventory_service.verify_balances()[0].ok

    def test_reversal_allowed_below_zero(self, app, db_session, widget, warehouse, monkeypatch):
        monkeypatch.setitem(app.config, "ALLOW_NEGATIVE_STOCK", False)
        entry = _in(widget, warehouse, "3")
        _out(widget, warehouse, "3")
        reversal = ledger_service.reverse_entry(entry)
        assert reversal.balance_after == Decimal("-3")


# =============================================================================
# REPLAY / VERIFICATION
# =============================================================================


class TestVerification:
    def test_replay_matches_cache(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "10")
        _out(widget, warehouse, "3.25")
        db_session.commit()

        assert inventory_service.replay_balance(widget.id, warehouse.id) == Decimal("6.75")
        checks = inventory_service.verify_balances()
        assert len(checks) == 1
        assert checks[0].ok

    def test_verify_reports_cache_drift(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "10")
        db_session.commit()
        balance = db_session.query(StockBalance).filter_by(product_id=widget.id).one()
        balance.on_hand = Decimal("9")
        db_session.commit()

        check = inventory_service.verify_balances(product_id=widget.id)[0]
        assert not check.ok
        assert check.replayed == Decimal("10")
        assert check.cached == Decimal("9")

    def test_verify_reports_value_drift(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "10")
        db_session.commit()
        balance = db_session.query(StockBalance).filter_by(product_id=widget.id).one()
        balance.value = Decimal("590.00")
        db_session.commit()

        check = inventory_service.verify_balances(product_id=widget.id)[0]
        assert not check.ok
        assert check.replayed == check.cached
        assert check.replayed_value == Decimal("600.00")
        assert check.cached_value == Decimal("590.00")

    def test_verify_reports_entry_snapshot_drift(self, app, db_session, widget, warehouse):
        _in(widget, warehouse, "10")
        second = _out(widget, warehouse, "1")
        db_session.commit()
        db_session.query(LedgerEntry).filter_by(id=second.id).update({"balance_after": Decimal("8")})
        db_session.commit()

        check = inventory_service.verify_balances(warehouse_id=warehouse.id)[0]
        assert check.drifted_entry_ids == (second.id,)

    def test_list_entries_oldest_first(self, app, db_session, widget, warehouse):
        first = _in(widget, warehouse, "10")
        second = _out(widget, warehouse, "1")
        db_session.commit()

        entries = inventory_service.list_entries(widget.id, warehouse.id)
        assert [e.id for e in entries] == [first.id, second.id]
        assert inventory_service.list_entries(widget.id, warehouse.id, limit=1, offset=1)[0].id == second.id
