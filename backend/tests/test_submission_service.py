"""
Approval outbox tests.

Verifies:
- Approval stamps the token and closes the outbox entry
- Rejection and unreachable service keep the local commit
- FAILED entries are never dispatched again on their own
- Expired IN_FLIGHT claims go back to PENDING
"""

from datetime import timedelta
from decimal import Decimal

from erpcore.models import DocumentHeader, LedgerEntry, SubmissionOutbox
from erpcore.services import document_service, inventory_service, submission_service
from erpcore.time_utils import utcnow


def _create_invoice(customer, warehouse, product, quantity="2", **kwargs):
    return document_service.create_document(
        "invoice",
        {
            "client_id": customer.id,
            "warehouse_id": warehouse.id,
            "lines": [{"product_id": product.id, "quantity": quantity}],
        },
        **kwargs,
    )


class TestDispatch:
    def test_outbox_worker_approves(self, app, db_session, approval, customer, warehouse, widget):
        header = _create_invoice(customer, warehouse, widget).header
        assert header.status == "COMMITTED"

        outcomes = submission_service.process_outbox()
        assert len(outcomes) == 1
        assert outcomes[0].approved
        assert outcomes[0].to_dict()["token"] == "cufe-89000-1"

        header = db_session.get(DocumentHeader, header.id)
        assert header.status == "APPROVED"
        assert header.approval_token == "cufe-89000-1"
        assert header.submitted_at is not None
        entry = SubmissionOutbox.query.filter_by(document_id=header.id).one()
        assert entry.status == "DONE"
        assert entry.attempts == 1

        document_type, payload = approval.calls[0]
        assert document_type == "invoice"
        assert payload["document_number"] == "FV-089000"
        assert payload["legal_monetary_totals"]["payable_amount"] == "238.00"

    def test_submit_on_commit(self, app, db_session, approval, customer, warehouse, widget):
        result = _create_invoice(customer, warehouse, widget, submit=True)
        assert result.submission.approved
        assert result.header.status == "APPROVED"
        assert result.to_dict()["submission"]["approved"] is True

    def test_submit_on_commit_config(self, app, db_session, approval, customer, warehouse, widget, monkeypatch):
        monkeypatch.setitem(app.config, "SUBMIT_ON_COMMIT", True)
        result = _create_invoice(customer, warehouse, widget)
        assert result.header.status == "APPROVED"

    def test_rejection_keeps_local_commit(self, app, db_session, approval, customer, warehouse, widget):
        approval.reject("customer tax id unknown")
        result = _create_invoice(customer, warehouse, widget, submit=True)

        assert result.submission.approved is False
        assert result.header.status == "REJECTED"
        assert result.header.rejection_kind == "REJECTED"
        assert result.header.rejection_reason == "customer tax id unknown"
        assert result.header.approval_token is None
        error = result.submission.as_error()
        assert error.code == "APPROVAL_REJECTED"
        assert error.http_status == 502

        # Lines and kardex movements survive the rejection
        assert LedgerEntry.query.filter_by(document_id=result.header.id).count() == 1
        assert inventory_service.get_on_hand(widget.id, warehouse.id) == Decimal("-2")
        assert SubmissionOutbox.query.filter_by(document_id=result.header.id).one().status == "FAILED"

    def test_unreachable_service(self, app, db_session, approval, customer, warehouse, widget):
        approval.unreachable("timed out")
        result = _create_invoice(customer, warehouse, widget, submit=True)

        assert result.header.status == "REJECTED"
        assert result.header.rejection_kind == "UNREACHABLE"
        assert result.submission.as_error().code == "APPROVAL_UNREACHABLE"
        assert result.submission.to_dict()["error"]["rejection_kind"] == "UNREACHABLE"

    def test_unconfigured_service_counts_as_unreachable(self, app, db_session, customer, warehouse, widget):
        result = _create_invoice(customer, warehouse, widget, submit=True)
        assert result.header.status == "REJECTED"
        assert result.header.rejection_kind == "UNREACHABLE"

    def test_malformed_service_url_counts_as_unreachable(
        self, app, db_session, monkeypatch, customer, warehouse, widget
    ):
        monkeypatch.setitem(app.config, "APPROVAL_SERVICE_URL", "https://approvals.example.test/\x00")
        result = _create_invoice(customer, warehouse, widget, submit=True)
        assert result.header.status == "REJECTED"
        assert result.header.rejection_kind == "UNREACHABLE"

    def test_failed_entries_are_not_retried(self, app, db_session, approval, customer, warehouse, widget):
        approval.reject()
        _create_invoice(customer, warehouse, widget, submit=True)

        assert submission_service.process_outbox() == []
        assert len(approval.calls) == 1

    def test_unreachable_number_kept_when_reclaim_disabled(
        self, app, db_session, approval, customer, warehouse, widget, monkeypatch
    ):
        monkeypatch.setitem(app.config, "RECLAIM_ON_UNREACHABLE", False)
        approval.unreachable()
        first = _create_invoice(customer, warehouse, widget, submit=True).header

        second = _create_invoice(customer, warehouse, widget)
        assert second.allocation.reused is False
        assert second.header.sequence_number == first.sequence_number + 1

    def test_submit_without_pending_entry(self, app, db_session, approval, customer, warehouse, widget):
        header = _create_invoice(customer, warehouse, widget, submit=True).header
        assert submission_service.submit_document(header.id) is None

    def test_voided_document_is_not_dispatched(self, app, db_session, approval, customer, warehouse, widget):
        header = _create_invoice(customer, warehouse, widget).header
        document_service.void_document(header.id)

        assert submission_service.process_outbox() == []
        assert approval.calls == []


class TestStaleClaims:
    def _simulate_crash_after_claim(self, db_session, header, minutes_ago):
        entry = SubmissionOutbox.query.filter_by(document_id=header.id).one()
        entry.status = "IN_FLIGHT"
        entry.attempts = 1
        entry.claimed_at = utcnow() - timedelta(minutes=minutes_ago)
        doc = db_session.get(DocumentHeader, header.id)
        doc.status = "SUBMITTED"
        doc.submitted_at = entry.claimed_at
        db_session.commit()
        return entry

    def test_expired_claim_is_requeued_and_completed(self, app, db_session, approval, customer, warehouse, widget):
        header = _create_invoice(customer, warehouse, widget).header
        entry = self._simulate_crash_after_claim(db_session, header, minutes_ago=30)

        assert submission_service.reconcile_stale_submissions() == 1
        entry = db_session.get(SubmissionOutbox, entry.id)
        assert entry.status == "PENDING"
        assert entry.claimed_at is None
        assert db_session.get(DocumentHeader, header.id).status == "SUBMITTED"

        outcomes = submission_service.process_outbox()
        assert [o.approved for o in outcomes] == [True]
        assert db_session.get(DocumentHeader, header.id).status == "APPROVED"
        assert db_session.get(SubmissionOutbox, entry.id).attempts == 2

    def test_recent_claim_is_left_alone(self, app, db_session, customer, warehouse, widget):
        header = _create_invoice(customer, warehouse, widget).header
        self._simulate_crash_after_claim(db_session, header, minutes_ago=1)

        assert submission_service.reconcile_stale_submissions() == 0
        assert submission_service.list_outbox(status="IN_FLIGHT")[0].document_id == header.id
