"""
REST and CLI surface tests.

Verifies:
- Domain errors map to their HTTP status and error body
- Write endpoints report approval failures next to the committed document
- Inventory endpoints expose the kardex and its verification
- CLI commands run against the same services
"""

from datetime import timedelta

import pytest

from erpcore.models import SubmissionOutbox
from erpcore.time_utils import utcnow


def _invoice_body(customer, warehouse, product, quantity="1", **extra):
    body = {
        "client_id": customer.id,
        "warehouse_id": warehouse.id,
        "lines": [{"product_id": product.id, "quantity": quantity}],
    }
    body.update(extra)
    return body


# =============================================================================
# SYSTEM
# =============================================================================


def test_health(client, db_session):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json["status"] == "healthy"
    assert resp.json["database"]["details"]["documents"] == 0
    assert resp.json["outbox"]["details"]["stale_claims"] == 0


def test_health_degraded_by_stale_claim(client, db_session, customer, warehouse, widget):
    client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget))
    entry = SubmissionOutbox.query.one()
    entry.status = "IN_FLIGHT"
    entry.claimed_at = utcnow() - timedelta(hours=1)
    db_session.commit()

    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json["status"] == "degraded"
    assert resp.json["outbox"]["details"]["stale_claims"] == 1


# =============================================================================
# DOCUMENTS
# =============================================================================


class TestDocumentRoutes:
    def test_create_invoice(self, client, customer, warehouse, widget):
        resp = client.post(
            "/api/documents/invoice",
            json=_invoice_body(customer, warehouse, widget, "2"),
            headers={"X-Actor": "ana"},
        )
        assert resp.status_code == 201
        document = resp.json["document"]
        assert document["document_number"] == "FV-089000"
        assert document["status"] == "COMMITTED"
        assert document["total"] == "238.00"
        assert document["created_by"] == "ana"
        assert len(document["lines"]) == 1
        assert resp.json["allocation"]["reused"] is False
        assert resp.json["submission"] is None

    def test_create_and_submit(self, client, approval, customer, warehouse, widget):
        resp = client.post("/api/documents/invoice?submit=1", json=_invoice_body(customer, warehouse, widget))
        assert resp.status_code == 201
        assert resp.json["submission"]["approved"] is True
        assert resp.json["document"]["status"] == "APPROVED"

    def test_rejection_is_reported_not_raised(self, client, approval, customer, warehouse, widget):
        approval.reject("bad customer")
        resp = client.post("/api/documents/invoice?submit=1", json=_invoice_body(customer, warehouse, widget))
        assert resp.status_code == 201
        assert resp.json["document"]["status"] == "REJECTED"
        assert resp.json["submission"]["error"]["code"] == "APPROVAL_REJECTED"

    def test_create_draft_then_commit(self, client, customer, warehouse, widget):
        resp = client.post("/api/documents/order?draft=1", json=_invoice_body(customer, warehouse, widget))
        assert resp.status_code == 201
        assert resp.json["document"]["status"] == "DRAFT"
        doc_id = resp.json["document"]["id"]

        resp = client.post(f"/api/documents/order/{doc_id}/commit")
        assert resp.status_code == 200
        assert resp.json["document"]["status"] == "COMMITTED"

    @pytest.mark.parametrize(
        "family,body,status,code",
        [
            ("receipt", {}, 400, "UNKNOWN_FAMILY"),
            ("invoice", {"client_id": 1}, 400, "INVALID_INPUT"),
        ],
    )
    def test_validation_errors(self, client, db_session, family, body, status, code):
        resp = client.post(f"/api/documents/{family}", json=body)
        assert resp.status_code == status
        assert resp.json["error"]["kind"] == "validation"
        assert resp.json["error"]["code"] == code

    def test_body_must_be_json(self, client, db_session):
        resp = client.post("/api/documents/order", data="not json", content_type="text/plain")
        assert resp.status_code == 400

    def test_credit_note_on_unapproved_invoice_is_422(self, client, customer, warehouse, widget):
        invoice = client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget)).json
        resp = client.post(
            "/api/documents/credit_note",
            json=_invoice_body(customer, warehouse, widget, origin_id=invoice["document"]["id"]),
        )
        assert resp.status_code == 422
        assert resp.json["error"]["code"] == "INVOICE_NOT_APPROVED"

    def test_duplicate_number_is_409(self, client, customer, warehouse, widget):
        body = _invoice_body(customer, warehouse, widget, number=89500)
        assert client.post("/api/documents/invoice", json=body).status_code == 201
        resp = client.post("/api/documents/invoice", json=body)
        assert resp.status_code == 409
        assert resp.json["error"]["code"] == "DUPLICATE_DOCUMENT_NUMBER"

    def test_lifecycle_conflict_is_409(self, client, customer, warehouse, widget):
        doc = client.post("/api/documents/order", json=_invoice_body(customer, warehouse, widget)).json["document"]
        resp = client.post(f"/api/documents/order/{doc['id']}/commit")
        assert resp.status_code == 409
        assert resp.json["error"]["code"] == "INVALID_TRANSITION"

    def test_family_must_match_document(self, client, customer, warehouse, widget):
        doc = client.post("/api/documents/order", json=_invoice_body(customer, warehouse, widget)).json["document"]
        resp = client.get(f"/api/documents/invoice/{doc['id']}")
        assert resp.status_code == 422
        assert resp.json["error"]["code"] == "DOCUMENT_NOT_FOUND"

    def test_list_and_get(self, client, customer, warehouse, widget):
        client.post("/api/documents/order", json=_invoice_body(customer, warehouse, widget))
        client.post("/api/documents/order", json=_invoice_body(customer, warehouse, widget))

        resp = client.get("/api/documents/order?limit=1")
        assert resp.status_code == 200
        assert [d["sequence_number"] for d in resp.json["documents"]] == [2]

        doc_id = resp.json["documents"][0]["id"]
        resp = client.get(f"/api/documents/order/{doc_id}")
        assert resp.json["document"]["lines"][0]["quantity"] == "1.0000"

    def test_list_rejects_unknown_status(self, client, db_session):
        resp = client.get("/api/documents/order?status=PAID")
        assert resp.status_code == 400
        assert resp.json["error"]["code"] == "INVALID_STATUS"

    def test_next_number(self, client, db_session):
        resp = client.get("/api/documents/invoice/next-number")
        assert resp.status_code == 200
        assert resp.json == {"family": "invoice", "number": 89000, "document_number": "FV-089000", "reused": False}

    def test_submit_and_resubmit(self, client, approval, customer, warehouse, widget):
        doc = client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget)).json["document"]

        approval.reject("try again")
        resp = client.post(f"/api/documents/invoice/{doc['id']}/submit")
        assert resp.status_code == 200
        assert resp.json["document"]["status"] == "REJECTED"

        resp = client.post(f"/api/documents/invoice/{doc['id']}/resubmit?submit=1")
        assert resp.status_code == 200
        assert resp.json["document"]["status"] == "APPROVED"
        assert resp.json["document"]["sequence_number"] == doc["sequence_number"]

    def test_void(self, client, customer, warehouse, widget):
        doc = client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget)).json["document"]
        resp = client.post(f"/api/documents/invoice/{doc['id']}/void", json={"reason": "duplicate"})
        assert resp.status_code == 200
        assert resp.json["document"]["status"] == "VOIDED"
        assert resp.json["document"]["void_reason"] == "duplicate"

    def test_receive_purchase_order(self, client, warehouse, widget):
        po = client.post(
            "/api/documents/purchase_order",
            json={
                "warehouse_id": warehouse.id,
                "supplier_name": "Acme Supplies",
                "lines": [{"product_id": widget.id, "quantity": "5", "unit_price": "50"}],
            },
        ).json["document"]

        resp = client.post(
            f"/api/documents/purchase_order/{po['id']}/receive",
            json={"lines": [{"line_id": po["lines"][0]["id"], "quantity": "5"}]},
        )
        assert resp.status_code == 200
        assert resp.json["document"]["lines"][0]["received_quantity"] == "5.0000"


# =============================================================================
# INVENTORY
# =============================================================================


class TestInventoryRoutes:
    def test_summary_kardex_and_verify(self, client, customer, warehouse, widget):
        client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget, "3"))

        resp = client.get(f"/api/inventory/{widget.id}/{warehouse.id}")
        assert resp.status_code == 200
        assert resp.json["on_hand"] == "-3.0000"
        assert resp.json["base_price"] == "100.0000"
        assert resp.json["entry_count"] == 1

        resp = client.get(f"/api/inventory/{widget.id}/{warehouse.id}/kardex?start=2000-01-01T00:00:00Z")
        assert resp.status_code == 200
        assert [e["quantity"] for e in resp.json["entries"]] == ["-3.0000"]

        resp = client.get("/api/inventory/verify")
        assert resp.json["ok"] is True

    def test_bad_datetime(self, client, warehouse, widget):
        resp = client.get(f"/api/inventory/{widget.id}/{warehouse.id}/kardex?end=yesterday")
        assert resp.status_code == 400

    def test_unknown_product(self, client, warehouse, db_session):
        resp = client.get(f"/api/inventory/999/{warehouse.id}")
        assert resp.status_code == 422


# =============================================================================
# CLI
# =============================================================================


class TestCommands:
    def test_next_number_command(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["documents", "next-number", "credit_note"])
        assert result.exit_code == 0
        assert "90001 NC-090001" in result.output

    def test_seed_demo_is_idempotent(self, app, db_session):
        runner = app.test_cli_runner()
        assert "PASS" in runner.invoke(args=["system", "seed-demo"]).output
        result = runner.invoke(args=["system", "seed-demo"])
        assert "Created" not in result.output

    def test_outbox_process_command(self, app, approval, customer, warehouse, widget, client):
        client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget))
        result = app.test_cli_runner().invoke(args=["outbox", "process"])
        assert result.exit_code == 0
        assert "FV-089000: APPROVED" in result.output
        assert "1 approved" in result.output

    def test_ledger_verify_command(self, app, customer, warehouse, widget, client):
        client.post("/api/documents/invoice", json=_invoice_body(customer, warehouse, widget))
        result = app.test_cli_runner().invoke(args=["ledger", "verify"])
        assert result.exit_code == 0
        assert "PASS 1 balance(s)" in result.output
