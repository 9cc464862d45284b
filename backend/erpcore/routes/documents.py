# Overview: Flask API routes for document operations; parses input and returns JSON responses.

# backend/erpcore/routes/documents.py
"""
Document API Routes

One set of endpoints serves every family (order, remission, invoice,
credit_note, purchase_order); the family is a path segment.

RESPONSES:
- Write endpoints answer with {"document": ..., "allocation": ...,
  "submission": ...}. A committed document whose approval failed is still
  a 201/200: the failure is reported under "submission", not as an HTTP
  error, so the caller can resubmit instead of recreating.
- Domain errors answer {"error": {"kind", "code", "message", "details"}}
  with the status of their class (400/409/422/502/500).

The acting user is taken from the X-Actor header; authentication is handled
in front of this service.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import DomainError, ValidationError
from ..families import DocumentFamily
from ..services import document_service, sequence_service
from ..validation import coerce_int


documents_bp = Blueprint("documents", __name__, url_prefix="/api/documents")


def _actor():
    actor = (request.headers.get("X-Actor") or "").strip()
    return actor[:64] or None


def _json_body(required: bool = True):
    data = request.get_json(silent=True)
    if data is None and required:
        raise ValidationError("request body must be JSON")
    return data


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in {"1", "true", "yes"}


def _submit_override():
    raw = request.args.get("submit")
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes"}


def _error(exc: DomainError):
    return jsonify({"error": exc.to_dict()}), exc.http_status


def _check_family(family: str, document_id: int) -> None:
    document_service.get_document(document_id, family=family)


# =============================================================================
# CREATE / LIST / READ
# =============================================================================

@documents_bp.post("/<family>")
def create_document_route(family: str):
    """
    Create and commit a document (or a draft with ?draft=1).

    Request body:
    {
        "client_id": 1,
        "warehouse_id": 1,
        "origin_id": 10,            (credit notes: the invoice; remissions: the order)
        "remission_ids": [3, 4],    (invoices only)
        "number": 89010,            (optional manual number)
        "supplier_name": "ACME",    (purchase orders)
        "lines": [{"product_id": 5, "quantity": "2", "unit_price": "10.00",
                   "discount_rate": "0", "tax_rate": "19", "origin_line_id": 7}]
    }

    Returns:
        201: Document created (submission outcome included when submitted)
        400: Invalid input
        409: Number or quantity conflict
        422: Missing/inactive reference or unapproved invoice
    """
    try:
        result = document_service.create_document(
            family,
            _json_body(),
            actor=_actor(),
            as_draft=_flag("draft"),
            submit=_submit_override(),
        )
        return jsonify(result.to_dict()), 201

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to create document")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.get("/<family>")
def list_documents_route(family: str):
    try:
        limit = coerce_int(request.args.get("limit"), "limit") or 50
        offset = coerce_int(request.args.get("offset"), "offset") or 0
        docs = document_service.list_documents(
            family=family,
            status=request.args.get("status") or None,
            limit=min(max(limit, 1), 500),
            offset=max(offset, 0),
        )
        return jsonify({"documents": [d.to_dict() for d in docs]}), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to list documents")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.get("/<family>/next-number")
def next_number_route(family: str):
    """Advisory: the number the next allocation would hand out."""
    try:
        warehouse_id = coerce_int(request.args.get("warehouse_id"), "warehouse_id")
        return jsonify(sequence_service.peek_next(family, warehouse_id=warehouse_id)), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to peek next document number")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.get("/<family>/<int:document_id>")
def get_document_route(family: str, document_id: int):
    try:
        header = document_service.get_document(document_id, family=family)
        return jsonify({"document": header.to_dict(include_lines=True)}), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to load document")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


# =============================================================================
# LIFECYCLE
# =============================================================================

@documents_bp.post("/<family>/<int:document_id>/commit")
def commit_document_route(family: str, document_id: int):
    """DRAFT -> COMMITTED (and submission when the family needs approval)."""
    try:
        _check_family(family, document_id)
        result = document_service.commit_draft(document_id, actor=_actor(), submit=_submit_override())
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to commit document")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.post("/<family>/<int:document_id>/submit")
def submit_document_route(family: str, document_id: int):
    """Dispatch the pending approval submission of a COMMITTED document."""
    try:
        _check_family(family, document_id)
        result = document_service.submit_document(document_id)
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to submit document")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.post("/<family>/<int:document_id>/resubmit")
def resubmit_document_route(family: str, document_id: int):
    """
    Re-commit a REJECTED document under its existing number.

    Request body (optional): same shape as create; replaces the lines.
    """
    try:
        _check_family(family, document_id)
        result = document_service.resubmit_document(
            document_id,
            _json_body(required=False),
            actor=_actor(),
            submit=_submit_override(),
        )
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to resubmit document")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.post("/<family>/<int:document_id>/void")
def void_document_route(family: str, document_id: int):
    try:
        _check_family(family, document_id)
        data = _json_body(required=False)
        if not isinstance(data, dict):
            data = {}
        result = document_service.void_document(document_id, actor=_actor(), reason=data.get("reason"))
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to void document")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@documents_bp.post("/purchase_order/<int:document_id>/receive")
def receive_purchase_order_route(document_id: int):
    """
    Receive goods against a purchase order.

    Request body:
    {"lines": [{"line_id": 3, "quantity": "5", "unit_cost": "12.50"}]}
    """
    try:
        data = _json_body()
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        _check_family(DocumentFamily.PURCHASE_ORDER.value, document_id)
        result = document_service.receive_purchase_order(document_id, data.get("lines"), actor=_actor())
        return jsonify(result.to_dict()), 200

    except DomainError as e:
        return _error(e)
    except Exception:
        current_app.logger.exception("Failed to receive purchase order")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500
