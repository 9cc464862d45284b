# backend/erpcore/routes/inventory.py
"""
Inventory (kardex) routes.

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering is inclusive; a bare end date covers the whole day.
"""
from flask import Blueprint, request, jsonify, current_app

from ..errors import DomainError
from ..services import inventory_service
from ..time_utils import parse_iso_datetime
from ..validation import coerce_int


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _parse_dt(name: str):
    return parse_iso_datetime(request.args.get(name), field=name, end_of_day=(name == "end"))


@inventory_bp.get("/<int:product_id>/<int:warehouse_id>")
def stock_summary_route(product_id: int, warehouse_id: int):
    try:
        return jsonify(inventory_service.get_stock_summary(product_id, warehouse_id)), 200
    except DomainError as e:
        return jsonify({"error": e.to_dict()}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load stock summary")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@inventory_bp.get("/<int:product_id>/<int:warehouse_id>/kardex")
def kardex_route(product_id: int, warehouse_id: int):
    """Ledger entries for one product in one warehouse, oldest first."""
    try:
        entries = inventory_service.list_entries(
            product_id,
            warehouse_id,
            start=_parse_dt("start"),
            end=_parse_dt("end"),
            limit=coerce_int(request.args.get("limit"), "limit"),
            offset=coerce_int(request.args.get("offset"), "offset") or 0,
        )
        return jsonify({"entries": [e.to_dict() for e in entries]}), 200
    except DomainError as e:
        return jsonify({"error": e.to_dict()}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load kardex")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500


@inventory_bp.get("/verify")
def verify_route():
    """Replay the ledger and compare with the cached balances."""
    try:
        checks = inventory_service.verify_balances(
            product_id=coerce_int(request.args.get("product_id"), "product_id"),
            warehouse_id=coerce_int(request.args.get("warehouse_id"), "warehouse_id"),
        )
        return jsonify({
            "ok": all(c.ok for c in checks),
            "checks": [c.to_dict() for c in checks],
        }), 200
    except DomainError as e:
        return jsonify({"error": e.to_dict()}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to verify balances")
        return jsonify({"error": {"kind": "fatal", "code": "INTERNAL_ERROR", "message": "Internal server error"}}), 500
