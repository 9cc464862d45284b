# Overview: Payload parsing for document writes; shape checks only, no database access.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .errors import ValidationError
from .families import DocumentFamily, get_rules
from .money import HUNDRED, quantize_cost, quantize_money, quantize_quantity, to_decimal


# Upper bound for unit prices and costs; keeps Numeric(18, 2) columns safe
MAX_UNIT_AMOUNT = Decimal("9999999999.99")
MAX_LINES = 500


@dataclass
class LineInput:
    product_id: int | None
    quantity: Decimal
    unit_price: Decimal | None = None
    discount_rate: Decimal | None = None
    tax_rate: Decimal | None = None
    origin_line_id: int | None = None


@dataclass
class DocumentInput:
    client_id: int | None = None
    warehouse_id: int | None = None
    origin_id: int | None = None
    remission_ids: list[int] = field(default_factory=list)
    requested_number: int | None = None
    supplier_name: str | None = None
    notes: str | None = None
    lines: list[LineInput] = field(default_factory=list)


@dataclass
class ReceiptLineInput:
    line_id: int | None
    product_id: int | None
    quantity: Decimal
    unit_cost: Decimal | None = None


def coerce_int(value: Any, field_name: str, *, required: bool = False) -> int | None:
    """
    Strict integer coercion: rejects floats, booleans, decimals in strings
    and scientific notation.
    """
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field_name} must be a plain integer")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field_name} must be an integer")
    raise ValidationError(f"{field_name} must be an integer")


def _positive_id(value: Any, field_name: str, *, required: bool = False) -> int | None:
    result = coerce_int(value, field_name, required=required)
    if result is not None and result <= 0:
        raise ValidationError(f"{field_name} must be a positive integer")
    return result


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return to_decimal(value, field=field_name)


def _rate(value: Any, field_name: str) -> Decimal | None:
    rate = _optional_decimal(value, field_name)
    if rate is None:
        return None
    if rate < 0 or rate > HUNDRED:
        raise ValidationError(f"{field_name} must be between 0 and 100")
    return quantize_money(rate)


def _amount(value: Any, field_name: str) -> Decimal | None:
    amount = _optional_decimal(value, field_name)
    if amount is None:
        return None
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    if amount > MAX_UNIT_AMOUNT:
        raise ValidationError(f"{field_name} exceeds maximum allowed value")
    return amount


def _quantity(value: Any, field_name: str) -> Decimal:
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    qty = to_decimal(value, field=field_name)
    if qty <= 0:
        raise ValidationError(f"{field_name} must be greater than zero")
    rounded = quantize_quantity(qty)
    if rounded <= 0:
        raise ValidationError(f"{field_name} is below the smallest tracked quantity")
    return rounded


def _text(value: Any, field_name: str, *, max_length: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    stripped = value.strip()
    if len(stripped) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters")
    return stripped or None


def _parse_line(raw: Any, index: int, family: DocumentFamily) -> LineInput:
    prefix = f"lines[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{prefix} must be an object")

    origin_line_id = _positive_id(raw.get("origin_line_id"), f"{prefix}.origin_line_id")
    product_id = _positive_id(raw.get("product_id"), f"{prefix}.product_id")
    if family == DocumentFamily.CREDIT_NOTE:
        if product_id is None and origin_line_id is None:
            raise ValidationError(f"{prefix} needs origin_line_id or product_id")
    elif product_id is None:
        raise ValidationError(f"{prefix}.product_id is required")

    return LineInput(
        product_id=product_id,
        quantity=_quantity(raw.get("quantity"), f"{prefix}.quantity"),
        unit_price=_amount(raw.get("unit_price"), f"{prefix}.unit_price"),
        discount_rate=_rate(raw.get("discount_rate"), f"{prefix}.discount_rate"),
        tax_rate=_rate(raw.get("tax_rate"), f"{prefix}.tax_rate"),
        origin_line_id=origin_line_id,
    )


def parse_lines(raw_lines: Any, family: DocumentFamily) -> list[LineInput]:
    if raw_lines is None:
        return []
    if not isinstance(raw_lines, list):
        raise ValidationError("lines must be a list")
    if len(raw_lines) > MAX_LINES:
        raise ValidationError(f"a document may carry at most {MAX_LINES} lines")
    return [_parse_line(raw, i, family) for i, raw in enumerate(raw_lines)]


def parse_document_payload(family, payload: Any) -> DocumentInput:
    """
    Validate the shape of a create/resubmit payload for ``family``.

    Raises ValidationError before anything is written. Referential checks
    (does the client exist, is the invoice approved) happen later.
    """
    family = DocumentFamily.coerce(family)
    rules = get_rules(family)
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")

    data = DocumentInput(
        client_id=_positive_id(payload.get("client_id"), "client_id", required=rules.requires_client),
        warehouse_id=_positive_id(payload.get("warehouse_id"), "warehouse_id", required=True),
        origin_id=_positive_id(payload.get("origin_id"), "origin_id"),
        requested_number=_positive_id(payload.get("number"), "number"),
        supplier_name=_text(payload.get("supplier_name"), "supplier_name", max_length=255),
        notes=_text(payload.get("notes"), "notes", max_length=2000),
        lines=parse_lines(payload.get("lines"), family),
    )

    raw_remissions = payload.get("remission_ids")
    if raw_remissions is not None:
        if family != DocumentFamily.INVOICE:
            raise ValidationError("remission_ids is only accepted on invoices")
        if not isinstance(raw_remissions, list):
            raise ValidationError("remission_ids must be a list")
        ids = [_positive_id(v, f"remission_ids[{i}]", required=True) for i, v in enumerate(raw_remissions)]
        if len(set(ids)) != len(ids):
            raise ValidationError("remission_ids contains duplicates")
        data.remission_ids = ids

    if family == DocumentFamily.CREDIT_NOTE and data.origin_id is None:
        raise ValidationError("origin_id (the invoice) is required for credit notes")
    if data.origin_id is not None and rules.origin_family is None:
        raise ValidationError(f"{family.value} documents do not take an origin_id")
    if family == DocumentFamily.PURCHASE_ORDER and not data.supplier_name:
        raise ValidationError("supplier_name is required for purchase orders")

    if not data.lines and not data.remission_ids:
        raise ValidationError("at least one line is required")

    return data


def parse_receipt_lines(raw_lines: Any) -> list[ReceiptLineInput]:
    """Lines of a purchase-order receipt: line_id or product_id, quantity, optional unit_cost."""
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("lines must be a non-empty list")
    parsed = []
    for i, raw in enumerate(raw_lines):
        prefix = f"lines[{i}]"
        if not isinstance(raw, dict):
            raise ValidationError(f"{prefix} must be an object")
        line_id = _positive_id(raw.get("line_id"), f"{prefix}.line_id")
        product_id = _positive_id(raw.get("product_id"), f"{prefix}.product_id")
        if line_id is None and product_id is None:
            raise ValidationError(f"{prefix} needs line_id or product_id")
        unit_cost = _amount(raw.get("unit_cost"), f"{prefix}.unit_cost")
        parsed.append(
            ReceiptLineInput(
                line_id=line_id,
                product_id=product_id,
                quantity=_quantity(raw.get("quantity"), f"{prefix}.quantity"),
                unit_cost=quantize_cost(unit_cost) if unit_cost is not None else None,
            )
        )
    return parsed
