# Overview: Service-layer operations for documents; one atomic unit per business operation.

"""
Transactional Orchestrator

Every write runs the same way, whatever the family:

    validate payload shape          ValidationError, nothing touched
    resolve references              ReferentialError, before the unit
    ---- atomic unit ------------------------------------------------------
    allocate number                 sequence_service (may reclaim)
    write header + lines            totals recomputed from the lines
    family checks                   return and dispatch conservation,
                                    consolidation
    kardex movements                ledger_service, direction per family
    lifecycle + outbox entry        COMMITTED, submission enqueued
    commit                          or full rollback on any error
    ------------------------------------------------------------------------
    submit (optional)               submission_service, outside the unit

A DuplicateNumberError (or a unique-number violation from a concurrent
writer) re-runs the whole unit once. Any other integrity violation or store
failure rolls back and surfaces as FatalError. An approval failure never
undoes the commit; it is reported next to the committed document in
OperationResult.submission.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from decimal import Decimal

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..errors import (
    ConflictError,
    DomainError,
    DuplicateNumberError,
    FatalError,
    LifecycleError,
    ReferentialError,
    ValidationError,
)
from ..families import LEDGER_OUT, DocumentFamily, get_rules
from ..models import Client, DocumentHeader, DocumentLine, Product, Warehouse
from ..money import ZERO, compute_line_amounts, quantize_money, sum_amounts, to_decimal
from ..time_utils import utcnow
from ..validation import DocumentInput, LineInput, parse_document_payload, parse_receipt_lines
from . import lifecycle_service, sequence_service, submission_service
from .concurrency import RETRYABLE_ERRORS, lock_for_update, run_with_retry
from .ledger_service import DocumentRef, record_in, record_out, resolve_valuation, reverse_document
from .sequence_service import Allocation
from .submission_service import SubmissionOutcome


logger = logging.getLogger(__name__)

CONFLICT_RETRIES = 1

# Order dispatch_status values
DISPATCH_PENDING = "PENDING"
DISPATCH_PARTIAL = "PARTIAL"
DISPATCHED = "DISPATCHED"

# Unique constraints guarding document numbers; SQLite reports the columns
# instead of the constraint name
NUMBER_CONFLICT_MARKERS = (
    "uq_documents_family_scope_number",
    "uq_sequence_counters_family_scope",
    "documents.family, documents.scope_key, documents.sequence_number",
    "sequence_counters.family, sequence_counters.scope_key",
)


@dataclass
class OperationResult:
    """Committed document plus, separately, what the approval service said."""
    header: DocumentHeader
    allocation: Allocation | None = None
    submission: SubmissionOutcome | None = None

    def to_dict(self) -> dict:
        return {
            "document": self.header.to_dict(include_lines=True),
            "allocation": self.allocation.to_dict() if self.allocation is not None else None,
            "submission": self.submission.to_dict() if self.submission is not None else None,
        }


@dataclass
class _References:
    warehouse: Warehouse
    client: Client | None = None
    origin: DocumentHeader | None = None
    remissions: list[DocumentHeader] = field(default_factory=list)
    products: dict[int, Product] = field(default_factory=dict)
    # Credit notes: invoice line returned by each input line, same order
    origin_lines: list[DocumentLine] = field(default_factory=list)


# =============================================================================
# ATOMIC UNIT
# =============================================================================

def _is_number_conflict(exc: IntegrityError) -> bool:
    """True when the violated constraint is one only number allocation can hit."""
    message = str(exc.orig)
    return any(marker in message for marker in NUMBER_CONFLICT_MARKERS)


def _execute_unit(op, *, label: str, retry_conflicts: bool = True):
    def _attempt():
        try:
            result = op()
            db.session.commit()
            return result
        except RETRYABLE_ERRORS:
            # run_with_retry rolls back and re-runs
            raise
        except DomainError:
            db.session.rollback()
            raise
        except IntegrityError as exc:
            db.session.rollback()
            if not _is_number_conflict(exc):
                logger.exception("integrity violation", extra={"operation": label})
                raise FatalError(f"{label} failed; nothing was written") from exc
            raise DuplicateNumberError(
                f"{label}: a concurrent writer claimed the same number",
                details={"operation": label},
            ) from exc
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("unexpected store failure", extra={"operation": label})
            raise FatalError(f"{label} failed; nothing was written") from exc
        except Exception:
            db.session.rollback()
            raise

    attempts = 1 + (CONFLICT_RETRIES if retry_conflicts else 0)
    for attempt in range(attempts):
        try:
            return run_with_retry(_attempt)
        except DuplicateNumberError:
            if attempt >= attempts - 1:
                raise
            logger.info("re-running unit after number conflict", extra={"operation": label})
        except RETRYABLE_ERRORS as exc:
            raise FatalError(f"{label} failed after repeated lock conflicts; nothing was written") from exc


def _lock_header(document_id: int) -> DocumentHeader:
    header = lock_for_update(db.session.query(DocumentHeader).filter_by(id=document_id)).first()
    if header is None:
        raise ReferentialError(f"Document {document_id} not found", code="DOCUMENT_NOT_FOUND")
    return header


# =============================================================================
# REFERENCES (checked before the unit opens)
# =============================================================================

def _resolve_warehouse(warehouse_id: int) -> Warehouse:
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise ReferentialError(f"Warehouse {warehouse_id} not found", code="WAREHOUSE_NOT_FOUND")
    if not warehouse.is_active:
        raise ReferentialError(f"Warehouse {warehouse.code} is inactive", code="WAREHOUSE_INACTIVE")
    return warehouse


def _resolve_client(client_id: int) -> Client:
    client = db.session.get(Client, client_id)
    if client is None:
        raise ReferentialError(f"Client {client_id} not found", code="CLIENT_NOT_FOUND")
    if not client.is_active:
        raise ReferentialError(f"Client {client.code} is inactive", code="CLIENT_INACTIVE")
    return client


def _resolve_origin(family: DocumentFamily, data: DocumentInput) -> DocumentHeader | None:
    if data.origin_id is None:
        return None
    rules = get_rules(family)
    origin = db.session.get(DocumentHeader, data.origin_id)
    if origin is None or rules.origin_family is None or origin.family != rules.origin_family.value:
        raise ReferentialError(f"Originating document {data.origin_id} not found", code="ORIGIN_NOT_FOUND")

    if family == DocumentFamily.CREDIT_NOTE:
        lifecycle_service.require_approved_invoice(origin)
    elif origin.status != lifecycle_service.COMMITTED:
        raise ReferentialError(
            f"Originating {origin.family} {origin.document_number} is {origin.status}",
            code="ORIGIN_NOT_COMMITTED",
        )

    if data.client_id is not None and origin.client_id not in (None, data.client_id):
        raise ReferentialError(
            f"{origin.document_number} belongs to a different client",
            code="CLIENT_MISMATCH",
        )
    return origin


def _resolve_remissions(data: DocumentInput) -> list[DocumentHeader]:
    remissions = []
    for remission_id in data.remission_ids:
        remission = db.session.get(DocumentHeader, remission_id)
        if remission is None or remission.family != DocumentFamily.REMISSION.value:
            raise ReferentialError(f"Remission {remission_id} not found", code="REMISSION_NOT_FOUND")
        if remission.status != lifecycle_service.COMMITTED:
            raise ReferentialError(
                f"Remission {remission.document_number} is {remission.status}",
                code="REMISSION_NOT_COMMITTED",
            )
        if remission.client_id != data.client_id:
            raise ReferentialError(
                f"Remission {remission.document_number} belongs to a different client",
                code="CLIENT_MISMATCH",
            )
        if remission.warehouse_id != data.warehouse_id:
            raise ReferentialError(
                f"Remission {remission.document_number} was dispatched from another warehouse",
                code="WAREHOUSE_MISMATCH",
            )
        remissions.append(remission)
    return remissions


def _resolve_origin_lines(
    origin: DocumentHeader,
    lines: list[LineInput],
    *,
    exclude_document_id: int | None = None,
) -> tuple[list[LineInput], list[DocumentLine]]:
    """
    Match each credit-note input line to a line of the invoice.

    A line given by product only is spread over that product's invoice lines
    in invoice order, filling each up to its unreturned quantity; whatever
    does not fit stays on the last one for the conservation check to refuse.
    Returns the (possibly split) input lines and their invoice lines, aligned.
    """
    invoice_lines = list(origin.lines)
    unreturned: dict[int, Decimal] = {}

    def _unreturned(invoice_line: DocumentLine) -> Decimal:
        if invoice_line.id not in unreturned:
            unreturned[invoice_line.id] = to_decimal(invoice_line.quantity) - previously_returned(
                invoice_line.id, exclude_document_id=exclude_document_id
            )
        return unreturned[invoice_line.id]

    resolved, matched = [], []
    for index, line in enumerate(lines):
        candidates = []
        if line.origin_line_id is not None:
            invoice_line = next((l for l in invoice_lines if l.id == line.origin_line_id), None)
            if invoice_line is not None and line.product_id is not None and line.product_id != invoice_line.product_id:
                raise ValidationError(f"lines[{index}].product_id does not match the invoice line")
            if invoice_line is not None:
                candidates = [invoice_line]
        elif line.product_id is not None:
            candidates = [l for l in invoice_lines if l.product_id == line.product_id]
        if not candidates:
            raise ReferentialError(
                f"lines[{index}] does not match any line of invoice {origin.document_number}",
                code="LINE_NOT_ON_INVOICE",
            )

        quantity = line.quantity
        for position, invoice_line in enumerate(candidates):
            if position == len(candidates) - 1:
                take = quantity
            else:
                take = min(quantity, max(_unreturned(invoice_line), ZERO))
            if take <= 0:
                continue
            unreturned[invoice_line.id] = _unreturned(invoice_line) - take
            resolved.append(
                replace(line, product_id=invoice_line.product_id, origin_line_id=invoice_line.id, quantity=take)
            )
            matched.append(invoice_line)
            quantity -= take
            if quantity <= 0:
                break
    return resolved, matched


def _resolve_products(family: DocumentFamily, product_ids: set[int]) -> dict[int, Product]:
    products = {}
    for product_id in sorted(product_ids):
        product = db.session.get(Product, product_id)
        if product is None:
            raise ReferentialError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
        # Returns of discontinued products are still accepted
        if not product.is_active and family != DocumentFamily.CREDIT_NOTE:
            raise ReferentialError(f"Product {product.sku} is inactive", code="PRODUCT_INACTIVE")
        products[product_id] = product
    return products


def _resolve_references(family: DocumentFamily, data: DocumentInput, *, document_id: int | None = None) -> _References:
    refs = _References(warehouse=_resolve_warehouse(data.warehouse_id))
    if data.client_id is not None:
        refs.client = _resolve_client(data.client_id)
    refs.origin = _resolve_origin(family, data)
    if data.client_id is None and refs.origin is not None:
        refs.client = refs.origin.client
    refs.remissions = _resolve_remissions(data)

    if family == DocumentFamily.CREDIT_NOTE:
        data.lines, refs.origin_lines = _resolve_origin_lines(
            refs.origin, data.lines, exclude_document_id=document_id
        )

    product_ids = {line.product_id for line in data.lines}
    if not data.lines:
        product_ids.update(line.product_id for remission in refs.remissions for line in remission.lines)
    refs.products = _resolve_products(family, product_ids)
    return refs


# =============================================================================
# LINES AND TOTALS
# =============================================================================

def _aggregate_remission_lines(remissions: list[DocumentHeader]) -> list[LineInput]:
    """Invoice lines built from consolidated remissions, merged per product and price."""
    grouped: "OrderedDict[tuple, LineInput]" = OrderedDict()
    for remission in remissions:
        for line in remission.lines:
            key = (line.product_id, to_decimal(line.unit_price), to_decimal(line.discount_rate), to_decimal(line.tax_rate))
            if key in grouped:
                grouped[key].quantity += to_decimal(line.quantity)
            else:
                grouped[key] = LineInput(
                    product_id=line.product_id,
                    quantity=to_decimal(line.quantity),
                    unit_price=to_decimal(line.unit_price),
                    discount_rate=to_decimal(line.discount_rate),
                    tax_rate=to_decimal(line.tax_rate),
                )
    return list(grouped.values())


def _default_unit_price(family: DocumentFamily, product: Product, refs: _References) -> Decimal:
    if family == DocumentFamily.PURCHASE_ORDER:
        return quantize_money(product.last_cost or 0)
    if family == DocumentFamily.REMISSION and refs.origin is not None:
        order_line = next((l for l in refs.origin.lines if l.product_id == product.id), None)
        if order_line is not None:
            return to_decimal(order_line.unit_price)
    return quantize_money(resolve_valuation(product).base_price)


def _build_lines(header: DocumentHeader, family: DocumentFamily, data: DocumentInput, refs: _References) -> None:
    inputs = data.lines or _aggregate_remission_lines(refs.remissions)
    lines = []
    for index, item in enumerate(inputs):
        product = refs.products[item.product_id]
        origin_line = refs.origin_lines[index] if family == DocumentFamily.CREDIT_NOTE else None

        if item.tax_rate is not None:
            tax_rate = item.tax_rate
        elif origin_line is not None:
            tax_rate = to_decimal(origin_line.tax_rate)
        else:
            tax_rate = to_decimal(product.tax_rate or 0)

        if item.discount_rate is not None:
            discount_rate = item.discount_rate
        elif origin_line is not None:
            discount_rate = to_decimal(origin_line.discount_rate)
        else:
            discount_rate = ZERO

        if item.unit_price is not None:
            unit_price = quantize_money(item.unit_price)
        elif origin_line is not None:
            unit_price = to_decimal(origin_line.unit_price)
        else:
            unit_price = _default_unit_price(family, product, refs)

        amounts = compute_line_amounts(item.quantity, unit_price, discount_rate, tax_rate)
        lines.append(
            DocumentLine(
                line_number=index + 1,
                product_id=product.id,
                product=product,
                origin_line_id=origin_line.id if origin_line is not None else None,
                quantity=item.quantity,
                unit_price=unit_price,
                discount_rate=discount_rate,
                tax_rate=tax_rate,
                subtotal=amounts.subtotal,
                discount=amounts.discount,
                tax=amounts.tax,
                total=amounts.total,
                received_quantity=ZERO,
            )
        )

    header.lines = lines
    _recompute_totals(header)


def _recompute_totals(header: DocumentHeader) -> None:
    """Header money fields = sum of the line amounts, whatever the caller sent."""
    totals = sum_amounts(
        compute_line_amounts(line.quantity, line.unit_price, line.discount_rate, line.tax_rate)
        for line in header.lines
    )
    header.subtotal = totals.subtotal
    header.discount = totals.discount
    header.tax = totals.tax
    header.total = totals.total


# =============================================================================
# FAMILY CHECKS
# =============================================================================

def previously_returned(invoice_line_id: int, *, exclude_document_id: int | None = None) -> Decimal:
    """
    Quantity of an invoice line already claimed by credit notes that still
    count (everything except REJECTED and VOIDED notes).
    """
    q = (
        db.session.query(func.coalesce(func.sum(DocumentLine.quantity), 0))
        .join(DocumentHeader, DocumentHeader.id == DocumentLine.document_id)
        .filter(
            DocumentHeader.family == DocumentFamily.CREDIT_NOTE.value,
            DocumentHeader.status.notin_(sorted(lifecycle_service.INACTIVE_STATUSES)),
            DocumentLine.origin_line_id == invoice_line_id,
        )
    )
    if exclude_document_id is not None:
        q = q.filter(DocumentHeader.id != exclude_document_id)
    return to_decimal(q.scalar() or 0)


def _check_return_conservation(header: DocumentHeader) -> None:
    """
    For every returned invoice line:
        previous returns + returns staged in this note + this line
            <= invoiced quantity + tolerance
    """
    tolerance = to_decimal(current_app.config.get("RETURN_QUANTITY_TOLERANCE", "0.0001"))
    staged: dict[int, Decimal] = {}
    for line in header.lines:
        invoice_line = db.session.get(DocumentLine, line.origin_line_id)
        if invoice_line is None:
            raise ReferentialError(
                f"Credit note line {line.line_number} has no invoice line",
                code="LINE_NOT_ON_INVOICE",
            )
        previous = previously_returned(invoice_line.id, exclude_document_id=header.id)
        already_staged = staged.get(invoice_line.id, ZERO)
        requested = to_decimal(line.quantity)
        invoiced = to_decimal(invoice_line.quantity)

        if previous + already_staged + requested > invoiced + tolerance:
            raise ConflictError(
                "Returned quantity exceeds the invoiced quantity",
                code="RETURN_EXCEEDS_INVOICED",
                details={
                    "invoice_line_id": invoice_line.id,
                    "invoiced": str(invoiced),
                    "previously_returned": str(previous),
                    "staged": str(already_staged),
                    "requested": str(requested),
                },
            )
        staged[invoice_line.id] = already_staged + requested


def _consolidate(header: DocumentHeader, remissions: list[DocumentHeader]) -> None:
    for remission in remissions:
        locked = _lock_header(remission.id)
        if locked.consolidated_into_id is not None:
            raise ConflictError(
                f"Remission {locked.document_number} is already invoiced",
                code="REMISSIONS_ALREADY_INVOICED",
                details={"remission_id": locked.id, "invoice_id": locked.consolidated_into_id},
            )
        locked.consolidated_into_id = header.id


def _consolidates_remissions(header: DocumentHeader) -> bool:
    return (
        db.session.query(DocumentHeader.id)
        .filter(DocumentHeader.consolidated_into_id == header.id)
        .first()
        is not None
    )


def _ordered_quantities(order: DocumentHeader) -> dict[int, Decimal]:
    ordered: dict[int, Decimal] = {}
    for line in order.lines:
        ordered[line.product_id] = ordered.get(line.product_id, ZERO) + to_decimal(line.quantity)
    return ordered


def remitted_quantities(order_id: int, *, exclude_document_id: int | None = None) -> dict[int, Decimal]:
    """
    Quantity per product already dispatched against an order by remissions
    that still count (everything except VOIDED ones; drafts included).
    """
    q = (
        db.session.query(DocumentLine.product_id, func.coalesce(func.sum(DocumentLine.quantity), 0))
        .join(DocumentHeader, DocumentHeader.id == DocumentLine.document_id)
        .filter(
            DocumentHeader.family == DocumentFamily.REMISSION.value,
            DocumentHeader.origin_id == order_id,
            DocumentHeader.status.notin_(sorted(lifecycle_service.INACTIVE_STATUSES)),
        )
        .group_by(DocumentLine.product_id)
    )
    if exclude_document_id is not None:
        q = q.filter(DocumentHeader.id != exclude_document_id)
    return {product_id: to_decimal(quantity or 0) for product_id, quantity in q.all()}


def _check_dispatch_conservation(header: DocumentHeader) -> DocumentHeader:
    """
    For every product of a remission issued against an order:
        previous remissions + this remission <= ordered quantity + tolerance

    Returns the order, locked.
    """
    order = _lock_header(header.origin_id)
    tolerance = to_decimal(current_app.config.get("RETURN_QUANTITY_TOLERANCE", "0.0001"))
    ordered = _ordered_quantities(order)
    previous = remitted_quantities(order.id, exclude_document_id=header.id)

    staged: dict[int, Decimal] = {}
    for line in header.lines:
        if line.product_id not in ordered:
            raise ReferentialError(
                f"Remission line {line.line_number} is not on order {order.document_number}",
                code="LINE_NOT_ON_ORDER",
            )
        staged[line.product_id] = staged.get(line.product_id, ZERO) + to_decimal(line.quantity)

    for product_id, requested in staged.items():
        already = previous.get(product_id, ZERO)
        if already + requested > ordered[product_id] + tolerance:
            raise ConflictError(
                "Dispatched quantity exceeds the ordered quantity",
                code="REMISSION_EXCEEDS_ORDERED",
                details={
                    "order_id": order.id,
                    "product_id": product_id,
                    "ordered": str(ordered[product_id]),
                    "previously_remitted": str(already),
                    "requested": str(requested),
                },
            )
    return order


def refresh_dispatch_status(order: DocumentHeader) -> str:
    """Recompute an order's dispatch_status from the remissions that count."""
    tolerance = to_decimal(current_app.config.get("RETURN_QUANTITY_TOLERANCE", "0.0001"))
    ordered = _ordered_quantities(order)
    remitted = remitted_quantities(order.id)

    if not any(remitted.get(product_id, ZERO) > 0 for product_id in ordered):
        status = DISPATCH_PENDING
    elif all(remitted.get(product_id, ZERO) + tolerance >= quantity for product_id, quantity in ordered.items()):
        status = DISPATCHED
    else:
        status = DISPATCH_PARTIAL
    order.dispatch_status = status
    return status


def _check_family_rules(header: DocumentHeader) -> None:
    """Quantity conservation against the originating document, per family."""
    if header.family == DocumentFamily.CREDIT_NOTE.value:
        _check_return_conservation(header)
    elif header.family == DocumentFamily.REMISSION.value and header.origin_id is not None:
        refresh_dispatch_status(_check_dispatch_conservation(header))


# =============================================================================
# COMMIT STEP (shared by create, commit_draft and resubmit)
# =============================================================================

def _post_ledger(header: DocumentHeader, *, actor: str | None) -> list:
    rules = get_rules(header.family)
    if rules.ledger_kind is None:
        return []
    # Consolidated remissions already moved the stock
    if header.family == DocumentFamily.INVOICE.value and _consolidates_remissions(header):
        return []

    ref = DocumentRef.for_header(header)
    entries = []
    for line in header.lines:
        valuation = resolve_valuation(line.product)
        if rules.ledger_kind == LEDGER_OUT:
            entries.append(
                record_out(
                    product_id=line.product_id,
                    warehouse_id=header.warehouse_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    base_price=valuation.base_price,
                    cost=valuation.cost,
                    ref=ref,
                    actor=actor,
                )
            )
        else:
            entries.append(
                record_in(
                    product_id=line.product_id,
                    warehouse_id=header.warehouse_id,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    base_price=ZERO,
                    cost=valuation.cost,
                    ref=ref,
                    actor=actor,
                )
            )
    return entries


def _commit_header(header: DocumentHeader, *, actor: str | None) -> None:
    rules = get_rules(header.family)
    _check_family_rules(header)
    _post_ledger(header, actor=actor)
    lifecycle_service.mark_committed(header)
    if rules.requires_approval:
        submission_service.enqueue_submission(header)


def _maybe_submit(header: DocumentHeader, submit: bool | None) -> SubmissionOutcome | None:
    rules = get_rules(header.family)
    if not rules.requires_approval or header.status != lifecycle_service.COMMITTED:
        return None
    should_submit = current_app.config.get("SUBMIT_ON_COMMIT", True) if submit is None else submit
    if not should_submit:
        return None
    return submission_service.submit_document(header.id)


# =============================================================================
# OPERATIONS
# =============================================================================

def create_document(
    family,
    payload: dict,
    *,
    actor: str | None = None,
    as_draft: bool = False,
    submit: bool | None = None,
) -> OperationResult:
    """
    Create a document of ``family`` from ``payload`` in one atomic unit.

    as_draft stops at DRAFT: header and lines only, no kardex movement, no
    submission. submit overrides SUBMIT_ON_COMMIT for this call.
    """
    family = DocumentFamily.coerce(family)
    data = parse_document_payload(family, payload)
    refs = _resolve_references(family, data)

    def _op():
        allocation = sequence_service.allocate(
            family,
            warehouse_id=data.warehouse_id,
            requested_number=data.requested_number,
            actor=actor,
        )
        header = DocumentHeader(
            family=family.value,
            sequence_number=allocation.number,
            document_number=allocation.document_number,
            scope_key=allocation.scope_key,
            warehouse_id=refs.warehouse.id,
            client_id=refs.client.id if refs.client is not None else None,
            supplier_name=data.supplier_name,
            origin_id=refs.origin.id if refs.origin is not None else None,
            notes=data.notes,
            status=lifecycle_service.DRAFT,
            dispatch_status=DISPATCH_PENDING if family == DocumentFamily.ORDER else None,
            created_by=actor,
            issued_at=utcnow(),
        )
        db.session.add(header)
        db.session.flush()

        if refs.remissions:
            _consolidate(header, refs.remissions)
        _build_lines(header, family, data, refs)
        db.session.flush()

        if as_draft:
            _check_family_rules(header)
        else:
            _commit_header(header, actor=actor)
        return header, allocation

    header, allocation = _execute_unit(
        _op,
        label=f"create {family.value}",
        retry_conflicts=data.requested_number is None,
    )
    logger.info(
        "document created",
        extra={
            "family": family.value,
            "number": allocation.number,
            "document_id": header.id,
            "reused": allocation.reused,
            "status": header.status,
        },
    )
    return OperationResult(header=header, allocation=allocation, submission=_maybe_submit(header, submit))


def commit_draft(document_id: int, *, actor: str | None = None, submit: bool | None = None) -> OperationResult:
    """DRAFT -> COMMITTED: kardex movements and outbox entry, then optional submit."""
    def _op():
        header = _lock_header(document_id)
        if header.status != lifecycle_service.DRAFT:
            raise LifecycleError(
                f"{header.document_number} is {header.status}; only drafts can be committed",
                details={"document_id": header.id, "status": header.status},
            )
        if header.family == DocumentFamily.CREDIT_NOTE.value:
            lifecycle_service.require_approved_invoice(header.origin)
        _recompute_totals(header)
        _commit_header(header, actor=actor)
        return header

    header = _execute_unit(_op, label="commit draft", retry_conflicts=False)
    return OperationResult(header=header, submission=_maybe_submit(header, submit))


def resubmit_document(
    document_id: int,
    payload: dict | None = None,
    *,
    actor: str | None = None,
    submit: bool | None = None,
) -> OperationResult:
    """
    Re-commit a REJECTED document under its existing number.

    Every outstanding kardex entry of the document is reversed first; then
    the lines (replaced from ``payload`` when given) are re-recorded and a new
    submission is enqueued. No new header is created.
    """
    current = db.session.get(DocumentHeader, document_id)
    if current is None:
        raise ReferentialError(f"Document {document_id} not found", code="DOCUMENT_NOT_FOUND")
    if current.status != lifecycle_service.REJECTED:
        raise LifecycleError(
            f"{current.document_number} is {current.status}; only rejected documents can be resubmitted",
            details={"document_id": current.id, "status": current.status},
        )
    family = DocumentFamily.coerce(current.family)

    data = refs = None
    if payload is not None:
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")
        if payload.get("number") not in (None, current.sequence_number):
            raise ValidationError("a resubmitted document keeps its number", code="NUMBER_IS_FIXED")
        if payload.get("remission_ids"):
            raise ValidationError("remissions cannot be changed on resubmission")
        merged = {
            "client_id": current.client_id,
            "warehouse_id": current.warehouse_id,
            "origin_id": current.origin_id,
            "supplier_name": current.supplier_name,
            "notes": current.notes,
            **{k: v for k, v in payload.items() if k not in {"number", "remission_ids"}},
        }
        if merged.get("warehouse_id") != current.warehouse_id and get_rules(family).scoped_by_warehouse:
            raise ValidationError("warehouse cannot change for a warehouse-numbered document")
        data = parse_document_payload(family, merged)
        refs = _resolve_references(family, data, document_id=current.id)

    def _op():
        header = _lock_header(document_id)
        if header.status != lifecycle_service.REJECTED:
            raise LifecycleError(
                f"{header.document_number} is {header.status}; only rejected documents can be resubmitted",
                details={"document_id": header.id, "status": header.status},
            )
        reverse_document(
            DocumentRef.for_header(header),
            actor=actor,
            note=f"resubmission of {header.document_number}",
        )
        if data is not None:
            header.client_id = refs.client.id if refs.client is not None else None
            header.warehouse_id = refs.warehouse.id
            header.supplier_name = data.supplier_name
            header.notes = data.notes
            header.lines.clear()
            db.session.flush()
            _build_lines(header, family, data, refs)
            db.session.flush()
        _commit_header(header, actor=actor)
        return header

    header = _execute_unit(_op, label=f"resubmit {family.value}", retry_conflicts=False)
    logger.info(
        "document resubmitted",
        extra={"family": header.family, "number": header.sequence_number, "document_id": header.id},
    )
    return OperationResult(header=header, submission=_maybe_submit(header, submit))


def submit_document(document_id: int) -> OperationResult:
    """Dispatch a COMMITTED document's pending submission now."""
    header = db.session.get(DocumentHeader, document_id)
    if header is None:
        raise ReferentialError(f"Document {document_id} not found", code="DOCUMENT_NOT_FOUND")
    if not get_rules(header.family).requires_approval:
        raise LifecycleError(f"{header.family} documents are not submitted for approval", code="NOT_SUBMITTABLE")
    if header.status != lifecycle_service.COMMITTED:
        raise LifecycleError(
            f"{header.document_number} is {header.status}; only committed documents can be submitted",
            details={"document_id": header.id, "status": header.status},
        )
    outcome = submission_service.submit_document(document_id)
    return OperationResult(header=db.session.get(DocumentHeader, document_id), submission=outcome)


def void_document(document_id: int, *, actor: str | None = None, reason: str | None = None) -> OperationResult:
    """
    Cancel a document that is not fiscally binding. Kardex entries are
    reversed, consolidated remissions are released, pending submissions are
    cancelled. APPROVED documents are corrected with a credit note instead.
    """
    def _op():
        header = _lock_header(document_id)
        if header.family == DocumentFamily.REMISSION.value and header.consolidated_into_id is not None:
            raise ConflictError(
                f"Remission {header.document_number} is already invoiced",
                code="REMISSION_INVOICED",
                details={"invoice_id": header.consolidated_into_id},
            )
        if header.family == DocumentFamily.PURCHASE_ORDER.value and any(
            to_decimal(line.received_quantity or 0) > 0 for line in header.lines
        ):
            raise ConflictError(
                f"Purchase order {header.document_number} has receipts",
                code="PURCHASE_ORDER_RECEIVED",
            )

        lifecycle_service.transition(header, lifecycle_service.VOIDED)
        header.void_reason = (reason or "")[:255] or None
        reverse_document(DocumentRef.for_header(header), actor=actor, note=f"void of {header.document_number}")

        for remission in db.session.query(DocumentHeader).filter(DocumentHeader.consolidated_into_id == header.id).all():
            remission.consolidated_into_id = None
        if header.family == DocumentFamily.REMISSION.value and header.origin_id is not None:
            refresh_dispatch_status(_lock_header(header.origin_id))
        submission_service.cancel_pending_submissions(header.id, reason="document voided")
        return header

    header = _execute_unit(_op, label="void document", retry_conflicts=False)
    logger.info(
        "document voided",
        extra={"family": header.family, "number": header.sequence_number, "document_id": header.id},
    )
    return OperationResult(header=header)


def receive_purchase_order(document_id: int, lines, *, actor: str | None = None) -> OperationResult:
    """
    Book goods received against a COMMITTED purchase order: one IN entry per
    receipt line, valued at the receipt cost (or the ordered price), which
    becomes the product's last_cost.
    """
    receipts = parse_receipt_lines(lines)

    def _op():
        header = _lock_header(document_id)
        if header.family != DocumentFamily.PURCHASE_ORDER.value:
            raise ReferentialError(f"Document {document_id} is not a purchase order", code="NOT_A_PURCHASE_ORDER")
        if header.status != lifecycle_service.COMMITTED:
            raise LifecycleError(
                f"{header.document_number} is {header.status}; only committed purchase orders can be received",
                details={"document_id": header.id, "status": header.status},
            )

        tolerance = to_decimal(current_app.config.get("RETURN_QUANTITY_TOLERANCE", "0.0001"))
        ref = DocumentRef.for_header(header)
        for index, receipt in enumerate(receipts):
            if receipt.line_id is not None:
                line = next((l for l in header.lines if l.id == receipt.line_id), None)
            else:
                line = next(
                    (
                        l for l in header.lines
                        if l.product_id == receipt.product_id
                        and to_decimal(l.quantity) - to_decimal(l.received_quantity or 0) > 0
                    ),
                    None,
                )
            if line is None:
                raise ReferentialError(
                    f"lines[{index}] does not match any line of {header.document_number}",
                    code="LINE_NOT_ON_PURCHASE_ORDER",
                )

            remaining = to_decimal(line.quantity) - to_decimal(line.received_quantity or 0)
            if receipt.quantity > remaining + tolerance:
                raise ConflictError(
                    "Received quantity exceeds the ordered quantity",
                    code="RECEIPT_EXCEEDS_ORDERED",
                    details={"line_id": line.id, "remaining": str(remaining), "requested": str(receipt.quantity)},
                )

            cost = receipt.unit_cost if receipt.unit_cost is not None else to_decimal(line.unit_price)
            record_in(
                product_id=line.product_id,
                warehouse_id=header.warehouse_id,
                quantity=receipt.quantity,
                unit_price=line.unit_price,
                base_price=ZERO,
                cost=cost,
                ref=ref,
                actor=actor,
                note=f"receipt for {header.document_number}",
                update_last_cost=True,
            )
            line.received_quantity = to_decimal(line.received_quantity or 0) + receipt.quantity
        return header

    header = _execute_unit(_op, label="receive purchase order", retry_conflicts=False)
    return OperationResult(header=header)


# =============================================================================
# QUERIES
# =============================================================================

def get_document(document_id: int, *, family=None) -> DocumentHeader:
    header = db.session.get(DocumentHeader, document_id)
    if header is None or (family is not None and header.family != DocumentFamily.coerce(family).value):
        raise ReferentialError(f"Document {document_id} not found", code="DOCUMENT_NOT_FOUND")
    return header


def list_documents(*, family=None, status: str | None = None, limit: int = 50, offset: int = 0) -> list[DocumentHeader]:
    q = db.session.query(DocumentHeader)
    if family is not None:
        q = q.filter(DocumentHeader.family == DocumentFamily.coerce(family).value)
    if status:
        if status not in lifecycle_service.VALID_STATUSES:
            raise ValidationError(f"Unknown status filter '{status}'", code="INVALID_STATUS")
        q = q.filter(DocumentHeader.status == status)
    return q.order_by(DocumentHeader.id.desc()).offset(offset).limit(limit).all()
