# Overview: Service-layer operations for the kardex ledger; appends signed stock movements.

"""
Kardex Ledger Engine

================================================================================
PURPOSE: Append signed stock movements and keep the on-hand snapshot in step
================================================================================

RULES:
1. Entries are append-only. Corrections are new entries with the opposite
   sign (reversal_of_id set), never edits or deletes.
2. Every append locks the (product, warehouse) StockBalance row, adds the
   signed quantity, and writes the result into both the snapshot and the
   entry's balance_after, in the caller's transaction. The snapshot value
   moves by quantity * unit_cost; a reversal carries the reversed entry's
   cost, so it cancels exactly.
3. Outbound entries carry two distinct valuation numbers:
   - base_price = tax-inclusive list price / (1 + tax_rate/100), or the
     product's last_cost when the product has no entry on the base list
   - unit_cost  = the product's last_cost, always
4. Insufficient stock does not block an outbound entry unless
   ALLOW_NEGATIVE_STOCK is switched off. Reversals are never blocked.

None of the functions here commit; the orchestrator owns the transaction.
================================================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import and_
from sqlalchemy.orm import aliased

from ..extensions import db
from ..errors import ConflictError, ReferentialError, ValidationError
from ..families import LEDGER_IN, LEDGER_OUT
from ..models import DocumentHeader, LedgerEntry, PriceListEntry, Product, StockBalance
from ..money import ZERO, quantize_cost, quantize_money, quantize_quantity, tax_exclusive, to_decimal
from ..time_utils import utcnow
from .concurrency import lock_for_update


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentRef:
    """Identifies the document a movement belongs to."""
    family: str
    document_id: int
    number: int

    @classmethod
    def for_header(cls, header: DocumentHeader) -> "DocumentRef":
        return cls(family=header.family, document_id=header.id, number=header.sequence_number)


@dataclass(frozen=True)
class Valuation:
    base_price: Decimal
    cost: Decimal


# =============================================================================
# VALUATION
# =============================================================================

def resolve_valuation(product: Product, *, price_list: str | None = None) -> Valuation:
    """
    Base price and cost for an outbound movement of ``product``.

    The tax is always stripped at the product's own rate; a rate overridden
    on a document line never changes the kardex valuation.
    """
    price_list = price_list or current_app.config.get("BASE_PRICE_LIST", "07")
    cost = quantize_cost(product.last_cost or 0)

    entry = (
        db.session.query(PriceListEntry)
        .filter_by(product_id=product.id, price_list=price_list)
        .first()
    )
    if entry is None or entry.price is None:
        base_price = cost
    else:
        base_price = tax_exclusive(entry.price, product.tax_rate)

    return Valuation(base_price=base_price, cost=cost)


# =============================================================================
# APPENDING
# =============================================================================

def movement_value(quantity, unit_cost) -> Decimal:
    """Stock value moved by one entry: signed quantity * unit cost, in cents."""
    return quantize_money(to_decimal(quantity) * to_decimal(unit_cost or 0))


def _lock_balance(product_id: int, warehouse_id: int) -> StockBalance:
    balance = lock_for_update(
        db.session.query(StockBalance).filter_by(product_id=product_id, warehouse_id=warehouse_id)
    ).first()
    if balance is None:
        balance = StockBalance(product_id=product_id, warehouse_id=warehouse_id, on_hand=ZERO, value=ZERO)
        db.session.add(balance)
        db.session.flush()
    return balance


def _append(
    *,
    kind: str,
    product_id: int,
    warehouse_id: int,
    signed_quantity: Decimal,
    unit_price,
    base_price,
    cost,
    ref: DocumentRef,
    actor: str | None,
    note: str | None,
    reversal_of_id: int | None = None,
    occurred_at=None,
) -> LedgerEntry:
    balance = _lock_balance(product_id, warehouse_id)
    on_hand = to_decimal(balance.on_hand or 0)
    new_on_hand = quantize_quantity(on_hand + signed_quantity)

    if (
        signed_quantity < 0
        and reversal_of_id is None
        and new_on_hand < 0
        and not current_app.config.get("ALLOW_NEGATIVE_STOCK", True)
    ):
        raise ConflictError(
            "Insufficient stock for outbound movement",
            code="INSUFFICIENT_STOCK",
            details={
                "product_id": product_id,
                "warehouse_id": warehouse_id,
                "on_hand": str(on_hand),
                "requested": str(-signed_quantity),
            },
        )

    entry = LedgerEntry(
        product_id=product_id,
        warehouse_id=warehouse_id,
        kind=kind,
        quantity=signed_quantity,
        unit_cost=quantize_cost(cost or 0),
        unit_price=quantize_money(unit_price or 0),
        base_price=quantize_cost(base_price or 0),
        document_family=ref.family,
        document_id=ref.document_id,
        document_number=ref.number,
        reversal_of_id=reversal_of_id,
        balance_after=new_on_hand,
        actor=actor,
        note=note,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()

    balance.on_hand = new_on_hand
    balance.value = quantize_money(to_decimal(balance.value or 0) + movement_value(entry.quantity, entry.unit_cost))
    balance.last_entry_id = entry.id
    return entry


def _positive_quantity(quantity) -> Decimal:
    qty = quantize_quantity(to_decimal(quantity, field="quantity"))
    if qty <= 0:
        raise ValidationError("quantity must be greater than zero")
    return qty


def record_out(
    *,
    product_id: int,
    warehouse_id: int,
    quantity,
    unit_price,
    base_price,
    cost,
    ref: DocumentRef,
    actor: str | None = None,
    note: str | None = None,
) -> LedgerEntry:
    """Append a stock-out movement (negative quantity)."""
    qty = _positive_quantity(quantity)
    return _append(
        kind=LEDGER_OUT,
        product_id=product_id,
        warehouse_id=warehouse_id,
        signed_quantity=-qty,
        unit_price=unit_price,
        base_price=base_price,
        cost=cost,
        ref=ref,
        actor=actor,
        note=note,
    )


def record_in(
    *,
    product_id: int,
    warehouse_id: int,
    quantity,
    unit_price,
    base_price,
    cost,
    ref: DocumentRef,
    actor: str | None = None,
    note: str | None = None,
    update_last_cost: bool = False,
) -> LedgerEntry:
    """
    Append a stock-in movement (positive quantity).

    With update_last_cost, a positive cost becomes the product's new
    last_cost (purchase receipts).
    """
    qty = _positive_quantity(quantity)
    entry = _append(
        kind=LEDGER_IN,
        product_id=product_id,
        warehouse_id=warehouse_id,
        signed_quantity=qty,
        unit_price=unit_price,
        base_price=base_price,
        cost=cost,
        ref=ref,
        actor=actor,
        note=note,
    )

    if update_last_cost and cost is not None and to_decimal(cost) > 0:
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise ReferentialError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
        product.last_cost = quantize_cost(cost)

    return entry


# =============================================================================
# REVERSALS
# =============================================================================

def outstanding_entries(ref: DocumentRef, *, product_id: int | None = None) -> list[LedgerEntry]:
    """
    Original (non-reversal) entries of a document that have not been reversed,
    oldest first.
    """
    reversal = aliased(LedgerEntry)
    query = (
        db.session.query(LedgerEntry)
        .outerjoin(reversal, reversal.reversal_of_id == LedgerEntry.id)
        .filter(
            LedgerEntry.document_family == ref.family,
            LedgerEntry.document_id == ref.document_id,
            LedgerEntry.reversal_of_id.is_(None),
            reversal.id.is_(None),
        )
    )
    if product_id is not None:
        query = query.filter(LedgerEntry.product_id == product_id)
    return query.order_by(LedgerEntry.id.asc()).all()


def reverse_entry(entry: LedgerEntry, *, actor: str | None = None, note: str | None = None) -> LedgerEntry:
    """Append the opposite-signed twin of ``entry``."""
    already = (
        db.session.query(LedgerEntry.id)
        .filter(LedgerEntry.reversal_of_id == entry.id)
        .first()
    )
    if already is not None:
        raise ConflictError(
            f"Ledger entry {entry.id} is already reversed",
            code="ENTRY_ALREADY_REVERSED",
        )
    if entry.reversal_of_id is not None:
        raise ConflictError(
            f"Ledger entry {entry.id} is itself a reversal",
            code="CANNOT_REVERSE_REVERSAL",
        )

    kind = LEDGER_IN if entry.kind == LEDGER_OUT else LEDGER_OUT
    return _append(
        kind=kind,
        product_id=entry.product_id,
        warehouse_id=entry.warehouse_id,
        signed_quantity=-to_decimal(entry.quantity),
        unit_price=entry.unit_price,
        base_price=entry.base_price,
        cost=entry.unit_cost,
        ref=DocumentRef(entry.document_family, entry.document_id, entry.document_number),
        actor=actor,
        note=note or f"reversal of entry {entry.id}",
        reversal_of_id=entry.id,
    )


def reverse_last(ref: DocumentRef, product_id: int, *, actor: str | None = None, note: str | None = None) -> LedgerEntry:
    """Reverse the most recent outstanding entry of ``ref`` for one product."""
    entries = outstanding_entries(ref, product_id=product_id)
    if not entries:
        raise ConflictError(
            f"No outstanding ledger entry for {ref.family} {ref.number} and product {product_id}",
            code="NOTHING_TO_REVERSE",
        )
    return reverse_entry(entries[-1], actor=actor, note=note)


def reverse_document(ref: DocumentRef, *, actor: str | None = None, note: str | None = None) -> list[LedgerEntry]:
    """
    Emit a full reversal of every outstanding entry tied to a document.

    Used before a revision is re-recorded, when a number is reclaimed and when
    a document is voided. Returns the reversal entries (empty if nothing was
    outstanding).
    """
    reversals = [reverse_entry(entry, actor=actor, note=note) for entry in outstanding_entries(ref)]
    if reversals:
        logger.info(
            "reversed document ledger entries",
            extra={
                "family": ref.family,
                "document_id": ref.document_id,
                "number": ref.number,
                "entries": len(reversals),
            },
        )
    return reversals


def document_entries(ref: DocumentRef) -> list[LedgerEntry]:
    """Every entry (originals and reversals) recorded for a document, in order."""
    return (
        db.session.query(LedgerEntry)
        .filter(
            and_(
                LedgerEntry.document_family == ref.family,
                LedgerEntry.document_id == ref.document_id,
            )
        )
        .order_by(LedgerEntry.id.asc())
        .all()
    )
