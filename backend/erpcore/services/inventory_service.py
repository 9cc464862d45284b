# Overview: Service-layer queries over the kardex; on-hand, replay, verification and listings.

"""
Inventory invariants & time semantics

Canonical time handling:
- All internal datetimes are UTC-naive (tzinfo=None).
- API accepts ISO-8601 with 'Z' or offsets; inputs are normalized to UTC-naive.
- As-of filters are inclusive: occurred_at <= as_of.

Inventory model:
- LedgerEntry rows are the source of truth; StockBalance is a cache.
- Replaying signed quantities in id order must reproduce every entry's
  balance_after and, at the end, the cached on_hand. Summing each entry's
  quantity * unit_cost must reproduce the cached value.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func

from ..extensions import db
from ..errors import ReferentialError
from ..models import LedgerEntry, Product, StockBalance, Warehouse
from ..money import ZERO, to_decimal
from .ledger_service import movement_value, resolve_valuation


@dataclass(frozen=True)
class BalanceCheck:
    product_id: int
    warehouse_id: int
    replayed: Decimal
    cached: Decimal
    replayed_value: Decimal = ZERO
    cached_value: Decimal = ZERO
    # Ids of entries whose balance_after disagrees with the running sum
    drifted_entry_ids: tuple[int, ...] = ()

    @property
    def ok(self) -> bool:
        return (
            self.replayed == self.cached
            and self.replayed_value == self.cached_value
            and not self.drifted_entry_ids
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "replayed": str(self.replayed),
            "cached": str(self.cached),
            "replayed_value": str(self.replayed_value),
            "cached_value": str(self.cached_value),
            "drifted_entry_ids": list(self.drifted_entry_ids),
            "ok": self.ok,
        }


def _require_pair(product_id: int, warehouse_id: int) -> tuple[Product, Warehouse]:
    product = db.session.get(Product, product_id)
    if product is None:
        raise ReferentialError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
    warehouse = db.session.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise ReferentialError(f"Warehouse {warehouse_id} not found", code="WAREHOUSE_NOT_FOUND")
    return product, warehouse


def get_on_hand(product_id: int, warehouse_id: int) -> Decimal:
    """Cached on-hand quantity (0 when the pair has never moved)."""
    value = (
        db.session.query(StockBalance.on_hand)
        .filter_by(product_id=product_id, warehouse_id=warehouse_id)
        .scalar()
    )
    return to_decimal(value) if value is not None else ZERO


def replay_balance(product_id: int, warehouse_id: int, as_of: datetime | None = None) -> Decimal:
    """On-hand quantity recomputed from the ledger alone."""
    q = db.session.query(
        func.coalesce(func.sum(LedgerEntry.quantity), 0)
    ).filter(
        LedgerEntry.product_id == product_id,
        LedgerEntry.warehouse_id == warehouse_id,
    )
    if as_of is not None:
        q = q.filter(LedgerEntry.occurred_at <= as_of)
    return to_decimal(q.scalar() or 0)


def _cached_balance(product_id: int, warehouse_id: int) -> tuple[Decimal, Decimal]:
    row = (
        db.session.query(StockBalance.on_hand, StockBalance.value)
        .filter_by(product_id=product_id, warehouse_id=warehouse_id)
        .first()
    )
    if row is None:
        return ZERO, ZERO
    return to_decimal(row[0] or 0), to_decimal(row[1] or 0)


def get_stock_value(product_id: int, warehouse_id: int) -> Decimal:
    """Cached stock value at unit cost (0 when the pair has never moved)."""
    return _cached_balance(product_id, warehouse_id)[1]


def _check_pair(product_id: int, warehouse_id: int) -> BalanceCheck:
    running = ZERO
    running_value = ZERO
    drifted = []
    entries = (
        db.session.query(LedgerEntry.id, LedgerEntry.quantity, LedgerEntry.unit_cost, LedgerEntry.balance_after)
        .filter_by(product_id=product_id, warehouse_id=warehouse_id)
        .order_by(LedgerEntry.id.asc())
    )
    for entry_id, quantity, unit_cost, balance_after in entries:
        running += to_decimal(quantity)
        running_value += movement_value(quantity, unit_cost)
        if to_decimal(balance_after) != running:
            drifted.append(entry_id)

    cached, cached_value = _cached_balance(product_id, warehouse_id)
    return BalanceCheck(
        product_id=product_id,
        warehouse_id=warehouse_id,
        replayed=running,
        cached=cached,
        replayed_value=running_value,
        cached_value=cached_value,
        drifted_entry_ids=tuple(drifted),
    )


def verify_balances(product_id: int | None = None, warehouse_id: int | None = None) -> list[BalanceCheck]:
    """
    Compare ledger replay against the cached snapshot for every pair that has
    either a ledger entry or a cached balance (optionally filtered).
    """
    pairs: set[tuple[int, int]] = set()

    ledger_pairs = db.session.query(LedgerEntry.product_id, LedgerEntry.warehouse_id).distinct()
    cache_pairs = db.session.query(StockBalance.product_id, StockBalance.warehouse_id)
    if product_id is not None:
        ledger_pairs = ledger_pairs.filter(LedgerEntry.product_id == product_id)
        cache_pairs = cache_pairs.filter(StockBalance.product_id == product_id)
    if warehouse_id is not None:
        ledger_pairs = ledger_pairs.filter(LedgerEntry.warehouse_id == warehouse_id)
        cache_pairs = cache_pairs.filter(StockBalance.warehouse_id == warehouse_id)

    pairs.update(tuple(row) for row in ledger_pairs.all())
    pairs.update(tuple(row) for row in cache_pairs.all())

    return [_check_pair(p, w) for p, w in sorted(pairs)]


def list_entries(
    product_id: int,
    warehouse_id: int,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[LedgerEntry]:
    """Kardex for one (product, warehouse), oldest first."""
    _require_pair(product_id, warehouse_id)
    q = db.session.query(LedgerEntry).filter(
        LedgerEntry.product_id == product_id,
        LedgerEntry.warehouse_id == warehouse_id,
    )
    if start is not None:
        q = q.filter(LedgerEntry.occurred_at >= start)
    if end is not None:
        q = q.filter(LedgerEntry.occurred_at <= end)
    q = q.order_by(LedgerEntry.id.asc()).offset(offset)
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def get_stock_summary(product_id: int, warehouse_id: int) -> dict:
    product, warehouse = _require_pair(product_id, warehouse_id)
    valuation = resolve_valuation(product)
    entry_count = (
        db.session.query(func.count(LedgerEntry.id))
        .filter_by(product_id=product_id, warehouse_id=warehouse_id)
        .scalar()
    )
    return {
        "product_id": product.id,
        "warehouse_id": warehouse.id,
        "sku": product.sku,
        "on_hand": str(get_on_hand(product_id, warehouse_id)),
        "value": str(get_stock_value(product_id, warehouse_id)),
        "last_cost": str(valuation.cost),
        "base_price": str(valuation.base_price),
        "entry_count": int(entry_count or 0),
    }
