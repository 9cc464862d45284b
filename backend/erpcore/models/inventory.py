from __future__ import annotations

from ..extensions import db
from ..money import as_str
from ..time_utils import to_utc_z


class LedgerEntry(db.Model):
    """
    Kardex row: one signed stock movement for a (product, warehouse).

    APPEND-ONLY:
    Rows are never updated or deleted by the application. A correction is a
    new row with the opposite sign whose reversal_of_id points at the row it
    cancels.

    VALUATION FIELDS (distinct on purpose):
    - base_price: tax-exclusive valuation from the published price list,
      falling back to the product's last cost. Zero on inbound rows.
    - unit_cost: the product's last recorded purchase cost.
    - unit_price: price on the originating document line.

    document_id is a plain integer, not a foreign key: history must survive
    deletion of a reclaimed header.

    balance_after is the snapshot written with the movement; replaying the
    signed quantities in id order must reproduce it.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_entries_product_warehouse_id", "product_id", "warehouse_id", "id"),
        db.Index("ix_ledger_entries_document", "document_family", "document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    # IN | OUT
    kind = db.Column(db.String(8), nullable=False)
    # Positive = stock-in, negative = stock-out
    quantity = db.Column(db.Numeric(18, 4), nullable=False)

    unit_cost = db.Column(db.Numeric(18, 4), nullable=False, default=0)
    unit_price = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    base_price = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    document_family = db.Column(db.String(24), nullable=False)
    document_id = db.Column(db.Integer, nullable=False)
    document_number = db.Column(db.Integer, nullable=False)

    reversal_of_id = db.Column(db.Integer, db.ForeignKey("ledger_entries.id"), nullable=True, index=True)

    balance_after = db.Column(db.Numeric(18, 4), nullable=False)

    actor = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry id={self.id} product_id={self.product_id} warehouse_id={self.warehouse_id} "
            f"kind={self.kind} qty={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "kind": self.kind,
            "quantity": as_str(self.quantity),
            "unit_cost": as_str(self.unit_cost),
            "unit_price": as_str(self.unit_price),
            "base_price": as_str(self.base_price),
            "document_family": self.document_family,
            "document_id": self.document_id,
            "document_number": self.document_number,
            "reversal_of_id": self.reversal_of_id,
            "balance_after": as_str(self.balance_after),
            "actor": self.actor,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class StockBalance(db.Model):
    """
    Cached on-hand quantity and stock value per (product, warehouse).

    value is the running sum of signed quantity * unit_cost over the
    ledger, each movement rounded to cents.

    A cache only: the ledger is the source of truth and
    inventory_service.verify_balances() checks the two agree.
    """
    __tablename__ = "stock_balances"
    __table_args__ = (
        db.UniqueConstraint("product_id", "warehouse_id", name="uq_stock_balances_product_warehouse"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    on_hand = db.Column(db.Numeric(18, 4), nullable=False, default=0)
    value = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    last_entry_id = db.Column(db.Integer, nullable=True)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "on_hand": as_str(self.on_hand),
            "value": as_str(self.value),
            "last_entry_id": self.last_entry_id,
            "updated_at": to_utc_z(self.updated_at),
        }
