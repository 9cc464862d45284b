from __future__ import annotations

from ..extensions import db
from ..money import as_str
from ..time_utils import to_utc_z


# =============================================================================
# DOCUMENT HEADERS (all families share one table)
# =============================================================================

class DocumentHeader(db.Model):
    """
    Header of an order, remission, invoice, credit note or purchase order.

    NUMBERING:
    - sequence_number is the allocated integer; uniqueness is enforced on
      (family, scope_key, sequence_number) only.
    - document_number is the prefixed display form ("FV-089000").
    - scope_key is the warehouse id for warehouse-scoped families, 0 otherwise.

    REFERENCES:
    - origin_id: credit note -> invoice, remission -> order
    - dispatch_status (orders): how much of the order its remissions cover
    - consolidated_into_id: remission -> the invoice that billed it

    TOTALS:
    subtotal/discount/tax/total are always recomputed from the lines;
    caller-supplied totals are ignored.

    LIFECYCLE:
    status follows DRAFT -> COMMITTED -> SUBMITTED -> APPROVED | REJECTED,
    plus VOIDED. approval_token is null until the approval service stamps
    the document.
    """
    __tablename__ = "documents"
    __table_args__ = (
        db.UniqueConstraint("family", "scope_key", "sequence_number", name="uq_documents_family_scope_number"),
        db.Index("ix_documents_family_status", "family", "status"),
        db.Index("ix_documents_family_scope_id", "family", "scope_key", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    family = db.Column(db.String(24), nullable=False, index=True)
    sequence_number = db.Column(db.Integer, nullable=False)
    document_number = db.Column(db.String(32), nullable=False, index=True)
    scope_key = db.Column(db.Integer, nullable=False, default=0)

    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)
    supplier_name = db.Column(db.String(255), nullable=True)

    origin_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)
    consolidated_into_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)

    subtotal = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)
    approval_token = db.Column(db.String(255), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    # REJECTED (service said no) or UNREACHABLE (transport failure)
    rejection_kind = db.Column(db.String(16), nullable=True)
    # Orders only: PENDING, PARTIAL or DISPATCHED, derived from the remissions
    # issued against the order
    dispatch_status = db.Column(db.String(16), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    issued_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    committed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    client = db.relationship("Client")
    warehouse = db.relationship("Warehouse")
    origin = db.relationship("DocumentHeader", remote_side=[id], foreign_keys=[origin_id])
    lines = db.relationship(
        "DocumentLine",
        backref="header",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="DocumentLine.line_number",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<DocumentHeader id={self.id} family={self.family} number={self.document_number!r} status={self.status}>"

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "family": self.family,
            "sequence_number": self.sequence_number,
            "document_number": self.document_number,
            "scope_key": self.scope_key,
            "warehouse_id": self.warehouse_id,
            "client_id": self.client_id,
            "supplier_name": self.supplier_name,
            "origin_id": self.origin_id,
            "consolidated_into_id": self.consolidated_into_id,
            "subtotal": as_str(self.subtotal),
            "discount": as_str(self.discount),
            "tax": as_str(self.tax),
            "total": as_str(self.total),
            "status": self.status,
            "approval_token": self.approval_token,
            "rejection_reason": self.rejection_reason,
            "rejection_kind": self.rejection_kind,
            "dispatch_status": self.dispatch_status,
            "notes": self.notes,
            "created_by": self.created_by,
            "issued_at": to_utc_z(self.issued_at),
            "committed_at": to_utc_z(self.committed_at),
            "submitted_at": to_utc_z(self.submitted_at),
            "approved_at": to_utc_z(self.approved_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "voided_at": to_utc_z(self.voided_at),
            "void_reason": self.void_reason,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class DocumentLine(db.Model):
    """
    One line of a document. Amounts are derived from quantity, unit_price,
    discount_rate and tax_rate; quantity is always > 0.

    Credit-note lines point at the invoice line they return through
    origin_line_id. Purchase-order lines track received_quantity.
    """
    __tablename__ = "document_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="positive_quantity"),
        db.Index("ix_document_lines_origin_line", "origin_line_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    origin_line_id = db.Column(db.Integer, db.ForeignKey("document_lines.id"), nullable=True)

    quantity = db.Column(db.Numeric(18, 4), nullable=False)
    unit_price = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    discount_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    subtotal = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    received_quantity = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "origin_line_id": self.origin_line_id,
            "quantity": as_str(self.quantity),
            "unit_price": as_str(self.unit_price),
            "discount_rate": as_str(self.discount_rate),
            "tax_rate": as_str(self.tax_rate),
            "subtotal": as_str(self.subtotal),
            "discount": as_str(self.discount),
            "tax": as_str(self.tax),
            "total": as_str(self.total),
            "received_quantity": as_str(self.received_quantity),
        }


# =============================================================================
# SEQUENCE COUNTERS
# =============================================================================

class SequenceCounter(db.Model):
    """
    Highest number handed out per (family, scope).

    The row is read under SELECT ... FOR UPDATE during allocation, so two
    writers in the same family serialize on it instead of racing on a
    MAX() scan. It is seeded from the highest issued number the first time
    a family allocates.
    """
    __tablename__ = "sequence_counters"
    __table_args__ = (
        db.UniqueConstraint("family", "scope_key", name="uq_sequence_counters_family_scope"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    family = db.Column(db.String(24), nullable=False)
    scope_key = db.Column(db.Integer, nullable=False, default=0)
    last_number = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "family": self.family,
            "scope_key": self.scope_key,
            "last_number": self.last_number,
            "updated_at": to_utc_z(self.updated_at),
        }


# =============================================================================
# APPROVAL SUBMISSION OUTBOX
# =============================================================================

class SubmissionOutbox(db.Model):
    """
    Durable request to submit a document to the approval service.

    Written in the same transaction that commits the document, then claimed
    by a worker (or the request itself) outside that transaction.

    status: PENDING -> IN_FLIGHT -> DONE | FAILED
    FAILED entries are never retried automatically; an explicit resubmission
    enqueues a fresh entry.
    """
    __tablename__ = "submission_outbox"
    __table_args__ = (
        db.Index("ix_submission_outbox_status_id", "status", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    enqueued_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    document = db.relationship("DocumentHeader")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": to_utc_z(self.enqueued_at),
            "claimed_at": to_utc_z(self.claimed_at),
            "completed_at": to_utc_z(self.completed_at),
        }
