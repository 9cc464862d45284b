# Overview: Service-layer operations for document lifecycle; state machine and approval reconciliation.

"""
Document Lifecycle Controller

================================================================================
PURPOSE: One state machine for every document family
================================================================================

STATE MACHINE:
    DRAFT -> COMMITTED -> SUBMITTED -> APPROVED
                              |
                              +-----> REJECTED -> COMMITTED (resubmission)

    DRAFT, COMMITTED and REJECTED may also move to VOIDED.

    DRAFT:     header + lines persisted, no kardex movement, not binding
    COMMITTED: lines and kardex entries durably written
    SUBMITTED: approval call dispatched (outbox entry claimed)
    APPROVED:  approval token recorded; fiscally binding, terminal
    REJECTED:  negative answer OR transport failure; number reclaimable
    VOIDED:    cancelled locally, kardex reversed, terminal

RULES:
1. Families without approval stop at COMMITTED (or VOIDED).
2. APPROVED requires a non-empty token.
3. A REJECTED outcome never undoes the local commit; the header is marked
   in place and stays eligible for number reclamation.
4. rejection_kind separates REJECTED (service said no) from UNREACHABLE
   (no answer). Reclamation of UNREACHABLE documents is governed by
   RECLAIM_ON_UNREACHABLE.

None of the functions here commit; callers own the transaction.
================================================================================
"""

from __future__ import annotations

import logging

from flask import current_app

from ..errors import LifecycleError, ReferentialError
from ..families import DocumentFamily, get_rules
from ..models import DocumentHeader
from ..time_utils import utcnow


logger = logging.getLogger(__name__)


DRAFT = "DRAFT"
COMMITTED = "COMMITTED"
SUBMITTED = "SUBMITTED"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
VOIDED = "VOIDED"

VALID_STATUSES = {DRAFT, COMMITTED, SUBMITTED, APPROVED, REJECTED, VOIDED}

REJECTION_REJECTED = "REJECTED"
REJECTION_UNREACHABLE = "UNREACHABLE"

_TRANSITIONS = {
    (DRAFT, COMMITTED),
    (DRAFT, VOIDED),
    (COMMITTED, SUBMITTED),
    (COMMITTED, VOIDED),
    (SUBMITTED, APPROVED),
    (SUBMITTED, REJECTED),
    (REJECTED, COMMITTED),
    (REJECTED, VOIDED),
}

# Returns against these no longer hold quantity on the invoice line
INACTIVE_STATUSES = {REJECTED, VOIDED}


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise LifecycleError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}",
            code="INVALID_STATUS",
        )


def can_transition(from_status: str, to_status: str, *, requires_approval: bool = True) -> bool:
    """
    Check if a state transition is allowed.

    Families that never go to the approval service cannot enter SUBMITTED
    (and therefore never reach APPROVED/REJECTED).
    """
    validate_status(from_status)
    validate_status(to_status)

    if from_status == to_status:
        return False
    if not requires_approval and to_status in {SUBMITTED, APPROVED, REJECTED}:
        return False
    return (from_status, to_status) in _TRANSITIONS


def transition(header: DocumentHeader, to_status: str) -> DocumentHeader:
    """Move ``header`` to ``to_status`` or raise LifecycleError."""
    rules = get_rules(header.family)
    if not can_transition(header.status, to_status, requires_approval=rules.requires_approval):
        raise LifecycleError(
            f"Cannot move {header.family} {header.document_number} from {header.status} to {to_status}",
            details={"document_id": header.id, "from": header.status, "to": to_status},
        )

    now = utcnow()
    header.status = to_status
    if to_status == COMMITTED:
        header.committed_at = now
    elif to_status == SUBMITTED:
        header.submitted_at = now
    elif to_status == VOIDED:
        header.voided_at = now
    return header


def mark_committed(header: DocumentHeader) -> DocumentHeader:
    """DRAFT/REJECTED -> COMMITTED; clears any previous rejection."""
    transition(header, COMMITTED)
    header.rejection_reason = None
    header.rejection_kind = None
    header.rejected_at = None
    return header


def mark_submitted(header: DocumentHeader) -> DocumentHeader:
    return transition(header, SUBMITTED)


def record_approval(header: DocumentHeader, token: str) -> DocumentHeader:
    """SUBMITTED -> APPROVED with the service's token."""
    if not token or not str(token).strip():
        raise LifecycleError(
            "Approval requires a non-empty token",
            code="MISSING_APPROVAL_TOKEN",
            details={"document_id": header.id},
        )
    transition(header, APPROVED)
    header.approval_token = str(token).strip()
    header.approved_at = utcnow()
    header.rejection_reason = None
    header.rejection_kind = None
    logger.info(
        "document approved",
        extra={"family": header.family, "number": header.sequence_number, "document_id": header.id},
    )
    return header


def record_rejection(header: DocumentHeader, *, reason: str | None, kind: str = REJECTION_REJECTED) -> DocumentHeader:
    """SUBMITTED -> REJECTED. The local commit is left in place."""
    if kind not in {REJECTION_REJECTED, REJECTION_UNREACHABLE}:
        raise LifecycleError(f"Invalid rejection kind '{kind}'", code="INVALID_REJECTION_KIND")
    transition(header, REJECTED)
    header.approval_token = None
    header.rejection_reason = (reason or "")[:2000] or None
    header.rejection_kind = kind
    header.rejected_at = utcnow()
    logger.warning(
        "document rejected",
        extra={
            "family": header.family,
            "number": header.sequence_number,
            "document_id": header.id,
            "rejection_kind": kind,
        },
    )
    return header


def is_reclaimable(header: DocumentHeader) -> bool:
    """
    True when ``header`` was abandoned and its number may be reused:
    no approval token, and either still a DRAFT or REJECTED.

    COMMITTED and SUBMITTED documents are in flight and never reclaimed.
    """
    if header.approval_token:
        return False
    if header.status == DRAFT:
        return True
    if header.status != REJECTED:
        return False
    if header.rejection_kind == REJECTION_UNREACHABLE:
        return bool(current_app.config.get("RECLAIM_ON_UNREACHABLE", True))
    return True


def require_approved_invoice(invoice: DocumentHeader | None) -> DocumentHeader:
    """
    Guard for credit notes: the invoice must exist and carry an approval
    token. An un-stamped invoice has no fiscal standing to adjust.
    """
    if invoice is None or invoice.family != DocumentFamily.INVOICE.value:
        raise ReferentialError("Originating invoice not found", code="INVOICE_NOT_FOUND")
    if invoice.status != APPROVED or not invoice.approval_token:
        raise ReferentialError(
            f"Invoice {invoice.document_number} is not approved",
            code="INVOICE_NOT_APPROVED",
            details={"invoice_id": invoice.id, "status": invoice.status},
        )
    return invoice
