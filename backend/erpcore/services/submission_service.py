# Overview: Service-layer operations for approval submission; outbox claim, dispatch and reconciliation.

"""
Approval submission outbox

WHY: The approval service is external and cannot join the local
transaction. The commit writes a SubmissionOutbox row; dispatch then runs
in three steps so no transaction is open while we wait on the network:

    1. claim      short transaction: PENDING -> IN_FLIGHT, doc -> SUBMITTED,
                  payload built from the committed rows
    2. call       no transaction; HTTP round trip
    3. reconcile  short transaction: doc -> APPROVED | REJECTED,
                  entry -> DONE | FAILED

A crash between 1 and 3 leaves the entry IN_FLIGHT with claimed_at set;
reconcile_stale_submissions() hands it back to PENDING after
OUTBOX_CLAIM_TIMEOUT_SECONDS so the document never stays SUBMITTED unseen.

External failures are never retried automatically. The document goes to
REJECTED and needs an explicit resubmission, which enqueues a new entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..errors import ExternalServiceError
from ..models import DocumentHeader, SubmissionOutbox
from ..time_utils import utcnow
from . import lifecycle_service
from .approval_client import (
    ApprovalUnavailable,
    approval_document_type,
    build_approval_payload,
    get_approval_client,
)
from .concurrency import lock_for_update, run_with_retry


logger = logging.getLogger(__name__)

OUTBOX_PENDING = "PENDING"
OUTBOX_IN_FLIGHT = "IN_FLIGHT"
OUTBOX_DONE = "DONE"
OUTBOX_FAILED = "FAILED"


@dataclass
class SubmissionOutcome:
    """What happened to one submission, reported apart from the local result."""
    document_id: int
    document_number: str | None
    status: str
    approved: bool
    token: str | None = None
    error: str | None = None
    error_kind: str | None = None

    def as_error(self) -> ExternalServiceError | None:
        if self.approved:
            return None
        return ExternalServiceError(
            self.error or "approval service did not approve the document",
            code="APPROVAL_UNREACHABLE" if self.error_kind == lifecycle_service.REJECTION_UNREACHABLE else "APPROVAL_REJECTED",
            details={"document_id": self.document_id, "status": self.status},
        )

    def to_dict(self) -> dict:
        data = {
            "document_id": self.document_id,
            "document_number": self.document_number,
            "status": self.status,
            "approved": self.approved,
            "token": self.token,
        }
        error = self.as_error()
        if error is not None:
            data["error"] = error.to_dict()
            data["error"]["rejection_kind"] = self.error_kind
        return data


@dataclass(frozen=True)
class _Claim:
    outbox_id: int
    document_id: int
    document_number: str
    document_type: str
    payload: dict = field(default_factory=dict)


# =============================================================================
# ENQUEUE (inside the caller's transaction)
# =============================================================================

def enqueue_submission(header: DocumentHeader) -> SubmissionOutbox:
    entry = SubmissionOutbox(document_id=header.id, status=OUTBOX_PENDING, attempts=0)
    db.session.add(entry)
    return entry


def cancel_pending_submissions(document_id: int, *, reason: str) -> int:
    """Fail every not-yet-dispatched entry of a document (used on void)."""
    entries = (
        db.session.query(SubmissionOutbox)
        .filter_by(document_id=document_id, status=OUTBOX_PENDING)
        .all()
    )
    now = utcnow()
    for entry in entries:
        entry.status = OUTBOX_FAILED
        entry.last_error = reason
        entry.completed_at = now
    return len(entries)


# =============================================================================
# DISPATCH
# =============================================================================

def _claim(outbox_id: int) -> _Claim | None:
    def _op() -> _Claim | None:
        entry = lock_for_update(
            db.session.query(SubmissionOutbox).filter_by(id=outbox_id, status=OUTBOX_PENDING),
            skip_locked=True,
        ).first()
        if entry is None:
            db.session.rollback()
            return None

        header = lock_for_update(db.session.query(DocumentHeader).filter_by(id=entry.document_id)).first()
        if header is None or header.status not in {lifecycle_service.COMMITTED, lifecycle_service.SUBMITTED}:
            entry.status = OUTBOX_FAILED
            entry.last_error = "document no longer awaits submission"
            entry.completed_at = utcnow()
            db.session.commit()
            return None

        if header.status == lifecycle_service.COMMITTED:
            lifecycle_service.mark_submitted(header)

        entry.status = OUTBOX_IN_FLIGHT
        entry.attempts = (entry.attempts or 0) + 1
        entry.claimed_at = utcnow()

        claim = _Claim(
            outbox_id=entry.id,
            document_id=header.id,
            document_number=header.document_number,
            document_type=approval_document_type(header),
            payload=build_approval_payload(header),
        )
        db.session.commit()
        return claim

    return run_with_retry(_op)


def _reconcile(claim: _Claim, *, token: str | None, message: str | None, kind: str | None) -> SubmissionOutcome:
    def _op() -> SubmissionOutcome:
        entry = lock_for_update(db.session.query(SubmissionOutbox).filter_by(id=claim.outbox_id)).first()
        header = lock_for_update(db.session.query(DocumentHeader).filter_by(id=claim.document_id)).first()
        now = utcnow()

        if header is None or header.status != lifecycle_service.SUBMITTED:
            # Resolved by another path while the call was in flight
            if entry is not None and entry.status == OUTBOX_IN_FLIGHT:
                entry.status = OUTBOX_FAILED
                entry.last_error = "document left SUBMITTED before the answer arrived"
                entry.completed_at = now
            outcome = SubmissionOutcome(
                document_id=claim.document_id,
                document_number=claim.document_number,
                status=header.status if header is not None else "MISSING",
                approved=bool(header is not None and header.status == lifecycle_service.APPROVED),
                token=header.approval_token if header is not None else None,
                error=None if header is not None and header.status == lifecycle_service.APPROVED else "stale answer ignored",
                error_kind=None,
            )
            db.session.commit()
            return outcome

        if token:
            lifecycle_service.record_approval(header, token)
            if entry is not None:
                entry.status = OUTBOX_DONE
                entry.last_error = None
        else:
            lifecycle_service.record_rejection(header, reason=message, kind=kind or lifecycle_service.REJECTION_REJECTED)
            if entry is not None:
                entry.status = OUTBOX_FAILED
                entry.last_error = message
        if entry is not None:
            entry.completed_at = now

        outcome = SubmissionOutcome(
            document_id=header.id,
            document_number=header.document_number,
            status=header.status,
            approved=header.status == lifecycle_service.APPROVED,
            token=header.approval_token,
            error=None if token else message,
            error_kind=None if token else header.rejection_kind,
        )
        db.session.commit()
        return outcome

    return run_with_retry(_op)


def dispatch(outbox_id: int) -> SubmissionOutcome | None:
    """Claim one outbox entry, call the approval service, reconcile."""
    claim = _claim(outbox_id)
    if claim is None:
        return None

    try:
        client = get_approval_client()
        result = client.submit(claim.document_type, claim.payload)
    except ApprovalUnavailable as exc:
        logger.warning(
            "approval service unreachable",
            extra={"document_id": claim.document_id, "outbox_id": claim.outbox_id, "error": str(exc)},
        )
        return _reconcile(
            claim,
            token=None,
            message=str(exc),
            kind=lifecycle_service.REJECTION_UNREACHABLE,
        )

    if result.approved:
        return _reconcile(claim, token=result.token, message=None, kind=None)
    return _reconcile(
        claim,
        token=None,
        message=result.message,
        kind=lifecycle_service.REJECTION_REJECTED,
    )


def submit_document(document_id: int) -> SubmissionOutcome | None:
    """
    Dispatch the pending submission of one document, if there is one.
    Returns None when nothing was waiting.
    """
    row = (
        db.session.query(SubmissionOutbox.id)
        .filter_by(document_id=document_id, status=OUTBOX_PENDING)
        .order_by(SubmissionOutbox.id.desc())
        .first()
    )
    if row is None:
        db.session.rollback()
        return None
    return dispatch(row[0])


def process_outbox(limit: int = 50) -> list[SubmissionOutcome]:
    """Worker loop: dispatch up to ``limit`` pending entries, oldest first."""
    ids = [
        row[0]
        for row in db.session.query(SubmissionOutbox.id)
        .filter_by(status=OUTBOX_PENDING)
        .order_by(SubmissionOutbox.id.asc())
        .limit(limit)
        .all()
    ]
    db.session.rollback()

    outcomes = []
    for outbox_id in ids:
        outcome = dispatch(outbox_id)
        if outcome is not None:
            outcomes.append(outcome)
    return outcomes


def reconcile_stale_submissions(now: datetime | None = None) -> int:
    """
    Hand IN_FLIGHT entries whose claim expired back to PENDING.
    Their documents stay SUBMITTED until the next dispatch resolves them.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=int(current_app.config.get("OUTBOX_CLAIM_TIMEOUT_SECONDS", 300)))

    def _op() -> int:
        stale = lock_for_update(
            db.session.query(SubmissionOutbox).filter(
                SubmissionOutbox.status == OUTBOX_IN_FLIGHT,
                SubmissionOutbox.claimed_at < cutoff,
            )
        ).all()
        for entry in stale:
            entry.status = OUTBOX_PENDING
            entry.last_error = f"claim expired after attempt {entry.attempts}"
            entry.claimed_at = None
        db.session.commit()
        if stale:
            logger.warning("re-queued stale submissions", extra={"count": len(stale)})
        return len(stale)

    return run_with_retry(_op)


def list_outbox(*, status: str | None = None, limit: int = 100) -> list[SubmissionOutbox]:
    q = db.session.query(SubmissionOutbox)
    if status:
        q = q.filter(SubmissionOutbox.status == status)
    return q.order_by(SubmissionOutbox.id.desc()).limit(limit).all()
