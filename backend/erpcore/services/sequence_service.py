# Overview: Service-layer operations for document numbering; locked counters, reclamation and probing.

"""
Sequence Allocator

allocate(family, warehouse_id=None, requested_number=None) -> Allocation

1. Lock the family's SequenceCounter row (seeded from the highest issued
   number within [floor, ceiling] minus the denylist on first use).
2. Caller-supplied number: uniqueness check only, DuplicateNumberError if
   taken.
3. Families that reclaim numbers: if the most recently issued header in the
   scope is abandoned (no token, DRAFT or REJECTED), its kardex entries are
   reversed, references to it are detached, it is deleted, and its number is
   handed out again with reused=True.
4. Otherwise step past the counter (skipping the denylist) and search for an
   unused number up to MAX_NUMBER_ATTEMPTS times.

The unique constraint on (family, scope_key, sequence_number) remains the
final backstop; the orchestrator turns an IntegrityError there into a
retryable DuplicateNumberError.

Nothing here commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..errors import ConflictError, DuplicateNumberError, ValidationError
from ..families import DocumentFamily, FamilyRules, get_rules
from ..models import DocumentHeader, DocumentLine, SequenceCounter, SubmissionOutbox
from ..time_utils import utcnow
from . import lifecycle_service
from .concurrency import lock_for_update
from .ledger_service import DocumentRef, reverse_document


logger = logging.getLogger(__name__)

MAX_NUMBER_ATTEMPTS = 5


@dataclass(frozen=True)
class Allocation:
    family: DocumentFamily
    scope_key: int
    number: int
    reused: bool
    document_number: str
    reclaimed_document_id: int | None = None

    @property
    def formatted(self) -> str:
        return format_display(self.number)

    def to_dict(self) -> dict:
        return {
            "family": self.family.value,
            "scope_key": self.scope_key,
            "number": self.number,
            "reused": self.reused,
            "document_number": self.document_number,
            "formatted": self.formatted,
            "reclaimed_document_id": self.reclaimed_document_id,
        }


def format_display(number: int, issued_at: datetime | None = None) -> str:
    """YEAR-MONTH-SEQ display form. Not unique; never use it as a key."""
    when = issued_at or utcnow()
    return f"{when.year}-{when.month:02d}-{number}"


def scope_key_for(rules: FamilyRules, warehouse_id: int | None) -> int:
    if not rules.scoped_by_warehouse:
        return 0
    if not warehouse_id:
        raise ValidationError("warehouse_id is required for this document family", code="WAREHOUSE_REQUIRED")
    return int(warehouse_id)


# =============================================================================
# COUNTER
# =============================================================================

def _scan_highest(family: DocumentFamily, scope_key: int, rules: FamilyRules) -> int:
    q = db.session.query(func.max(DocumentHeader.sequence_number)).filter(
        DocumentHeader.family == family.value,
        DocumentHeader.scope_key == scope_key,
        DocumentHeader.sequence_number >= rules.floor,
        DocumentHeader.sequence_number <= rules.ceiling,
    )
    if rules.denylist:
        q = q.filter(DocumentHeader.sequence_number.notin_(sorted(rules.denylist)))
    highest = q.scalar()
    return int(highest) if highest is not None else rules.floor - 1


def _lock_counter(family: DocumentFamily, scope_key: int, rules: FamilyRules) -> SequenceCounter:
    counter = lock_for_update(
        db.session.query(SequenceCounter).filter_by(family=family.value, scope_key=scope_key)
    ).first()
    if counter is None:
        # A concurrent first allocation loses on the unique constraint and is
        # retried by the orchestrator.
        counter = SequenceCounter(
            family=family.value,
            scope_key=scope_key,
            last_number=_scan_highest(family, scope_key, rules),
        )
        db.session.add(counter)
        db.session.flush()
    return counter


def _number_taken(family: DocumentFamily, scope_key: int, number: int) -> bool:
    return (
        db.session.query(DocumentHeader.id)
        .filter_by(family=family.value, scope_key=scope_key, sequence_number=number)
        .first()
        is not None
    )


def _step(number: int, rules: FamilyRules) -> int:
    candidate = number + 1
    while candidate in rules.denylist:
        candidate += 1
    return candidate


# =============================================================================
# RECLAMATION
# =============================================================================

def _latest_header(family: DocumentFamily, scope_key: int, rules: FamilyRules) -> DocumentHeader | None:
    q = db.session.query(DocumentHeader).filter(
        DocumentHeader.family == family.value,
        DocumentHeader.scope_key == scope_key,
        DocumentHeader.sequence_number >= rules.floor,
        DocumentHeader.sequence_number <= rules.ceiling,
    )
    if rules.denylist:
        q = q.filter(DocumentHeader.sequence_number.notin_(sorted(rules.denylist)))
    return lock_for_update(q.order_by(DocumentHeader.id.desc())).first()


def reclaim_document(header: DocumentHeader, *, actor: str | None = None) -> int:
    """
    Remove an abandoned header so its number can be reissued.

    Kardex history is kept: outstanding entries are reversed, not deleted.
    Returns the freed number.
    """
    number = header.sequence_number
    family = header.family
    document_id = header.id
    reverse_document(DocumentRef.for_header(header), actor=actor, note=f"reclaimed {header.document_number}")

    for other in db.session.query(DocumentHeader).filter(DocumentHeader.consolidated_into_id == document_id).all():
        other.consolidated_into_id = None
    for other in db.session.query(DocumentHeader).filter(DocumentHeader.origin_id == document_id).all():
        other.origin_id = None

    line_ids = [line.id for line in header.lines]
    if line_ids:
        for line in db.session.query(DocumentLine).filter(DocumentLine.origin_line_id.in_(line_ids)).all():
            line.origin_line_id = None

    db.session.query(SubmissionOutbox).filter_by(document_id=document_id).delete(synchronize_session=False)

    db.session.delete(header)
    # Delete before the replacement header is inserted under the same number
    db.session.flush()

    logger.info(
        "reclaimed document number",
        extra={"family": family, "number": number, "document_id": document_id},
    )
    return number


# =============================================================================
# ALLOCATION
# =============================================================================

def _allocate_requested(
    family: DocumentFamily,
    scope_key: int,
    rules: FamilyRules,
    counter: SequenceCounter,
    requested_number: int,
) -> Allocation:
    if requested_number <= 0:
        raise ValidationError("document number must be positive", code="INVALID_DOCUMENT_NUMBER")
    if _number_taken(family, scope_key, requested_number):
        raise DuplicateNumberError(
            f"{family.value} number {requested_number} already exists",
            details={"family": family.value, "number": requested_number, "scope_key": scope_key},
        )
    if rules.in_range(requested_number) and requested_number > counter.last_number:
        counter.last_number = requested_number

    return Allocation(
        family=family,
        scope_key=scope_key,
        number=requested_number,
        reused=False,
        document_number=rules.format_number(requested_number),
    )


def allocate(
    family,
    *,
    warehouse_id: int | None = None,
    requested_number: int | None = None,
    actor: str | None = None,
) -> Allocation:
    """Produce the next document number for ``family`` (see module docstring)."""
    family = DocumentFamily.coerce(family)
    rules = get_rules(family)
    scope_key = scope_key_for(rules, warehouse_id)
    counter = _lock_counter(family, scope_key, rules)

    if requested_number is not None:
        return _allocate_requested(family, scope_key, rules, counter, int(requested_number))

    if rules.reclaims_numbers:
        latest = _latest_header(family, scope_key, rules)
        if latest is not None and lifecycle_service.is_reclaimable(latest):
            reclaimed_id = latest.id
            number = reclaim_document(latest, actor=actor)
            return Allocation(
                family=family,
                scope_key=scope_key,
                number=number,
                reused=True,
                document_number=rules.format_number(number),
                reclaimed_document_id=reclaimed_id,
            )

    candidate = max(counter.last_number, rules.floor - 1)
    for _ in range(MAX_NUMBER_ATTEMPTS):
        candidate = _step(candidate, rules)
        if candidate > rules.ceiling:
            raise ConflictError(
                f"{family.value} numbering exhausted at ceiling {rules.ceiling}",
                code="SEQUENCE_EXHAUSTED",
                details={"family": family.value, "ceiling": rules.ceiling},
            )
        if not _number_taken(family, scope_key, candidate):
            counter.last_number = candidate
            logger.info(
                "allocated document number",
                extra={"family": family.value, "scope_key": scope_key, "number": candidate},
            )
            return Allocation(
                family=family,
                scope_key=scope_key,
                number=candidate,
                reused=False,
                document_number=rules.format_number(candidate),
            )

    raise DuplicateNumberError(
        f"Could not find a free {family.value} number after {MAX_NUMBER_ATTEMPTS} attempts",
        details={"family": family.value, "last_candidate": candidate},
    )


def peek_next(family, *, warehouse_id: int | None = None) -> dict:
    """
    Number the next allocate() call would return, without locking or
    consuming anything. Advisory only.
    """
    family = DocumentFamily.coerce(family)
    rules = get_rules(family)
    scope_key = scope_key_for(rules, warehouse_id)

    if rules.reclaims_numbers:
        latest = (
            db.session.query(DocumentHeader)
            .filter(
                DocumentHeader.family == family.value,
                DocumentHeader.scope_key == scope_key,
                DocumentHeader.sequence_number >= rules.floor,
                DocumentHeader.sequence_number <= rules.ceiling,
            )
            .order_by(DocumentHeader.id.desc())
            .first()
        )
        if (
            latest is not None
            and latest.sequence_number not in rules.denylist
            and lifecycle_service.is_reclaimable(latest)
        ):
            return {
                "family": family.value,
                "number": latest.sequence_number,
                "document_number": rules.format_number(latest.sequence_number),
                "reused": True,
            }

    counter = db.session.query(SequenceCounter).filter_by(family=family.value, scope_key=scope_key).first()
    last = counter.last_number if counter is not None else _scan_highest(family, scope_key, rules)
    candidate = _step(max(last, rules.floor - 1), rules)
    while _number_taken(family, scope_key, candidate):
        candidate = _step(candidate, rules)
    return {
        "family": family.value,
        "number": candidate,
        "document_number": rules.format_number(candidate),
        "reused": False,
    }
