# Overview: Row locking and lock-conflict retry shared by every write path.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


logger = logging.getLogger(__name__)

# Deadlocks / lock timeouts, and version_id mismatches on Product and DocumentHeader
RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query, *, skip_locked: bool = False):
    """
    SELECT ... FOR UPDATE on ``query``.

    Counters, stock balances and headers are always read through this so
    two writers on the same row queue up instead of interleaving. Outbox
    consumers pass skip_locked=True to step over rows another worker holds.
    SQLite has no row locks and ignores the clause.
    """
    return query.with_for_update(skip_locked=skip_locked)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call ``func`` and re-run it after a lock conflict, with exponential
    backoff. The session is rolled back first, so ``func`` must rebuild
    everything it writes. The last conflict is re-raised unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            logger.warning(
                "lock conflict, retrying",
                extra={"attempt": attempt, "delay": delay, "error": type(exc).__name__},
            )
            time.sleep(delay)
