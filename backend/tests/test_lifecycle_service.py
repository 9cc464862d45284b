import unittest
from flask import Flask

from erpcore.errors import LifecycleError, ReferentialError
from erpcore.models import DocumentHeader
from erpcore.services import lifecycle_service
from erpcore.services.lifecycle_service import (
    APPROVED,
    COMMITTED,
    DRAFT,
    REJECTED,
    REJECTION_REJECTED,
    REJECTION_UNREACHABLE,
    SUBMITTED,
    VOIDED,
)


def _header(family="invoice", status=DRAFT, **kwargs):
    return DocumentHeader(
        family=family,
        sequence_number=89000,
        document_number="FV-089000",
        scope_key=0,
        status=status,
        **kwargs,
    )


class LifecycleServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = Flask(__name__)
        cls.app.config.update(
            TESTING=True,
            RECLAIM_ON_UNREACHABLE=True,
            DOCUMENT_FAMILIES={},
        )
        cls.ctx = cls.app.app_context()
        cls.ctx.push()

    @classmethod
    def tearDownClass(cls):
        cls.ctx.pop()

    def setUp(self):
        self.app.config["RECLAIM_ON_UNREACHABLE"] = True

    def test_happy_path_transitions(self):
        self.assertTrue(lifecycle_service.can_transition(DRAFT, COMMITTED))
        self.assertTrue(lifecycle_service.can_transition(COMMITTED, SUBMITTED))
        self.assertTrue(lifecycle_service.can_transition(SUBMITTED, APPROVED))
        self.assertTrue(lifecycle_service.can_transition(SUBMITTED, REJECTED))
        self.assertTrue(lifecycle_service.can_transition(REJECTED, COMMITTED))

    def test_terminal_states(self):
        for target in (DRAFT, COMMITTED, SUBMITTED, REJECTED, VOIDED):
            self.assertFalse(lifecycle_service.can_transition(APPROVED, target))
            self.assertFalse(lifecycle_service.can_transition(VOIDED, target))
        self.assertFalse(lifecycle_service.can_transition(SUBMITTED, VOIDED))
        self.assertFalse(lifecycle_service.can_transition(DRAFT, DRAFT))

    def test_families_without_approval_stop_at_committed(self):
        self.assertFalse(lifecycle_service.can_transition(COMMITTED, SUBMITTED, requires_approval=False))
        self.assertTrue(lifecycle_service.can_transition(COMMITTED, VOIDED, requires_approval=False))

        order = _header(family="order", status=COMMITTED)
        with self.assertRaises(LifecycleError):
            lifecycle_service.mark_submitted(order)

    def test_invalid_status_rejected(self):
        with self.assertRaises(LifecycleError) as ctx:
            lifecycle_service.validate_status("PAID")
        self.assertEqual(ctx.exception.code, "INVALID_STATUS")

    def test_transition_stamps_timestamps(self):
        header = _header()
        lifecycle_service.mark_committed(header)
        self.assertEqual(header.status, COMMITTED)
        self.assertIsNotNone(header.committed_at)

        lifecycle_service.mark_submitted(header)
        self.assertIsNotNone(header.submitted_at)

        lifecycle_service.record_approval(header, "  cufe-123 ")
        self.assertEqual(header.status, APPROVED)
        self.assertEqual(header.approval_token, "cufe-123")
        self.assertIsNotNone(header.approved_at)

    def test_approval_requires_token(self):
        header = _header(status=SUBMITTED)
        with self.assertRaises(LifecycleError) as ctx:
            lifecycle_service.record_approval(header, "   ")
        self.assertEqual(ctx.exception.code, "MISSING_APPROVAL_TOKEN")
        self.assertEqual(header.status, SUBMITTED)

    def test_rejection_then_recommit_clears_reason(self):
        header = _header(status=SUBMITTED)
        lifecycle_service.record_rejection(header, reason="bad tax id", kind=REJECTION_REJECTED)
        self.assertEqual(header.status, REJECTED)
        self.assertEqual(header.rejection_reason, "bad tax id")
        self.assertIsNotNone(header.rejected_at)

        lifecycle_service.mark_committed(header)
        self.assertEqual(header.status, COMMITTED)
        self.assertIsNone(header.rejection_reason)
        self.assertIsNone(header.rejection_kind)

    def test_invalid_rejection_kind(self):
        with self.assertRaises(LifecycleError):
            lifecycle_service.record_rejection(_header(status=SUBMITTED), reason="x", kind="TIMEOUT")

    def test_reclaimable_states(self):
        self.assertTrue(lifecycle_service.is_reclaimable(_header(status=DRAFT)))
        self.assertTrue(lifecycle_service.is_reclaimable(
            _header(status=REJECTED, rejection_kind=REJECTION_REJECTED)
        ))
        self.assertFalse(lifecycle_service.is_reclaimable(_header(status=COMMITTED)))
        self.assertFalse(lifecycle_service.is_reclaimable(_header(status=SUBMITTED)))
        self.assertFalse(lifecycle_service.is_reclaimable(_header(status=APPROVED, approval_token="t")))
        self.assertFalse(lifecycle_service.is_reclaimable(_header(status=DRAFT, approval_token="t")))

    def test_unreachable_reclaim_follows_config(self):
        header = _header(status=REJECTED, rejection_kind=REJECTION_UNREACHABLE)
        self.assertTrue(lifecycle_service.is_reclaimable(header))
        self.app.config["RECLAIM_ON_UNREACHABLE"] = False
        self.assertFalse(lifecycle_service.is_reclaimable(header))

    def test_credit_notes_need_an_approved_invoice(self):
        with self.assertRaises(ReferentialError) as ctx:
            lifecycle_service.require_approved_invoice(None)
        self.assertEqual(ctx.exception.code, "INVOICE_NOT_FOUND")

        with self.assertRaises(ReferentialError) as ctx:
            lifecycle_service.require_approved_invoice(_header(status=COMMITTED))
        self.assertEqual(ctx.exception.code, "INVOICE_NOT_APPROVED")

        approved = _header(status=APPROVED, approval_token="cufe-1")
        self.assertIs(lifecycle_service.require_approved_invoice(approved), approved)


if __name__ == "__main__":
    unittest.main()
