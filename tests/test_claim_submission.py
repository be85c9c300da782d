from datetime import datetime, timezone
from decimal import Decimal
import unittest

from expense_portal.db import open_store
from expense_portal.errors import InvalidTransitionError, NotEligibleError, ValidationError
from expense_portal.notifications import LoggingMailer, NotificationService
from expense_portal.services import ApprovalService, ClaimService
from expense_portal.workflow import WorkflowResolver
from tests.factories import actor, claim_input, seed


class ClaimSubmissionTestCase(unittest.TestCase):
    def setUp(self):
        self.store = open_store()
        self.ids = seed(self.store)
        self.notifications = NotificationService(self.store, LoggingMailer())
        resolver = WorkflowResolver()
        self.claims = ClaimService(
            self.store,
            self.notifications,
            resolver,
            clock=lambda: datetime(2026, 3, 5, 9, 30, tzinfo=timezone.utc),
        )
        self.approvals = ApprovalService(self.store, self.notifications, resolver)
        self.employee = actor("emp@example.com")

    def test_submit_stamps_number_and_sla(self):
        claim = self.claims.submit(self.employee, claim_input(self.ids["travel"]))

        self.assertTrue(claim["claim_number"].startswith("CLM-"))
        self.assertEqual(claim["sla_date"], "2026-04-19")
        self.assertEqual(claim["amount"], "5000")
        self.assertEqual(claim["category_name"], "Local Travel")
        self.assertEqual(claim["employee_name"], "Asha Employee")
        self.assertEqual(claim["claim_type"], "normal")

    def test_submit_validation_lists_every_problem(self):
        with self.assertRaises(ValidationError) as ctx:
            self.claims.submit(self.employee, claim_input(self.ids["travel"], amount="0", purpose="", bill_number=""))
        self.assertEqual(set(ctx.exception.errors), {"amount", "purpose", "bill_number"})
        self.assertEqual(self.store.claims.list(), [])

    def test_inactive_category_and_missing_bill(self):
        with self.assertRaises(ValidationError) as ctx:
            self.claims.submit(self.employee, claim_input(self.ids["retired"]))
        self.assertIn("category_id", ctx.exception.errors)

        with self.assertRaises(ValidationError) as ctx:
            self.claims.submit(self.employee, claim_input(self.ids["billed"]))
        self.assertIn("document_urls", ctx.exception.errors)

        claim = self.claims.submit(
            self.employee, claim_input(self.ids["billed"], document_urls=("uploads/emp/bill.pdf",))
        )
        self.assertEqual(claim["document_urls"], ["uploads/emp/bill.pdf"])

    def test_over_policy_limit_only_warns(self):
        with self.assertLogs("expense_portal.services", level="WARNING"):
            claim = self.claims.submit(self.employee, claim_input(self.ids["travel"], amount="15000"))
        self.assertEqual(claim["status"], "submitted")

    def test_draft_can_be_saved_incomplete_and_submitted_later(self):
        draft = self.claims.save_draft(self.employee, claim_input(self.ids["travel"], purpose="", amount="0"))
        self.assertEqual(draft["status"], "draft")
        self.assertNotIn("claim_number", draft)

        draft = self.claims.update_draft(self.employee, draft["id"], claim_input(self.ids["travel"], amount="750"))
        self.assertEqual(draft["version"], 2)

        submitted = self.claims.resubmit(self.employee, draft["id"])
        self.assertEqual(submitted["status"], "submitted")
        self.assertEqual(submitted["current_approver_role"], "junior_admin")
        self.assertTrue(submitted["claim_number"])

    def test_resubmit_clears_send_back_reason_and_keeps_sla_date(self):
        claim = self.claims.submit(self.employee, claim_input(self.ids["travel"]))
        sent_back = self.approvals.send_back(actor("ja@example.com"), claim["id"], "Attach the toll receipt")
        self.assertEqual(sent_back["send_back_reason"], "Attach the toll receipt")

        self.claims.clock = lambda: datetime(2026, 5, 1, tzinfo=timezone.utc)
        resubmitted = self.claims.resubmit(
            self.employee, claim["id"], claim_input(self.ids["travel"], amount="5200")
        )

        self.assertEqual(resubmitted["status"], "submitted")
        self.assertIsNone(resubmitted["send_back_reason"])
        self.assertEqual(resubmitted["sla_date"], claim["sla_date"])
        self.assertEqual(resubmitted["claim_number"], claim["claim_number"])
        self.assertEqual(resubmitted["amount"], "5200")

    def test_claim_type_is_fixed_after_submission(self):
        claim = self.claims.submit(self.employee, claim_input(self.ids["travel"]))
        self.approvals.send_back(actor("ja@example.com"), claim["id"], "Wrong category")
        with self.assertRaises(ValidationError):
            self.claims.resubmit(self.employee, claim["id"], claim_input(self.ids["promo"]))

    def test_only_owner_may_edit_and_only_when_editable(self):
        claim = self.claims.submit(self.employee, claim_input(self.ids["travel"]))
        with self.assertRaises(InvalidTransitionError):
            self.claims.resubmit(self.employee, claim["id"])
        with self.assertRaises(NotEligibleError):
            self.claims.update_draft(actor("mgr@example.com"), claim["id"], claim_input(self.ids["travel"]))

    def test_my_claims_returns_own_claims(self):
        self.claims.submit(self.employee, claim_input(self.ids["travel"]))
        self.claims.submit(actor("mgr@example.com"), claim_input(self.ids["travel"], amount="80.50"))

        mine = self.claims.my_claims(self.employee)
        self.assertEqual(len(mine), 1)
        self.assertEqual(Decimal(mine[0]["amount"]), Decimal("5000"))
