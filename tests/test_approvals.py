from datetime import date
from unittest import mock

import pytest

from expense_portal.errors import NotEligibleError, StaleRecordError, ValidationError
from tests.factories import actor, claim_input


def submit_normal(portal, ids, amount="5000"):
    return portal.claims.submit(actor("emp@example.com"), claim_input(ids["travel"], amount))


def test_normal_claim_end_to_end(portal, ids, store, mailer):
    claim = submit_normal(portal, ids)
    assert claim["status"] == "submitted"
    assert claim["current_approver_role"] == "junior_admin"

    claim = portal.approvals.approve(actor("ja@example.com"), claim["id"], "Bills verified")
    assert (claim["status"], claim["current_approver_role"]) == ("verified", "manager")
    claim = portal.approvals.approve(actor("mgr@example.com"), claim["id"])
    assert (claim["status"], claim["current_approver_role"]) == ("manager_approved", "admin_head")
    claim = portal.approvals.approve(actor("ah@example.com"), claim["id"])
    assert (claim["status"], claim["current_approver_role"]) == ("admin_approved", "finance")
    claim = portal.finance.mark_paid(actor("fin@example.com"), claim["id"], date(2026, 4, 1), "TXN123")

    assert claim["status"] == "paid"
    assert claim["payment_reference"] == "TXN123"
    assert claim["payment_date"] == "2026-04-01"

    history = portal.approvals.claim_history(claim["id"])
    assert [entry["approver_role"] for entry in history] == ["junior_admin", "manager", "admin_head", "finance"]
    assert [entry["new_status"] for entry in history] == ["verified", "manager_approved", "admin_approved", "paid"]
    assert history[-1]["stage"] == "finance_processing"

    received = store.notifications.filter({"recipient_email": "emp@example.com", "claim_id": claim["id"]})
    types = [n["notification_type"] for n in received]
    assert types.count("claim_approved") == 3
    assert types.count("payment_processed") == 1
    assert types.count("claim_submitted") == 1
    assert "has been approved by Jai Junior." in received[1]["message"]
    assert all(n["email_sent"] for n in received)
    assert len(mailer.sent) == 5


def test_sales_promotion_chain(portal, ids):
    claim = portal.claims.submit(actor("emp@example.com"), claim_input(ids["promo"]))
    assert claim["claim_type"] == "sales_promotion"
    assert claim["current_approver_role"] == "manager"

    for email in ("mgr@example.com", "cro@example.com", "cfo@example.com"):
        claim = portal.approvals.approve(actor(email), claim["id"])

    assert claim["status"] == "cfo_approved"
    assert claim["current_approver_role"] == "finance"


@pytest.mark.parametrize("remarks", ["", "   ", None])
def test_reject_and_send_back_need_remarks_before_touching_store(portal, ids, store, remarks):
    claim = submit_normal(portal, ids)
    with mock.patch.object(store.claims, "require") as require:
        with pytest.raises(ValidationError):
            portal.approvals.reject(actor("ja@example.com"), claim["id"], remarks)
        with pytest.raises(ValidationError):
            portal.approvals.send_back(actor("ja@example.com"), claim["id"], remarks)
    require.assert_not_called()


def test_wrong_role_cannot_act(portal, ids, store):
    claim = submit_normal(portal, ids)
    with pytest.raises(NotEligibleError):
        portal.approvals.approve(actor("mgr@example.com"), claim["id"])
    assert store.claims.require(claim["id"])["status"] == "submitted"
    assert store.approval_logs.list() == []


def test_send_back_only_by_junior_admin(portal, ids):
    claim = submit_normal(portal, ids)
    claim = portal.approvals.approve(actor("ja@example.com"), claim["id"])
    with pytest.raises(NotEligibleError):
        portal.approvals.send_back(actor("mgr@example.com"), claim["id"], "Missing bill")


def test_reject_records_reason_and_notifies(portal, ids, store):
    claim = submit_normal(portal, ids)
    rejected = portal.approvals.reject(actor("ja@example.com"), claim["id"], "  Duplicate bill  ")

    assert rejected["status"] == "rejected"
    assert rejected["rejection_reason"] == "Duplicate bill"
    assert rejected["current_approver_role"] is None
    latest = store.notifications.filter({"notification_type": "claim_rejected"})
    assert latest[0]["message"].endswith("has been rejected. Reason: Duplicate bill")


def test_stale_version_is_refused(portal, ids, store):
    claim = submit_normal(portal, ids)
    portal.approvals.approve(actor("ja@example.com"), claim["id"])

    with pytest.raises(NotEligibleError):
        portal.approvals.approve(actor("ja@example.com"), claim["id"], expected_version=claim["version"])

    current = store.claims.require(claim["id"])
    with pytest.raises(StaleRecordError):
        portal.approvals.approve(actor("mgr@example.com"), claim["id"], expected_version=current["version"] - 1)
    assert store.claims.require(claim["id"])["status"] == "verified"


def test_failed_notification_rolls_back_claim_and_log(portal, ids, store):
    claim = submit_normal(portal, ids)
    with mock.patch.object(portal.notifications, "notify", side_effect=RuntimeError("store down")):
        with pytest.raises(RuntimeError):
            portal.approvals.approve(actor("ja@example.com"), claim["id"])

    persisted = store.claims.require(claim["id"])
    assert persisted["status"] == "submitted"
    assert persisted["version"] == claim["version"]
    assert store.approval_logs.list() == []


def test_email_failure_does_not_undo_action(portal, ids, store, mailer):
    claim = submit_normal(portal, ids)
    with mock.patch.object(mailer, "send", side_effect=OSError("smtp down")):
        approved = portal.approvals.approve(actor("ja@example.com"), claim["id"])

    assert approved["status"] == "verified"
    notification = store.notifications.filter({"notification_type": "claim_approved"})[0]
    assert notification["email_sent"] is False


def test_pending_queue_and_processed_claims(portal, ids):
    first = submit_normal(portal, ids)
    second = submit_normal(portal, ids, amount="1200")
    portal.approvals.approve(actor("ja@example.com"), first["id"])

    junior_queue = portal.approvals.pending_queue(actor("ja@example.com"), on=date(2026, 1, 1))
    assert [c["id"] for c in junior_queue] == [second["id"]]
    assert junior_queue[0]["sla_status"] == "normal"

    manager_queue = portal.approvals.pending_queue(actor("mgr@example.com"))
    assert [c["id"] for c in manager_queue] == [first["id"]]

    processed = portal.approvals.processed_claims(actor("ja@example.com"))
    assert [c["id"] for c in processed] == [first["id"]]
