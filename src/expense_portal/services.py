from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

from expense_portal.core import generate_claim_number, sla_date_for, sla_status
from expense_portal.errors import (
    InvalidTransitionError,
    NotEligibleError,
    RecordNotFoundError,
    ValidationError,
)
from expense_portal.models import Actor, ClaimInput
from expense_portal.notifications import NotificationService
from expense_portal.repositories import EntityStore, Record
from expense_portal.statuses import (
    EDITABLE_CLAIM_STATUSES,
    FINANCE_ROLES,
    FINANCE_STAGE,
    ApprovalAction,
    ClaimStatus,
    NotificationType,
    claim_type_for_category,
)
from expense_portal.workflow import WorkflowResolver

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

REQUIRED_SUBMISSION_FIELDS = ("expense_date", "purpose", "category_id", "bill_number", "bill_date", "payment_mode")


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def _as_decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def format_amount(value: Any) -> str:
    amount = _as_decimal(value) or Decimal("0")
    return f"₹{amount:,}"


def _require_remarks(remarks: str | None, label: str) -> str:
    if not remarks or not remarks.strip():
        raise ValidationError({"remarks": f"Remarks are required to {label} a claim"})
    return remarks.strip()


class ClaimService:
    """Employee-side claim lifecycle: drafts, submission and resubmission."""

    def __init__(
        self,
        store: EntityStore,
        notifications: NotificationService,
        resolver: WorkflowResolver | None = None,
        sla_days: int = 45,
        clock: Clock = _utc_clock,
    ):
        self.store = store
        self.notifications = notifications
        self.resolver = resolver or WorkflowResolver()
        self.sla_days = sla_days
        self.clock = clock

    def _category(self, category_id: str | None) -> Record | None:
        if not category_id:
            return None
        return self.store.categories.get(category_id)

    def validate_submission(self, fields: Mapping[str, Any], category: Mapping[str, Any] | None) -> None:
        errors: dict[str, str] = {}
        for name in REQUIRED_SUBMISSION_FIELDS:
            if fields.get(name) in (None, ""):
                errors[name] = "Required"

        amount = _as_decimal(fields.get("amount"))
        if amount is None or amount <= 0:
            errors["amount"] = "Valid amount required"

        if fields.get("category_id") and category is None:
            errors["category_id"] = "Unknown category"
        elif category is not None and not category.get("is_active", True):
            errors["category_id"] = "Category is not active"

        if category is not None and category.get("bill_required") and not fields.get("document_urls"):
            errors["document_urls"] = "Bill document is required for this category"

        if errors:
            raise ValidationError(errors)

        limit = _as_decimal(category.get("policy_limit")) if category else None
        if limit is not None and amount is not None and amount > limit:
            logger.warning(
                "Claim amount %s exceeds policy limit %s for category %s",
                amount,
                limit,
                category.get("title"),
            )

    def _content_fields(self, actor: Actor, claim_input: ClaimInput, category: Record | None) -> dict[str, Any]:
        fields = claim_input.to_fields()
        fields.update(
            employee_name=actor.full_name,
            employee_email=actor.email,
            department=actor.department,
            designation=actor.designation,
        )
        if category is not None:
            fields["category_name"] = category.get("title")
            fields["category_group"] = category.get("category_name")
            fields["claim_type"] = claim_type_for_category(category)
            fields["is_torch_bearer"] = bool(category.get("is_torch_bearer"))
        return fields

    def _submission_stamp(self, claim: Mapping[str, Any]) -> dict[str, Any]:
        """claim_number and sla_date are assigned once, on first submission."""
        if claim.get("claim_number") and claim.get("sla_date"):
            return {}
        now = self.clock()
        return {
            "claim_number": claim.get("claim_number") or generate_claim_number(now),
            "sla_date": sla_date_for(now.date(), self.sla_days),
        }

    def _notify_submitted(self, claim: Record) -> Record:
        return self.notifications.notify(
            claim["employee_email"],
            NotificationType.CLAIM_SUBMITTED.value,
            "Claim Submitted Successfully",
            f"Your claim {claim['claim_number']} for {format_amount(claim.get('amount'))} "
            "has been submitted and is pending approval.",
            claim=claim,
        )

    def save_draft(self, actor: Actor, claim_input: ClaimInput) -> Record:
        category = self._category(claim_input.category_id)
        fields = self._content_fields(actor, claim_input, category)
        fields.setdefault("claim_type", "normal")
        fields["status"] = ClaimStatus.DRAFT.value
        fields["amount"] = _as_decimal(fields.get("amount")) or Decimal("0")
        claim = self.store.claims.create(fields)
        logger.info("Draft claim %s saved by %s", claim["id"], actor.email)
        return claim

    def submit(self, actor: Actor, claim_input: ClaimInput) -> Record:
        category = self._category(claim_input.category_id)
        fields = self._content_fields(actor, claim_input, category)
        self.validate_submission(fields, category)

        fields.update(self._submission_stamp(fields))
        fields["status"] = ClaimStatus.SUBMITTED.value
        fields["current_approver_role"] = self.resolver.first_approver_role(fields)

        with self.store.transaction():
            claim = self.store.claims.create(fields)
            notification = self._notify_submitted(claim)
        self.notifications.dispatch_emails([notification])

        logger.info(
            "Claim %s submitted by %s (%s, next approver %s)",
            claim["claim_number"],
            actor.email,
            claim["claim_type"],
            claim["current_approver_role"],
        )
        return claim

    def _owned_editable(self, actor: Actor, claim_id: str) -> Record:
        claim = self.store.claims.require(claim_id)
        if claim.get("employee_email") != actor.email:
            raise NotEligibleError("Only the submitting employee can edit this claim")
        if claim["status"] not in EDITABLE_CLAIM_STATUSES:
            raise InvalidTransitionError(f"Claim in status {claim['status']} cannot be edited")
        return claim

    def _merge_changes(self, actor: Actor, claim: Record, changes: ClaimInput | None) -> dict[str, Any]:
        merged = dict(claim)
        if changes is None:
            return merged
        category = self._category(changes.category_id)
        updated = self._content_fields(actor, changes, category)
        if (
            claim["status"] != ClaimStatus.DRAFT.value
            and "claim_type" in updated
            and updated["claim_type"] != claim.get("claim_type")
        ):
            raise ValidationError({"category_id": "Claim type cannot change after submission"})
        merged.update(updated)
        return merged

    def update_draft(self, actor: Actor, claim_id: str, changes: ClaimInput) -> Record:
        claim = self._owned_editable(actor, claim_id)
        merged = self._merge_changes(actor, claim, changes)
        fields = {key: merged[key] for key in merged if key not in claim or merged[key] != claim[key]}
        return self.store.claims.update(claim_id, fields, expected_version=claim["version"])

    def resubmit(self, actor: Actor, claim_id: str, changes: ClaimInput | None = None) -> Record:
        """Submit a draft, or send a sent-back claim back into the approval chain."""
        claim = self._owned_editable(actor, claim_id)
        merged = self._merge_changes(actor, claim, changes)
        category = self._category(merged.get("category_id"))
        self.validate_submission(merged, category)

        previous_status = claim["status"]
        merged.update(self._submission_stamp(merged))
        merged["status"] = ClaimStatus.SUBMITTED.value
        merged["send_back_reason"] = None
        merged["current_approver_role"] = self.resolver.first_approver_role(merged)

        with self.store.transaction():
            updated = self.store.claims.update(claim_id, merged, expected_version=claim["version"])
            notification = self._notify_submitted(updated)
        self.notifications.dispatch_emails([notification])

        logger.info("Claim %s resubmitted from %s", updated["claim_number"], previous_status)
        return updated

    def my_claims(self, actor: Actor) -> list[Record]:
        return self.store.claims.filter({"employee_email": actor.email}, sort="-created_date")

    def get(self, claim_id: str) -> Record:
        return self.store.claims.require(claim_id)


class ApprovalService:
    """Executes approve / reject / send-back for the approval stages."""

    OUTCOMES = {
        ApprovalAction.APPROVED: (NotificationType.CLAIM_APPROVED, "Claim Approved"),
        ApprovalAction.REJECTED: (NotificationType.CLAIM_REJECTED, "Claim Rejected"),
        ApprovalAction.SEND_BACK: (NotificationType.CLAIM_SENT_BACK, "Claim Sent Back"),
    }

    def __init__(self, store: EntityStore, notifications: NotificationService, resolver: WorkflowResolver):
        self.store = store
        self.notifications = notifications
        self.resolver = resolver

    def approve(
        self, actor: Actor, claim_id: str, remarks: str = "", expected_version: int | None = None
    ) -> Record:
        return self._execute(actor, claim_id, ApprovalAction.APPROVED, (remarks or "").strip(), expected_version)

    def reject(
        self, actor: Actor, claim_id: str, remarks: str, expected_version: int | None = None
    ) -> Record:
        remarks = _require_remarks(remarks, "reject")
        return self._execute(actor, claim_id, ApprovalAction.REJECTED, remarks, expected_version)

    def send_back(
        self, actor: Actor, claim_id: str, remarks: str, expected_version: int | None = None
    ) -> Record:
        remarks = _require_remarks(remarks, "send back")
        return self._execute(actor, claim_id, ApprovalAction.SEND_BACK, remarks, expected_version)

    def _execute(
        self,
        actor: Actor,
        claim_id: str,
        action: ApprovalAction,
        remarks: str,
        expected_version: int | None,
    ) -> Record:
        claim = self.store.claims.require(claim_id)
        resolution = self.resolver.resolve_action(claim, actor.portal_role)
        if not resolution.can_act:
            raise NotEligibleError(
                f"Role {actor.portal_role} cannot act on claim {claim.get('claim_number')} in status {claim['status']}"
            )
        if action is ApprovalAction.SEND_BACK and not resolution.can_send_back:
            raise NotEligibleError(f"Role {actor.portal_role} cannot send claims back")

        if action is ApprovalAction.APPROVED:
            new_status = resolution.next_status_on_approve
            updates: dict[str, Any] = {"status": new_status, "current_approver_role": resolution.next_approver_role}
        elif action is ApprovalAction.REJECTED:
            new_status = ClaimStatus.REJECTED.value
            updates = {"status": new_status, "current_approver_role": None, "rejection_reason": remarks}
        else:
            new_status = ClaimStatus.SENT_BACK.value
            updates = {"status": new_status, "current_approver_role": None, "send_back_reason": remarks}

        notification_type, title = self.OUTCOMES[action]
        if action is ApprovalAction.APPROVED:
            message = f"Your claim {claim['claim_number']} has been approved by {actor.display_name}."
        else:
            verb = "rejected" if action is ApprovalAction.REJECTED else "sent back"
            message = f"Your claim {claim['claim_number']} has been {verb}. Reason: {remarks}"

        version = claim["version"] if expected_version is None else expected_version
        with self.store.transaction():
            updated = self.store.claims.update(claim_id, updates, expected_version=version)
            self.store.approval_logs.create(
                {
                    "claim_id": claim["id"],
                    "claim_number": claim["claim_number"],
                    "approver_email": actor.email,
                    "approver_name": actor.full_name,
                    "approver_role": actor.portal_role,
                    "stage": resolution.stage.stage,
                    "action": action.value,
                    "remarks": remarks,
                    "previous_status": claim["status"],
                    "new_status": new_status,
                }
            )
            notification = self.notifications.notify(
                claim["employee_email"], notification_type.value, title, message, claim=updated
            )
        self.notifications.dispatch_emails([notification])

        logger.info(
            "Claim %s %s by %s (%s): %s -> %s",
            claim["claim_number"],
            action.value,
            actor.email,
            actor.portal_role,
            claim["status"],
            new_status,
        )
        return updated

    def pending_queue(self, actor: Actor, on: date | None = None) -> list[dict[str, Any]]:
        claims = self.store.claims.list(sort="-created_date")
        return [
            {**claim, "sla_status": sla_status(claim.get("sla_date"), on)}
            for claim in self.resolver.pending_for_role(claims, actor.portal_role)
        ]

    def processed_claims(self, actor: Actor) -> list[Record]:
        claim_ids: list[str] = []
        for entry in self.store.approval_logs.filter({"approver_email": actor.email}, sort="-created_date"):
            if entry["claim_id"] not in claim_ids:
                claim_ids.append(entry["claim_id"])
        claims = []
        for claim_id in claim_ids:
            claim = self.store.claims.get(claim_id)
            if claim is not None:
                claims.append(claim)
        return claims

    def claim_history(self, claim_id: str) -> list[Record]:
        if self.store.claims.get(claim_id) is None:
            raise RecordNotFoundError("Claim", claim_id)
        return self.store.approval_logs.filter({"claim_id": claim_id})


class FinanceService:
    """Payment stage: mark paid, put on hold, release hold."""

    def __init__(self, store: EntityStore, notifications: NotificationService, resolver: WorkflowResolver):
        self.store = store
        self.notifications = notifications
        self.resolver = resolver

    @staticmethod
    def _require_finance(actor: Actor) -> None:
        if actor.portal_role not in FINANCE_ROLES:
            raise NotEligibleError("Only finance can process payments")

    def _require_payable(self, claim: Mapping[str, Any]) -> None:
        if claim["status"] not in self.resolver.payable_statuses():
            raise InvalidTransitionError(
                f"Claim {claim.get('claim_number')} in status {claim['status']} is not awaiting payment"
            )

    def payment_queue(self, actor: Actor) -> list[Record]:
        self._require_finance(actor)
        return self.store.claims.filter({"status": sorted(self.resolver.payable_statuses())}, sort="-created_date")

    def on_hold_claims(self, actor: Actor) -> list[Record]:
        self._require_finance(actor)
        return self.store.claims.filter({"status": ClaimStatus.ON_HOLD.value}, sort="-updated_date")

    def paid_claims(self, actor: Actor) -> list[Record]:
        self._require_finance(actor)
        return self.store.claims.filter({"status": ClaimStatus.PAID.value}, sort="-updated_date")

    def _log(self, actor: Actor, claim: Mapping[str, Any], action: ApprovalAction, remarks: str, new_status: str) -> Record:
        return self.store.approval_logs.create(
            {
                "claim_id": claim["id"],
                "claim_number": claim["claim_number"],
                "approver_email": actor.email,
                "approver_name": actor.full_name,
                "approver_role": actor.portal_role,
                "stage": FINANCE_STAGE,
                "action": action.value,
                "remarks": remarks,
                "previous_status": claim["status"],
                "new_status": new_status,
            }
        )

    def mark_paid(
        self,
        actor: Actor,
        claim_id: str,
        payment_date: date,
        reference: str,
        expected_version: int | None = None,
    ) -> Record:
        self._require_finance(actor)
        if not reference or not reference.strip():
            raise ValidationError({"payment_reference": "Payment reference is required"})
        if payment_date is None:
            raise ValidationError({"payment_date": "Payment date is required"})
        reference = reference.strip()

        claim = self.store.claims.require(claim_id)
        self._require_payable(claim)

        version = claim["version"] if expected_version is None else expected_version
        with self.store.transaction():
            updated = self.store.claims.update(
                claim_id,
                {
                    "status": ClaimStatus.PAID.value,
                    "current_approver_role": None,
                    "payment_date": payment_date,
                    "payment_reference": reference,
                },
                expected_version=version,
            )
            self._log(actor, claim, ApprovalAction.PAID, f"Payment processed. Reference: {reference}", ClaimStatus.PAID.value)
            notification = self.notifications.notify(
                claim["employee_email"],
                NotificationType.PAYMENT_PROCESSED.value,
                "Payment Processed",
                f"Your claim {claim['claim_number']} for {format_amount(claim.get('amount'))} has been paid. "
                f"Reference: {reference}",
                claim=updated,
            )
        self.notifications.dispatch_emails([notification])

        logger.info("Claim %s paid by %s, reference %s", claim["claim_number"], actor.email, reference)
        return updated

    def put_on_hold(self, actor: Actor, claim_id: str, remarks: str = "Payment put on hold") -> Record:
        self._require_finance(actor)
        claim = self.store.claims.require(claim_id)
        self._require_payable(claim)
        remarks = (remarks or "").strip() or "Payment put on hold"

        with self.store.transaction():
            updated = self.store.claims.update(
                claim_id, {"status": ClaimStatus.ON_HOLD.value}, expected_version=claim["version"]
            )
            self._log(actor, claim, ApprovalAction.ON_HOLD, remarks, ClaimStatus.ON_HOLD.value)
            notification = self.notifications.notify(
                claim["employee_email"],
                NotificationType.PAYMENT_ON_HOLD.value,
                "Payment On Hold",
                f"Payment for your claim {claim['claim_number']} has been put on hold.",
                claim=updated,
            )
        self.notifications.dispatch_emails([notification])

        logger.info("Claim %s put on hold by %s", claim["claim_number"], actor.email)
        return updated

    def release_hold(self, actor: Actor, claim_id: str) -> Record:
        """Return a held claim to the payment queue.

        The restored status comes from the claim type, not from a stored
        previous status.
        """
        self._require_finance(actor)
        claim = self.store.claims.require(claim_id)
        if claim["status"] != ClaimStatus.ON_HOLD.value:
            raise InvalidTransitionError(f"Claim {claim.get('claim_number')} is not on hold")

        restored = self.resolver.payable_status(claim["claim_type"])
        holds = self.store.approval_logs.filter(
            {"claim_id": claim_id, "action": ApprovalAction.ON_HOLD.value}, sort="-created_date", limit=1
        )
        if holds and holds[0].get("previous_status") != restored:
            logger.warning(
                "Claim %s was held from %s but is released to %s",
                claim["claim_number"],
                holds[0].get("previous_status"),
                restored,
            )

        updated = self.store.claims.update(claim_id, {"status": restored}, expected_version=claim["version"])
        logger.info("Claim %s released from hold to %s by %s", claim["claim_number"], restored, actor.email)
        return updated
