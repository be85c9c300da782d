"""Status registry for claims and room bookings.

All values are stored as plain strings on entity records, so every enum mixes
in ``str`` and compares equal to its stored value.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class ClaimStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    MANAGER_APPROVED = "manager_approved"
    ADMIN_APPROVED = "admin_approved"
    CRO_APPROVED = "cro_approved"
    CFO_APPROVED = "cfo_approved"
    PAID = "paid"
    REJECTED = "rejected"
    SENT_BACK = "sent_back"
    ON_HOLD = "on_hold"


class ClaimType(str, Enum):
    NORMAL = "normal"
    SALES_PROMOTION = "sales_promotion"


class PortalRole(str, Enum):
    EMPLOYEE = "employee"
    JUNIOR_ADMIN = "junior_admin"
    MANAGER = "manager"
    ADMIN_HEAD = "admin_head"
    CRO = "cro"
    CFO = "cfo"
    FINANCE = "finance"
    ADMIN = "admin"


class ApprovalAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    SEND_BACK = "send_back"
    PAID = "paid"
    ON_HOLD = "on_hold"


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT_BACK = "sent_back"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    CLAIM_SUBMITTED = "claim_submitted"
    CLAIM_APPROVED = "claim_approved"
    CLAIM_REJECTED = "claim_rejected"
    CLAIM_SENT_BACK = "claim_sent_back"
    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_ON_HOLD = "payment_on_hold"
    BOOKING_SUBMITTED = "booking_submitted"
    BOOKING_APPROVAL_REQUIRED = "booking_approval_required"
    BOOKING_APPROVED = "booking_approved"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_SENT_BACK = "booking_sent_back"
    BOOKING_CANCELLED = "booking_cancelled"
    HOUSEKEEPING_TASK_ASSIGNED = "housekeeping_task_assigned"


TERMINAL_CLAIM_STATUSES: frozenset[str] = frozenset({ClaimStatus.PAID.value, ClaimStatus.REJECTED.value})

EDITABLE_CLAIM_STATUSES: frozenset[str] = frozenset({ClaimStatus.DRAFT.value, ClaimStatus.SENT_BACK.value})

SLOT_BLOCKING_BOOKING_STATUSES: frozenset[str] = frozenset(
    {BookingStatus.PENDING.value, BookingStatus.APPROVED.value}
)

BOOKING_APPROVER_ROLES: frozenset[str] = frozenset(
    {PortalRole.JUNIOR_ADMIN.value, PortalRole.ADMIN_HEAD.value, PortalRole.ADMIN.value}
)

HOUSEKEEPING_ROLES: frozenset[str] = BOOKING_APPROVER_ROLES

FINANCE_ROLES: frozenset[str] = frozenset({PortalRole.FINANCE.value, PortalRole.ADMIN.value})

# Statuses an approval stage may produce, and the ones that hand a claim to finance.
APPROVAL_CLAIM_STATUSES: frozenset[str] = frozenset(
    {
        ClaimStatus.VERIFIED.value,
        ClaimStatus.MANAGER_APPROVED.value,
        ClaimStatus.ADMIN_APPROVED.value,
        ClaimStatus.CRO_APPROVED.value,
        ClaimStatus.CFO_APPROVED.value,
    }
)

PAYABLE_CLAIM_STATUSES: frozenset[str] = frozenset(
    {ClaimStatus.ADMIN_APPROVED.value, ClaimStatus.CFO_APPROVED.value}
)

STAGE_APPROVER_ROLES: frozenset[str] = frozenset(
    role.value for role in PortalRole if role not in (PortalRole.EMPLOYEE, PortalRole.FINANCE)
)

FINANCE_STAGE = "finance_processing"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_CLAIM_STATUSES


def claim_type_for_category(category: Mapping[str, Any]) -> str:
    if category.get("is_sales_promotion"):
        return ClaimType.SALES_PROMOTION.value
    return ClaimType.NORMAL.value


__all__ = [
    "ApprovalAction",
    "APPROVAL_CLAIM_STATUSES",
    "BookingStatus",
    "ClaimStatus",
    "ClaimType",
    "NotificationType",
    "PortalRole",
    "BOOKING_APPROVER_ROLES",
    "EDITABLE_CLAIM_STATUSES",
    "FINANCE_ROLES",
    "FINANCE_STAGE",
    "HOUSEKEEPING_ROLES",
    "PAYABLE_CLAIM_STATUSES",
    "SLOT_BLOCKING_BOOKING_STATUSES",
    "STAGE_APPROVER_ROLES",
    "TERMINAL_CLAIM_STATUSES",
    "claim_type_for_category",
    "is_terminal",
]
