from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Mapping

from expense_portal.statuses import PortalRole


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an action."""

    email: str
    full_name: str = ""
    portal_role: str = PortalRole.EMPLOYEE.value
    department: str = ""
    designation: str = ""

    @classmethod
    def from_user(cls, user: Mapping[str, Any]) -> "Actor":
        return cls(
            email=user["email"],
            full_name=user.get("full_name") or "",
            portal_role=user.get("portal_role") or user.get("role") or PortalRole.EMPLOYEE.value,
            department=user.get("department") or "",
            designation=user.get("designation") or "",
        )

    @property
    def display_name(self) -> str:
        return self.full_name or self.email


@dataclass(frozen=True)
class ClaimInput:
    category_id: str | None = None
    expense_date: date | None = None
    purpose: str = ""
    bill_number: str = ""
    bill_date: date | None = None
    amount: Decimal | None = None
    payment_mode: str = ""
    description: str = ""
    document_urls: tuple[str, ...] = ()

    def to_fields(self) -> dict[str, Any]:
        fields = asdict(self)
        fields["document_urls"] = list(self.document_urls)
        return fields


@dataclass(frozen=True)
class Attendee:
    name: str
    email: str = ""
    contact: str = ""
    company_name: str = ""


@dataclass(frozen=True)
class BookingInput:
    room_id: str
    booking_date: date
    start_time: str
    end_time: str
    meeting_title: str
    attendees_count: int
    purpose: str = ""
    pre_setup_required: bool = False
    pre_setup_minutes: int = 0
    post_cleanup_required: bool = False
    post_cleanup_minutes: int = 0
    document_urls: tuple[str, ...] = ()
    attendees_list: tuple[Attendee, ...] = field(default_factory=tuple)

    def to_fields(self) -> dict[str, Any]:
        fields = asdict(self)
        fields["document_urls"] = list(self.document_urls)
        fields["attendees_list"] = [asdict(attendee) for attendee in self.attendees_list]
        return fields
