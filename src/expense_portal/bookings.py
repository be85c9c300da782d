"""Conference room booking workflow.

A booking has a single approval stage: ``pending`` moves to ``approved``,
``rejected`` or ``sent_back``. The employee may cancel while it is pending and
may resubmit a sent-back booking. Pending and approved bookings hold their
time slot; overlaps are checked on submission and again on approval.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from expense_portal.core import duration_minutes, generate_booking_number, parse_hhmm, today, utc_now
from expense_portal.errors import (
    BookingConflictError,
    InvalidTransitionError,
    NotEligibleError,
    ValidationError,
)
from expense_portal.models import Actor, BookingInput
from expense_portal.notifications import NotificationService
from expense_portal.repositories import EntityStore, Record
from expense_portal.statuses import (
    BOOKING_APPROVER_ROLES,
    HOUSEKEEPING_ROLES,
    SLOT_BLOCKING_BOOKING_STATUSES,
    BookingStatus,
    NotificationType,
)

logger = logging.getLogger(__name__)


def _overlaps(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    # Half-open [start, end) intervals; HH:MM strings compare lexically.
    return start_a < end_b and start_b < end_a


def find_conflicts(candidate: Mapping[str, Any], bookings: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Other bookings of the same room and date whose slot overlaps the candidate's."""
    booking_date = str(candidate.get("booking_date"))
    return [
        booking
        for booking in bookings
        if booking.get("id") != candidate.get("id")
        and booking.get("room_id") == candidate.get("room_id")
        and str(booking.get("booking_date")) == booking_date
        and booking.get("status") in SLOT_BLOCKING_BOOKING_STATUSES
        and _overlaps(candidate["start_time"], candidate["end_time"], booking["start_time"], booking["end_time"])
    ]


def _housekeeping_summary(booking: Mapping[str, Any]) -> str:
    parts = []
    if booking.get("pre_setup_required"):
        parts.append(f"Setup {booking.get('pre_setup_minutes') or 0} min before")
    if booking.get("post_cleanup_required"):
        parts.append(f"Cleanup {booking.get('post_cleanup_minutes') or 0} min after")
    return " and ".join(parts)


class BookingService:
    def __init__(
        self,
        store: EntityStore,
        notifications: NotificationService,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.notifications = notifications
        self.clock = clock

    def _validate(self, fields: Mapping[str, Any], room: Mapping[str, Any] | None) -> None:
        errors: dict[str, str] = {}
        if room is None:
            errors["room_id"] = "Unknown conference room"
        elif not room.get("is_active", True):
            errors["room_id"] = "Conference room is not available for booking"

        try:
            parse_hhmm(fields.get("start_time", ""))
            parse_hhmm(fields.get("end_time", ""))
        except ValueError:
            errors["time"] = "Start and end time must be HH:MM"
        else:
            if fields["start_time"] >= fields["end_time"]:
                errors["end_time"] = "End time must be after start time"

        if not fields.get("booking_date"):
            errors["booking_date"] = "Required"
        if not (fields.get("meeting_title") or "").strip():
            errors["meeting_title"] = "Please enter a meeting title"

        attendees = fields.get("attendees_count") or 0
        if attendees < 1:
            errors["attendees_count"] = "Please enter number of attendees"
        elif room is not None and room.get("seating_capacity") and attendees > int(room["seating_capacity"]):
            errors["attendees_count"] = f"Room capacity is {room['seating_capacity']} people"

        if errors:
            raise ValidationError(errors)

    def _check_conflicts(self, candidate: Mapping[str, Any]) -> None:
        conflicts = find_conflicts(
            candidate,
            self.store.bookings.filter(
                {
                    "room_id": candidate["room_id"],
                    "booking_date": str(candidate["booking_date"]),
                    "status": sorted(SLOT_BLOCKING_BOOKING_STATUSES),
                }
            ),
        )
        if conflicts:
            raise BookingConflictError(list(conflicts))

    def submit(self, actor: Actor, booking_input: BookingInput) -> Record:
        room = self.store.rooms.get(booking_input.room_id)
        fields = booking_input.to_fields()
        fields["booking_date"] = booking_input.booking_date.isoformat()
        self._validate(fields, room)
        self._check_conflicts(fields)

        fields.update(
            booking_number=generate_booking_number(self.clock()),
            room_name=room.get("room_name"),
            employee_name=actor.full_name,
            employee_email=actor.email,
            department=actor.department,
            duration_minutes=duration_minutes(fields["start_time"], fields["end_time"]),
            status=BookingStatus.PENDING.value,
        )

        with self.store.transaction():
            booking = self.store.bookings.create(fields)
            sent = [
                self.notifications.notify(
                    actor.email,
                    NotificationType.BOOKING_SUBMITTED.value,
                    "Booking Request Submitted",
                    f"Your booking request for {booking['room_name']} on {booking['booking_date']} "
                    f"({booking['start_time']} - {booking['end_time']}) has been submitted and is pending approval.",
                    booking=booking,
                )
            ]
            sent += self._notify_approvers(actor, booking)
        self.notifications.dispatch_emails(sent)

        logger.info("Booking %s submitted by %s for room %s", booking["booking_number"], actor.email, booking["room_id"])
        return booking

    def _notify_approvers(self, actor: Actor, booking: Record) -> list[Record]:
        return self.notifications.fan_out(
            BOOKING_APPROVER_ROLES,
            NotificationType.BOOKING_APPROVAL_REQUIRED.value,
            "Booking Approval Required",
            f"{actor.display_name} requested {booking['room_name']} on {booking['booking_date']} "
            f"({booking['start_time']} - {booking['end_time']}).",
            booking=booking,
        )

    def _require_approver(self, actor: Actor) -> None:
        if actor.portal_role not in BOOKING_APPROVER_ROLES:
            raise NotEligibleError(f"Role {actor.portal_role} cannot approve room bookings")

    def _require_pending(self, booking: Mapping[str, Any]) -> None:
        if booking["status"] != BookingStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Booking {booking.get('booking_number')} is {booking['status']}, not pending"
            )

    def approve(self, actor: Actor, booking_id: str) -> Record:
        self._require_approver(actor)
        booking = self.store.bookings.require(booking_id)
        self._require_pending(booking)
        self._check_conflicts(booking)

        with self.store.transaction():
            updated = self.store.bookings.update(
                booking_id,
                {"status": BookingStatus.APPROVED.value, "approved_by": actor.email, "approved_at": utc_now()},
                expected_version=booking["version"],
            )
            sent = [
                self.notifications.notify(
                    booking["employee_email"],
                    NotificationType.BOOKING_APPROVED.value,
                    "Booking Approved",
                    f"Your booking {booking['booking_number']} for {booking.get('room_name')} on "
                    f"{booking['booking_date']} ({booking['start_time']} - {booking['end_time']}) has been approved.",
                    booking=updated,
                )
            ]
            housekeeping = _housekeeping_summary(booking)
            if housekeeping:
                sent += self.notifications.fan_out(
                    HOUSEKEEPING_ROLES,
                    NotificationType.HOUSEKEEPING_TASK_ASSIGNED.value,
                    "Housekeeping Task Assigned",
                    f"Booking {booking['booking_number']}: {housekeeping} for {booking.get('room_name')} on "
                    f"{booking['booking_date']} at {booking['start_time']}.",
                    booking=updated,
                )
        self.notifications.dispatch_emails(sent)

        logger.info("Booking %s approved by %s", booking["booking_number"], actor.email)
        return updated

    def _close_with_reason(
        self,
        actor: Actor,
        booking_id: str,
        reason: str,
        status: BookingStatus,
        notification_type: NotificationType,
        title: str,
        verb: str,
        reason_field: str,
    ) -> Record:
        if not reason or not reason.strip():
            raise ValidationError({"reason": f"Please provide a reason to {verb} the booking"})
        self._require_approver(actor)
        booking = self.store.bookings.require(booking_id)
        self._require_pending(booking)

        with self.store.transaction():
            updated = self.store.bookings.update(
                booking_id,
                {
                    "status": status.value,
                    reason_field: reason.strip(),
                    "reviewed_by": actor.email,
                    "reviewed_at": utc_now(),
                },
                expected_version=booking["version"],
            )
            notification = self.notifications.notify(
                booking["employee_email"],
                notification_type.value,
                title,
                f"Your booking {booking['booking_number']} for {booking.get('room_name')} on "
                f"{booking['booking_date']} was {status.value.replace('_', ' ')}. Reason: {reason.strip()}",
                booking=updated,
            )
        self.notifications.dispatch_emails([notification])

        logger.info("Booking %s %s by %s", booking["booking_number"], status.value, actor.email)
        return updated

    def reject(self, actor: Actor, booking_id: str, reason: str) -> Record:
        return self._close_with_reason(
            actor, booking_id, reason, BookingStatus.REJECTED,
            NotificationType.BOOKING_REJECTED, "Booking Rejected", "reject", "rejection_reason",
        )

    def send_back(self, actor: Actor, booking_id: str, reason: str) -> Record:
        return self._close_with_reason(
            actor, booking_id, reason, BookingStatus.SENT_BACK,
            NotificationType.BOOKING_SENT_BACK, "Booking Sent Back", "send back", "send_back_reason",
        )

    def cancel(self, actor: Actor, booking_id: str) -> Record:
        booking = self.store.bookings.require(booking_id)
        if booking.get("employee_email") != actor.email:
            raise NotEligibleError("Only the employee who made the booking can cancel it")
        self._require_pending(booking)

        with self.store.transaction():
            updated = self.store.bookings.update(
                booking_id, {"status": BookingStatus.CANCELLED.value}, expected_version=booking["version"]
            )
            notification = self.notifications.notify(
                booking["employee_email"],
                NotificationType.BOOKING_CANCELLED.value,
                "Booking Cancelled",
                f"Your booking for {booking.get('room_name')} on {booking['booking_date']} has been cancelled.",
                booking=updated,
            )
        self.notifications.dispatch_emails([notification])

        logger.info("Booking %s cancelled by %s", booking["booking_number"], actor.email)
        return updated

    def resubmit(self, actor: Actor, booking_id: str, changes: BookingInput) -> Record:
        booking = self.store.bookings.require(booking_id)
        if booking.get("employee_email") != actor.email:
            raise NotEligibleError("Only the employee who made the booking can resubmit it")
        if booking["status"] != BookingStatus.SENT_BACK.value:
            raise InvalidTransitionError(f"Booking {booking.get('booking_number')} was not sent back")

        room = self.store.rooms.get(changes.room_id)
        fields = changes.to_fields()
        fields["booking_date"] = changes.booking_date.isoformat()
        self._validate(fields, room)
        self._check_conflicts({**fields, "id": booking_id})

        fields.update(
            room_name=room.get("room_name"),
            duration_minutes=duration_minutes(fields["start_time"], fields["end_time"]),
            status=BookingStatus.PENDING.value,
            send_back_reason=None,
        )
        with self.store.transaction():
            updated = self.store.bookings.update(booking_id, fields, expected_version=booking["version"])
            sent = self._notify_approvers(actor, updated)
        self.notifications.dispatch_emails(sent)

        logger.info("Booking %s resubmitted by %s", booking["booking_number"], actor.email)
        return updated

    def pending_bookings(self, actor: Actor) -> list[Record]:
        self._require_approver(actor)
        return self.store.bookings.filter({"status": BookingStatus.PENDING.value}, sort="-created_date")

    def my_bookings(self, actor: Actor) -> list[Record]:
        return self.store.bookings.filter({"employee_email": actor.email}, sort="-created_date")

    def room_schedule(self, room_id: str, booking_date: date) -> list[Record]:
        return self.store.bookings.filter(
            {
                "room_id": room_id,
                "booking_date": booking_date.isoformat(),
                "status": sorted(SLOT_BLOCKING_BOOKING_STATUSES),
            },
            sort="start_time",
        )

    def housekeeping_tasks(self, actor: Actor, on: date | None = None) -> dict[str, list[Record]]:
        """Approved bookings from ``on`` onwards that need room setup or cleanup."""
        if actor.portal_role not in HOUSEKEEPING_ROLES:
            raise NotEligibleError(f"Role {actor.portal_role} cannot view housekeeping tasks")
        from_date = (on or today()).isoformat()
        upcoming = [
            booking
            for booking in self.store.bookings.filter({"status": BookingStatus.APPROVED.value})
            if str(booking.get("booking_date")) >= from_date
        ]
        upcoming.sort(key=lambda b: (str(b["booking_date"]), b["start_time"]))
        return {
            "setup": [b for b in upcoming if b.get("pre_setup_required")],
            "cleanup": [b for b in upcoming if b.get("post_cleanup_required")],
        }
