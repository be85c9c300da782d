from datetime import date, datetime, timezone
from unittest import mock

import pytest

from expense_portal.bookings import BookingService, find_conflicts
from expense_portal.errors import BookingConflictError, InvalidTransitionError, NotEligibleError, ValidationError
from expense_portal.models import Attendee, BookingInput
from tests.factories import actor


def booking_input(room_id, start="10:00", end="11:00", **overrides):
    values = dict(
        room_id=room_id,
        booking_date=date(2026, 6, 15),
        start_time=start,
        end_time=end,
        meeting_title="Quarterly review",
        attendees_count=6,
    )
    values.update(overrides)
    return BookingInput(**values)


@pytest.fixture
def bookings(store, ids, portal):
    return BookingService(
        store, portal.notifications, clock=lambda: datetime(2026, 6, 1, 8, 0, 0, 123000, tzinfo=timezone.utc)
    )


@pytest.mark.parametrize(
    "start, end, conflicts",
    [
        ("09:00", "10:00", False),
        ("11:00", "12:00", False),
        ("10:30", "11:30", True),
        ("09:30", "10:01", True),
        ("10:15", "10:45", True),
        ("09:00", "12:00", True),
    ],
)
def test_overlap_is_half_open(start, end, conflicts):
    existing = [
        {"id": "b1", "room_id": "r1", "booking_date": "2026-06-15", "start_time": "10:00", "end_time": "11:00", "status": "approved"}
    ]
    candidate = {"room_id": "r1", "booking_date": "2026-06-15", "start_time": start, "end_time": end}
    assert bool(find_conflicts(candidate, existing)) is conflicts


def test_only_pending_and_approved_block_the_slot():
    base = {"room_id": "r1", "booking_date": "2026-06-15", "start_time": "10:00", "end_time": "11:00"}
    existing = [
        {**base, "id": f"b-{status}", "status": status}
        for status in ("rejected", "sent_back", "cancelled", "completed")
    ]
    assert find_conflicts(base, existing) == []
    assert find_conflicts({**base, "room_id": "r2"}, [{**base, "id": "x", "status": "pending"}]) == []
    assert find_conflicts({**base, "booking_date": "2026-06-16"}, [{**base, "id": "x", "status": "pending"}]) == []


def test_submit_creates_pending_booking_and_notifies(bookings, ids, store):
    booking = bookings.submit(
        actor("emp@example.com"),
        booking_input(ids["room"], attendees_list=(Attendee(name="Guest", company_name="Acme"),)),
    )

    assert booking["status"] == "pending"
    assert booking["booking_number"].startswith("RB-2026-06-01-")
    assert len(booking["booking_number"]) == len("RB-2026-06-01-") + 6
    assert booking["booking_number"].endswith("123")
    assert booking["duration_minutes"] == 60
    assert booking["room_name"] == "Board Room"
    assert booking["attendees_list"][0]["company_name"] == "Acme"

    recipients = sorted(n["recipient_email"] for n in store.notifications.filter({"booking_id": booking["id"]}))
    assert recipients == ["admin@example.com", "ah@example.com", "emp@example.com", "ja@example.com"]


def test_submit_rejects_overlapping_slot(bookings, ids):
    bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    with pytest.raises(BookingConflictError) as excinfo:
        bookings.submit(actor("mgr@example.com"), booking_input(ids["room"], "10:30", "11:30"))
    assert len(excinfo.value.conflicts) == 1

    adjacent = bookings.submit(actor("mgr@example.com"), booking_input(ids["room"], "11:00", "12:00"))
    assert adjacent["status"] == "pending"


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"start": "11:00", "end": "10:00"}, "end_time"),
        ({"start": "9am"}, "time"),
        ({"attendees_count": 0}, "attendees_count"),
        ({"attendees_count": 11}, "attendees_count"),
        ({"meeting_title": "  "}, "meeting_title"),
    ],
)
def test_submit_validation(bookings, ids, overrides, field):
    with pytest.raises(ValidationError) as excinfo:
        bookings.submit(actor("emp@example.com"), booking_input(ids["room"], **overrides))
    assert field in excinfo.value.errors


def test_approval_rechecks_conflicts(bookings, ids, store):
    first = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    second = bookings.submit(actor("mgr@example.com"), booking_input(ids["room"], "11:00", "12:00"))
    # A slot edited out-of-band so the two now overlap.
    store.bookings.update(second["id"], {"start_time": "10:30"})

    with pytest.raises(BookingConflictError):
        bookings.approve(actor("ja@example.com"), second["id"])
    assert store.bookings.require(second["id"])["status"] == "pending"
    bookings.reject(actor("ja@example.com"), second["id"], "Clashes with the quarterly review")

    approved = bookings.approve(actor("ja@example.com"), first["id"])
    assert approved["status"] == "approved"
    assert approved["approved_by"] == "ja@example.com"


def test_approval_assigns_housekeeping(bookings, ids, store):
    booking = bookings.submit(
        actor("emp@example.com"),
        booking_input(ids["room"], pre_setup_required=True, pre_setup_minutes=15),
    )
    bookings.approve(actor("ah@example.com"), booking["id"])

    tasks = store.notifications.filter({"notification_type": "housekeeping_task_assigned"})
    assert sorted(n["recipient_email"] for n in tasks) == ["admin@example.com", "ah@example.com", "ja@example.com"]
    assert "Setup 15 min before" in tasks[0]["message"]


def test_employee_cannot_approve(bookings, ids):
    booking = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    with pytest.raises(NotEligibleError):
        bookings.approve(actor("emp@example.com"), booking["id"])
    with pytest.raises(NotEligibleError):
        bookings.pending_bookings(actor("fin@example.com"))


def test_reject_needs_reason(bookings, ids):
    booking = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    with pytest.raises(ValidationError):
        bookings.reject(actor("ja@example.com"), booking["id"], " ")
    rejected = bookings.reject(actor("ja@example.com"), booking["id"], "Room under maintenance")
    assert rejected["rejection_reason"] == "Room under maintenance"

    retry = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    assert retry["status"] == "pending"


def test_cancel_pending_booking_frees_slot(bookings, ids):
    booking = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    with pytest.raises(NotEligibleError):
        bookings.cancel(actor("mgr@example.com"), booking["id"])

    cancelled = bookings.cancel(actor("emp@example.com"), booking["id"])
    assert cancelled["status"] == "cancelled"
    with pytest.raises(InvalidTransitionError):
        bookings.cancel(actor("emp@example.com"), booking["id"])

    assert bookings.room_schedule(ids["room"], date(2026, 6, 15)) == []


def test_sent_back_booking_can_be_resubmitted(bookings, ids):
    booking = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    bookings.send_back(actor("ja@example.com"), booking["id"], "Fewer attendees please")

    resubmitted = bookings.resubmit(
        actor("emp@example.com"), booking["id"], booking_input(ids["room"], "14:00", "15:30", attendees_count=4)
    )

    assert resubmitted["status"] == "pending"
    assert resubmitted["send_back_reason"] is None
    assert resubmitted["duration_minutes"] == 90
    schedule = bookings.room_schedule(ids["room"], date(2026, 6, 15))
    assert [b["start_time"] for b in schedule] == ["14:00"]


def test_reject_and_send_back_record_the_reviewer(bookings, ids):
    first = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    second = bookings.submit(actor("mgr@example.com"), booking_input(ids["room"], "12:00", "13:00"))

    rejected = bookings.reject(actor("ja@example.com"), first["id"], "Room under maintenance")
    sent_back = bookings.send_back(actor("ah@example.com"), second["id"], "Add an agenda")

    assert rejected["reviewed_by"] == "ja@example.com"
    assert sent_back["reviewed_by"] == "ah@example.com"
    for booking in (rejected, sent_back):
        assert booking["reviewed_at"]
        assert "approved_by" not in booking
        assert "approved_at" not in booking


def test_resubmit_asks_approvers_again(bookings, ids, store):
    booking = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    bookings.send_back(actor("ja@example.com"), booking["id"], "Fewer attendees please")

    bookings.resubmit(actor("emp@example.com"), booking["id"], booking_input(ids["room"], attendees_count=3))

    requests = store.notifications.filter(
        {"booking_id": booking["id"], "notification_type": "booking_approval_required"}
    )
    # One round for the first submission and one for the resubmission.
    assert sorted(n["recipient_email"] for n in requests) == sorted(
        ["admin@example.com", "ah@example.com", "ja@example.com"] * 2
    )


def test_resubmit_rolls_back_when_notifying_fails(bookings, ids, store):
    booking = bookings.submit(actor("emp@example.com"), booking_input(ids["room"]))
    bookings.send_back(actor("ja@example.com"), booking["id"], "Fewer attendees please")

    with mock.patch.object(bookings.notifications, "fan_out", side_effect=RuntimeError("store offline")):
        with pytest.raises(RuntimeError):
            bookings.resubmit(actor("emp@example.com"), booking["id"], booking_input(ids["room"]))

    assert store.bookings.require(booking["id"])["status"] == "sent_back"


def test_housekeeping_tasks(bookings, ids):
    setup = bookings.submit(
        actor("emp@example.com"), booking_input(ids["room"], pre_setup_required=True, pre_setup_minutes=15)
    )
    both = bookings.submit(
        actor("mgr@example.com"),
        booking_input(ids["room"], "08:00", "09:00", pre_setup_required=True, post_cleanup_required=True),
    )
    pending = bookings.submit(
        actor("emp@example.com"), booking_input(ids["room"], "15:00", "16:00", post_cleanup_required=True)
    )
    for booking in (setup, both):
        bookings.approve(actor("ja@example.com"), booking["id"])

    tasks = bookings.housekeeping_tasks(actor("ah@example.com"), on=date(2026, 6, 15))

    assert [b["id"] for b in tasks["setup"]] == [both["id"], setup["id"]]
    assert [b["id"] for b in tasks["cleanup"]] == [both["id"]]
    assert pending["id"] not in [b["id"] for b in tasks["cleanup"]]
    assert bookings.housekeeping_tasks(actor("ah@example.com"), on=date(2026, 6, 16)) == {"setup": [], "cleanup": []}
    with pytest.raises(NotEligibleError):
        bookings.housekeeping_tasks(actor("emp@example.com"))
