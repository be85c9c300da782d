"""In-app notifications and outbound email for claim and booking events."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Iterable, Mapping, Protocol

from expense_portal.errors import NotEligibleError
from expense_portal.models import Actor
from expense_portal.repositories import EntityStore, Record

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        ...


class LoggingMailer:
    """Records outbound mail in the log instead of delivering it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))
        logger.info("Email to %s: %s", to, subject)


class SMTPMailer:
    def __init__(self, host: str, port: int = 25, sender: str = "no-reply@expense-portal.local"):
        self.host = host
        self.port = port
        self.sender = sender

    def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.send_message(message)


class NotificationService:
    def __init__(self, store: EntityStore, mailer: Mailer | None = None):
        self.store = store
        self.mailer = mailer or LoggingMailer()

    def notify(
        self,
        recipient_email: str,
        notification_type: str,
        title: str,
        message: str,
        claim: Mapping[str, Any] | None = None,
        booking: Mapping[str, Any] | None = None,
    ) -> Record:
        fields: dict[str, Any] = {
            "recipient_email": recipient_email,
            "notification_type": notification_type,
            "title": title,
            "message": message,
            "is_read": False,
            "email_sent": False,
        }
        if claim is not None:
            fields["claim_id"] = claim["id"]
            fields["claim_number"] = claim.get("claim_number")
        if booking is not None:
            fields["booking_id"] = booking["id"]
            fields["booking_number"] = booking.get("booking_number")
        return self.store.notifications.create(fields)

    def fan_out(
        self,
        roles: Iterable[str],
        notification_type: str,
        title: str,
        message: str,
        claim: Mapping[str, Any] | None = None,
        booking: Mapping[str, Any] | None = None,
    ) -> list[Record]:
        recipients = self.store.users.filter({"portal_role": list(roles)})
        seen: set[str] = set()
        created: list[Record] = []
        for user in recipients:
            email = user.get("email")
            if not email or email in seen:
                continue
            seen.add(email)
            created.append(self.notify(email, notification_type, title, message, claim=claim, booking=booking))
        return created

    def dispatch_emails(self, notifications: Iterable[Mapping[str, Any]]) -> int:
        """Email each notification; failures are logged and never raised."""
        delivered = 0
        for notification in notifications:
            try:
                self.mailer.send(notification["recipient_email"], notification["title"], notification["message"])
                self.store.notifications.update(notification["id"], {"email_sent": True})
                delivered += 1
            except Exception:
                logger.exception(
                    "Failed to email notification %s to %s",
                    notification.get("id"),
                    notification.get("recipient_email"),
                )
        return delivered

    def for_recipient(self, actor: Actor, unread_only: bool = False) -> list[Record]:
        criteria: dict[str, Any] = {"recipient_email": actor.email}
        if unread_only:
            criteria["is_read"] = False
        return self.store.notifications.filter(criteria, sort="-created_date")

    def unread_count(self, actor: Actor) -> int:
        return len(self.for_recipient(actor, unread_only=True))

    def mark_read(self, actor: Actor, notification_id: str) -> Record:
        notification = self.store.notifications.require(notification_id)
        if notification["recipient_email"] != actor.email:
            raise NotEligibleError("Only the recipient can mark a notification as read")
        if notification.get("is_read"):
            return notification
        return self.store.notifications.update(notification_id, {"is_read": True})

    def mark_all_read(self, actor: Actor) -> int:
        unread = self.for_recipient(actor, unread_only=True)
        with self.store.transaction():
            for notification in unread:
                self.store.notifications.update(notification["id"], {"is_read": True})
        return len(unread)
