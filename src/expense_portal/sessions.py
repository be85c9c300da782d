"""Session activity logging.

Logging failures are swallowed so they never block the user's primary action.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from expense_portal.models import Actor
from expense_portal.repositories import EntityStore, Record

logger = logging.getLogger(__name__)


class SessionLogger:
    """Tracks one user session; create one per login and pass it where needed."""

    def __init__(self, store: EntityStore, retention_days: int = 180, environment: str = "Production"):
        self.store = store
        self.retention_days = retention_days
        self.environment = environment
        self.session_id: str | None = None
        self.user_email: str | None = None
        self.log_id: str | None = None
        self.started_at: datetime | None = None
        self.activity_buffer: list[dict[str, Any]] = []
        self.error_count = 0

    def start(
        self,
        actor: Actor,
        device_type: str = "Web",
        browser: str = "Unknown",
        user_agent: str = "",
        authentication_method: str = "Password",
    ) -> Record | None:
        now = datetime.now(timezone.utc)
        self.session_id = f"session_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"
        self.user_email = actor.email
        self.started_at = now
        try:
            record = self.store.session_logs.create(
                {
                    "session_id": self.session_id,
                    "user_id": actor.email,
                    "user_role": actor.portal_role,
                    "login_time": now.isoformat(),
                    "session_status": "Active",
                    "authentication_method": authentication_method,
                    "device_type": device_type,
                    "browser": browser,
                    "user_agent": user_agent,
                    "environment": self.environment,
                    "activity_snapshot": [],
                    "last_activity": now.isoformat(),
                    "error_count": 0,
                    "retention_until": (now + timedelta(days=self.retention_days)).date(),
                }
            )
        except Exception:
            logger.exception("Failed to start session log for %s", actor.email)
            return None
        self.log_id = record["id"]
        return record

    def record_activity(self, page: str, action: str, details: dict[str, Any] | None = None) -> None:
        self.activity_buffer.append(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "page": page,
                "action": action,
                "details": details or {},
            }
        )

    def record_error(self) -> None:
        self.error_count += 1

    def flush(self) -> bool:
        if not self.log_id or not self.activity_buffer:
            return False
        try:
            current = self.store.session_logs.require(self.log_id)
            snapshot = list(current.get("activity_snapshot") or []) + self.activity_buffer
            self.store.session_logs.update(
                self.log_id,
                {
                    "activity_snapshot": snapshot,
                    "last_activity": self.activity_buffer[-1]["timestamp"],
                    "error_count": self.error_count,
                },
            )
        except Exception:
            logger.exception("Failed to flush session activity for %s", self.session_id)
            return False
        self.activity_buffer = []
        return True

    def log_critical_action(self, page: str, action: str, entity_ref: str | None = None) -> bool:
        self.record_activity(page, action, {"entity": entity_ref, "critical": True})
        return self.flush()

    def end(self, reason: str = "Logged Out") -> bool:
        if not self.log_id:
            return False
        self.flush()
        now = datetime.now(timezone.utc)
        duration = int((now - self.started_at).total_seconds()) if self.started_at else 0
        try:
            self.store.session_logs.update(
                self.log_id,
                {
                    "logout_time": now.isoformat(),
                    "session_status": reason,
                    "session_duration_seconds": duration,
                    "error_count": self.error_count,
                },
            )
        except Exception:
            logger.exception("Failed to close session log %s", self.session_id)
            return False
        self.log_id = None
        return True
