from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Sequence

from expense_portal.admin import MasterDataService
from expense_portal.bookings import BookingService
from expense_portal.config import Settings
from expense_portal.errors import AuthenticationError, NotEligibleError, RecordNotFoundError, ValidationError
from expense_portal.models import Actor
from expense_portal.notifications import LoggingMailer, Mailer, NotificationService, SMTPMailer
from expense_portal.repositories import EntityStore, Record
from expense_portal.services import ApprovalService, ClaimService, FinanceService
from expense_portal.sessions import SessionLogger
from expense_portal.statuses import ClaimType, PortalRole
from expense_portal.workflow import DEFAULT_STAGES, WorkflowDefinition, WorkflowResolver, WorkflowStage

logger = logging.getLogger(__name__)


def build_mailer(settings: Settings) -> Mailer:
    if settings.smtp_host:
        return SMTPMailer(settings.smtp_host, settings.smtp_port, settings.smtp_sender)
    return LoggingMailer()


class Portal:
    """Wires the store, workflow resolver and services together for one deployment."""

    def __init__(self, store: EntityStore, settings: Settings | None = None, mailer: Mailer | None = None):
        self.store = store
        self.settings = settings or Settings()
        self.resolver = self._build_resolver()
        self.notifications = NotificationService(store, mailer or build_mailer(self.settings))
        self.claims = ClaimService(store, self.notifications, self.resolver, sla_days=self.settings.sla_days)
        self.approvals = ApprovalService(store, self.notifications, self.resolver)
        self.finance = FinanceService(store, self.notifications, self.resolver)
        self.bookings = BookingService(store, self.notifications)
        self.master_data = MasterDataService(store)
        self.sessions: dict[str, SessionLogger] = {}
        self._sessions_lock = threading.Lock()
        if self.settings.bootstrap_admin_email:
            self.master_data.ensure_admin(self.settings.bootstrap_admin_email)

    def _build_resolver(self) -> WorkflowResolver:
        options = {
            "send_back_roles": self.settings.send_back_roles,
            "honor_torch_bearer_skip": self.settings.honor_torch_bearer_skip,
        }
        if self.settings.use_workflow_config:
            return WorkflowResolver.from_store(self.store, **options)
        return WorkflowResolver(**options)

    def reload_workflows(self) -> None:
        # Services share the resolver instance, so swapping its table is enough.
        fresh = self._build_resolver()
        self.resolver.definitions = fresh.definitions

    def authenticate(self, email: str | None) -> Actor:
        """Resolve the acting user; an unknown email is an authentication failure."""
        if not email:
            raise AuthenticationError("Not signed in")
        users = self.store.users.filter({"email": email.strip()}, limit=1)
        if not users:
            raise AuthenticationError(f"Unknown user {email}")
        return Actor.from_user(users[0])

    def start_session(
        self,
        actor: Actor,
        device_type: str = "Web",
        browser: str = "Unknown",
        user_agent: str = "",
        authentication_method: str = "Password",
    ) -> SessionLogger:
        session = SessionLogger(self.store, retention_days=self.settings.session_retention_days)
        session.start(actor, device_type, browser, user_agent, authentication_method)
        with self._sessions_lock:
            self.sessions[session.session_id] = session
        return session

    def session_for(self, actor: Actor, session_id: str | None) -> SessionLogger | None:
        if not session_id:
            return None
        with self._sessions_lock:
            session = self.sessions.get(session_id)
        if session is None or session.user_email != actor.email:
            return None
        return session

    def log_critical(
        self, actor: Actor, session_id: str | None, page: str, action: str, entity_ref: str | None = None
    ) -> None:
        session = self.session_for(actor, session_id)
        if session is not None:
            session.log_critical_action(page, action, entity_ref)

    def end_session(self, actor: Actor, session_id: str, reason: str = "Logged Out") -> bool:
        if self.session_for(actor, session_id) is None:
            raise RecordNotFoundError("Session", session_id)
        with self._sessions_lock:
            session = self.sessions.pop(session_id)
        return session.end(reason)

    def workflow_stages(self, workflow_type: str) -> list[WorkflowStage]:
        return list(self.resolver.definition(workflow_type).stages)

    def save_workflow_config(
        self, actor: Actor, workflow_type: str, stages: Sequence[Mapping[str, Any]]
    ) -> Record:
        if actor.portal_role != PortalRole.ADMIN.value:
            raise NotEligibleError("Only admins can change approval workflows")
        if workflow_type not in DEFAULT_STAGES:
            raise ValidationError({"workflow_type": f"Must be one of {sorted(t.value for t in ClaimType)}"})

        try:
            parsed = [WorkflowStage.from_config(raw) for raw in stages]
            WorkflowDefinition(workflow_type, parsed)
        except (KeyError, ValueError) as exc:
            raise ValidationError({"stages": str(exc)}) from exc

        fields: dict[str, Any] = {
            "workflow_type": workflow_type,
            "is_active": True,
            "stages": [
                {
                    "stage_order": s.stage_order,
                    "stage": s.stage,
                    "stage_name": s.stage_name,
                    "approver_role": s.approver_role,
                    "status_on_approve": s.status_on_approve,
                    "is_active": s.is_active,
                    "can_skip_for_torch_bearer": s.can_skip_for_torch_bearer,
                }
                for s in parsed
            ],
        }
        existing = self.store.workflow_configs.filter({"workflow_type": workflow_type}, limit=1)
        if existing:
            record = self.store.workflow_configs.update(existing[0]["id"], fields)
        else:
            record = self.store.workflow_configs.create(fields)
        self.reload_workflows()
        logger.info("Workflow %s updated by %s (%d stages)", workflow_type, actor.email, len(parsed))
        return record
