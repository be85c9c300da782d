from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, Field

from backend.services.export import ClaimExportService, export_filename
from expense_portal.config import Settings, configure_logging, get_settings
from expense_portal.core import SecureStorage
from expense_portal.db import open_store
from expense_portal.errors import (
    AuthenticationError,
    BookingConflictError,
    InvalidTransitionError,
    NotEligibleError,
    PortalError,
    RecordNotFoundError,
    StaleRecordError,
    ValidationError,
)
from expense_portal.models import Actor, Attendee, BookingInput, ClaimInput
from expense_portal.notifications import Mailer
from expense_portal.portal import Portal
from expense_portal.repositories import EntityStore
from expense_portal.statuses import PortalRole


class ClaimPayload(BaseModel):
    category_id: str | None = None
    expense_date: date | None = None
    purpose: str = ""
    bill_number: str = ""
    bill_date: date | None = None
    amount: Decimal | None = None
    payment_mode: str = ""
    description: str = ""
    document_urls: list[str] = Field(default_factory=list)

    def to_input(self) -> ClaimInput:
        return ClaimInput(**{**self.model_dump(), "document_urls": tuple(self.document_urls)})


class ActionPayload(BaseModel):
    remarks: str = ""
    expected_version: int | None = None


class PaymentPayload(BaseModel):
    payment_date: date
    payment_reference: str
    expected_version: int | None = None


class AttendeePayload(BaseModel):
    name: str
    email: str = ""
    contact: str = ""
    company_name: str = ""


class BookingPayload(BaseModel):
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
    document_urls: list[str] = Field(default_factory=list)
    attendees_list: list[AttendeePayload] = Field(default_factory=list)

    def to_input(self) -> BookingInput:
        data = self.model_dump(exclude={"attendees_list", "document_urls"})
        return BookingInput(
            **data,
            document_urls=tuple(self.document_urls),
            attendees_list=tuple(Attendee(**a.model_dump()) for a in self.attendees_list),
        )


class ReasonPayload(BaseModel):
    reason: str = ""


class StagePayload(BaseModel):
    stage_order: int
    stage_name: str
    approver_role: str
    status_on_approve: str
    is_active: bool = True
    can_skip_for_torch_bearer: bool = False


class WorkflowConfigPayload(BaseModel):
    stages: list[StagePayload]


class LoginPayload(BaseModel):
    device_type: str = "Web"
    browser: str = "Unknown"
    authentication_method: str = "Password"


# Master data payloads are partial: only the fields sent are written.

class CategoryPayload(BaseModel):
    category_name: str | None = None
    title: str | None = None
    claim_type: str | None = None
    bill_required: bool | None = None
    description: str | None = None
    policy_limit: Decimal | None = None
    is_sales_promotion: bool | None = None
    is_torch_bearer: bool | None = None
    is_active: bool | None = None
    sort_order: int | None = None


class RoomPayload(BaseModel):
    room_code: str | None = None
    room_name: str | None = None
    seating_capacity: int | None = None
    floor: str | None = None
    location: str | None = None
    category: str | None = None
    amenities: list[str] | None = None
    is_active: bool | None = None


class UserPayload(BaseModel):
    email: str | None = None
    full_name: str | None = None
    portal_role: str | None = None
    department: str | None = None
    designation: str | None = None


ERROR_STATUS = (
    (ValidationError, 422),
    (AuthenticationError, 401),
    (NotEligibleError, 403),
    (RecordNotFoundError, 404),
    (BookingConflictError, 409),
    (StaleRecordError, 409),
    (InvalidTransitionError, 409),
)


def _error_response(exc: PortalError) -> JSONResponse:
    status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    body: dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, ValidationError):
        body["errors"] = exc.errors
    if isinstance(exc, BookingConflictError):
        body["conflicts"] = [c.get("booking_number") for c in exc.conflicts]
    return JSONResponse(status_code=status_code, content=body)


def create_app(
    settings: Settings | None = None,
    store: EntityStore | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = store or open_store(settings.database_path, check_same_thread=False)
    portal = Portal(store, settings, mailer)
    storage = SecureStorage(base_dir=settings.upload_root)
    exporter = ClaimExportService()
    app.state.portal = portal

    @app.exception_handler(PortalError)
    async def handle_portal_error(request: Request, exc: PortalError) -> JSONResponse:
        return _error_response(exc)

    def current_actor(x_user_email: str | None = Header(default=None)) -> Actor:
        return portal.authenticate(x_user_email)

    # Sessions

    @app.post("/auth/login")
    def login(
        payload: LoginPayload | None = None,
        user_agent: str = Header(default=""),
        actor: Actor = Depends(current_actor),
    ):
        payload = payload or LoginPayload()
        session = portal.start_session(
            actor, payload.device_type, payload.browser, user_agent, payload.authentication_method
        )
        return {"session_id": session.session_id, "user": actor}

    @app.post("/auth/logout")
    def logout(x_session_id: str = Header(...), actor: Actor = Depends(current_actor)):
        return {"ended": portal.end_session(actor, x_session_id)}

    @app.get("/auth/me")
    def me(actor: Actor = Depends(current_actor)):
        return actor

    # Claims

    @app.post("/claims/drafts", status_code=201)
    def save_draft(payload: ClaimPayload, actor: Actor = Depends(current_actor)):
        return portal.claims.save_draft(actor, payload.to_input())

    @app.post("/claims", status_code=201)
    def submit_claim(payload: ClaimPayload, actor: Actor = Depends(current_actor)):
        return portal.claims.submit(actor, payload.to_input())

    @app.put("/claims/{claim_id}")
    def update_draft(claim_id: str, payload: ClaimPayload, actor: Actor = Depends(current_actor)):
        return portal.claims.update_draft(actor, claim_id, payload.to_input())

    @app.post("/claims/{claim_id}/submit")
    def resubmit_claim(
        claim_id: str, payload: ClaimPayload | None = None, actor: Actor = Depends(current_actor)
    ):
        return portal.claims.resubmit(actor, claim_id, payload.to_input() if payload else None)

    @app.get("/claims/mine")
    def my_claims(actor: Actor = Depends(current_actor)):
        return portal.claims.my_claims(actor)

    @app.get("/claims/export.csv")
    def export_claims_csv(actor: Actor = Depends(current_actor)):
        claims = _visible_claims(actor)
        filename = export_filename("claims", datetime.now(timezone.utc), "csv")
        return Response(
            content=exporter.generate_csv(claims),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/claims/export.xlsx")
    def export_claims_xlsx(actor: Actor = Depends(current_actor)):
        filename = export_filename("claims", datetime.now(timezone.utc), "xlsx")
        path = exporter.generate_workbook(_visible_claims(actor), settings.export_root / filename)
        return FileResponse(
            path,
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            filename=filename,
        )

    def _readable_claim(actor: Actor, claim_id: str) -> dict[str, Any]:
        claim = portal.claims.get(claim_id)
        if actor.portal_role == PortalRole.EMPLOYEE.value and claim.get("employee_email") != actor.email:
            raise HTTPException(status_code=404, detail="Claim not found")
        return claim

    @app.get("/claims/{claim_id}")
    def get_claim(claim_id: str, actor: Actor = Depends(current_actor)):
        return _readable_claim(actor, claim_id)

    @app.get("/claims/{claim_id}/history")
    def claim_history(claim_id: str, actor: Actor = Depends(current_actor)):
        _readable_claim(actor, claim_id)
        return portal.approvals.claim_history(claim_id)

    def _visible_claims(actor: Actor) -> list[dict]:
        if actor.portal_role == PortalRole.EMPLOYEE.value:
            return portal.claims.my_claims(actor)
        return portal.store.claims.list(sort="-created_date")

    # Approvals

    @app.get("/approvals/pending")
    def pending_approvals(actor: Actor = Depends(current_actor)):
        return portal.approvals.pending_queue(actor)

    @app.get("/approvals/processed")
    def processed_approvals(actor: Actor = Depends(current_actor)):
        return portal.approvals.processed_claims(actor)

    @app.post("/approvals/{claim_id}/approve")
    def approve_claim(
        claim_id: str,
        payload: ActionPayload,
        x_session_id: str | None = Header(default=None),
        actor: Actor = Depends(current_actor),
    ):
        claim = portal.approvals.approve(actor, claim_id, payload.remarks, payload.expected_version)
        portal.log_critical(actor, x_session_id, "Approvals", "Approve Claim", claim.get("claim_number"))
        return claim

    @app.post("/approvals/{claim_id}/reject")
    def reject_claim(
        claim_id: str,
        payload: ActionPayload,
        x_session_id: str | None = Header(default=None),
        actor: Actor = Depends(current_actor),
    ):
        claim = portal.approvals.reject(actor, claim_id, payload.remarks, payload.expected_version)
        portal.log_critical(actor, x_session_id, "Approvals", "Reject Claim", claim.get("claim_number"))
        return claim

    @app.post("/approvals/{claim_id}/send-back")
    def send_back_claim(
        claim_id: str,
        payload: ActionPayload,
        x_session_id: str | None = Header(default=None),
        actor: Actor = Depends(current_actor),
    ):
        claim = portal.approvals.send_back(actor, claim_id, payload.remarks, payload.expected_version)
        portal.log_critical(actor, x_session_id, "Approvals", "Send Back Claim", claim.get("claim_number"))
        return claim

    # Finance

    @app.get("/finance/queue")
    def payment_queue(actor: Actor = Depends(current_actor)):
        return portal.finance.payment_queue(actor)

    @app.get("/finance/on-hold")
    def on_hold(actor: Actor = Depends(current_actor)):
        return portal.finance.on_hold_claims(actor)

    @app.get("/finance/paid")
    def paid_claims(actor: Actor = Depends(current_actor)):
        return portal.finance.paid_claims(actor)

    @app.post("/finance/{claim_id}/pay")
    def mark_paid(
        claim_id: str,
        payload: PaymentPayload,
        x_session_id: str | None = Header(default=None),
        actor: Actor = Depends(current_actor),
    ):
        claim = portal.finance.mark_paid(
            actor, claim_id, payload.payment_date, payload.payment_reference, payload.expected_version
        )
        portal.log_critical(actor, x_session_id, "Finance", "Mark Paid", claim.get("claim_number"))
        return claim

    @app.post("/finance/{claim_id}/hold")
    def put_on_hold(
        claim_id: str,
        payload: ActionPayload,
        x_session_id: str | None = Header(default=None),
        actor: Actor = Depends(current_actor),
    ):
        claim = portal.finance.put_on_hold(actor, claim_id, payload.remarks)
        portal.log_critical(actor, x_session_id, "Finance", "Put On Hold", claim.get("claim_number"))
        return claim

    @app.post("/finance/{claim_id}/release")
    def release_hold(
        claim_id: str,
        x_session_id: str | None = Header(default=None),
        actor: Actor = Depends(current_actor),
    ):
        claim = portal.finance.release_hold(actor, claim_id)
        portal.log_critical(actor, x_session_id, "Finance", "Release Hold", claim.get("claim_number"))
        return claim

    # Room bookings

    @app.post("/bookings", status_code=201)
    def submit_booking(payload: BookingPayload, actor: Actor = Depends(current_actor)):
        return portal.bookings.submit(actor, payload.to_input())

    @app.get("/bookings/pending")
    def pending_bookings(actor: Actor = Depends(current_actor)):
        return portal.bookings.pending_bookings(actor)

    @app.get("/bookings/mine")
    def my_bookings(actor: Actor = Depends(current_actor)):
        return portal.bookings.my_bookings(actor)

    @app.get("/rooms/{room_id}/schedule")
    def room_schedule(room_id: str, booking_date: date, actor: Actor = Depends(current_actor)):
        return portal.bookings.room_schedule(room_id, booking_date)

    @app.post("/bookings/{booking_id}/approve")
    def approve_booking(booking_id: str, actor: Actor = Depends(current_actor)):
        return portal.bookings.approve(actor, booking_id)

    @app.post("/bookings/{booking_id}/reject")
    def reject_booking(booking_id: str, payload: ReasonPayload, actor: Actor = Depends(current_actor)):
        return portal.bookings.reject(actor, booking_id, payload.reason)

    @app.post("/bookings/{booking_id}/send-back")
    def send_back_booking(booking_id: str, payload: ReasonPayload, actor: Actor = Depends(current_actor)):
        return portal.bookings.send_back(actor, booking_id, payload.reason)

    @app.post("/bookings/{booking_id}/cancel")
    def cancel_booking(booking_id: str, actor: Actor = Depends(current_actor)):
        return portal.bookings.cancel(actor, booking_id)

    @app.post("/bookings/{booking_id}/resubmit")
    def resubmit_booking(booking_id: str, payload: BookingPayload, actor: Actor = Depends(current_actor)):
        return portal.bookings.resubmit(actor, booking_id, payload.to_input())

    @app.get("/housekeeping/tasks")
    def housekeeping_tasks(on: date | None = None, actor: Actor = Depends(current_actor)):
        return portal.bookings.housekeeping_tasks(actor, on)

    # Master data

    @app.get("/categories")
    def list_categories(active_only: bool = True, actor: Actor = Depends(current_actor)):
        return portal.master_data.list_categories(active_only)

    @app.post("/admin/categories", status_code=201)
    def create_category(payload: CategoryPayload, actor: Actor = Depends(current_actor)):
        return portal.master_data.create_category(actor, payload.model_dump(exclude_unset=True))

    @app.put("/admin/categories/{category_id}")
    def update_category(category_id: str, payload: CategoryPayload, actor: Actor = Depends(current_actor)):
        return portal.master_data.update_category(actor, category_id, payload.model_dump(exclude_unset=True))

    @app.delete("/admin/categories/{category_id}", status_code=204)
    def delete_category(category_id: str, actor: Actor = Depends(current_actor)):
        portal.master_data.delete_category(actor, category_id)
        return Response(status_code=204)

    @app.get("/rooms")
    def list_rooms(active_only: bool = True, actor: Actor = Depends(current_actor)):
        return portal.master_data.list_rooms(active_only)

    @app.post("/admin/rooms", status_code=201)
    def create_room(payload: RoomPayload, actor: Actor = Depends(current_actor)):
        return portal.master_data.create_room(actor, payload.model_dump(exclude_unset=True))

    @app.put("/admin/rooms/{room_id}")
    def update_room(room_id: str, payload: RoomPayload, actor: Actor = Depends(current_actor)):
        return portal.master_data.update_room(actor, room_id, payload.model_dump(exclude_unset=True))

    @app.delete("/admin/rooms/{room_id}", status_code=204)
    def delete_room(room_id: str, actor: Actor = Depends(current_actor)):
        portal.master_data.delete_room(actor, room_id)
        return Response(status_code=204)

    @app.get("/admin/users")
    def list_users(actor: Actor = Depends(current_actor)):
        return portal.master_data.list_users(actor)

    @app.post("/admin/users", status_code=201)
    def create_user(payload: UserPayload, actor: Actor = Depends(current_actor)):
        return portal.master_data.create_user(actor, payload.model_dump(exclude_unset=True))

    @app.put("/admin/users/{user_id}")
    def update_user(user_id: str, payload: UserPayload, actor: Actor = Depends(current_actor)):
        return portal.master_data.update_user(actor, user_id, payload.model_dump(exclude_unset=True))

    @app.delete("/admin/users/{user_id}", status_code=204)
    def delete_user(user_id: str, actor: Actor = Depends(current_actor)):
        portal.master_data.delete_user(actor, user_id)
        return Response(status_code=204)

    # Notifications

    @app.get("/notifications")
    def list_notifications(unread_only: bool = False, actor: Actor = Depends(current_actor)):
        return portal.notifications.for_recipient(actor, unread_only=unread_only)

    @app.get("/notifications/unread-count")
    def unread_count(actor: Actor = Depends(current_actor)):
        return {"unread": portal.notifications.unread_count(actor)}

    @app.post("/notifications/{notification_id}/read")
    def mark_read(notification_id: str, actor: Actor = Depends(current_actor)):
        return portal.notifications.mark_read(actor, notification_id)

    @app.post("/notifications/read-all")
    def mark_all_read(actor: Actor = Depends(current_actor)):
        return {"marked": portal.notifications.mark_all_read(actor)}

    # Workflow configuration

    @app.get("/workflows/{workflow_type}")
    def get_workflow(workflow_type: str, actor: Actor = Depends(current_actor)):
        try:
            stages = portal.workflow_stages(workflow_type)
        except ValueError:
            raise HTTPException(status_code=404, detail="Workflow not found") from None
        return {"workflow_type": workflow_type, "stages": stages}

    @app.put("/workflows/{workflow_type}")
    def save_workflow(workflow_type: str, payload: WorkflowConfigPayload, actor: Actor = Depends(current_actor)):
        return portal.save_workflow_config(actor, workflow_type, [s.model_dump() for s in payload.stages])

    # Documents

    @app.post("/documents")
    async def upload_documents(
        files: list[UploadFile] = File(...),
        owner: str = Form(""),
        actor: Actor = Depends(current_actor),
    ):
        uploaded = []
        for file in files:
            content = await file.read()
            file_url = storage.store_upload(owner or actor.email, file.filename or "upload.bin", content)
            uploaded.append(
                {
                    "name": file.filename,
                    "file_url": file_url,
                    "content_type": file.content_type,
                    "size": len(content),
                }
            )
        return {"uploaded": uploaded}

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
