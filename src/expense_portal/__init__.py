from .db import open_store
from .errors import (
    AuthenticationError,
    BookingConflictError,
    InvalidTransitionError,
    NotEligibleError,
    PortalError,
    RecordNotFoundError,
    StaleRecordError,
    ValidationError,
)
from .models import Actor, Attendee, BookingInput, ClaimInput
from .portal import Portal
from .repositories import EntityRepository, EntityStore
from .workflow import WorkflowResolver, WorkflowStage

__all__ = [
    "Actor",
    "Attendee",
    "AuthenticationError",
    "BookingConflictError",
    "BookingInput",
    "ClaimInput",
    "EntityRepository",
    "EntityStore",
    "InvalidTransitionError",
    "NotEligibleError",
    "Portal",
    "PortalError",
    "RecordNotFoundError",
    "StaleRecordError",
    "ValidationError",
    "WorkflowResolver",
    "WorkflowStage",
    "open_store",
]
