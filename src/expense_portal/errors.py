from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Base class for errors raised by the portal services."""


class ValidationError(PortalError, ValueError):
    """Raised when input fails validation before any store call is made."""

    def __init__(self, errors: dict[str, str]):
        self.errors = dict(errors)
        summary = "; ".join(f"{field}: {message}" for field, message in sorted(self.errors.items()))
        super().__init__(f"Validation failed: {summary}")


class RecordNotFoundError(PortalError, LookupError):
    def __init__(self, collection: str, entity_id: Any):
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(f"{collection} {entity_id} not found")


class NotEligibleError(PortalError, PermissionError):
    """Raised when the acting role may not perform the requested action."""


class InvalidTransitionError(PortalError, ValueError):
    """Raised when a record is not in a state the requested action accepts."""


class StaleRecordError(PortalError):
    """Raised when a record changed after it was read (optimistic lock failure)."""

    def __init__(self, collection: str, entity_id: Any, expected_version: int | None):
        self.collection = collection
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{collection} {entity_id} was modified concurrently (expected version {expected_version})"
        )


class BookingConflictError(PortalError):
    def __init__(self, conflicts: list[dict[str, Any]]):
        self.conflicts = conflicts
        super().__init__(f"Conflict detected with {len(conflicts)} existing booking(s)")


class AuthenticationError(PortalError):
    """Raised when the current user cannot be resolved."""


class AppendOnlyError(PortalError):
    """Raised when an append-only collection is asked to update or delete."""
