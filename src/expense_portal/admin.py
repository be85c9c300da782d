"""Admin maintenance of the master data claims and bookings depend on.

Categories, conference rooms and portal users are plain entity records. Only
the ``admin`` portal role may change them; anyone signed in may read the
category and room lists.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

from expense_portal.errors import InvalidTransitionError, NotEligibleError, ValidationError
from expense_portal.models import Actor
from expense_portal.repositories import EntityRepository, EntityStore, Record
from expense_portal.statuses import SLOT_BLOCKING_BOOKING_STATUSES, PortalRole

logger = logging.getLogger(__name__)

CATEGORY_FIELDS = (
    "category_name",
    "title",
    "claim_type",
    "bill_required",
    "description",
    "policy_limit",
    "is_sales_promotion",
    "is_torch_bearer",
    "is_active",
    "sort_order",
)
ROOM_FIELDS = ("room_code", "room_name", "seating_capacity", "floor", "location", "category", "amenities", "is_active")
USER_FIELDS = ("email", "full_name", "portal_role", "department", "designation")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _check_category(fields: Mapping[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    for name in ("category_name", "title"):
        if _blank(fields.get(name)):
            errors[name] = "Required"
    limit = fields.get("policy_limit")
    if not _blank(limit):
        try:
            if Decimal(str(limit)) < 0:
                errors["policy_limit"] = "Policy limit cannot be negative"
        except InvalidOperation:
            errors["policy_limit"] = "Policy limit must be a number"
    return errors


def _check_room(fields: Mapping[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if _blank(fields.get("room_name")):
        errors["room_name"] = "Required"
    capacity = fields.get("seating_capacity")
    if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 1:
        errors["seating_capacity"] = "Seating capacity must be a positive whole number"
    return errors


def _check_user(fields: Mapping[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    email = fields.get("email") or ""
    if "@" not in email:
        errors["email"] = "A valid email address is required"
    if fields.get("portal_role") not in {role.value for role in PortalRole}:
        errors["portal_role"] = f"Must be one of {sorted(role.value for role in PortalRole)}"
    return errors


class MasterDataService:
    def __init__(self, store: EntityStore):
        self.store = store

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if actor.portal_role != PortalRole.ADMIN.value:
            raise NotEligibleError("Only admins can change master data")

    def _save(
        self,
        actor: Actor,
        repository: EntityRepository,
        allowed: tuple[str, ...],
        check: Callable[[Mapping[str, Any]], dict[str, str]],
        changes: Mapping[str, Any],
        entity_id: str | None = None,
    ) -> Record:
        self._require_admin(actor)
        fields = {key: value for key, value in changes.items() if key in allowed}
        current = repository.require(entity_id) if entity_id else {}
        errors = check({**current, **fields})
        if errors:
            raise ValidationError(errors)

        if entity_id:
            record = repository.update(entity_id, fields, expected_version=current["version"])
        else:
            record = repository.create({"is_active": True, **fields} if "is_active" in allowed else fields)
        logger.info(
            "%s %s %s by %s", repository.collection, record["id"], "updated" if entity_id else "created", actor.email
        )
        return record

    def _delete(self, actor: Actor, repository: EntityRepository, entity_id: str) -> None:
        self._require_admin(actor)
        repository.delete(entity_id)
        logger.info("%s %s deleted by %s", repository.collection, entity_id, actor.email)

    # Categories

    def list_categories(self, active_only: bool = False) -> list[Record]:
        criteria = {"is_active": True} if active_only else {}
        return self.store.categories.filter(criteria, sort="sort_order")

    def create_category(self, actor: Actor, fields: Mapping[str, Any]) -> Record:
        return self._save(actor, self.store.categories, CATEGORY_FIELDS, _check_category, fields)

    def update_category(self, actor: Actor, category_id: str, fields: Mapping[str, Any]) -> Record:
        return self._save(actor, self.store.categories, CATEGORY_FIELDS, _check_category, fields, category_id)

    def delete_category(self, actor: Actor, category_id: str) -> None:
        self._delete(actor, self.store.categories, category_id)

    # Conference rooms

    def list_rooms(self, active_only: bool = False) -> list[Record]:
        criteria = {"is_active": True} if active_only else {}
        return self.store.rooms.filter(criteria, sort="room_name")

    def create_room(self, actor: Actor, fields: Mapping[str, Any]) -> Record:
        return self._save(actor, self.store.rooms, ROOM_FIELDS, _check_room, fields)

    def update_room(self, actor: Actor, room_id: str, fields: Mapping[str, Any]) -> Record:
        return self._save(actor, self.store.rooms, ROOM_FIELDS, _check_room, fields, room_id)

    def delete_room(self, actor: Actor, room_id: str) -> None:
        self._require_admin(actor)
        held = self.store.bookings.filter({"room_id": room_id, "status": sorted(SLOT_BLOCKING_BOOKING_STATUSES)})
        if held:
            raise InvalidTransitionError(f"Room has {len(held)} pending or approved booking(s); deactivate it instead")
        self._delete(actor, self.store.rooms, room_id)

    # Users

    def list_users(self, actor: Actor) -> list[Record]:
        self._require_admin(actor)
        return self.store.users.list(sort="email")

    def _check_unique_email(self, email: str, user_id: str | None = None) -> None:
        for user in self.store.users.filter({"email": email}):
            if user["id"] != user_id:
                raise ValidationError({"email": f"A user with email {email} already exists"})

    def create_user(self, actor: Actor, fields: Mapping[str, Any]) -> Record:
        fields = {"portal_role": PortalRole.EMPLOYEE.value, **fields}
        if fields.get("email"):
            fields["email"] = fields["email"].strip()
            self._check_unique_email(fields["email"])
        return self._save(actor, self.store.users, USER_FIELDS, _check_user, fields)

    def update_user(self, actor: Actor, user_id: str, fields: Mapping[str, Any]) -> Record:
        fields = dict(fields)
        if fields.get("email"):
            fields["email"] = fields["email"].strip()
            self._check_unique_email(fields["email"], user_id)
        return self._save(actor, self.store.users, USER_FIELDS, _check_user, fields, user_id)

    def delete_user(self, actor: Actor, user_id: str) -> None:
        self._require_admin(actor)
        if self.store.users.require(user_id).get("email") == actor.email:
            raise InvalidTransitionError("Admins cannot delete their own account")
        self._delete(actor, self.store.users, user_id)

    def ensure_admin(self, email: str, full_name: str = "Portal Admin") -> Record:
        """Create the first admin account if no user has this email yet."""
        existing = self.store.users.filter({"email": email}, limit=1)
        if existing:
            return existing[0]
        user = self.store.users.create(
            {"email": email, "full_name": full_name, "portal_role": PortalRole.ADMIN.value}
        )
        logger.info("Bootstrap admin %s created", email)
        return user
