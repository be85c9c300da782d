from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Mapping
from uuid import uuid4

from expense_portal.core import utc_now
from expense_portal.errors import AppendOnlyError, RecordNotFoundError, StaleRecordError

Record = dict[str, Any]

STORE_FIELDS = frozenset({"id", "created_date", "updated_date", "version"})


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _normalize_value(item) for key, item in value.items()}
    return value


def _matches(record: Mapping[str, Any], criteria: Mapping[str, Any]) -> bool:
    for field, expected in criteria.items():
        actual = record.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in {_normalize_value(item) for item in expected}:
                return False
        elif actual != _normalize_value(expected):
            return False
    return True


def _sort_records(records: list[Record], sort: str | None) -> list[Record]:
    if not sort:
        return records
    descending = sort.startswith("-")
    field = sort.lstrip("-+")
    present = [r for r in records if r.get(field) is not None]
    missing = [r for r in records if r.get(field) is None]
    present.sort(key=lambda r: r[field], reverse=descending)
    return present + missing


class EntityRepository:
    """CRUD access to one collection of the entity store."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        collection: str,
        append_only: bool = False,
        store: EntityStore | None = None,
    ):
        self.conn = conn
        self.collection = collection
        self.append_only = append_only
        self.store = store

    @contextmanager
    def _writing(self) -> Iterator[None]:
        # Standalone writes commit on their own; inside a store transaction they join it.
        if self.store is None:
            yield
            return
        with self.store.transaction():
            yield

    def _row_to_record(self, row: sqlite3.Row) -> Record:
        record = json.loads(row["data"])
        record["id"] = row["id"]
        record["version"] = row["version"]
        record["created_date"] = row["created_date"]
        record["updated_date"] = row["updated_date"]
        return record

    def _all(self) -> list[Record]:
        rows = self.conn.execute(
            "SELECT * FROM entity WHERE collection = ? ORDER BY rowid",
            (self.collection,),
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def create(self, fields: Mapping[str, Any]) -> Record:
        data = {key: _normalize_value(value) for key, value in fields.items() if key not in STORE_FIELDS}
        entity_id = uuid4().hex
        now = utc_now()
        with self._writing():
            self.conn.execute(
                """
                INSERT INTO entity(id, collection, version, created_date, updated_date, data)
                VALUES (?, ?, 1, ?, ?, ?)
                """,
                (entity_id, self.collection, now, now, json.dumps(data)),
            )
        return {**data, "id": entity_id, "version": 1, "created_date": now, "updated_date": now}

    def get(self, entity_id: str) -> Record | None:
        row = self.conn.execute(
            "SELECT * FROM entity WHERE collection = ? AND id = ?",
            (self.collection, entity_id),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def require(self, entity_id: str) -> Record:
        record = self.get(entity_id)
        if record is None:
            raise RecordNotFoundError(self.collection, entity_id)
        return record

    def list(self, sort: str | None = None, limit: int | None = None) -> list[Record]:
        records = _sort_records(self._all(), sort)
        return records[:limit] if limit is not None else records

    def filter(
        self,
        criteria: Mapping[str, Any],
        sort: str | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        records = [record for record in self._all() if _matches(record, criteria)]
        records = _sort_records(records, sort)
        return records[:limit] if limit is not None else records

    def update(
        self,
        entity_id: str,
        fields: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> Record:
        if self.append_only:
            raise AppendOnlyError(f"{self.collection} records cannot be updated")

        with self._writing():
            current = self.require(entity_id)
            if expected_version is not None and current["version"] != expected_version:
                raise StaleRecordError(self.collection, entity_id, expected_version)

            data = {key: value for key, value in current.items() if key not in STORE_FIELDS}
            for key, value in fields.items():
                if key in STORE_FIELDS:
                    continue
                data[key] = _normalize_value(value)

            now = utc_now()
            cursor = self.conn.execute(
                """
                UPDATE entity SET data = ?, version = version + 1, updated_date = ?
                WHERE collection = ? AND id = ? AND version = ?
                """,
                (json.dumps(data), now, self.collection, entity_id, current["version"]),
            )
            if cursor.rowcount != 1:
                raise StaleRecordError(self.collection, entity_id, current["version"])
        return {
            **data,
            "id": entity_id,
            "version": current["version"] + 1,
            "created_date": current["created_date"],
            "updated_date": now,
        }

    def delete(self, entity_id: str) -> None:
        if self.append_only:
            raise AppendOnlyError(f"{self.collection} records cannot be deleted")
        with self._writing():
            cursor = self.conn.execute(
                "DELETE FROM entity WHERE collection = ? AND id = ?",
                (self.collection, entity_id),
            )
            if cursor.rowcount != 1:
                raise RecordNotFoundError(self.collection, entity_id)


class EntityStore:
    """All collections over one SQLite connection, with a single-writer transaction boundary."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._lock = threading.RLock()
        self._depth = 0
        self.claims = EntityRepository(conn, "Claim", store=self)
        self.bookings = EntityRepository(conn, "RoomBooking", store=self)
        self.notifications = EntityRepository(conn, "Notification", store=self)
        self.approval_logs = EntityRepository(conn, "ApprovalLog", append_only=True, store=self)
        self.categories = EntityRepository(conn, "Category", store=self)
        self.rooms = EntityRepository(conn, "ConferenceRoom", store=self)
        self.users = EntityRepository(conn, "User", store=self)
        self.workflow_configs = EntityRepository(conn, "WorkflowConfig", store=self)
        self.session_logs = EntityRepository(conn, "SessionLog", store=self)

    def collection(self, name: str) -> EntityRepository:
        for repository in (
            self.claims,
            self.bookings,
            self.notifications,
            self.approval_logs,
            self.categories,
            self.rooms,
            self.users,
            self.workflow_configs,
            self.session_logs,
        ):
            if repository.collection == name:
                return repository
        raise KeyError(f"Unknown collection: {name}")

    @contextmanager
    def transaction(self) -> Iterator["EntityStore"]:
        """Commit every write in the block together, or roll all of them back.

        Nested blocks join the outermost transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                with self.conn:
                    yield self
            finally:
                self._depth = 0
