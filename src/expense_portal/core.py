from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
import re
from uuid import uuid4


ISO_TS = "%Y-%m-%dT%H:%M:%S.%fZ"

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_TS)


def today() -> date:
    return datetime.now(timezone.utc).date()


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding needs a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def _epoch_millis(now: datetime) -> int:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int(now.timestamp() * 1000)


def generate_claim_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"CLM-{to_base36(_epoch_millis(now))}"


def generate_booking_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"RB-{now.strftime('%Y-%m-%d')}-{str(_epoch_millis(now))[-6:]}"


def sla_date_for(submitted_on: date, sla_days: int = 45) -> date:
    return submitted_on + timedelta(days=sla_days)


def sla_status(sla_date: str | None, on: date | None = None) -> str:
    """Urgency bucket used by the approval queues: urgent, warning or normal."""
    if not sla_date:
        return "normal"
    on = on or today()
    days_remaining = (date.fromisoformat(sla_date[:10]) - on).days
    if days_remaining <= 3:
        return "urgent"
    if days_remaining <= 10:
        return "warning"
    return "normal"


def parse_hhmm(value: str) -> tuple[int, int]:
    match = _HHMM.match(value or "")
    if not match:
        raise ValueError(f"Invalid HH:MM time: {value!r}")
    return int(match.group(1)), int(match.group(2))


def duration_minutes(start_time: str, end_time: str) -> int:
    start_h, start_m = parse_hhmm(start_time)
    end_h, end_m = parse_hhmm(end_time)
    return (end_h * 60 + end_m) - (start_h * 60 + start_m)


def slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.strip().lower()).strip("_")


@dataclass
class SecureStorage:
    """Stores uploaded claim and booking documents under ``base_dir/uploads``."""

    base_dir: Path

    def upload_path(self, owner_id: str, filename: str) -> Path:
        owner_safe = sanitize_identifier(owner_id)
        filename_safe = sanitize_filename(filename)
        owner_dir = self.base_dir / "uploads" / owner_safe
        owner_dir.mkdir(parents=True, exist_ok=True)
        path = owner_dir / filename_safe
        resolved = path.resolve()
        if not str(resolved).startswith(str(owner_dir.resolve())):
            raise ValueError("Unsafe upload path")
        return resolved

    def store_upload(self, owner_id: str, filename: str, content: bytes) -> str:
        """Write the document and return its file url (relative to ``base_dir``)."""
        destination = self.upload_path(owner_id, f"{uuid4().hex[:12]}-{sanitize_filename(filename)}")
        destination.write_bytes(content)
        return destination.relative_to(self.base_dir.resolve()).as_posix()


def sanitize_identifier(value: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", value)
    return safe.strip("_") or "owner"


def sanitize_filename(value: str) -> str:
    value = Path(value).name
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    return safe or "upload.bin"
