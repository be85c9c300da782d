import ast
from datetime import date, datetime, timezone
from pathlib import Path
import tempfile
import unittest

from expense_portal.core import (
    SecureStorage,
    duration_minutes,
    generate_booking_number,
    generate_claim_number,
    sla_date_for,
    sla_status,
    to_base36,
)


class CoreHelpersTestCase(unittest.TestCase):
    def test_claim_and_booking_numbers(self):
        now = datetime(2026, 3, 5, 9, 30, 0, 456000, tzinfo=timezone.utc)
        millis = int(now.timestamp() * 1000)

        self.assertEqual(generate_claim_number(now), f"CLM-{to_base36(millis)}")
        self.assertEqual(generate_booking_number(now), f"RB-2026-03-05-{str(millis)[-6:]}")
        self.assertEqual(to_base36(35), "Z")
        self.assertEqual(to_base36(36), "10")

    def test_sla_buckets(self):
        self.assertEqual(sla_date_for(date(2026, 1, 1)), date(2026, 2, 15))
        on = date(2026, 2, 1)
        self.assertEqual(sla_status("2026-02-04", on), "urgent")
        self.assertEqual(sla_status("2026-01-20", on), "urgent")
        self.assertEqual(sla_status("2026-02-11", on), "warning")
        self.assertEqual(sla_status("2026-02-12", on), "normal")
        self.assertEqual(sla_status(None, on), "normal")

    def test_duration_minutes(self):
        self.assertEqual(duration_minutes("09:15", "10:45"), 90)
        with self.assertRaises(ValueError):
            duration_minutes("24:00", "25:00")

    def test_secure_storage_keeps_uploads_inside_owner_dir(self):
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp)
            storage = SecureStorage(base_dir=base)
            upload = storage.upload_path("emp@example.com", "../../unsafe.png")
            self.assertTrue(str(upload).startswith(str((base / "uploads" / "emp_example_com").resolve())))
            self.assertEqual(upload.name, "unsafe.png")

            url = storage.store_upload("emp@example.com", "bill.pdf", b"data")
            self.assertTrue(url.startswith("uploads/emp_example_com/"))
            self.assertEqual((base / url).read_bytes(), b"data")


LEGACY_TYPING_NAMES = {"Optional", "Union", "Dict", "List", "Tuple", "Set", "FrozenSet"}


def test_sources_use_builtin_generics():
    root = Path(__file__).resolve().parents[1]
    sources = sorted((root / "src" / "expense_portal").glob("*.py")) + sorted((root / "backend").rglob("*.py"))
    assert sources
    for path in sources:
        tree = ast.parse(path.read_text(encoding="utf-8"))
        for node in ast.walk(tree):
            if isinstance(node, ast.ImportFrom) and node.module == "typing":
                legacy = {alias.name for alias in node.names} & LEGACY_TYPING_NAMES
                assert not legacy, f"{path.name} imports {sorted(legacy)} from typing"
