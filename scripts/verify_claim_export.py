from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

from backend.services.export import ClaimExportService, read_cells
from expense_portal.config import Settings, configure_logging
from expense_portal.db import open_store
from expense_portal.models import Actor, ClaimInput
from expense_portal.notifications import LoggingMailer
from expense_portal.portal import Portal

USERS = {
    "employee": Actor("asha@example.com", "Asha Rao", "employee", "Operations"),
    "junior_admin": Actor("jai@example.com", "Jai Menon", "junior_admin", "Administration"),
    "manager": Actor("mira@example.com", "Mira Shah", "manager", "Operations"),
    "admin_head": Actor("arun@example.com", "Arun Iyer", "admin_head", "Administration"),
    "finance": Actor("farah@example.com", "Farah Khan", "finance", "Finance"),
}


def build_demo_portal() -> Portal:
    """An in-memory portal with one user per role and a single expense category."""
    store = open_store()
    with store.transaction():
        for user in USERS.values():
            store.users.create(
                {
                    "email": user.email,
                    "full_name": user.full_name,
                    "portal_role": user.portal_role,
                    "department": user.department,
                }
            )
        store.categories.create({"title": "Local Travel", "category_name": "Travel", "is_active": True})
    return Portal(store, Settings(_env_file=None), LoggingMailer())


def main() -> int:
    configure_logging("WARNING")
    portal = build_demo_portal()
    category = portal.store.categories.list()[0]

    claim = portal.claims.submit(
        USERS["employee"],
        ClaimInput(
            category_id=category["id"],
            expense_date=date(2026, 2, 3),
            purpose="Client visit",
            bill_number="INV-204",
            bill_date=date(2026, 2, 3),
            amount=Decimal("5000"),
            payment_mode="upi",
        ),
    )
    for role in ("junior_admin", "manager", "admin_head"):
        claim = portal.approvals.approve(USERS[role], claim["id"], "Looks fine")
    claim = portal.finance.mark_paid(USERS["finance"], claim["id"], date(2026, 2, 20), "TXN123")

    history = portal.approvals.claim_history(claim["id"])
    if claim["status"] != "paid" or len(history) != 4:
        print(f"Verification failed. Claim ended in {claim['status']} with {len(history)} log rows")
        return 1

    service = ClaimExportService()
    output_path = Path("artifacts/sample_claim_export.xlsx")
    service.generate_workbook([claim], output_path)

    columns = service.mapping["columns"]
    start_row = service.mapping["workbook"]["start_row"]
    values = read_cells(output_path, [f"{column}{start_row}" for column in columns], service.sheet_name)
    missing = [cell for cell, value in values.items() if value in (None, "")]

    if missing:
        print("Verification failed. Missing values in:", ", ".join(missing))
        return 1

    print(f"Verification passed. Export generated at {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
