from datetime import date
from decimal import Decimal

from expense_portal.models import Actor, ClaimInput

USERS = [
    ("emp@example.com", "Asha Employee", "employee"),
    ("ja@example.com", "Jai Junior", "junior_admin"),
    ("mgr@example.com", "Mira Manager", "manager"),
    ("ah@example.com", "Arun Head", "admin_head"),
    ("cro@example.com", "Chitra CRO", "cro"),
    ("cfo@example.com", "Charan CFO", "cfo"),
    ("fin@example.com", "Farah Finance", "finance"),
    ("admin@example.com", "Ada Admin", "admin"),
]


def seed(store):
    ids = {}
    with store.transaction():
        for email, name, role in USERS:
            store.users.create(
                {"email": email, "full_name": name, "portal_role": role, "department": "Operations"}
            )
        ids["travel"] = store.categories.create(
            {"title": "Local Travel", "category_name": "Travel", "policy_limit": "10000", "is_active": True}
        )["id"]
        ids["promo"] = store.categories.create(
            {
                "title": "Dealer Meet",
                "category_name": "Sales Promotion",
                "is_sales_promotion": True,
                "is_active": True,
            }
        )["id"]
        ids["billed"] = store.categories.create(
            {"title": "Hotel", "category_name": "Lodging", "bill_required": True, "is_active": True}
        )["id"]
        ids["retired"] = store.categories.create({"title": "Fax", "is_active": False})["id"]
        ids["room"] = store.rooms.create(
            {"room_name": "Board Room", "seating_capacity": 10, "is_active": True}
        )["id"]
    return ids


def actor(email):
    for user_email, name, role in USERS:
        if user_email == email:
            return Actor(email=email, full_name=name, portal_role=role, department="Operations")
    raise KeyError(email)


def claim_input(category_id, amount="5000", **overrides):
    values = dict(
        category_id=category_id,
        expense_date=date(2026, 3, 2),
        purpose="Client visit",
        bill_number="B-100",
        bill_date=date(2026, 3, 2),
        amount=Decimal(amount),
        payment_mode="upi",
    )
    values.update(overrides)
    return ClaimInput(**values)
