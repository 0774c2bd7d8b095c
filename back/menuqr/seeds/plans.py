"""
Seed the default subscription plans and the first super admin.

Usage:
    python -m menuqr.seeds.plans
    python -m menuqr.seeds.plans --admin-email admin@menuqr.pk --admin-password secret
"""

import argparse
from decimal import Decimal

from sqlmodel import Session, select

from menuqr.db import create_db_and_tables, engine
from menuqr.models import AdminRole, AdminUser, SubscriptionPlan
from menuqr.security import get_password_hash


DEFAULT_PLANS = {
    "Basic": {
        "price": Decimal("1500.00"),
        "max_menu_items": 50,
        "features": [
            "QR code menu",
            "Up to 50 menu items",
            "Dine-in and takeaway orders",
        ],
    },
    "Premium": {
        "price": Decimal("3500.00"),
        "max_menu_items": 200,
        "features": [
            "Everything in Basic",
            "Up to 200 menu items",
            "Delivery orders",
            "Kitchen display",
        ],
    },
    "Enterprise": {
        "price": Decimal("7500.00"),
        "max_menu_items": None,
        "features": [
            "Everything in Premium",
            "Unlimited menu items",
            "Priority support",
        ],
    },
}


def seed_plans(session: Session) -> int:
    """Create missing default plans. Returns the number created."""
    created = 0
    for name, plan_data in DEFAULT_PLANS.items():
        existing = session.exec(select(SubscriptionPlan).where(SubscriptionPlan.name == name)).first()
        if existing:
            continue
        session.add(SubscriptionPlan(name=name, currency="PKR", duration=30, **plan_data))
        created += 1
    session.commit()
    return created


def seed_super_admin(session: Session, email: str, password: str, name: str = "Super Admin") -> bool:
    if session.exec(select(AdminUser).where(AdminUser.email == email)).first():
        return False
    session.add(AdminUser(
        name=name,
        email=email,
        hashed_password=get_password_hash(password),
        role=AdminRole.super_admin,
    ))
    session.commit()
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed subscription plans and a super admin")
    parser.add_argument("--admin-email", default=None, help="Create a super admin with this email")
    parser.add_argument("--admin-password", default=None, help="Password for the super admin")
    args = parser.parse_args()

    create_db_and_tables()
    with Session(engine) as session:
        print("Seeding subscription plans...")
        print(f"  Plans created: {seed_plans(session)}")
        if args.admin_email and args.admin_password:
            if seed_super_admin(session, args.admin_email, args.admin_password):
                print(f"  Super admin created: {args.admin_email}")
            else:
                print(f"  Super admin already exists: {args.admin_email}")
