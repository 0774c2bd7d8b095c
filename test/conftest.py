"""
Shared fixtures: an in-memory SQLite database per test and a TestClient
whose requests share the test's session.
"""

import os

# Must be set before menuqr is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["BILLING_SCHEDULER_ENABLED"] = "false"
os.environ["SMTP_USER"] = ""
os.environ["SMTP_PASSWORD"] = ""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from menuqr import models, security
from menuqr.db import get_session
from menuqr.main import app
from menuqr.models import (
    AdminRole,
    AdminUser,
    MenuCategory,
    MenuItem,
    QRCodeCreate,
    Restaurant,
    RestaurantStatus,
    StaffRole,
    SubscriptionPlan,
    User,
)
from menuqr.qr_service import create_qr_code, encode_table_param
from menuqr.settings import settings

# Fixed clock for service tests
NOW = datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)

OWNER_PASSWORD = "owner-pass-123"
ADMIN_PASSWORD = "admin-pass-123"


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setattr(settings, "redis_url", "")
    monkeypatch.setattr(settings, "smtp_user", "")
    monkeypatch.setattr(settings, "smtp_password", "")
    monkeypatch.setattr(settings, "public_base_url", "https://menuqr.test")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(session):
    def get_session_override():
        yield session

    app.dependency_overrides[get_session] = get_session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============ PLANS & RESTAURANTS ============

@pytest.fixture
def make_plan(session):
    def _make_plan(name="Basic", price="1500.00", max_menu_items=None, is_active=True, duration=30):
        plan = SubscriptionPlan(
            name=name,
            price=Decimal(price),
            currency="PKR",
            features=[f"{name} features"],
            max_menu_items=max_menu_items,
            duration=duration,
            is_active=is_active,
        )
        session.add(plan)
        session.commit()
        session.refresh(plan)
        return plan
    return _make_plan


@pytest.fixture
def basic_plan(make_plan):
    return make_plan("Basic", "1500.00")


@pytest.fixture
def premium_plan(make_plan):
    return make_plan("Premium", "3500.00")


@pytest.fixture
def make_restaurant(session):
    counter = {"n": 0}

    def _make_restaurant(
        plan=None,
        balance="5000.00",
        status=RestaurantStatus.active,
        plan_expiry_date=None,
        next_billing_date=None,
        name=None,
        slug=None,
    ):
        counter["n"] += 1
        n = counter["n"]
        restaurant = Restaurant(
            name=name or f"Restaurant {n}",
            slug=slug or f"restaurant-{n}",
            owner_name=f"Owner {n}",
            owner_email=f"owner{n}@example.com",
            plan_id=plan.id if plan else None,
            status=status,
            account_balance=Decimal(balance),
            plan_expiry_date=plan_expiry_date,
            next_billing_date=next_billing_date,
        )
        session.add(restaurant)
        session.commit()
        session.refresh(restaurant)
        return restaurant
    return _make_restaurant


@pytest.fixture
def restaurant(make_restaurant, basic_plan):
    """Active Basic-plan restaurant, 5000 PKR balance, plan valid for 15 more days."""
    expiry = models.utcnow() + timedelta(days=15)
    return make_restaurant(
        plan=basic_plan,
        name="Karachi Grill",
        slug="karachi-grill",
        plan_expiry_date=expiry,
        next_billing_date=expiry,
    )


# ============ USERS & TOKENS ============

@pytest.fixture
def owner(session, restaurant):
    user = User(
        email="owner@karachigrill.pk",
        hashed_password=security.get_password_hash(OWNER_PASSWORD),
        full_name="Ayesha Khan",
        restaurant_id=restaurant.id,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def vendor_headers_for(user: User) -> dict:
    token = security.create_access_token(
        data={"sub": user.email, "scope": security.VENDOR_SCOPE, "restaurant_id": user.restaurant_id},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def vendor_headers(owner):
    return vendor_headers_for(owner)


@pytest.fixture
def make_staff(session, restaurant):
    def _make_staff(role=StaffRole.chef, email=None, is_active=True):
        user = User(
            email=email or f"{role.value}@karachigrill.pk",
            hashed_password=security.get_password_hash(OWNER_PASSWORD),
            full_name=f"{role.value} user",
            role=role,
            is_active=is_active,
            restaurant_id=restaurant.id,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    return _make_staff


@pytest.fixture
def make_admin(session):
    def _make_admin(role=AdminRole.super_admin, email=None):
        admin = AdminUser(
            name=f"{role.value} user",
            email=email or f"{role.value}@menuqr.pk",
            hashed_password=security.get_password_hash(ADMIN_PASSWORD),
            role=role,
        )
        session.add(admin)
        session.commit()
        session.refresh(admin)
        return admin
    return _make_admin


def admin_headers_for(admin: AdminUser) -> dict:
    token = security.create_access_token(
        data={"sub": admin.email, "scope": security.ADMIN_SCOPE},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin(make_admin):
    return make_admin(AdminRole.super_admin)


@pytest.fixture
def admin_headers(admin):
    return admin_headers_for(admin)


# ============ MENU & TABLES ============

@pytest.fixture
def menu(session, restaurant):
    """Two categories with priced items; the lassi is unavailable."""
    mains = MenuCategory(restaurant_id=restaurant.id, name="Mains", sort_order=1)
    drinks = MenuCategory(restaurant_id=restaurant.id, name="Drinks", sort_order=2)
    session.add(mains)
    session.add(drinks)
    session.commit()

    items = {
        "biryani": MenuItem(
            restaurant_id=restaurant.id, category_id=mains.id, name="Chicken Biryani",
            price=Decimal("450.00"), preparation_time=20,
        ),
        "karahi": MenuItem(
            restaurant_id=restaurant.id, category_id=mains.id, name="Mutton Karahi",
            price=Decimal("1200.00"), preparation_time=30,
        ),
        "chai": MenuItem(
            restaurant_id=restaurant.id, category_id=drinks.id, name="Doodh Patti",
            price=Decimal("80.00"),
        ),
        "lassi": MenuItem(
            restaurant_id=restaurant.id, category_id=drinks.id, name="Sweet Lassi",
            price=Decimal("150.00"), is_available=False,
        ),
    }
    for item in items.values():
        session.add(item)
    session.commit()
    for item in items.values():
        session.refresh(item)
    return items


@pytest.fixture
def table_qr(session, restaurant):
    """Active QR code for table 5."""
    return create_qr_code(session, restaurant, QRCodeCreate(table_number="5"))


@pytest.fixture
def encoded_table(restaurant, table_qr):
    return encode_table_param(restaurant.id, "5")
