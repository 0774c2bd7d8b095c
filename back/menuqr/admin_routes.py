from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from . import billing_service, models, security
from .billing_jobs import run_billing_cycle
from .billing_service import BillingError, to_money
from .db import get_session
from .models import AdminUser, Restaurant, RestaurantStatus, SubscriptionPlan, utcnow
from .permissions import Permissions, PermissionService
from .security import PermissionChecker
from .settings import settings

router = APIRouter(prefix="/admin", tags=["admin"])


def _billing_http_error(e: BillingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/me")
def read_admin_me(
    admin: Annotated[AdminUser, Depends(security.get_current_admin)],
) -> dict:
    return {
        "id": admin.id,
        "name": admin.name,
        "email": admin.email,
        "role": admin.role.value,
        "permissions": sorted(PermissionService.get_admin_permissions(admin)),
    }


# ============ PLANS ============

@router.get("/plans")
def list_plans(
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PLANS_READ))],
    include_inactive: bool = False,
    session: Session = Depends(get_session),
) -> list[SubscriptionPlan]:
    statement = select(SubscriptionPlan).order_by(SubscriptionPlan.price)
    if not include_inactive:
        statement = statement.where(SubscriptionPlan.is_active == True)
    return session.exec(statement).all()


@router.post("/plans", status_code=201)
def create_plan(
    plan_create: models.SubscriptionPlanCreate,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PLANS_MANAGE))],
    session: Session = Depends(get_session),
) -> SubscriptionPlan:
    if plan_create.price < 0:
        raise HTTPException(status_code=400, detail="Price cannot be negative")
    if plan_create.duration < 1:
        raise HTTPException(status_code=400, detail="Duration must be at least one day")
    existing = session.exec(
        select(SubscriptionPlan).where(SubscriptionPlan.name == plan_create.name)
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="A plan with this name already exists")

    plan = SubscriptionPlan(
        name=plan_create.name,
        price=to_money(plan_create.price),
        currency=plan_create.currency or settings.default_currency,
        features=plan_create.features,
        max_menu_items=plan_create.max_menu_items,
        duration=plan_create.duration,
    )
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


# ============ RESTAURANTS ============

@router.get("/restaurants")
def list_restaurants(
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.RESTAURANTS_READ))],
    status: RestaurantStatus | None = None,
    session: Session = Depends(get_session),
) -> list[dict]:
    statement = select(Restaurant).order_by(Restaurant.id)
    if status:
        statement = statement.where(Restaurant.status == status)
    return [billing_service.account_summary(session, r) for r in session.exec(statement).all()]


@router.post("/restaurants", status_code=201)
def onboard_restaurant(
    restaurant_create: models.RestaurantCreate,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.RESTAURANTS_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    """Create a restaurant and its owner login. The first plan period is not charged."""
    slug = restaurant_create.slug.strip().lower()
    if not slug:
        raise HTTPException(status_code=400, detail="Slug is required")
    if session.exec(select(Restaurant).where(Restaurant.slug == slug)).first():
        raise HTTPException(status_code=400, detail="Slug already in use")
    if session.exec(select(models.User).where(models.User.email == restaurant_create.owner_email)).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    plan = None
    if restaurant_create.plan_id is not None:
        plan = session.get(SubscriptionPlan, restaurant_create.plan_id)
        if not plan or not plan.is_active:
            raise HTTPException(status_code=404, detail="Plan not found")

    now = utcnow()
    restaurant = Restaurant(
        name=restaurant_create.name,
        slug=slug,
        owner_name=restaurant_create.owner_name,
        owner_email=restaurant_create.owner_email,
        owner_phone=restaurant_create.owner_phone,
        address=restaurant_create.address,
        city=restaurant_create.city,
        plan_id=plan.id if plan else None,
    )
    if plan:
        restaurant.plan_expiry_date = now + timedelta(days=plan.duration)
        restaurant.next_billing_date = restaurant.plan_expiry_date
    session.add(restaurant)
    session.flush()

    session.add(models.User(
        email=restaurant_create.owner_email,
        hashed_password=security.get_password_hash(restaurant_create.owner_password),
        full_name=restaurant_create.owner_name,
        restaurant_id=restaurant.id,
    ))
    session.commit()
    session.refresh(restaurant)
    return billing_service.account_summary(session, restaurant, now)


@router.put("/restaurants/{restaurant_id}/status")
def update_restaurant_status(
    restaurant_id: int,
    status_update: models.RestaurantStatusUpdate,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.RESTAURANTS_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    restaurant = session.get(Restaurant, restaurant_id)
    if not restaurant:
        raise HTTPException(status_code=404, detail="Restaurant not found")

    restaurant.status = status_update.status
    if status_update.status == RestaurantStatus.active:
        restaurant.suspension_reason = None
    else:
        restaurant.suspension_reason = status_update.reason or restaurant.suspension_reason
    session.add(restaurant)
    session.commit()
    session.refresh(restaurant)
    return billing_service.account_summary(session, restaurant)


@router.get("/restaurants/{restaurant_id}/payment-history")
def get_restaurant_payment_history(
    restaurant_id: int,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PAYMENTS_READ))],
    session: Session = Depends(get_session),
) -> list[models.PaymentHistory]:
    if not session.get(Restaurant, restaurant_id):
        raise HTTPException(status_code=404, detail="Restaurant not found")
    return billing_service.list_payment_history(session, restaurant_id)


# ============ PAYMENTS ============

@router.get("/payment-requests")
def list_payment_requests(
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PAYMENTS_READ))],
    status: models.PaymentRequestStatus | None = Query(default=models.PaymentRequestStatus.pending),
    session: Session = Depends(get_session),
) -> list[dict]:
    statement = (
        select(models.PaymentRequest, Restaurant)
        .join(Restaurant, models.PaymentRequest.restaurant_id == Restaurant.id)
        .order_by(models.PaymentRequest.created_at.desc(), models.PaymentRequest.id.desc())
    )
    if status:
        statement = statement.where(models.PaymentRequest.status == status)

    result = []
    for payment_request, restaurant in session.exec(statement).all():
        data = payment_request.model_dump()
        data["restaurant_name"] = restaurant.name
        data["restaurant_slug"] = restaurant.slug
        data["current_balance"] = to_money(restaurant.account_balance)
        result.append(data)
    return result


@router.post("/verify-payment")
def verify_payment(
    verification: models.PaymentVerification,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PAYMENTS_VERIFY))],
    session: Session = Depends(get_session),
) -> dict:
    try:
        payment_request, new_balance = billing_service.verify_payment_request(
            session,
            verification.payment_request_id,
            verification.action,
            verification.admin_notes,
            admin.id,
        )
    except BillingError as e:
        raise _billing_http_error(e)

    return {
        "success": True,
        "message": f"Payment {verification.action}d successfully",
        "payment_request": payment_request,
        "new_balance": new_balance,
    }


# ============ PLAN UPGRADES ============

@router.get("/plan-upgrades")
def list_plan_upgrades(
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PLANS_READ))],
    restaurant_id: int,
    session: Session = Depends(get_session),
) -> list[models.PlanUpgrade]:
    return billing_service.list_plan_upgrades(session, restaurant_id)


@router.post("/plan-upgrades")
def create_plan_upgrade(
    upgrade_create: models.PlanUpgradeCreate,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.PLANS_UPGRADE))],
    session: Session = Depends(get_session),
) -> dict:
    try:
        upgrade, new_balance = billing_service.upgrade_plan(
            session, upgrade_create.restaurant_id, upgrade_create.new_plan_id
        )
    except BillingError as e:
        raise _billing_http_error(e)

    return {
        "success": True,
        "message": "Plan upgraded successfully",
        "upgrade": upgrade,
        "new_balance": new_balance,
    }


# ============ BILLING ============

@router.post("/billing/run")
def run_billing(
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.BILLING_RUN))],
    session: Session = Depends(get_session),
) -> dict:
    """Run the billing cycle now (notifications are left to the scheduler)."""
    report = run_billing_cycle(session)
    return {
        **report.summary(),
        "results": report.billing_results,
        "expired": report.expired,
        "low_balance": report.low_balance,
    }


@router.post("/billing/restaurants/{restaurant_id}")
def bill_restaurant_now(
    restaurant_id: int,
    admin: Annotated[AdminUser, Depends(PermissionChecker(Permissions.BILLING_RUN))],
    session: Session = Depends(get_session),
) -> billing_service.BillingResult:
    try:
        return billing_service.bill_single_restaurant(session, restaurant_id)
    except BillingError as e:
        raise _billing_http_error(e)
