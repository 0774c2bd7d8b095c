from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlmodel import select

from menuqr import billing_service
from menuqr.billing_service import (
    BillingError,
    InsufficientBalanceError,
    PaymentRequestError,
    PlanUpgradeError,
    RecordNotFoundError,
    add_months,
    as_utc,
    calculate_proration,
    days_remaining,
)
from menuqr.models import (
    LedgerEntryStatus,
    LedgerEntryType,
    PaymentHistory,
    PaymentMethod,
    PaymentRequestCreate,
    PaymentRequestStatus,
    PlanUpgrade,
    Restaurant,
    RestaurantStatus,
)

from conftest import NOW


def ledger(session, restaurant_id):
    return session.exec(
        select(PaymentHistory).where(PaymentHistory.restaurant_id == restaurant_id).order_by(PaymentHistory.id)
    ).all()


# ============ ARITHMETIC ============

def test_proration_charges_remaining_share_of_price_difference():
    assert calculate_proration(Decimal("1500"), Decimal("3500"), 15) == (Decimal("2000.00"), Decimal("1000.00"))


def test_proration_without_current_plan_uses_full_price():
    assert calculate_proration(None, Decimal("3000"), 10) == (Decimal("3000.00"), Decimal("1000.00"))


def test_proration_charges_at_least_one_day():
    _, pro_rated = calculate_proration(Decimal("1500"), Decimal("3000"), 0)
    assert pro_rated == Decimal("50.00")


def test_proration_downgrade_is_a_credit():
    assert calculate_proration(Decimal("3500"), Decimal("1500"), 30) == (Decimal("-2000.00"), Decimal("-2000.00"))


def test_proration_rounds_half_up_to_cents():
    _, pro_rated = calculate_proration(Decimal("1000"), Decimal("1100"), 7)
    assert pro_rated == Decimal("23.33")


def test_days_remaining():
    assert days_remaining(None, NOW) == 0
    assert days_remaining(NOW - timedelta(days=3), NOW) == 0
    assert days_remaining(NOW + timedelta(days=1, hours=12), NOW) == 2
    # Naive values read back from SQLite are treated as UTC
    assert days_remaining((NOW + timedelta(days=5)).replace(tzinfo=None), NOW) == 5


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc)) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 12, 15, tzinfo=timezone.utc)) == datetime(2027, 1, 15, tzinfo=timezone.utc)


# ============ PLAN UPGRADES ============

def test_upgrade_plan_debits_prorated_amount(session, make_restaurant, basic_plan, premium_plan):
    restaurant = make_restaurant(plan=basic_plan, plan_expiry_date=NOW + timedelta(days=15))

    upgrade, new_balance = billing_service.upgrade_plan(session, restaurant.id, premium_plan.id, NOW)

    assert new_balance == Decimal("4000.00")
    assert upgrade.from_plan_id == basic_plan.id
    assert upgrade.to_plan_id == premium_plan.id
    assert upgrade.price_difference == Decimal("2000.00")
    assert upgrade.pro_rated_amount == Decimal("1000.00")
    assert upgrade.status == "active"

    session.refresh(restaurant)
    assert restaurant.plan_id == premium_plan.id
    assert restaurant.account_balance == Decimal("4000.00")
    assert as_utc(restaurant.plan_expiry_date) == NOW + timedelta(days=30)

    (entry,) = ledger(session, restaurant.id)
    assert entry.type == LedgerEntryType.plan_upgrade
    assert entry.amount == Decimal("1000.00")
    assert entry.balance_before == Decimal("5000.00")
    assert entry.balance_after == Decimal("4000.00")
    assert entry.description == "Upgraded from Basic to Premium"


def test_upgrade_plan_from_no_plan(session, make_restaurant, premium_plan):
    restaurant = make_restaurant(plan=None, balance="10000.00")

    upgrade, new_balance = billing_service.upgrade_plan(session, restaurant.id, premium_plan.id, NOW)

    # No expiry means one day is charged
    assert upgrade.pro_rated_amount == Decimal("116.67")
    assert new_balance == Decimal("9883.33")
    (entry,) = ledger(session, restaurant.id)
    assert entry.description == "Upgraded from No Plan to Premium"


def test_upgrade_plan_with_insufficient_balance_writes_nothing(session, make_restaurant, basic_plan, premium_plan):
    restaurant = make_restaurant(plan=basic_plan, balance="500.00", plan_expiry_date=NOW + timedelta(days=15))

    with pytest.raises(InsufficientBalanceError) as exc_info:
        billing_service.upgrade_plan(session, restaurant.id, premium_plan.id, NOW)

    assert "Required: PKR 1000.00" in exc_info.value.message
    assert "Available: PKR 500.00" in exc_info.value.message
    session.refresh(restaurant)
    assert restaurant.plan_id == basic_plan.id
    assert restaurant.account_balance == Decimal("500.00")
    assert session.exec(select(PlanUpgrade)).all() == []
    assert ledger(session, restaurant.id) == []


def test_downgrade_credits_balance(session, make_restaurant, basic_plan, premium_plan):
    restaurant = make_restaurant(plan=premium_plan, plan_expiry_date=NOW + timedelta(days=15))

    upgrade, new_balance = billing_service.upgrade_plan(session, restaurant.id, basic_plan.id, NOW)

    assert upgrade.pro_rated_amount == Decimal("-1000.00")
    assert new_balance == Decimal("6000.00")
    (entry,) = ledger(session, restaurant.id)
    assert entry.description == "Downgraded from Premium to Basic"


def test_upgrade_plan_rejects_same_inactive_or_missing_plan(session, make_restaurant, make_plan, basic_plan):
    restaurant = make_restaurant(plan=basic_plan)
    retired = make_plan("Legacy", "999.00", is_active=False)

    with pytest.raises(PlanUpgradeError):
        billing_service.upgrade_plan(session, restaurant.id, basic_plan.id, NOW)
    with pytest.raises(PlanUpgradeError):
        billing_service.upgrade_plan(session, restaurant.id, retired.id, NOW)
    with pytest.raises(RecordNotFoundError) as exc_info:
        billing_service.upgrade_plan(session, restaurant.id, 9999, NOW)
    assert exc_info.value.status_code == 404


def test_quote_does_not_change_anything(session, make_restaurant, basic_plan, premium_plan):
    restaurant = make_restaurant(plan=basic_plan, balance="800.00", plan_expiry_date=NOW + timedelta(days=15))

    quote = billing_service.quote_plan_upgrade(session, restaurant, premium_plan, NOW)

    assert quote.days_remaining == 15
    assert quote.pro_rated_amount == Decimal("1000.00")
    assert quote.balance_after == Decimal("-200.00")
    assert quote.sufficient_balance is False
    session.refresh(restaurant)
    assert restaurant.plan_id == basic_plan.id


# ============ MONTHLY BILLING ============

def test_bill_restaurant_debits_plan_price(session, make_restaurant, basic_plan):
    restaurant = make_restaurant(plan=basic_plan, plan_expiry_date=NOW + timedelta(days=15))

    result = billing_service.bill_restaurant(session, restaurant.id, NOW)

    assert result.success is True
    assert result.suspended is False
    assert result.previous_balance == Decimal("5000.00")
    assert result.new_balance == Decimal("3500.00")
    assert result.plan_cost == Decimal("1500.00")

    session.refresh(restaurant)
    assert restaurant.account_balance == Decimal("3500.00")
    assert as_utc(restaurant.last_billing_date) == NOW
    assert as_utc(restaurant.next_billing_date) == datetime(2026, 4, 15, 10, 0, tzinfo=timezone.utc)
    # A paid cycle keeps the plan valid until the next charge
    assert as_utc(restaurant.plan_expiry_date) == datetime(2026, 4, 15, 10, 0, tzinfo=timezone.utc)

    (entry,) = ledger(session, restaurant.id)
    assert entry.type == LedgerEntryType.monthly_billing
    assert entry.status == LedgerEntryStatus.completed
    assert entry.related_plan_id == basic_plan.id


def test_bill_restaurant_suspends_on_insufficient_balance(session, make_restaurant, basic_plan):
    restaurant = make_restaurant(plan=basic_plan, balance="1000.00")

    result = billing_service.bill_restaurant(session, restaurant.id, NOW)

    assert result.success is False
    assert result.suspended is True
    session.refresh(restaurant)
    assert restaurant.status == RestaurantStatus.suspended
    assert restaurant.suspension_reason == (
        "Insufficient balance for monthly billing. Required: PKR 1500.00, Available: PKR 1000.00"
    )
    assert restaurant.account_balance == Decimal("1000.00")

    (entry,) = ledger(session, restaurant.id)
    assert entry.type == LedgerEntryType.billing_failed
    assert entry.status == LedgerEntryStatus.failed
    assert entry.balance_before == entry.balance_after == Decimal("1000.00")


def test_bill_single_restaurant_requires_plan(session, make_restaurant):
    restaurant = make_restaurant(plan=None)
    with pytest.raises(BillingError, match="no active plan"):
        billing_service.bill_single_restaurant(session, restaurant.id, NOW)
    with pytest.raises(RecordNotFoundError):
        billing_service.bill_single_restaurant(session, 9999, NOW)


def test_process_monthly_billing_only_bills_due_active_restaurants(session, make_restaurant, basic_plan):
    due = make_restaurant(plan=basic_plan, next_billing_date=NOW - timedelta(days=1))
    never_billed = make_restaurant(plan=basic_plan)
    not_due = make_restaurant(plan=basic_plan, next_billing_date=NOW + timedelta(days=5))
    suspended = make_restaurant(plan=basic_plan, status=RestaurantStatus.suspended)
    make_restaurant(plan=None)

    results = billing_service.process_monthly_billing(session, NOW)

    assert {r.restaurant_id for r in results} == {due.id, never_billed.id}
    assert all(r.success for r in results)
    session.refresh(not_due)
    session.refresh(suspended)
    assert not_due.account_balance == Decimal("5000.00")
    assert suspended.account_balance == Decimal("5000.00")


def test_check_expired_plans_suspends_with_reason(session, make_restaurant, basic_plan):
    expired = make_restaurant(plan=basic_plan, plan_expiry_date=datetime(2026, 3, 10, tzinfo=timezone.utc))
    current = make_restaurant(plan=basic_plan, plan_expiry_date=NOW + timedelta(days=3))

    notices = billing_service.check_expired_plans(session, NOW)

    assert [n.restaurant_id for n in notices] == [expired.id]
    assert notices[0].reason == "Plan expired on 2026-03-10"
    session.refresh(expired)
    session.refresh(current)
    assert expired.status == RestaurantStatus.suspended
    assert expired.suspension_reason == "Plan expired on 2026-03-10"
    assert current.status == RestaurantStatus.active


def test_find_low_balance_restaurants(session, make_restaurant, make_plan, basic_plan):
    free_plan = make_plan("Free", "0.00")
    low = make_restaurant(plan=basic_plan, balance="2000.00")
    make_restaurant(plan=basic_plan, balance="5000.00")
    make_restaurant(plan=free_plan, balance="0.00")
    make_restaurant(plan=basic_plan, balance="100.00", status=RestaurantStatus.suspended)

    warnings = billing_service.find_low_balance_restaurants(session)

    assert len(warnings) == 1
    warning = warnings[0]
    assert warning.restaurant_id == low.id
    assert warning.balance == Decimal("2000.00")
    assert warning.plan_cost == Decimal("1500.00")
    # 1500 / 30 = 50 per day
    assert warning.days_left == 40


# ============ TOP-UPS ============

def test_submit_payment_request_requires_positive_amount(session, restaurant):
    with pytest.raises(PaymentRequestError):
        billing_service.submit_payment_request(
            session, restaurant, PaymentRequestCreate(amount=Decimal("0"), payment_method=PaymentMethod.jazzcash)
        )


@pytest.fixture
def pending_request(session, restaurant):
    return billing_service.submit_payment_request(
        session,
        restaurant,
        PaymentRequestCreate(
            amount=Decimal("2500"),
            payment_method=PaymentMethod.jazzcash,
            description="March top-up",
            transaction_ref="JC-123456",
        ),
    )


def test_approve_payment_credits_balance(session, restaurant, pending_request, admin):
    payment_request, new_balance = billing_service.verify_payment_request(
        session, pending_request.id, "approve", "Checked JazzCash statement", admin.id, NOW
    )

    assert new_balance == Decimal("7500.00")
    assert payment_request.status == PaymentRequestStatus.approved
    assert payment_request.processed_by == admin.id
    assert payment_request.admin_notes == "Checked JazzCash statement"
    assert as_utc(payment_request.processed_at) == NOW

    session.refresh(restaurant)
    assert restaurant.account_balance == Decimal("7500.00")
    (entry,) = ledger(session, restaurant.id)
    assert entry.type == LedgerEntryType.balance_add
    assert entry.description == "Balance added via jazzcash - March top-up"
    assert entry.payment_request_id == pending_request.id
    assert entry.transaction_ref == "JC-123456"


def test_payment_request_cannot_be_verified_twice(session, pending_request, admin):
    billing_service.verify_payment_request(session, pending_request.id, "approve", None, admin.id, NOW)

    with pytest.raises(PaymentRequestError, match="Payment request is already approved"):
        billing_service.verify_payment_request(session, pending_request.id, "approve", None, admin.id, NOW)


def test_reject_payment_leaves_balance(session, restaurant, pending_request, admin):
    payment_request, new_balance = billing_service.verify_payment_request(
        session, pending_request.id, "reject", "Reference not found", admin.id, NOW
    )

    assert payment_request.status == PaymentRequestStatus.rejected
    assert new_balance == Decimal("5000.00")
    session.refresh(restaurant)
    assert restaurant.account_balance == Decimal("5000.00")
    assert ledger(session, restaurant.id) == []


def test_verify_payment_rejects_unknown_action_and_request(session, pending_request):
    with pytest.raises(PaymentRequestError):
        billing_service.verify_payment_request(session, pending_request.id, "refund")
    with pytest.raises(RecordNotFoundError):
        billing_service.verify_payment_request(session, 9999, "approve")


def test_account_summary_flags_low_balance(session, make_restaurant, basic_plan):
    restaurant = make_restaurant(plan=basic_plan, balance="2000.00", plan_expiry_date=NOW + timedelta(days=10))

    summary = billing_service.account_summary(session, restaurant, NOW)

    assert summary["plan"]["name"] == "Basic"
    assert summary["account_balance"] == Decimal("2000.00")
    assert summary["plan_days_remaining"] == 10
    assert summary["low_balance"] is True
    assert summary["balance_days_left"] == 40
    assert session.get(Restaurant, restaurant.id).status == RestaurantStatus.active
