"""
Billing Service

Business logic for restaurant account balances:
- Plan upgrade proration
- Monthly plan billing and suspension
- Plan expiry checks
- Low balance detection
- Top-up (payment request) verification

Every operation that moves money locks the restaurant row, writes the balance
change and its ledger entry, and commits once.
"""

import calendar
import logging
import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlmodel import Session, SQLModel, select

from .models import (
    LedgerEntryStatus,
    LedgerEntryType,
    PaymentHistory,
    PaymentRequest,
    PaymentRequestCreate,
    PaymentRequestStatus,
    PlanUpgrade,
    Restaurant,
    RestaurantStatus,
    SubscriptionPlan,
    utcnow,
)
from .settings import settings

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
VERIFY_ACTIONS = ("approve", "reject")


class BillingError(Exception):
    """Base class for billing rule violations."""
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RecordNotFoundError(BillingError):
    status_code = 404


class PlanUpgradeError(BillingError):
    pass


class PaymentRequestError(BillingError):
    pass


class InsufficientBalanceError(BillingError):
    """Raised when a restaurant's balance cannot cover a charge."""

    def __init__(self, required: Decimal, available: Decimal, currency: str = "PKR"):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance. Required: {currency} {required:.2f}, "
            f"Available: {currency} {available:.2f}"
        )


# ============ RESULT MODELS ============

class PlanUpgradeQuote(SQLModel):
    restaurant_id: int
    from_plan_id: int | None
    to_plan_id: int
    price_difference: Decimal
    days_remaining: int
    pro_rated_amount: Decimal
    current_balance: Decimal
    balance_after: Decimal
    sufficient_balance: bool
    new_expiry_date: datetime


class BillingResult(SQLModel):
    restaurant_id: int
    restaurant_name: str
    success: bool
    previous_balance: Decimal
    new_balance: Decimal
    plan_cost: Decimal
    message: str
    suspended: bool = False


class SuspensionNotice(SQLModel):
    restaurant_id: int
    restaurant_name: str
    owner_email: str
    reason: str


class LowBalanceWarning(SQLModel):
    restaurant_id: int
    restaurant_name: str
    owner_email: str
    balance: Decimal
    plan_cost: Decimal
    currency: str
    days_left: int


# ============ MONEY & DATE HELPERS ============

def to_money(value) -> Decimal:
    """Quantize any numeric value to 2 decimal places (half up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes read back from the database as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: datetime, months: int = 1) -> datetime:
    """Same day N calendar months later, clamped to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def days_remaining(expiry: datetime | None, now: datetime) -> int:
    """Whole days left until expiry, rounded up; 0 when unset or already past."""
    if expiry is None:
        return 0
    seconds = (as_utc(expiry) - as_utc(now)).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def calculate_proration(
    current_price: Decimal | None,
    new_price: Decimal,
    remaining_days: int,
    cycle_days: int | None = None,
) -> tuple[Decimal, Decimal]:
    """
    Price difference and prorated charge for switching plans mid-cycle.

    Without a current plan the full new price is the difference. At least one
    day is always charged. Downgrades give a negative charge (a credit).

    Returns:
        (price_difference, pro_rated_amount)
    """
    cycle_days = cycle_days or settings.billing_cycle_days
    new_price = to_money(new_price)
    if current_price is None:
        price_difference = new_price
    else:
        price_difference = new_price - to_money(current_price)

    pro_rated = price_difference / Decimal(cycle_days) * Decimal(max(1, remaining_days))
    return price_difference, to_money(pro_rated)


def _lock_restaurant(session: Session, restaurant_id: int) -> Restaurant | None:
    """Load a restaurant with a row lock (no-op on SQLite) and fresh attributes."""
    statement = (
        select(Restaurant)
        .where(Restaurant.id == restaurant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.exec(statement).first()


def _ledger_entry(
    restaurant: Restaurant,
    entry_type: LedgerEntryType,
    amount: Decimal,
    description: str,
    balance_before: Decimal,
    balance_after: Decimal,
    **extra,
) -> PaymentHistory:
    return PaymentHistory(
        restaurant_id=restaurant.id,
        type=entry_type,
        amount=to_money(amount),
        description=description,
        balance_before=to_money(balance_before),
        balance_after=to_money(balance_after),
        **extra,
    )


# ============ PLAN UPGRADES ============

def quote_plan_upgrade(
    session: Session,
    restaurant: Restaurant,
    new_plan: SubscriptionPlan,
    now: datetime | None = None,
) -> PlanUpgradeQuote:
    """Preview the charge for moving a restaurant onto another plan."""
    now = as_utc(now or utcnow())
    current_plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None

    remaining = days_remaining(restaurant.plan_expiry_date, now)
    price_difference, pro_rated = calculate_proration(
        current_plan.price if current_plan else None,
        new_plan.price,
        remaining,
    )
    balance = to_money(restaurant.account_balance)

    return PlanUpgradeQuote(
        restaurant_id=restaurant.id,
        from_plan_id=current_plan.id if current_plan else None,
        to_plan_id=new_plan.id,
        price_difference=price_difference,
        days_remaining=remaining,
        pro_rated_amount=pro_rated,
        current_balance=balance,
        balance_after=balance - pro_rated,
        sufficient_balance=balance >= pro_rated,
        new_expiry_date=now + timedelta(days=new_plan.duration),
    )


def get_plan_for_upgrade(session: Session, restaurant: Restaurant, new_plan_id: int) -> SubscriptionPlan:
    new_plan = session.get(SubscriptionPlan, new_plan_id)
    if not new_plan:
        raise RecordNotFoundError("Plan not found")
    if not new_plan.is_active:
        raise PlanUpgradeError("Plan is not available")
    if restaurant.plan_id == new_plan.id:
        raise PlanUpgradeError("Restaurant is already on this plan")
    return new_plan


def upgrade_plan(
    session: Session,
    restaurant_id: int,
    new_plan_id: int,
    now: datetime | None = None,
) -> tuple[PlanUpgrade, Decimal]:
    """
    Move a restaurant to a new plan, charging the prorated difference.

    Returns:
        (plan_upgrade, new_balance)
    """
    now = as_utc(now or utcnow())
    try:
        restaurant = _lock_restaurant(session, restaurant_id)
        if not restaurant:
            raise RecordNotFoundError("Restaurant not found")

        new_plan = get_plan_for_upgrade(session, restaurant, new_plan_id)
        current_plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None
        quote = quote_plan_upgrade(session, restaurant, new_plan, now)

        if not quote.sufficient_balance:
            raise InsufficientBalanceError(
                quote.pro_rated_amount, quote.current_balance, new_plan.currency
            )

        upgrade = PlanUpgrade(
            restaurant_id=restaurant.id,
            from_plan_id=quote.from_plan_id,
            to_plan_id=new_plan.id,
            price_difference=quote.price_difference,
            pro_rated_amount=quote.pro_rated_amount,
            effective_date=now,
            new_expiry_date=quote.new_expiry_date,
            status="active",
        )

        restaurant.plan_id = new_plan.id
        restaurant.plan_expiry_date = quote.new_expiry_date
        restaurant.account_balance = quote.balance_after

        verb = "Upgraded" if quote.pro_rated_amount >= 0 else "Downgraded"
        from_name = current_plan.name if current_plan else "No Plan"
        entry = _ledger_entry(
            restaurant,
            LedgerEntryType.plan_upgrade,
            quote.pro_rated_amount,
            f"{verb} from {from_name} to {new_plan.name}",
            quote.current_balance,
            quote.balance_after,
            related_plan_id=new_plan.id,
        )

        session.add(upgrade)
        session.add(restaurant)
        session.add(entry)
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(upgrade)
    logger.info(
        f"Restaurant #{restaurant_id} moved to plan #{new_plan_id}: "
        f"charged {quote.pro_rated_amount}, balance {quote.balance_after}"
    )
    return upgrade, quote.balance_after


def list_plan_upgrades(session: Session, restaurant_id: int) -> list[PlanUpgrade]:
    return list(session.exec(
        select(PlanUpgrade)
        .where(PlanUpgrade.restaurant_id == restaurant_id)
        .order_by(PlanUpgrade.created_at.desc(), PlanUpgrade.id.desc())
    ).all())


# ============ MONTHLY BILLING ============

def bill_restaurant(session: Session, restaurant_id: int, now: datetime | None = None) -> BillingResult:
    """
    Charge one restaurant its plan price.

    An insufficient balance suspends the restaurant and records a failed
    ledger entry. Unexpected errors are rolled back and reported as a failed
    result so a billing run can continue with the next restaurant.
    """
    now = as_utc(now or utcnow())
    restaurant = _lock_restaurant(session, restaurant_id)
    if not restaurant:
        raise RecordNotFoundError("Restaurant not found")
    plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None
    if not plan:
        session.rollback()
        raise BillingError("Restaurant has no active plan")

    restaurant_name = restaurant.name
    plan_cost = to_money(plan.price)
    balance = to_money(restaurant.account_balance)
    currency = plan.currency

    try:
        if balance < plan_cost:
            reason = (
                f"Insufficient balance for monthly billing. "
                f"Required: {currency} {plan_cost:.2f}, Available: {currency} {balance:.2f}"
            )
            restaurant.status = RestaurantStatus.suspended
            restaurant.suspension_reason = reason
            entry = _ledger_entry(
                restaurant,
                LedgerEntryType.billing_failed,
                plan_cost,
                "Monthly billing failed - insufficient balance. Restaurant suspended.",
                balance,
                balance,
                related_plan_id=plan.id,
                status=LedgerEntryStatus.failed,
            )
            session.add(restaurant)
            session.add(entry)
            session.commit()
            logger.warning(f"Suspended restaurant #{restaurant_id} ({restaurant_name}): {reason}")
            return BillingResult(
                restaurant_id=restaurant_id,
                restaurant_name=restaurant_name,
                success=False,
                previous_balance=balance,
                new_balance=balance,
                plan_cost=plan_cost,
                message=(
                    f"Insufficient balance ({currency} {balance:.2f} < {currency} {plan_cost:.2f}). "
                    "Restaurant suspended."
                ),
                suspended=True,
            )

        new_balance = balance - plan_cost
        next_billing = add_months(now)
        restaurant.account_balance = new_balance
        restaurant.last_billing_date = now
        restaurant.next_billing_date = next_billing
        # A paid cycle keeps the plan valid until the next charge
        current_expiry = as_utc(restaurant.plan_expiry_date)
        if current_expiry is None or current_expiry < next_billing:
            restaurant.plan_expiry_date = next_billing

        entry = _ledger_entry(
            restaurant,
            LedgerEntryType.monthly_billing,
            plan_cost,
            f"Monthly plan fee deducted for {plan.name}",
            balance,
            new_balance,
            related_plan_id=plan.id,
        )
        session.add(restaurant)
        session.add(entry)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.exception(f"Error billing restaurant #{restaurant_id} ({restaurant_name})")
        return BillingResult(
            restaurant_id=restaurant_id,
            restaurant_name=restaurant_name,
            success=False,
            previous_balance=balance,
            new_balance=balance,
            plan_cost=plan_cost,
            message=f"Billing failed due to system error: {e}",
        )

    logger.info(f"Billed restaurant #{restaurant_id} ({restaurant_name}): {currency} {plan_cost:.2f}")
    return BillingResult(
        restaurant_id=restaurant_id,
        restaurant_name=restaurant_name,
        success=True,
        previous_balance=balance,
        new_balance=new_balance,
        plan_cost=plan_cost,
        message=f"Successfully billed {currency} {plan_cost:.2f}. New balance: {currency} {new_balance:.2f}",
    )


def bill_single_restaurant(session: Session, restaurant_id: int, now: datetime | None = None) -> BillingResult:
    """Bill one restaurant right away, regardless of its next billing date."""
    restaurant = session.get(Restaurant, restaurant_id)
    if not restaurant:
        raise RecordNotFoundError("Restaurant not found")
    if not restaurant.plan_id:
        raise BillingError("Restaurant has no active plan")
    return bill_restaurant(session, restaurant_id, now)


def is_billing_due(next_billing_date: datetime | None, now: datetime) -> bool:
    """Billing is due on the calendar day (UTC) of the next billing date, whatever the time of the run."""
    if next_billing_date is None:
        return True
    return as_utc(next_billing_date).date() <= as_utc(now).date()


def get_due_restaurant_ids(session: Session, now: datetime) -> list[int]:
    rows = session.exec(
        select(Restaurant)
        .join(SubscriptionPlan, Restaurant.plan_id == SubscriptionPlan.id)
        .where(Restaurant.status == RestaurantStatus.active)
        .order_by(Restaurant.id)
    ).all()
    return [r.id for r in rows if is_billing_due(r.next_billing_date, now)]


def process_monthly_billing(session: Session, now: datetime | None = None) -> list[BillingResult]:
    """Bill every active restaurant whose billing date has come."""
    now = as_utc(now or utcnow())
    logger.info("Starting monthly billing process...")

    due_ids = get_due_restaurant_ids(session, now)
    logger.info(f"Found {len(due_ids)} active restaurants to bill")

    results = [bill_restaurant(session, restaurant_id, now) for restaurant_id in due_ids]

    successful = len([r for r in results if r.success])
    logger.info(f"Billing completed: {successful} successful, {len(results) - successful} failed")
    return results


def check_expired_plans(session: Session, now: datetime | None = None) -> list[SuspensionNotice]:
    """Suspend active restaurants whose plan has expired."""
    now = as_utc(now or utcnow())
    active = session.exec(
        select(Restaurant).where(
            Restaurant.status == RestaurantStatus.active,
            Restaurant.plan_expiry_date.is_not(None),
        )
    ).all()
    expired = [r for r in active if as_utc(r.plan_expiry_date) <= now]
    logger.info(f"Found {len(expired)} restaurants with expired plans")

    notices = []
    for restaurant in expired:
        reason = f"Plan expired on {as_utc(restaurant.plan_expiry_date):%Y-%m-%d}"
        restaurant.status = RestaurantStatus.suspended
        restaurant.suspension_reason = reason
        session.add(restaurant)
        notices.append(SuspensionNotice(
            restaurant_id=restaurant.id,
            restaurant_name=restaurant.name,
            owner_email=restaurant.owner_email,
            reason=reason,
        ))
        logger.info(f"Suspended {restaurant.name} - plan expired")

    session.commit()
    return notices


def low_balance_days_left(balance: Decimal, plan_cost: Decimal, cycle_days: int | None = None) -> int:
    """Approximate days of service the balance still covers."""
    cycle_days = cycle_days or settings.billing_cycle_days
    daily_cost = to_money(plan_cost) / Decimal(cycle_days)
    if daily_cost <= 0:
        return 0
    return max(0, math.floor(to_money(balance) / daily_cost))


def find_low_balance_restaurants(session: Session) -> list[LowBalanceWarning]:
    """Active restaurants whose balance is under the warning threshold."""
    rows = session.exec(
        select(Restaurant, SubscriptionPlan)
        .join(SubscriptionPlan, Restaurant.plan_id == SubscriptionPlan.id)
        .where(Restaurant.status == RestaurantStatus.active)
        .order_by(Restaurant.id)
    ).all()

    warnings = []
    for restaurant, plan in rows:
        balance = to_money(restaurant.account_balance)
        plan_cost = to_money(plan.price)
        if plan_cost <= 0 or balance >= plan_cost * settings.low_balance_multiplier:
            continue
        warning = LowBalanceWarning(
            restaurant_id=restaurant.id,
            restaurant_name=restaurant.name,
            owner_email=restaurant.owner_email,
            balance=balance,
            plan_cost=plan_cost,
            currency=plan.currency,
            days_left=low_balance_days_left(balance, plan_cost),
        )
        logger.warning(
            f"{restaurant.name}: {plan.currency} {balance:.2f} balance, ~{warning.days_left} days remaining"
        )
        warnings.append(warning)

    logger.info(f"Found {len(warnings)} restaurants with low balance")
    return warnings


# ============ TOP-UPS ============

def submit_payment_request(
    session: Session,
    restaurant: Restaurant,
    data: PaymentRequestCreate,
) -> PaymentRequest:
    amount = to_money(data.amount)
    if amount <= 0:
        raise PaymentRequestError("Amount must be greater than zero")

    payment_request = PaymentRequest(
        restaurant_id=restaurant.id,
        amount=amount,
        payment_method=data.payment_method,
        description=data.description.strip() if data.description else None,
        transaction_ref=data.transaction_ref.strip() if data.transaction_ref else None,
        bank_name=data.bank_name,
        account_number=data.account_number,
        account_holder=data.account_holder,
    )
    session.add(payment_request)
    session.commit()
    session.refresh(payment_request)
    logger.info(f"Payment request #{payment_request.id} submitted by restaurant #{restaurant.id}: {amount}")
    return payment_request


def verify_payment_request(
    session: Session,
    payment_request_id: int,
    action: str,
    admin_notes: str | None = None,
    admin_id: int | None = None,
    now: datetime | None = None,
) -> tuple[PaymentRequest, Decimal]:
    """
    Approve (credit the balance) or reject a pending top-up.

    Returns:
        (payment_request, new_balance)
    """
    if action not in VERIFY_ACTIONS:
        raise PaymentRequestError("Action must be 'approve' or 'reject'")
    now = as_utc(now or utcnow())

    try:
        payment_request = session.exec(
            select(PaymentRequest)
            .where(PaymentRequest.id == payment_request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if not payment_request:
            raise RecordNotFoundError("Payment request not found")
        if payment_request.status != PaymentRequestStatus.pending:
            raise PaymentRequestError(f"Payment request is already {payment_request.status.value}")

        restaurant = _lock_restaurant(session, payment_request.restaurant_id)
        if not restaurant:
            raise RecordNotFoundError("Restaurant not found")

        balance = to_money(restaurant.account_balance)
        new_balance = balance
        if action == "approve":
            new_balance = balance + to_money(payment_request.amount)
            restaurant.account_balance = new_balance
            method = payment_request.payment_method.value
            entry = _ledger_entry(
                restaurant,
                LedgerEntryType.balance_add,
                payment_request.amount,
                f"Balance added via {method} - {payment_request.description or 'Payment verified'}",
                balance,
                new_balance,
                payment_request_id=payment_request.id,
                transaction_ref=payment_request.transaction_ref,
            )
            session.add(restaurant)
            session.add(entry)

        payment_request.status = (
            PaymentRequestStatus.approved if action == "approve" else PaymentRequestStatus.rejected
        )
        payment_request.admin_notes = admin_notes or None
        payment_request.processed_at = now
        payment_request.processed_by = admin_id
        session.add(payment_request)
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(payment_request)
    logger.info(f"Payment request #{payment_request_id} {action}d; balance {new_balance}")
    return payment_request, new_balance


# ============ ACCOUNT VIEW ============

def account_summary(session: Session, restaurant: Restaurant, now: datetime | None = None) -> dict:
    now = as_utc(now or utcnow())
    plan = session.get(SubscriptionPlan, restaurant.plan_id) if restaurant.plan_id else None
    balance = to_money(restaurant.account_balance)

    summary = {
        "restaurant_id": restaurant.id,
        "name": restaurant.name,
        "status": restaurant.status.value,
        "suspension_reason": restaurant.suspension_reason,
        "account_balance": balance,
        "currency": plan.currency if plan else settings.default_currency,
        "plan": None,
        "plan_expiry_date": as_utc(restaurant.plan_expiry_date),
        "plan_days_remaining": days_remaining(restaurant.plan_expiry_date, now),
        "last_billing_date": as_utc(restaurant.last_billing_date),
        "next_billing_date": as_utc(restaurant.next_billing_date),
        "low_balance": False,
        "balance_days_left": None,
    }
    if plan:
        summary["plan"] = {"id": plan.id, "name": plan.name, "price": to_money(plan.price)}
        summary["low_balance"] = balance < to_money(plan.price) * settings.low_balance_multiplier
        summary["balance_days_left"] = low_balance_days_left(balance, plan.price)
    return summary


def list_payment_history(session: Session, restaurant_id: int) -> list[PaymentHistory]:
    return list(session.exec(
        select(PaymentHistory)
        .where(PaymentHistory.restaurant_id == restaurant_id)
        .order_by(PaymentHistory.created_at.desc(), PaymentHistory.id.desc())
    ).all())
