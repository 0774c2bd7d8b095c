"""
Billing Jobs

The billing cycle: monthly charges, expired plan suspensions and low balance
warnings, followed by owner notifications. Runs from the app's scheduler or
from the command line:

    python -m menuqr.billing_jobs
    python -m menuqr.billing_jobs --restaurant-id 12
    python -m menuqr.billing_jobs --dry-run
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime

from sqlmodel import Session, SQLModel

from . import billing_service, email_service
from .billing_service import (
    BillingError,
    BillingResult,
    LowBalanceWarning,
    SuspensionNotice,
    as_utc,
    to_money,
)
from .db import create_db_and_tables, engine
from .models import Restaurant, SubscriptionPlan, utcnow
from .settings import settings

logger = logging.getLogger(__name__)


class BillingCycleReport(SQLModel):
    run_at: datetime
    billing_results: list[BillingResult] = []
    expired: list[SuspensionNotice] = []
    low_balance: list[LowBalanceWarning] = []

    @property
    def billed_count(self) -> int:
        return len([r for r in self.billing_results if r.success])

    @property
    def failed_count(self) -> int:
        return len([r for r in self.billing_results if not r.success])

    def summary(self) -> dict:
        return {
            "run_at": self.run_at,
            "billed": self.billed_count,
            "failed": self.failed_count,
            "suspended": len([r for r in self.billing_results if r.suspended]) + len(self.expired),
            "low_balance": len(self.low_balance),
        }


def run_billing_cycle(session: Session, now: datetime | None = None) -> BillingCycleReport:
    """Bill due restaurants, then suspend expired plans, then collect low balances."""
    now = as_utc(now or utcnow())
    report = BillingCycleReport(run_at=now)
    report.billing_results = billing_service.process_monthly_billing(session, now)
    report.expired = billing_service.check_expired_plans(session, now)
    report.low_balance = billing_service.find_low_balance_restaurants(session)
    logger.info(f"Billing cycle finished: {report.summary()}")
    return report


def preview_billing(session: Session, now: datetime | None = None) -> list[dict]:
    """What a billing run would charge, without writing anything."""
    now = as_utc(now or utcnow())
    preview = []
    for restaurant_id in billing_service.get_due_restaurant_ids(session, now):
        restaurant = session.get(Restaurant, restaurant_id)
        plan = session.get(SubscriptionPlan, restaurant.plan_id)
        balance = to_money(restaurant.account_balance)
        plan_cost = to_money(plan.price)
        preview.append({
            "restaurant_id": restaurant.id,
            "restaurant_name": restaurant.name,
            "plan": plan.name,
            "balance": balance,
            "plan_cost": plan_cost,
            "would_suspend": balance < plan_cost,
        })
    return preview


async def notify_billing_cycle(session: Session, report: BillingCycleReport) -> int:
    """E-mail owners about suspensions and low balances. Returns emails sent."""
    if not email_service.smtp_configured():
        logger.info("SMTP not configured, skipping billing notifications")
        return 0

    sent = 0
    for result in report.billing_results:
        if not result.suspended:
            continue
        restaurant = session.get(Restaurant, result.restaurant_id)
        if restaurant and await email_service.send_suspension_notice(
            restaurant.owner_email, restaurant.name, restaurant.suspension_reason or result.message
        ):
            sent += 1

    for notice in report.expired:
        if await email_service.send_suspension_notice(notice.owner_email, notice.restaurant_name, notice.reason):
            sent += 1

    for warning in report.low_balance:
        if await email_service.send_low_balance_warning(
            warning.owner_email,
            warning.restaurant_name,
            warning.balance,
            warning.plan_cost,
            warning.currency,
            warning.days_left,
        ):
            sent += 1

    logger.info(f"Sent {sent} billing notifications")
    return sent


def next_billing_run(now: datetime | None = None) -> datetime:
    """First day of the next month at the configured hour (UTC)."""
    now = as_utc(now or utcnow())
    this_month = now.replace(day=1, hour=settings.billing_run_hour, minute=0, second=0, microsecond=0)
    return billing_service.add_months(this_month)


def _run_cycle_once() -> BillingCycleReport:
    with Session(engine) as session:
        return run_billing_cycle(session)


async def _notify(report: BillingCycleReport) -> None:
    with Session(engine) as session:
        await notify_billing_cycle(session, report)


async def billing_scheduler() -> None:
    """Run the billing cycle on the first of every month until cancelled."""
    while True:
        run_at = next_billing_run()
        delay = (run_at - utcnow()).total_seconds()
        logger.info(f"Next billing run at {run_at.isoformat()}")
        await asyncio.sleep(max(0, delay))
        try:
            report = await asyncio.to_thread(_run_cycle_once)
            await _notify(report)
        except Exception:
            # Keep the scheduler alive for next month
            logger.exception("Billing cycle failed")


def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Run restaurant billing")
    parser.add_argument(
        "--restaurant-id",
        type=int,
        default=None,
        help="Bill a single restaurant now, regardless of its billing date",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be billed without charging anyone",
    )
    parser.add_argument(
        "--no-email",
        action="store_true",
        help="Skip owner notifications",
    )
    args = parser.parse_args()

    create_db_and_tables()
    with Session(engine) as session:
        if args.dry_run:
            for row in preview_billing(session):
                action = "SUSPEND" if row["would_suspend"] else "CHARGE"
                print(
                    f"{action} #{row['restaurant_id']} {row['restaurant_name']} ({row['plan']}): "
                    f"cost {row['plan_cost']}, balance {row['balance']}"
                )
            return

        if args.restaurant_id:
            try:
                result = billing_service.bill_single_restaurant(session, args.restaurant_id)
            except BillingError as e:
                logger.error(e.message)
                sys.exit(1)
            print(result.message)
            report = BillingCycleReport(run_at=utcnow(), billing_results=[result])
        else:
            report = run_billing_cycle(session)
            print(report.summary())

        if not args.no_email:
            asyncio.run(notify_billing_cycle(session, report))


if __name__ == "__main__":
    main()
