# dotformer/scheduler.py
"""Monthly billing job.

Runs on the 1st of each month at 01:00 UTC and bills the previous month.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from dotformer.billing import BillingService
from dotformer.metering import month_start
from dotformer.models import utcnow

logger = logging.getLogger(__name__)

RUN_HOUR = 1


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def previous_month_range(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """[first day of last month, first day of this month) in UTC."""
    end = month_start(now or utcnow())
    start = month_start(end - timedelta(days=1))
    return start, end


def next_monthly_run(now: Optional[datetime] = None) -> datetime:
    now = as_utc(now or utcnow())
    candidate = month_start(now).replace(hour=RUN_HOUR)
    if candidate > now:
        return candidate
    return month_start(candidate + timedelta(days=32)).replace(hour=RUN_HOUR)


def run_monthly_billing(session_factory: Callable[[], Session], now: Optional[datetime] = None) -> list[str]:
    """Bill the month before ``now``; returns the ids of the created bills."""
    start_date, end_date = previous_month_range(now)
    logger.info(f"Running monthly billing for {start_date:%Y-%m}")

    db = session_factory()
    try:
        bills = BillingService(db).generate_bills(start_date, end_date)
        return [bill.id for bill in bills]
    finally:
        db.close()


async def billing_loop(session_factory: Callable[[], Session], clock: Callable[[], datetime] = utcnow):
    """Sleep until each monthly run and bill in a worker thread. Cancel to stop."""
    last_run: Optional[datetime] = None
    while True:
        now = clock()
        if last_run is not None:
            now = max(now, last_run)
        run_at = next_monthly_run(now)
        logger.info(f"Next billing run at {run_at.isoformat()}")
        await asyncio.sleep((run_at - now).total_seconds())

        try:
            bill_ids = await asyncio.to_thread(run_monthly_billing, session_factory, run_at)
            logger.info(f"Generated {len(bill_ids)} bills")
        except Exception as e:
            logger.error(f"Monthly billing job failed: {e}")
        last_run = run_at
