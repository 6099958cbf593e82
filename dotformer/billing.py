# dotformer/billing.py
"""Usage aggregation, bill generation and billing queries."""
import logging
from collections import defaultdict
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dotformer.config import settings
from dotformer.errors import BillingConflict, NoActiveSubscription, NotFound
from dotformer.metering import month_start
from dotformer.models import Account, Bill, PricingPlan, Subscription, UsageRecord, utcnow
from dotformer.plans import apply_minimum_charge, price_usage

logger = logging.getLogger(__name__)

BILLS_GENERATED = Counter("dotformer_bills_generated_total", "Bills created by billing runs")
BILLING_FAILURES = Counter("dotformer_billing_failures_total", "Accounts that failed during a billing run")

CENTS = Decimal("0.01")


class BillingService:
    def __init__(
        self,
        db: Session,
        minimum_charges: Optional[Mapping[str, Decimal]] = None,
        currency: Optional[str] = None,
    ):
        self.db = db
        self.minimum_charges = settings.minimum_charges if minimum_charges is None else minimum_charges
        self.currency = currency or settings.billing_currency

    def _active_subscription(self, account_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.account_id == account_id,
            Subscription.status == "active",
        ).first()

    def calculate_cost(self, plan: PricingPlan, usage_by_operation: Mapping[str, int]) -> Decimal:
        """Tiered cost of summed usage; operations the plan does not price cost nothing."""
        total = Decimal("0")
        for operation_type, used in usage_by_operation.items():
            tiers = plan.tiers_for(operation_type)
            if not tiers:
                continue
            total += price_usage(tiers, used)
        return total

    def generate_bill_for_account(self, account_id: str, start_date: datetime, end_date: datetime) -> Optional[Bill]:
        """Bill an account's unbilled usage in [start_date, end_date).

        Returns None when the period costs nothing; its records then stay
        unbilled and roll into the next run. The bill insert and the marking
        of its records commit together or not at all.
        """
        subscription = self._active_subscription(account_id)
        if subscription is None or subscription.pricing_plan is None:
            raise NoActiveSubscription(f"Account {account_id} has no active subscription")
        plan = subscription.pricing_plan

        records = self.db.query(UsageRecord).filter(
            UsageRecord.account_id == account_id,
            UsageRecord.timestamp >= start_date,
            UsageRecord.timestamp < end_date,
            UsageRecord.billed.is_(False),
        ).all()

        usage_by_operation: dict[str, int] = defaultdict(int)
        for record in records:
            usage_by_operation[record.operation_type] += record.quantity

        total = self.calculate_cost(plan, usage_by_operation)
        total = apply_minimum_charge(total, plan.name, self.minimum_charges)
        amount = total.quantize(CENTS, rounding=ROUND_HALF_UP)

        if amount <= 0:
            logger.info(f"No charge for {account_id} between {start_date} and {end_date}")
            return None

        record_ids = [record.id for record in records]
        try:
            bill = Bill(
                account_id=account_id,
                amount=amount,
                currency=self.currency,
                status="pending",
                start_period=start_date,
                end_period=end_date,
            )
            self.db.add(bill)
            self.db.flush()

            # Guarded on billed = false so an overlapping run cannot bill twice
            updated = self.db.query(UsageRecord).filter(
                UsageRecord.id.in_(record_ids),
                UsageRecord.billed.is_(False),
            ).update({UsageRecord.billed: True, UsageRecord.bill_id: bill.id}, synchronize_session=False)

            if updated != len(record_ids):
                raise BillingConflict(
                    f"{len(record_ids) - updated} usage records for {account_id} were billed concurrently"
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        BILLS_GENERATED.inc()
        logger.info(f"Created bill {bill.id} for {account_id}: {amount} {self.currency}")
        return bill

    def generate_bills(self, start_date: datetime, end_date: datetime) -> list[Bill]:
        """Bill every account with an active subscription.

        One account's failure is logged and skipped; the run continues.
        """
        account_ids = [
            row.account_id
            for row in self.db.query(Subscription.account_id).filter(Subscription.status == "active").all()
        ]

        bills = []
        for account_id in account_ids:
            try:
                bill = self.generate_bill_for_account(account_id, start_date, end_date)
            except Exception as e:
                BILLING_FAILURES.inc()
                logger.error(f"Failed to generate bill for account {account_id}: {e}")
                self.db.rollback()
                continue
            if bill is not None:
                bills.append(bill)

        logger.info(f"Billing run {start_date} - {end_date}: {len(bills)} bills for {len(account_ids)} accounts")
        return bills

    def current_usage(self, account_id: str, now: Optional[datetime] = None) -> dict:
        """Month-to-date usage per operation with an estimated cost."""
        now = now or utcnow()
        start = month_start(now)

        rows = self.db.query(
            UsageRecord.operation_type,
            func.sum(UsageRecord.quantity),
            func.max(UsageRecord.unit),
        ).filter(
            UsageRecord.account_id == account_id,
            UsageRecord.timestamp >= start,
        ).group_by(UsageRecord.operation_type).all()

        usage_by_operation = {
            operation_type: {"total": int(total or 0), "unit": unit}
            for operation_type, total, unit in rows
        }

        subscription = self._active_subscription(account_id)
        estimated = Decimal("0")
        if subscription is not None and subscription.pricing_plan is not None:
            estimated = self.calculate_cost(
                subscription.pricing_plan,
                {op: usage["total"] for op, usage in usage_by_operation.items()},
            )

        return {
            "usage_by_operation": usage_by_operation,
            "estimated_cost": estimated.quantize(CENTS, rounding=ROUND_HALF_UP),
            "currency": self.currency,
            "period_start": start,
            "period_end": now,
        }

    def billing_history(self, account_id: str, limit: int = 10, offset: int = 0) -> dict:
        query = self.db.query(Bill).filter(Bill.account_id == account_id)
        bills = query.order_by(Bill.created_at.desc()).limit(limit).offset(offset).all()
        return {
            "bills": bills,
            "total": query.count(),
            "limit": limit,
            "offset": offset,
        }

    def pay_bill(self, bill_id: str, account_id: Optional[str] = None) -> Bill:
        """Mark a pending bill as paid."""
        bill = self.db.get(Bill, bill_id)
        if bill is None or (account_id is not None and bill.account_id != account_id):
            raise NotFound(f"Bill not found: {bill_id}")
        if bill.status != "pending":
            raise BillingConflict(f"Bill is already {bill.status}")

        bill.status = "paid"
        bill.paid_at = utcnow()
        self.db.commit()
        return bill

    def pricing_plans(self) -> list[PricingPlan]:
        return self.db.query(PricingPlan).filter(PricingPlan.is_active.is_(True)).order_by(PricingPlan.name).all()

    def subscribe_to_plan(self, account_id: str, plan_id: str) -> Subscription:
        """Create or replace the account's single subscription."""
        plan = self.db.get(PricingPlan, plan_id)
        if plan is None:
            raise NotFound(f"Pricing plan not found: {plan_id}")
        if self.db.get(Account, account_id) is None:
            raise NotFound(f"Account not found: {account_id}")

        for _ in range(2):
            subscription = self.db.query(Subscription).filter(Subscription.account_id == account_id).first()
            if subscription is None:
                subscription = Subscription(account_id=account_id)
                self.db.add(subscription)
            subscription.pricing_plan_id = plan.id
            subscription.status = "active"
            subscription.start_date = utcnow()
            subscription.end_date = None
            try:
                self.db.commit()
                return subscription
            except IntegrityError:
                # Another request created the row first; retry as an update
                self.db.rollback()
        raise BillingConflict(f"Could not subscribe {account_id} to {plan.name}")

    def update_payment_method(self, account_id: str, payment_method_id: str) -> Account:
        account = self.db.get(Account, account_id)
        if account is None:
            raise NotFound(f"Account not found: {account_id}")
        account.payment_method = payment_method_id
        self.db.commit()
        return account
