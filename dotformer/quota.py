# dotformer/quota.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from dotformer.errors import QuotaExceeded
from dotformer.metering import UsageMeter, period_start
from dotformer.models import Account, ApiKey, PricingPlan, Subscription, utcnow
from dotformer.plans import ensure_plan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    used: int = 0
    free_quota: Optional[int] = None

    @classmethod
    def allow(cls, used: int = 0, free_quota: Optional[int] = None) -> "QuotaDecision":
        return cls(allowed=True, used=used, free_quota=free_quota)

    @classmethod
    def deny(cls, reason: str, used: int = 0, free_quota: Optional[int] = None) -> "QuotaDecision":
        return cls(allowed=False, reason=reason, used=used, free_quota=free_quota)


class QuotaEnforcer:
    """Admission check for metered operations.

    The check is advisory: it does not record usage, and concurrent requests
    from one account can briefly run past the quota before their usage lands.
    """

    def __init__(self, db: Session, free_plan_name: str = "Free"):
        self.db = db
        self.free_plan_name = free_plan_name
        self.meter = UsageMeter(db)

    def plan_for(self, account_id: str) -> PricingPlan:
        """The account's subscribed plan, or the free plan as a fallback."""
        subscription = self.db.query(Subscription).filter(
            Subscription.account_id == account_id,
            Subscription.status == "active",
        ).first()
        if subscription is not None and subscription.pricing_plan is not None:
            return subscription.pricing_plan
        return ensure_plan(self.db, self.free_plan_name)

    def check(
        self,
        account_id: Optional[str],
        api_key_id: Optional[str],
        operation_type: str,
        now: Optional[datetime] = None,
    ) -> QuotaDecision:
        # System and internal calls are not metered
        if not account_id and not api_key_id:
            return QuotaDecision.allow()

        if not account_id:
            api_key = self.db.get(ApiKey, api_key_id)
            if api_key is None:
                return QuotaDecision.deny("Unknown API key")
            account_id = api_key.account_id

        plan = self.plan_for(account_id)
        tiers = plan.tiers_for(operation_type)
        first_tier = tiers[0] if tiers and tiers[0].tier == 1 else None
        if first_tier is None:
            return QuotaDecision.deny(f"Operation {operation_type} not covered by plan {plan.name}")

        is_free = plan.name == self.free_plan_name
        since = period_start(plan.name, now or utcnow(), free_plan_name=self.free_plan_name)
        used = self.meter.current_period_usage(account_id, operation_type, since)
        free_quota = first_tier.free_quota

        if used <= free_quota:
            return QuotaDecision.allow(used=used, free_quota=free_quota)

        if is_free:
            return QuotaDecision.deny(
                f"You have exceeded your free daily quota for {operation_type}. Please upgrade your plan.",
                used=used,
                free_quota=free_quota,
            )

        account = self.db.get(Account, account_id)
        if account is None or not account.payment_method:
            return QuotaDecision.deny(
                f"You have exceeded your free quota for {operation_type}. Please add a payment method.",
                used=used,
                free_quota=free_quota,
            )

        # Overage on a paid plan is billed later
        return QuotaDecision.allow(used=used, free_quota=free_quota)

    def enforce(self, account_id: Optional[str], api_key_id: Optional[str], operation_type: str) -> QuotaDecision:
        """Like check(), but raise QuotaExceeded on denial."""
        decision = self.check(account_id, api_key_id, operation_type)
        if not decision.allowed:
            logger.info(f"Quota denied {operation_type} for {account_id}: {decision.reason}")
            raise QuotaExceeded(decision.reason)
        return decision
