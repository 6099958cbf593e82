# dotformer/plans.py
"""Pricing plan catalogue and tiered price calculation."""
import logging
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dotformer.models import PricingPlan, PricingTier

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
GIB = 1024 * MIB

# name -> (description, [(operation_type, unit_price, unit_type, free_quota, max_quantity)])
DEFAULT_PLANS = {
    "Free": (
        "Free tier with limited usage",
        [
            ("upload", "0", "bytes", 100 * MIB, 100 * MIB),
            ("transform", "0", "transformations", 10, 10),
            ("storage", "0", "bytes", 100 * MIB, 100 * MIB),
            ("api", "0", "calls", 100, 100),
        ],
    ),
    "Basic": (
        "Pay-as-you-go pricing for individuals",
        [
            ("upload", "0.00000005", "bytes", 512 * MIB, None),
            ("transform", "0.01", "transformations", 50, None),
            ("storage", "0.00000005", "bytes", 1 * GIB, None),
            ("api", "0.001", "calls", 1000, None),
        ],
    ),
    "Professional": (
        "Premium pricing with higher quotas for professionals",
        [
            ("upload", "0.00000004", "bytes", 5 * GIB, None),
            ("transform", "0.008", "transformations", 200, None),
            ("storage", "0.00000004", "bytes", 10 * GIB, None),
            ("api", "0.0008", "calls", 5000, None),
        ],
    ),
}


def _decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def build_plan(name: str) -> PricingPlan:
    """Build (but do not persist) one of the default plans."""
    description, tiers = DEFAULT_PLANS[name]
    return PricingPlan(
        name=name,
        description=description,
        is_active=True,
        pricing_tiers=[
            PricingTier(
                operation_type=operation_type,
                tier=1,
                unit_price=Decimal(unit_price),
                unit_type=unit_type,
                free_quota=free_quota,
                min_quantity=0,
                max_quantity=max_quantity,
            )
            for operation_type, unit_price, unit_type, free_quota, max_quantity in tiers
        ],
    )


def get_plan_by_name(db: Session, name: str) -> Optional[PricingPlan]:
    return db.query(PricingPlan).filter(PricingPlan.name == name).first()


def ensure_plan(db: Session, name: str) -> PricingPlan:
    """Return the named default plan, creating it on first use.

    Plan names are unique, so a concurrent creator wins the insert and the
    loser's IntegrityError is treated as a no-op followed by a re-read.
    """
    plan = get_plan_by_name(db, name)
    if plan is not None:
        return plan

    db.add(build_plan(name))
    try:
        db.commit()
        logger.info(f"Created default pricing plan {name}")
    except IntegrityError:
        db.rollback()
        logger.debug(f"Pricing plan {name} was created concurrently")

    plan = get_plan_by_name(db, name)
    if plan is None:
        raise RuntimeError(f"Pricing plan {name} could not be created")
    return plan


def ensure_default_plans(db: Session) -> dict[str, PricingPlan]:
    """Idempotently create every default plan."""
    return {name: ensure_plan(db, name) for name in DEFAULT_PLANS}


def _upper_bound(tiers: list[PricingTier], index: int) -> Optional[int]:
    """A tier ends at its max, else where the next tier starts, else never."""
    tier = tiers[index]
    if tier.max_quantity is not None:
        return tier.max_quantity
    if index + 1 < len(tiers):
        return tiers[index + 1].min_quantity
    return None


def price_usage(tiers: Iterable[PricingTier], used: int) -> Decimal:
    """Price a period's usage of one operation across its tiers.

    Tier 1's free quota is deducted first. Each tier then absorbs up to its
    band width at its unit price; the last open-ended tier absorbs the rest.
    Tier 1's band already holds the free quota, so only the part of it above
    the free quota is billable.
    """
    tiers = sorted(tiers, key=lambda t: t.tier)
    if not tiers:
        return Decimal("0")

    free_quota = tiers[0].free_quota or 0
    remaining = max(0, used - free_quota)
    total = Decimal("0")

    for index, tier in enumerate(tiers):
        if remaining <= 0:
            break

        upper = _upper_bound(tiers, index)
        width = None if upper is None else max(0, upper - (tier.min_quantity or 0))
        if index == 0 and width is not None:
            width = max(0, width - free_quota)

        consumed = remaining if width is None else min(remaining, width)
        total += Decimal(consumed) * _decimal(tier.unit_price)
        remaining -= consumed

    return total


def apply_minimum_charge(total: Decimal, plan_name: str, minimum_charges: Mapping[str, Decimal]) -> Decimal:
    """Raise a non-zero total to the plan's minimum charge."""
    floor = minimum_charges.get(plan_name)
    if floor is None:
        return total
    floor = _decimal(floor)
    if 0 < total < floor:
        return floor
    return total
