# dotformer/models.py
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, Column, String, Integer, BigInteger, Numeric, DateTime, ForeignKey, Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from dotformer.database import Base

OPERATION_TYPES = ("upload", "transform", "storage", "api")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str):
    return lambda: f"{prefix}_{uuid.uuid4().hex[:24]}"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=new_id("acc"))
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    subscription = relationship("Subscription", back_populates="account", uselist=False)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, default=new_id("key"))
    key_hash = Column(String, unique=True, nullable=False)
    key_prefix = Column(String, nullable=False)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)


class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id = Column(String, primary_key=True, default=new_id("plan"))
    name = Column(String, unique=True, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    pricing_tiers = relationship(
        "PricingTier",
        back_populates="pricing_plan",
        cascade="all, delete-orphan",
        order_by="PricingTier.tier",
    )

    def tiers_for(self, operation_type: str) -> list["PricingTier"]:
        """Tiers for one operation, ascending by ordinal."""
        return sorted(
            (t for t in self.pricing_tiers if t.operation_type == operation_type),
            key=lambda t: t.tier,
        )


class PricingTier(Base):
    __tablename__ = "pricing_tiers"

    id = Column(String, primary_key=True, default=new_id("tier"))
    pricing_plan_id = Column(String, ForeignKey("pricing_plans.id"), nullable=False)
    operation_type = Column(String, nullable=False)
    tier = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(18, 10), nullable=False, default=0)
    unit_type = Column(String, nullable=False)
    free_quota = Column(BigInteger, nullable=False, default=0)
    min_quantity = Column(BigInteger, nullable=False, default=0)
    max_quantity = Column(BigInteger, nullable=True)

    pricing_plan = relationship("PricingPlan", back_populates="pricing_tiers")

    __table_args__ = (
        UniqueConstraint("pricing_plan_id", "operation_type", "tier", name="uq_plan_operation_tier"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=new_id("sub"))
    account_id = Column(String, ForeignKey("accounts.id"), unique=True, nullable=False)
    pricing_plan_id = Column(String, ForeignKey("pricing_plans.id"), nullable=False)
    status = Column(String, nullable=False, default="active")
    start_date = Column(DateTime(timezone=True), default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="subscription")
    pricing_plan = relationship("PricingPlan")


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id = Column(String, primary_key=True, default=new_id("use"))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    api_key_id = Column(String, ForeignKey("api_keys.id"), nullable=True)
    operation_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=True)
    quantity = Column(BigInteger, nullable=False, default=1)
    unit = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    billed = Column(Boolean, nullable=False, default=False)
    bill_id = Column(String, ForeignKey("bills.id"), nullable=True)

    __table_args__ = (
        Index("idx_usage_account_operation_time", "account_id", "operation_type", "timestamp"),
        Index("idx_usage_unbilled", "account_id", "billed", "timestamp"),
    )


class Bill(Base):
    __tablename__ = "bills"

    id = Column(String, primary_key=True, default=new_id("bill"))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="USD")
    status = Column(String, nullable=False, default="pending")
    start_period = Column(DateTime(timezone=True), nullable=False)
    end_period = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    usage_records = relationship("UsageRecord")
