# tests/conftest.py
# Set environment variables BEFORE any imports that read them
import os
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["TRANSFORM_ENGINE"] = "local"
os.environ["BILLING_SCHEDULE_ENABLED"] = "false"

import io
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from PIL import Image

from dotformer.crypto import generate_api_key, get_key_prefix, hash_api_key
from dotformer.database import Base, SessionLocal, engine
from dotformer.models import (
    Account, ApiKey, PricingPlan, PricingTier, Subscription, UsageRecord,
)


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory engine."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def account(db):
    account = Account(email="owner@example.com", name="Owner")
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def api_key(db, account):
    """A stored key; the plaintext is available as ``api_key.plaintext``."""
    key = generate_api_key()
    record = ApiKey(account_id=account.id, key_hash=hash_api_key(key), key_prefix=get_key_prefix(key))
    db.add(record)
    db.commit()
    record.plaintext = key
    return record


def make_plan(db, name, tiers):
    """Persist a plan from (operation_type, tier, unit_price, free_quota, min, max) tuples."""
    plan = PricingPlan(
        name=name,
        is_active=True,
        pricing_tiers=[
            PricingTier(
                operation_type=operation_type,
                tier=tier,
                unit_price=Decimal(unit_price),
                unit_type="transformations" if operation_type == "transform" else "calls",
                free_quota=free_quota,
                min_quantity=min_quantity,
                max_quantity=max_quantity,
            )
            for operation_type, tier, unit_price, free_quota, min_quantity, max_quantity in tiers
        ],
    )
    db.add(plan)
    db.commit()
    return plan


def subscribe(db, account_id, plan):
    db.add(Subscription(account_id=account_id, pricing_plan_id=plan.id, status="active"))
    db.commit()


def add_usage(db, account_id, operation_type, quantity, timestamp, count=1):
    for _ in range(count):
        db.add(UsageRecord(
            account_id=account_id,
            operation_type=operation_type,
            quantity=quantity,
            unit="transformations" if operation_type == "transform" else "calls",
            timestamp=timestamp,
            billed=False,
        ))
    db.commit()


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def png_bytes():
    """A small RGB PNG."""
    image = Image.new("RGB", (64, 48), (200, 120, 40))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
