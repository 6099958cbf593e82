# tests/test_billing.py
from decimal import Decimal
import pytest
from sqlalchemy import update
from dotformer.billing import BillingService
from dotformer.errors import BillingConflict, NoActiveSubscription, NotFound
from dotformer.models import Account, Bill, Subscription, UsageRecord, utcnow
from dotformer.plans import ensure_plan
from conftest import add_usage, make_plan, subscribe, utc

MINIMUMS = {"Basic": Decimal("5.00"), "Professional": Decimal("20.00")}
START = utc(2024, 2, 1)
END = utc(2024, 3, 1)

TWO_TIERS = [
    ("transform", 1, "0", 50, 0, 50),
    ("transform", 2, "0.01", 0, 50, None),
]


def service(db):
    return BillingService(db, minimum_charges=MINIMUMS, currency="USD")


def unbilled(db, account_id):
    return db.query(UsageRecord).filter(
        UsageRecord.account_id == account_id,
        UsageRecord.billed.is_(False),
    ).count()


class TestGenerateBill:
    def test_tiered_amount(self, db, account):
        subscribe(db, account.id, make_plan(db, "Metered", TWO_TIERS))
        add_usage(db, account.id, "transform", 1, utc(2024, 2, 10), count=120)

        bill = service(db).generate_bill_for_account(account.id, START, END)

        assert bill.amount == Decimal("0.70")
        assert bill.status == "pending"
        assert bill.currency == "USD"
        assert unbilled(db, account.id) == 0
        assert {r.bill_id for r in db.query(UsageRecord).all()} == {bill.id}

    def test_minimum_floor(self, db, account):
        subscribe(db, account.id, make_plan(db, "Basic", TWO_TIERS))
        add_usage(db, account.id, "transform", 120, utc(2024, 2, 10))

        bill = service(db).generate_bill_for_account(account.id, START, END)

        assert bill.amount == Decimal("5.00")

    def test_zero_cost_skips_and_leaves_records_unbilled(self, db, account):
        subscribe(db, account.id, make_plan(db, "Basic", TWO_TIERS))
        add_usage(db, account.id, "transform", 1, utc(2024, 2, 10), count=50)

        assert service(db).generate_bill_for_account(account.id, START, END) is None
        assert unbilled(db, account.id) == 50
        assert db.query(Bill).count() == 0

    def test_period_is_half_open(self, db, account):
        subscribe(db, account.id, make_plan(db, "Metered", TWO_TIERS))
        add_usage(db, account.id, "transform", 60, START)
        add_usage(db, account.id, "transform", 1000, END)

        bill = service(db).generate_bill_for_account(account.id, START, END)

        assert bill.amount == Decimal("0.10")
        assert unbilled(db, account.id) == 1

    def test_uncovered_operations_cost_nothing(self, db, account):
        subscribe(db, account.id, make_plan(db, "Metered", TWO_TIERS))
        add_usage(db, account.id, "upload", 10**9, utc(2024, 2, 10))
        assert service(db).generate_bill_for_account(account.id, START, END) is None

    def test_concurrently_billed_record_rolls_back_the_bill(self, db, account, mocker):
        subscribe(db, account.id, make_plan(db, "Metered", TWO_TIERS))
        add_usage(db, account.id, "transform", 1, utc(2024, 2, 10), count=120)
        taken_id = db.query(UsageRecord.id).first()[0]

        real_flush = db.flush

        def flush_then_race(*args, **kwargs):
            real_flush(*args, **kwargs)
            # Another run marks one of the loaded records between the insert and the update
            db.execute(
                update(UsageRecord)
                .where(UsageRecord.id == taken_id)
                .values(billed=True)
                .execution_options(synchronize_session=False)
            )

        mocker.patch.object(db, "flush", side_effect=flush_then_race)

        with pytest.raises(BillingConflict):
            service(db).generate_bill_for_account(account.id, START, END)

        mocker.stopall()
        db.expire_all()
        assert db.query(Bill).count() == 0
        others = db.query(UsageRecord).filter(UsageRecord.id != taken_id).all()
        assert len(others) == 119
        assert all(r.billed is False and r.bill_id is None for r in others)

    def test_requires_active_subscription(self, db, account):
        with pytest.raises(NoActiveSubscription):
            service(db).generate_bill_for_account(account.id, START, END)


class TestGenerateBills:
    def test_no_double_billing(self, db, account):
        subscribe(db, account.id, make_plan(db, "Metered", TWO_TIERS))
        add_usage(db, account.id, "transform", 1, utc(2024, 2, 10), count=120)

        first = service(db).generate_bills(START, END)
        second = service(db).generate_bills(START, END)

        assert len(first) == 1
        assert second == []
        assert db.query(Bill).count() == 1

    def test_failure_is_isolated_per_account(self, db, account, mocker):
        plan = make_plan(db, "Metered", TWO_TIERS)
        other = Account(email="other@example.com")
        db.add(other)
        db.commit()
        for account_id in (account.id, other.id):
            subscribe(db, account_id, plan)
            add_usage(db, account_id, "transform", 120, utc(2024, 2, 10))

        billing = service(db)
        original = billing.generate_bill_for_account
        failing_id = account.id

        def flaky(account_id, start_date, end_date):
            if account_id == failing_id:
                raise RuntimeError("payment provider down")
            return original(account_id, start_date, end_date)

        mocker.patch.object(billing, "generate_bill_for_account", side_effect=flaky)
        bills = billing.generate_bills(START, END)

        assert [b.account_id for b in bills] == [other.id]
        assert unbilled(db, failing_id) == 1

    def test_inactive_subscriptions_are_skipped(self, db, account):
        subscribe(db, account.id, make_plan(db, "Metered", TWO_TIERS))
        db.query(Subscription).update({Subscription.status: "cancelled"})
        db.commit()
        add_usage(db, account.id, "transform", 120, utc(2024, 2, 10))

        assert service(db).generate_bills(START, END) == []


class TestBillingQueries:
    def test_current_usage(self, db, account):
        subscribe(db, account.id, ensure_plan(db, "Basic"))
        add_usage(db, account.id, "transform", 1, utcnow(), count=60)
        add_usage(db, account.id, "upload", 2048, utcnow())

        usage = service(db).current_usage(account.id)

        assert usage["usage_by_operation"]["transform"] == {"total": 60, "unit": "transformations"}
        assert usage["usage_by_operation"]["upload"]["total"] == 2048
        assert usage["estimated_cost"] == Decimal("0.10")
        assert usage["currency"] == "USD"

    def test_billing_history_pages(self, db, account):
        for month in (1, 2, 3):
            db.add(Bill(
                account_id=account.id,
                amount=Decimal("5.00"),
                start_period=utc(2024, month, 1),
                end_period=utc(2024, month + 1, 1),
                created_at=utc(2024, month + 1, 1, 1),
            ))
        db.commit()

        history = service(db).billing_history(account.id, limit=2, offset=0)

        assert history["total"] == 3
        assert len(history["bills"]) == 2
        assert history["bills"][0].start_period.month == 3

    def test_pay_bill(self, db, account):
        bill = Bill(account_id=account.id, amount=Decimal("5.00"), start_period=START, end_period=END)
        db.add(bill)
        db.commit()

        paid = service(db).pay_bill(bill.id, account_id=account.id)
        assert paid.status == "paid"
        assert paid.paid_at is not None

        with pytest.raises(BillingConflict):
            service(db).pay_bill(bill.id, account_id=account.id)

    def test_pay_foreign_bill_is_not_found(self, db, account):
        bill = Bill(account_id=account.id, amount=Decimal("5.00"), start_period=START, end_period=END)
        db.add(bill)
        db.commit()
        with pytest.raises(NotFound):
            service(db).pay_bill(bill.id, account_id="acc_someone_else")

    def test_subscribe_replaces_existing_subscription(self, db, account):
        basic = ensure_plan(db, "Basic")
        professional = ensure_plan(db, "Professional")

        service(db).subscribe_to_plan(account.id, basic.id)
        subscription = service(db).subscribe_to_plan(account.id, professional.id)

        assert subscription.pricing_plan_id == professional.id
        assert db.query(Subscription).filter(Subscription.account_id == account.id).count() == 1

    def test_subscribe_unknown_plan(self, db, account):
        with pytest.raises(NotFound):
            service(db).subscribe_to_plan(account.id, "plan_missing")

    def test_pricing_plans_lists_active_only(self, db):
        ensure_plan(db, "Basic")
        free = ensure_plan(db, "Free")
        free.is_active = False
        db.commit()
        assert [p.name for p in service(db).pricing_plans()] == ["Basic"]

    def test_update_payment_method(self, db, account):
        updated = service(db).update_payment_method(account.id, "pm_abc")
        assert updated.payment_method == "pm_abc"
