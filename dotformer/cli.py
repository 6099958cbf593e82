"""CLI commands for account, plan and billing administration."""
from datetime import datetime

import click
from dotformer.billing import BillingService
from dotformer.crypto import generate_api_key, get_key_prefix, hash_api_key
from dotformer.database import Base, SessionLocal, engine
from dotformer.errors import DotformerError
from dotformer.models import Account, ApiKey
from dotformer.plans import DEFAULT_PLANS, ensure_default_plans, ensure_plan
from dotformer.scheduler import as_utc, previous_month_range


@click.group()
def cli():
    """Dotformer administration."""
    Base.metadata.create_all(bind=engine)


@cli.command("create-account")
@click.option('--email', required=True, help='Account email address')
@click.option('--name', default=None, help='Display name')
def create_account(email: str, name: str):
    """Create an account and print its first API key."""
    db = SessionLocal()
    try:
        existing = db.query(Account).filter(Account.email == email).first()
        if existing:
            click.echo(f"Error: Account with email {email} already exists")
            return

        account = Account(email=email, name=name)
        db.add(account)
        db.flush()

        key = generate_api_key()
        db.add(ApiKey(
            account_id=account.id,
            key_hash=hash_api_key(key),
            key_prefix=get_key_prefix(key),
        ))
        db.commit()
        click.echo(f"Account created: {account.id}")
        click.echo(f"API key (shown once): {key}")
    except Exception as e:
        click.echo(f"Error: {e}")
        db.rollback()
    finally:
        db.close()


@cli.command("seed-plans")
def seed_plans():
    """Create the default pricing plans if missing."""
    db = SessionLocal()
    try:
        plans = ensure_default_plans(db)
        for name, plan in plans.items():
            click.echo(f"{name}: {plan.id}")
    finally:
        db.close()


@cli.command()
@click.option('--account-id', required=True, help='Account to subscribe')
@click.option('--plan', 'plan_name', required=True, type=click.Choice(sorted(DEFAULT_PLANS)), help='Plan name')
def subscribe(account_id: str, plan_name: str):
    """Subscribe an account to a plan, replacing any current subscription."""
    db = SessionLocal()
    try:
        plan = ensure_plan(db, plan_name)
        subscription = BillingService(db).subscribe_to_plan(account_id, plan.id)
        click.echo(f"Subscribed {account_id} to {plan.name} ({subscription.id})")
    except DotformerError as e:
        click.echo(f"Error: {e.message}")
    finally:
        db.close()


@cli.command("generate-bills")
@click.option('--start', type=click.DateTime(), default=None, help='Period start (UTC)')
@click.option('--end', type=click.DateTime(), default=None, help='Period end, exclusive (UTC)')
def generate_bills(start: datetime, end: datetime):
    """Bill every subscribed account; defaults to the previous month."""
    start_date, end_date = previous_month_range()
    if start:
        start_date = as_utc(start)
    if end:
        end_date = as_utc(end)
    if start_date >= end_date:
        raise click.BadParameter("--start must be before --end")

    db = SessionLocal()
    try:
        bills = BillingService(db).generate_bills(start_date, end_date)
        for bill in bills:
            click.echo(f"{bill.id} {bill.account_id} {bill.amount} {bill.currency}")
        click.echo(f"Generated {len(bills)} bills for {start_date:%Y-%m-%d} - {end_date:%Y-%m-%d}")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
