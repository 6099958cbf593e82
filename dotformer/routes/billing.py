# dotformer/routes/billing.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from dotformer.auth import get_current_api_key
from dotformer.billing import BillingService
from dotformer.database import get_db
from dotformer.models import ApiKey
from dotformer.schemas import (
    BillSchema, BillingHistoryResponse, CurrentUsageResponse,
    PaymentMethodRequest, PaymentMethodResponse,
    PricingPlanSchema, SubscribeRequest, SubscriptionResponse,
)

router = APIRouter(prefix="/v1/billing", tags=["billing"])


@router.get("/usage", response_model=CurrentUsageResponse)
def current_usage(
    api_key: ApiKey = Depends(get_current_api_key),
    db: Session = Depends(get_db),
):
    """Month-to-date usage and estimated cost."""
    return BillingService(db).current_usage(api_key.account_id)


@router.get("/bills", response_model=BillingHistoryResponse)
def billing_history(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    api_key: ApiKey = Depends(get_current_api_key),
    db: Session = Depends(get_db),
):
    return BillingService(db).billing_history(api_key.account_id, limit=limit, offset=offset)


@router.post("/bills/{bill_id}/pay", response_model=BillSchema)
def pay_bill(
    bill_id: str,
    api_key: ApiKey = Depends(get_current_api_key),
    db: Session = Depends(get_db),
):
    return BillingService(db).pay_bill(bill_id, account_id=api_key.account_id)


@router.get("/pricing-plans", response_model=list[PricingPlanSchema])
def pricing_plans(db: Session = Depends(get_db)):
    """Active pricing plans."""
    return BillingService(db).pricing_plans()


@router.post("/subscribe", response_model=SubscriptionResponse)
def subscribe(
    request: SubscribeRequest,
    api_key: ApiKey = Depends(get_current_api_key),
    db: Session = Depends(get_db),
):
    return BillingService(db).subscribe_to_plan(api_key.account_id, request.plan_id)


@router.post("/payment-method", response_model=PaymentMethodResponse)
def update_payment_method(
    request: PaymentMethodRequest,
    api_key: ApiKey = Depends(get_current_api_key),
    db: Session = Depends(get_db),
):
    account = BillingService(db).update_payment_method(api_key.account_id, request.payment_method_id)
    return PaymentMethodResponse(account_id=account.id, has_payment_method=bool(account.payment_method))
