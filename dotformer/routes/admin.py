# dotformer/routes/admin.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from dotformer.auth import require_admin
from dotformer.billing import BillingService
from dotformer.database import get_db
from dotformer.errors import DotformerError
from dotformer.scheduler import as_utc, previous_month_range
from dotformer.schemas import BillingRunRequest, BillingRunResponse

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/billing/run", response_model=BillingRunResponse)
def run_billing(request: BillingRunRequest, db: Session = Depends(get_db)):
    """Generate bills on demand; defaults to the previous UTC month."""
    start_date, end_date = previous_month_range()
    if request.start_date:
        start_date = as_utc(request.start_date)
    if request.end_date:
        end_date = as_utc(request.end_date)
    if start_date >= end_date:
        raise DotformerError("start_date must be before end_date", code="invalid_period", status=400)

    bills = BillingService(db).generate_bills(start_date, end_date)
    return {"bills": bills, "start_date": start_date, "end_date": end_date}
