# dotformer/tracking.py
"""Quota admission and usage recording for metered routes."""
import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from dotformer.auth import get_current_api_key
from dotformer.config import settings
from dotformer.database import get_db
from dotformer.metering import UsageEvent, UsageRecorder, default_quantity
from dotformer.models import ApiKey
from dotformer.quota import QuotaEnforcer
from dotformer.services import Services, get_services

logger = logging.getLogger(__name__)


class UsageTracker:
    """Collects what a metered request did and queues one usage event for it."""

    def __init__(
        self,
        recorder: UsageRecorder,
        account_id: str,
        api_key_id: Optional[str],
        operation_type: str,
    ):
        self.recorder = recorder
        self.account_id = account_id
        self.api_key_id = api_key_id
        self.operation_type = operation_type
        self.resource_id: Optional[str] = None
        self.byte_size: Optional[int] = None
        self._submitted = False

    def submit(self) -> None:
        if self._submitted:
            return
        self._submitted = True
        quantity, unit = default_quantity(self.operation_type, self.byte_size)
        self.recorder.submit(UsageEvent(
            account_id=self.account_id,
            api_key_id=self.api_key_id,
            operation_type=self.operation_type,
            resource_id=self.resource_id,
            quantity=quantity,
            unit=unit,
        ))


def track_usage(operation_type: str):
    """Dependency factory: check quota before the route, record usage after it.

    The attempt is recorded whether or not the route succeeds.
    """
    def dependency(
        api_key: ApiKey = Depends(get_current_api_key),
        db: Session = Depends(get_db),
        services: Services = Depends(get_services),
    ):
        QuotaEnforcer(db, free_plan_name=settings.free_plan_name).enforce(
            api_key.account_id, api_key.id, operation_type
        )
        tracker = UsageTracker(services.recorder, api_key.account_id, api_key.id, operation_type)
        try:
            yield tracker
        finally:
            tracker.submit()

    return dependency
