# dotformer/metering.py
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.orm import Session

from dotformer.models import OPERATION_TYPES, UsageRecord, utcnow

logger = logging.getLogger(__name__)

USAGE_RECORDED = Counter("dotformer_usage_records_total", "Usage records written", ["operation_type"])
USAGE_FAILURES = Counter("dotformer_usage_record_failures_total", "Usage records that failed to write")
USAGE_DROPPED = Counter("dotformer_usage_events_dropped_total", "Usage events dropped on a full queue")

DEFAULT_UNITS = {
    "upload": "bytes",
    "transform": "transformations",
    "storage": "bytes",
    "api": "calls",
}


@dataclass
class UsageEvent:
    account_id: str
    operation_type: str
    quantity: int = 1
    unit: str = "calls"
    api_key_id: Optional[str] = None
    resource_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


def default_quantity(operation_type: str, byte_size: Optional[int] = None) -> tuple[int, str]:
    """Quantity and unit metered for one operation.

    Uploads and storage are metered in bytes when the size is known; every
    other operation counts as one unit.
    """
    if operation_type in ("upload", "storage") and byte_size is not None:
        return max(0, int(byte_size)), "bytes"
    if operation_type == "storage":
        return 1, "bytes"
    return 1, DEFAULT_UNITS.get(operation_type, "calls")


def day_start(now: Optional[datetime] = None) -> datetime:
    now = (now or utcnow()).astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(now: Optional[datetime] = None) -> datetime:
    return day_start(now).replace(day=1)


def period_start(plan_name: Optional[str], now: Optional[datetime] = None, free_plan_name: str = "Free") -> datetime:
    """Start of the quota period: UTC day for the free plan, UTC month otherwise."""
    if plan_name is None or plan_name == free_plan_name:
        return day_start(now)
    return month_start(now)


class UsageMeter:
    """Write and aggregate usage records for one session."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        account_id: str,
        operation_type: str,
        quantity: int = 1,
        unit: str = "calls",
        api_key_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> UsageRecord:
        if operation_type not in OPERATION_TYPES:
            raise ValueError(f"Unknown operation type: {operation_type}")
        if quantity < 0:
            raise ValueError("Usage quantity must be >= 0")

        record = UsageRecord(
            account_id=account_id,
            api_key_id=api_key_id,
            operation_type=operation_type,
            resource_id=resource_id,
            quantity=quantity,
            unit=unit,
            timestamp=timestamp or utcnow(),
            billed=False,
        )
        self.db.add(record)
        self.db.commit()
        USAGE_RECORDED.labels(operation_type=operation_type).inc()
        return record

    def current_period_usage(self, account_id: str, operation_type: str, since: datetime) -> int:
        """Sum of quantity for the account/operation from ``since`` until now."""
        total = self.db.query(func.coalesce(func.sum(UsageRecord.quantity), 0)).filter(
            UsageRecord.account_id == account_id,
            UsageRecord.operation_type == operation_type,
            UsageRecord.timestamp >= since,
        ).scalar()
        return int(total or 0)


_STOP = object()


class UsageRecorder:
    """Bounded background writer for usage events.

    ``submit`` never blocks and never raises; write failures are logged and
    counted instead of reaching the request that produced the event.
    """

    def __init__(self, session_factory: Callable[[], Session], maxsize: int = 10_000):
        self.session_factory = session_factory
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="usage-recorder", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Drain pending events and stop the worker."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def join(self) -> None:
        """Block until every submitted event has been handled."""
        self._queue.join()

    def submit(self, event: UsageEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            USAGE_DROPPED.inc()
            logger.warning(
                f"Usage queue full; dropped {event.operation_type} event for {event.account_id}"
            )
            return False

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._write(event)
            except Exception as e:
                USAGE_FAILURES.inc()
                logger.error(f"Failed to record usage for {getattr(event, 'account_id', '?')}: {e}")
            finally:
                self._queue.task_done()

    def _write(self, event: UsageEvent) -> None:
        db = self.session_factory()
        try:
            UsageMeter(db).record(
                account_id=event.account_id,
                operation_type=event.operation_type,
                quantity=event.quantity,
                unit=event.unit,
                api_key_id=event.api_key_id,
                resource_id=event.resource_id,
                timestamp=event.timestamp,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
