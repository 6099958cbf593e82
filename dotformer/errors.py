"""Exception classes for dotformer services.

Each error carries a stable ``code`` and the HTTP ``status`` it maps to at the
API boundary.
"""

from __future__ import annotations


class DotformerError(Exception):
    """Base exception for all dotformer errors."""

    status: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status


class NotFound(DotformerError):
    """Raised when a source asset, bill, plan or account does not exist."""

    status = 404
    code = "not_found"


class QuotaExceeded(DotformerError):
    """Raised when the quota enforcer denies a metered operation."""

    status = 429
    code = "quota_exceeded"


class TransformFailed(DotformerError):
    """Raised for engine failures, undecodable input and engine timeouts.

    Not retried automatically.
    """

    status = 422
    code = "transform_failed"


class NoActiveSubscription(DotformerError):
    """Raised when billing an account that has no active subscription."""

    status = 400
    code = "no_active_subscription"


class BillingConflict(DotformerError):
    """Raised when usage records were billed by an overlapping run."""

    status = 409
    code = "billing_conflict"


class TransientStoreError(DotformerError):
    """Raised for blob-store connectivity failures that survived retries."""

    status = 503
    code = "store_unavailable"
