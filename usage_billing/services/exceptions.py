"""Billing and quota error taxonomy.

Each error carries the HTTP status and envelope code used by
``usage_billing.errors`` when it escapes a request handler.
"""
from __future__ import annotations


class BillingError(Exception):
    status_code = 500
    code = "billing_error"

    def __init__(self, message: str, details: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class UnknownPlan(BillingError):
    """A plan id or provider price is not in the catalog."""

    code = "unknown_plan"

    def __init__(self, plan: object) -> None:
        super().__init__(f"Unknown plan: {plan}", details={"plan": str(plan)})
        self.plan = plan


class LimitExceeded(BillingError):
    status_code = 403
    code = "limit_exceeded"

    def __init__(self, used: int, limit: int) -> None:
        super().__init__(
            f"Record limit of {limit} exceeded ({used} used)",
            details={"used": used, "limit": limit},
        )
        self.used = used
        self.limit = limit


class InvalidSignature(BillingError):
    status_code = 400
    code = "invalid_signature"


class InvalidPayload(BillingError):
    status_code = 400
    code = "invalid_payload"


class HandlerFailure(BillingError):
    code = "webhook_handler_failed"

    def __init__(self, event_id: str, event_type: str, retry_count: int, error: str) -> None:
        super().__init__(
            f"Handler for {event_type} failed",
            details={"event_id": event_id, "retry_count": retry_count},
        )
        self.event_id = event_id
        self.event_type = event_type
        self.retry_count = retry_count
        self.error = error


class ConcurrentAdvanceSkipped(BillingError):
    """Another worker advanced the cycle first."""

    status_code = 409
    code = "concurrent_advance_skipped"
