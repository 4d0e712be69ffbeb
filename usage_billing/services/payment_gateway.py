"""Stripe webhook verification and payload helpers."""

import logging
from datetime import UTC, datetime
from typing import Any

import stripe

from usage_billing.config import settings

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper around the parts of Stripe the billing engine consumes."""

    def __init__(
        self, webhook_secret: str | None = None, tolerance: int | None = None
    ) -> None:
        self._webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._tolerance = (
            settings.stripe_webhook_tolerance_seconds if tolerance is None else tolerance
        )

    def is_configured(self) -> bool:
        return bool(self._webhook_secret)

    def validate_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Check the ``Stripe-Signature`` header against the raw request body."""
        if not self.is_configured() or not signature:
            return False
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe signature rejected: %s", exc)
            return False
        return True


def timestamp_to_datetime(value: Any) -> datetime | None:
    """Convert a Stripe unix timestamp to an aware datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring malformed provider timestamp: %r", value)
        return None


def first_price_id(subscription: dict) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


def subscription_period(subscription: dict) -> tuple[datetime | None, datetime | None]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions report the period per subscription item
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return timestamp_to_datetime(start), timestamp_to_datetime(end)


def invoice_period(invoice: dict) -> tuple[datetime | None, datetime | None]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None, None
    period = lines[0].get("period") or {}
    return (
        timestamp_to_datetime(period.get("start")),
        timestamp_to_datetime(period.get("end")),
    )


stripe_gateway = StripeGateway()
