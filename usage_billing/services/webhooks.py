"""Provider webhook ingestion.

Events are verified, recorded in the processed-event log and applied at
most once. The log row is claimed with a conditional update in the same
transaction as the state change, so parallel redeliveries of one event
cannot both apply it. A failed handler leaves the row unprocessed with an
incremented retry count; the provider's redelivery retries it.
"""
from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from usage_billing.config import settings
from usage_billing.metrics import WEBHOOK_EVENTS
from usage_billing.models.account import Account
from usage_billing.models.billing import (
    PaymentStatus,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionState,
    SubscriptionStatus,
)
from usage_billing.services import plans
from usage_billing.services.accounts import accounts
from usage_billing.services.billing_cycle import billing_cycles
from usage_billing.services.common import (
    add_months,
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    ensure_aware,
    validate_enum,
)
from usage_billing.services.exceptions import HandlerFailure, InvalidPayload, InvalidSignature
from usage_billing.services.payment_gateway import (
    StripeGateway,
    first_price_id,
    invoice_period,
    stripe_gateway,
    subscription_period,
    timestamp_to_datetime,
)
from usage_billing.services.payments import payments
from usage_billing.services.response import ListResponseMixin
from usage_billing.services.visibility import visibility

logger = logging.getLogger(__name__)

# Used when a subscription payload carries no period dates
_FALLBACK_PERIOD = timedelta(days=30)
_MAX_ERROR_LENGTH = 2000

_STATUS_MAP = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.active,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "paused": SubscriptionStatus.past_due,
    "canceled": SubscriptionStatus.canceled,
    "incomplete_expired": SubscriptionStatus.canceled,
    "incomplete": SubscriptionStatus.incomplete,
}


@dataclass
class EventContext:
    event_id: str
    event_type: str
    obj: dict
    created_at: datetime | None
    now: datetime
    account_id: uuid.UUID | None = None
    # Accounts whose visibility must be recomputed after commit
    recompute: set = field(default_factory=set)

    def log_extra(self) -> dict:
        extra = {"event_id": self.event_id, "event_type": self.event_type}
        if self.account_id:
            extra["account_id"] = str(self.account_id)
        return extra


# ── Helpers ──────────────────────────────────────────────


def _parse_event(payload: bytes) -> dict:
    try:
        event = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidPayload("Invalid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise InvalidPayload("Event id and type are required")
    if not isinstance((event.get("data") or {}).get("object"), dict):
        raise InvalidPayload("Event data.object is required")
    return event


def _get_log(db: Session, event_id: str) -> ProcessedEvent | None:
    return (
        db.query(ProcessedEvent)
        .filter(ProcessedEvent.provider_event_id == event_id)
        .one_or_none()
    )


def _as_uuid(value) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _resolve_account(
    db: Session, obj: dict, subscription_ref: str | None
) -> uuid.UUID | None:
    metadata = obj.get("metadata") or {}
    for candidate in (metadata.get("account_id"), obj.get("client_reference_id")):
        account_uuid = _as_uuid(candidate) if candidate else None
        if account_uuid and db.get(Account, account_uuid):
            return account_uuid
    if subscription_ref:
        state = (
            db.query(SubscriptionState)
            .filter(SubscriptionState.provider_subscription_ref == subscription_ref)
            .first()
        )
        if state:
            return state.account_id
    customer_ref = obj.get("customer")
    if customer_ref:
        state = (
            db.query(SubscriptionState)
            .filter(SubscriptionState.provider_customer_ref == customer_ref)
            .first()
        )
        if state:
            return state.account_id
    return None


def _is_stale(state: SubscriptionState, created_at: datetime | None) -> bool:
    last = ensure_aware(state.last_event_at)
    if created_at is None or last is None:
        return False
    if state.status == SubscriptionStatus.canceled:
        return created_at <= last
    return created_at < last


def _touch(state: SubscriptionState, created_at: datetime | None) -> None:
    last = ensure_aware(state.last_event_at)
    if created_at is not None and (last is None or created_at > last):
        state.last_event_at = created_at


def _lock_account(
    db: Session, ctx: EventContext, subscription_ref: str | None
) -> SubscriptionState | None:
    account_id = _resolve_account(db, ctx.obj, subscription_ref)
    if account_id is None:
        logger.warning("Could not resolve account for provider event", extra=ctx.log_extra())
        return None
    ctx.account_id = account_id
    return accounts.get_state(db, account_id, for_update=True)


def _skip_stale(ctx: EventContext, state: SubscriptionState) -> bool:
    if not _is_stale(state, ctx.created_at):
        return False
    logger.info(
        "Ignoring event older than last applied update (%s)",
        ensure_aware(state.last_event_at).isoformat(),
        extra=ctx.log_extra(),
    )
    return True


# ── Handlers ─────────────────────────────────────────────


def _handle_subscription_upsert(db: Session, ctx: EventContext) -> None:
    obj = ctx.obj
    state = _lock_account(db, ctx, obj.get("id"))
    if state is None or _skip_stale(ctx, state):
        return

    price_id = first_price_id(obj)
    plan_id = plans.plan_for_price(price_id) if price_id else state.plan_id
    status = _STATUS_MAP.get(obj.get("status") or "")
    if status is None:
        logger.warning(
            "Unknown provider status %r, keeping %s",
            obj.get("status"),
            state.status.value,
            extra=ctx.log_extra(),
        )
        status = state.status

    period_start, period_end = subscription_period(obj)
    period_start = period_start or ctx.created_at or ctx.now
    period_end = period_end or period_start + _FALLBACK_PERIOD

    plan_changed = plan_id != state.plan_id
    # A plan change that starts a new billing period resets usage; a
    # mid-period change keeps the counter
    force_reset = plan_changed and ensure_aware(state.cycle_start) != period_start
    if plan_changed:
        logger.info(
            "Plan %s from %s to %s",
            "upgrade" if plans.is_upgrade(state.plan_id, plan_id) else "downgrade",
            state.plan_id.value,
            plan_id.value,
            extra=ctx.log_extra(),
        )
    state.plan_id = plan_id
    state.status = status
    state.provider_subscription_ref = obj.get("id") or state.provider_subscription_ref
    state.provider_customer_ref = obj.get("customer") or state.provider_customer_ref
    state.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    reset = billing_cycles.reanchor(
        db, state, period_start, period_end, force_reset=force_reset, now=ctx.now
    )
    _touch(state, ctx.created_at)
    if plan_changed or reset:
        ctx.recompute.add(state.account_id)
    logger.info(
        "Applied subscription update: plan=%s status=%s",
        plan_id.value,
        status.value,
        extra=ctx.log_extra(),
    )


def _handle_subscription_deleted(db: Session, ctx: EventContext) -> None:
    state = _lock_account(db, ctx, ctx.obj.get("id"))
    if state is None:
        return
    # Cancellation applies regardless of ordering; limits stay until the
    # cycle runs out
    state.status = SubscriptionStatus.canceled
    state.cancel_at_period_end = False
    _touch(state, ctx.created_at)
    logger.info("Subscription canceled", extra=ctx.log_extra())


def _handle_payment_succeeded(db: Session, ctx: EventContext) -> None:
    subscription_ref = ctx.obj.get("subscription")
    state = _lock_account(db, ctx, subscription_ref)
    if state is None:
        return
    payments.record_invoice(
        db,
        state.account_id,
        ctx.obj,
        PaymentStatus.succeeded,
        state.plan_id,
        ctx.created_at or ctx.now,
    )
    if _skip_stale(ctx, state):
        return
    period_start, period_end = invoice_period(ctx.obj)
    if subscription_ref and period_start and period_end and period_end > period_start:
        if billing_cycles.reanchor(db, state, period_start, period_end, now=ctx.now):
            ctx.recompute.add(state.account_id)
    _touch(state, ctx.created_at)


def _handle_payment_failed(db: Session, ctx: EventContext) -> None:
    state = _lock_account(db, ctx, ctx.obj.get("subscription"))
    if state is None:
        return
    payments.record_invoice(
        db,
        state.account_id,
        ctx.obj,
        PaymentStatus.failed,
        state.plan_id,
        ctx.created_at or ctx.now,
    )
    if _skip_stale(ctx, state):
        return
    state.status = SubscriptionStatus.past_due
    _touch(state, ctx.created_at)
    logger.info("Subscription marked past due", extra=ctx.log_extra())


def _handle_checkout_completed(db: Session, ctx: EventContext) -> None:
    obj = ctx.obj
    state = _lock_account(db, ctx, obj.get("subscription"))
    if state is None or _skip_stale(ctx, state):
        return
    metadata = obj.get("metadata") or {}
    if metadata.get("plan_id"):
        plan_id = plans.get_plan(metadata["plan_id"]).plan_id
    else:
        plan_id = plans.plan_for_price(metadata.get("price_id"))

    plan_changed = plan_id != state.plan_id
    state.provider_customer_ref = obj.get("customer") or state.provider_customer_ref
    state.provider_subscription_ref = (
        obj.get("subscription") or state.provider_subscription_ref
    )
    state.plan_id = plan_id
    state.status = SubscriptionStatus.active
    reset = False
    if state.cycle_end is None or plan_changed:
        start = ctx.created_at or ctx.now
        reset = billing_cycles.reanchor(
            db, state, start, add_months(start, 1), force_reset=plan_changed, now=ctx.now
        )
    _touch(state, ctx.created_at)
    if plan_changed or reset:
        ctx.recompute.add(state.account_id)
    logger.info("Checkout completed for plan %s", plan_id.value, extra=ctx.log_extra())


_HANDLERS: dict[str, Callable[[Session, EventContext], None]] = {
    "customer.subscription.created": _handle_subscription_upsert,
    "customer.subscription.updated": _handle_subscription_upsert,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_payment_succeeded,
    "invoice.payment_failed": _handle_payment_failed,
    "checkout.session.completed": _handle_checkout_completed,
}


# ── Processor ────────────────────────────────────────────


class WebhookProcessor:
    def __init__(self, gateway: StripeGateway | None = None) -> None:
        self.gateway = gateway or stripe_gateway

    def ingest(
        self, db: Session, payload: bytes, signature: str, now: datetime | None = None
    ) -> dict:
        if not self.gateway.validate_webhook_signature(payload, signature):
            WEBHOOK_EVENTS.labels("unknown", "invalid_signature").inc()
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidSignature("Invalid signature")
        event = _parse_event(payload)
        return self.apply_event(db, event, now)

    def apply_event(self, db: Session, event: dict, now: datetime | None = None) -> dict:
        now = now or datetime.now(UTC)
        event_id = str(event["id"])
        event_type = str(event["type"])
        result = {"event_id": event_id, "event_type": event_type}

        log = _get_log(db, event_id)
        if log is not None and log.processed:
            WEBHOOK_EVENTS.labels(event_type, "duplicate").inc()
            logger.info(
                "Skipping already processed event",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return {**result, "status": "duplicate"}
        log = self._mark_seen(db, event)
        log_id = log.id

        ctx = EventContext(
            event_id=event_id,
            event_type=event_type,
            obj=event["data"]["object"],
            created_at=timestamp_to_datetime(event.get("created")),
            now=now,
        )
        handler = _HANDLERS.get(event_type)
        try:
            claimed = db.execute(
                update(ProcessedEvent)
                .where(ProcessedEvent.id == log_id, ProcessedEvent.processed.is_(False))
                .values(
                    processed=True,
                    status=ProcessedEventStatus.processed,
                    processed_at=now,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                db.rollback()
                WEBHOOK_EVENTS.labels(event_type, "duplicate").inc()
                return {**result, "status": "duplicate"}
            if handler is None:
                outcome = "ignored"
                logger.info("No handler for provider event type", extra=ctx.log_extra())
            else:
                handler(db, ctx)
                outcome = "processed"
            if ctx.account_id is not None:
                db.execute(
                    update(ProcessedEvent)
                    .where(ProcessedEvent.id == log_id)
                    .values(account_id=ctx.account_id)
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except Exception as exc:
            db.rollback()
            retry_count = self._mark_failed(db, log_id, exc)
            WEBHOOK_EVENTS.labels(event_type, "failed").inc()
            logger.error(
                "Webhook handler failed (retry %d): %s",
                retry_count,
                exc,
                exc_info=True,
                extra=ctx.log_extra(),
            )
            raise HandlerFailure(event_id, event_type, retry_count, str(exc)) from exc

        for account_id in ctx.recompute:
            visibility.recompute_after_commit(
                db, account_id, "provider_event", ctx.log_extra()
            )
        WEBHOOK_EVENTS.labels(event_type, outcome).inc()
        return {**result, "status": outcome}

    @staticmethod
    def _mark_seen(db: Session, event: dict) -> ProcessedEvent:
        event_id = str(event["id"])
        log = _get_log(db, event_id)
        if log is not None:
            return log
        log = ProcessedEvent(
            provider="stripe",
            provider_event_id=event_id,
            event_type=str(event["type"]),
            status=ProcessedEventStatus.seen,
            processed=False,
            retry_count=0,
            event_created_at=timestamp_to_datetime(event.get("created")),
            payload=event,
        )
        db.add(log)
        try:
            db.commit()
        except IntegrityError:
            # Inserted by a parallel delivery of the same event
            db.rollback()
            log = _get_log(db, event_id)
            if log is None:
                raise
        return log

    @staticmethod
    def _mark_failed(db: Session, log_id, exc: Exception) -> int:
        db.execute(
            update(ProcessedEvent)
            .where(ProcessedEvent.id == log_id)
            .values(
                status=ProcessedEventStatus.failed,
                processed=False,
                processed_at=None,
                retry_count=ProcessedEvent.retry_count + 1,
                last_error=str(exc)[:_MAX_ERROR_LENGTH],
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        log = db.get(ProcessedEvent, log_id)
        return log.retry_count if log else 0


class ProcessedEvents(ListResponseMixin):
    @staticmethod
    def get(db: Session, item_id: str) -> ProcessedEvent:
        item = db.get(ProcessedEvent, coerce_uuid(item_id))
        if not item:
            raise HTTPException(status_code=404, detail="Webhook event not found")
        return item

    @staticmethod
    def list(
        db: Session,
        provider: str | None,
        event_type: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[ProcessedEvent], int]:
        query = db.query(ProcessedEvent)
        if provider:
            query = query.filter(ProcessedEvent.provider == provider)
        if event_type:
            query = query.filter(ProcessedEvent.event_type == event_type)
        if status:
            query = query.filter(
                ProcessedEvent.status
                == validate_enum(status, ProcessedEventStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": ProcessedEvent.created_at,
                "retry_count": ProcessedEvent.retry_count,
            },
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total

    @staticmethod
    def replay(db: Session, item_id: str, now: datetime | None = None) -> dict:
        """Re-apply a stored event that has not been processed yet."""
        item = ProcessedEvents.get(db, item_id)
        if item.processed:
            raise HTTPException(status_code=409, detail="Webhook event already processed")
        if not item.payload:
            raise HTTPException(status_code=409, detail="Webhook event has no stored payload")
        logger.info(
            "Replaying stored webhook event",
            extra={"event_id": item.provider_event_id, "event_type": item.event_type},
        )
        return webhook_processor.apply_event(db, item.payload, now)

    @staticmethod
    def prune_processed(
        db: Session, older_than_days: int | None = None, now: datetime | None = None
    ) -> int:
        now = now or datetime.now(UTC)
        days = settings.webhook_event_retention_days if older_than_days is None else older_than_days
        cutoff = now - timedelta(days=days)
        result = db.execute(
            delete(ProcessedEvent)
            .where(
                ProcessedEvent.processed.is_(True),
                ProcessedEvent.created_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info("Pruned %d processed webhook events older than %d days", result.rowcount, days)
        return result.rowcount


webhook_processor = WebhookProcessor()
processed_events = ProcessedEvents()
