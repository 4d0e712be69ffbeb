"""Tests for provider webhook ingestion, ordering and idempotency."""

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from threading import Barrier
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from tests.factories import (
    add_feedback,
    add_project,
    create_account,
    encode_event,
    get_counter,
    get_state,
    invoice_object,
    make_event,
    set_records_used,
    stripe_signature,
    subscription_object,
    unique_ref,
)
from usage_billing.models import (
    Payment,
    PaymentStatus,
    PlanId,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionStatus,
)
from usage_billing.services.accounts import accounts
from usage_billing.services.common import add_months
from usage_billing.services.exceptions import (
    HandlerFailure,
    InvalidPayload,
    InvalidSignature,
)
from usage_billing.services.payment_gateway import StripeGateway
from usage_billing.services.visibility import VisibilityRanking, visibility
from usage_billing.services.webhooks import (
    WebhookProcessor,
    processed_events,
    webhook_processor,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _log(db, event_id) -> ProcessedEvent:
    db.expire_all()
    return db.query(ProcessedEvent).filter_by(provider_event_id=event_id).one()


def _failing_handler(db, ctx):
    raise ValueError("handler exploded")


def _subscription_event(account, created, event_type="customer.subscription.updated", **values):
    values.setdefault("period_start", created)
    values.setdefault("period_end", add_months(created))
    return make_event(event_type, subscription_object(account.id, **values), created)


# ── Subscription lifecycle ───────────────────────────────


def test_subscription_created_applies_plan_and_anchors_cycle(db_session, account):
    set_records_used(db_session, account.id, 40)
    sub_ref = unique_ref("sub")
    event = _subscription_event(
        account,
        T0,
        event_type="customer.subscription.created",
        subscription_id=sub_ref,
        customer_id="cus_anchor",
    )

    result = webhook_processor.apply_event(db_session, event, now=T0)

    assert result == {
        "event_id": event["id"],
        "event_type": "customer.subscription.created",
        "status": "processed",
    }
    state = get_state(db_session, account.id)
    assert state.plan_id == PlanId.starter
    assert state.status == SubscriptionStatus.active
    assert state.provider_subscription_ref == sub_ref
    assert state.provider_customer_ref == "cus_anchor"
    assert state.cycle_start.replace(tzinfo=UTC) == T0
    assert state.cycle_end.replace(tzinfo=UTC) == add_months(T0)
    assert state.last_event_at.replace(tzinfo=UTC) == T0
    assert get_counter(db_session, account.id).records_used == 0

    log = _log(db_session, event["id"])
    assert log.processed is True
    assert log.status == ProcessedEventStatus.processed
    assert log.account_id == account.id


def test_subscription_without_period_uses_fallback_window(db_session, account):
    obj = subscription_object(account.id, period_start=T0, period_end=T0)
    obj.pop("current_period_start")
    obj.pop("current_period_end")
    event = make_event("customer.subscription.updated", obj, T0)

    webhook_processor.apply_event(db_session, event, now=T0)

    state = get_state(db_session, account.id)
    assert state.cycle_start.replace(tzinfo=UTC) == T0
    assert state.cycle_end.replace(tzinfo=UTC) == T0 + timedelta(days=30)


def test_unknown_provider_status_keeps_current_status(db_session):
    account = create_account(db_session, status=SubscriptionStatus.past_due)
    event = _subscription_event(account, T0, status="something_new")

    webhook_processor.apply_event(db_session, event, now=T0)

    assert get_state(db_session, account.id).status == SubscriptionStatus.past_due


def test_mid_period_upgrade_keeps_usage(db_session):
    account = create_account(
        db_session,
        plan_id=PlanId.starter,
        cycle_start=T0,
        cycle_end=add_months(T0),
    )
    set_records_used(db_session, account.id, 300)
    event = _subscription_event(
        account,
        T0 + timedelta(days=10),
        price_id="price_pro_monthly",
        period_start=T0,
        period_end=add_months(T0),
    )

    webhook_processor.apply_event(db_session, event, now=T0 + timedelta(days=10))

    assert get_state(db_session, account.id).plan_id == PlanId.pro
    assert get_counter(db_session, account.id).records_used == 300


def test_late_deletion_still_cancels(db_session, account):
    update_event = _subscription_event(account, T0 + timedelta(minutes=10))
    delete_event = _subscription_event(
        account, T0, event_type="customer.subscription.deleted", status="canceled"
    )

    webhook_processor.apply_event(db_session, update_event, now=T0)
    webhook_processor.apply_event(db_session, delete_event, now=T0)

    state = get_state(db_session, account.id)
    assert state.status == SubscriptionStatus.canceled
    # Limits stay until the cycle runs out
    assert state.plan_id == PlanId.starter


def test_stale_update_after_deletion_is_ignored(db_session, account):
    delete_event = _subscription_event(
        account,
        T0 + timedelta(minutes=10),
        event_type="customer.subscription.deleted",
        status="canceled",
    )
    older_update = _subscription_event(account, T0, price_id="price_pro_monthly")
    same_time_update = _subscription_event(
        account, T0 + timedelta(minutes=10), price_id="price_pro_monthly"
    )

    webhook_processor.apply_event(db_session, delete_event, now=T0)
    assert webhook_processor.apply_event(db_session, older_update, now=T0)["status"] == "processed"
    webhook_processor.apply_event(db_session, same_time_update, now=T0)

    state = get_state(db_session, account.id)
    assert state.status == SubscriptionStatus.canceled
    assert state.plan_id == PlanId.free
    assert _log(db_session, older_update["id"]).processed is True


def test_newer_update_after_deletion_applies(db_session, account):
    delete_event = _subscription_event(
        account, T0, event_type="customer.subscription.deleted", status="canceled"
    )
    newer_update = _subscription_event(account, T0 + timedelta(hours=1))

    webhook_processor.apply_event(db_session, delete_event, now=T0)
    webhook_processor.apply_event(db_session, newer_update, now=T0)

    assert get_state(db_session, account.id).status == SubscriptionStatus.active


def test_checkout_completed_sets_plan_and_refs(db_session, account):
    set_records_used(db_session, account.id, 99)
    sub_ref = unique_ref("sub")
    obj = {
        "id": unique_ref("cs"),
        "object": "checkout.session",
        "customer": unique_ref("cus"),
        "subscription": sub_ref,
        "client_reference_id": str(account.id),
        "metadata": {"plan_id": "pro"},
    }
    event = make_event("checkout.session.completed", obj, T0)

    webhook_processor.apply_event(db_session, event, now=T0)

    state = get_state(db_session, account.id)
    assert state.plan_id == PlanId.pro
    assert state.status == SubscriptionStatus.active
    assert state.provider_subscription_ref == sub_ref
    assert state.cycle_end.replace(tzinfo=UTC) == add_months(T0)
    assert get_counter(db_session, account.id).records_used == 0


# ── Invoices ─────────────────────────────────────────────


def test_payment_succeeded_records_payment_and_renews_cycle(db_session):
    sub_ref = unique_ref("sub")
    account = create_account(
        db_session,
        plan_id=PlanId.starter,
        provider_subscription_ref=sub_ref,
        cycle_start=add_months(T0, -1),
        cycle_end=T0,
    )
    set_records_used(db_session, account.id, 250)
    invoice = invoice_object(
        subscription_id=sub_ref, period_start=T0, period_end=add_months(T0)
    )
    event = make_event("invoice.payment_succeeded", invoice, T0 + timedelta(hours=1))

    webhook_processor.apply_event(db_session, event, now=T0)

    payment = db_session.query(Payment).filter_by(provider_invoice_ref=invoice["id"]).one()
    assert payment.account_id == account.id
    assert payment.status == PaymentStatus.succeeded
    assert payment.amount_cents == 1900
    assert payment.plan_at_payment == PlanId.starter
    state = get_state(db_session, account.id)
    assert state.cycle_end.replace(tzinfo=UTC) == add_months(T0)
    assert get_counter(db_session, account.id).records_used == 0


def test_payment_failed_marks_past_due(db_session):
    sub_ref = unique_ref("sub")
    account = create_account(
        db_session, plan_id=PlanId.pro, provider_subscription_ref=sub_ref
    )
    invoice = invoice_object(subscription_id=sub_ref, period_start=T0, period_end=add_months(T0))
    event = make_event("invoice.payment_failed", invoice, T0)

    webhook_processor.apply_event(db_session, event, now=T0)

    assert get_state(db_session, account.id).status == SubscriptionStatus.past_due
    payment = db_session.query(Payment).filter_by(provider_invoice_ref=invoice["id"]).one()
    assert payment.status == PaymentStatus.failed
    assert payment.failure_reason == "Payment attempt 1 failed"


# ── Idempotency & failure handling ───────────────────────


def test_duplicate_delivery_is_applied_once(db_session, account):
    body = encode_event(_subscription_event(account, T0))
    signature = stripe_signature(body)

    first = webhook_processor.ingest(db_session, body, signature, now=T0)
    set_records_used(db_session, account.id, 3)
    second = webhook_processor.ingest(db_session, body, signature, now=T0)

    assert first["status"] == "processed"
    assert second["status"] == "duplicate"
    assert get_counter(db_session, account.id).records_used == 3
    assert db_session.query(ProcessedEvent).filter_by(
        provider_event_id=first["event_id"]
    ).count() == 1


def test_unknown_event_type_is_ignored_but_logged(db_session):
    event = make_event("customer.created", {"id": unique_ref("cus")}, T0)

    result = webhook_processor.apply_event(db_session, event, now=T0)

    assert result["status"] == "ignored"
    assert _log(db_session, event["id"]).processed is True


def test_unresolved_account_is_marked_processed(db_session):
    obj = subscription_object(
        uuid.uuid4(), period_start=T0, period_end=add_months(T0)
    )
    event = make_event("customer.subscription.updated", obj, T0)

    result = webhook_processor.apply_event(db_session, event, now=T0)

    assert result["status"] == "processed"
    log = _log(db_session, event["id"])
    assert log.processed is True
    assert log.account_id is None


def test_visibility_failure_after_commit_keeps_event_processed(db_session, account):
    project = add_project(db_session, account.id)
    item = add_feedback(db_session, project.id, T0 + timedelta(hours=1), is_visible=False)
    event = _subscription_event(account, T0)

    with patch.object(
        VisibilityRanking, "recompute_visibility", side_effect=RuntimeError("ranking down")
    ) as recompute:
        result = webhook_processor.apply_event(db_session, event, now=T0)

    assert result["status"] == "processed"
    assert recompute.call_count == 1
    assert get_state(db_session, account.id).plan_id == PlanId.starter
    log = _log(db_session, event["id"])
    assert log.processed is True
    assert log.retry_count == 0

    assert webhook_processor.apply_event(db_session, event, now=T0)["status"] == "duplicate"

    visibility.recompute_visibility(db_session, account.id)
    db_session.refresh(item)
    assert item.is_visible is True


def test_handler_failure_rolls_back_and_counts_retry(db_session, account):
    event = _subscription_event(account, T0)

    def _explode(db, ctx):
        state = accounts.get_state(db, account.id)
        state.plan_id = PlanId.pro
        db.flush()
        raise RuntimeError("boom")

    with patch.dict(
        "usage_billing.services.webhooks._HANDLERS",
        {"customer.subscription.updated": _explode},
    ):
        with pytest.raises(HandlerFailure) as exc_info:
            webhook_processor.apply_event(db_session, event, now=T0)

    assert exc_info.value.retry_count == 1
    assert exc_info.value.status_code == 500
    assert get_state(db_session, account.id).plan_id == PlanId.free
    log = _log(db_session, event["id"])
    assert log.processed is False
    assert log.status == ProcessedEventStatus.failed
    assert log.retry_count == 1
    assert log.last_error == "boom"

    # Provider redelivery succeeds
    result = webhook_processor.apply_event(db_session, event, now=T0)

    assert result["status"] == "processed"
    assert get_state(db_session, account.id).plan_id == PlanId.starter
    log = _log(db_session, event["id"])
    assert log.status == ProcessedEventStatus.processed
    assert log.retry_count == 1
    assert log.last_error is None


def test_parallel_duplicate_deliveries_apply_once(thread_session_factory):
    setup = thread_session_factory()
    sub_ref = unique_ref("sub")
    account = create_account(
        setup,
        plan_id=PlanId.starter,
        provider_subscription_ref=sub_ref,
        cycle_start=add_months(T0, -1),
        cycle_end=T0,
    )
    account_id = account.id
    setup.close()
    invoice = invoice_object(subscription_id=sub_ref, period_start=T0, period_end=add_months(T0))
    event = make_event("invoice.payment_succeeded", invoice, T0)

    workers = 4
    barrier = Barrier(workers)

    def _deliver() -> str:
        barrier.wait(timeout=10)
        session = thread_session_factory()
        try:
            return webhook_processor.apply_event(session, event, now=T0)["status"]
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=workers) as pool:
        statuses = [f.result() for f in [pool.submit(_deliver) for _ in range(workers)]]

    assert sorted(statuses) == ["duplicate"] * (workers - 1) + ["processed"]
    check = thread_session_factory()
    try:
        assert check.query(Payment).filter_by(account_id=account_id).count() == 1
        assert check.query(ProcessedEvent).filter_by(
            provider_event_id=event["id"]
        ).count() == 1
    finally:
        check.close()


# ── Verification ─────────────────────────────────────────


def test_invalid_signature_is_rejected_without_logging(db_session, account):
    event = _subscription_event(account, T0)
    body = encode_event(event)

    with pytest.raises(InvalidSignature):
        webhook_processor.ingest(
            db_session, body, stripe_signature(body, secret="whsec_other")
        )

    assert db_session.query(ProcessedEvent).filter_by(
        provider_event_id=event["id"]
    ).count() == 0


def test_stale_signature_timestamp_is_rejected(db_session, account):
    body = encode_event(_subscription_event(account, T0))
    old = int(datetime.now(UTC).timestamp()) - 3600

    with pytest.raises(InvalidSignature):
        webhook_processor.ingest(db_session, body, stripe_signature(body, timestamp=old))


def test_unconfigured_gateway_rejects_everything(db_session, account):
    processor = WebhookProcessor(gateway=StripeGateway(webhook_secret=""))
    body = encode_event(_subscription_event(account, T0))

    with pytest.raises(InvalidSignature):
        processor.ingest(db_session, body, stripe_signature(body))


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b'["list"]',
        b'{"type": "customer.subscription.updated", "data": {"object": {}}}',
        b'{"id": "evt_1", "type": "customer.subscription.updated", "data": {}}',
    ],
)
def test_malformed_payload_is_rejected(db_session, body):
    with pytest.raises(InvalidPayload):
        webhook_processor.ingest(db_session, body, stripe_signature(body))


# ── Processed-event log ──────────────────────────────────


def test_replay_applies_failed_event(db_session, account):
    event = _subscription_event(account, T0)
    with patch.dict(
        "usage_billing.services.webhooks._HANDLERS",
        {"customer.subscription.updated": _failing_handler},
    ):
        with pytest.raises(HandlerFailure):
            webhook_processor.apply_event(db_session, event, now=T0)
    log = _log(db_session, event["id"])

    result = processed_events.replay(db_session, str(log.id), now=T0)

    assert result["status"] == "processed"
    assert get_state(db_session, account.id).plan_id == PlanId.starter
    with pytest.raises(HTTPException) as exc_info:
        processed_events.replay(db_session, str(log.id), now=T0)
    assert exc_info.value.status_code == 409


def test_list_filters_by_event_type_and_status(db_session):
    event_type = f"test.{uuid.uuid4().hex[:8]}"
    for _ in range(3):
        webhook_processor.apply_event(db_session, make_event(event_type, {}, T0), now=T0)

    items, total = processed_events.list(
        db_session, "stripe", event_type, "processed", "created_at", "desc", 2, 0
    )

    assert total == 3
    assert len(items) == 2
    with pytest.raises(HTTPException):
        processed_events.list(db_session, None, None, "bogus", "created_at", "desc", 10, 0)


def test_prune_removes_only_old_processed_events(db_session, account):
    done = make_event(f"test.{uuid.uuid4().hex[:8]}", {}, T0)
    webhook_processor.apply_event(db_session, done, now=T0)
    failing = _subscription_event(account, T0)
    with patch.dict(
        "usage_billing.services.webhooks._HANDLERS",
        {"customer.subscription.updated": _failing_handler},
    ):
        with pytest.raises(HandlerFailure):
            webhook_processor.apply_event(db_session, failing, now=T0)

    processed_events.prune_processed(db_session, older_than_days=1)
    assert db_session.query(ProcessedEvent).filter_by(provider_event_id=done["id"]).count() == 1

    deleted = processed_events.prune_processed(
        db_session, older_than_days=1, now=datetime.now(UTC) + timedelta(days=2)
    )

    assert deleted >= 1
    assert db_session.query(ProcessedEvent).filter_by(provider_event_id=done["id"]).count() == 0
    assert db_session.query(ProcessedEvent).filter_by(provider_event_id=failing["id"]).count() == 1
