"""Scheduled jobs. Each task opens its own session and returns a JSON summary."""
import logging

from usage_billing.celery_app import celery_app
from usage_billing.db import SessionLocal
from usage_billing.services.billing_cycle import billing_cycles
from usage_billing.services.reports import reports
from usage_billing.services.webhooks import processed_events

logger = logging.getLogger(__name__)


@celery_app.task(name="usage_billing.tasks.sweep_billing_cycles")
def sweep_billing_cycles() -> dict:
    db = SessionLocal()
    try:
        result = billing_cycles.sweep_due_accounts(db)
    finally:
        db.close()
    if result["failures"]:
        logger.warning(
            "Billing sweep completed with %d failed accounts", len(result["failures"])
        )
    return result


@celery_app.task(name="usage_billing.tasks.check_usage_limits")
def check_usage_limits() -> dict:
    db = SessionLocal()
    try:
        return reports.check_usage_limits(db)
    finally:
        db.close()


@celery_app.task(name="usage_billing.tasks.generate_usage_report")
def generate_usage_report() -> dict:
    db = SessionLocal()
    try:
        return reports.generate_usage_report(db)
    finally:
        db.close()


@celery_app.task(name="usage_billing.tasks.prune_processed_events")
def prune_processed_events() -> dict:
    db = SessionLocal()
    try:
        return {"deleted": processed_events.prune_processed(db)}
    finally:
        db.close()
