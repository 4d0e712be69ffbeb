import logging
import os

from celery.schedules import crontab

logger = logging.getLogger(__name__)

SWEEP_TASK = "usage_billing.tasks.sweep_billing_cycles"
CHECK_LIMITS_TASK = "usage_billing.tasks.check_usage_limits"
REPORT_TASK = "usage_billing.tasks.generate_usage_report"
PRUNE_TASK = "usage_billing.tasks.prune_processed_events"


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return None


def get_celery_config() -> dict:
    broker = (
        _env_value("CELERY_BROKER_URL")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/0"
    )
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    timezone = _env_value("CELERY_TIMEZONE") or "UTC"
    beat_max_loop_interval = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL")
    config = {"broker_url": broker, "result_backend": backend, "timezone": timezone}
    config["beat_max_loop_interval"] = (
        beat_max_loop_interval if beat_max_loop_interval is not None else 5
    )
    return config


def build_beat_schedule() -> dict:
    """Daily jobs; the hour of the cycle sweep is set by BILLING_SWEEP_HOUR."""
    sweep_hour = _env_int("BILLING_SWEEP_HOUR")
    if sweep_hour is None or not 0 <= sweep_hour <= 23:
        sweep_hour = 0
    return {
        "billing_cycle_sweep": {
            "task": SWEEP_TASK,
            "schedule": crontab(minute=5, hour=sweep_hour),
        },
        "usage_limit_check": {
            "task": CHECK_LIMITS_TASK,
            "schedule": crontab(minute=0, hour=9),
        },
        "usage_report": {
            "task": REPORT_TASK,
            "schedule": crontab(minute=30, hour=6),
        },
        "processed_event_prune": {
            "task": PRUNE_TASK,
            "schedule": crontab(minute=15, hour=3),
        },
    }
