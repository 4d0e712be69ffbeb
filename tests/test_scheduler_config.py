from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from usage_billing import tasks
from usage_billing.services import scheduler_config


@pytest.fixture
def clear_scheduler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    keys = (
        "CELERY_BROKER_URL",
        "CELERY_RESULT_BACKEND",
        "CELERY_TIMEZONE",
        "CELERY_BEAT_MAX_LOOP_INTERVAL",
        "BILLING_SWEEP_HOUR",
        "REDIS_URL",
    )
    for key in keys:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def session_mock() -> MagicMock:
    return MagicMock(name="task_session")


def test_get_celery_config_uses_explicit_values(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker.example:6379/2")
    monkeypatch.setenv("CELERY_RESULT_BACKEND", "redis://results.example:6379/3")
    monkeypatch.setenv("CELERY_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("CELERY_BEAT_MAX_LOOP_INTERVAL", "15")

    config = scheduler_config.get_celery_config()

    assert config == {
        "broker_url": "redis://broker.example:6379/2",
        "result_backend": "redis://results.example:6379/3",
        "timezone": "Europe/Berlin",
        "beat_max_loop_interval": 15,
    }


def test_get_celery_config_falls_back_to_redis(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://fallback.example:6379/9")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://fallback.example:6379/9"
    assert config["result_backend"] == "redis://fallback.example:6379/9"
    assert config["timezone"] == "UTC"


def test_get_celery_config_uses_local_defaults(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CELERY_BEAT_MAX_LOOP_INTERVAL", "soon")

    config = scheduler_config.get_celery_config()

    assert config["broker_url"] == "redis://localhost:6379/0"
    assert config["result_backend"] == "redis://localhost:6379/1"
    assert config["beat_max_loop_interval"] == 5


def test_build_beat_schedule_entries(clear_scheduler_env: None) -> None:
    schedule = scheduler_config.build_beat_schedule()

    assert set(schedule) == {
        "billing_cycle_sweep",
        "usage_limit_check",
        "usage_report",
        "processed_event_prune",
    }
    sweep = schedule["billing_cycle_sweep"]
    assert sweep["task"] == scheduler_config.SWEEP_TASK
    assert sweep["schedule"].hour == {0}
    assert sweep["schedule"].minute == {5}
    assert schedule["usage_limit_check"]["schedule"].hour == {9}
    assert schedule["processed_event_prune"]["task"] == scheduler_config.PRUNE_TASK


@pytest.mark.parametrize(("raw", "expected"), [("3", 3), ("23", 23), ("24", 0), ("x", 0)])
def test_build_beat_schedule_sweep_hour(
    clear_scheduler_env: None, monkeypatch: pytest.MonkeyPatch, raw: str, expected: int
) -> None:
    monkeypatch.setenv("BILLING_SWEEP_HOUR", raw)

    schedule = scheduler_config.build_beat_schedule()

    assert schedule["billing_cycle_sweep"]["schedule"].hour == {expected}


def test_scheduled_task_names_are_registered() -> None:
    registered = set(tasks.celery_app.tasks)
    for name in (
        scheduler_config.SWEEP_TASK,
        scheduler_config.CHECK_LIMITS_TASK,
        scheduler_config.REPORT_TASK,
        scheduler_config.PRUNE_TASK,
    ):
        assert name in registered


def test_sweep_task_closes_session(session_mock: MagicMock) -> None:
    result = {"reset_count": 2, "accounts": ["a", "b"], "failures": [], "checked": 2}
    with (
        patch.object(tasks, "SessionLocal", return_value=session_mock),
        patch.object(
            tasks.billing_cycles, "sweep_due_accounts", return_value=result
        ) as sweep,
    ):
        assert tasks.sweep_billing_cycles() == result
    sweep.assert_called_once_with(session_mock)
    session_mock.close.assert_called_once()


def test_sweep_task_closes_session_on_error(session_mock: MagicMock) -> None:
    with (
        patch.object(tasks, "SessionLocal", return_value=session_mock),
        patch.object(
            tasks.billing_cycles, "sweep_due_accounts", side_effect=RuntimeError("db down")
        ),
        pytest.raises(RuntimeError),
    ):
        tasks.sweep_billing_cycles()
    session_mock.close.assert_called_once()


def test_report_tasks_delegate_to_reports(session_mock: MagicMock) -> None:
    with (
        patch.object(tasks, "SessionLocal", return_value=session_mock),
        patch.object(
            tasks.reports, "check_usage_limits", return_value={"over_limit": 1}
        ),
        patch.object(
            tasks.reports, "generate_usage_report", return_value={"total_accounts": 4}
        ),
    ):
        assert tasks.check_usage_limits() == {"over_limit": 1}
        assert tasks.generate_usage_report() == {"total_accounts": 4}
    assert session_mock.close.call_count == 2


def test_prune_task_reports_deleted_count(session_mock: MagicMock) -> None:
    with (
        patch.object(tasks, "SessionLocal", return_value=session_mock),
        patch.object(tasks.processed_events, "prune_processed", return_value=7) as prune,
    ):
        assert tasks.prune_processed_events() == {"deleted": 7}
    prune.assert_called_once_with(session_mock)
