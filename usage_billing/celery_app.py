from celery import Celery

from usage_billing.services.scheduler_config import build_beat_schedule, get_celery_config

celery_app = Celery("usage_billing", include=["usage_billing.tasks"])
celery_app.conf.update(get_celery_config())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    beat_schedule=build_beat_schedule(),
)
