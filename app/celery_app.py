from celery import Celery
from celery.schedules import crontab

from app.config import settings

celery_app = Celery(
    "memberbridge",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,
    task_soft_time_limit=1740,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,
)

celery_app.conf.beat_schedule = {
    "kiwify-sales-sync-hourly": {
        "task": "sync_platform_sales",
        "schedule": crontab(minute=0),
        "args": ["kiwify"],
    },
    "hotmart-sales-sync-hourly": {
        "task": "sync_platform_sales",
        "schedule": crontab(minute=30),
        "args": ["hotmart"],
    },
    "telegram-group-sweep": {
        "task": "sweep_telegram_group",
        "schedule": crontab(minute=15, hour="*/6"),
        "args": [],
    },
}
