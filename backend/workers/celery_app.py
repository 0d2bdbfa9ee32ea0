"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "loyaltyops",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.loyalty", "workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.loyalty.*": {"queue": "loyalty"},
        "workers.scheduler.*": {"queue": "loyalty"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Jobs fan out across active merchants via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        "loyalty-catchup-hourly": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(minute=15),
            "kwargs": {"task_name": "workers.loyalty.run_loyalty_catchup"},
            "options": {"queue": "loyalty"},
        },
        "loyalty-expire-rewards-daily": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=4, minute=0),
            "kwargs": {"task_name": "workers.loyalty.expire_loyalty_rewards"},
            "options": {"queue": "loyalty"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
