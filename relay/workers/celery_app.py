"""
Celery Application Configuration
"""
from celery import Celery

from relay.core.config import settings

celery_app = Celery(
    "soundpath_relay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["relay.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.WORKER_TASK_TIME_LIMIT_SECONDS,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule: every dispatcher polls its table on the same interval.
# Overlapping runs are safe, the job store claims each job at most once.
celery_app.conf.beat_schedule = {
    "dispatch-webhooks": {
        "task": "relay.workers.tasks.dispatch_webhooks",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    },
    "dispatch-communications": {
        "task": "relay.workers.tasks.dispatch_communications",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    },
    "dispatch-push": {
        "task": "relay.workers.tasks.dispatch_push",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    },
    "dispatch-calendar": {
        "task": "relay.workers.tasks.dispatch_calendar",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    },
}
