"""
Celery worker for webhook delivery and integration housekeeping

    celery -A app.celery_config:celery_app worker --beat --loglevel=info
"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue
import logging

from config import settings

logger = logging.getLogger(__name__)

CELERY_NAMESPACE = settings.REDIS_KEY_PREFIX.replace(":", "_")
DELIVERY_QUEUE = f"{CELERY_NAMESPACE}.integration_delivery"
MAINTENANCE_QUEUE = f"{CELERY_NAMESPACE}.integration_maintenance"
TASK_MODULE = "app.tasks.webhook_tasks"

# task name -> (queue, routing key)
ROUTES = {
    "deliver_integration_webhook": (DELIVERY_QUEUE, "integration.deliver"),
    "retry_webhook_deliveries": (DELIVERY_QUEUE, "integration.deliver"),
    "sweep_stale_usage_sessions": (MAINTENANCE_QUEUE, "integration.maintenance"),
    "flush_api_key_usage": (MAINTENANCE_QUEUE, "integration.maintenance"),
}

celery_app = Celery(
    f"{CELERY_NAMESPACE}.integration",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[TASK_MODULE],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=3600,
    timezone="UTC",
    enable_utc=True,

    # A delivery attempt is bounded by the HTTP timeout; the limits catch hangs
    task_time_limit=2 * 60,
    task_soft_time_limit=90,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    task_default_queue=DELIVERY_QUEUE,
    task_default_routing_key="integration.deliver",
    task_queues=(
        Queue(DELIVERY_QUEUE, routing_key="integration.deliver"),
        Queue(MAINTENANCE_QUEUE, routing_key="integration.maintenance"),
    ),
    task_routes={
        f"{TASK_MODULE}.{name}": {"queue": queue, "routing_key": routing_key}
        for name, (queue, routing_key) in ROUTES.items()
    },

    worker_hijack_root_logger=False,
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s] [%(task_name)s(%(task_id)s)] %(message)s",
)


def build_beat_schedule() -> dict:
    if not settings.ENABLE_INTEGRATION_API:
        return {}

    schedule = {
        "sweep-stale-usage-sessions": {
            "task": f"{TASK_MODULE}.sweep_stale_usage_sessions",
            "schedule": crontab(minute="*"),
            "options": {"expires": 60},
        },
        "flush-api-key-usage": {
            "task": f"{TASK_MODULE}.flush_api_key_usage",
            "schedule": crontab(minute="*/10"),
            "options": {"expires": 600},
        },
    }
    if settings.ENABLE_INTEGRATION_DELIVERY:
        schedule["retry-webhook-deliveries"] = {
            "task": f"{TASK_MODULE}.retry_webhook_deliveries",
            "schedule": crontab(minute="*"),
            "options": {"expires": 60},
        }
    return schedule


celery_app.conf.beat_schedule = build_beat_schedule()
