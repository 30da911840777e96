from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from core.config import settings
from core.logging_config import setup_logging

# Use Redis for production/development
broker_url = settings.REDIS_URL
backend_url = settings.REDIS_URL

# Create Celery app
celery_app = Celery(
    "storefront_orders",
    broker=broker_url,
    backend=backend_url,
    include=["tasks.order_tasks"]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_always_eager=False,
    task_eager_propagates=False,
    beat_schedule={
        "cancel-abandoned-orders": {
            "task": "tasks.order_tasks.cancel_abandoned_orders_task",
            "schedule": settings.ABANDONED_ORDER_SWEEP_INTERVAL_MINUTES * 60.0,
        },
    },
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    setup_logging()
