from celery import Celery
from core.config import settings

# Redis is both broker and result backend
broker_url = settings.REDIS_URL
backend_url = settings.REDIS_URL

celery_app = Celery(
    "storefront_payments",
    broker=broker_url,
    backend=backend_url,
    include=["tasks.email_tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    # Receipts must never be sent from inside a request/transaction
    task_always_eager=False,
    task_eager_propagates=False,
    broker_connection_retry_on_startup=True,
)
