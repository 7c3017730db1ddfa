"""
Celery application configuration.

Configures Celery for the pipeline workers with Redis as the broker. Each
topic has its own queue; messages are routed by CeleryMessagePublisher.
"""
from celery import Celery
from kombu import Queue

from gigledger.config import get_settings
from gigledger.messaging import topics

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "gigledger",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "gigledger.tasks.statement_tasks",
        "gigledger.tasks.receipt_tasks",
        "gigledger.tasks.ledger_tasks",
    ],
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,  # Acknowledge after the handler commits
    task_reject_on_worker_lost=True,  # Requeue if worker dies
    task_time_limit=600,
    task_soft_time_limit=540,

    # Result settings
    result_expires=86400,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Retry settings
    task_default_retry_delay=30,
    task_max_retries=5,

    task_queues=[Queue(topic) for topic in topics.ALL_TOPICS],
    task_default_queue=topics.LEDGER_POSTED,
)
