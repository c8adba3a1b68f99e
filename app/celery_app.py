"""
Expense Lifecycle - Celery Configuration

Celery configuration for background ledger exports.
Uses Redis as the message broker and result backend.
"""

from celery import Celery

from app.config import settings


# Create Celery app
celery_app = Celery(
    'expense_lifecycle',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks.export_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,  # 10 minutes
    task_soft_time_limit=540,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Beat schedule for periodic tasks
    beat_schedule={
        # Resume pending batches and expired claims
        'export-pending-batches': {
            'task': 'app.tasks.export_tasks.export_pending_batches_task',
            'schedule': float(settings.export_poll_interval_seconds),
        },
    },
)


# Task routing
celery_app.conf.task_routes = {
    'app.tasks.export_tasks.*': {'queue': 'ledger'},
}
