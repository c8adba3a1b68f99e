"""
Expense Lifecycle - Background Tasks Package

Celery background tasks.
"""

from app.tasks.export_tasks import export_batch_task, export_pending_batches_task

__all__ = [
    "export_batch_task",
    "export_pending_batches_task",
]
