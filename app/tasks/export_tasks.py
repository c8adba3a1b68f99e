"""
Expense Lifecycle - Ledger Export Tasks

Celery entry points for the batch export orchestrator.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict

from celery import shared_task

from app.database import async_session_factory, engine
from app.services.batch_export_service import BatchExportService
from app.services.ledger_client import get_ledger_client
from app.utils.error_handling import ExternalServiceException

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@shared_task(name='app.tasks.export_tasks.export_batch_task')
def export_batch_task(batch_id: str) -> Dict[str, Any]:
    """Export one batch queued by finance finalization."""
    return run_async(_export_batch(uuid.UUID(batch_id)))


async def _export_batch(batch_id: uuid.UUID) -> Dict[str, Any]:
    try:
        async with async_session_factory() as db:
            service = BatchExportService(db, get_ledger_client())
            try:
                batch = await service.export_batch(batch_id)
            except ExternalServiceException as e:
                logger.error(f"Export task for batch {batch_id} failed: {e.message}")
                return {"batch_id": str(batch_id), "status": "failed", "error": e.message}

            logger.info(f"Export task for batch {batch.batch_reference} finished: {batch.status.value}")
            return {
                "batch_id": str(batch_id),
                "status": batch.status.value,
                "ledger_reference": batch.ledger_reference,
            }
    finally:
        # Connections are bound to this task's event loop
        await engine.dispose()


@shared_task(name='app.tasks.export_tasks.export_pending_batches_task')
def export_pending_batches_task() -> Dict[str, Any]:
    """Periodic sweep over pending batches and expired claims."""
    return run_async(_export_pending_batches())


async def _export_pending_batches() -> Dict[str, Any]:
    try:
        async with async_session_factory() as db:
            return await BatchExportService(db, get_ledger_client()).export_pending_batches()
    finally:
        await engine.dispose()
