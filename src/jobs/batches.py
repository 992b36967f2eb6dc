"""Batch status is always derived from the batch's orders, never set directly."""
import logging
from typing import Iterable, Optional

import aiosqlite

from src.errors import BatchNotFound
from src.store.models import FAILED_STATUSES, TERMINAL_STATUSES, Batch, BatchStatus, TaskStatus
from src.store.state import StateDB

logger = logging.getLogger(__name__)


def derive_batch_status(statuses: Iterable[TaskStatus]) -> BatchStatus:
    """PROCESSING while any order is unfinished, else FAILED / COMPLETED / PARTIAL."""
    statuses = list(statuses)
    if not statuses or any(status not in TERMINAL_STATUSES for status in statuses):
        return BatchStatus.PROCESSING
    if all(status in FAILED_STATUSES for status in statuses):
        return BatchStatus.FAILED
    if all(status == TaskStatus.COMPLETED for status in statuses):
        return BatchStatus.COMPLETED
    return BatchStatus.PARTIAL


class BatchAggregator:
    """Recomputes and reports batch progress."""

    def __init__(self, state: StateDB):
        self.state = state

    async def recompute_status(self, batch_id: str, db: Optional[aiosqlite.Connection] = None) -> Optional[Batch]:
        """Recompute status and counters from the orders. Idempotent."""
        async with self.state.session(db) as conn:
            batch = await self.state.get_batch(batch_id, db=conn)
            if batch is None:
                return None
            statuses = [task.status for task in await self.state.list_batch_tasks(batch_id, db=conn)]
            status = derive_batch_status(statuses)
            completed = sum(1 for s in statuses if s == TaskStatus.COMPLETED)
            failed = sum(1 for s in statuses if s in FAILED_STATUSES)
            if (status, completed, failed) != (batch.status, batch.completed_orders, batch.failed_orders):
                await self.state.update_batch(
                    batch_id, db=conn, status=status, completed_orders=completed, failed_orders=failed
                )
                logger.info(f"Batch {batch_id}: {status.value} ({completed} completed, {failed} failed)")
            return await self.state.get_batch(batch_id, db=conn)

    async def get_batch_status(self, batch_id: str, user_id: Optional[str] = None) -> dict:
        """Batch, its orders and progress counters. Other users' batches are not found."""
        batch = await self.state.get_batch(batch_id)
        if batch is None or (user_id is not None and batch.user_id != user_id):
            raise BatchNotFound(batch_id)
        tasks = await self.state.list_batch_tasks(batch_id)
        completed = sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)
        failed = sum(1 for task in tasks if task.status in FAILED_STATUSES)
        return {
            "batch": batch,
            "tasks": tasks,
            "stats": {
                "total": len(tasks),
                "completed": completed,
                "failed": failed,
                "processing": len(tasks) - completed - failed,
            },
        }
