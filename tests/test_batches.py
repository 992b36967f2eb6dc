"""Tests for batch status aggregation."""
import asyncio
import uuid

import pytest

from src.errors import BatchNotFound
from src.jobs.batches import BatchAggregator, derive_batch_status
from src.store.models import Batch, BatchStatus, Task, TaskStatus

S = TaskStatus


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ([], BatchStatus.PROCESSING),
        ([S.PROCESSING, S.COMPLETED], BatchStatus.PROCESSING),
        ([S.DOWNLOADING], BatchStatus.PROCESSING),
        ([S.COMPLETED, S.COMPLETED], BatchStatus.COMPLETED),
        ([S.ERROR, S.TIMEOUT], BatchStatus.FAILED),
        ([S.COMPLETED, S.ERROR], BatchStatus.PARTIAL),
        ([S.TIMEOUT, S.COMPLETED, S.COMPLETED], BatchStatus.PARTIAL),
    ],
)
def test_derive_batch_status(statuses, expected):
    assert derive_batch_status(statuses) == expected


def _seed_batch(state, statuses, user_id="u1"):
    """Insert a batch whose orders are already in the given states."""
    batch = Batch(batch_id=str(uuid.uuid4()), user_id=user_id, total_orders=len(statuses))

    async def seed():
        await state.insert_batch(batch)
        for n, status in enumerate(statuses):
            await state.insert_task(
                Task(
                    task_id=f"{batch.batch_id}-{n}",
                    user_id=user_id,
                    site="adobestock",
                    asset_id=str(n),
                    status=status,
                    batch_id=batch.batch_id,
                    cost_points=1,
                )
            )

    asyncio.run(seed())
    return batch


def test_recompute_updates_counters(state):
    batch = _seed_batch(state, [S.COMPLETED, S.ERROR, S.COMPLETED])
    result = asyncio.run(BatchAggregator(state).recompute_status(batch.batch_id))
    assert result.status == BatchStatus.PARTIAL
    assert result.completed_orders == 2
    assert result.failed_orders == 1


def test_recompute_is_idempotent(state):
    aggregator = BatchAggregator(state)
    batch = _seed_batch(state, [S.COMPLETED])
    first = asyncio.run(aggregator.recompute_status(batch.batch_id))
    second = asyncio.run(aggregator.recompute_status(batch.batch_id))
    assert first.status == second.status == BatchStatus.COMPLETED
    assert first.updated_at == second.updated_at


def test_recompute_unknown_batch(state):
    assert asyncio.run(BatchAggregator(state).recompute_status("missing")) is None


def test_batch_status_report(state):
    batch = _seed_batch(state, [S.COMPLETED, S.PROCESSING, S.TIMEOUT])
    report = asyncio.run(BatchAggregator(state).get_batch_status(batch.batch_id, user_id="u1"))
    assert len(report["tasks"]) == 3
    assert report["stats"] == {"total": 3, "completed": 1, "failed": 1, "processing": 1}


def test_batch_status_hides_other_users_batches(state):
    batch = _seed_batch(state, [S.COMPLETED], user_id="u1")
    with pytest.raises(BatchNotFound):
        asyncio.run(BatchAggregator(state).get_batch_status(batch.batch_id, user_id="u2"))
