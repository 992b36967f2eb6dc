"""Persisted records: orders, batches and ledger entries."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


class BatchStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PARTIAL = "PARTIAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LedgerType(str, Enum):
    SPEND = "SPEND"
    REFUND = "REFUND"
    CREDIT = "CREDIT"


# Orders the vendor is still working on
ACTIVE_STATUSES = frozenset({TaskStatus.PROCESSING, TaskStatus.READY, TaskStatus.DOWNLOADING})
FAILED_STATUSES = frozenset({TaskStatus.ERROR, TaskStatus.TIMEOUT})
TERMINAL_STATUSES = FAILED_STATUSES | {TaskStatus.COMPLETED}

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.ERROR}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.READY, TaskStatus.DOWNLOADING, TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.TIMEOUT}
    ),
    TaskStatus.READY: frozenset({TaskStatus.DOWNLOADING, TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.TIMEOUT}),
    TaskStatus.DOWNLOADING: frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.TIMEOUT}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.ERROR: frozenset(),
    TaskStatus.TIMEOUT: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Same-state updates are always allowed; otherwise follow the table."""
    return current == target or target in ALLOWED_TRANSITIONS[current]


class Task(BaseModel):
    """One order for a single stock asset."""

    task_id: str
    user_id: str
    site: str
    asset_id: str
    source_url: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    external_task_id: Optional[str] = None
    batch_id: Optional[str] = None
    cost_points: Optional[int] = None
    cost_amount: Optional[float] = None
    cost_currency: Optional[str] = None
    title: Optional[str] = None
    preview_url: Optional[str] = None
    download_url: Optional[str] = None
    file_name: Optional[str] = None
    latest_message: Optional[str] = None
    retry_count: int = 0
    response_type: str = "any"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Batch(BaseModel):
    """Group of up to five committed orders."""

    batch_id: str
    user_id: str
    total_orders: int
    completed_orders: int = 0
    failed_orders: int = 0
    total_cost: int = 0
    status: BatchStatus = BatchStatus.PROCESSING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerEntry(BaseModel):
    """Append-only record of a balance mutation."""

    entry_id: str
    user_id: str
    order_id: Optional[str] = None
    type: LedgerType
    amount: int = Field(..., description="Signed delta applied to the balance")
    balance_after: int
    note: Optional[str] = None
    voided: bool = Field(default=False, description="Charge released because the vendor never took the order")
    created_at: datetime = Field(default_factory=utcnow)
