"""Order lifecycle: preview, commit, poll and download resolution.

Per order the steps run strictly in that order. Preview never touches the
balance. Commit charges exactly once: the debit is written in a short
``BEGIN IMMEDIATE`` transaction, the vendor is called with no lock held, and
a vendor failure releases the charge again. Polling drives committed orders to
a terminal state within a bounded number of status checks.
"""
import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import aiosqlite
from pydantic import BaseModel, Field

from src.config import RESPONSE_TYPES, config
from src.errors import (
    DuplicateCharge,
    InvalidRequest,
    PollTimeout,
    ResolutionFailure,
    StockOrderError,
    TaskNotCommittable,
    TaskNotFound,
    VendorRejected,
    VendorUnavailable,
)
from src.fetch.normalize import VENDOR_FAILED_STATUSES, VENDOR_READY_STATUSES
from src.fetch.pricing import PricingCache
from src.jobs.batches import BatchAggregator
from src.parse.models import DownloadInfo, ResolvedAsset
from src.parse.redact import safe_message
from src.parse.url_resolver import resolve
from src.store.ledger import BalanceLedger
from src.store.models import (
    ACTIVE_STATUSES,
    FAILED_STATUSES,
    Batch,
    Task,
    TaskStatus,
)
from src.store.state import StateDB

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Polling timeout exceeded"


class OrderItem(BaseModel):
    """One asset to preview: a URL, or an explicit site and id."""

    url: Optional[str] = Field(default=None, description="Asset page URL or site:id shorthand")
    site: Optional[str] = Field(default=None, description="Stock site key")
    id: Optional[str] = Field(default=None, description="Asset id on the site")


class PreviewResult(BaseModel):
    input: str
    task: Optional[Task] = None
    error: Optional[dict] = None


class PreviewResponse(BaseModel):
    results: list[PreviewResult]
    balance: int


class CommitResponse(BaseModel):
    tasks: list[Task]
    failures: list[dict] = Field(default_factory=list)
    balance: int
    batch: Optional[Batch] = None


def _message(text: Any) -> Optional[str]:
    return safe_message(text) or None


def _forward_only(path: list[TaskStatus], current: TaskStatus) -> list[TaskStatus]:
    """Drop intermediate steps another poller already moved past."""
    if current == TaskStatus.DOWNLOADING:
        return [status for status in path if status not in (TaskStatus.READY, TaskStatus.DOWNLOADING)]
    if current == TaskStatus.READY:
        return [status for status in path if status != TaskStatus.READY]
    return path


class OrderOrchestrator:
    """Runs the order state machine against an injected vendor client."""

    def __init__(
        self,
        vendor,
        state: StateDB,
        pricing: Optional[PricingCache] = None,
        ledger: Optional[BalanceLedger] = None,
        batches: Optional[BatchAggregator] = None,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        max_batch_size: Optional[int] = None,
        refund_on_failure: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.vendor = vendor
        self.state = state
        self.pricing = pricing or PricingCache(vendor, state)
        self.ledger = ledger or BalanceLedger(state)
        self.batches = batches or BatchAggregator(state)
        self.poll_interval = poll_interval if poll_interval is not None else config.POLL_INTERVAL
        self.max_poll_attempts = max_poll_attempts if max_poll_attempts is not None else config.POLL_MAX_ATTEMPTS
        self.max_batch_size = max_batch_size if max_batch_size is not None else config.MAX_BATCH_SIZE
        self.refund_on_failure = refund_on_failure if refund_on_failure is not None else config.REFUND_ON_FAILURE
        self._sleep = sleep

    def _response_type(self, value: Optional[str]) -> str:
        response_type = (value or config.DEFAULT_RESPONSE_TYPE).lower()
        if response_type not in RESPONSE_TYPES:
            raise InvalidRequest(f"response_type must be one of {', '.join(RESPONSE_TYPES)}")
        return response_type

    async def _owned_task(self, task_id: str, user_id: Optional[str], db: Optional[aiosqlite.Connection] = None) -> Task:
        task = await self.state.get_task(task_id, db=db)
        if task is None or (user_id is not None and task.user_id != user_id):
            raise TaskNotFound(task_id)
        return task

    # Preview

    def _resolve_item(self, item: OrderItem) -> ResolvedAsset:
        if item.site and item.id:
            site = item.site.strip().lower()
            asset_id = item.id.strip()
            return ResolvedAsset(site=site, asset_id=asset_id, source_url=(item.url or f"{site}:{asset_id}").strip())
        if item.url:
            asset = resolve(item.url)
            if asset is None:
                raise ResolutionFailure(item.url)
            return asset
        raise InvalidRequest("Each item needs a url, or a site and an id")

    async def _preview_item(self, user_id: str, item: OrderItem, response_type: str) -> PreviewResult:
        label = item.url or f"{item.site or ''}:{item.id or ''}"
        try:
            asset = self._resolve_item(item)
            info = await self.pricing.get_asset_cost(asset.site, asset.asset_id, source_url=asset.source_url)
            if info.status not in VENDOR_FAILED_STATUSES and info.cost_points is None:
                raise VendorRejected(_message(info.message) or "Vendor did not return a price for this asset")
        except StockOrderError as e:
            logger.info(f"Preview failed for {label!r}: {e.code}: {e.message}")
            return PreviewResult(input=label, error=e.to_dict())

        failed = info.status in VENDOR_FAILED_STATUSES
        task = Task(
            task_id=str(uuid.uuid4()),
            user_id=user_id,
            site=asset.site,
            asset_id=asset.asset_id,
            source_url=asset.source_url,
            status=TaskStatus.ERROR if failed else TaskStatus.PENDING,
            cost_points=info.cost_points,
            cost_amount=info.cost_amount,
            cost_currency=info.cost_currency,
            title=info.title,
            preview_url=info.preview_url or info.thumbnail_url,
            latest_message=_message(info.message) or ("Asset is not available" if failed else None),
            response_type=response_type,
        )
        await self.state.insert_task(task)
        return PreviewResult(input=label, task=task)

    async def preview_order(
        self,
        user_id: str,
        items: Iterable[Union[OrderItem, dict]],
        response_type: Optional[str] = None,
    ) -> PreviewResponse:
        """Resolve and quote up to a batch of items. Never charges."""
        items = [item if isinstance(item, OrderItem) else OrderItem(**item) for item in items]
        if not items:
            raise InvalidRequest("At least one item is required")
        if len(items) > self.max_batch_size:
            raise InvalidRequest(f"At most {self.max_batch_size} items can be ordered at once")
        response_type = self._response_type(response_type)

        results = await asyncio.gather(*(self._preview_item(user_id, item, response_type) for item in items))
        balance = await self.ledger.get_balance(user_id)
        return PreviewResponse(results=list(results), balance=balance)

    # Commit

    async def _charge(self, user_id: str, task_id: str) -> tuple[Task, bool]:
        """Debit a PENDING task. Returns (task, charged); not charged means nothing to place."""
        try:
            async with self.state.transaction() as db:
                task = await self._owned_task(task_id, user_id, db=db)
                if task.status == TaskStatus.ERROR:
                    raise TaskNotCommittable(f"Order {task_id} cannot be placed: {task.latest_message or 'preview failed'}")
                if task.status != TaskStatus.PENDING:
                    return task, False
                if task.cost_points is None:
                    raise TaskNotCommittable(f"Order {task_id} has no price quote")
                await self.ledger.debit(user_id, task.cost_points, task_id, note=f"{task.site}:{task.asset_id}", db=db)
        except DuplicateCharge:
            # Another commit of this order holds the live charge
            logger.warning(f"Order {task_id} is already charged; skipping")
            return await self._owned_task(task_id, user_id), False
        return task, True

    async def _release(self, task: Task, message: Optional[str], status: Optional[TaskStatus] = None) -> None:
        """Give back the charge of an order the vendor did not take."""
        fields: dict[str, Any] = {"latest_message": _message(message)}
        if status is not None:
            fields["status"] = status
        async with self.state.transaction() as db:
            await self.ledger.release(task.user_id, task.task_id, db=db)
            await self.state.update_task(task.task_id, db=db, **fields)

    async def _commit_task(self, user_id: str, task_id: str, response_type: Optional[str]) -> tuple[Task, bool]:
        """Charge and place one order. Returns (task, newly_committed).

        The charge and the vendor call never share a transaction, so the
        database write lock is not held while the vendor works. The live SPEND
        entry marks the order as being placed; a concurrent commit of the same
        order finds it and backs off.
        """
        task, charged = await self._charge(user_id, task_id)
        if not charged:
            return task, False
        response_type = response_type or task.response_type

        try:
            receipt = await self.vendor.create_order(
                task.site, task.asset_id, source_url=task.source_url, response_type=response_type
            )
            if not receipt.external_task_id:
                raise VendorRejected(_message(receipt.message) or "Vendor did not return an order id")
        except VendorRejected as e:
            await self._release(task, e.message, status=TaskStatus.ERROR)
            logger.warning(f"Order {task_id} rejected by vendor: {e.message}")
            raise
        except VendorUnavailable as e:
            # Left PENDING so the user can retry the commit later
            await self._release(task, e.message)
            logger.warning(f"Order {task_id} not placed: {e.code}: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error placing order {task_id}: {e}", exc_info=True)
            await self._release(task, "Order could not be placed")
            raise VendorUnavailable("Order could not be placed, please retry") from e

        fields = {
            "status": TaskStatus.PROCESSING,
            "external_task_id": receipt.external_task_id,
            "response_type": response_type,
            "latest_message": _message(receipt.message),
        }
        if receipt.download_url:
            fields["download_url"] = receipt.download_url
        task = await self.state.update_task(task_id, **fields)
        return task, True

    async def commit_order(
        self,
        user_id: str,
        task_ids: Iterable[str],
        response_type: Optional[str] = None,
    ) -> CommitResponse:
        """Place previewed orders, charging each exactly once.

        Items are committed one after another; a failure is reported per item
        and never undoes its siblings. Newly placed orders form a new batch,
        even when an unexpected error stops the loop early.
        """
        task_ids = list(dict.fromkeys(task_ids))
        if not task_ids:
            raise InvalidRequest("At least one order id is required")
        if len(task_ids) > self.max_batch_size:
            raise InvalidRequest(f"At most {self.max_batch_size} items can be ordered at once")
        if response_type is not None:
            response_type = self._response_type(response_type)

        tasks: list[Task] = []
        committed: list[Task] = []
        failures: list[dict] = []
        batch = None
        try:
            for task_id in task_ids:
                try:
                    task, newly = await asyncio.shield(self._commit_task(user_id, task_id, response_type))
                except StockOrderError as e:
                    failures.append({"task_id": task_id, **e.to_dict()})
                    continue
                tasks.append(task)
                if newly:
                    committed.append(task)
        finally:
            if committed:
                batch = await self._create_batch(user_id, committed)

        if batch is not None:
            tasks = [await self.state.get_task(task.task_id) or task for task in tasks]

        balance = await self.ledger.get_balance(user_id)
        return CommitResponse(tasks=tasks, failures=failures, balance=balance, batch=batch)

    async def _create_batch(self, user_id: str, tasks: list[Task]) -> Batch:
        batch = Batch(
            batch_id=str(uuid.uuid4()),
            user_id=user_id,
            total_orders=len(tasks),
            total_cost=sum(task.cost_points or 0 for task in tasks),
        )
        async with self.state.transaction() as db:
            await self.state.insert_batch(batch, db=db)
            for task in tasks:
                await self.state.update_task(task.task_id, db=db, batch_id=batch.batch_id)
            batch = await self.batches.recompute_status(batch.batch_id, db=db)
        logger.info(f"Batch {batch.batch_id} created with {batch.total_orders} orders ({batch.total_cost} pts)")
        return batch

    # Poll

    async def _advance(
        self,
        db: aiosqlite.Connection,
        task: Task,
        path: Iterable[TaskStatus],
        **fields: Any,
    ) -> Task:
        """Walk the task through ``path``; ``fields`` land with the last step."""
        path = [status for status in path if status != task.status]
        for status in path[:-1]:
            task = await self.state.update_task(task.task_id, db=db, status=status)
        if path:
            fields["status"] = path[-1]
        if fields:
            task = await self.state.update_task(task.task_id, db=db, **fields)
        if task.status in FAILED_STATUSES and self.refund_on_failure and task.cost_points:
            await self.ledger.refund(
                task.user_id, task.cost_points, task.task_id, note=f"{task.status.value}: {task.site}:{task.asset_id}", db=db
            )
        return task

    async def _check_vendor(self, task: Task) -> tuple[list[TaskStatus], dict]:
        """Ask the vendor about an order. Returns the status path and fields to persist."""
        if task.status == TaskStatus.PROCESSING:
            try:
                info = await self.vendor.get_order_status(task.external_task_id, response_type=task.response_type)
            except VendorUnavailable as e:
                return [], {"latest_message": _message(e.message)}
            except VendorRejected as e:
                return [TaskStatus.ERROR], {"latest_message": _message(e.message)}
            if info.status in VENDOR_FAILED_STATUSES:
                return [TaskStatus.ERROR], {"latest_message": _message(info.message) or "Order failed"}
            if info.status not in VENDOR_READY_STATUSES:
                return [], {"latest_message": _message(info.message)}
            fallback_url = info.download_url
        else:
            fallback_url = None

        # READY or already DOWNLOADING: resolve the link
        try:
            download = await self.vendor.resolve_download(task.external_task_id, response_type=task.response_type)
        except VendorUnavailable as e:
            return [TaskStatus.READY, TaskStatus.DOWNLOADING], {"latest_message": _message(e.message)}
        except VendorRejected as e:
            return [TaskStatus.ERROR], {"latest_message": _message(e.message)}
        url = download.download_url or fallback_url
        if not url:
            return [TaskStatus.READY, TaskStatus.DOWNLOADING], {"latest_message": "Waiting for download link"}
        return (
            [TaskStatus.READY, TaskStatus.DOWNLOADING, TaskStatus.COMPLETED],
            {"download_url": url, "file_name": download.file_name, "latest_message": None},
        )

    async def poll_once(self, task_id: str, user_id: Optional[str] = None) -> Task:
        """One status check for an in-flight order. Each check counts as an attempt."""
        task = await self._owned_task(task_id, user_id)
        if task.status not in ACTIVE_STATUSES:
            return task

        if task.retry_count < self.max_poll_attempts:
            path, fields = await self._check_vendor(task)
        else:
            path, fields = [], {}

        async with self.state.transaction() as db:
            current = await self._owned_task(task_id, user_id, db=db)
            if current.status not in ACTIVE_STATUSES:
                return current
            if task.retry_count < self.max_poll_attempts:
                fields["retry_count"] = current.retry_count + 1
                path = _forward_only(path, current.status)
                task = await self._advance(db, current, path, **fields)
            else:
                task = current
            if task.status in ACTIVE_STATUSES and task.retry_count >= self.max_poll_attempts:
                task = await self._advance(db, task, [TaskStatus.TIMEOUT], latest_message=TIMEOUT_MESSAGE)
            if task.batch_id:
                await self.batches.recompute_status(task.batch_id, db=db)
        return task

    async def poll_until_terminal(
        self,
        task_id: str,
        user_id: Optional[str] = None,
        raise_on_timeout: bool = False,
    ) -> Task:
        """Poll on a fixed interval until the order is COMPLETED, ERROR or TIMEOUT."""
        while True:
            task = await self.poll_once(task_id, user_id)
            if task.status not in ACTIVE_STATUSES:
                break
            await self._sleep(self.poll_interval)
        if task.status == TaskStatus.TIMEOUT and raise_on_timeout:
            raise PollTimeout(task_id, task.retry_count)
        return task

    # Queries

    async def redownload(self, task_id: str, user_id: str, response_type: Optional[str] = None) -> DownloadInfo:
        """Fresh download link for a completed order."""
        task = await self._owned_task(task_id, user_id)
        if task.status != TaskStatus.COMPLETED or not task.external_task_id:
            raise InvalidRequest(f"Order {task_id} is not completed")
        response_type = self._response_type(response_type or task.response_type)
        download = await self.vendor.resolve_download(task.external_task_id, response_type=response_type)
        if download.download_url:
            await self.state.update_task(
                task_id, download_url=download.download_url, file_name=download.file_name or task.file_name
            )
            return download
        return DownloadInfo(download_url=task.download_url, file_name=task.file_name)

    async def list_orders(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        tasks, total = await self.state.list_user_tasks(user_id, page=page, limit=limit)
        return {"orders": tasks, "total": total, "page": page, "limit": limit}

    async def get_batch_status(self, batch_id: str, user_id: Optional[str] = None) -> dict:
        return await self.batches.get_batch_status(batch_id, user_id=user_id)
