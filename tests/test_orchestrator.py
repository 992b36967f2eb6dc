"""Tests for the order lifecycle: preview, commit, poll."""
import asyncio

import httpx
import pytest

from src.errors import InvalidRequest, PollTimeout, VendorRejected, VendorUnavailable
from src.jobs.orchestrator import OrderOrchestrator
from src.parse.models import DownloadInfo, OrderStatusInfo
from src.store.models import BatchStatus, LedgerType, TaskStatus
from src.store.state import StateDB

SHUTTER_URL = "https://www.shutterstock.com/image-photo/example-asset-1-123456789"


def _credit(ledger, user_id, points):
    asyncio.run(ledger.credit(user_id, points, note="test grant"))


def _preview_one(orchestrator, user_id, **item):
    response = asyncio.run(orchestrator.preview_order(user_id, [item]))
    return response.results[0]


def test_end_to_end_shutterstock_order(orchestrator, vendor, ledger):
    """5 pts, a 2 pt asset: preview, commit, poll to COMPLETED with a link; 3 pts left."""
    _credit(ledger, "u1", 5)
    vendor.quote("shutterstock", "123456789", 2, title="Example")
    ext_id = "ext-shutterstock-123456789"
    vendor.statuses[ext_id] = [OrderStatusInfo(status="processing"), OrderStatusInfo(status="ready")]

    preview = asyncio.run(orchestrator.preview_order("u1", [{"url": SHUTTER_URL}]))
    task = preview.results[0].task
    assert preview.balance == 5
    assert task.status == TaskStatus.PENDING
    assert (task.site, task.asset_id, task.cost_points) == ("shutterstock", "123456789", 2)

    committed = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))
    assert committed.failures == []
    assert committed.balance == 3
    assert committed.tasks[0].status == TaskStatus.PROCESSING
    assert committed.tasks[0].external_task_id == ext_id
    assert committed.batch.status == BatchStatus.PROCESSING
    assert committed.tasks[0].batch_id == committed.batch.batch_id

    final = asyncio.run(orchestrator.poll_until_terminal(task.task_id))
    assert final.status == TaskStatus.COMPLETED
    assert final.download_url == f"https://files.example/{ext_id}.zip"
    assert final.retry_count == 2

    status = asyncio.run(orchestrator.get_batch_status(committed.batch.batch_id))
    assert status["batch"].status == BatchStatus.COMPLETED
    assert status["stats"] == {"total": 1, "completed": 1, "failed": 0, "processing": 0}

    history = asyncio.run(ledger.history("u1"))
    spends = [entry for entry in history if entry.type == LedgerType.SPEND]
    assert len(spends) == 1
    assert spends[0].amount == -2
    assert spends[0].balance_after == 3


def test_preview_never_charges(orchestrator, vendor, ledger):
    """Previewing leaves the balance and the ledger untouched."""
    _credit(ledger, "u1", 10)
    vendor.quote("adobestock", "12345", 4)
    result = _preview_one(orchestrator, "u1", site="adobestock", id="12345")
    assert result.task.status == TaskStatus.PENDING
    assert result.task.source_url == "adobestock:12345"
    assert asyncio.run(ledger.get_balance("u1")) == 10
    assert vendor.calls["order"] == []


def test_preview_unresolvable_item_creates_no_task(orchestrator, state):
    """Unidentifiable URLs are reported per item without a task."""
    response = asyncio.run(orchestrator.preview_order("u1", [{"url": "https://example.com/photo/1"}]))
    result = response.results[0]
    assert result.task is None
    assert result.error["code"] == "resolution_failed"
    assert asyncio.run(state.list_user_tasks("u1"))[1] == 0


def test_preview_reports_each_item_independently(orchestrator, vendor):
    """One bad item does not block its siblings."""
    vendor.quote("adobestock", "1", 2)
    response = asyncio.run(
        orchestrator.preview_order("u1", [{"url": "adobestock:1"}, {"url": "not a url"}, {"url": "freepik:9"}])
    )
    codes = [r.error["code"] if r.error else None for r in response.results]
    assert codes == [None, "resolution_failed", "vendor_rejected"]
    assert response.results[0].task.cost_points == 2


def test_preview_vendor_error_status_marks_task_error(orchestrator, vendor):
    """An asset the vendor reports as failed is persisted as ERROR and cannot be committed."""
    vendor.quote("adobestock", "777", 2, status="error")
    result = _preview_one(orchestrator, "u1", url="adobestock:777")
    assert result.task.status == TaskStatus.ERROR

    committed = asyncio.run(orchestrator.commit_order("u1", [result.task.task_id]))
    assert committed.tasks == []
    assert committed.failures[0]["code"] == "task_not_committable"
    assert vendor.calls["order"] == []


def test_preview_missing_price_is_rejected(orchestrator, vendor):
    """A quote without a usable cost is a vendor rejection."""
    vendor.quote("adobestock", "5", None)
    result = _preview_one(orchestrator, "u1", url="adobestock:5")
    assert result.task is None
    assert result.error["code"] == "vendor_rejected"


def test_preview_limits_batch_size(orchestrator):
    """More than one batch of items is refused outright."""
    items = [{"url": f"adobestock:{i}"} for i in range(6)]
    with pytest.raises(InvalidRequest):
        asyncio.run(orchestrator.preview_order("u1", items))


def test_preview_rejects_unknown_response_type(orchestrator):
    with pytest.raises(InvalidRequest):
        asyncio.run(orchestrator.preview_order("u1", [{"url": "adobestock:1"}], response_type="ftp"))


def test_batch_with_two_vendor_failures_charges_only_successes(orchestrator, vendor, ledger):
    """5 items at 2 pts, 2 rejected by the vendor: 3 charged, 2 ERROR."""
    _credit(ledger, "u1", 20)
    ids = [str(n) for n in range(100, 105)]
    for asset_id in ids:
        vendor.quote("adobestock", asset_id, 2)
    vendor.orders[("adobestock", "101")] = VendorRejected("Asset unavailable")
    vendor.orders[("adobestock", "103")] = VendorRejected("Asset unavailable")

    preview = asyncio.run(orchestrator.preview_order("u1", [{"url": f"adobestock:{i}"} for i in ids]))
    task_ids = [result.task.task_id for result in preview.results]
    committed = asyncio.run(orchestrator.commit_order("u1", task_ids))

    assert len(committed.tasks) == 3
    assert len(committed.failures) == 2
    assert {f["code"] for f in committed.failures} == {"vendor_rejected"}
    assert committed.balance == 14
    assert committed.batch.total_orders == 3
    assert committed.batch.total_cost == 6

    failed = [asyncio.run(orchestrator.state.get_task(f["task_id"])) for f in committed.failures]
    assert all(task.status == TaskStatus.ERROR for task in failed)
    assert all(task.latest_message == "Asset unavailable" for task in failed)
    assert all(task.batch_id is None for task in failed)

    spends = [e for e in asyncio.run(ledger.history("u1")) if e.type == LedgerType.SPEND]
    assert len([e for e in spends if not e.voided]) == 3
    # Rejected orders keep their charge in the trail, voided
    assert sorted(e.order_id for e in spends if e.voided) == sorted(f["task_id"] for f in committed.failures)


def test_unexpected_vendor_error_fails_only_its_item(orchestrator, vendor, ledger):
    """An untyped error on the second order leaves the first placed, batched and returned."""
    _credit(ledger, "u1", 10)
    vendor.quote("adobestock", "1", 2)
    vendor.quote("adobestock", "2", 2)
    vendor.orders[("adobestock", "2")] = httpx.DecodingError("Error -3 while decompressing data")
    preview = asyncio.run(orchestrator.preview_order("u1", [{"url": "adobestock:1"}, {"url": "adobestock:2"}]))
    first, second = (r.task.task_id for r in preview.results)

    committed = asyncio.run(orchestrator.commit_order("u1", [first, second]))

    assert [t.task_id for t in committed.tasks] == [first]
    assert committed.tasks[0].status == TaskStatus.PROCESSING
    assert committed.tasks[0].batch_id == committed.batch.batch_id
    assert committed.batch.total_orders == 1
    assert committed.failures == [
        {"task_id": second, "code": "vendor_unavailable", "message": "Order could not be placed, please retry"}
    ]
    assert committed.balance == 8
    stored = asyncio.run(orchestrator.state.get_task(second))
    assert stored.status == TaskStatus.PENDING

    # The failed item can be committed again later
    del vendor.orders[("adobestock", "2")]
    retried = asyncio.run(orchestrator.commit_order("u1", [second]))
    assert retried.failures == []
    assert retried.balance == 6


def test_other_writers_proceed_while_an_order_is_placed(vendor, state, ledger):
    """No database lock is held across the vendor call."""
    quick_state = StateDB(state.db_path, lock_timeout=0.5)
    orchestrator = OrderOrchestrator(vendor, quick_state, poll_interval=0, refund_on_failure=False)
    _credit(ledger, "u1", 5)
    vendor.quote("adobestock", "1", 2)
    vendor.quote("adobestock", "2", 1)
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task
    seen = {}

    async def other_user_activity():
        await ledger.credit("u2", 3)
        seen["preview"] = await orchestrator.preview_order("u2", [{"url": "adobestock:2"}])

    vendor.during_order = other_user_activity
    committed = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))

    assert committed.failures == []
    assert committed.balance == 3
    assert seen["preview"].results[0].task.status == TaskStatus.PENDING
    assert seen["preview"].balance == 3


def test_insufficient_balance_does_not_call_vendor(orchestrator, vendor, ledger):
    """Commit fails without touching the balance or the vendor."""
    _credit(ledger, "u1", 2)
    vendor.quote("adobestock", "1", 3)
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task

    committed = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))
    assert committed.failures[0]["code"] == "insufficient_balance"
    assert "Required: 3 pts, Available: 2 pts" in committed.failures[0]["message"]
    assert committed.balance == 2
    assert committed.batch is None
    assert vendor.calls["order"] == []
    assert asyncio.run(orchestrator.state.get_task(task.task_id)).status == TaskStatus.PENDING


def test_transport_failure_leaves_task_pending_and_uncharged(orchestrator, vendor, ledger):
    """A network failure releases the debit; a later commit succeeds once."""
    _credit(ledger, "u1", 10)
    vendor.quote("adobestock", "1", 4)
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task
    vendor.orders[("adobestock", "1")] = VendorUnavailable("Vendor unreachable")

    first = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))
    assert first.failures[0]["code"] == "vendor_unavailable"
    assert first.balance == 10
    stored = asyncio.run(orchestrator.state.get_task(task.task_id))
    assert stored.status == TaskStatus.PENDING
    assert stored.latest_message == "Vendor unreachable"

    del vendor.orders[("adobestock", "1")]
    second = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))
    assert second.failures == []
    assert second.balance == 6


def test_commit_is_idempotent(orchestrator, vendor, ledger):
    """Committing an already placed order is a no-op."""
    _credit(ledger, "u1", 10)
    vendor.quote("adobestock", "1", 4)
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task

    first = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))
    second = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))

    assert second.tasks[0].status == TaskStatus.PROCESSING
    assert second.tasks[0].batch_id == first.batch.batch_id
    assert second.batch is None
    assert second.balance == 6
    assert len(vendor.calls["order"]) == 1


def test_concurrent_commits_charge_once(orchestrator, vendor, ledger):
    """Two simultaneous commits of the same order charge and order exactly once."""
    _credit(ledger, "u1", 10)
    vendor.quote("adobestock", "1", 4)
    vendor.order_delay = 0.05
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task

    async def race():
        return await asyncio.gather(
            orchestrator.commit_order("u1", [task.task_id]),
            orchestrator.commit_order("u1", [task.task_id]),
        )

    results = asyncio.run(race())
    assert all(r.failures == [] for r in results)
    assert sum(1 for r in results if r.batch is not None) == 1
    assert len(vendor.calls["order"]) == 1
    assert asyncio.run(ledger.get_balance("u1")) == 6


def test_commit_other_users_task_is_not_found(orchestrator, vendor, ledger):
    _credit(ledger, "u2", 10)
    vendor.quote("adobestock", "1", 1)
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task
    committed = asyncio.run(orchestrator.commit_order("u2", [task.task_id]))
    assert committed.failures[0]["code"] == "task_not_found"
    assert asyncio.run(ledger.get_balance("u2")) == 10


def _placed_task(orchestrator, vendor, ledger, points=2):
    _credit(ledger, "u1", 10)
    vendor.quote("adobestock", "1", points)
    task = _preview_one(orchestrator, "u1", url="adobestock:1").task
    committed = asyncio.run(orchestrator.commit_order("u1", [task.task_id]))
    return committed.tasks[0]


def test_polling_times_out_after_bounded_attempts(vendor, state, ledger):
    """An order stuck in processing ends as TIMEOUT with retry_count at the cap."""
    orchestrator = OrderOrchestrator(vendor, state, poll_interval=0, max_poll_attempts=3, refund_on_failure=False)
    task = _placed_task(orchestrator, vendor, ledger)

    final = asyncio.run(orchestrator.poll_until_terminal(task.task_id))
    assert final.status == TaskStatus.TIMEOUT
    assert final.retry_count == 3
    assert final.latest_message == "Polling timeout exceeded"
    assert len(vendor.calls["status"]) == 3

    # Terminal orders are never polled again
    again = asyncio.run(orchestrator.poll_once(task.task_id))
    assert again.status == TaskStatus.TIMEOUT
    assert len(vendor.calls["status"]) == 3


def test_poll_until_terminal_can_raise_on_timeout(vendor, state, ledger):
    orchestrator = OrderOrchestrator(vendor, state, poll_interval=0, max_poll_attempts=2, refund_on_failure=False)
    task = _placed_task(orchestrator, vendor, ledger)
    with pytest.raises(PollTimeout):
        asyncio.run(orchestrator.poll_until_terminal(task.task_id, raise_on_timeout=True))


def test_vendor_error_while_polling_marks_error(orchestrator, vendor, ledger):
    """A vendor-reported failure ends the order as ERROR with its message."""
    task = _placed_task(orchestrator, vendor, ledger)
    vendor.statuses[task.external_task_id] = [OrderStatusInfo(status="error", message="Source file removed")]

    final = asyncio.run(orchestrator.poll_until_terminal(task.task_id))
    assert final.status == TaskStatus.ERROR
    assert final.latest_message == "Source file removed"
    batch = asyncio.run(orchestrator.state.get_batch(final.batch_id))
    assert batch.status == BatchStatus.FAILED
    assert batch.failed_orders == 1
    # No refund unless enabled
    assert asyncio.run(ledger.get_balance("u1")) == 8


def test_failed_order_is_refunded_when_enabled(vendor, state, ledger):
    orchestrator = OrderOrchestrator(vendor, state, poll_interval=0, max_poll_attempts=5, refund_on_failure=True)
    task = _placed_task(orchestrator, vendor, ledger)
    vendor.statuses[task.external_task_id] = [OrderStatusInfo(status="failed")]

    asyncio.run(orchestrator.poll_until_terminal(task.task_id))
    assert asyncio.run(ledger.get_balance("u1")) == 10
    refunds = [e for e in asyncio.run(ledger.history("u1")) if e.type == LedgerType.REFUND]
    assert len(refunds) == 1


def test_transport_error_while_polling_counts_as_attempt(orchestrator, vendor, ledger):
    """A network failure keeps the order active and uses up one attempt."""
    task = _placed_task(orchestrator, vendor, ledger)
    vendor.statuses[task.external_task_id] = [
        VendorUnavailable("Vendor returned HTTP 503"),
        OrderStatusInfo(status="completed"),
    ]

    first = asyncio.run(orchestrator.poll_once(task.task_id))
    assert first.status == TaskStatus.PROCESSING
    assert first.retry_count == 1
    assert first.latest_message == "Vendor returned HTTP 503"

    second = asyncio.run(orchestrator.poll_once(task.task_id))
    assert second.status == TaskStatus.COMPLETED
    assert second.retry_count == 2


def test_ready_without_link_waits_in_downloading(orchestrator, vendor, ledger):
    """Ready orders without a link stay DOWNLOADING until one is resolved."""
    task = _placed_task(orchestrator, vendor, ledger)
    ext_id = task.external_task_id
    vendor.statuses[ext_id] = [OrderStatusInfo(status="ready")]
    vendor.downloads[ext_id] = DownloadInfo()

    first = asyncio.run(orchestrator.poll_once(task.task_id))
    assert first.status == TaskStatus.DOWNLOADING

    vendor.downloads[ext_id] = DownloadInfo(download_url="https://files.example/late.zip", file_name="late.zip")
    second = asyncio.run(orchestrator.poll_once(task.task_id))
    assert second.status == TaskStatus.COMPLETED
    assert second.download_url == "https://files.example/late.zip"
    # Already ready: the status endpoint is not asked again
    assert len(vendor.calls["status"]) == 1


def test_status_download_url_is_used_as_fallback(orchestrator, vendor, ledger):
    task = _placed_task(orchestrator, vendor, ledger)
    ext_id = task.external_task_id
    vendor.statuses[ext_id] = [OrderStatusInfo(status="ready", download_url="https://files.example/status.zip")]
    vendor.downloads[ext_id] = DownloadInfo()

    final = asyncio.run(orchestrator.poll_once(task.task_id))
    assert final.status == TaskStatus.COMPLETED
    assert final.download_url == "https://files.example/status.zip"


def test_redownload_refreshes_link(orchestrator, vendor, ledger):
    task = _placed_task(orchestrator, vendor, ledger)
    vendor.statuses[task.external_task_id] = [OrderStatusInfo(status="ready")]
    asyncio.run(orchestrator.poll_until_terminal(task.task_id))

    vendor.downloads[task.external_task_id] = DownloadInfo(download_url="https://files.example/fresh.zip")
    info = asyncio.run(orchestrator.redownload(task.task_id, "u1"))
    assert info.download_url == "https://files.example/fresh.zip"
    stored = asyncio.run(orchestrator.state.get_task(task.task_id))
    assert stored.download_url == "https://files.example/fresh.zip"


def test_redownload_requires_completed_order(orchestrator, vendor, ledger):
    task = _placed_task(orchestrator, vendor, ledger)
    with pytest.raises(InvalidRequest):
        asyncio.run(orchestrator.redownload(task.task_id, "u1"))


def test_list_orders_pages_newest_first(orchestrator, vendor):
    for n in range(3):
        vendor.quote("adobestock", str(n), 1)
        _preview_one(orchestrator, "u1", url=f"adobestock:{n}")
    page = asyncio.run(orchestrator.list_orders("u1", page=1, limit=2))
    assert page["total"] == 3
    assert len(page["orders"]) == 2
    assert page["orders"][0].asset_id == "2"
