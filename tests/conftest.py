"""Shared fixtures: a temporary state database and an in-memory vendor."""
import asyncio
from collections import defaultdict

import pytest

from src.errors import VendorRejected
from src.jobs.orchestrator import OrderOrchestrator
from src.parse.models import AssetInfo, DownloadInfo, OrderReceipt, OrderStatusInfo, StockSite
from src.store.ledger import BalanceLedger
from src.store.state import StateDB


class FakeVendor:
    """Scriptable stand-in for VendorClient.

    Values in the lookup tables may be exceptions, which are raised instead
    of returned. Status scripts are consumed in order; the last one repeats.
    """

    def __init__(self):
        self.sites = [
            StockSite(site="adobestock", price=1.0),
            StockSite(site="shutterstock", price=1.5),
        ]
        self.infos = {}
        self.orders = {}
        self.statuses = {}
        self.downloads = {}
        self.order_delay = 0.0
        self.during_order = None
        self.calls = defaultdict(list)

    def quote(self, site, asset_id, points, status=None, title="Asset"):
        self.infos[(site, asset_id)] = AssetInfo(
            site=site,
            asset_id=asset_id,
            cost_points=points,
            cost_amount=float(points) if points is not None else None,
            title=title,
            status=status,
        )

    async def list_sites(self):
        self.calls["sites"].append(None)
        return list(self.sites)

    async def get_asset_info(self, site, asset_id, source_url=None):
        self.calls["info"].append((site, asset_id))
        result = self.infos.get((site, asset_id))
        if result is None:
            raise VendorRejected("Asset not found")
        if isinstance(result, Exception):
            raise result
        return result

    async def create_order(self, site, asset_id, source_url=None, response_type="any"):
        self.calls["order"].append((site, asset_id))
        if self.order_delay:
            await asyncio.sleep(self.order_delay)
        if self.during_order is not None:
            await self.during_order()
        result = self.orders.get((site, asset_id))
        if isinstance(result, Exception):
            raise result
        return result or OrderReceipt(external_task_id=f"ext-{site}-{asset_id}", status="processing")

    async def get_order_status(self, external_task_id, response_type="any"):
        self.calls["status"].append(external_task_id)
        script = self.statuses.get(external_task_id, [OrderStatusInfo(status="processing")])
        result = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def resolve_download(self, external_task_id, response_type="any"):
        self.calls["download"].append(external_task_id)
        result = self.downloads.get(
            external_task_id,
            DownloadInfo(download_url=f"https://files.example/{external_task_id}.zip", file_name="asset.zip"),
        )
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def state(tmp_path):
    db = StateDB(tmp_path / "orders.db", lock_timeout=10)
    asyncio.run(db.initialize())
    return db


@pytest.fixture
def vendor():
    return FakeVendor()


@pytest.fixture
def ledger(state):
    return BalanceLedger(state)


@pytest.fixture
def orchestrator(vendor, state):
    return OrderOrchestrator(
        vendor,
        state,
        poll_interval=0,
        max_poll_attempts=5,
        max_batch_size=5,
        refund_on_failure=False,
    )
