"""URL builders for the stock aggregator endpoints."""
from typing import Optional
from urllib.parse import quote

from src.config import config


def _segment(value: str) -> str:
    return quote(str(value), safe="")


def _base(base_url: Optional[str]) -> str:
    return (base_url or config.VENDOR_BASE_URL).rstrip("/")


def sites_url(base_url: Optional[str] = None) -> str:
    """Catalog of stock sites and their prices."""
    return f"{_base(base_url)}/stocksites"


def stock_info_url(site: str, asset_id: str, base_url: Optional[str] = None) -> str:
    """Cost and preview metadata for one asset."""
    return f"{_base(base_url)}/stockinfo/{_segment(site)}/{_segment(asset_id)}"


def stock_order_url(site: str, asset_id: str, base_url: Optional[str] = None) -> str:
    """Create an order for one asset (charged upstream)."""
    return f"{_base(base_url)}/stockorder/{_segment(site)}/{_segment(asset_id)}"


def order_status_url(external_task_id: str, base_url: Optional[str] = None) -> str:
    return f"{_base(base_url)}/order/{_segment(external_task_id)}/status"


def download_url(external_task_id: str, base_url: Optional[str] = None) -> str:
    return f"{_base(base_url)}/v2/order/{_segment(external_task_id)}/download"
