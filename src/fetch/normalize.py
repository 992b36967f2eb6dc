"""Normalization of loosely-shaped vendor payloads into typed records.

The vendor is inconsistent about field names, so every picker here walks an
explicit priority list and returns the first usable value. Missing fields
degrade to None instead of failing.
"""
import math
import re
from typing import Any, Iterable, Optional

from src.parse.models import AssetInfo, DownloadInfo, OrderReceipt, OrderStatusInfo, StockSite

# Single source of truth for where a download link may live
DOWNLOAD_LINK_KEYS = ("downloadLink", "downloadUrl", "download_url", "url", "link")
COST_POINT_KEYS = ("points", "cost", "price")
COST_AMOUNT_KEYS = ("cost", "price")
PREVIEW_KEYS = ("preview", "previewUrl", "preview_url", "image", "thumb", "thumbnail")
THUMBNAIL_KEYS = ("thumbnail", "thumb", "previewThumb")
TITLE_KEYS = ("title", "name", "filename", "fileName")
FILE_NAME_KEYS = ("fileName", "filename", "file_name", "name")
TASK_ID_KEYS = ("task_id", "job_id", "taskId", "id")

# Vendor-side status words
VENDOR_READY_STATUSES = frozenset({"ready", "completed", "success"})
VENDOR_FAILED_STATUSES = frozenset({"error", "failed", "cancelled", "canceled"})

# Catalog entries that are not stock sites
NON_SITE_KEYS = frozenset({"notificationChannel"})

_NUMBER_JUNK_RE = re.compile(r"[^0-9.,-]")


def safe_string(value: Any) -> Optional[str]:
    """Trimmed non-empty string, or None. Numbers are stringified."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    return None


def to_number(value: Any) -> Optional[float]:
    """Parse numbers and numeric strings such as "$1,200.50"; None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        cleaned = _NUMBER_JUNK_RE.sub("", value).replace(",", "")
        if not cleaned:
            return None
        try:
            parsed = float(cleaned)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def first_string(data: dict, keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = safe_string(data.get(key))
        if value:
            return value
    return None


def first_number(data: dict, keys: Iterable[str]) -> Optional[float]:
    for key in keys:
        value = to_number(data.get(key))
        if value is not None:
            return value
    return None


def cost_points(data: dict) -> Optional[int]:
    """Integral point cost: first numeric of points/cost/price, ceil'd, never negative."""
    value = first_number(data, COST_POINT_KEYS)
    if value is None:
        return None
    return max(math.ceil(value), 0)


def pick_download_url(data: dict) -> Optional[str]:
    return first_string(data, DOWNLOAD_LINK_KEYS)


def vendor_message(data: dict) -> Optional[str]:
    """Human-readable message from a response body (message, error text, data)."""
    message = safe_string(data.get("message"))
    if message:
        return message
    error = data.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    return safe_string(data.get("data"))


def normalize_status(value: Any) -> Optional[str]:
    status = safe_string(value)
    return status.lower() if status else None


def normalize_sites(raw: dict) -> list[StockSite]:
    """Catalog map keyed by site -> sorted list, skipping non-object entries."""
    sites = []
    for key, entry in raw.items():
        if key in NON_SITE_KEYS or not isinstance(entry, dict):
            continue
        active = entry.get("active")
        sites.append(
            StockSite(
                site=key,
                display_name=safe_string(entry.get("displayName")) or safe_string(entry.get("name")),
                price=to_number(entry.get("price")),
                min_price=to_number(entry.get("minPrice")),
                currency=safe_string(entry.get("currency")),
                active=active if isinstance(active, bool) else True,
            )
        )
    return sorted(sites, key=lambda s: s.site)


def normalize_asset_info(site: str, asset_id: str, data: dict, source_url: Optional[str] = None) -> AssetInfo:
    """Stock info payload -> AssetInfo. The request's site and id win over echoed values."""
    return AssetInfo(
        site=site,
        asset_id=asset_id,
        title=first_string(data, TITLE_KEYS),
        preview_url=first_string(data, PREVIEW_KEYS),
        thumbnail_url=first_string(data, THUMBNAIL_KEYS) or first_string(data, PREVIEW_KEYS),
        cost_points=cost_points(data),
        cost_amount=first_number(data, COST_AMOUNT_KEYS),
        cost_currency=safe_string(data.get("currency")) or safe_string(data.get("currencyCode")),
        source_url=source_url or safe_string(data.get("url")) or safe_string(data.get("source")),
        status=normalize_status(data.get("status")),
        message=safe_string(data.get("message")),
    )


def normalize_order_receipt(data: dict) -> OrderReceipt:
    return OrderReceipt(
        external_task_id=first_string(data, TASK_ID_KEYS),
        status=normalize_status(data.get("status")),
        message=vendor_message(data),
        download_url=pick_download_url(data),
        raw=data,
    )


def normalize_order_status(data: dict) -> OrderStatusInfo:
    message = data.get("message")
    return OrderStatusInfo(
        status=normalize_status(data.get("status")),
        progress=to_number(data.get("progress")),
        download_url=pick_download_url(data),
        message=safe_string(message) if isinstance(message, str) else safe_string(data.get("error")),
    )


def normalize_download(data: dict) -> DownloadInfo:
    return DownloadInfo(
        download_url=pick_download_url(data),
        file_name=first_string(data, FILE_NAME_KEYS),
    )
