"""Normalized shapes produced by the URL resolver and the vendor gateway."""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class ResolvedAsset(BaseModel):
    """A stock site and asset id identified from user input."""

    model_config = ConfigDict(frozen=True)

    site: str = Field(..., description="Vendor site key, e.g. shutterstock")
    asset_id: str = Field(..., description="Asset id on that site")
    source_url: str = Field(..., description="Input the pair was resolved from")


class StockSite(BaseModel):
    """Catalog entry for one stock site."""

    site: str
    display_name: Optional[str] = None
    price: Optional[float] = None
    min_price: Optional[float] = None
    currency: Optional[str] = None
    active: bool = True


class AssetInfo(BaseModel):
    """Cost and preview metadata for one asset."""

    site: str
    asset_id: str
    title: Optional[str] = None
    preview_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    cost_points: Optional[int] = Field(default=None, description="Integral points, ceil'd and >= 0")
    cost_amount: Optional[float] = None
    cost_currency: Optional[str] = None
    source_url: Optional[str] = None
    status: Optional[str] = Field(default=None, description="Vendor availability status, if reported")
    message: Optional[str] = None


class OrderReceipt(BaseModel):
    """Vendor acknowledgement of a created order."""

    external_task_id: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    download_url: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class OrderStatusInfo(BaseModel):
    """Vendor-side progress of an order."""

    status: Optional[str] = None
    progress: Optional[float] = None
    download_url: Optional[str] = None
    message: Optional[str] = None


class DownloadInfo(BaseModel):
    """Resolved download link."""

    download_url: Optional[str] = None
    file_name: Optional[str] = None
