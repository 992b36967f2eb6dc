"""Permissive wire schemas for vendor responses.

Every field is optional and unknown keys are kept; the only hard failures are
a body that is not a JSON object and the success/error envelope.
"""
from typing import Any
from pydantic import BaseModel, ConfigDict


class VendorEnvelope(BaseModel):
    """Fields every vendor response may carry."""

    model_config = ConfigDict(extra="allow")

    success: Any = None
    error: Any = None
    message: Any = None

    def is_failure(self) -> bool:
        """HTTP 200 bodies can still report failure via success=false or error=true."""
        return self.success is False or self.error is True

    def payload(self) -> dict:
        return self.model_dump()


class StockInfoResponse(VendorEnvelope):
    points: Any = None
    cost: Any = None
    price: Any = None
    currency: Any = None
    title: Any = None
    preview: Any = None
    status: Any = None


class OrderResponse(VendorEnvelope):
    task_id: Any = None
    job_id: Any = None
    status: Any = None
    downloadLink: Any = None
    downloadUrl: Any = None
    url: Any = None
    link: Any = None


class OrderStatusResponse(VendorEnvelope):
    status: Any = None
    progress: Any = None
    download_url: Any = None


class DownloadResponse(VendorEnvelope):
    downloadLink: Any = None
    downloadUrl: Any = None
    download_url: Any = None
    url: Any = None
    link: Any = None
    fileName: Any = None
