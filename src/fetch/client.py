"""Async HTTP client for the stock aggregator API."""
import logging
from typing import Optional, Type

import httpx
import orjson
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config import config
from src.errors import VendorRejected, VendorTimeout, VendorUnavailable
from src.fetch import endpoints
from src.fetch.normalize import (
    normalize_asset_info,
    normalize_download,
    normalize_order_receipt,
    normalize_order_status,
    normalize_sites,
    vendor_message,
)
from src.fetch.rate_limit import RateLimiter
from src.fetch.schemas import (
    DownloadResponse,
    OrderResponse,
    OrderStatusResponse,
    StockInfoResponse,
    VendorEnvelope,
)
from src.parse.models import AssetInfo, DownloadInfo, OrderReceipt, OrderStatusInfo, StockSite
from src.parse.redact import safe_message
from src.parse.url_resolver import requires_full_url

logger = logging.getLogger(__name__)


def is_retryable_status(response: httpx.Response) -> bool:
    """Check if status code is retryable."""
    return response.status_code == 429 or response.status_code >= 500


class VendorClient:
    """Typed gateway over the aggregator API.

    One instance owns one ``httpx.AsyncClient``. Construct it explicitly and
    hand it to the orchestrator; pass ``transport`` to swap the network out.
    Idempotent reads are retried with exponential backoff on timeouts,
    network errors, 429 and 5xx. Order creation is attempted once.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[float] = None,
        rate_per_second: Optional[float] = None,
    ):
        self.base_url = (base_url or config.VENDOR_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.VENDOR_TIMEOUT
        self.max_retries = max(max_retries if max_retries is not None else config.VENDOR_MAX_RETRIES, 1)
        self.backoff = backoff if backoff is not None else config.VENDOR_RETRY_BACKOFF
        limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
        )
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=self.timeout,
            limits=limits,
            transport=transport,
            headers={
                "X-Api-Key": (api_key if api_key is not None else config.VENDOR_API_KEY) or "",
                "Accept": "application/json",
            },
        )
        self.rate_limiter = RateLimiter(
            rate_per_second if rate_per_second is not None else config.VENDOR_RATE_PER_SECOND
        )
        self.retry_count = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def _send(self, url: str, params: Optional[dict]) -> dict:
        """One request; maps transport and HTTP failures to vendor errors."""
        await self.rate_limiter.acquire(url)
        logger.debug(f"Vendor request: GET {url}")
        try:
            response = await self.client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise VendorTimeout(f"Vendor request timed out: {type(e).__name__}") from e
        except httpx.TransportError as e:
            raise VendorUnavailable(f"Vendor unreachable: {safe_message(e)}") from e
        except httpx.HTTPError as e:
            # Body decoding and other request failures
            raise VendorUnavailable(f"Vendor request failed: {type(e).__name__}: {safe_message(e)}") from e

        if is_retryable_status(response):
            raise VendorUnavailable(
                f"Vendor returned HTTP {response.status_code}", status_code=response.status_code
            )
        if response.is_error:
            detail = self._error_detail(response)
            raise VendorRejected(
                f"Vendor returned HTTP {response.status_code}: {detail}", status_code=response.status_code
            )

        if not response.content:
            return {}
        try:
            body = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise VendorRejected("Vendor returned invalid JSON") from e
        if not isinstance(body, dict):
            raise VendorRejected("Vendor returned an unexpected response shape")
        return body

    def _error_detail(self, response: httpx.Response) -> str:
        try:
            body = orjson.loads(response.content)
        except orjson.JSONDecodeError:
            body = None
        if isinstance(body, dict):
            message = vendor_message(body)
            if message:
                return safe_message(message)
        return safe_message(response.text) or response.reason_phrase

    async def _request(
        self,
        url: str,
        schema: Type[VendorEnvelope],
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> dict:
        """GET a JSON object, validate its envelope and return it as a dict."""
        params = {k: v for k, v in (params or {}).items() if v not in (None, "")}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries if retry else 1),
            wait=wait_exponential(multiplier=self.backoff, min=self.backoff, max=30),
            retry=retry_if_exception_type(VendorUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self.retry_count += 1
                body = await self._send(url, params)

        envelope = schema.model_validate(body)
        if envelope.is_failure():
            message = vendor_message(body) or "Vendor reported failure"
            raise VendorRejected(safe_message(message))
        return envelope.payload()

    async def list_sites(self) -> list[StockSite]:
        """Catalog of stock sites, sorted by site key."""
        body = await self._request(endpoints.sites_url(self.base_url), VendorEnvelope)
        return normalize_sites(body)

    async def get_asset_info(self, site: str, asset_id: str, source_url: Optional[str] = None) -> AssetInfo:
        """Cost quote and preview metadata for one asset."""
        params = {"url": source_url if requires_full_url(site) else None}
        body = await self._request(endpoints.stock_info_url(site, asset_id, self.base_url), StockInfoResponse, params)
        return normalize_asset_info(site, asset_id, body, source_url=source_url)

    async def create_order(
        self,
        site: str,
        asset_id: str,
        source_url: Optional[str] = None,
        response_type: str = "any",
    ) -> OrderReceipt:
        """Place an order upstream. Never retried: a retry could buy twice."""
        params = {
            "url": source_url if requires_full_url(site) else None,
            "responsetype": response_type,
        }
        body = await self._request(
            endpoints.stock_order_url(site, asset_id, self.base_url), OrderResponse, params, retry=False
        )
        receipt = normalize_order_receipt(body)
        logger.info(f"Vendor order created for {site}:{asset_id} -> {receipt.external_task_id}")
        return receipt

    async def get_order_status(self, external_task_id: str, response_type: str = "any") -> OrderStatusInfo:
        body = await self._request(
            endpoints.order_status_url(external_task_id, self.base_url),
            OrderStatusResponse,
            {"responsetype": response_type},
        )
        return normalize_order_status(body)

    async def resolve_download(self, external_task_id: str, response_type: str = "any") -> DownloadInfo:
        body = await self._request(
            endpoints.download_url(external_task_id, self.base_url),
            DownloadResponse,
            {"responsetype": response_type},
        )
        return normalize_download(body)
