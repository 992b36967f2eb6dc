"""TTL cache in front of the vendor catalog and per-asset quotes.

Quotes are advisory: the ledger re-checks affordability at commit time.
"""
import logging
from typing import Optional

from src.config import config
from src.fetch.client import VendorClient
from src.fetch.normalize import VENDOR_FAILED_STATUSES
from src.parse.models import AssetInfo, StockSite
from src.store.cache import KeyValueCache
from src.store.state import StateDB

logger = logging.getLogger(__name__)

SITES_KEY = "stock:sites"
INFO_PREFIX = "stock:info:"


def info_key(site: str, asset_id: str) -> str:
    return f"{INFO_PREFIX}{site}:{asset_id}"


class PricingCache:
    """Serves catalog and quotes from cache, refreshing from the vendor on miss."""

    def __init__(
        self,
        vendor: VendorClient,
        state: StateDB,
        sites_ttl: Optional[int] = None,
        cost_ttl: Optional[int] = None,
    ):
        self.vendor = vendor
        self.state = state
        self.cache = KeyValueCache(state)
        self.sites_ttl = sites_ttl if sites_ttl is not None else config.SITES_CACHE_TTL
        self.cost_ttl = cost_ttl if cost_ttl is not None else config.COST_CACHE_TTL

    async def get_sites(self, force_refresh: bool = False) -> list[StockSite]:
        """Catalog of stock sites; a refresh also upserts the catalog table."""
        if not force_refresh:
            cached = await self.cache.get(SITES_KEY)
            if cached is not None:
                return [StockSite(**entry) for entry in cached]

        sites = await self.vendor.list_sites()
        await self.cache.set(SITES_KEY, [site.model_dump() for site in sites], self.sites_ttl)
        await self.state.upsert_sites(sites)
        logger.info(f"Refreshed stock site catalog: {len(sites)} sites")
        return sites

    async def get_asset_cost(self, site: str, asset_id: str, source_url: Optional[str] = None) -> AssetInfo:
        """Quote for one asset. Only usable quotes (priced, not failed) are cached."""
        key = info_key(site, asset_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return AssetInfo(**cached)

        info = await self.vendor.get_asset_info(site, asset_id, source_url=source_url)
        if info.cost_points is not None and info.status not in VENDOR_FAILED_STATUSES:
            await self.cache.set(key, info.model_dump(), self.cost_ttl)
        return info

    async def invalidate(self, site: Optional[str] = None, asset_id: Optional[str] = None) -> None:
        """Drop one quote, every quote of a site, or the whole pricing cache."""
        if site and asset_id:
            await self.cache.delete(info_key(site, asset_id))
        elif site:
            await self.cache.delete_prefix(f"{INFO_PREFIX}{site}:")
        else:
            await self.cache.delete(SITES_KEY)
            await self.cache.delete_prefix(INFO_PREFIX)

    async def purge_expired(self) -> int:
        return await self.cache.purge_expired()
