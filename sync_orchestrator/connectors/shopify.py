"""
Shopify Admin REST fetcher for the commerce platform.

Orders, customers and products are fetched by `created_at` window with
cursor pagination through the Link header (page_info).
"""
from datetime import datetime, time, timezone
from typing import Any, Dict, List, Optional

import aiohttp
from dateutil import parser as date_parser

from sync_orchestrator.config import get_settings
from sync_orchestrator.connectors.base import UpstreamAPIError, UpstreamFetcher
from sync_orchestrator.services.errors import ConnectionInvalidError, PayloadTooLargeError
from sync_orchestrator.services.job_types import DateWindow, Platform
from sync_orchestrator.utils.helpers import to_float
from sync_orchestrator.utils.logger import log

settings = get_settings()

ENTITY_FIELDS = {
    "orders": "id,name,created_at,updated_at,total_price,subtotal_price,currency,financial_status,customer",
    "customers": "id,email,created_at,updated_at,orders_count,total_spent,state",
    "products": "id,title,vendor,product_type,created_at,updated_at,status",
}


def _window_bound(day) -> str:
    return datetime.combine(day, time.min, tzinfo=timezone.utc).isoformat()


class ShopifyFetcher(UpstreamFetcher):
    """Fetches orders, customers and products for one shop"""

    platform = Platform.COMMERCE

    def __init__(self, timeout_seconds: Optional[float] = None, page_size: Optional[int] = None):
        super().__init__(timeout_seconds)
        self.api_version = settings.shopify_api_version
        self.page_size = page_size or settings.shopify_page_size

    @property
    def entities(self) -> List[str]:
        return list(settings.commerce_entities)

    async def fetch_range(self, entity, credentials, window: DateWindow) -> List[Dict[str, Any]]:
        self._check_entity(entity)
        if window.days == 0:
            return []

        shop_domain = credentials["shop_domain"].replace("https://", "").rstrip("/")
        headers = {
            "X-Shopify-Access-Token": credentials["access_token"],
            "Content-Type": "application/json",
        }
        params = {
            "created_at_min": _window_bound(window.start),
            "created_at_max": _window_bound(window.end),
            "limit": str(self.page_size),
            "fields": ENTITY_FIELDS[entity],
        }
        if entity == "orders":
            params["status"] = "any"

        records: List[Dict[str, Any]] = []
        url: Optional[str] = f"https://{shop_domain}/admin/api/{self.api_version}/{entity}.json"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            while url:
                async with session.get(url, params=params) as response:
                    if response.status != 200:
                        await self._raise_for_error(response)
                    body = await response.json(content_type=None) or {}
                    next_link = response.links.get("next")

                for row in body.get(entity, []):
                    record = self._normalize(entity, row)
                    # created_at_max is inclusive upstream, the window is not
                    if record["record_date"] is None or record["record_date"] < window.end.isoformat():
                        records.append(record)

                # page_info links must not repeat the filter parameters
                url = str(next_link["url"]) if next_link else None
                params = None

        log.debug(f"Shopify {entity} {window.start}..{window.end} for {shop_domain}: {len(records)} rows")
        return records

    @staticmethod
    async def _raise_for_error(response: aiohttp.ClientResponse):
        text = await response.text()
        if response.status == 429:
            retry_after = response.headers.get("Retry-After")
            raise UpstreamAPIError("Shopify", 429, f"Too Many Requests (retry after {retry_after}s)")
        if response.status in (401, 403):
            raise ConnectionInvalidError(f"connection_invalid: Shopify HTTP {response.status}: {text[:200]}")
        if response.status == 413:
            raise PayloadTooLargeError(f"Shopify HTTP 413: {text[:200]}")
        raise UpstreamAPIError("Shopify", response.status, text[:500])

    @staticmethod
    def _normalize(entity: str, row: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(row)
        record["natural_key"] = str(row.get("id"))
        created = row.get("created_at")
        record["record_date"] = date_parser.parse(created).astimezone(timezone.utc).date().isoformat() if created else None
        if entity == "orders":
            record["total_price"] = to_float(row.get("total_price")) or 0.0
        return record
