"""
Meta Graph API fetcher for the ads platform.

All three entities come from the account insights edge with daily
granularity (time_increment=1):
  - campaigns:    level=campaign
  - demographics: level=account, breakdowns=age,gender
  - insights:     level=ad

Graph errors keep their code and subcode in the message, so a throttled
account ("User request limit reached", code 17, subcode 2446079) is
recognised as a rate limit downstream.
"""
import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from sync_orchestrator.config import get_settings
from sync_orchestrator.connectors.base import UpstreamAPIError, UpstreamFetcher
from sync_orchestrator.services.errors import ConnectionInvalidError, PayloadTooLargeError
from sync_orchestrator.services.job_types import DateWindow, Platform
from sync_orchestrator.utils.helpers import to_float
from sync_orchestrator.utils.logger import log

settings = get_settings()

METRIC_FIELDS = ["spend", "impressions", "clicks", "reach", "cpm", "cpc", "ctr", "date_start", "date_stop"]

ENTITY_QUERIES = {
    "campaigns": {
        "level": "campaign",
        "fields": ["campaign_id", "campaign_name"] + METRIC_FIELDS,
    },
    "demographics": {
        "level": "account",
        "fields": ["account_id"] + METRIC_FIELDS,
        "breakdowns": "age,gender",
    },
    "insights": {
        "level": "ad",
        "fields": ["campaign_id", "adset_id", "ad_id", "ad_name", "actions", "action_values"] + METRIC_FIELDS,
    },
}

# Graph API answer when a single request would return too much data
PAYLOAD_TOO_LARGE_PHRASES = ("reduce the amount of data", "please reduce the number of")

# Expired or revoked access token
OAUTH_ERROR_CODE = 190


def _natural_key(entity: str, row: Dict[str, Any]) -> str:
    day = row.get("date_start")
    if entity == "campaigns":
        return f"{row.get('campaign_id')}:{day}"
    if entity == "demographics":
        return f"{row.get('account_id')}:{row.get('age')}:{row.get('gender')}:{day}"
    return f"{row.get('ad_id')}:{day}"


class MetaAdsFetcher(UpstreamFetcher):
    """Fetches daily ad insights for one ad account"""

    platform = Platform.ADS

    def __init__(self, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.base_url = f"{settings.meta_graph_url.rstrip('/')}/{settings.meta_api_version}"

    @property
    def entities(self) -> List[str]:
        return list(settings.ads_entities)

    async def fetch_range(self, entity, credentials, window: DateWindow) -> List[Dict[str, Any]]:
        self._check_entity(entity)
        if window.days == 0:
            return []

        account_id = str(credentials["ad_account_id"])
        if not account_id.startswith("act_"):
            account_id = f"act_{account_id}"

        query = ENTITY_QUERIES[entity]
        params = {
            "access_token": credentials["access_token"],
            "level": query["level"],
            "fields": ",".join(query["fields"]),
            "time_increment": "1",
            # Graph API ranges are inclusive
            "time_range": json.dumps({
                "since": window.start.isoformat(),
                "until": (window.end - timedelta(days=1)).isoformat(),
            }),
            "limit": "500",
        }
        if "breakdowns" in query:
            params["breakdowns"] = query["breakdowns"]

        records: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self.base_url}/{account_id}/insights"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            while url:
                async with session.get(url, params=params) as response:
                    body = await response.json(content_type=None) or {}
                    if response.status != 200 or "error" in body:
                        self._raise_for_error(response.status, body)

                for row in body.get("data", []):
                    records.append(self._normalize(entity, row))

                # The next link already carries every query parameter
                url = body.get("paging", {}).get("next")
                params = None

        log.debug(f"Meta {entity} {window.start}..{window.end} for {account_id}: {len(records)} rows")
        return records

    @staticmethod
    def _raise_for_error(status: int, body: Dict[str, Any]):
        error = body.get("error") or {}
        message = error.get("message") or f"unexpected response {body}"
        code = error.get("code")
        subcode = error.get("error_subcode")
        if any(phrase in message.lower() for phrase in PAYLOAD_TOO_LARGE_PHRASES):
            raise PayloadTooLargeError(message)
        detail = message
        if code is not None:
            detail += f" (code {code}"
            detail += f", subcode {subcode})" if subcode is not None else ")"
        if code == OAUTH_ERROR_CODE:
            raise ConnectionInvalidError(f"connection_invalid: Meta HTTP {status}: {detail}")
        raise UpstreamAPIError("Meta", status, detail)

    @staticmethod
    def _normalize(entity: str, row: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(row)
        record["natural_key"] = _natural_key(entity, row)
        record["record_date"] = row.get("date_start")
        record["spend"] = to_float(row.get("spend")) or 0.0
        return record
