"""
Base class for upstream fetchers.

A fetcher returns normalized records for one entity over a half-open date
window. Each record carries a `natural_key` and a `record_date`; everything
else is passed through to the record store untouched. Failures surface as
exceptions whose message keeps the upstream text so the rate-limit
controller can classify them.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sync_orchestrator.config import get_settings
from sync_orchestrator.services.job_types import DateWindow, Platform

settings = get_settings()


class UpstreamAPIError(Exception):
    """Non-success HTTP response from an upstream API"""

    def __init__(self, source: str, status: int, message: str):
        super().__init__(f"{source} HTTP {status}: {message}")
        self.source = source
        self.status = status
        self.upstream_message = message


class UpstreamFetcher(ABC):
    """fetch_range(entity, credentials, window) -> records"""

    platform: Platform

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds or settings.upstream_timeout_seconds

    @property
    @abstractmethod
    def entities(self) -> List[str]:
        """Entities this fetcher can sync, in backfill order"""

    @abstractmethod
    async def fetch_range(
        self,
        entity: str,
        credentials: Dict[str, Any],
        window: DateWindow,
    ) -> List[Dict[str, Any]]:
        pass

    def _check_entity(self, entity: str):
        if entity not in self.entities:
            raise ValueError(f"{type(self).__name__} cannot fetch entity {entity!r}")
