import os
from datetime import timedelta
from typing import Callable, Dict, List, Optional

# Set env vars before any sync_orchestrator module is imported so the
# cached settings point at an in-memory database with file logging off.
_test_env = {
    "DATABASE_URL": "sqlite://",
    "LOG_TO_FILE": "false",
    "LOG_LEVEL": "WARNING",
    "RUN_WORKERS": "false",
}

for key, value in _test_env.items():
    os.environ[key] = value

import pytest

from sync_orchestrator.connectors.base import UpstreamFetcher
from sync_orchestrator.models.base import Base, SessionLocal, engine
from sync_orchestrator.services.job_types import DateWindow, Platform
from sync_orchestrator.services.orchestrator import SyncOrchestrator


class FakeFetcher(UpstreamFetcher):
    """
    Returns one record per day of the requested window.

    `error` (an exception, or a callable(entity, window) returning one or
    None) makes the call fail; `before_fetch` runs before every call.
    """

    def __init__(self, platform: Platform, entities: List[str], value_field: str = "spend"):
        super().__init__()
        self.platform = platform
        self._entities = list(entities)
        self.value_field = value_field
        self.calls = []
        self.error = None
        self.before_fetch: Optional[Callable] = None

    @property
    def entities(self) -> List[str]:
        return self._entities

    async def fetch_range(self, entity, credentials, window: DateWindow):
        self.calls.append((entity, window))
        if self.before_fetch:
            self.before_fetch(entity, window)
        error = self.error(entity, window) if callable(self.error) else self.error
        if error is not None:
            raise error
        records = []
        for offset in range(window.days):
            day = window.start + timedelta(days=offset)
            records.append({
                "natural_key": f"{entity}:{day.isoformat()}",
                "record_date": day.isoformat(),
                self.value_field: 10.0,
            })
        return records


@pytest.fixture(autouse=True)
def fresh_db():
    """Empty schema for every test"""
    import sync_orchestrator.models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def fetchers() -> Dict[Platform, FakeFetcher]:
    return {
        Platform.ADS: FakeFetcher(Platform.ADS, ["campaigns"]),
        Platform.COMMERCE: FakeFetcher(Platform.COMMERCE, ["orders"], value_field="total_price"),
    }


@pytest.fixture
def orchestrator(fetchers) -> SyncOrchestrator:
    return SyncOrchestrator(session_factory=SessionLocal, fetchers=fetchers)


@pytest.fixture
def ads_connection(orchestrator):
    return orchestrator.register_connection(
        "brand-1", Platform.ADS, {"access_token": "token", "ad_account_id": "123"}
    )
