"""
Upstream response snapshots

Last good response per query, served when the upstream is rate limited
or failing.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON

from sync_orchestrator.models.base import Base


class UpstreamSnapshot(Base):
    __tablename__ = "upstream_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_key = Column(String, unique=True, index=True, nullable=False)

    records = Column(JSON, nullable=False, default=list)
    row_count = Column(Integer, nullable=False, default=0)
    fetched_at = Column(DateTime, nullable=False)
