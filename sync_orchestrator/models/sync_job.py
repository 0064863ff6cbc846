"""
Sync job queue table

One row per unit of work. Rows are only mutated through conditional
UPDATEs in SqlJobStore so concurrent workers never lose an update.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index
from datetime import datetime

from sync_orchestrator.models.base import Base


class SyncJob(Base):
    """A queued sync job for one upstream platform"""
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Routing
    platform = Column(String(20), nullable=False, index=True)  # ads, commerce
    job_type = Column(String(40), nullable=False, index=True)  # recent_sync, historical_backfill, daily_sync, reconcile
    entity = Column(String(40), nullable=True)  # set for historical_backfill

    # Ownership
    brand_id = Column(String, nullable=False, index=True)
    connection_id = Column(String, nullable=False, index=True)
    run_id = Column(String(32), nullable=True, index=True)

    # Historical chunk ordering
    chunk_number = Column(Integer, nullable=True)
    total_chunks = Column(Integer, nullable=True)

    payload = Column(JSON, nullable=False, default=dict)

    # Scheduling
    priority = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="waiting", index=True)  # waiting, active, completed, failed
    attempts = Column(Integer, nullable=False, default=0)
    deferrals = Column(Integer, nullable=False, default=0)  # rate-limit requeues
    available_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_sync_jobs_dequeue", "platform", "status", "priority", "id"),
    )
