"""
Synced upstream records and derived aggregates

SyncedRecord has no unique constraint on the natural key: retried upserts
can leave duplicates, which the reconciliation pass removes.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Float, Date, Index, UniqueConstraint
from datetime import datetime

from sync_orchestrator.models.base import Base


class SyncedRecord(Base):
    """A normalized record from an ads or commerce platform"""
    __tablename__ = "synced_records"

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    platform = Column(String(20), nullable=False)
    entity = Column(String(40), nullable=False)
    natural_key = Column(String, nullable=False)

    record_date = Column(Date, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    content_hash = Column(String(64), nullable=False)

    ingested_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_synced_records_key", "brand_id", "platform", "entity", "natural_key"),
    )


class BrandAggregate(Base):
    """Per-entity totals recomputed from canonical records"""
    __tablename__ = "brand_aggregates"

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    entity = Column(String(40), nullable=False)

    record_count = Column(Integer, nullable=False, default=0)
    value_total = Column(Float, nullable=True)  # spend for ads, revenue for orders
    first_record_date = Column(Date, nullable=True)
    last_record_date = Column(Date, nullable=True)

    computed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("brand_id", "platform", "entity", name="uq_brand_aggregates_key"),
    )
