"""
ETL ledger table

Per (brand, connection, entity, job_type) progress record polled by the UI,
plus the chunk numbers already counted on historical rows.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, UniqueConstraint
from datetime import datetime

from sync_orchestrator.models.base import Base


class EtlJob(Base):
    """Progress of one sync unit, reset at the start of every run"""
    __tablename__ = "etl_jobs"

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False, index=True)
    connection_id = Column(String, nullable=False, index=True)
    entity = Column(String(40), nullable=False)
    job_type = Column(String(60), nullable=False)  # recent_sync, historical_campaigns, ...

    run_id = Column(String(32), nullable=True)

    status = Column(String(20), nullable=False, default="pending")  # pending, processing, completed, failed
    progress_pct = Column(Integer, nullable=False, default=0)
    rows_written = Column(Integer, nullable=False, default=0)
    total_rows = Column(Integer, nullable=True)
    chunks_completed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("brand_id", "connection_id", "entity", "job_type", name="uq_etl_jobs_key"),
    )


class EtlJobChunk(Base):
    """A historical chunk already counted on its ledger row, so a redelivered chunk is not counted twice"""
    __tablename__ = "etl_job_chunks"

    id = Column(Integer, primary_key=True, index=True)
    etl_job_id = Column(Integer, ForeignKey("etl_jobs.id"), nullable=False, index=True)
    chunk_number = Column(Integer, nullable=False)
    rows_written = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("etl_job_id", "chunk_number", name="uq_etl_job_chunks_chunk"),
    )
