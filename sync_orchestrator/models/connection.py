"""
Platform connection table

One authorized link between a brand and an upstream account.
"""
from sqlalchemy import Column, String, DateTime, JSON
from datetime import datetime

from sync_orchestrator.models.base import Base


class PlatformConnection(Base):
    """Upstream credentials plus the coarse sync status shown in the UI"""
    __tablename__ = "platform_connections"

    id = Column(String, primary_key=True)
    brand_id = Column(String, nullable=False, index=True)
    platform_type = Column(String(20), nullable=False, index=True)  # ads, commerce

    credentials = Column(JSON, nullable=False, default=dict)  # opaque to the orchestrator
    account_created_at = Column(DateTime, nullable=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # active, revoked
    sync_status = Column(String(20), nullable=False, default="idle")  # idle, starting, syncing, completed, failed
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
