"""Database models for the sync orchestrator"""

from sync_orchestrator.models.sync_job import SyncJob
from sync_orchestrator.models.etl_job import EtlJob, EtlJobChunk
from sync_orchestrator.models.connection import PlatformConnection
from sync_orchestrator.models.snapshot import UpstreamSnapshot
from sync_orchestrator.models.synced_data import SyncedRecord, BrandAggregate
