"""
Job, payload and status types shared by the queue, ledger and worker pool.

Every job type has its own payload dataclass; `parse_payload` is the only
place that turns a stored dict back into one.
"""
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

from sync_orchestrator.services.errors import UnknownJobTypeError


class Platform(str, Enum):
    ADS = "ads"
    COMMERCE = "commerce"


class JobType(str, Enum):
    RECENT_SYNC = "recent_sync"
    HISTORICAL_BACKFILL = "historical_backfill"
    DAILY_SYNC = "daily_sync"
    RECONCILE = "reconcile"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class EtlStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_ETL_STATUSES = (EtlStatus.COMPLETED.value, EtlStatus.FAILED.value)


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class SyncStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


# Drained first when several job types are waiting on the same platform
JOB_TYPE_PRIORITY: Dict[JobType, int] = {
    JobType.RECENT_SYNC: 100,
    JobType.RECONCILE: 90,
    JobType.DAILY_SYNC: 50,
    JobType.HISTORICAL_BACKFILL: 0,  # plus the per-entity priority
}

# Ledger entity used by jobs that cover every entity of a platform
ALL_ENTITIES = "all"


@dataclass(frozen=True)
class DateWindow:
    """Half-open date range [start, end)"""
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "DateWindow":
        return cls(start=date.fromisoformat(data["start"]), end=date.fromisoformat(data["end"]))

    @classmethod
    def trailing(cls, days: int, today: Optional[date] = None) -> "DateWindow":
        """The last `days` days including today."""
        today = today or datetime.utcnow().date()
        end = today + timedelta(days=1)
        return cls(start=end - timedelta(days=days), end=end)


@dataclass(frozen=True)
class RecentSyncPayload:
    window: DateWindow


@dataclass(frozen=True)
class HistoricalBackfillPayload:
    entity: str
    window: DateWindow
    chunk_number: int
    total_chunks: int


@dataclass(frozen=True)
class DailySyncPayload:
    window: DateWindow


@dataclass(frozen=True)
class ReconcilePayload:
    pass


JobPayload = Union[RecentSyncPayload, HistoricalBackfillPayload, DailySyncPayload, ReconcilePayload]

PAYLOAD_TYPES = {
    JobType.RECENT_SYNC: RecentSyncPayload,
    JobType.HISTORICAL_BACKFILL: HistoricalBackfillPayload,
    JobType.DAILY_SYNC: DailySyncPayload,
    JobType.RECONCILE: ReconcilePayload,
}


def payload_to_dict(payload: JobPayload) -> Dict[str, Any]:
    data = asdict(payload)
    if "window" in data:
        data["window"] = payload.window.to_dict()
    return data


def parse_job_type(value: str) -> JobType:
    try:
        return JobType(value)
    except ValueError:
        raise UnknownJobTypeError(f"Unknown job type: {value!r}")


def parse_payload(job_type: JobType, data: Dict[str, Any]) -> JobPayload:
    payload_cls = PAYLOAD_TYPES[job_type]
    data = dict(data or {})
    if "window" in data:
        data["window"] = DateWindow.from_dict(data["window"])
    return payload_cls(**data)


def job_type_for(payload: JobPayload) -> JobType:
    for job_type, payload_cls in PAYLOAD_TYPES.items():
        if isinstance(payload, payload_cls):
            return job_type
    raise UnknownJobTypeError(f"No job type for payload {type(payload).__name__}")


@dataclass
class Job:
    """A queued unit of work as seen by the worker pool"""
    platform: Platform
    type: JobType
    brand_id: str
    connection_id: str
    payload: JobPayload
    id: Optional[int] = None
    run_id: Optional[str] = None
    priority: int = 0
    attempts: int = 0
    deferrals: int = 0
    status: JobStatus = JobStatus.WAITING
    error_message: Optional[str] = None
    available_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def entity(self) -> str:
        if isinstance(self.payload, HistoricalBackfillPayload):
            return self.payload.entity
        return ALL_ENTITIES

    @property
    def name(self) -> str:
        """Queue-facing name, e.g. historical_campaigns"""
        if isinstance(self.payload, HistoricalBackfillPayload):
            return f"historical_{self.payload.entity}"
        return self.type.value

    @property
    def chunk_number(self) -> Optional[int]:
        return getattr(self.payload, "chunk_number", None)

    @property
    def total_chunks(self) -> Optional[int]:
        return getattr(self.payload, "total_chunks", None)

    def describe(self) -> str:
        label = f"job {self.id} {self.platform.value}/{self.name} brand={self.brand_id}"
        if self.chunk_number is not None:
            label += f" chunk {self.chunk_number}/{self.total_chunks}"
        return label

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "platform": self.platform.value,
            "type": self.type.value,
            "name": self.name,
            "brand_id": self.brand_id,
            "connection_id": self.connection_id,
            "run_id": self.run_id,
            "payload": payload_to_dict(self.payload),
            "priority": self.priority,
            "attempts": self.attempts,
            "status": self.status.value,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass(frozen=True)
class LedgerKey:
    brand_id: str
    connection_id: str
    entity: str
    job_type: str

    @classmethod
    def for_job(cls, job: Job) -> "LedgerKey":
        return cls(job.brand_id, job.connection_id, job.entity, job.name)


@dataclass
class EtlJobRecord:
    """Ledger row as returned to callers"""
    key: LedgerKey
    status: str = EtlStatus.PENDING.value
    progress_pct: int = 0
    rows_written: int = 0
    total_rows: Optional[int] = None
    chunks_completed: int = 0
    error_message: Optional[str] = None
    run_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ETL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brand_id": self.key.brand_id,
            "connection_id": self.key.connection_id,
            "entity": self.key.entity,
            "job_type": self.key.job_type,
            "run_id": self.run_id,
            "status": self.status,
            "progress_pct": self.progress_pct,
            "rows_written": self.rows_written,
            "total_rows": self.total_rows,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class JobOutcome:
    """Per-job result of a worker batch"""
    job_id: Optional[int]
    status: str  # completed, failed, retrying, deferred
    error: Optional[str] = None
    rows_written: int = 0
    source: Optional[str] = None
    warnings: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"id": self.job_id, "status": self.status}
        if self.error is not None:
            result["error"] = self.error
        if self.rows_written:
            result["rows_written"] = self.rows_written
        if self.source:
            result["source"] = self.source
        if self.warnings:
            result["warnings"] = self.warnings
        return result
