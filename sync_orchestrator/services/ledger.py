"""
ETL ledger: per (brand, connection, entity, job_type) progress rows.

Merge rules applied by every backend, so replays and out-of-order chunk
completions commute:
    - progress_pct and rows_written only move up
    - status only moves forward (pending -> processing -> terminal)
    - once completed or failed, status, error and completed_at are frozen
    - started_at keeps the first value written
    - updated_at is refreshed on every write
A new run (`begin`) is the only way to reset a row.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import DateTime, and_, case, delete, func, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sync_orchestrator.models.etl_job import EtlJob, EtlJobChunk
from sync_orchestrator.services.chunker import progress_pct as chunk_progress_pct
from sync_orchestrator.services.job_types import (
    EtlJobRecord,
    EtlStatus,
    LedgerKey,
    TERMINAL_ETL_STATUSES,
)
from sync_orchestrator.utils.logger import log

PATCH_FIELDS = {"status", "progress_pct", "rows_written", "total_rows", "error_message", "started_at"}

STATUS_RANK = {
    EtlStatus.PENDING.value: 0,
    EtlStatus.PROCESSING.value: 1,
    EtlStatus.COMPLETED.value: 2,
    EtlStatus.FAILED.value: 2,
}


def _validate_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - PATCH_FIELDS
    if unknown:
        raise ValueError(f"Unknown ledger fields: {sorted(unknown)}")
    if "status" in patch:
        patch = dict(patch, status=EtlStatus(patch["status"]).value)
    return patch


def merge_patch(record: EtlJobRecord, patch: Dict[str, Any], now: datetime) -> EtlJobRecord:
    """Apply a patch to a ledger row following the module's merge rules."""
    patch = _validate_patch(patch)
    merged = replace(record, updated_at=now)
    terminal = record.is_terminal

    if "progress_pct" in patch and patch["progress_pct"] is not None:
        merged.progress_pct = max(record.progress_pct, int(patch["progress_pct"]))
    if "rows_written" in patch and patch["rows_written"] is not None:
        merged.rows_written = max(record.rows_written, int(patch["rows_written"]))
    if patch.get("total_rows") is not None:
        merged.total_rows = patch["total_rows"]
    if patch.get("started_at") is not None and record.started_at is None:
        merged.started_at = patch["started_at"]

    if not terminal:
        new_status = patch.get("status")
        if new_status and STATUS_RANK[new_status] >= STATUS_RANK[record.status]:
            merged.status = new_status
            if new_status in TERMINAL_ETL_STATUSES:
                merged.completed_at = now
        if "error_message" in patch:
            merged.error_message = patch["error_message"]

    return merged


class LedgerStore(ABC):
    """Persistence for ETL ledger rows"""

    @abstractmethod
    def read(self, key: LedgerKey) -> Optional[EtlJobRecord]:
        pass

    @abstractmethod
    def upsert(self, key: LedgerKey, patch: Dict[str, Any], run_id: Optional[str] = None) -> Optional[EtlJobRecord]:
        """
        Merge `patch` into the row for `key`, creating it if absent.

        When `run_id` is given and the existing row belongs to another run
        the write is ignored and None is returned.
        """

    @abstractmethod
    def begin(self, key: LedgerKey, run_id: Optional[str]) -> EtlJobRecord:
        """Reset the row to pending for a new run"""

    @abstractmethod
    def record_chunk(
        self,
        key: LedgerKey,
        run_id: Optional[str],
        chunk_number: int,
        total_chunks: int,
        rows_written: int,
    ) -> Optional[EtlJobRecord]:
        """
        Count one completed chunk of a historical sequence.

        Progress becomes max(current, chunk_number / total_chunks); the
        row turns completed once every chunk number has been counted.
        A chunk number already counted for the run leaves the row as is.
        """

    @abstractmethod
    def list_for_connection(self, connection_id: str) -> List[EtlJobRecord]:
        pass

    @abstractmethod
    def last_updated(self, connection_id: str) -> Optional[datetime]:
        pass

    def recently_updated(self, connection_id: str, within_minutes: int) -> bool:
        """Cooperative freshness check used before enqueuing a full sync"""
        last = self.last_updated(connection_id)
        return last is not None and last >= datetime.utcnow() - timedelta(minutes=within_minutes)


class SqlLedgerStore(LedgerStore):
    """LedgerStore on the etl_jobs table using single-statement conditional updates"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @staticmethod
    def _key_filter(key: LedgerKey):
        return and_(
            EtlJob.brand_id == key.brand_id,
            EtlJob.connection_id == key.connection_id,
            EtlJob.entity == key.entity,
            EtlJob.job_type == key.job_type,
        )

    @staticmethod
    def _to_record(row: EtlJob) -> EtlJobRecord:
        return EtlJobRecord(
            key=LedgerKey(row.brand_id, row.connection_id, row.entity, row.job_type),
            status=row.status,
            progress_pct=row.progress_pct,
            rows_written=row.rows_written,
            total_rows=row.total_rows,
            chunks_completed=row.chunks_completed,
            error_message=row.error_message,
            run_id=row.run_id,
            started_at=row.started_at,
            completed_at=row.completed_at,
            updated_at=row.updated_at,
        )

    def _read(self, db: Session, key: LedgerKey) -> Optional[EtlJobRecord]:
        row = db.execute(select(EtlJob).where(self._key_filter(key))).scalars().first()
        return self._to_record(row) if row else None

    def read(self, key: LedgerKey) -> Optional[EtlJobRecord]:
        with self.session_factory() as db:
            return self._read(db, key)

    def _merge_values(self, patch: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        not_terminal = EtlJob.status.notin_(TERMINAL_ETL_STATUSES)
        values: Dict[str, Any] = {"updated_at": now}

        if patch.get("progress_pct") is not None:
            pct = int(patch["progress_pct"])
            values["progress_pct"] = case((EtlJob.progress_pct < pct, pct), else_=EtlJob.progress_pct)
        if patch.get("rows_written") is not None:
            rows = int(patch["rows_written"])
            values["rows_written"] = case((EtlJob.rows_written < rows, rows), else_=EtlJob.rows_written)
        if patch.get("total_rows") is not None:
            values["total_rows"] = patch["total_rows"]
        if patch.get("started_at") is not None:
            values["started_at"] = func.coalesce(EtlJob.started_at, literal(patch["started_at"], DateTime))
        if "error_message" in patch:
            values["error_message"] = case((not_terminal, patch["error_message"]), else_=EtlJob.error_message)

        new_status = patch.get("status")
        if new_status:
            new_rank = STATUS_RANK[new_status]
            current_rank = case(
                (EtlJob.status == EtlStatus.PENDING.value, 0),
                (EtlJob.status == EtlStatus.PROCESSING.value, 1),
                else_=2,
            )
            advances = and_(not_terminal, current_rank <= new_rank)
            values["status"] = case((advances, new_status), else_=EtlJob.status)
            if new_status in TERMINAL_ETL_STATUSES:
                values["completed_at"] = case((advances, literal(now, DateTime)), else_=EtlJob.completed_at)
        return values

    def upsert(self, key: LedgerKey, patch: Dict[str, Any], run_id: Optional[str] = None) -> Optional[EtlJobRecord]:
        patch = _validate_patch(patch)
        now = datetime.utcnow()
        conditions = [self._key_filter(key)]
        if run_id is not None:
            conditions.append(EtlJob.run_id == run_id)

        for _ in range(2):
            with self.session_factory() as db:
                result = db.execute(update(EtlJob).where(*conditions).values(**self._merge_values(patch, now)))
                if result.rowcount == 1:
                    record = self._read(db, key)
                    db.commit()
                    return record

                existing = self._read(db, key)
                if existing is not None:
                    # Row belongs to another run
                    log.debug(f"Ignoring ledger write for stale run {run_id} on {key}")
                    return None

                fresh = merge_patch(EtlJobRecord(key=key, run_id=run_id), patch, now)
                db.add(EtlJob(
                    brand_id=key.brand_id,
                    connection_id=key.connection_id,
                    entity=key.entity,
                    job_type=key.job_type,
                    run_id=run_id,
                    status=fresh.status,
                    progress_pct=fresh.progress_pct,
                    rows_written=fresh.rows_written,
                    total_rows=fresh.total_rows,
                    error_message=fresh.error_message,
                    started_at=fresh.started_at,
                    completed_at=fresh.completed_at,
                    updated_at=now,
                ))
                try:
                    db.commit()
                    return fresh
                except IntegrityError:
                    # Lost the insert race; merge into the winner's row
                    db.rollback()
        return self.read(key)

    def begin(self, key: LedgerKey, run_id: Optional[str]) -> EtlJobRecord:
        now = datetime.utcnow()
        reset = dict(
            run_id=run_id,
            status=EtlStatus.PENDING.value,
            progress_pct=0,
            rows_written=0,
            total_rows=None,
            chunks_completed=0,
            error_message=None,
            started_at=None,
            completed_at=None,
            updated_at=now,
        )
        with self.session_factory() as db:
            db.execute(
                delete(EtlJobChunk).where(
                    EtlJobChunk.etl_job_id.in_(select(EtlJob.id).where(self._key_filter(key)))
                )
            )
            result = db.execute(update(EtlJob).where(self._key_filter(key)).values(**reset))
            if result.rowcount == 0:
                db.add(EtlJob(
                    brand_id=key.brand_id,
                    connection_id=key.connection_id,
                    entity=key.entity,
                    job_type=key.job_type,
                    **reset,
                ))
            db.commit()
        return EtlJobRecord(key=key, run_id=run_id, updated_at=now)

    def record_chunk(self, key, run_id, chunk_number, total_chunks, rows_written) -> Optional[EtlJobRecord]:
        now = datetime.utcnow()
        pct = chunk_progress_pct(chunk_number, total_chunks)
        conditions = [self._key_filter(key)]
        if run_id is not None:
            conditions.append(EtlJob.run_id == run_id)
        not_terminal = EtlJob.status.notin_(TERMINAL_ETL_STATUSES)

        with self.session_factory() as db:
            etl_job_id = db.execute(select(EtlJob.id).where(*conditions)).scalar()
            if etl_job_id is None:
                return None

            # A chunk delivered twice (stalled job requeued while still running) is counted once
            db.add(EtlJobChunk(
                etl_job_id=etl_job_id,
                chunk_number=chunk_number,
                rows_written=int(rows_written or 0),
                completed_at=now,
            ))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                log.info(f"Chunk {chunk_number}/{total_chunks} of {key} already counted")
                return self._read(db, key)

            result = db.execute(
                update(EtlJob)
                .where(*conditions)
                .values(
                    chunks_completed=EtlJob.chunks_completed + 1,
                    rows_written=EtlJob.rows_written + int(rows_written or 0),
                    progress_pct=case((EtlJob.progress_pct < pct, pct), else_=EtlJob.progress_pct),
                    status=case((not_terminal, EtlStatus.PROCESSING.value), else_=EtlJob.status),
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                db.rollback()
                return None

            # The row stays locked until commit, so exactly one caller sees the final count
            db.execute(
                update(EtlJob)
                .where(*conditions, not_terminal, EtlJob.chunks_completed >= total_chunks)
                .values(status=EtlStatus.COMPLETED.value, progress_pct=100, completed_at=now)
            )
            record = self._read(db, key)
            db.commit()
            return record

    def list_for_connection(self, connection_id: str) -> List[EtlJobRecord]:
        with self.session_factory() as db:
            rows = db.execute(
                select(EtlJob)
                .where(EtlJob.connection_id == connection_id)
                .order_by(EtlJob.job_type, EtlJob.entity)
            ).scalars().all()
            return [self._to_record(row) for row in rows]

    def last_updated(self, connection_id: str) -> Optional[datetime]:
        with self.session_factory() as db:
            return db.execute(
                select(func.max(EtlJob.updated_at)).where(EtlJob.connection_id == connection_id)
            ).scalar()


class InMemoryLedgerStore(LedgerStore):
    """Lock-guarded dict ledger for tests and single-process runs"""

    def __init__(self):
        self._rows: Dict[LedgerKey, EtlJobRecord] = {}
        self._chunks: Dict[LedgerKey, Set[int]] = {}
        self._lock = threading.Lock()

    def read(self, key: LedgerKey) -> Optional[EtlJobRecord]:
        with self._lock:
            row = self._rows.get(key)
            return replace(row) if row else None

    def upsert(self, key: LedgerKey, patch: Dict[str, Any], run_id: Optional[str] = None) -> Optional[EtlJobRecord]:
        now = datetime.utcnow()
        with self._lock:
            existing = self._rows.get(key)
            if existing is None:
                existing = EtlJobRecord(key=key, run_id=run_id)
            elif run_id is not None and existing.run_id != run_id:
                return None
            merged = merge_patch(existing, patch, now)
            self._rows[key] = merged
            return replace(merged)

    def begin(self, key: LedgerKey, run_id: Optional[str]) -> EtlJobRecord:
        record = EtlJobRecord(key=key, run_id=run_id, updated_at=datetime.utcnow())
        with self._lock:
            self._rows[key] = record
            self._chunks[key] = set()
            return replace(record)

    def record_chunk(self, key, run_id, chunk_number, total_chunks, rows_written) -> Optional[EtlJobRecord]:
        now = datetime.utcnow()
        with self._lock:
            row = self._rows.get(key)
            if row is None or (run_id is not None and row.run_id != run_id):
                return None
            counted = self._chunks.setdefault(key, set())
            if chunk_number in counted:
                return replace(row)
            counted.add(chunk_number)
            row.chunks_completed += 1
            row.rows_written += int(rows_written or 0)
            row.progress_pct = max(row.progress_pct, chunk_progress_pct(chunk_number, total_chunks))
            row.updated_at = now
            if not row.is_terminal:
                row.status = EtlStatus.PROCESSING.value
                if row.chunks_completed >= total_chunks:
                    row.status = EtlStatus.COMPLETED.value
                    row.progress_pct = 100
                    row.completed_at = now
            return replace(row)

    def list_for_connection(self, connection_id: str) -> List[EtlJobRecord]:
        with self._lock:
            rows = [replace(r) for k, r in self._rows.items() if k.connection_id == connection_id]
        return sorted(rows, key=lambda r: (r.key.job_type, r.key.entity))

    def last_updated(self, connection_id: str) -> Optional[datetime]:
        with self._lock:
            stamps = [r.updated_at for k, r in self._rows.items() if k.connection_id == connection_id and r.updated_at]
        return max(stamps) if stamps else None
