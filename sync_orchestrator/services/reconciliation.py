"""
Reconciliation pass.

Removes exact duplicate records (same natural key and content hash, the
lowest id survives) and recomputes per-entity aggregates from the latest
copy of every natural key. Never deletes the canonical copy of a record,
so it is safe to run while syncs are still writing.
"""
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sync_orchestrator.config import get_settings
from sync_orchestrator.models.connection import PlatformConnection
from sync_orchestrator.models.etl_job import EtlJob
from sync_orchestrator.models.synced_data import BrandAggregate, SyncedRecord
from sync_orchestrator.services.job_types import EtlStatus, Platform
from sync_orchestrator.utils.helpers import to_float
from sync_orchestrator.utils.logger import log

settings = get_settings()


class Reconciler:
    """Duplicate cleanup and aggregate refresh per brand"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        value_fields: Optional[Dict[str, str]] = None,
    ):
        self.session_factory = session_factory
        self.value_fields = value_fields if value_fields is not None else settings.aggregate_value_fields

    def reconcile(self, brand_id: str, platform: Optional[Platform] = None) -> Dict[str, Any]:
        """
        Remove duplicates and recompute aggregates for a brand.

        Returns:
            Summary with duplicates removed and the refreshed aggregates
        """
        removed = self._remove_duplicates(brand_id, platform)
        aggregates = self._recompute_aggregates(brand_id, platform)
        log.info(
            f"Reconciled brand {brand_id}"
            f"{' ' + platform.value if platform else ''}: "
            f"{removed} duplicates removed, {len(aggregates)} aggregates refreshed"
        )
        return {
            "brand_id": brand_id,
            "platform": platform.value if platform else None,
            "duplicates_removed": removed,
            "aggregates": aggregates,
        }

    def _brand_filter(self, brand_id: str, platform: Optional[Platform]) -> list:
        conditions = [SyncedRecord.brand_id == brand_id]
        if platform is not None:
            conditions.append(SyncedRecord.platform == platform.value)
        return conditions

    def _remove_duplicates(self, brand_id: str, platform: Optional[Platform]) -> int:
        conditions = self._brand_filter(brand_id, platform)
        survivors = (
            select(func.min(SyncedRecord.id))
            .where(*conditions)
            .group_by(
                SyncedRecord.platform,
                SyncedRecord.entity,
                SyncedRecord.natural_key,
                SyncedRecord.content_hash,
            )
        )
        with self.session_factory() as db:
            result = db.execute(
                delete(SyncedRecord)
                .where(*conditions, SyncedRecord.id.notin_(survivors))
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount or 0

    def _recompute_aggregates(self, brand_id: str, platform: Optional[Platform]) -> List[Dict[str, Any]]:
        conditions = self._brand_filter(brand_id, platform)
        latest_ids = (
            select(func.max(SyncedRecord.id))
            .where(*conditions)
            .group_by(SyncedRecord.platform, SyncedRecord.entity, SyncedRecord.natural_key)
        )

        totals: Dict[Tuple[str, str], Dict[str, Any]] = defaultdict(
            lambda: {"record_count": 0, "value_total": None, "first_record_date": None, "last_record_date": None}
        )
        with self.session_factory() as db:
            rows = db.execute(
                select(SyncedRecord.platform, SyncedRecord.entity, SyncedRecord.record_date, SyncedRecord.payload)
                .where(SyncedRecord.id.in_(latest_ids))
            ).all()

        for row_platform, entity, record_date, payload in rows:
            agg = totals[(row_platform, entity)]
            agg["record_count"] += 1
            value_field = self.value_fields.get(entity)
            if value_field:
                value = to_float((payload or {}).get(value_field)) or 0.0
                agg["value_total"] = (agg["value_total"] or 0.0) + value
            if record_date is not None:
                if agg["first_record_date"] is None or record_date < agg["first_record_date"]:
                    agg["first_record_date"] = record_date
                if agg["last_record_date"] is None or record_date > agg["last_record_date"]:
                    agg["last_record_date"] = record_date

        now = datetime.utcnow()
        for (row_platform, entity), agg in totals.items():
            self._store_aggregate(brand_id, row_platform, entity, agg, now)

        # Entities whose records are all gone keep no stale totals
        self._clear_missing(brand_id, platform, set(totals), now)

        return [
            self._aggregate_dict(brand_id, p, e, agg, now)
            for (p, e), agg in sorted(totals.items())
        ]

    def _store_aggregate(self, brand_id: str, platform: str, entity: str, agg: Dict[str, Any], now: datetime):
        values = dict(agg, computed_at=now)
        for _ in range(2):
            with self.session_factory() as db:
                result = db.execute(
                    update(BrandAggregate)
                    .where(
                        BrandAggregate.brand_id == brand_id,
                        BrandAggregate.platform == platform,
                        BrandAggregate.entity == entity,
                    )
                    .values(**values)
                )
                if result.rowcount == 0:
                    db.add(BrandAggregate(brand_id=brand_id, platform=platform, entity=entity, **values))
                try:
                    db.commit()
                    return
                except IntegrityError:
                    db.rollback()

    def _clear_missing(self, brand_id: str, platform: Optional[Platform], present: set, now: datetime):
        with self.session_factory() as db:
            query = select(BrandAggregate).where(BrandAggregate.brand_id == brand_id)
            if platform is not None:
                query = query.where(BrandAggregate.platform == platform.value)
            for row in db.execute(query).scalars().all():
                if (row.platform, row.entity) not in present:
                    row.record_count = 0
                    row.value_total = None
                    row.first_record_date = None
                    row.last_record_date = None
                    row.computed_at = now
            db.commit()

    @staticmethod
    def _aggregate_dict(brand_id, platform, entity, agg, computed_at) -> Dict[str, Any]:
        return {
            "brand_id": brand_id,
            "platform": platform,
            "entity": entity,
            "record_count": agg["record_count"],
            "value_total": round(agg["value_total"], 2) if agg["value_total"] is not None else None,
            "first_record_date": agg["first_record_date"].isoformat() if agg["first_record_date"] else None,
            "last_record_date": agg["last_record_date"].isoformat() if agg["last_record_date"] else None,
            "computed_at": computed_at.isoformat() if computed_at else None,
        }

    def last_sync_completed_at(self, brand_id: str, platform: Platform) -> Optional[datetime]:
        """Latest ledger completion for the brand's connections on this platform"""
        with self.session_factory() as db:
            return db.execute(
                select(func.max(EtlJob.completed_at))
                .join(PlatformConnection, PlatformConnection.id == EtlJob.connection_id)
                .where(
                    EtlJob.brand_id == brand_id,
                    EtlJob.status == EtlStatus.COMPLETED.value,
                    PlatformConnection.platform_type == platform.value,
                )
            ).scalar()

    def get_aggregates(self, brand_id: str, platform: Platform) -> Dict[str, Any]:
        """
        Aggregates for a brand and platform.

        Reconciles first when no aggregate exists yet or the oldest one was
        computed before the most recent sync completion.
        """
        with self.session_factory() as db:
            rows = db.execute(
                select(BrandAggregate)
                .where(BrandAggregate.brand_id == brand_id, BrandAggregate.platform == platform.value)
                .order_by(BrandAggregate.entity)
            ).scalars().all()
            computed = [row.computed_at for row in rows]

        last_sync = self.last_sync_completed_at(brand_id, platform)
        stale = not rows or (last_sync is not None and min(computed) < last_sync)

        if stale:
            summary = self.reconcile(brand_id, platform)
            aggregates = [a for a in summary["aggregates"] if a["record_count"] > 0]
        else:
            aggregates = [
                self._aggregate_dict(
                    brand_id, row.platform, row.entity,
                    {
                        "record_count": row.record_count,
                        "value_total": row.value_total,
                        "first_record_date": row.first_record_date,
                        "last_record_date": row.last_record_date,
                    },
                    row.computed_at,
                )
                for row in rows
                if row.record_count > 0
            ]

        return {
            "brand_id": brand_id,
            "platform": platform.value,
            "reconciled": stale,
            "last_sync_completed_at": last_sync.isoformat() if last_sync else None,
            "aggregates": aggregates,
        }
