"""
Record sink for normalized upstream records.

upsert_records is idempotent on (brand, platform, entity, natural_key):
an unchanged record is skipped, a changed one overwrites the latest copy.
Two workers writing the same new key at once can both insert; the
reconciliation pass removes such duplicates.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from sync_orchestrator.models.synced_data import SyncedRecord
from sync_orchestrator.utils.helpers import hash_data, parse_date
from sync_orchestrator.utils.logger import log


class RecordStore:
    """Writes synced records for one brand/platform/entity"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def upsert_records(
        self,
        brand_id: str,
        platform: str,
        entity: str,
        records: List[Dict[str, Any]],
    ) -> Dict[str, int]:
        """
        Write records keyed by their natural key.

        Returns:
            {"written": inserted + updated, "unchanged": skipped}
        """
        if not records:
            return {"written": 0, "unchanged": 0}

        # Last copy wins when a batch repeats a key
        by_key: Dict[str, Dict[str, Any]] = {}
        for record in records:
            key = record.get("natural_key")
            if key is None:
                raise ValueError(f"{platform}/{entity} record without natural_key")
            by_key[str(key)] = record

        written = 0
        unchanged = 0
        now = datetime.utcnow()

        with self.session_factory() as db:
            existing: Dict[str, SyncedRecord] = {}
            keys = list(by_key)
            # Chunk the IN clause to stay under driver parameter limits
            for i in range(0, len(keys), 500):
                rows = db.execute(
                    select(SyncedRecord)
                    .where(
                        SyncedRecord.brand_id == brand_id,
                        SyncedRecord.platform == platform,
                        SyncedRecord.entity == entity,
                        SyncedRecord.natural_key.in_(keys[i:i + 500]),
                    )
                    .order_by(SyncedRecord.id)
                ).scalars().all()
                for row in rows:
                    existing[row.natural_key] = row  # highest id last

            for key, record in by_key.items():
                content_hash = hash_data(record)
                row = existing.get(key)
                if row is not None and row.content_hash == content_hash:
                    unchanged += 1
                    continue
                if row is not None:
                    row.payload = record
                    row.content_hash = content_hash
                    row.record_date = parse_date(record.get("record_date"))
                    row.ingested_at = now
                else:
                    db.add(SyncedRecord(
                        brand_id=brand_id,
                        platform=platform,
                        entity=entity,
                        natural_key=key,
                        record_date=parse_date(record.get("record_date")),
                        payload=record,
                        content_hash=content_hash,
                        ingested_at=now,
                    ))
                written += 1

            db.commit()

        log.debug(f"Stored {platform}/{entity} for brand {brand_id}: {written} written, {unchanged} unchanged")
        return {"written": written, "unchanged": unchanged}
