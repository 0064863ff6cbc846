"""
Connection registry: per-brand upstream credentials and coarse sync status.

Sync status writes are conditional on the connection still being active,
so a revoked connection is never flipped back to completed by a job that
was already in flight when it was revoked.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from sync_orchestrator.models.connection import PlatformConnection
from sync_orchestrator.services.job_types import ConnectionStatus, Platform, SyncStatus
from sync_orchestrator.utils.logger import log


@dataclass
class ConnectionInfo:
    id: str
    brand_id: str
    platform: Platform
    status: str
    sync_status: str
    credentials: Dict[str, Any] = field(default_factory=dict, repr=False)
    account_created_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value


class ConnectionRegistry:
    """Reads and writes platform_connections"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @staticmethod
    def _to_info(row: PlatformConnection) -> ConnectionInfo:
        return ConnectionInfo(
            id=row.id,
            brand_id=row.brand_id,
            platform=Platform(row.platform_type),
            status=row.status,
            sync_status=row.sync_status,
            credentials=dict(row.credentials or {}),
            account_created_at=row.account_created_at,
            last_synced_at=row.last_synced_at,
        )

    def register(
        self,
        brand_id: str,
        platform: Platform,
        credentials: Dict[str, Any],
        connection_id: Optional[str] = None,
        account_created_at: Optional[datetime] = None,
    ) -> ConnectionInfo:
        """
        Store a new active connection.

        Any other active connection for the same brand and platform is
        revoked: only one is used at a time.
        """
        connection_id = connection_id or uuid.uuid4().hex
        with self.session_factory() as db:
            superseded = db.execute(
                update(PlatformConnection)
                .where(
                    PlatformConnection.brand_id == brand_id,
                    PlatformConnection.platform_type == platform.value,
                    PlatformConnection.status == ConnectionStatus.ACTIVE.value,
                    PlatformConnection.id != connection_id,
                )
                .values(status=ConnectionStatus.REVOKED.value, updated_at=datetime.utcnow())
            ).rowcount
            row = PlatformConnection(
                id=connection_id,
                brand_id=brand_id,
                platform_type=platform.value,
                credentials=credentials,
                account_created_at=account_created_at,
                status=ConnectionStatus.ACTIVE.value,
                sync_status=SyncStatus.IDLE.value,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            if superseded:
                log.info(f"Revoked {superseded} older {platform.value} connection(s) for brand {brand_id}")
            return self._to_info(row)

    def get(self, connection_id: str) -> Optional[ConnectionInfo]:
        with self.session_factory() as db:
            row = db.get(PlatformConnection, connection_id)
            return self._to_info(row) if row else None

    def get_active(self, brand_id: str, platform: Platform) -> Optional[ConnectionInfo]:
        with self.session_factory() as db:
            row = db.execute(
                select(PlatformConnection)
                .where(
                    PlatformConnection.brand_id == brand_id,
                    PlatformConnection.platform_type == platform.value,
                    PlatformConnection.status == ConnectionStatus.ACTIVE.value,
                )
                .order_by(PlatformConnection.created_at.desc())
            ).scalars().first()
            return self._to_info(row) if row else None

    def list_active(self, platform: Optional[Platform] = None) -> List[ConnectionInfo]:
        query = select(PlatformConnection).where(PlatformConnection.status == ConnectionStatus.ACTIVE.value)
        if platform is not None:
            query = query.where(PlatformConnection.platform_type == platform.value)
        with self.session_factory() as db:
            return [self._to_info(row) for row in db.execute(query).scalars().all()]

    def revoke(self, connection_id: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(PlatformConnection)
                .where(PlatformConnection.id == connection_id)
                .values(status=ConnectionStatus.REVOKED.value, updated_at=datetime.utcnow())
            )
            db.commit()
        if result.rowcount:
            log.info(f"Connection {connection_id} revoked")
        return result.rowcount == 1

    def set_sync_status(
        self,
        connection_id: str,
        sync_status: SyncStatus,
        only_from: Optional[Iterable[SyncStatus]] = None,
    ) -> bool:
        """
        Update sync_status if the connection is still active.

        `only_from` restricts the write to connections currently in one of
        the given statuses.
        """
        now = datetime.utcnow()
        values = {"sync_status": sync_status.value, "updated_at": now}
        if sync_status == SyncStatus.COMPLETED:
            values["last_synced_at"] = now
        conditions = [
            PlatformConnection.id == connection_id,
            PlatformConnection.status == ConnectionStatus.ACTIVE.value,
        ]
        if only_from is not None:
            conditions.append(PlatformConnection.sync_status.in_([s.value for s in only_from]))
        with self.session_factory() as db:
            result = db.execute(update(PlatformConnection).where(*conditions).values(**values))
            db.commit()
        return result.rowcount == 1
