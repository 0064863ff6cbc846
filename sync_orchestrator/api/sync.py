"""
Sync orchestration endpoints

Trigger, drain and status endpoints answer 200 even when jobs fail or the
upstream is rate limited; the outcome lives in the body (`success`, and
per-job `status` / `error`). Only request validation uses other codes.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from sync_orchestrator.config import get_settings
from sync_orchestrator.services.errors import SyncError
from sync_orchestrator.services.job_types import Platform
from sync_orchestrator.services.orchestrator import SyncOrchestrator, get_orchestrator
from sync_orchestrator.utils.logger import log

settings = get_settings()

router = APIRouter(prefix="/sync", tags=["sync"])


def get_sync_orchestrator() -> SyncOrchestrator:
    return get_orchestrator()


class TriggerSyncRequest(BaseModel):
    force: bool = False


class ProcessRequest(BaseModel):
    max_jobs: int = Field(10, ge=1, le=500)
    platform: Optional[Platform] = None


class JobResult(BaseModel):
    id: Optional[int] = None
    status: str  # completed, failed, retrying, deferred
    error: Optional[str] = None
    rows_written: Optional[int] = None
    source: Optional[str] = None
    warnings: Optional[List[str]] = None


class ProcessResponse(BaseModel):
    success: bool
    processed: int
    summary: Dict[str, int] = {}
    results: List[JobResult] = []
    error: Optional[str] = None


class TriggerSyncResponse(BaseModel):
    success: bool
    skipped: Optional[bool] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    run_id: Optional[str] = None
    connection_id: Optional[str] = None
    jobs_enqueued: int = 0
    recent_sync: Optional[int] = None
    historical_chunks: Optional[Dict[str, int]] = None
    backfill_range: Optional[Dict[str, str]] = None
    superseded_jobs: Optional[int] = None


class SyncStatusResponse(BaseModel):
    brand_id: str
    platform: str
    connected: bool
    connection_id: Optional[str] = None
    sync_status: Optional[str] = None
    last_synced_at: Optional[str] = None
    ledger: List[Dict[str, Any]] = []
    queue: Dict[str, int] = {}


@router.get("/{brand_id}/{platform}/status", response_model=SyncStatusResponse)
def get_sync_status(
    brand_id: str,
    platform: Platform,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Connection sync status plus the ETL ledger rows the UI polls"""
    return orchestrator.get_sync_status(brand_id, platform)


@router.post("/{brand_id}/{platform}/trigger", response_model=TriggerSyncResponse, response_model_exclude_none=True)
def trigger_sync(
    brand_id: str,
    platform: Platform,
    request: Optional[TriggerSyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """
    Enqueue a recent sync and the chunked historical backfill.

    Returns immediately with a job-count summary. Skipped when the
    connection synced recently unless `force` is set.
    """
    force = request.force if request else False
    try:
        return orchestrator.trigger_sync(brand_id, platform, force=force)
    except SyncError as e:
        log.error(f"Trigger sync failed for brand {brand_id} {platform.value}: {str(e)}")
        return {"success": False, "error": str(e), "jobs_enqueued": 0}


@router.post("/process", response_model=ProcessResponse, response_model_exclude_none=True)
async def process_queue(
    request: Optional[ProcessRequest] = None,
    x_process_token: Optional[str] = Header(None),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """
    Drain up to `max_jobs` jobs synchronously, for deployments without a
    standing worker. Per-job outcomes are in `results`.
    """
    if settings.process_token and x_process_token != settings.process_token:
        raise HTTPException(status_code=401, detail="Invalid process token")

    request = request or ProcessRequest()
    return await orchestrator.process(request.max_jobs, request.platform)


@router.post("/connections/{connection_id}/revoke")
def revoke_connection(
    connection_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Revoke a connection; its waiting jobs are failed without running"""
    return orchestrator.revoke_connection(connection_id)


@router.post("/{brand_id}/reconcile")
def reconcile_brand(
    brand_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Remove duplicate records and recompute aggregates now"""
    try:
        return {"success": True, **orchestrator.reconcile(brand_id)}
    except Exception as e:
        log.error(f"Reconcile failed for brand {brand_id}: {str(e)}")
        return {"success": False, "brand_id": brand_id, "error": str(e)}


@router.get("/{brand_id}/{platform}/aggregates")
def get_aggregates(
    brand_id: str,
    platform: Platform,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Per-entity totals, reconciled first when older than the latest sync"""
    return orchestrator.get_aggregates(brand_id, platform)


@router.get("/queue/{platform}")
def get_queue(
    platform: Platform,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Waiting and active jobs for a platform queue"""
    return orchestrator.queue_snapshot(platform)
