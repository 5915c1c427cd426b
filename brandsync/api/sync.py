"""
Sync status and trigger endpoints
"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from brandsync.config import get_settings
from brandsync.errors import InvalidRange
from brandsync.models.base import get_db
from brandsync.models.connection import Platform, ConnectionStatus
from brandsync.models.sync_job import SyncReason
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.fact_store import gap_entities_for
from brandsync.services.gap_detector import GapDetector
from brandsync.services.job_ledger import JobLedger
from brandsync.services.progress import ProgressAggregator
from brandsync.services.request_throttle import RequestThrottle
from brandsync.services.sync_pipeline import SyncPipeline
from brandsync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

# Cron and reconnect syncs start from /cron and /connections only
PUBLIC_REASONS = (SyncReason.MANUAL, SyncReason.REPAIR)


class SyncTriggerRequest(BaseModel):
    reason: str = SyncReason.MANUAL
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    entities: Optional[List[str]] = None
    force: Optional[bool] = None


def _check_platform(platform: str):
    if platform not in Platform.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown platform '{platform}'")


def _require_connection(db: Session, brand_id: str, platform: str):
    connection = ConnectionRegistry(db).get(brand_id, platform)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"No {platform} connection for brand {brand_id}")
    return connection


def _status_view(db: Session, connection) -> dict:
    status = ProgressAggregator(db).recompute(connection.brand_id, connection.platform)
    return {
        **status.to_dict(),
        "connection_status": connection.status,
        "last_synced_date": connection.last_synced_date.isoformat() if connection.last_synced_date else None,
        "last_error": connection.last_error,
    }


@router.get("/{brand_id}/status")
def get_brand_sync_status(brand_id: str, db: Session = Depends(get_db)):
    """Sync progress for every platform the brand has connected."""
    connections = ConnectionRegistry(db).list_for_brand(brand_id)
    if not connections:
        raise HTTPException(status_code=404, detail=f"Brand {brand_id} has no connections")

    return {
        "brand_id": brand_id,
        "platforms": [_status_view(db, connection) for connection in connections],
    }


@router.get("/{brand_id}/{platform}/status")
def get_platform_sync_status(brand_id: str, platform: str, db: Session = Depends(get_db)):
    _check_platform(platform)
    connection = _require_connection(db, brand_id, platform)
    return _status_view(db, connection)


@router.post("/{brand_id}/{platform}")
def trigger_sync(
    brand_id: str,
    platform: str,
    request: Optional[SyncTriggerRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Enqueue a sync for one brand/platform.

    Jobs are executed by the next /cron/process-queue drain. Every call is
    throttled per brand.
    """
    _check_platform(platform)
    request = request or SyncTriggerRequest()
    settings = get_settings()

    connection = _require_connection(db, brand_id, platform)
    if connection.status != ConnectionStatus.ACTIVE:
        raise HTTPException(
            status_code=409,
            detail=f"{platform} connection is {connection.status}, reconnect before syncing"
        )

    if request.reason not in PUBLIC_REASONS:
        raise HTTPException(
            status_code=400,
            detail=f"reason must be one of: {', '.join(PUBLIC_REASONS)}"
        )

    decision = RequestThrottle(db).hit(
        f"manual_sync:{brand_id}",
        limit=settings.manual_sync_limit,
        window_seconds=settings.manual_sync_window_seconds,
    )
    if not decision.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Too many manual sync requests",
                "limit": decision.limit,
                "retry_after_seconds": decision.retry_after_seconds,
            },
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

    try:
        result = SyncPipeline(db).trigger(
            brand_id,
            platform,
            reason=request.reason,
            start=request.start_date,
            end=request.end_date,
            entities=request.entities,
            force=request.force,
        )
    except (InvalidRange, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, **result.to_dict()}


@router.post("/{brand_id}/{platform}/requeue-failed")
def requeue_failed(brand_id: str, platform: str, db: Session = Depends(get_db)):
    """Give every permanently failed job of the brand/platform a fresh set of attempts."""
    _check_platform(platform)
    _require_connection(db, brand_id, platform)

    results = JobLedger(db).requeue_failed(brand_id, platform)
    status = ProgressAggregator(db).recompute(brand_id, platform)
    log.info(f"Manual requeue for {brand_id}/{platform}: {len(results)} jobs")

    return {
        "success": True,
        "requeued": sum(1 for r in results if r.created),
        "job_ids": [r.job_id for r in results],
        "status": status.to_dict(),
    }


@router.get("/{brand_id}/{platform}/gaps")
def check_gaps(
    brand_id: str,
    platform: str,
    entity: Optional[str] = Query(None, description="Entity to check (all when omitted)"),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    enqueue: bool = Query(False, description="Enqueue repair jobs for the gaps found"),
    db: Session = Depends(get_db),
):
    """On-demand coverage check."""
    _check_platform(platform)
    _require_connection(db, brand_id, platform)

    try:
        entities = [entity] if entity else gap_entities_for(platform)
        detector = GapDetector(db)
        reports = [
            detector.detect(brand_id, platform, e, start=start_date, end=end_date, enqueue=enqueue)
            for e in entities
        ]
    except (InvalidRange, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    if enqueue:
        ProgressAggregator(db).recompute(brand_id, platform)

    return {
        "brand_id": brand_id,
        "platform": platform,
        "total_gaps": sum(len(r.gaps) for r in reports),
        "total_missing_days": sum(r.missing_days for r in reports),
        "reports": [r.to_dict() for r in reports],
    }
