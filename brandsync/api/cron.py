"""
Cron endpoints

Invoked by an external scheduler with a shared bearer secret. Each call does a
bounded amount of work and returns an aggregate summary:
- 200 with success=false when some work failed
- 500 when the invocation itself failed or every processed job failed
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from brandsync.api.deps import verify_cron_secret, get_http_transport
from brandsync.models.base import get_db
from brandsync.services.sync_pipeline import SyncPipeline
from brandsync.utils.logger import log

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


def _invocation_failed(task: str, error: Exception) -> JSONResponse:
    log.error(f"Cron {task} failed: {type(error).__name__}: {error}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "processed": 0, "errors": [{"error": f"{type(error).__name__}: {error}"}]},
    )


@router.api_route("/process-queue", methods=["GET", "POST"])
async def process_queue(
    max_jobs: Optional[int] = Query(None, ge=1, le=100, description="Job budget for this invocation"),
    db: Session = Depends(get_db),
    transport=Depends(get_http_transport),
):
    """Reclaim stuck jobs, then drain the queue within the invocation budget."""
    try:
        summary = await SyncPipeline(db, transport=transport).drain(max_jobs=max_jobs)
    except Exception as e:
        db.rollback()
        return _invocation_failed("process-queue", e)

    body = {"success": not summary.errors, **summary.to_dict()}
    if summary.all_failed:
        return JSONResponse(status_code=500, content=body)
    return body


@router.api_route("/daily-sync", methods=["GET", "POST"])
async def daily_sync(db: Session = Depends(get_db)):
    """Enqueue the incremental refresh for every active connection."""
    try:
        result = SyncPipeline(db).run_incremental_all()
    except Exception as e:
        db.rollback()
        return _invocation_failed("daily-sync", e)

    body = {
        "success": not result["errors"],
        "processed": result["connections"],
        "jobs_created": result["jobs_created"],
        "throttle_counters_pruned": result["throttle_counters_pruned"],
        "triggered": result["triggered"],
        "errors": result["errors"],
    }
    if result["connections"] and len(result["errors"]) == result["connections"]:
        return JSONResponse(status_code=500, content=body)
    return body


@router.api_route("/detect-gaps", methods=["GET", "POST"])
async def detect_gaps(
    brand_id: Optional[str] = Query(None, description="Limit detection to one brand"),
    db: Session = Depends(get_db),
):
    """Detect coverage gaps for every active connection and enqueue repairs."""
    try:
        result = SyncPipeline(db).detect_gaps_all(brand_id=brand_id)
    except Exception as e:
        db.rollback()
        return _invocation_failed("detect-gaps", e)

    attempted = result["entities_checked"] + len(result["errors"])
    body = {
        "success": not result["errors"],
        "processed": attempted,
        "gaps_found": result["gaps_found"],
        "jobs_enqueued": result["jobs_enqueued"],
        "reports": result["reports"],
        "errors": result["errors"],
    }
    if attempted and result["entities_checked"] == 0:
        return JSONResponse(status_code=500, content=body)
    return body
