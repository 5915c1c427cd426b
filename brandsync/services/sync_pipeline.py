"""
Sync Pipeline

Single entry point for every way a sync starts (manual, cron, reconnect,
repair) and the bounded queue drain run by each cron invocation.
"""
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from brandsync.config import get_settings
from brandsync.errors import InvalidRange
from brandsync.models.connection import Platform
from brandsync.models.sync_job import JobPhase, SyncReason
from brandsync.services.chunk_planner import plan_chunks
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.fact_store import entities_for, gap_entities_for
from brandsync.services.gap_detector import GapDetector
from brandsync.services.job_ledger import JobLedger
from brandsync.services.progress import ProgressAggregator
from brandsync.services.request_throttle import RequestThrottle
from brandsync.services.worker import FetchAndStoreWorker, OutcomeStatus
from brandsync.utils.helpers import utcnow, yesterday
from brandsync.utils.logger import log


@dataclass
class TriggerResult:
    brand_id: str
    platform: str
    reason: str
    phase: Optional[str]
    start: Optional[date]
    end: Optional[date]
    jobs_created: List[int] = field(default_factory=list)
    jobs_existing: List[int] = field(default_factory=list)
    gap_reports: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brand_id": self.brand_id,
            "platform": self.platform,
            "reason": self.reason,
            "phase": self.phase,
            "start_date": self.start.isoformat() if self.start else None,
            "end_date": self.end.isoformat() if self.end else None,
            "jobs_created": len(self.jobs_created),
            "jobs_existing": len(self.jobs_existing),
            "job_ids": self.jobs_created + self.jobs_existing,
            "gap_reports": self.gap_reports,
        }


@dataclass
class DrainSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    released: int = 0
    reclaimed: int = 0
    records_written: int = 0
    api_requests: int = 0
    rate_limit_delay_seconds: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def all_failed(self) -> bool:
        return self.processed > 0 and self.succeeded == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "released": self.released,
            "reclaimed": self.reclaimed,
            "records_written": self.records_written,
            "api_requests": self.api_requests,
            "rate_limit_delay_seconds": round(self.rate_limit_delay_seconds, 2),
            "errors": self.errors,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class SyncPipeline:
    """Plans work into the ledger and drains it"""

    def __init__(self, db: Session, settings=None, transport=None):
        self.db = db
        self.settings = settings or get_settings()
        self.transport = transport

        self.ledger = JobLedger(db, self.settings)
        self.registry = ConnectionRegistry(db)
        self.progress = ProgressAggregator(db)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(
        self,
        brand_id: str,
        platform: str,
        reason: str = SyncReason.MANUAL,
        start: Optional[date] = None,
        end: Optional[date] = None,
        entities: Optional[List[str]] = None,
        force: Optional[bool] = None
    ) -> TriggerResult:
        """
        Plan and enqueue a sync.

        - manual / reconnect: historical load, historical_days back to yesterday
        - cron: incremental refresh of the last incremental_days, forced so
          late platform corrections are picked up
        - repair: gap detection per entity
        """
        if reason not in SyncReason.ALL:
            raise ValueError(f"Unknown sync reason '{reason}'")
        if platform not in Platform.ALL:
            raise ValueError(f"Unknown platform '{platform}'")

        available = entities_for(platform)
        if reason == SyncReason.REPAIR:
            entities = entities or gap_entities_for(platform)
        else:
            entities = entities or available
        unknown = [e for e in entities if e not in available]
        if unknown:
            raise ValueError(f"Unknown {platform} entities: {', '.join(unknown)}")

        if reason == SyncReason.REPAIR:
            detector = GapDetector(self.db, self.settings)
            result = TriggerResult(brand_id, platform, reason, JobPhase.GAP, start, end)
            for entity in entities:
                report = detector.detect(brand_id, platform, entity, start=start, end=end)
                result.jobs_created.extend(report.jobs_enqueued)
                result.jobs_existing.extend(report.jobs_existing)
                result.gap_reports.append(report.to_dict())
            self.progress.recompute(brand_id, platform)
            return result

        end = end or yesterday()
        if reason == SyncReason.CRON:
            phase = JobPhase.INCREMENTAL
            start = start or end - timedelta(days=self.settings.incremental_days - 1)
            force = True if force is None else force
        else:
            phase = JobPhase.HISTORICAL
            start = start or end - timedelta(days=self.settings.historical_days - 1)
            force = False if force is None else force

        chunks = plan_chunks(start, end, self.settings.chunk_days, newest_first=True)
        result = TriggerResult(brand_id, platform, reason, phase, start, end)

        for entity in entities:
            for chunk in chunks:
                enqueued = self.ledger.enqueue(
                    brand_id, platform, entity, chunk,
                    phase=phase,
                    reason=reason,
                    force=force,
                    # Newest data first for a fresh dashboard
                    priority=1 if phase == JobPhase.INCREMENTAL else 0,
                )
                target = result.jobs_created if enqueued.created else result.jobs_existing
                target.append(enqueued.job_id)

        log.info(
            f"Triggered {reason} sync for {brand_id}/{platform} {start} -> {end}: "
            f"{len(result.jobs_created)} new jobs, {len(result.jobs_existing)} already known"
        )
        self.progress.recompute(brand_id, platform)
        return result

    def run_incremental_all(self) -> Dict[str, Any]:
        """
        Cron: enqueue the incremental refresh for every active connection and
        drop request throttle counters for windows that have closed.
        """
        triggered, errors = [], []
        for connection in self.registry.list_active():
            try:
                result = self.trigger(connection.brand_id, connection.platform, reason=SyncReason.CRON)
                triggered.append(result.to_dict())
            except (InvalidRange, ValueError) as e:
                errors.append({"brand_id": connection.brand_id, "platform": connection.platform, "error": str(e)})
                log.error(f"Incremental trigger failed for {connection.brand_id}/{connection.platform}: {e}")

        closed_before = utcnow() - timedelta(seconds=self.settings.manual_sync_window_seconds)
        pruned = RequestThrottle(self.db).prune(before=closed_before)
        if pruned:
            log.info(f"Pruned {pruned} expired request throttle counters")

        return {
            "connections": len(triggered) + len(errors),
            "jobs_created": sum(t["jobs_created"] for t in triggered),
            "throttle_counters_pruned": pruned,
            "triggered": triggered,
            "errors": errors,
        }

    def detect_gaps_all(self, brand_id: Optional[str] = None) -> Dict[str, Any]:
        """Cron: gap detection across every active connection."""
        result = GapDetector(self.db, self.settings).detect_all(brand_id=brand_id)
        touched = {(r.brand_id, r.platform) for r in result["reports"]}
        for pair in sorted(touched):
            self.progress.recompute(*pair)
        return {
            "reports": [r.to_dict() for r in result["reports"] if r.has_gaps],
            "entities_checked": len(result["reports"]),
            "gaps_found": result["gaps_found"],
            "jobs_enqueued": result["jobs_enqueued"],
            "errors": result["errors"],
        }

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(
        self,
        max_jobs: Optional[int] = None,
        deadline_seconds: Optional[float] = None
    ) -> DrainSummary:
        """
        Reclaim stuck jobs, then claim and execute jobs until the job budget
        or the deadline is reached, or nothing is claimable.
        """
        max_jobs = max_jobs if max_jobs is not None else self.settings.drain_max_jobs
        deadline_seconds = deadline_seconds if deadline_seconds is not None else self.settings.drain_deadline_seconds

        started = time.monotonic()
        summary = DrainSummary()
        touched: Set[Tuple[str, str]] = set()

        for outcome in self.ledger.reclaim_stuck():
            summary.reclaimed += 1
            job = self.ledger.get(outcome.job_id)
            if job is not None:
                touched.add((job.brand_id, job.platform))

        worker = FetchAndStoreWorker(self.db, self.settings, transport=self.transport)

        while summary.processed < max_jobs:
            remaining = deadline_seconds - (time.monotonic() - started)
            if remaining <= 0:
                log.info(f"Drain deadline of {deadline_seconds}s reached after {summary.processed} jobs")
                break

            job = self.ledger.claim()
            if job is None:
                break

            job_id, job_key = job.id, job.job_key
            touched.add((job.brand_id, job.platform))
            summary.processed += 1

            try:
                outcome = await worker.execute(job, timeout=deadline_seconds - (time.monotonic() - started))
            except Exception as e:
                # Bookkeeping failure (database unavailable); the lease recovers the job
                self.db.rollback()
                summary.failed += 1
                summary.errors.append({"job_id": job_id, "job_key": job_key, "error": f"{type(e).__name__}: {e}"})
                log.error(f"Job {job_id} crashed the worker: {e}")
                continue

            if outcome.connector_status:
                summary.api_requests += outcome.connector_status["requests"]
                summary.rate_limit_delay_seconds += outcome.connector_status["retry_stats"]["total_delay_seconds"]

            if outcome.status == OutcomeStatus.COMPLETED:
                summary.succeeded += 1
                summary.records_written += outcome.records_written
            elif outcome.status == OutcomeStatus.RELEASED:
                summary.released += 1
                summary.errors.append({"job_id": job_id, "job_key": job_key, "error": outcome.error_message,
                                       "kind": outcome.error_kind})
            else:
                summary.failed += 1
                summary.errors.append({"job_id": job_id, "job_key": job_key, "error": outcome.error_message,
                                       "kind": outcome.error_kind})

        for brand_id, platform in sorted(touched):
            self.progress.recompute(brand_id, platform)

        summary.duration_seconds = time.monotonic() - started
        log.info(
            f"Drain finished: {summary.processed} processed, {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.released} released, {summary.reclaimed} reclaimed"
        )
        return summary
