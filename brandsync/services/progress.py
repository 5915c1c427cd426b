"""
Progress Aggregator

Rolls the job ledger up into one SyncStatus row per brand/platform.
Reads the ledger, writes only SyncStatus.
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from brandsync.models.connection import PlatformConnection
from brandsync.models.sync_job import SyncJob, JobStatus, JobPhase
from brandsync.models.sync_status import SyncStatus, SyncPhase
from brandsync.services.job_ledger import JobLedger
from brandsync.utils.helpers import utcnow


def derive_phase(jobs: List[SyncJob]) -> str:
    """
    Phase from the latest attempt of each logical job.

    Historical work outstanding wins, then incremental/gap work, then any
    permanent failure. An empty ledger still counts as the initial load.
    """
    if not jobs:
        return SyncPhase.HISTORICAL

    live = [j for j in jobs if j.status in JobStatus.LIVE]
    if any(j.phase == JobPhase.HISTORICAL for j in live):
        return SyncPhase.HISTORICAL
    if live:
        return SyncPhase.INCREMENTAL
    if any(j.status == JobStatus.FAILED for j in jobs):
        return SyncPhase.FAILED
    return SyncPhase.COMPLETED


def percent_complete(completed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(completed / total * 100, 1)


class ProgressAggregator:
    """Recomputes SyncStatus from the ledger"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = JobLedger(db)

    def recompute(self, brand_id: str, platform: str) -> SyncStatus:
        jobs = self.ledger.latest_attempts(brand_id, platform)

        counts = {s: 0 for s in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED)}
        for job in jobs:
            counts[job.status] += 1

        failed_ranges = [
            {
                "job_id": job.id,
                "entity": job.entity,
                "range_start": job.range_start.isoformat(),
                "range_end": job.range_end.isoformat(),
                "error_kind": job.error_kind,
                "error_message": job.error_message,
                "attempt": job.attempt,
            }
            for job in jobs
            if job.status == JobStatus.FAILED
        ]

        status = self.get(brand_id, platform)
        if status is None:
            status = SyncStatus(brand_id=brand_id, platform=platform)
            self.db.add(status)

        status.total_jobs = len(jobs)
        status.pending_jobs = counts[JobStatus.PENDING]
        status.running_jobs = counts[JobStatus.RUNNING]
        status.completed_jobs = counts[JobStatus.COMPLETED]
        status.failed_jobs = counts[JobStatus.FAILED]
        status.phase = derive_phase(jobs)
        status.percent_complete = percent_complete(counts[JobStatus.COMPLETED], len(jobs))
        status.failed_ranges = failed_ranges

        connection = self.db.execute(
            select(PlatformConnection).where(
                PlatformConnection.brand_id == brand_id,
                PlatformConnection.platform == platform,
            )
        ).scalar_one_or_none()
        status.last_synced_at = connection.last_synced_at if connection else None
        status.computed_at = utcnow()

        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent recompute created the row first; update that one
            self.db.rollback()
            return self.recompute(brand_id, platform)
        self.db.refresh(status)
        return status

    def get(self, brand_id: str, platform: str) -> Optional[SyncStatus]:
        return self.db.execute(
            select(SyncStatus).where(SyncStatus.brand_id == brand_id, SyncStatus.platform == platform)
        ).scalar_one_or_none()
