"""
Job Ledger Service

Durable queue of sync work. Every logical job ("entity E of brand B over a
date range") is identified by a deterministic job_key. Each attempt is its own
row; a failed attempt is never mutated again, a retry is a new pending row
linked to it.

Concurrency rests on two things:
- claim() is a single UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED)
  so one pending row goes to exactly one caller.
- complete()/fail()/release() only touch rows that are still running, so a
  worker that lost its lease cannot overwrite the outcome.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, exists, func, select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from brandsync.config import get_settings
from brandsync.errors import SyncError, StuckJob
from brandsync.models.connection import PlatformConnection, ConnectionStatus
from brandsync.models.sync_job import SyncJob, JobStatus, JobPhase, SyncReason, build_job_key
from brandsync.services.chunk_planner import DateRange
from brandsync.utils.helpers import utcnow
from brandsync.utils.logger import log
from brandsync.utils.retry import next_eligible_at


@dataclass
class EnqueueResult:
    job_id: int
    job_key: str
    created: bool


@dataclass
class FailOutcome:
    """Result of recording a failed attempt"""
    job_id: int
    error_kind: str
    permanently_failed: bool
    retry_job_id: Optional[int] = None
    retry_eligible_at: Optional[datetime] = None


class JobLedger:
    """Enqueue, claim and settle sync jobs"""

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        brand_id: str,
        platform: str,
        entity: str,
        date_range: DateRange,
        phase: str,
        reason: str,
        force: bool = False,
        priority: int = 0
    ) -> EnqueueResult:
        """
        Idempotently add a pending job.

        - Live (pending/running) attempt exists: returns it, nothing created.
        - Latest attempt completed or permanently failed: no-op unless force,
          which starts a fresh attempt run (attempt = 1).
        """
        job_key = build_job_key(brand_id, platform, entity, date_range.start, date_range.end)
        latest = self._latest_attempt(job_key)

        if latest is not None and (latest.status in JobStatus.LIVE or not force):
            return EnqueueResult(job_id=latest.id, job_key=job_key, created=False)

        job = SyncJob(
            job_key=job_key,
            sequence=(latest.sequence + 1) if latest is not None else 1,
            brand_id=brand_id,
            platform=platform,
            entity=entity,
            range_start=date_range.start,
            range_end=date_range.end,
            phase=phase,
            reason=reason,
            priority=priority,
            status=JobStatus.PENDING,
            attempt=1,
            eligible_at=utcnow(),
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent enqueue of the same key
            self.db.rollback()
            winner = self._live_attempt(job_key)
            if winner is None:
                raise
            log.debug(f"Enqueue race on {job_key}, returning live job {winner.id}")
            return EnqueueResult(job_id=winner.id, job_key=job_key, created=False)

        log.info(f"Enqueued job {job.id} {job_key} (phase={phase}, reason={reason})")
        return EnqueueResult(job_id=job.id, job_key=job_key, created=True)

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim(self, now: Optional[datetime] = None) -> Optional[SyncJob]:
        """
        Atomically take the next eligible pending job and mark it running.

        Eligible: pending, eligible_at <= now, and the brand still has an
        active connection for the job's platform.
        """
        now = now or utcnow()
        candidate = aliased(SyncJob)

        has_active_connection = exists().where(
            PlatformConnection.brand_id == candidate.brand_id,
            PlatformConnection.platform == candidate.platform,
            PlatformConnection.status == ConnectionStatus.ACTIVE,
        )
        next_id = (
            select(candidate.id)
            .where(
                candidate.status == JobStatus.PENDING,
                candidate.eligible_at <= now,
                has_active_connection,
            )
            .order_by(candidate.priority.desc(), candidate.eligible_at, candidate.id)
            .limit(1)
            .with_for_update(skip_locked=True, of=candidate)
            .scalar_subquery()
        )
        stmt = (
            update(SyncJob)
            .where(SyncJob.id == next_id, SyncJob.status == JobStatus.PENDING)
            .values(
                status=JobStatus.RUNNING,
                started_at=now,
                lease_expires_at=now + timedelta(seconds=self.settings.lease_seconds),
            )
            .returning(SyncJob.id)
            .execution_options(synchronize_session=False)
        )
        job_id = self.db.execute(stmt).scalar_one_or_none()
        self.db.commit()

        if job_id is None:
            return None

        job = self.db.get(SyncJob, job_id)
        log.info(f"Claimed job {job.id} {job.job_key} (attempt {job.attempt})")
        return job

    # ------------------------------------------------------------------
    # Settle
    # ------------------------------------------------------------------

    def complete(
        self,
        job_id: int,
        records_written: int,
        records_failed: int = 0,
        error: Optional[SyncError] = None,
        now: Optional[datetime] = None
    ) -> Optional[SyncJob]:
        """Mark a running job completed. Returns None if the job is no longer running."""
        now = now or utcnow()
        values = dict(
            status=JobStatus.COMPLETED,
            completed_at=now,
            lease_expires_at=None,
            records_written=records_written,
            records_failed=records_failed,
        )
        if error is not None:
            # Partial failure: completed, but keep the reason for the dashboard
            values.update(error_kind=error.kind, error_message=error.message)

        result = self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            log.warning(f"Job {job_id} completed after losing its lease, result discarded")
            return None

        job = self.db.get(SyncJob, job_id)
        log.info(f"Completed job {job_id} {job.job_key}: {records_written} written, {records_failed} failed")
        return job

    def fail(
        self,
        job_id: int,
        error: SyncError,
        now: Optional[datetime] = None
    ) -> Optional[FailOutcome]:
        """
        Record a failed attempt.

        Retryable errors below max_job_attempts schedule a new pending attempt
        with exponential backoff. Anything else marks the job permanently failed.
        Returns None if the job is no longer running.
        """
        return self._fail(job_id, error, now or utcnow())

    def release(self, job_id: int, error: SyncError) -> bool:
        """
        Put a running job back to pending without consuming an attempt.

        Used when the credential expired: the job resumes once the brand
        reconnects, since claim() skips brands without an active connection.
        """
        result = self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING)
            .values(
                status=JobStatus.PENDING,
                started_at=None,
                lease_expires_at=None,
                error_kind=error.kind,
                error_message=error.message,
                http_status=error.http_status,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            log.warning(f"Job {job_id} could not be released, it is no longer running")
            return False

        log.info(f"Released job {job_id} back to pending ({error.kind})")
        return True

    def reclaim_stuck(self, now: Optional[datetime] = None) -> List[FailOutcome]:
        """
        Fail every running job whose lease has expired.

        Each job is settled with its own conditional update, so concurrent
        reclaimers (or a late worker) cannot settle the same attempt twice.
        """
        now = now or utcnow()
        stuck_ids = self.db.execute(
            select(SyncJob.id).where(
                SyncJob.status == JobStatus.RUNNING,
                SyncJob.lease_expires_at < now,
            )
        ).scalars().all()

        outcomes = []
        for job_id in stuck_ids:
            outcome = self._fail(
                job_id,
                StuckJob("Lease expired while running"),
                now,
                extra_conditions=(SyncJob.lease_expires_at < now,),
            )
            if outcome is None:
                continue
            log.warning(
                f"Reclaimed stuck job {job_id} "
                f"({'permanently failed' if outcome.permanently_failed else f'retry as job {outcome.retry_job_id}'})"
            )
            outcomes.append(outcome)
        return outcomes

    def _fail(self, job_id: int, error: SyncError, now: datetime, extra_conditions=()) -> Optional[FailOutcome]:
        job = self.db.get(SyncJob, job_id)
        if job is None:
            log.warning(f"Cannot fail job {job_id}: not found")
            return None

        will_retry = bool(error.retryable) and job.attempt < self.settings.max_job_attempts

        result = self.db.execute(
            update(SyncJob)
            .where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING, *extra_conditions)
            .values(
                status=JobStatus.FAILED,
                completed_at=now,
                lease_expires_at=None,
                error_kind=error.kind,
                error_message=(error.message or "")[:2000],
                http_status=error.http_status,
                permanently_failed=not will_retry,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            log.warning(f"Job {job_id} failure not recorded, it is no longer running")
            return None

        outcome = FailOutcome(job_id=job_id, error_kind=error.kind, permanently_failed=not will_retry)

        if will_retry:
            eligible_at = next_eligible_at(
                now,
                job.attempt,
                base_delay=self.settings.ledger_backoff_base_seconds,
                max_delay=self.settings.ledger_backoff_max_seconds,
            )
            retry_after = getattr(error, "retry_after", None)
            if retry_after:
                eligible_at = max(eligible_at, now + timedelta(seconds=retry_after))

            retry = SyncJob(
                job_key=job.job_key,
                sequence=job.sequence + 1,
                brand_id=job.brand_id,
                platform=job.platform,
                entity=job.entity,
                range_start=job.range_start,
                range_end=job.range_end,
                phase=job.phase,
                reason=job.reason,
                priority=job.priority,
                status=JobStatus.PENDING,
                attempt=job.attempt + 1,
                eligible_at=eligible_at,
                parent_job_id=job_id,
            )
            self.db.add(retry)
            self.db.flush()
            outcome.retry_job_id = retry.id
            outcome.retry_eligible_at = eligible_at

        self.db.commit()

        if will_retry:
            log.warning(
                f"Job {job_id} failed ({error.kind}: {error.message}), "
                f"retry job {outcome.retry_job_id} eligible at {outcome.retry_eligible_at:%Y-%m-%d %H:%M:%S}"
            )
        else:
            log.error(f"Job {job_id} permanently failed ({error.kind}: {error.message})")
        return outcome

    # ------------------------------------------------------------------
    # Manual recovery
    # ------------------------------------------------------------------

    def requeue_failed(self, brand_id: str, platform: str) -> List[EnqueueResult]:
        """Start a fresh attempt run for every permanently failed job of a brand/platform."""
        results = []
        for job in self.permanently_failed(brand_id, platform):
            results.append(self.enqueue(
                job.brand_id,
                job.platform,
                job.entity,
                DateRange(job.range_start, job.range_end),
                phase=job.phase,
                reason=SyncReason.MANUAL,
                force=True,
                priority=job.priority,
            ))
        log.info(f"Requeued {sum(1 for r in results if r.created)} failed jobs for {brand_id}/{platform}")
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def latest_attempts(self, brand_id: str, platform: str) -> List[SyncJob]:
        """Latest attempt of every logical job of a brand/platform."""
        latest = (
            select(SyncJob.job_key, func.max(SyncJob.sequence).label("max_sequence"))
            .where(SyncJob.brand_id == brand_id, SyncJob.platform == platform)
            .group_by(SyncJob.job_key)
            .subquery()
        )
        stmt = (
            select(SyncJob)
            .join(latest, and_(
                SyncJob.job_key == latest.c.job_key,
                SyncJob.sequence == latest.c.max_sequence,
            ))
            .order_by(SyncJob.range_start, SyncJob.entity)
        )
        return list(self.db.execute(stmt).scalars().all())

    def permanently_failed(self, brand_id: str, platform: str) -> List[SyncJob]:
        return [
            job for job in self.latest_attempts(brand_id, platform)
            if job.status == JobStatus.FAILED and job.permanently_failed
        ]

    def live_ranges(self, brand_id: str, platform: str, entity: str) -> List[DateRange]:
        """Date ranges with a pending or running job for this entity."""
        rows = self.db.execute(
            select(SyncJob.range_start, SyncJob.range_end).where(
                SyncJob.brand_id == brand_id,
                SyncJob.platform == platform,
                SyncJob.entity == entity,
                SyncJob.status.in_(JobStatus.LIVE),
            )
        ).all()
        return [DateRange(start, end) for start, end in rows]

    def repaired_ranges(self, brand_id: str, platform: str, entity: str) -> List[DateRange]:
        """Date ranges a completed gap repair already re-fetched for this entity."""
        rows = self.db.execute(
            select(SyncJob.range_start, SyncJob.range_end).where(
                SyncJob.brand_id == brand_id,
                SyncJob.platform == platform,
                SyncJob.entity == entity,
                SyncJob.phase == JobPhase.GAP,
                SyncJob.status == JobStatus.COMPLETED,
            )
        ).all()
        return [DateRange(start, end) for start, end in rows]

    def get(self, job_id: int) -> Optional[SyncJob]:
        return self.db.get(SyncJob, job_id)

    def purge(self, brand_id: str, platform: str) -> int:
        """Delete every ledger row of a brand/platform (disconnect)."""
        result = self.db.execute(
            delete(SyncJob)
            .where(SyncJob.brand_id == brand_id, SyncJob.platform == platform)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def _latest_attempt(self, job_key: str) -> Optional[SyncJob]:
        return self.db.execute(
            select(SyncJob)
            .where(SyncJob.job_key == job_key)
            .order_by(SyncJob.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _live_attempt(self, job_key: str) -> Optional[SyncJob]:
        return self.db.execute(
            select(SyncJob).where(
                SyncJob.job_key == job_key,
                SyncJob.status.in_(JobStatus.LIVE),
            )
        ).scalar_one_or_none()
