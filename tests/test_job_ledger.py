"""
Job ledger: idempotent enqueue, exclusive claims, conditional settlement,
retry scheduling and stuck job recovery.
"""
import threading
import time
from datetime import date, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from brandsync.errors import (
    AuthExpired, RateLimited, TotalFetchFailure, PartialFetchFailure,
)
from brandsync.models.connection import Platform
from brandsync.models.sync_job import SyncJob, JobStatus, JobPhase, SyncReason, build_job_key
from brandsync.services.chunk_planner import DateRange, plan_chunks
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.job_ledger import JobLedger
from brandsync.utils.helpers import utcnow

from conftest import make_settings

JAN = DateRange(date(2024, 1, 1), date(2024, 1, 30))
FEB = DateRange(date(2024, 1, 31), date(2024, 2, 29))


def _enqueue(ledger, date_range=JAN, entity="ad_insights", brand_id="brand-a", **kwargs):
    kwargs.setdefault("phase", JobPhase.HISTORICAL)
    kwargs.setdefault("reason", SyncReason.MANUAL)
    return ledger.enqueue(brand_id, Platform.META, entity, date_range, **kwargs)


def _expire_lease(db, job_id):
    """Simulate an invocation that died mid-job."""
    db.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id)
        .values(lease_expires_at=utcnow() - timedelta(minutes=1))
    )
    db.commit()


# ── Enqueue ──────────────────────────────────────────────────────


class TestEnqueue:

    def test_job_key_is_deterministic(self):
        assert build_job_key("brand-a", "meta", "ad_insights", JAN.start, JAN.end) == \
            "brand-a:meta:ad_insights:2024-01-01:2024-01-30"

    def test_enqueue_twice_creates_one_job(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        first = _enqueue(ledger)
        second = _enqueue(ledger)

        assert first.created is True
        assert second.created is False
        assert second.job_id == first.job_id
        assert db.execute(select(SyncJob)).scalars().all().__len__() == 1

    def test_completed_job_not_recreated_without_force(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        ledger.complete(job_id, records_written=10)

        again = _enqueue(ledger)
        assert again.created is False
        assert again.job_id == job_id

    def test_force_starts_a_fresh_attempt_run(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        ledger.complete(job_id, records_written=10)

        forced = _enqueue(ledger, force=True)
        job = ledger.get(forced.job_id)

        assert forced.created is True
        assert job.sequence == 2
        assert job.attempt == 1
        assert job.status == JobStatus.PENDING

    def test_force_does_not_duplicate_live_job(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        first = _enqueue(ledger)
        forced = _enqueue(ledger, force=True)

        assert forced.created is False
        assert forced.job_id == first.job_id


# ── Claim ────────────────────────────────────────────────────────


class TestClaim:

    def test_claim_marks_running_with_lease(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id

        job = ledger.claim()

        assert job.id == job_id
        assert job.status == JobStatus.RUNNING
        assert job.started_at is not None
        assert job.lease_expires_at > job.started_at

    def test_claimed_job_is_not_claimed_again(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        _enqueue(ledger)

        assert ledger.claim() is not None
        assert ledger.claim() is None

    def test_empty_queue(self, db, settings):
        assert JobLedger(db, settings).claim() is None

    def test_not_yet_eligible_job_is_skipped(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        _enqueue(ledger)

        assert ledger.claim(now=utcnow() - timedelta(hours=1)) is None

    def test_brand_without_active_connection_is_skipped(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        _enqueue(ledger, brand_id="brand-without-connection")
        assert ledger.claim() is None

        ConnectionRegistry(db).mark_expired("brand-a", Platform.META, "token revoked")
        _enqueue(ledger)
        assert ledger.claim() is None

    def test_higher_priority_first(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        low = _enqueue(ledger, date_range=JAN).job_id
        high = _enqueue(ledger, date_range=FEB, priority=1).job_id

        assert ledger.claim().id == high
        assert ledger.claim().id == low


# ── Settle ───────────────────────────────────────────────────────


class TestSettle:

    def test_complete_records_counts(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()

        job = ledger.complete(job_id, records_written=42)

        assert job.status == JobStatus.COMPLETED
        assert job.records_written == 42
        assert job.completed_at is not None
        assert job.lease_expires_at is None

    def test_partial_failure_completes_with_reason(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()

        job = ledger.complete(job_id, 8, records_failed=2, error=PartialFetchFailure("2 of 10 records"))

        assert job.status == JobStatus.COMPLETED
        assert job.records_failed == 2
        assert job.error_kind == "partial_fetch_failure"

    def test_settling_twice_is_rejected(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        ledger.complete(job_id, records_written=5)

        assert ledger.complete(job_id, records_written=99) is None
        assert ledger.fail(job_id, TotalFetchFailure("late")) is None
        assert ledger.release(job_id, AuthExpired("late")) is False
        assert ledger.get(job_id).records_written == 5

    def test_retryable_failure_schedules_new_attempt(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()

        outcome = ledger.fail(job_id, TotalFetchFailure("HTTP 503", http_status=503))

        failed = ledger.get(job_id)
        retry = ledger.get(outcome.retry_job_id)
        assert outcome.permanently_failed is False
        assert failed.status == JobStatus.FAILED
        assert failed.permanently_failed is False
        assert failed.http_status == 503
        assert retry.status == JobStatus.PENDING
        assert retry.attempt == 2
        assert retry.sequence == 2
        assert retry.parent_job_id == job_id
        assert retry.job_key == failed.job_key

    def test_attempts_exhausted_fail_permanently(self, db, meta_connection):
        ledger = JobLedger(db, make_settings(max_job_attempts=2))
        job_id = _enqueue(ledger).job_id

        ledger.claim()
        first = ledger.fail(job_id, TotalFetchFailure("boom"))
        ledger.claim()
        second = ledger.fail(first.retry_job_id, TotalFetchFailure("boom again"))

        assert second.permanently_failed is True
        assert second.retry_job_id is None
        assert ledger.claim() is None
        assert [j.id for j in ledger.permanently_failed("brand-a", Platform.META)] == [first.retry_job_id]

    def test_non_retryable_failure_is_permanent_at_once(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()

        outcome = ledger.fail(job_id, TotalFetchFailure("HTTP 400", http_status=400, retryable=False))

        assert outcome.permanently_failed is True
        assert outcome.retry_job_id is None

    def test_retry_after_delays_next_attempt(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        now = utcnow()

        outcome = ledger.fail(job_id, RateLimited("slow down", retry_after=120), now=now)

        assert outcome.retry_eligible_at >= now + timedelta(seconds=120)
        assert ledger.claim() is None

    def test_backoff_grows_with_attempts(self, db, meta_connection):
        ledger = JobLedger(db, make_settings(
            ledger_backoff_base_seconds=60.0, ledger_backoff_max_seconds=3600.0,
        ))
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        now = utcnow()

        outcome = ledger.fail(job_id, TotalFetchFailure("boom"), now=now)

        assert now + timedelta(seconds=60) <= outcome.retry_eligible_at <= now + timedelta(seconds=75)

    def test_release_returns_job_to_pending_without_using_an_attempt(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()

        assert ledger.release(job_id, AuthExpired("token expired", http_status=401)) is True

        job = ledger.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt == 1
        assert job.error_kind == "auth_expired"
        assert job.started_at is None


# ── Stuck jobs ───────────────────────────────────────────────────


class TestReclaimStuck:

    def test_expired_lease_is_failed_and_retried(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        _expire_lease(db, job_id)

        outcomes = ledger.reclaim_stuck()

        assert [o.job_id for o in outcomes] == [job_id]
        assert outcomes[0].error_kind == "stuck_job"
        assert ledger.get(job_id).status == JobStatus.FAILED
        assert ledger.get(outcomes[0].retry_job_id).status == JobStatus.PENDING

    def test_live_lease_is_left_alone(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()

        assert ledger.reclaim_stuck() == []
        assert ledger.get(job_id).status == JobStatus.RUNNING

    def test_late_worker_cannot_overwrite_reclaimed_job(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        _expire_lease(db, job_id)
        ledger.reclaim_stuck()

        assert ledger.complete(job_id, records_written=100) is None
        assert ledger.get(job_id).status == JobStatus.FAILED


# ── Manual recovery and reads ────────────────────────────────────


class TestRecovery:

    def test_requeue_failed_starts_fresh_attempts(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger).job_id
        ledger.claim()
        ledger.fail(job_id, TotalFetchFailure("HTTP 400", retryable=False))

        results = ledger.requeue_failed("brand-a", Platform.META)

        assert len(results) == 1 and results[0].created
        job = ledger.get(results[0].job_id)
        assert job.attempt == 1
        assert job.reason == SyncReason.MANUAL
        assert ledger.permanently_failed("brand-a", Platform.META) == []

    def test_latest_attempts_one_per_key(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        job_id = _enqueue(ledger, date_range=JAN).job_id
        _enqueue(ledger, date_range=FEB)
        ledger.claim()
        ledger.fail(job_id, TotalFetchFailure("boom"))

        latest = ledger.latest_attempts("brand-a", Platform.META)

        assert len(latest) == 2
        assert {j.status for j in latest} == {JobStatus.PENDING}

    def test_live_ranges(self, db, settings, meta_connection):
        ledger = JobLedger(db, settings)
        _enqueue(ledger, date_range=JAN)
        _enqueue(ledger, date_range=FEB, entity="demographics")

        assert ledger.live_ranges("brand-a", Platform.META, "ad_insights") == [JAN]


# ── Concurrency ──────────────────────────────────────────────────


def test_concurrent_claims_never_share_a_job(file_engine):
    """Several workers draining the same queue each get distinct jobs."""
    settings = make_settings()
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

    seed = factory()
    ConnectionRegistry(seed).connect("brand-a", Platform.META, "meta-token", "act_1")
    ledger = JobLedger(seed, settings)
    chunks = plan_chunks(date(2023, 1, 1), date(2023, 12, 31), chunk_days=15)
    for chunk in chunks:
        _enqueue(ledger, date_range=chunk)
    seed.close()

    claimed = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def worker():
        session = factory()
        worker_ledger = JobLedger(session, settings)
        barrier.wait()
        try:
            while True:
                try:
                    job = worker_ledger.claim()
                except OperationalError:
                    # SQLite lock contention; Postgres waits on SKIP LOCKED instead
                    session.rollback()
                    time.sleep(0.01)
                    continue
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(claimed) == len(chunks)
    assert len(set(claimed)) == len(claimed)
