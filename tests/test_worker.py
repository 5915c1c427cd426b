"""
Fetch-and-store worker: one claimed job from fetch to ledger settlement.
"""
import asyncio
from datetime import date

import httpx
from sqlalchemy import select

from brandsync.models.connection import Platform, ConnectionStatus
from brandsync.models.meta import MetaAdInsight
from brandsync.models.sync_job import JobStatus, JobPhase, SyncReason
from brandsync.services.chunk_planner import DateRange
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.job_ledger import JobLedger
from brandsync.services.worker import FetchAndStoreWorker, OutcomeStatus

from conftest import make_settings

RANGE = DateRange(date(2024, 1, 1), date(2024, 1, 2))


def _run(coro):
    return asyncio.run(coro)


def _claim_job(db, settings, entity="ad_insights"):
    ledger = JobLedger(db, settings)
    ledger.enqueue("brand-a", Platform.META, entity, RANGE, phase=JobPhase.HISTORICAL, reason=SyncReason.MANUAL)
    return ledger.claim()


def _row(ad_id, day):
    return {"account_id": "111", "ad_id": ad_id, "date_start": day, "spend": "5", "impressions": "50"}


def _execute(db, settings, job, handler):
    worker = FetchAndStoreWorker(db, settings, transport=httpx.MockTransport(handler))
    return _run(worker.execute(job))


# ── Success paths ────────────────────────────────────────────────


class TestSuccess:

    def test_rows_stored_and_job_completed(self, db, settings, meta_connection):
        job = _claim_job(db, settings)

        def handler(request):
            return httpx.Response(200, json={"data": [_row("1", "2024-01-01"), _row("1", "2024-01-02")]})

        outcome = _execute(db, settings, job, handler)

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.succeeded
        assert outcome.records_written == 2
        assert len(db.execute(select(MetaAdInsight)).scalars().all()) == 2

        settled = JobLedger(db, settings).get(outcome.job_id)
        assert settled.status == JobStatus.COMPLETED
        assert settled.records_written == 2

        connection = ConnectionRegistry(db).get("brand-a", Platform.META)
        assert connection.last_synced_date == RANGE.end
        assert connection.last_synced_at is not None

    def test_rerun_does_not_duplicate_rows(self, db, settings, meta_connection):
        def handler(request):
            return httpx.Response(200, json={"data": [_row("1", "2024-01-01")]})

        _execute(db, settings, _claim_job(db, settings), handler)
        ledger = JobLedger(db, settings)
        ledger.enqueue("brand-a", Platform.META, "ad_insights", RANGE,
                       phase=JobPhase.INCREMENTAL, reason=SyncReason.CRON, force=True)
        _execute(db, settings, ledger.claim(), handler)

        assert len(db.execute(select(MetaAdInsight)).scalars().all()) == 1

    def test_outcome_reports_requests_and_rate_limit_retries(self, db, settings, meta_connection):
        responses = iter([
            httpx.Response(429, json={"error": {"code": 17, "message": "User request limit reached"}}),
            httpx.Response(200, json={"data": [_row("1", "2024-01-01")]}),
        ])

        outcome = _execute(db, settings, _claim_job(db, settings), lambda request: next(responses))

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.connector_status["name"] == Platform.META
        assert outcome.connector_status["requests"] == 2
        assert outcome.connector_status["retry_stats"]["attempts"] == 1
        assert outcome.connector_status["retry_stats"]["success"] is True

    def test_malformed_record_is_partial_failure(self, db, settings, meta_connection):
        job = _claim_job(db, settings)

        def handler(request):
            return httpx.Response(200, json={"data": [_row("1", "2024-01-01"), {"ad_id": "2"}]})

        outcome = _execute(db, settings, job, handler)

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.records_written == 1
        assert outcome.records_failed == 1
        assert outcome.error_kind == "partial_fetch_failure"

    def test_empty_response_completes(self, db, settings, meta_connection):
        job = _claim_job(db, settings)
        outcome = _execute(db, settings, job, lambda r: httpx.Response(200, json={"data": []}))

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.records_written == 0


# ── Failure paths ────────────────────────────────────────────────


class TestFailures:

    def test_expired_token_releases_job_and_expires_connection(self, db, settings, meta_connection):
        job = _claim_job(db, settings)

        def handler(request):
            return httpx.Response(400, json={"error": {"code": 190, "message": "Session has expired"}})

        outcome = _execute(db, settings, job, handler)

        assert outcome.status == OutcomeStatus.RELEASED
        released = JobLedger(db, settings).get(outcome.job_id)
        assert released.status == JobStatus.PENDING
        assert released.attempt == 1
        assert released.error_kind == "auth_expired"

        connection = ConnectionRegistry(db).get("brand-a", Platform.META)
        assert connection.status == ConnectionStatus.EXPIRED
        assert "Session has expired" in connection.last_error
        assert JobLedger(db, settings).claim() is None

    def test_server_error_schedules_retry(self, db, settings, meta_connection):
        job = _claim_job(db, settings)

        outcome = _execute(db, settings, job, lambda r: httpx.Response(500, json={"error": {"message": "oops"}}))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error_kind == "total_fetch_failure"
        assert outcome.permanently_failed is False
        assert outcome.retry_job_id is not None

    def test_rejected_request_fails_permanently(self, db, settings, meta_connection):
        job = _claim_job(db, settings)

        def handler(request):
            return httpx.Response(400, json={"error": {"code": 100, "message": "Invalid parameter"}})

        outcome = _execute(db, settings, job, handler)

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.permanently_failed is True

    def test_fetch_over_job_timeout_fails(self, db, meta_connection):
        settings = make_settings(job_timeout_seconds=0.05)
        job = _claim_job(db, settings)

        async def slow_handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"data": []})

        outcome = _execute(db, settings, job, slow_handler)

        assert outcome.status == OutcomeStatus.FAILED
        assert "timeout" in outcome.error_message

    def test_connection_gone_before_execution(self, db, settings, meta_connection):
        job = _claim_job(db, settings)
        ConnectionRegistry(db).mark_expired("brand-a", Platform.META, "revoked in Business Manager")

        def handler(request):
            raise AssertionError("no request expected")

        outcome = _execute(db, settings, job, handler)

        assert outcome.status == OutcomeStatus.RELEASED
        assert JobLedger(db, settings).get(outcome.job_id).status == JobStatus.PENDING
