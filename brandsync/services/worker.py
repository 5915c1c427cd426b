"""
Fetch-and-Store Worker

Executes one claimed job: fetch the entity for the job's date range from the
platform, normalize, upsert, and settle the job in the ledger.
Job-level failures are recorded in the ledger, never raised.
"""
import asyncio
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from brandsync.config import get_settings
from brandsync.connectors import get_connector
from brandsync.connectors.base import BaseConnector
from brandsync.errors import SyncError, AuthExpired, PartialFetchFailure, TotalFetchFailure
from brandsync.models.sync_job import SyncJob
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.fact_store import FactStore
from brandsync.services.job_ledger import JobLedger
from brandsync.utils.logger import log


class OutcomeStatus:
    COMPLETED = "completed"
    FAILED = "failed"
    RELEASED = "released"
    LOST_LEASE = "lost_lease"


@dataclass
class JobOutcome:
    job_id: int
    job_key: str
    status: str
    records_written: int = 0
    records_failed: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    retry_job_id: Optional[int] = None
    permanently_failed: bool = False
    # Request count and rate limit waits of the connector that ran the job
    connector_status: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    def to_dict(self) -> dict:
        return asdict(self)


def _with_status(outcome: JobOutcome, connector: Optional[BaseConnector]) -> JobOutcome:
    if connector is not None:
        outcome.connector_status = connector.get_status()
    return outcome


class FetchAndStoreWorker:
    """Runs claimed jobs against the platform APIs"""

    def __init__(self, db: Session, settings=None, transport=None):
        """
        Args:
            db: Database session
            settings: Settings override
            transport: httpx transport handed to every connector (tests)
        """
        self.db = db
        self.settings = settings or get_settings()
        self.transport = transport

        self.ledger = JobLedger(db, self.settings)
        self.facts = FactStore(db, self.settings)
        self.registry = ConnectionRegistry(db)

    async def execute(self, job: SyncJob, timeout: Optional[float] = None) -> JobOutcome:
        """
        Run one claimed job. `timeout` caps the fetch below job_timeout_seconds
        when the caller has less time left.
        """
        # Copy out before any commit expires the instance
        job_id, job_key = job.id, job.job_key
        brand_id, platform, entity = job.brand_id, job.platform, job.entity
        start, end = job.range_start, job.range_end

        connection = self.registry.get_active(brand_id, platform)
        if connection is None:
            # Disconnected or expired between claim and execution
            error = AuthExpired(f"No active {platform} connection for brand {brand_id}")
            self.ledger.release(job_id, error)
            return JobOutcome(job_id, job_key, OutcomeStatus.RELEASED, error_kind=error.kind, error_message=error.message)

        fetch_timeout = self.settings.job_timeout_seconds
        if timeout is not None:
            fetch_timeout = max(0.0, min(fetch_timeout, timeout))

        log.info(f"Executing job {job_id}: {entity} for {brand_id}/{platform} {start} -> {end}")

        connector: Optional[BaseConnector] = None
        try:
            connector = get_connector(connection, settings=self.settings, transport=self.transport)
            raw_records = await asyncio.wait_for(
                connector.fetch(entity, start, end),
                timeout=fetch_timeout
            )
            rows, normalize_failures = self._normalize(connector, entity, raw_records, job_id)
            stored = self.facts.upsert(platform, entity, rows)

        except AuthExpired as e:
            self.registry.mark_expired(brand_id, platform, e.message)
            self.ledger.release(job_id, e)
            return _with_status(
                JobOutcome(job_id, job_key, OutcomeStatus.RELEASED, error_kind=e.kind, error_message=e.message),
                connector,
            )

        except SyncError as e:
            return _with_status(self._fail(job_id, job_key, e), connector)

        except asyncio.TimeoutError:
            return _with_status(self._fail(job_id, job_key, TotalFetchFailure(
                f"Fetch exceeded job timeout of {fetch_timeout:g}s"
            )), connector)

        except Exception as e:
            log.error(f"Unexpected error executing job {job_id} ({job_key}): {type(e).__name__}: {e}")
            self.db.rollback()
            return _with_status(
                self._fail(job_id, job_key, TotalFetchFailure(f"Unexpected {type(e).__name__}: {e}")),
                connector,
            )

        records_failed = normalize_failures + stored.failed
        partial = None
        if records_failed:
            partial = PartialFetchFailure(f"{records_failed} of {len(raw_records)} records could not be stored")
            log.warning(f"Job {job_id}: {partial.message}")

        completed = self.ledger.complete(job_id, stored.written, records_failed, error=partial)
        if completed is None:
            return _with_status(
                JobOutcome(job_id, job_key, OutcomeStatus.LOST_LEASE, stored.written, records_failed),
                connector,
            )

        self.registry.touch_synced(brand_id, platform, end)
        return _with_status(JobOutcome(
            job_id, job_key, OutcomeStatus.COMPLETED,
            records_written=stored.written,
            records_failed=records_failed,
            error_kind=partial.kind if partial else None,
            error_message=partial.message if partial else None,
        ), connector)

    def _normalize(
        self,
        connector: BaseConnector,
        entity: str,
        raw_records: List[dict],
        job_id: int
    ) -> Tuple[List[dict], int]:
        rows = []
        failures = 0
        for record in raw_records:
            try:
                rows.append(connector.normalize(entity, record))
            except (KeyError, TypeError, ValueError) as e:
                failures += 1
                log.warning(f"Job {job_id}: skipping malformed {entity} record ({type(e).__name__}: {e})")
        return rows, failures

    def _fail(self, job_id: int, job_key: str, error: SyncError) -> JobOutcome:
        outcome = self.ledger.fail(job_id, error)
        if outcome is None:
            return JobOutcome(job_id, job_key, OutcomeStatus.LOST_LEASE, error_kind=error.kind, error_message=error.message)
        return JobOutcome(
            job_id, job_key, OutcomeStatus.FAILED,
            error_kind=error.kind,
            error_message=error.message,
            retry_job_id=outcome.retry_job_id,
            permanently_failed=outcome.permanently_failed,
        )
