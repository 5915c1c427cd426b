"""
Gap Detector

Finds days in a brand's expected coverage window that have no fact rows
(or only all-zero Meta rows) and enqueues repair jobs for them.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from brandsync.config import get_settings
from brandsync.models.sync_job import JobPhase, SyncReason
from brandsync.services.chunk_planner import DateRange, coalesce_dates, plan_chunks
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.fact_store import FactStore, gap_entities_for, get_fact_table
from brandsync.services.job_ledger import JobLedger
from brandsync.utils.helpers import iter_days, yesterday
from brandsync.utils.logger import log


@dataclass
class GapReport:
    brand_id: str
    platform: str
    entity: str
    window_start: date
    window_end: date
    gaps: List[DateRange] = field(default_factory=list)
    missing_days: int = 0
    anomalous_days: List[date] = field(default_factory=list)
    live_days_skipped: int = 0
    repaired_days_skipped: int = 0
    earliest_data_date: Optional[date] = None
    latest_data_date: Optional[date] = None
    jobs_enqueued: List[int] = field(default_factory=list)
    jobs_existing: List[int] = field(default_factory=list)

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brand_id": self.brand_id,
            "platform": self.platform,
            "entity": self.entity,
            "window": {"start": self.window_start.isoformat(), "end": self.window_end.isoformat()},
            "gaps": [g.to_dict() for g in self.gaps],
            "missing_days": self.missing_days,
            "anomalous_days": [d.isoformat() for d in self.anomalous_days],
            "live_days_skipped": self.live_days_skipped,
            "repaired_days_skipped": self.repaired_days_skipped,
            "earliest_data_date": self.earliest_data_date.isoformat() if self.earliest_data_date else None,
            "latest_data_date": self.latest_data_date.isoformat() if self.latest_data_date else None,
            "jobs_enqueued": self.jobs_enqueued,
            "jobs_existing": self.jobs_existing,
        }


class GapDetector:
    """Compares expected days against stored days and schedules repairs"""

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()
        self.facts = FactStore(db, self.settings)
        self.ledger = JobLedger(db, self.settings)
        self.registry = ConnectionRegistry(db)

    def default_window(self, brand_id: str, platform: str) -> DateRange:
        """Connection creation day through yesterday, capped at gap_lookback_days."""
        end = yesterday()
        start = end - timedelta(days=self.settings.gap_lookback_days - 1)

        connection = self.registry.get(brand_id, platform)
        if connection is not None and connection.created_at is not None:
            start = max(start, connection.created_at.date())
        return DateRange(start, end)

    def detect(
        self,
        brand_id: str,
        platform: str,
        entity: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        enqueue: bool = True
    ) -> GapReport:
        """
        Report (and by default enqueue repair jobs for) stale days of one entity.

        Stale = days with no rows, plus Meta days whose metrics are all zero.
        Days already covered by a pending or running job are left alone, as
        are days a completed repair already re-fetched (legitimately empty).
        Only tables expected to have rows every day can be checked.
        """
        if not get_fact_table(platform, entity).daily_coverage:
            raise ValueError(f"{platform} {entity} rows are not expected every day; gap detection does not apply")

        if start is None or end is None:
            window = self.default_window(brand_id, platform)
            start = start or window.start
            end = end or window.end

        report = GapReport(brand_id, platform, entity, start, end)
        report.earliest_data_date, report.latest_data_date = self.facts.date_bounds(brand_id, platform, entity)

        if end < start:
            # Connected today: nothing is expected yet
            return report

        expected = set(iter_days(start, end))
        missing = expected - self.facts.dates_with_data(brand_id, platform, entity, start, end)
        anomalous = self.facts.anomalous_dates(brand_id, platform, entity, start, end)
        stale = missing | anomalous

        live_days = set()
        for live in self.ledger.live_ranges(brand_id, platform, entity):
            live_days.update(iter_days(live.start, live.end))

        report.missing_days = len(missing)
        report.anomalous_days = sorted(anomalous)
        report.live_days_skipped = len(stale & live_days)
        stale -= live_days

        repaired_days = set()
        for repaired in self.ledger.repaired_ranges(brand_id, platform, entity):
            repaired_days.update(iter_days(repaired.start, repaired.end))
        report.repaired_days_skipped = len(stale & repaired_days)
        stale -= repaired_days

        for run in coalesce_dates(stale):
            report.gaps.extend(plan_chunks(run.start, run.end, self.settings.chunk_days))

        if report.gaps:
            log.info(
                f"Gaps for {brand_id}/{platform}/{entity}: {len(report.gaps)} ranges "
                f"({report.missing_days} missing days, {len(anomalous)} anomalous)"
            )

        if enqueue:
            for gap in report.gaps:
                result = self.ledger.enqueue(
                    brand_id, platform, entity, gap,
                    phase=JobPhase.GAP,
                    reason=SyncReason.REPAIR,
                    force=False,
                )
                if result.created:
                    report.jobs_enqueued.append(result.job_id)
                else:
                    report.jobs_existing.append(result.job_id)

        return report

    def detect_all(self, brand_id: Optional[str] = None, enqueue: bool = True) -> Dict[str, Any]:
        """
        Run detection for every entity of every active connection.

        One entity failing is logged and reported; the rest still run.
        """
        reports: List[GapReport] = []
        errors = []

        for connection in self.registry.list_active():
            if brand_id and connection.brand_id != brand_id:
                continue
            for entity in gap_entities_for(connection.platform):
                try:
                    reports.append(self.detect(connection.brand_id, connection.platform, entity, enqueue=enqueue))
                except Exception as e:
                    self.db.rollback()
                    log.error(f"Gap detection failed for {connection.brand_id}/{connection.platform}/{entity}: {e}")
                    errors.append({
                        "brand_id": connection.brand_id,
                        "platform": connection.platform,
                        "entity": entity,
                        "error": str(e),
                    })

        return {
            "reports": reports,
            "errors": errors,
            "gaps_found": sum(len(r.gaps) for r in reports),
            "jobs_enqueued": sum(len(r.jobs_enqueued) for r in reports),
        }
