"""
Sync Status Model

Brand-level rollup of the job ledger, one row per (brand, platform).
Derived state: only the progress aggregator writes it.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, UniqueConstraint

from brandsync.models.base import Base
from brandsync.utils.helpers import utcnow


class SyncPhase:
    HISTORICAL = "historical"
    INCREMENTAL = "incremental"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncStatus(Base):
    """Materialized sync progress for one brand/platform"""
    __tablename__ = "sync_status"
    __table_args__ = (
        UniqueConstraint("brand_id", "platform", name="uq_sync_status_brand_platform"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, index=True, nullable=False)
    platform = Column(String, nullable=False)

    # Job counts (latest attempt per logical job)
    total_jobs = Column(Integer, default=0)
    pending_jobs = Column(Integer, default=0)
    running_jobs = Column(Integer, default=0)
    completed_jobs = Column(Integer, default=0)
    failed_jobs = Column(Integer, default=0)

    phase = Column(String, nullable=False, default=SyncPhase.HISTORICAL)
    percent_complete = Column(Float, default=0.0)

    # Permanently failed ranges: [{entity, range_start, range_end, error_kind, error_message}]
    failed_ranges = Column(JSON, nullable=True)

    last_synced_at = Column(DateTime, nullable=True)
    computed_at = Column(DateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "brand_id": self.brand_id,
            "platform": self.platform,
            "phase": self.phase,
            "percent_complete": self.percent_complete,
            "jobs": {
                "total": self.total_jobs,
                "pending": self.pending_jobs,
                "running": self.running_jobs,
                "completed": self.completed_jobs,
                "failed": self.failed_jobs,
            },
            "failed_ranges": self.failed_ranges or [],
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }
