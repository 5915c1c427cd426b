"""
Sync Job Ledger Model

Durable record of every sync attempt: "fetch entity E for brand B over
[range_start, range_end]". One row per attempt; retries are new rows linked
to the failed attempt through parent_job_id.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Text, Boolean, ForeignKey,
    Index, UniqueConstraint, text
)

from brandsync.models.base import Base
from brandsync.utils.helpers import utcnow


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    LIVE = (PENDING, RUNNING)
    TERMINAL = (COMPLETED, FAILED)


class JobPhase:
    HISTORICAL = "historical"
    INCREMENTAL = "incremental"
    GAP = "gap"


class SyncReason:
    MANUAL = "manual"
    CRON = "cron"
    RECONNECT = "reconnect"
    REPAIR = "repair"

    ALL = (MANUAL, CRON, RECONNECT, REPAIR)


def build_job_key(brand_id: str, platform: str, entity: str, range_start, range_end) -> str:
    """Logical job identity. Same inputs always give the same key."""
    return f"{brand_id}:{platform}:{entity}:{range_start.isoformat()}:{range_end.isoformat()}"


class SyncJob(Base):
    """
    Sync job ledger row (one attempt)

    Status only moves forward: pending -> running -> completed | failed.
    """
    __tablename__ = "sync_jobs"
    __table_args__ = (
        UniqueConstraint("job_key", "sequence", name="uq_sync_jobs_key_sequence"),
        # At most one live attempt per logical job
        Index(
            "uq_sync_jobs_live_key",
            "job_key",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("ix_sync_jobs_claim", "status", "eligible_at"),
        Index("ix_sync_jobs_brand_platform", "brand_id", "platform"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Identity
    job_key = Column(String, index=True, nullable=False)
    sequence = Column(Integer, nullable=False, default=1)  # Increments per new attempt row for a key

    # Work description
    brand_id = Column(String, nullable=False)
    platform = Column(String, nullable=False)
    entity = Column(String, nullable=False)  # ad_insights, demographics, orders, ...
    range_start = Column(Date, nullable=False)
    range_end = Column(Date, nullable=False)
    phase = Column(String, nullable=False, default=JobPhase.HISTORICAL)
    reason = Column(String, nullable=False, default=SyncReason.MANUAL)
    priority = Column(Integer, default=0)

    # State
    status = Column(String, nullable=False, default=JobStatus.PENDING)
    attempt = Column(Integer, nullable=False, default=1)  # 1-based within the current retry run
    eligible_at = Column(DateTime, nullable=False, default=utcnow)  # Not claimable before this
    lease_expires_at = Column(DateTime, nullable=True)
    permanently_failed = Column(Boolean, default=False, nullable=False)

    # Outcome
    records_written = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    error_kind = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    http_status = Column(Integer, nullable=True)

    parent_job_id = Column(Integer, ForeignKey("sync_jobs.id", ondelete="SET NULL"), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_key": self.job_key,
            "brand_id": self.brand_id,
            "platform": self.platform,
            "entity": self.entity,
            "range_start": self.range_start.isoformat() if self.range_start else None,
            "range_end": self.range_end.isoformat() if self.range_end else None,
            "phase": self.phase,
            "reason": self.reason,
            "status": self.status,
            "attempt": self.attempt,
            "permanently_failed": self.permanently_failed,
            "records_written": self.records_written,
            "records_failed": self.records_failed,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "http_status": self.http_status,
            "eligible_at": self.eligible_at.isoformat() if self.eligible_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
