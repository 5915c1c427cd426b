"""
Request throttle counters

Fixed-window hit counters shared by every stateless instance through the database.
"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint

from brandsync.models.base import Base


class RequestThrottleCounter(Base):
    __tablename__ = "request_throttle_counters"
    __table_args__ = (
        UniqueConstraint("key", "window_start", name="uq_request_throttle_key_window"),
    )

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, nullable=False, index=True)  # e.g. "manual_sync:brand-123"
    window_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)
