"""
Request Throttle

Fixed-window counters kept in the database so every stateless instance sees
the same budget. One atomic upsert per hit.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from brandsync.models.throttle import RequestThrottleCounter
from brandsync.utils.helpers import utcnow
from brandsync.utils.logger import log

EPOCH = datetime(1970, 1, 1)


@dataclass
class ThrottleDecision:
    allowed: bool
    count: int
    limit: int
    reset_at: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(int((self.reset_at - utcnow()).total_seconds()), 0)


def window_start_for(now: datetime, window_seconds: int) -> datetime:
    elapsed = int((now - EPOCH).total_seconds())
    return EPOCH + timedelta(seconds=elapsed - elapsed % window_seconds)


class RequestThrottle:
    """Per-key request budget"""

    def __init__(self, db: Session):
        self.db = db

    def hit(self, key: str, limit: int, window_seconds: int, now: Optional[datetime] = None) -> ThrottleDecision:
        """Count one request for key and say whether it is within limit."""
        now = now or utcnow()
        window_start = window_start_for(now, window_seconds)
        table = RequestThrottleCounter.__table__

        if self.db.get_bind().dialect.name == "postgresql":
            insert_stmt = pg_insert(table)
        else:
            insert_stmt = sqlite_insert(table)
        stmt = (
            insert_stmt.values(key=key, window_start=window_start, count=1)
            .on_conflict_do_update(
                index_elements=[table.c.key, table.c.window_start],
                set_={"count": table.c.count + 1},
            )
            .returning(table.c.count)
        )
        count = self.db.execute(stmt).scalar_one()
        self.db.commit()

        decision = ThrottleDecision(
            allowed=count <= limit,
            count=count,
            limit=limit,
            reset_at=window_start + timedelta(seconds=window_seconds),
        )
        if not decision.allowed:
            log.warning(f"Throttled {key}: {count}/{limit} in window starting {window_start}")
        return decision

    def prune(self, before: datetime) -> int:
        """Delete counters for windows that started before the given time."""
        result = self.db.execute(
            delete(RequestThrottleCounter).where(RequestThrottleCounter.window_start < before)
        )
        self.db.commit()
        return result.rowcount or 0
