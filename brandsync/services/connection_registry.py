"""
Connection Registry

Per-brand, per-platform credentials and the last-synced cursor.
"""
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from brandsync.models.connection import PlatformConnection, Platform, ConnectionStatus
from brandsync.models.sync_status import SyncStatus
from brandsync.services.fact_store import FactStore
from brandsync.services.job_ledger import JobLedger
from brandsync.utils.helpers import utcnow, mask_secret
from brandsync.utils.logger import log


def connection_to_dict(connection: PlatformConnection) -> dict:
    """API view of a connection, credential masked"""
    return {
        "brand_id": connection.brand_id,
        "platform": connection.platform,
        "account_id": connection.account_id,
        "status": connection.status,
        "access_token": mask_secret(connection.access_token),
        "last_error": connection.last_error,
        "last_synced_at": connection.last_synced_at.isoformat() if connection.last_synced_at else None,
        "last_synced_date": connection.last_synced_date.isoformat() if connection.last_synced_date else None,
        "created_at": connection.created_at.isoformat() if connection.created_at else None,
        "expired_at": connection.expired_at.isoformat() if connection.expired_at else None,
    }


class ConnectionRegistry:
    """Create, expire and revoke platform connections"""

    def __init__(self, db: Session):
        self.db = db

    def connect(self, brand_id: str, platform: str, access_token: str, account_id: str) -> PlatformConnection:
        """
        Register (or reactivate) the brand's connection after the OAuth callback.

        A reconnect replaces the credential in place, keeping the one-row-per-pair
        guarantee, and makes released jobs claimable again.
        """
        if platform not in Platform.ALL:
            raise ValueError(f"Unknown platform '{platform}'")

        connection = self.get(brand_id, platform)
        if connection is None:
            connection = PlatformConnection(brand_id=brand_id, platform=platform)
            self.db.add(connection)
            log.info(f"New {platform} connection for brand {brand_id}")
        else:
            log.info(f"Reactivating {platform} connection for brand {brand_id} (was {connection.status})")

        connection.access_token = access_token
        connection.account_id = account_id
        connection.status = ConnectionStatus.ACTIVE
        connection.last_error = None
        connection.expired_at = None
        self.db.commit()
        self.db.refresh(connection)
        return connection

    def get(self, brand_id: str, platform: str) -> Optional[PlatformConnection]:
        return self.db.execute(
            select(PlatformConnection).where(
                PlatformConnection.brand_id == brand_id,
                PlatformConnection.platform == platform,
            )
        ).scalar_one_or_none()

    def get_active(self, brand_id: str, platform: str) -> Optional[PlatformConnection]:
        connection = self.get(brand_id, platform)
        if connection is None or connection.status != ConnectionStatus.ACTIVE:
            return None
        return connection

    def list_for_brand(self, brand_id: str) -> List[PlatformConnection]:
        return list(self.db.execute(
            select(PlatformConnection)
            .where(PlatformConnection.brand_id == brand_id)
            .order_by(PlatformConnection.platform)
        ).scalars().all())

    def list_active(self, platform: Optional[str] = None) -> List[PlatformConnection]:
        stmt = select(PlatformConnection).where(PlatformConnection.status == ConnectionStatus.ACTIVE)
        if platform:
            stmt = stmt.where(PlatformConnection.platform == platform)
        return list(self.db.execute(stmt.order_by(PlatformConnection.brand_id)).scalars().all())

    def mark_expired(self, brand_id: str, platform: str, reason: str) -> Optional[PlatformConnection]:
        """The platform rejected the credential: stop claiming work until reconnect."""
        connection = self.get(brand_id, platform)
        if connection is None:
            return None

        connection.status = ConnectionStatus.EXPIRED
        connection.last_error = reason
        connection.expired_at = utcnow()
        self.db.commit()
        log.warning(f"{platform} connection for brand {brand_id} expired: {reason}")
        return connection

    def touch_synced(self, brand_id: str, platform: str, synced_through: date) -> Optional[PlatformConnection]:
        """Advance the last-synced cursor. The date cursor never moves backwards."""
        connection = self.get(brand_id, platform)
        if connection is None:
            return None

        connection.last_synced_at = utcnow()
        if connection.last_synced_date is None or synced_through > connection.last_synced_date:
            connection.last_synced_date = synced_through
        self.db.commit()
        return connection

    def disconnect(self, brand_id: str, platform: str) -> Optional[Dict[str, int]]:
        """
        Revoke the connection and purge everything synced for it.

        Fact rows of every registered table, ledger rows and the status row for
        the (brand, platform) are deleted in one transaction, then the
        connection row itself.
        """
        connection = self.get(brand_id, platform)
        if connection is None:
            return None

        connection.status = ConnectionStatus.REVOKED
        self.db.flush()

        deleted = FactStore(self.db).purge(brand_id, platform)
        deleted["sync_jobs"] = JobLedger(self.db).purge(brand_id, platform)
        status_result = self.db.execute(
            delete(SyncStatus)
            .where(SyncStatus.brand_id == brand_id, SyncStatus.platform == platform)
            .execution_options(synchronize_session=False)
        )
        deleted["sync_status"] = status_result.rowcount or 0

        self.db.delete(connection)
        self.db.commit()

        log.info(f"Disconnected {platform} for brand {brand_id}: purged {deleted}")
        return deleted
