"""
Platform connection endpoints

Called by the OAuth callback (register) and the brand settings page
(list, disconnect).
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from brandsync.errors import InvalidRange
from brandsync.models.base import get_db
from brandsync.models.connection import Platform
from brandsync.models.sync_job import SyncReason
from brandsync.services.connection_registry import ConnectionRegistry, connection_to_dict
from brandsync.services.sync_pipeline import SyncPipeline

router = APIRouter(prefix="/connections", tags=["connections"])


class ConnectionCreate(BaseModel):
    brand_id: str
    platform: str
    access_token: str
    account_id: str
    start_sync: bool = True


@router.post("")
def register_connection(payload: ConnectionCreate, db: Session = Depends(get_db)):
    """Store (or refresh) the credential and kick off the historical sync."""
    if payload.platform not in Platform.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown platform '{payload.platform}'")

    connection = ConnectionRegistry(db).connect(
        payload.brand_id, payload.platform, payload.access_token, payload.account_id
    )

    sync = None
    if payload.start_sync:
        try:
            sync = SyncPipeline(db).trigger(payload.brand_id, payload.platform, reason=SyncReason.RECONNECT)
        except (InvalidRange, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "connection": connection_to_dict(connection),
        "sync": sync.to_dict() if sync else None,
    }


@router.get("/{brand_id}")
def list_connections(brand_id: str, db: Session = Depends(get_db)):
    connections = ConnectionRegistry(db).list_for_brand(brand_id)
    return {
        "brand_id": brand_id,
        "connections": [connection_to_dict(c) for c in connections],
    }


@router.delete("/{brand_id}/{platform}")
def disconnect(brand_id: str, platform: str, db: Session = Depends(get_db)):
    """Revoke the connection and delete everything synced through it."""
    if platform not in Platform.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown platform '{platform}'")

    deleted = ConnectionRegistry(db).disconnect(brand_id, platform)
    if deleted is None:
        raise HTTPException(status_code=404, detail=f"No {platform} connection for brand {brand_id}")

    return {"success": True, "deleted": deleted}
