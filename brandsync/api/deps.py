"""
Shared request dependencies
"""
import secrets
from typing import Optional

import httpx
from fastapi import Header, HTTPException

from brandsync.config import get_settings
from brandsync.utils.logger import log


def verify_cron_secret(authorization: Optional[str] = Header(None)):
    """Cron invoker must send Authorization: Bearer <cron_secret>."""
    expected = get_settings().cron_secret
    if not expected:
        log.error("Cron request rejected: CRON_SECRET is not configured")
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")

    if not secrets.compare_digest(authorization[len("Bearer "):], expected):
        log.warning("Cron request rejected: invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_http_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for platform API calls. None means the default network transport."""
    return None
