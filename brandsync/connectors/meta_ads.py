"""
Meta Ads Connector

Pulls daily insights from the Graph API for one ad account:
- ad_insights: level=ad, one row per ad per day
- demographics: level=account, broken down by age and by gender
- device_performance: level=account, broken down by impression_device
"""
import json
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from dateutil import parser as date_parser

from brandsync.connectors.base import BaseConnector
from brandsync.errors import SyncError, AuthExpired, RateLimited, TotalFetchFailure
from brandsync.models.connection import Platform
from brandsync.utils.helpers import safe_float, safe_int
from brandsync.utils.logger import log
from brandsync.utils.retry import parse_retry_after

# Graph API throttling codes (app, user, page, ad account and BUC limits)
RATE_LIMIT_CODES = {4, 17, 32, 613} | set(range(80000, 80015))
RATE_LIMIT_SUBCODES = {2446079}
# Invalid/expired OAuth token, session expired
AUTH_ERROR_CODES = {190, 102}

INSIGHT_FIELDS = [
    "account_id", "campaign_id", "campaign_name", "adset_id", "adset_name",
    "ad_id", "ad_name", "spend", "impressions", "clicks", "reach",
    "inline_link_clicks", "frequency", "ctr", "cpc", "cpm",
    "actions", "action_values",
]
BREAKDOWN_FIELDS = ["account_id", "spend", "impressions", "clicks", "reach"]

DEMOGRAPHIC_BREAKDOWNS = ("age", "gender")
PURCHASE_ACTION_TYPES = ("purchase", "omni_purchase", "offsite_conversion.fb_pixel_purchase")


def _purchase_total(actions: Optional[List[Dict[str, Any]]], cast) -> Any:
    """First purchase-type action value (Meta reports the same purchases under several types)."""
    if not actions:
        return cast(0)
    by_type = {a.get("action_type"): a.get("value") for a in actions}
    for action_type in PURCHASE_ACTION_TYPES:
        if action_type in by_type:
            return cast(by_type[action_type])
    return cast(0)


class MetaAdsConnector(BaseConnector):
    """Connector for the Meta Marketing API insights edge"""

    ENTITIES = ("ad_insights", "demographics", "device_performance")

    def __init__(self, brand_id: str, access_token: str, account_id: str, settings=None, transport=None):
        super().__init__(Platform.META, brand_id, access_token, settings=settings, transport=transport)

        self.account_id = account_id if account_id.startswith("act_") else f"act_{account_id}"
        self.base_url = f"{self.settings.meta_graph_url.rstrip('/')}/{self.settings.meta_api_version}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def fetch(self, entity: str, start: date, end: date) -> List[Dict[str, Any]]:
        self.check_entity(entity)

        params = {
            "time_range": json.dumps({"since": start.isoformat(), "until": end.isoformat()}),
            "time_increment": 1,
            "limit": self.settings.meta_page_limit,
        }

        async with self._client() as client:
            if entity == "ad_insights":
                return await self._fetch_insights(client, {
                    **params, "level": "ad", "fields": ",".join(INSIGHT_FIELDS)
                })

            if entity == "device_performance":
                return await self._fetch_insights(client, {
                    **params,
                    "level": "account",
                    "fields": ",".join(BREAKDOWN_FIELDS),
                    "breakdowns": "impression_device",
                })

            # One request per breakdown type to avoid age x gender cross products
            records = []
            for breakdown in DEMOGRAPHIC_BREAKDOWNS:
                rows = await self._fetch_insights(client, {
                    **params,
                    "level": "account",
                    "fields": ",".join(BREAKDOWN_FIELDS),
                    "breakdowns": breakdown,
                })
                for row in rows:
                    row["_breakdown_type"] = breakdown
                records.extend(rows)
            return records

    async def _fetch_insights(self, client: httpx.AsyncClient, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Follow paging.next until exhausted"""
        url = f"{self.base_url}/{self.account_id}/insights"
        records = []
        pages = 0

        while url:
            response = await self._request(client, url, params=params)
            payload = response.json()
            records.extend(payload.get("data", []))
            pages += 1

            url = (payload.get("paging") or {}).get("next")
            params = None  # Cursor and filters are embedded in the next URL

        log.debug(f"Meta {self.account_id}: fetched {len(records)} rows in {pages} pages")
        return records

    def normalize(self, entity: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row_date = date_parser.isoparse(record["date_start"]).date()
        account_id = str(record.get("account_id") or self.account_id.replace("act_", ""))
        metrics = {
            "spend": safe_float(record.get("spend")),
            "impressions": safe_int(record.get("impressions")),
            "clicks": safe_int(record.get("clicks")),
            "reach": safe_int(record.get("reach")),
        }

        if entity == "ad_insights":
            return {
                "brand_id": self.brand_id,
                "account_id": account_id,
                "campaign_id": record.get("campaign_id"),
                "campaign_name": record.get("campaign_name"),
                "adset_id": record.get("adset_id"),
                "adset_name": record.get("adset_name"),
                "ad_id": str(record["ad_id"]),
                "ad_name": record.get("ad_name"),
                "date": row_date,
                **metrics,
                "link_clicks": safe_int(record.get("inline_link_clicks")),
                "purchases": _purchase_total(record.get("actions"), safe_int),
                "purchase_value": _purchase_total(record.get("action_values"), safe_float),
                "frequency": safe_float(record.get("frequency"), None),
                "ctr": safe_float(record.get("ctr"), None),
                "cpc": safe_float(record.get("cpc"), None),
                "cpm": safe_float(record.get("cpm"), None),
                "actions": record.get("actions"),
            }

        if entity == "demographics":
            breakdown_type = record["_breakdown_type"]
            return {
                "brand_id": self.brand_id,
                "account_id": account_id,
                "date": row_date,
                "breakdown_type": breakdown_type,
                "breakdown_value": str(record[breakdown_type]),
                **metrics,
            }

        if entity == "device_performance":
            return {
                "brand_id": self.brand_id,
                "account_id": account_id,
                "date": row_date,
                "device": str(record["impression_device"]),
                **metrics,
            }

        raise ValueError(f"Unknown Meta entity '{entity}'")

    def classify_error(self, response: httpx.Response) -> SyncError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}

        code = error.get("code")
        subcode = error.get("error_subcode")
        message = error.get("message") or f"HTTP {status}"

        if code in AUTH_ERROR_CODES or status in (401, 403):
            return AuthExpired(f"Meta token rejected: {message}", http_status=status, platform_code=code)

        if code in RATE_LIMIT_CODES or subcode in RATE_LIMIT_SUBCODES or status == 429:
            return RateLimited(
                f"Meta rate limit: {message}",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                http_status=status,
                platform_code=code,
            )

        if status >= 500:
            return TotalFetchFailure(f"Meta server error: {message}", http_status=status, platform_code=code)

        return TotalFetchFailure(
            f"Meta request rejected: {message}",
            http_status=status,
            platform_code=code,
            retryable=False,
        )
