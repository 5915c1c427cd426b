"""
Shopify Connector

Pulls orders, customers and products from the Shopify Admin REST API for one
shop. Records are selected by created_at, with day boundaries taken in the
report timezone, and dated by their created_at day in that timezone.
"""
from datetime import date, datetime, time as dt_time
from typing import Any, Dict, List, Optional

import httpx
import pytz
from dateutil import parser as date_parser

from brandsync.connectors.base import BaseConnector
from brandsync.errors import SyncError, AuthExpired, RateLimited, TotalFetchFailure
from brandsync.models.connection import Platform
from brandsync.utils.helpers import safe_float, safe_int
from brandsync.utils.logger import log
from brandsync.utils.retry import parse_retry_after

# entity -> (endpoint, response key)
ENDPOINTS = {
    "orders": ("orders.json", "orders"),
    "customers": ("customers.json", "customers"),
    "products": ("products.json", "products"),
}


class ShopifyConnector(BaseConnector):
    """
    Connector for Shopify Admin API

    Syncs orders, customers and products
    """

    ENTITIES = ("orders", "customers", "products")

    def __init__(self, brand_id: str, access_token: str, shop_domain: str, settings=None, transport=None):
        """
        Args:
            brand_id: Brand owning the shop
            access_token: Shopify Admin API access token
            shop_domain: Shop domain (e.g., "your-store.myshopify.com")
        """
        super().__init__(Platform.SHOPIFY, brand_id, access_token, settings=settings, transport=transport)

        self.shop_domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self.base_url = f"https://{self.shop_domain}/admin/api/{self.settings.shopify_api_version}"
        self.tz = pytz.timezone(self.settings.report_timezone)

    def _headers(self) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json"
        }

    async def fetch(self, entity: str, start: date, end: date) -> List[Dict[str, Any]]:
        self.check_entity(entity)
        endpoint, key = ENDPOINTS[entity]

        url = f"{self.base_url}/{endpoint}"
        params = {
            "created_at_min": self._day_start(start).isoformat(),
            "created_at_max": self._day_end(end).isoformat(),
            "limit": self.settings.shopify_page_limit,
        }
        if entity == "orders":
            params["status"] = "any"  # open, closed and cancelled

        records = []
        async with self._client() as client:
            while url:
                response = await self._request(client, url, params=params)
                records.extend(response.json().get(key, []))

                # Get next page from Link header
                url = self._get_next_page_url(response.headers.get("Link"))
                params = None  # Params are in the URL for subsequent pages

        log.debug(f"Shopify {self.shop_domain}: fetched {len(records)} {entity}")
        return records

    def _day_start(self, day: date) -> datetime:
        return self.tz.localize(datetime.combine(day, dt_time.min))

    def _day_end(self, day: date) -> datetime:
        return self.tz.localize(datetime.combine(day, dt_time(23, 59, 59)))

    def _get_next_page_url(self, link_header: Optional[str]) -> Optional[str]:
        """Parse the rel="next" URL from a Link header (cursor pagination)"""
        if not link_header:
            return None

        for link in link_header.split(","):
            parts = link.split(";")
            if len(parts) == 2 and 'rel="next"' in parts[1]:
                return parts[0].strip().strip("<>")

        return None

    def _timestamps(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """created_at day in the report timezone plus naive UTC timestamps"""
        created = date_parser.isoparse(record["created_at"])
        if created.tzinfo is None:
            created = pytz.utc.localize(created)
        updated = date_parser.isoparse(record["updated_at"]) if record.get("updated_at") else None
        if updated is not None and updated.tzinfo is None:
            updated = pytz.utc.localize(updated)

        return {
            "date": created.astimezone(self.tz).date(),
            "created_at": created.astimezone(pytz.utc).replace(tzinfo=None),
            "updated_at": updated.astimezone(pytz.utc).replace(tzinfo=None) if updated else None,
        }

    def normalize(self, entity: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if entity == "orders":
            customer = record.get("customer") or {}
            return {
                "brand_id": self.brand_id,
                "order_id": str(record["id"]),
                "order_number": record.get("order_number"),
                "customer_id": str(customer["id"]) if customer.get("id") else None,
                "financial_status": record.get("financial_status"),
                "fulfillment_status": record.get("fulfillment_status"),
                "currency": record.get("currency"),
                "total_price": safe_float(record.get("total_price")),
                "subtotal_price": safe_float(record.get("subtotal_price")),
                "total_tax": safe_float(record.get("total_tax")),
                "total_discounts": safe_float(record.get("total_discounts")),
                "line_item_count": len(record.get("line_items") or []),
                "source_name": record.get("source_name"),
                "discount_codes": [d.get("code") for d in record.get("discount_codes") or []],
                **self._timestamps(record),
            }

        if entity == "customers":
            return {
                "brand_id": self.brand_id,
                "customer_id": str(record["id"]),
                "email": record.get("email"),
                "state": record.get("state"),
                "accepts_marketing": 1 if record.get("accepts_marketing") else 0,
                "orders_count": safe_int(record.get("orders_count")),
                "total_spent": safe_float(record.get("total_spent")),
                **self._timestamps(record),
            }

        if entity == "products":
            variants = record.get("variants") or []
            prices = [safe_float(v.get("price")) for v in variants if v.get("price") is not None]
            return {
                "brand_id": self.brand_id,
                "product_id": str(record["id"]),
                "title": record.get("title"),
                "vendor": record.get("vendor"),
                "product_type": record.get("product_type"),
                "status": record.get("status"),
                "variant_count": len(variants),
                "total_inventory": sum(safe_int(v.get("inventory_quantity")) for v in variants),
                "min_price": min(prices) if prices else None,
                **self._timestamps(record),
            }

        raise ValueError(f"Unknown Shopify entity '{entity}'")

    def classify_error(self, response: httpx.Response) -> SyncError:
        status = response.status_code
        message = f"HTTP {status}"
        try:
            body = response.json()
        except ValueError:
            body = None  # HTML error pages from the edge
        if isinstance(body, dict) and body.get("errors"):
            message = f"HTTP {status}: {body['errors']}"

        if status in (401, 403):
            return AuthExpired(f"Shopify token rejected ({message})", http_status=status)

        if status == 429:
            return RateLimited(
                f"Shopify rate limit ({message})",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                http_status=status,
            )

        if status >= 500:
            return TotalFetchFailure(f"Shopify server error ({message})", http_status=status)

        return TotalFetchFailure(f"Shopify request rejected ({message})", http_status=status, retryable=False)
