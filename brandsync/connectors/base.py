"""
Base Connector Class

All platform connectors inherit from this base class.
Provides the HTTP request loop: explicit timeouts, classification of failed
responses into the sync error taxonomy, and in-job retry of throttled requests
with jittered exponential backoff.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx

from brandsync.config import get_settings
from brandsync.errors import SyncError, RateLimited, TotalFetchFailure
from brandsync.utils.logger import log
from brandsync.utils.retry import RetryStats, calculate_backoff


class BaseConnector(ABC):
    """
    Base class for platform connectors

    Subclasses implement:
    - fetch(): page through one entity for a date range, returning raw records
    - normalize(): map one raw record onto its fact table columns
    - classify_error(): map a non-2xx response to a SyncError
    """

    ENTITIES: Tuple[str, ...] = ()

    def __init__(
        self,
        source_name: str,
        brand_id: str,
        access_token: str,
        settings=None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            source_name: Platform name (meta, shopify)
            brand_id: Brand the fetched rows belong to
            access_token: Platform credential
            settings: Settings override (defaults to get_settings())
            transport: httpx transport override, used by tests
        """
        self.source_name = source_name
        self.brand_id = brand_id
        self.access_token = access_token
        self.settings = settings or get_settings()
        self.transport = transport

        self.request_count = 0
        self.retry_stats = RetryStats()

    @abstractmethod
    async def fetch(self, entity: str, start: date, end: date) -> List[Dict[str, Any]]:
        """Fetch every raw record of an entity for [start, end], following pagination"""
        pass

    @abstractmethod
    def normalize(self, entity: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Map a raw record to fact table columns. Raises on malformed input."""
        pass

    @abstractmethod
    def classify_error(self, response: httpx.Response) -> SyncError:
        """Map a failed response to a sync error"""
        pass

    def _headers(self) -> Dict[str, str]:
        return {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds,
            transport=self.transport,
            headers=self._headers(),
        )

    def check_entity(self, entity: str):
        if entity not in self.ENTITIES:
            raise TotalFetchFailure(f"{self.source_name} has no entity '{entity}'", retryable=False)

    async def _request(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        GET with rate limit retry.

        Throttled responses are retried up to rate_limit_max_retries times
        (Retry-After honoured up to the backoff cap); every other failure is
        raised straight away as its classified SyncError.
        """
        max_retries = self.settings.rate_limit_max_retries

        for attempt in range(1, max_retries + 2):
            try:
                response = await client.get(url, params=params)
            except httpx.TimeoutException as e:
                raise TotalFetchFailure(f"{self.source_name} request timed out: {e.__class__.__name__}")
            except httpx.TransportError as e:
                raise TotalFetchFailure(f"{self.source_name} network error: {e}")
            finally:
                self.request_count += 1

            if response.is_success:
                self.retry_stats.mark_success()
                return response

            error = self.classify_error(response)
            if not isinstance(error, RateLimited) or attempt > max_retries:
                self.retry_stats.record_attempt(error)
                raise error

            delay = calculate_backoff(
                attempt,
                base_delay=self.settings.rate_limit_base_delay,
                max_delay=self.settings.rate_limit_max_delay
            )
            if error.retry_after is not None:
                delay = min(max(delay, error.retry_after), self.settings.rate_limit_max_delay)

            self.retry_stats.record_attempt(error, delay)
            log.warning(
                f"{self.source_name} rate limited for {self.brand_id} "
                f"(attempt {attempt}/{max_retries + 1}), retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        # Loop always returns or raises
        raise TotalFetchFailure(f"{self.source_name} retries exhausted")

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.source_name,
            "brand_id": self.brand_id,
            "requests": self.request_count,
            "retry_stats": self.retry_stats.to_dict(),
        }
