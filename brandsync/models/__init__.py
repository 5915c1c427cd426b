"""Database models for the brandsync service"""

from brandsync.models.connection import PlatformConnection, Platform, ConnectionStatus

from brandsync.models.sync_job import (
    SyncJob,
    JobStatus,
    JobPhase,
    SyncReason,
    build_job_key
)

from brandsync.models.sync_status import SyncStatus, SyncPhase

from brandsync.models.meta import (
    MetaAdInsight,
    MetaDemographic,
    MetaDevicePerformance
)

from brandsync.models.shopify import (
    ShopifyOrder,
    ShopifyCustomer,
    ShopifyProduct
)

from brandsync.models.throttle import RequestThrottleCounter

__all__ = [
    "PlatformConnection",
    "Platform",
    "ConnectionStatus",
    "SyncJob",
    "JobStatus",
    "JobPhase",
    "SyncReason",
    "build_job_key",
    "SyncStatus",
    "SyncPhase",
    "MetaAdInsight",
    "MetaDemographic",
    "MetaDevicePerformance",
    "ShopifyOrder",
    "ShopifyCustomer",
    "ShopifyProduct",
    "RequestThrottleCounter",
]
