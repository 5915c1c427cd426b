"""Platform connectors for brandsync"""

from brandsync.connectors.base import BaseConnector
from brandsync.connectors.meta_ads import MetaAdsConnector
from brandsync.connectors.shopify import ShopifyConnector
from brandsync.models.connection import Platform


def get_connector(connection, settings=None, transport=None) -> BaseConnector:
    """Build the connector for a PlatformConnection row"""
    if connection.platform == Platform.META:
        return MetaAdsConnector(
            connection.brand_id, connection.access_token, connection.account_id,
            settings=settings, transport=transport
        )
    if connection.platform == Platform.SHOPIFY:
        return ShopifyConnector(
            connection.brand_id, connection.access_token, connection.account_id,
            settings=settings, transport=transport
        )
    raise ValueError(f"No connector for platform '{connection.platform}'")


__all__ = [
    "BaseConnector",
    "MetaAdsConnector",
    "ShopifyConnector",
    "get_connector"
]
