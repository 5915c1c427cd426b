"""brandsync - Meta Ads / Shopify sync and backfill service"""

__version__ = "1.0.0"
