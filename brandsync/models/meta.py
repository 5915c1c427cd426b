"""
Meta Ads Fact Models

Daily rows pulled from the Graph API insights edge.
Natural keys are enforced with unique constraints so re-syncs upsert in place.
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, JSON, Index, UniqueConstraint

from brandsync.models.base import Base
from brandsync.utils.helpers import utcnow


class MetaAdInsight(Base):
    """
    Ad-level daily performance

    Synced from GET /{act_id}/insights?level=ad&time_increment=1
    """
    __tablename__ = "meta_ad_insights"
    __table_args__ = (
        UniqueConstraint("brand_id", "ad_id", "date", name="uq_meta_ad_insights_brand_ad_date"),
        Index("ix_meta_ad_insights_brand_date", "brand_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    account_id = Column(String, nullable=False)

    # Hierarchy
    campaign_id = Column(String, index=True)
    campaign_name = Column(String)
    adset_id = Column(String)
    adset_name = Column(String)
    ad_id = Column(String, nullable=False)
    ad_name = Column(String)

    date = Column(Date, nullable=False)

    # Metrics
    spend = Column(Float, default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    reach = Column(Integer, default=0)
    link_clicks = Column(Integer, default=0)
    purchases = Column(Integer, default=0)
    purchase_value = Column(Float, default=0)

    # Platform-computed ratios (stored as reported)
    frequency = Column(Float, nullable=True)
    ctr = Column(Float, nullable=True)
    cpc = Column(Float, nullable=True)
    cpm = Column(Float, nullable=True)

    actions = Column(JSON, nullable=True)  # Raw actions array

    synced_at = Column(DateTime, default=utcnow, nullable=False)


class MetaDemographic(Base):
    """
    Account-level daily performance by audience segment

    breakdown_type: age, gender. breakdown_value: "25-34", "female", ...
    """
    __tablename__ = "meta_demographics"
    __table_args__ = (
        UniqueConstraint(
            "brand_id", "account_id", "date", "breakdown_type", "breakdown_value",
            name="uq_meta_demographics_natural_key"
        ),
        Index("ix_meta_demographics_brand_date", "brand_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    account_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)

    breakdown_type = Column(String, nullable=False)
    breakdown_value = Column(String, nullable=False)

    spend = Column(Float, default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    reach = Column(Integer, default=0)

    synced_at = Column(DateTime, default=utcnow, nullable=False)


class MetaDevicePerformance(Base):
    """Account-level daily performance by impression device"""
    __tablename__ = "meta_device_performance"
    __table_args__ = (
        UniqueConstraint("brand_id", "account_id", "date", "device", name="uq_meta_device_natural_key"),
        Index("ix_meta_device_performance_brand_date", "brand_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    account_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    device = Column(String, nullable=False)  # iphone, android_smartphone, desktop, ...

    spend = Column(Float, default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    reach = Column(Integer, default=0)

    synced_at = Column(DateTime, default=utcnow, nullable=False)
