"""
Shopify Fact Models

Stores data pulled from the Shopify Admin REST API, scoped per brand.
`date` is the record's created_at day in the report timezone.
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, JSON, Index, UniqueConstraint

from brandsync.models.base import Base
from brandsync.utils.helpers import utcnow


class ShopifyOrder(Base):
    """
    Shopify orders

    Synced from GET /admin/api/{version}/orders.json?status=any
    """
    __tablename__ = "shopify_orders"
    __table_args__ = (
        UniqueConstraint("brand_id", "order_id", name="uq_shopify_orders_brand_order"),
        Index("ix_shopify_orders_brand_date", "brand_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    order_id = Column(String, nullable=False)  # Shopify's order ID
    order_number = Column(Integer, nullable=True)

    customer_id = Column(String, index=True, nullable=True)

    # Status
    financial_status = Column(String, nullable=True)  # paid, pending, refunded, partially_refunded
    fulfillment_status = Column(String, nullable=True)

    # Amounts (store currency)
    currency = Column(String, nullable=True)
    total_price = Column(Float, default=0)
    subtotal_price = Column(Float, default=0)
    total_tax = Column(Float, default=0)
    total_discounts = Column(Float, default=0)
    line_item_count = Column(Integer, default=0)

    source_name = Column(String, nullable=True)  # web, pos, ...
    discount_codes = Column(JSON, nullable=True)  # ["SUMMER10", ...]

    date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=True)  # Shopify created_at (UTC)
    updated_at = Column(DateTime, nullable=True)

    synced_at = Column(DateTime, default=utcnow, nullable=False)


class ShopifyCustomer(Base):
    """Shopify customers, dated by account creation"""
    __tablename__ = "shopify_customers"
    __table_args__ = (
        UniqueConstraint("brand_id", "customer_id", name="uq_shopify_customers_brand_customer"),
        Index("ix_shopify_customers_brand_date", "brand_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    customer_id = Column(String, nullable=False)

    email = Column(String, nullable=True)
    state = Column(String, nullable=True)  # enabled, disabled, invited
    accepts_marketing = Column(Integer, default=0)
    orders_count = Column(Integer, default=0)
    total_spent = Column(Float, default=0)

    date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    synced_at = Column(DateTime, default=utcnow, nullable=False)


class ShopifyProduct(Base):
    """Shopify products, dated by product creation"""
    __tablename__ = "shopify_products"
    __table_args__ = (
        UniqueConstraint("brand_id", "product_id", name="uq_shopify_products_brand_product"),
        Index("ix_shopify_products_brand_date", "brand_id", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    brand_id = Column(String, nullable=False)
    product_id = Column(String, nullable=False)

    title = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    status = Column(String, nullable=True)  # active, archived, draft
    variant_count = Column(Integer, default=0)
    total_inventory = Column(Integer, default=0)
    min_price = Column(Float, nullable=True)

    date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    synced_at = Column(DateTime, default=utcnow, nullable=False)
