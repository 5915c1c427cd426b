"""
Fact store: natural-key upserts, coverage queries and purge.
"""
from datetime import date, datetime

import pytest
from sqlalchemy import select

from brandsync.models.connection import Platform
from brandsync.models.meta import MetaAdInsight
from brandsync.models.shopify import ShopifyOrder
from brandsync.services.fact_store import (
    FACT_TABLES, FactStore, entities_for, get_fact_table,
)

from conftest import make_settings


def insight(ad_id="ad-1", day=date(2024, 1, 1), brand_id="brand-a", spend=10.0, impressions=100, **extra):
    row = {
        "brand_id": brand_id,
        "account_id": "111",
        "ad_id": ad_id,
        "date": day,
        "spend": spend,
        "impressions": impressions,
        "clicks": 5,
        "reach": 80,
    }
    row.update(extra)
    return row


def order(order_id="1001", day=date(2024, 1, 1), brand_id="brand-a", total=50.0):
    return {
        "brand_id": brand_id,
        "order_id": order_id,
        "date": day,
        "created_at": datetime.combine(day, datetime.min.time()),
        "total_price": total,
        "line_item_count": 2,
    }


# ── Registry ─────────────────────────────────────────────────────


class TestRegistry:

    def test_every_platform_has_entities(self):
        assert entities_for(Platform.META) == ["ad_insights", "demographics", "device_performance"]
        assert entities_for(Platform.SHOPIFY) == ["orders", "customers", "products"]

    def test_unknown_entity(self):
        with pytest.raises(ValueError):
            get_fact_table(Platform.META, "orders")

    def test_unknown_platform(self):
        with pytest.raises(ValueError):
            entities_for("tiktok")

    def test_only_meta_tables_treat_zero_days_as_anomalous(self):
        anomalous = {key for key, spec in FACT_TABLES.items() if spec.zero_is_anomalous}
        assert {platform for platform, _ in anomalous} == {Platform.META}


# ── Upsert ───────────────────────────────────────────────────────


class TestUpsert:

    def test_rewrite_updates_in_place(self, db, settings):
        store = FactStore(db, settings)
        store.upsert(Platform.META, "ad_insights", [insight(spend=10.0)])
        store.upsert(Platform.META, "ad_insights", [insight(spend=25.5)])

        rows = db.execute(select(MetaAdInsight)).scalars().all()
        assert len(rows) == 1
        assert rows[0].spend == 25.5
        assert rows[0].synced_at is not None

    def test_duplicate_key_in_one_batch_keeps_last(self, db, settings):
        store = FactStore(db, settings)
        result = store.upsert(Platform.META, "ad_insights", [insight(spend=1.0), insight(spend=2.0)])

        assert result.written == 1
        assert db.execute(select(MetaAdInsight.spend)).scalar_one() == 2.0

    def test_batches_respect_batch_size(self, db):
        store = FactStore(db, make_settings(upsert_batch_size=3))
        rows = [insight(ad_id=f"ad-{i}") for i in range(10)]

        result = store.upsert(Platform.META, "ad_insights", rows)

        assert result.written == 10
        assert store.count("brand-a", Platform.META, "ad_insights") == 10

    def test_bad_row_does_not_sink_the_batch(self, db, settings):
        store = FactStore(db, settings)
        rows = [order("1"), {**order("2"), "date": None}, order("3")]

        result = store.upsert(Platform.SHOPIFY, "orders", rows)

        assert result.written == 2
        assert result.failed == 1
        ids = db.execute(select(ShopifyOrder.order_id).order_by(ShopifyOrder.order_id)).scalars().all()
        assert ids == ["1", "3"]

    def test_brands_do_not_collide(self, db, settings):
        store = FactStore(db, settings)
        store.upsert(Platform.SHOPIFY, "orders", [order("1", brand_id="brand-a"), order("1", brand_id="brand-b")])

        assert store.count("brand-a", Platform.SHOPIFY, "orders") == 1
        assert store.count("brand-b", Platform.SHOPIFY, "orders") == 1

    def test_empty_input(self, db, settings):
        result = FactStore(db, settings).upsert(Platform.META, "ad_insights", [])
        assert (result.written, result.failed) == (0, 0)


# ── Coverage ─────────────────────────────────────────────────────


class TestCoverage:

    def test_dates_with_data(self, db, settings):
        store = FactStore(db, settings)
        store.upsert(Platform.META, "ad_insights", [
            insight(day=date(2024, 1, 1)),
            insight(ad_id="ad-2", day=date(2024, 1, 1)),
            insight(day=date(2024, 1, 3)),
            insight(day=date(2024, 2, 1)),
        ])

        days = store.dates_with_data("brand-a", Platform.META, "ad_insights", date(2024, 1, 1), date(2024, 1, 31))
        assert days == {date(2024, 1, 1), date(2024, 1, 3)}

    def test_all_zero_meta_day_is_anomalous(self, db, settings):
        store = FactStore(db, settings)
        store.upsert(Platform.META, "ad_insights", [
            insight(ad_id="ad-1", day=date(2024, 1, 1), spend=0, impressions=0, clicks=0, reach=0),
            insight(ad_id="ad-2", day=date(2024, 1, 1), spend=0, impressions=0, clicks=0, reach=0),
            insight(ad_id="ad-1", day=date(2024, 1, 2), spend=0, impressions=0, clicks=1, reach=0),
        ])

        anomalous = store.anomalous_dates("brand-a", Platform.META, "ad_insights", date(2024, 1, 1), date(2024, 1, 2))
        assert anomalous == {date(2024, 1, 1)}

    def test_shopify_days_never_anomalous(self, db, settings):
        store = FactStore(db, settings)
        store.upsert(Platform.SHOPIFY, "orders", [order(total=0.0)])

        assert store.anomalous_dates("brand-a", Platform.SHOPIFY, "orders", date(2024, 1, 1), date(2024, 1, 1)) == set()

    def test_date_bounds(self, db, settings):
        store = FactStore(db, settings)
        assert store.date_bounds("brand-a", Platform.META, "ad_insights") == (None, None)

        store.upsert(Platform.META, "ad_insights", [insight(day=date(2024, 1, 5)), insight(day=date(2024, 3, 1))])
        assert store.date_bounds("brand-a", Platform.META, "ad_insights") == (date(2024, 1, 5), date(2024, 3, 1))


# ── Purge ────────────────────────────────────────────────────────


def test_purge_only_touches_one_brand_and_platform(db, settings):
    store = FactStore(db, settings)
    store.upsert(Platform.META, "ad_insights", [insight(brand_id="brand-a"), insight(brand_id="brand-b")])
    store.upsert(Platform.SHOPIFY, "orders", [order(brand_id="brand-a")])

    deleted = store.purge("brand-a", Platform.META)
    db.commit()

    assert deleted["meta_ad_insights"] == 1
    assert set(deleted) == {spec.table_name for spec in FACT_TABLES.values() if spec.platform == Platform.META}
    assert store.count("brand-a", Platform.META, "ad_insights") == 0
    assert store.count("brand-b", Platform.META, "ad_insights") == 1
    assert store.count("brand-a", Platform.SHOPIFY, "orders") == 1
