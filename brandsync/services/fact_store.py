"""
Fact Store

Registry of fact tables per platform and the upsert/coverage queries on them.
Writes are idempotent upserts on each table's natural key (last write wins).
"""
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from brandsync.config import get_settings
from brandsync.models.connection import Platform
from brandsync.models.meta import MetaAdInsight, MetaDemographic, MetaDevicePerformance
from brandsync.models.shopify import ShopifyOrder, ShopifyCustomer, ShopifyProduct
from brandsync.utils.helpers import chunk_list, utcnow
from brandsync.utils.logger import log

# Bump when a table is added, removed or its natural key changes
FACT_TABLES_VERSION = 1


@dataclass(frozen=True)
class FactTableSpec:
    platform: str
    entity: str
    model: type
    conflict_columns: Tuple[str, ...]
    metric_columns: Tuple[str, ...]
    # A day whose metrics all sum to zero is treated as stale data
    zero_is_anomalous: bool = False
    # Every day is expected to have rows; only these tables are gap-checked
    daily_coverage: bool = True

    @property
    def table_name(self) -> str:
        return self.model.__tablename__


FACT_TABLES: Dict[Tuple[str, str], FactTableSpec] = {
    (spec.platform, spec.entity): spec
    for spec in (
        FactTableSpec(
            Platform.META, "ad_insights", MetaAdInsight,
            conflict_columns=("brand_id", "ad_id", "date"),
            metric_columns=("spend", "impressions", "clicks", "reach"),
            zero_is_anomalous=True,
        ),
        FactTableSpec(
            Platform.META, "demographics", MetaDemographic,
            conflict_columns=("brand_id", "account_id", "date", "breakdown_type", "breakdown_value"),
            metric_columns=("spend", "impressions", "clicks", "reach"),
            zero_is_anomalous=True,
        ),
        FactTableSpec(
            Platform.META, "device_performance", MetaDevicePerformance,
            conflict_columns=("brand_id", "account_id", "date", "device"),
            metric_columns=("spend", "impressions", "clicks", "reach"),
            zero_is_anomalous=True,
        ),
        FactTableSpec(
            Platform.SHOPIFY, "orders", ShopifyOrder,
            conflict_columns=("brand_id", "order_id"),
            metric_columns=("total_price", "line_item_count"),
        ),
        FactTableSpec(
            Platform.SHOPIFY, "customers", ShopifyCustomer,
            conflict_columns=("brand_id", "customer_id"),
            metric_columns=("orders_count", "total_spent"),
            daily_coverage=False,
        ),
        FactTableSpec(
            Platform.SHOPIFY, "products", ShopifyProduct,
            conflict_columns=("brand_id", "product_id"),
            metric_columns=("variant_count", "total_inventory"),
            daily_coverage=False,
        ),
    )
}


def get_fact_table(platform: str, entity: str) -> FactTableSpec:
    spec = FACT_TABLES.get((platform, entity))
    if spec is None:
        raise ValueError(f"Unknown entity '{entity}' for platform '{platform}'")
    return spec


def entities_for(platform: str) -> List[str]:
    """Entities synced for a platform, in registry order."""
    if platform not in Platform.ALL:
        raise ValueError(f"Unknown platform '{platform}'")
    return [entity for (p, entity) in FACT_TABLES if p == platform]


def gap_entities_for(platform: str) -> List[str]:
    """Entities with one or more rows expected for every day."""
    return [entity for entity in entities_for(platform) if FACT_TABLES[(platform, entity)].daily_coverage]


@dataclass
class UpsertResult:
    written: int = 0
    failed: int = 0


class FactStore:
    """Upserts normalized rows and answers coverage questions"""

    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or get_settings()

    def upsert(self, platform: str, entity: str, rows: List[dict]) -> UpsertResult:
        """
        Upsert rows in batches on the table's natural key.

        Rows sharing a key inside one batch collapse to the last one. A batch
        rejected by the database is retried row by row so one bad record does
        not sink the others.
        """
        spec = get_fact_table(platform, entity)
        result = UpsertResult()
        if not rows:
            return result

        now = utcnow()
        for batch in chunk_list(rows, self.settings.upsert_batch_size):
            deduped = {}
            for row in batch:
                key = tuple(row[c] for c in spec.conflict_columns)
                deduped[key] = {**row, "synced_at": now}
            values = list(deduped.values())

            try:
                self.db.execute(self._upsert_statement(spec, values))
                self.db.commit()
                result.written += len(values)
            except SQLAlchemyError as e:
                self.db.rollback()
                log.warning(f"Batch upsert into {spec.table_name} failed ({e.__class__.__name__}), retrying row by row")
                for value in values:
                    try:
                        self.db.execute(self._upsert_statement(spec, [value]))
                        self.db.commit()
                        result.written += 1
                    except SQLAlchemyError as row_error:
                        self.db.rollback()
                        result.failed += 1
                        log.error(
                            f"Failed to store {spec.table_name} row "
                            f"{dict((c, value.get(c)) for c in spec.conflict_columns)}: {row_error}"
                        )

        return result

    def _upsert_statement(self, spec: FactTableSpec, values: List[dict]):
        table = spec.model.__table__
        if self.db.get_bind().dialect.name == "postgresql":
            insert_stmt = pg_insert(table).values(values)
        else:
            insert_stmt = sqlite_insert(table).values(values)

        update_columns = [
            name for name in values[0]
            if name not in spec.conflict_columns and name != "id"
        ]
        return insert_stmt.on_conflict_do_update(
            index_elements=list(spec.conflict_columns),
            set_={name: insert_stmt.excluded[name] for name in update_columns},
        )

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    def dates_with_data(self, brand_id: str, platform: str, entity: str, start: date, end: date) -> Set[date]:
        """Days in [start, end] with at least one row."""
        model = get_fact_table(platform, entity).model
        rows = self.db.execute(
            select(model.date)
            .where(model.brand_id == brand_id, model.date >= start, model.date <= end)
            .distinct()
        ).scalars().all()
        return set(rows)

    def anomalous_dates(self, brand_id: str, platform: str, entity: str, start: date, end: date) -> Set[date]:
        """Days that have rows but whose metrics all sum to zero."""
        spec = get_fact_table(platform, entity)
        if not spec.zero_is_anomalous:
            return set()

        model = spec.model
        metric_total = sum(
            func.coalesce(func.sum(getattr(model, column)), 0)
            for column in spec.metric_columns
        )
        rows = self.db.execute(
            select(model.date)
            .where(model.brand_id == brand_id, model.date >= start, model.date <= end)
            .group_by(model.date)
            .having(metric_total == 0)
        ).scalars().all()
        return set(rows)

    def date_bounds(self, brand_id: str, platform: str, entity: str) -> Tuple[Optional[date], Optional[date]]:
        """Earliest and latest data date stored for the entity."""
        model = get_fact_table(platform, entity).model
        earliest, latest = self.db.execute(
            select(func.min(model.date), func.max(model.date)).where(model.brand_id == brand_id)
        ).one()
        return earliest, latest

    def count(self, brand_id: str, platform: str, entity: str) -> int:
        model = get_fact_table(platform, entity).model
        return self.db.execute(
            select(func.count()).select_from(model).where(model.brand_id == brand_id)
        ).scalar_one()

    def purge(self, brand_id: str, platform: str) -> Dict[str, int]:
        """Delete the brand's rows from every registered table of the platform."""
        deleted = {}
        for spec in FACT_TABLES.values():
            if spec.platform != platform:
                continue
            result = self.db.execute(
                delete(spec.model)
                .where(spec.model.brand_id == brand_id)
                .execution_options(synchronize_session=False)
            )
            deleted[spec.table_name] = result.rowcount or 0
        return deleted
