#!/usr/bin/env python3
"""
Data Freshness Audit Script

Prints row counts, newest data date, lag and gap counts for every entity of
every active connection. Flags entities that are stale or have gaps.
Read-only unless --repair is given.

Usage:
    python scripts/audit_freshness.py
    python scripts/audit_freshness.py --brand acme
    python scripts/audit_freshness.py --json      # machine-readable output
    python scripts/audit_freshness.py --repair    # enqueue repair jobs for gaps
"""
import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from brandsync.models.base import SessionLocal, init_db
from brandsync.services.connection_registry import ConnectionRegistry
from brandsync.services.fact_store import FactStore, entities_for, gap_entities_for
from brandsync.services.gap_detector import GapDetector, GapReport
from brandsync.services.progress import ProgressAggregator
from brandsync.utils.helpers import utcnow, yesterday

# Newest data older than this many days behind yesterday is stale
STALE_AFTER_DAYS = 2


def run_audit(brand_id=None, repair=False):
    init_db()
    db = SessionLocal()
    results = []

    try:
        facts = FactStore(db)
        detector = GapDetector(db)
        expected_latest = yesterday()

        for connection in ConnectionRegistry(db).list_active():
            if brand_id and connection.brand_id != brand_id:
                continue

            checked = gap_entities_for(connection.platform)
            for entity in entities_for(connection.platform):
                rows = facts.count(connection.brand_id, connection.platform, entity)
                if entity in checked:
                    report = detector.detect(connection.brand_id, connection.platform, entity, enqueue=repair)
                else:
                    # Snapshot tables: freshness only, no per-day expectation
                    report = GapReport(connection.brand_id, connection.platform, entity, expected_latest, expected_latest)
                    report.earliest_data_date, report.latest_data_date = facts.date_bounds(
                        connection.brand_id, connection.platform, entity
                    )

                if report.latest_data_date is None:
                    lag_days = None
                    status = "EMPTY"
                else:
                    lag_days = (expected_latest - report.latest_data_date).days
                    status = "STALE" if lag_days > STALE_AFTER_DAYS else "OK"
                if status == "OK" and report.gaps:
                    status = "GAPS"

                results.append({
                    "brand_id": connection.brand_id,
                    "platform": connection.platform,
                    "entity": entity,
                    "rows": rows,
                    "latest_date": report.latest_data_date.isoformat() if report.latest_data_date else None,
                    "lag_days": lag_days,
                    "gap_ranges": len(report.gaps),
                    "missing_days": report.missing_days,
                    "anomalous_days": len(report.anomalous_days),
                    "jobs_enqueued": len(report.jobs_enqueued),
                    "status": status,
                })

            if repair:
                ProgressAggregator(db).recompute(connection.brand_id, connection.platform)
    finally:
        db.close()

    return results


def print_report(results):
    now = utcnow()
    print(f"\n{'='*100}")
    print(f"  DATA FRESHNESS AUDIT  {now.strftime('%Y-%m-%d %H:%M:%S')} UTC")
    print(f"{'='*100}\n")

    header = (
        f"{'Brand':<20} {'Platform':<9} {'Entity':<20} {'Rows':>8} {'Latest':>11} "
        f"{'Lag':>5} {'Gaps':>5} {'Missing':>8} {'Status':>7}"
    )
    print(header)
    print("-" * len(header))

    flagged = 0
    for r in results:
        lag_str = str(r["lag_days"]) if r["lag_days"] is not None else "N/A"
        marker = ""
        if r["status"] != "OK":
            flagged += 1
            marker = " <<"
        print(
            f"{r['brand_id']:<20} {r['platform']:<9} {r['entity']:<20} {r['rows']:>8} "
            f"{r['latest_date'] or '-':>11} {lag_str:>5} {r['gap_ranges']:>5} {r['missing_days']:>8} "
            f"{r['status']:>7}{marker}"
        )

    print(f"\n{'='*100}")
    if flagged == 0:
        print("  All entities are fresh.")
    else:
        print(f"  {flagged} entities are STALE, EMPTY or have GAPS.")
    print(f"{'='*100}\n")


def main():
    parser = argparse.ArgumentParser(description="Report data freshness and coverage gaps")
    parser.add_argument("--brand", help="Only audit this brand")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--repair", action="store_true", help="Enqueue repair jobs for gaps found")
    args = parser.parse_args()

    results = run_audit(brand_id=args.brand, repair=args.repair)

    if args.json:
        flagged = [r for r in results if r["status"] != "OK"]
        print(json.dumps({
            "checked_at": utcnow().isoformat(),
            "all_fresh": len(flagged) == 0,
            "flagged_count": len(flagged),
            "entities": results,
        }, indent=2))
    else:
        print_report(results)


if __name__ == "__main__":
    main()
