#!/usr/bin/env python3
"""
Full Historical Sync Script

Triggers a historical (or repair) sync for one brand/platform and drains the
queue from the command line until every job for it is settled.

Usage:
    python scripts/full_sync.py --brand acme --platform meta
    python scripts/full_sync.py --brand acme --platform shopify --days 730 --chunk-days 14
    python scripts/full_sync.py --brand acme --platform meta --reason repair
"""
import argparse
import asyncio
import sys
from datetime import date, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from brandsync.config import get_settings
from brandsync.models.base import SessionLocal, init_db
from brandsync.models.sync_job import SyncReason
from brandsync.services.progress import ProgressAggregator
from brandsync.services.sync_pipeline import SyncPipeline
from brandsync.utils.helpers import yesterday


def print_header(text):
    print(f"\n{'='*70}")
    print(f"  {text}")
    print('='*70)


async def run_full_sync(args) -> int:
    settings = get_settings()
    if args.chunk_days:
        settings = settings.model_copy(update={"chunk_days": args.chunk_days})

    init_db()
    db = SessionLocal()
    try:
        pipeline = SyncPipeline(db, settings)

        if args.reason == SyncReason.REPAIR:
            # Gap detection picks its own window unless one is given
            start, end = args.start, args.end
        else:
            end = args.end or yesterday()
            start = args.start or (end - timedelta(days=args.days - 1) if args.days else None)

        print_header(f"{args.reason.upper()} SYNC: {args.brand} / {args.platform}")
        result = pipeline.trigger(
            args.brand,
            args.platform,
            reason=args.reason,
            start=start,
            end=end,
            entities=args.entities,
            force=args.force or None,
        )
        print(f"  Jobs created: {len(result.jobs_created)}, already queued/done: {len(result.jobs_existing)}")

        rounds = 0
        while True:
            rounds += 1
            summary = await pipeline.drain(max_jobs=args.batch, deadline_seconds=args.deadline)
            status = ProgressAggregator(db).recompute(args.brand, args.platform)
            print(
                f"  Round {rounds}: {summary.succeeded}/{summary.processed} succeeded, "
                f"{summary.failed} failed, {summary.released} released -> "
                f"{status.percent_complete:.1f}% ({status.phase})"
            )
            for error in summary.errors:
                print(f"    ! job {error.get('job_id')}: {error.get('error')}")

            if summary.processed == 0:
                # Nothing claimable: done, waiting on backoff, or connection expired
                if status.pending_jobs and not args.wait:
                    print(f"  {status.pending_jobs} jobs pending (backoff or inactive connection), stopping")
                    break
                if not status.pending_jobs and not status.running_jobs:
                    break
                await asyncio.sleep(max(args.wait, 5))

        print_header(f"DONE: {status.percent_complete:.1f}% complete, phase {status.phase}")
        for failed in status.failed_ranges or []:
            print(f"  FAILED {failed['entity']} {failed['range_start']} -> {failed['range_end']}: {failed['error_kind']}")
        return 0 if status.failed_jobs == 0 else 1
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(
        description="Trigger and drain a sync for one brand/platform",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--brand", required=True, help="Brand id")
    parser.add_argument("--platform", required=True, choices=["meta", "shopify"])
    parser.add_argument("--reason", default=SyncReason.MANUAL, choices=list(SyncReason.ALL))
    parser.add_argument("--days", type=int, help="Days back from yesterday (default: historical_days)")
    parser.add_argument("--start", type=date.fromisoformat, help="Start date YYYY-MM-DD")
    parser.add_argument("--end", type=date.fromisoformat, help="End date YYYY-MM-DD")
    parser.add_argument("--entities", nargs="+", help="Entities to sync (default: all)")
    parser.add_argument("--chunk-days", type=int, help="Override chunk size")
    parser.add_argument("--force", action="store_true", help="Re-run completed ranges")
    parser.add_argument("--batch", type=int, default=10, help="Jobs per drain round")
    parser.add_argument("--deadline", type=float, default=300.0, help="Seconds per drain round")
    parser.add_argument("--wait", type=float, default=0, help="Seconds to wait for backed-off jobs (0 = stop)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_full_sync(args)))


if __name__ == "__main__":
    main()
