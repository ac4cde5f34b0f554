#!/usr/bin/env python3
"""
CLI Interface for the Listing Harvest Pipeline

Provides commands for:
- Collecting listings (full, incremental, quick, single complex, tile poll)
- Discovering complexes from the region hierarchy
- Ingesting the government transaction feed
- Resolving complexes to transaction names
- Scoring bargains
- Viewing run history
- Running the scheduler as a daemon

Usage:
    python harvest_cli.py collect --mode quick
    python harvest_cli.py discover --sido 서울
    python harvest_cli.py transactions --incremental
    python harvest_cli.py resolve --strategy fingerprint
    python harvest_cli.py score --dry-run
    python harvest_cli.py history
    python harvest_cli.py daemon

Exit status is 1 when a run could not start (lock held, missing
credentials, unknown target, no browser session) and 0 otherwise.
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv
from supabase import create_client, Client

from harvest_config import CollectMode, CollectorConfig, RunKind, get_config
from harvest_services.collection_orchestrator import CollectionOrchestrator
from harvest_services.errors import CollectorSetupError, MissingCredentialError
from harvest_services.scheduler_service import SchedulerService

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    'completed': '✅',
    'partial': '⚠️',
    'failed': '❌',
    'running': '🔄',
}


def setup_logging(config: CollectorConfig) -> None:
    """Log to the console and to the configured log file."""
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file)
        ]
    )


def get_supabase_client() -> Client:
    """Create and return a Supabase client."""
    url = os.getenv('SUPABASE_URL')
    # Writes need the service role key; the anon key works for read-only commands
    key = os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_ANON_KEY')

    if not url or not key:
        raise MissingCredentialError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_ANON_KEY) environment variables required"
        )

    return create_client(url, key)


def create_orchestrator(supabase: Client) -> CollectionOrchestrator:
    return CollectionOrchestrator(supabase, get_config())


def _header(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print()


def _results(status: Optional[str] = None) -> None:
    print("\n" + "-" * 60)
    print("RESULTS:")
    print("-" * 60)
    if status:
        print(f"Status: {STATUS_ICONS.get(status, '❓')} {status}")


async def cmd_collect(args):
    """Collect listings for stored complexes."""
    _header(f"COLLECTING LISTINGS ({args.mode})")

    orchestrator = create_orchestrator(get_supabase_client())
    result = await orchestrator.run_collect(
        args.mode,
        resume=args.resume,
        limit=args.limit,
        hscp_no=args.hscp,
        region=args.region,
        refresh_cells=args.refresh_cells,
    )

    _results(result.status)
    print(f"Duration: {result.duration_seconds:.1f} seconds")
    if result.quick:
        q = result.quick
        print(f"Quick Check: {q.checked} checked, {q.mismatched} count changes, "
              f"{q.stale} stale, {q.errors} errors")
    if result.poll:
        p = result.poll
        print(f"Tile Poll: {p.cells_scanned}/{p.cells_total} cells scanned "
              f"({p.cells_skipped_cached} skipped by cache, {p.cells_failed} failed)")
        print(f"New Listings: {p.new_articles} in {len(p.complex_names)} complexes "
              f"({len(p.unmapped)} unmapped)")
    c = result.counts
    print(f"Complexes Scanned: {result.processed}/{result.targets}")
    print(f"Listings Found: {c.found}")
    print(f"New: {c.new}")
    print(f"Updated: {c.updated}")
    print(f"Unchanged: {c.unchanged}")
    print(f"Removed: {c.removed}")
    print(f"Price Changes: {c.price_changed}")
    print(f"Bargains Detected: {c.bargains_detected}")
    print(f"Skipped: {result.skipped} ({result.exhausted} hit the page cap)")
    print(f"Errors: {result.errors}")
    if result.limiter_summary:
        print(f"Rate Limiter: {result.limiter_summary}")
    print()


async def cmd_discover(args):
    """Discover complexes from the region hierarchy."""
    _header("DISCOVERING COMPLEXES" + (" (dry run)" if args.dry_run else ''))

    orchestrator = create_orchestrator(get_supabase_client())
    result = await orchestrator.run_discover(sido=args.sido, resume=args.resume, dry_run=args.dry_run)

    _results()
    print(f"Regions: {result.sido} top-level, {result.sigungu} sub-regions, {result.dongs} sub-districts")
    print(f"Sub-districts Processed: {result.processed}")
    print(f"Complexes Found: {result.found}")
    print(f"New: {result.new}")
    print(f"Updated: {result.updated}")
    print(f"Deactivated: {result.deactivated}")
    print(f"Errors: {result.errors}")
    if not result.complete:
        print("Partial pass: no complexes were deactivated")
    if result.failed_regions:
        print("\nFailed regions:")
        for code in result.failed_regions:
            print(f"  - {code}")
    print()


async def cmd_transactions(args):
    """Ingest the government transaction feed."""
    _header("COLLECTING TRANSACTIONS" + (" (incremental)" if args.incremental else ''))

    orchestrator = create_orchestrator(get_supabase_client())
    result = await orchestrator.run_transactions(
        months=args.months,
        incremental=args.incremental,
        sgg=args.sgg,
        resume=args.resume,
    )

    _results()
    print(f"Tasks: {result.completed}/{result.tasks}")
    print(f"Records Fetched: {result.fetched}")
    print(f"New: {result.inserted}")
    print(f"Duplicates: {result.duplicates}")
    print(f"Errors: {result.errors}")
    print(f"API Calls: {result.api_calls}")
    if result.limit_reached:
        print("\n⚠️  Daily API limit reached; run with --resume tomorrow")
    print()


async def cmd_resolve(args):
    """Resolve complexes to transaction names."""
    _header(f"RESOLVING COMPLEXES ({args.strategy})" + (" (dry run)" if args.dry_run else ''))

    orchestrator = create_orchestrator(get_supabase_client())
    result = await orchestrator.run_resolve(
        strategy=args.strategy,
        dry_run=args.dry_run,
        resume=args.resume,
        limit=args.limit,
        hscp_no=args.hscp,
        reset=args.reset,
    )

    _results()
    print(f"Complexes: {result.targets}")
    print(f"Matched: {result.matched}")
    print(f"Unresolved: {result.unresolved}")
    if hasattr(result, 'no_samples'):
        print(f"No Samples: {result.no_samples}")
    print(f"Errors: {result.errors}")
    print(f"Transactions Linked: {result.backfilled_transactions}")
    if hasattr(result, 'strategies'):
        print("\nBy strategy:")
        for name, count in result.strategies.items():
            print(f"  {name:<12} {count}")
    if args.dry_run and result.matches:
        print("\nMatches:")
        for match in result.matches[:50]:
            print(f"  {' | '.join(str(part) for part in match)}")
    print()


async def cmd_score(args):
    """Score active sale listings."""
    _header("SCORING BARGAINS" + (" (dry run)" if args.dry_run else ''))

    orchestrator = create_orchestrator(get_supabase_client())
    result = await orchestrator.run_score(dry_run=args.dry_run, top_n=args.top)

    _results()
    print(f"Listings Scored: {result.scored}")
    print(f"Committed: {'yes' if result.committed else 'no'}")
    print(f"Price Detections: {result.detections_inserted}")
    print("\nScore distribution:")
    for bucket, count in result.distribution.items():
        print(f"  {bucket:<8} {count}")
    print("\nBargain types:")
    for bargain_type, count in sorted(result.type_counts.items()):
        print(f"  {bargain_type:<8} {count}")
    if result.top:
        print(f"\nTop {len(result.top)}:")
        print(f"  {'Article':<12} {'Total':<6} {'Cplx':<5} {'Tx':<5} {'Drops':<6} {'Mag':<5} {'Type':<8}")
        for s in result.top:
            print(f"  {s.article_id:<12} {s.total:<6} {s.complex:<5} {s.tx:<5} {s.drops:<6} "
                  f"{s.magnitude:<5} {s.bargain_type:<8}")
    print()


async def cmd_history(args):
    """Show run history."""
    print("\n" + "=" * 60)
    print("RUN HISTORY")
    print("=" * 60)

    orchestrator = create_orchestrator(get_supabase_client())
    history = await orchestrator.history(args.kind, args.limit)

    if not history:
        print("\nNo runs found.")
        return

    print(f"\nShowing {len(history)} most recent runs:")
    print("-" * 90)
    print(f"{'Kind':<14} {'Started':<20} {'Status':<14} {'Processed':<12} {'New':<8} {'Errors':<8}")
    print("-" * 90)
    for run in history:
        started = (run.get('started_at') or '')[:19].replace('T', ' ')
        status = run.get('status', 'unknown')
        processed = f"{run.get('processed') or 0}/{run.get('total_targets') or 0}"
        icon = STATUS_ICONS.get(status, '❓')
        print(f"{run.get('run_type', '?'):<14} {started:<20} {icon} {status:<11} {processed:<12} "
              f"{run.get('articles_new') or 0:<8} {run.get('errors') or 0:<8}")
    print("-" * 90)
    print()


async def cmd_run_daemon(args):
    """Run the scheduler as a continuous daemon."""
    config = get_config()
    interval = args.interval or config.schedule.check_interval_seconds

    print("\n" + "=" * 60)
    print("STARTING HARVEST DAEMON")
    print("=" * 60)
    print(f"Check Interval: {interval} seconds")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("\nPress Ctrl+C to stop...")
    print()

    supabase = get_supabase_client()
    scheduler = SchedulerService(supabase, config, create_orchestrator(supabase))
    await scheduler.run_continuous(check_interval_seconds=interval)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Listing Harvest Pipeline CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s collect --mode full                 Scan every active complex
  %(prog)s collect --mode full --resume        Continue an interrupted full scan
  %(prog)s collect --mode quick                Rescan complexes whose counts changed
  %(prog)s collect --mode single --hscp 1234   Scan one complex
  %(prog)s collect --mode poll --region 서울    Poll map tiles for new listings
  %(prog)s discover --sido 서울 --dry-run       Count complexes without writing
  %(prog)s transactions --months 24            Ingest two years of sales
  %(prog)s transactions --incremental          Ingest the most recent months
  %(prog)s resolve --strategy fingerprint      Resolve by transaction fingerprints
  %(prog)s score --dry-run --top 30            Show the top 30 without committing
  %(prog)s history --kind collect --limit 20   Show the last 20 collect runs
  %(prog)s daemon --interval 600               Run as daemon, check every 10 minutes
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Collect command
    collect_parser = subparsers.add_parser('collect', help='Collect listings for stored complexes')
    collect_parser.add_argument('--mode', choices=[m.value for m in CollectMode], default=CollectMode.FULL.value,
                                help='Collection mode (default: full)')
    collect_parser.add_argument('--resume', action='store_true', help='Continue after the last checkpoint')
    collect_parser.add_argument('--limit', type=int, help='Maximum number of complexes')
    collect_parser.add_argument('--hscp', help='Complex id for single mode')
    collect_parser.add_argument('--region', help='Region name filter for poll mode')
    collect_parser.add_argument('--refresh-cells', action='store_true', help='Rebuild the active-cell cache (poll mode)')
    collect_parser.set_defaults(func=cmd_collect)

    # Discover command
    discover_parser = subparsers.add_parser('discover', help='Discover complexes from the region hierarchy')
    discover_parser.add_argument('--sido', help='Only walk top-level regions whose name contains this')
    discover_parser.add_argument('--resume', action='store_true', help='Continue after the last checkpoint')
    discover_parser.add_argument('--dry-run', action='store_true', help='Count complexes without writing')
    discover_parser.set_defaults(func=cmd_discover)

    # Transactions command
    tx_parser = subparsers.add_parser('transactions', help='Ingest the government transaction feed')
    window = tx_parser.add_mutually_exclusive_group()
    window.add_argument('--months', type=int, help='Number of months back (default from config)')
    window.add_argument('--incremental', action='store_true', help='Only the most recent months')
    tx_parser.add_argument('--sgg', help='Single administrative code (5 digits)')
    tx_parser.add_argument('--resume', action='store_true', help='Continue after the last checkpoint')
    tx_parser.set_defaults(func=cmd_transactions)

    # Resolve command
    resolve_parser = subparsers.add_parser('resolve', help='Resolve complexes to transaction names')
    resolve_parser.add_argument('--strategy', choices=['names', 'fingerprint'], default='names',
                                help='Name cascade or transaction fingerprints (default: names)')
    resolve_parser.add_argument('--dry-run', action='store_true', help='Report matches without writing')
    resolve_parser.add_argument('--resume', action='store_true', help='Continue after the last checkpoint')
    resolve_parser.add_argument('--limit', type=int, help='Maximum number of complexes')
    resolve_parser.add_argument('--hscp', help='Resolve a single complex')
    resolve_parser.add_argument('--reset', action='store_true', help='Clear existing resolutions first (fingerprint)')
    resolve_parser.set_defaults(func=cmd_resolve)

    # Score command
    score_parser = subparsers.add_parser('score', help='Score active sale listings')
    score_parser.add_argument('--dry-run', action='store_true', help='Compute scores without committing')
    score_parser.add_argument('--top', type=int, default=20, help='Number of top listings to show')
    score_parser.set_defaults(func=cmd_score)

    # History command
    history_parser = subparsers.add_parser('history', help='Show run history')
    history_parser.add_argument('--kind', choices=[k.value for k in RunKind], help='Filter by run kind')
    history_parser.add_argument('--limit', type=int, default=20, help='Number of records to show')
    history_parser.set_defaults(func=cmd_history)

    # Daemon command
    daemon_parser = subparsers.add_parser('daemon', help='Run as continuous daemon')
    daemon_parser.add_argument('--interval', type=int, help='Check interval in seconds')
    daemon_parser.set_defaults(func=cmd_run_daemon)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    setup_logging(get_config())

    try:
        asyncio.run(args.func(args))
    except CollectorSetupError as e:
        print(f"\n❌ {e}")
        logger.error(f"{args.command} could not start: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nStopped by user.")
    except Exception as e:
        # The run ledger already recorded the failure
        print(f"\n❌ {args.command} failed: {e}")
        logger.exception(f"{args.command} error")
    return 0


if __name__ == '__main__':
    sys.exit(main())
