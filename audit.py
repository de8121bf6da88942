#!/usr/bin/env python3
"""
audit.py - Catalog validation sweep

Re-validates every entity against TMDb, moves it along the status lattice,
applies safe auto-fixes, re-scores images and reports duplicate groups.

Safety:
- DRY RUN is the DEFAULT (must pass --apply to write anything)
- Destructive fixes (purge, clearing placeholder images) additionally need
  --destructive
- Every write is preceded by a before/after diff
- Ctrl-C stops after the chunk in flight; that chunk still persists

Exit code: 0 on a clean run (flagged-for-review records are normal),
1 if any entity hit an unrecoverable error or the config is unusable.

Usage:
    python audit.py                                  # dry run over the whole catalog
    python audit.py --limit 200 --batch-size 50      # first 200 entities
    python audit.py --apply                          # apply transitions + safe fixes
    python audit.py --apply --destructive            # also purge / clear placeholders
    python audit.py --apply --auto-merge --min-confidence 0.9
"""

import sys
import signal
import logging
import argparse
from pathlib import Path

from catalog.audit_engine import AuditEngine, AuditOptions
from catalog.config import load_config
from catalog.errors import ConfigError
from catalog.identity_gate import GateOptions, IdentityGate
from catalog.merge_engine import MergeEngine
from catalog.models import AuditReport
from catalog.store import CatalogStore, MergeLog
from catalog.tmdb import TMDbClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def print_report(report: AuditReport, apply: bool):
    """Print summary statistics"""
    print("\n" + "=" * 60)
    if apply:
        print("AUDIT SUMMARY")
    else:
        print("DRY RUN SUMMARY (nothing was written)")
    print("=" * 60)
    print(f"  Audited:             {report.validated:5d}")
    print(f"  Verified:            {len(report.verified):5d}")
    print(f"  Unverified:          {len(report.unverified):5d}")
    print(f"  Needs rework:        {len(report.needs_rework):5d}")
    print(f"  Rejected:            {len(report.rejected):5d}")
    print(f"  Purged:              {len(report.purged):5d}")
    print(f"  Purge proposals:     {len(report.purge_proposals):5d}")
    print(f"  Duplicate groups:    {len(report.duplicates_found):5d}")
    print(f"  Fixes {'applied' if apply else 'proposed'}:       "
          f"{sum(1 for f in report.fixes if f.applied or not apply):5d}")
    print(f"  Retryable errors:    {len(report.errors) - len(report.unrecoverable_errors):5d}")
    print(f"  Errors:              {len(report.unrecoverable_errors):5d}")
    print(f"  Writes:              {report.writes:5d}")
    if report.cancelled:
        print("  (cancelled before the end of the catalog)")
    print("=" * 60)

    if report.purge_proposals:
        print("\nProposed purges (need --apply --destructive):")
        for entity_id in report.purge_proposals:
            print(f"  {entity_id}")

    if report.duplicates_found:
        print("\nDuplicate groups (review with merge.py):")
        for group in report.duplicates_found[:20]:
            print(f"  {group.confidence:.2f}  {group.suggested_name!r}  {', '.join(group.entity_ids)}")
        if len(report.duplicates_found) > 20:
            print(f"  ... {len(report.duplicates_found) - 20} more")

    for error in report.unrecoverable_errors:
        print(f"\nERROR {error.entity_id}: {error.kind}: {error.message}")

    if not apply:
        print("\nTo write changes, run again with --apply")


def main():
    parser = argparse.ArgumentParser(
        description='Validate catalog entities and propose or apply fixes',
        epilog="""
SAFETY: Defaults to a dry run. --apply writes; --destructive allows purges.

Examples:
  python audit.py
  python audit.py --limit 100 --check-urls
  python audit.py --apply --auto-merge
        """
    )
    parser.add_argument('--config', type=Path, default=Path('config_external.yaml'),
                        help='Configuration file (default: config_external.yaml)')
    parser.add_argument('--apply', action='store_true',
                        help='Write status transitions and safe fixes (default is dry-run)')
    parser.add_argument('--dry-run', action='store_true', default=True,
                        help='Show what would be done without writing (default)')
    parser.add_argument('--destructive', action='store_true',
                        help='Also apply purges and placeholder clearing (requires --apply)')
    parser.add_argument('--limit', type=int, default=None,
                        help='Audit at most N entities')
    parser.add_argument('--offset', type=int, default=0,
                        help='Skip the first N entities (id order)')
    parser.add_argument('--batch-size', type=int, default=None,
                        help='Entities read from the store per batch')
    parser.add_argument('--chunk-size', type=int, default=None,
                        help='Entities validated concurrently per chunk')
    parser.add_argument('--workers', type=int, default=None,
                        help='Worker threads for lookups')
    parser.add_argument('--check-urls', action='store_true',
                        help='Check image URLs are reachable (slow, network)')
    parser.add_argument('--language', default=None,
                        help='Reject movies whose original language differs (ISO 639-1)')
    parser.add_argument('--no-duplicates', action='store_true',
                        help='Skip duplicate detection')
    parser.add_argument('--auto-merge', action='store_true',
                        help='Merge duplicate groups at or above --min-confidence')
    parser.add_argument('--min-confidence', type=float, default=None,
                        help='Auto-merge confidence floor (default: from config, 0.9)')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging')

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.destructive and not args.apply:
        logger.warning("--destructive has no effect without --apply; running a dry run")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    store = CatalogStore(config.catalog_path)
    source = TMDbClient(config.tmdb_api_key, config.cache_path)
    gate = IdentityGate(source, config.gate)
    engine = AuditEngine(store, gate, config)

    # Ctrl-C: finish the chunk in flight, then stop
    def handle_interrupt(signum, frame):
        logger.warning("Interrupt received, stopping after the current chunk")
        engine.cancel()
    signal.signal(signal.SIGINT, handle_interrupt)

    print("\n" + "=" * 60)
    print("APPLYING CHANGES" if args.apply else "DRY RUN MODE - nothing will be written")
    print(f"Catalog: {config.catalog_path} ({len(store)} entities)")
    print("=" * 60 + "\n")

    options = AuditOptions(
        batch_size=args.batch_size,
        chunk_size=args.chunk_size,
        workers=args.workers,
        limit=args.limit,
        offset=args.offset,
        apply=args.apply,
        allow_destructive=args.apply and args.destructive,
        check_reachability=args.check_urls,
        detect_duplicates=not args.no_duplicates,
        gate_options=GateOptions(required_language=args.language),
    )
    report = engine.run_audit(options)
    print_report(report, args.apply)

    if args.auto_merge and report.duplicates_found:
        merger = MergeEngine(store, MergeLog(config.merge_log_path), config.merge, config.matching)
        outcome = merger.auto_merge(args.min_confidence, dry_run=not args.apply,
                                    groups=report.duplicates_found)
        print(f"\nAuto-merge: {len(outcome.merged)} {'merged' if args.apply else 'would merge'}, "
              f"{len(outcome.ambiguous)} routed for review, {len(outcome.failed)} failed (retry next sweep)")

    stats = source.get_cache_stats()
    logger.info(f"TMDb cache: {stats['hits']} hits, {stats['misses']} misses, "
                f"{stats['rate_limited']} rate-limited responses")

    return 0 if not report.unrecoverable_errors else 1


if __name__ == '__main__':
    sys.exit(main())
