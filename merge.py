#!/usr/bin/env python3
"""
merge.py - Review and merge duplicate catalog records

Safety:
- DRY RUN is the DEFAULT (must pass --apply to actually merge)
- The preview and the real merge run the same planning code
- Only groups at or above --min-confidence are auto-merged; the rest are
  listed for review (--review asks about them one by one)
- Every merge writes an immutable merge log entry; --undo ENTRY reverses it
  while the touched records are unchanged

Usage:
    python merge.py                              # list candidate groups
    python merge.py --auto                       # preview auto-merge at 0.9
    python merge.py --auto --apply               # merge high-confidence groups
    python merge.py --group-of p-1a2b3c --name "Radhika" --apply
    python merge.py --review --apply             # confirm low-confidence groups by hand
    python merge.py --history p-1a2b3c           # merge log for a survivor
    python merge.py --undo 4f2c9a1b0d3e --apply
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List

from catalog.config import load_config
from catalog.errors import CatalogError, ConfigError
from catalog.merge_engine import CandidateOptions, MergeEngine
from catalog.models import DuplicateGroup, EntityKind, MergeResult
from catalog.store import CatalogStore, MergeLog

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def print_group(group: DuplicateGroup, store: CatalogStore):
    print(f"\n[{group.confidence:.2f}] suggested name: {group.suggested_name!r}")
    for entity_id in group.entity_ids:
        entity = store.find(entity_id)
        if entity is None:
            continue
        ext = entity.external_id or '-'
        print(f"    {entity_id:16s} {entity.name!r:30s} year={entity.year} ext={ext} "
              f"refs={len(entity.references)} status={entity.status.value}")
    for evidence in group.evidence:
        overlap = '-' if evidence.filmography_overlap is None else f"{evidence.filmography_overlap:.2f}"
        print(f"      {evidence.left} ~ {evidence.right}: score={evidence.score:.2f} "
              f"name={evidence.name_similarity:.2f} films={overlap} {','.join(evidence.signals)}")


def print_result(result: MergeResult):
    label = '[DRY RUN]' if result.dry_run else '[MERGED]'
    if result.error:
        print(f"[FAILED] {result.survivor_name!r}: {result.error}")
        return
    print(f"{label} {', '.join(result.absorbed_ids)} -> {result.survivor_id} '{result.survivor_name}'")
    for change in result.changes:
        print(f"    {change}")
    if result.log_entry and not result.dry_run:
        print(f"    log entry: {result.log_entry.entry_id}")


def print_stats(stats: dict, dry_run: bool):
    """Print summary statistics"""
    print("\n" + "=" * 60)
    if dry_run:
        print("DRY RUN SUMMARY (nothing was merged)")
    else:
        print("MERGE SUMMARY")
    print("=" * 60)
    print(f"  Candidate groups:    {stats['groups']:5d}")
    print(f"  {'Would merge' if dry_run else 'Merged'}:         {stats['merged']:5d}")
    print(f"  Routed for review:   {stats['ambiguous']:5d}")
    print(f"  Skipped by operator: {stats['skipped']:5d}")
    print(f"  Failed:              {stats['failed']:5d}")
    print("=" * 60)

    if dry_run:
        print("\nTo execute, run again with --apply")


def confirm(prompt: str) -> str:
    try:
        return input(prompt).strip().lower()
    except EOFError:
        return 'q'


def review(engine: MergeEngine, groups: List[DuplicateGroup], store: CatalogStore,
           dry_run: bool, stats: dict):
    """Ask about each group one at a time"""
    for group in groups:
        print_group(group, store)
        answer = confirm("Merge this group? [y/N/q] ")
        if answer == 'q':
            break
        if answer != 'y':
            stats['skipped'] += 1
            continue
        result = engine.merge(group, dry_run=dry_run)
        print_result(result)
        stats['failed' if result.error else 'merged'] += 1


def main():
    parser = argparse.ArgumentParser(
        description='Find and merge duplicate catalog records',
        epilog="""
SAFETY: Defaults to a dry run. You must pass --apply to actually merge.
        """
    )
    parser.add_argument('--config', type=Path, default=Path('config_external.yaml'),
                        help='Configuration file (default: config_external.yaml)')
    parser.add_argument('--apply', action='store_true',
                        help='Actually merge (default is dry-run)')
    parser.add_argument('--dry-run', action='store_true', default=True,
                        help='Show what would be done without merging (default)')
    parser.add_argument('--kind', choices=[k.value for k in EntityKind], default=None,
                        help='Only movies or only people')
    parser.add_argument('--min-confidence', type=float, default=None,
                        help='Auto-merge floor (default: from config, 0.9)')
    parser.add_argument('--auto', action='store_true',
                        help='Merge every group at or above the floor')
    parser.add_argument('--review', action='store_true',
                        help='Ask about groups below the floor one by one')
    parser.add_argument('--group-of', metavar='ENTITY_ID', default=None,
                        help='Merge the duplicate group containing this entity')
    parser.add_argument('--name', default=None,
                        help='Canonical name for the survivor (with --group-of)')
    parser.add_argument('--no-analytics', action='store_true',
                        help='Do not sum analytics counters into the survivor')
    parser.add_argument('--history', metavar='SURVIVOR_ID', default=None,
                        help='Show merge log entries for a survivor')
    parser.add_argument('--undo', metavar='ENTRY_ID', default=None,
                        help='Undo a merge by log entry id')
    parser.add_argument('--limit', type=int, default=None,
                        help='Only consider the N highest-confidence groups')

    args = parser.parse_args()
    dry_run = not args.apply

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    store = CatalogStore(config.catalog_path)
    merge_log = MergeLog(config.merge_log_path)
    engine = MergeEngine(store, merge_log, config.merge, config.matching)

    if args.history:
        entries = merge_log.entries_for(args.history)
        if not entries:
            print(f"No merges recorded for {args.history}")
        for entry in entries:
            print(f"{entry.timestamp}  {entry.action:5s}  {entry.entry_id}  "
                  f"absorbed={list(entry.absorbed_ids)} aliases={list(entry.absorbed_aliases)} "
                  f"affected={len(entry.affected_ids)}")
        return 0

    if args.undo:
        try:
            result = engine.undo(args.undo, dry_run=dry_run)
        except CatalogError as e:
            logger.error(f"Undo failed: {e}")
            return 1
        print_result(result)
        if dry_run:
            print("\nTo execute, run again with --apply")
        return 0

    kind = EntityKind(args.kind) if args.kind else None
    floor = config.merge.auto_merge_floor if args.min_confidence is None else args.min_confidence
    stats = {'groups': 0, 'merged': 0, 'ambiguous': 0, 'skipped': 0, 'failed': 0}

    if args.group_of:
        groups = engine.find_merge_candidates(CandidateOptions(kind=kind, entity_id=args.group_of))
        if not groups:
            logger.error(f"No duplicate group contains {args.group_of}")
            return 1
        stats['groups'] = 1
        result = engine.merge(groups[0], canonical_name=args.name, dry_run=dry_run,
                              preserve_analytics=not args.no_analytics)
        print_result(result)
        stats['failed' if result.error else 'merged'] += 1
        print_stats(stats, dry_run)
        return 0

    groups = engine.find_merge_candidates(CandidateOptions(kind=kind, limit=args.limit))
    stats['groups'] = len(groups)

    if args.auto:
        report = engine.auto_merge(floor, dry_run=dry_run, groups=groups)
        for result in report.merged + report.failed:
            print_result(result)
        stats['merged'] = len(report.merged)
        stats['failed'] = len(report.failed)
        stats['ambiguous'] = len(report.ambiguous)
        if args.review:
            review(engine, report.ambiguous, store, dry_run, stats)
    elif args.review:
        review(engine, [g for g in groups if g.confidence < floor], store, dry_run, stats)
    else:
        for group in groups:
            print_group(group, store)
        stats['ambiguous'] = sum(1 for g in groups if g.confidence < floor)

    print_stats(stats, dry_run)
    return 0


if __name__ == '__main__':
    sys.exit(main())
