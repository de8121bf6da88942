#!/usr/bin/env python3
"""
score_visuals.py - Visual confidence report for catalog images

Scores every entity's image (tier 1 trusted / tier 2 archival / tier 3
placeholder or unknown), attaches archive cards to tier 3 records and
prints the tier distribution by decade and by reason.

Safety:
- DRY RUN is the DEFAULT (must pass --apply to write tier metadata)
- Never adds, guesses or replaces an image URL

Usage:
    python score_visuals.py
    python score_visuals.py --check-urls --kind movie
    python score_visuals.py --apply --export-csv output/visual_tiers.csv
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Optional

import pandas as pd

from catalog import autofix
from catalog.config import load_config
from catalog.errors import CatalogError, ConfigError
from catalog.models import Entity, EntityKind
from catalog.store import CatalogStore
from catalog.visual import score_visual

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def decade_label(year: Optional[int]) -> str:
    if not year:
        return 'unknown'
    return f"{(year // 10) * 10}s"


def build_frame(rows: List[dict]) -> pd.DataFrame:
    columns = ['id', 'kind', 'name', 'year', 'decade', 'tier', 'confidence',
               'visual_type', 'reason', 'source', 'archive_reason', 'url']
    return pd.DataFrame(rows, columns=columns)


def score_catalog(entities: List[Entity], store: CatalogStore, config, apply: bool,
                  check_urls: bool) -> tuple:
    """Score every entity; returns (rows, changed, written)"""
    rows = []
    changed = written = 0

    for entity in entities:
        if entity.status.terminal:
            continue
        original_version = entity.version
        result = score_visual(entity.image, config.visual, check_urls)
        fixes = autofix.refresh_visual(entity, result)

        rows.append({
            'id': entity.id,
            'kind': entity.kind.value,
            'name': entity.name,
            'year': entity.year,
            'decade': decade_label(entity.year),
            'tier': result.tier,
            'confidence': result.confidence,
            'visual_type': result.visual_type.value,
            'reason': result.reason,
            'source': result.source or '',
            'archive_reason': entity.archive_card.reason.value if entity.archive_card else '',
            'url': entity.image.url or '',
        })

        if not fixes:
            continue
        changed += 1
        label = '[APPLY]' if apply else '[DRY RUN]'
        print(f"{label} {entity.id} '{entity.name}': tier {result.tier} ({result.reason})")
        if apply:
            try:
                store.update(entity, expected_version=original_version)
                written += 1
            except CatalogError as e:
                logger.warning(f"Skipped {entity.id}: {e}")

    return rows, changed, written


def print_report(df: pd.DataFrame, changed: int, written: int, apply: bool):
    print("\n" + "=" * 60)
    print("VISUAL CONFIDENCE REPORT")
    print("=" * 60)
    if df.empty:
        print("  No entities to score")
        print("=" * 60)
        return

    print("\nBy tier:")
    by_tier = df.groupby('tier').agg(count=('id', 'size'), mean_confidence=('confidence', 'mean'))
    for tier, row in by_tier.iterrows():
        print(f"  Tier {tier}: {int(row['count']):5d}  (mean confidence {row['mean_confidence']:.2f})")

    print("\nBy decade (rows) and tier (columns):")
    print(pd.crosstab(df['decade'], df['tier']).to_string())

    print("\nTier 3 reasons:")
    tier3 = df[df['tier'] == 3]
    for reason, count in tier3['reason'].value_counts().items():
        print(f"  {reason:24s} {count:5d}")

    print("\n" + "-" * 60)
    print(f"  Records whose tier metadata changed: {changed}")
    if apply:
        print(f"  Written: {written}")
    print("=" * 60)
    if not apply and changed:
        print("\nTo write tier metadata, run again with --apply")


def main():
    parser = argparse.ArgumentParser(
        description='Score catalog images into visual confidence tiers',
        epilog="SAFETY: Defaults to a dry run. Image URLs are never modified."
    )
    parser.add_argument('--config', type=Path, default=Path('config_external.yaml'),
                        help='Configuration file (default: config_external.yaml)')
    parser.add_argument('--apply', action='store_true',
                        help='Write tier metadata and archive cards (default is dry-run)')
    parser.add_argument('--kind', choices=[k.value for k in EntityKind], default=None,
                        help='Only movies or only people')
    parser.add_argument('--check-urls', action='store_true',
                        help='Check image URLs are reachable (slow, network)')
    parser.add_argument('--export-csv', type=Path, default=None,
                        help='Write the per-entity tier table to CSV')

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    store = CatalogStore(config.catalog_path)
    entities = store.all_entities()
    if args.kind:
        entities = [e for e in entities if e.kind.value == args.kind]

    rows, changed, written = score_catalog(entities, store, config, args.apply, args.check_urls)
    df = build_frame(rows)
    print_report(df, changed, written, args.apply)

    if args.export_csv:
        args.export_csv.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(args.export_csv, index=False)
        logger.info(f"Wrote {len(df)} rows to {args.export_csv}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
