#!/usr/bin/env python3
"""
status.py - Catalog health summary

Read-only overview of the catalog: entities per status and kind, visual
tier distribution, pending rework, and duplicate groups bucketed by merge
confidence.

Usage:
    python status.py
    python status.py --no-duplicates
    python status.py --export-csv output/catalog_status.csv
"""

import sys
import logging
import argparse
from pathlib import Path
from typing import List

import pandas as pd

from catalog.config import load_config
from catalog.constants import CONFIDENCE_BUCKETS
from catalog.duplicates import DuplicateDetector
from catalog.errors import ConfigError
from catalog.models import DuplicateGroup, Entity
from catalog.store import CatalogStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def confidence_bucket(confidence: float) -> str:
    for label, floor in CONFIDENCE_BUCKETS:
        if confidence >= floor:
            return label
    return CONFIDENCE_BUCKETS[-1][0]


def entity_frame(entities: List[Entity]) -> pd.DataFrame:
    rows = [{
        'id': e.id,
        'kind': e.kind.value,
        'name': e.name,
        'year': e.year,
        'status': e.status.value,
        'tier': e.image.visual.tier if e.image.visual else None,
        'has_external_id': bool(e.external_id),
        'rework_count': e.rework_count,
        'marked_for_removal': e.marked_for_removal,
    } for e in entities]
    return pd.DataFrame(rows, columns=['id', 'kind', 'name', 'year', 'status', 'tier',
                                       'has_external_id', 'rework_count', 'marked_for_removal'])


def group_frame(groups: List[DuplicateGroup]) -> pd.DataFrame:
    rows = [{
        'kind': g.kind.value,
        'size': len(g.entity_ids),
        'confidence': g.confidence,
        'bucket': confidence_bucket(g.confidence),
        'suggested_name': g.suggested_name,
    } for g in groups]
    return pd.DataFrame(rows, columns=['kind', 'size', 'confidence', 'bucket', 'suggested_name'])


def print_summary(df: pd.DataFrame, groups_df: pd.DataFrame, show_duplicates: bool):
    print("\n" + "=" * 60)
    print("CATALOG STATUS")
    print("=" * 60)
    print(f"  Entities: {len(df)}")
    if df.empty:
        print("=" * 60)
        return

    print("\nBy status:")
    for status, count in df['status'].value_counts().items():
        print(f"  {status:16s} {count:6d}")

    print("\nKind x status:")
    print(pd.crosstab(df['kind'], df['status']).to_string())

    print("\nVisual tier:")
    tiers = df['tier'].fillna(0).astype(int).value_counts().sort_index()
    for tier, count in tiers.items():
        label = f"tier {tier}" if tier else 'not scored'
        print(f"  {label:16s} {count:6d}")

    missing_ids = int((~df['has_external_id']).sum())
    print(f"\nWithout external id: {missing_ids}")
    rework = df[df['status'] == 'needs_rework']
    if not rework.empty:
        print(f"Needs rework: {len(rework)} (failed audits: max {int(rework['rework_count'].max())})")
    marked = int(df['marked_for_removal'].sum())
    if marked:
        print(f"Marked for removal: {marked}")

    if show_duplicates:
        print("\nDuplicate groups by confidence:")
        if groups_df.empty:
            print("  none")
        else:
            counts = groups_df['bucket'].value_counts()
            for label, _ in CONFIDENCE_BUCKETS:
                print(f"  {label:16s} {int(counts.get(label, 0)):6d}")

    print("=" * 60)


def main():
    parser = argparse.ArgumentParser(description='Summarize catalog health')
    parser.add_argument('--config', type=Path, default=Path('config_external.yaml'),
                        help='Configuration file (default: config_external.yaml)')
    parser.add_argument('--no-duplicates', action='store_true',
                        help='Skip duplicate detection')
    parser.add_argument('--export-csv', type=Path, default=None,
                        help='Write the per-entity status table to CSV')

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    store = CatalogStore(config.catalog_path)
    entities = store.all_entities()
    df = entity_frame(entities)

    groups: List[DuplicateGroup] = []
    if not args.no_duplicates:
        groups = DuplicateDetector(config.merge, config.matching).find_groups(entities)

    print_summary(df, group_frame(groups), not args.no_duplicates)

    if args.export_csv:
        args.export_csv.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(args.export_csv, index=False)
        logger.info(f"Wrote {len(df)} rows to {args.export_csv}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
