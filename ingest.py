#!/usr/bin/env python3
"""
ingest.py - Gate candidate records before they enter the catalog

Reads a CSV of candidate movies/people, runs each one through the identity
gate and creates the ones that pass (VERIFIED) or may exist flagged
(UNVERIFIED). Rejected rows are reported; rows whose lookup failed are left
for the next run.

CSV columns (only name and kind are required):
    name, kind, year, external_id, aliases,
    director, hero, heroine, music_director, producer, writer,
    supporting_cast, occupations, image_url, image_source, rights_status

Safety:
- DRY RUN is the DEFAULT (must pass --apply to create records)
- Rows matching an existing record (same kind + canonical name/alias and
  compatible year, or same external id) are skipped, never duplicated

Usage:
    python ingest.py candidates.csv
    python ingest.py candidates.csv --apply --language te
    python ingest.py candidates.csv --strict --min-cast 4
"""

import sys
import csv
import logging
import argparse
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

from catalog.autofix import fill_from_source
from catalog.config import PipelineConfig, load_config
from catalog.errors import ConfigError
from catalog.identity_gate import GateOptions, IdentityGate
from catalog.models import (
    Candidate, Entity, EntityKind, EntityStatus, GateStatus, ImageRef, ValidationResult
)
from catalog.store import CatalogStore
from catalog.tmdb import TMDbClient
from catalog.visual import apply_visual, score_visual

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_year(value: str) -> Optional[int]:
    value = (value or '').strip()
    if not value:
        return None
    try:
        return int(value[:4])
    except ValueError:
        return None


def row_to_candidate(row: Dict[str, str]) -> Candidate:
    kind = EntityKind((row.get('kind') or 'movie').strip().lower())
    return Candidate(
        name=(row.get('name') or '').strip(),
        kind=kind,
        year=parse_year(row.get('year', '')),
        external_id=(row.get('external_id') or '').strip() or None,
    )


def find_existing(store: CatalogStore, candidate: Candidate, seen: Set[Tuple[str, str]]) -> Optional[str]:
    """Id of a record this candidate would duplicate, if any"""
    # The external id wins over the name: 'Maya Bazaar' movie/41234 is Mayabazar
    for entity in store.find_by_external_id(candidate.external_id):
        if entity.kind == candidate.kind:
            return entity.id
    for entity in store.find_by_name(candidate.name, candidate.kind):
        if entity.year is None or candidate.year is None or entity.year == candidate.year:
            return entity.id
    key = (candidate.kind.value, Entity(id='', kind=candidate.kind, name=candidate.name).canonical_name)
    if key in seen or (candidate.external_id and (candidate.kind.value, candidate.external_id) in seen):
        return 'earlier row'
    return None


def build_entity(store: CatalogStore, row: Dict[str, str], candidate: Candidate,
                 result: ValidationResult, config: PipelineConfig) -> Entity:
    """Turn a gated row into a catalog entity (not yet saved)"""
    fields = result.canonical_fields
    data = {
        'id': store.new_id(candidate.kind),
        'kind': candidate.kind.value,
        'name': fields['name'],
        'year': fields.get('year'),
        'slug': fields['slug'],
        'aliases': [a.strip() for a in (row.get('aliases') or '').split('|') if a.strip()],
        'occupations': row.get('occupations') or '',
        'supporting_cast': row.get('supporting_cast') or None,
        'original_language': fields.get('original_language'),
        'status_reasons': result.reasons,
    }
    for role_field in ('director', 'hero', 'heroine', 'music_director', 'producer', 'writer'):
        if row.get(role_field):
            data[role_field] = row[role_field]

    entity = Entity.from_dict(data)
    if result.status == GateStatus.VERIFIED:
        entity.external_id = fields.get('external_id')
        entity.transition(EntityStatus.VERIFIED)

    image_url = (row.get('image_url') or '').strip()
    if image_url:
        entity.image = ImageRef(
            url=image_url,
            source=(row.get('image_source') or '').strip() or None,
            rights_status=(row.get('rights_status') or 'unknown').strip(),
        )
    # Poster, director and cast the row left out come from the verified record
    fill_from_source(entity, result, config.matching)

    apply_visual(entity, score_visual(entity.image, config.visual))
    return entity


def print_stats(stats: Dict[str, int], dry_run: bool):
    """Print summary statistics"""
    print("\n" + "=" * 60)
    if dry_run:
        print("DRY RUN SUMMARY (no records were created)")
    else:
        print("INGEST SUMMARY")
    print("=" * 60)
    print(f"  Rows:                {stats['total']:5d}")
    print(f"  {'Would create' if dry_run else 'Created'}:        {stats['created']:5d}")
    print(f"    verified:          {stats['verified']:5d}")
    print(f"    unverified:        {stats['unverified']:5d}")
    print(f"  Rejected:            {stats['rejected']:5d}")
    print(f"  Lookup failed:       {stats['lookup_failed']:5d}")
    print(f"  Already in catalog:  {stats['existing']:5d}")
    print(f"  Errors:              {stats['errors']:5d}")
    print("=" * 60)

    if dry_run:
        print("\nTo execute, run again with --apply")


def ingest(csv_path: Path, store: CatalogStore, gate: IdentityGate, config: PipelineConfig,
           options: GateOptions, dry_run: bool = True) -> Dict[str, int]:
    stats = {k: 0 for k in ('total', 'created', 'verified', 'unverified', 'rejected',
                            'lookup_failed', 'existing', 'errors')}
    seen: Set[Tuple[str, str]] = set()

    with open(csv_path, 'r', encoding='utf-8') as f:
        reader = csv.DictReader(f)
        for line_no, row in enumerate(reader, 2):
            stats['total'] += 1
            try:
                candidate = row_to_candidate(row)
            except ValueError as e:
                stats['errors'] += 1
                logger.error(f"Line {line_no}: {e}")
                continue

            existing = find_existing(store, candidate, seen)
            if existing:
                stats['existing'] += 1
                logger.debug(f"Line {line_no}: '{candidate.name}' already present ({existing})")
                continue

            result = gate.validate_candidate(candidate, options)

            if result.status == GateStatus.REJECTED:
                stats['rejected'] += 1
                print(f"[REJECTED] line {line_no}: '{candidate.name}' ({', '.join(result.reasons)})")
                continue
            if result.status == GateStatus.LOOKUP_FAILED:
                stats['lookup_failed'] += 1
                print(f"[RETRY]    line {line_no}: '{candidate.name}' lookup failed, not created")
                continue

            entity = build_entity(store, row, candidate, result, config)
            seen.add((candidate.kind.value, entity.canonical_name))
            if entity.external_id:
                seen.add((candidate.kind.value, entity.external_id))
            stats['verified' if entity.status == EntityStatus.VERIFIED else 'unverified'] += 1

            label = '[DRY RUN]' if dry_run else '[CREATE] '
            print(f"{label} {entity.kind.value} '{entity.name}' ({entity.year}) -> "
                  f"{entity.status.value} conf={result.confidence:.2f} tier={entity.image.visual.tier}")
            if result.warnings:
                print(f"          warnings: {', '.join(result.warnings)}")
            if not dry_run:
                store.create(entity)
            stats['created'] += 1

    return stats


def main():
    parser = argparse.ArgumentParser(
        description='Gate candidate records and add them to the catalog',
        epilog="SAFETY: Defaults to a dry run. You must pass --apply to create records."
    )
    parser.add_argument('candidates', type=Path, help='Candidate CSV')
    parser.add_argument('--config', type=Path, default=Path('config_external.yaml'),
                        help='Configuration file (default: config_external.yaml)')
    parser.add_argument('--apply', action='store_true',
                        help='Create records (default is dry-run)')
    parser.add_argument('--language', default=None,
                        help='Reject movies whose original language differs (ISO 639-1)')
    parser.add_argument('--allow-missing-year', action='store_true',
                        help='Accept movies the source has no release date for')
    parser.add_argument('--strict', action='store_true',
                        help='Reject movies missing a director, enough cast or images')
    parser.add_argument('--min-cast', type=int, default=None,
                        help='Minimum credited cast for a complete movie record')

    args = parser.parse_args()
    dry_run = not args.apply

    if not args.candidates.exists():
        logger.error(f"Candidate file not found: {args.candidates}")
        return 1

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    store = CatalogStore(config.catalog_path)
    gate = IdentityGate(TMDbClient(config.tmdb_api_key, config.cache_path), config.gate)
    options = GateOptions(
        require_release_year=False if args.allow_missing_year else None,
        required_language=args.language,
        strict=True if args.strict else None,
        min_cast_members=args.min_cast,
    )

    stats = ingest(args.candidates, store, gate, config, options, dry_run)
    print_stats(stats, dry_run)
    return 0 if stats['errors'] == 0 else 1


if __name__ == '__main__':
    sys.exit(main())
