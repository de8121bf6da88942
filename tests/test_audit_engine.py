#!/usr/bin/env python3
"""
Test suite for catalog/audit_engine.py — validation sweeps, lattice moves and auto-fixes
"""

import datetime
import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog.audit_engine import AuditEngine, AuditOptions, diff_entities
from catalog.config import PipelineConfig
from catalog.errors import LookupFailed
from catalog.identity_gate import IdentityGate
from catalog.models import (
    ArchiveReason, Entity, EntityKind, EntityStatus, ImageRef, SourceRecord
)
from catalog.names import CastEntry, NameList
from catalog.normalization import canonicalize
from catalog.store import CatalogStore

TODAY = datetime.date(2024, 5, 1)

RECORDS = {
    'mayabazar': SourceRecord('movie/41234', 'movie', 'Mayabazar', '1957-03-27', original_language='te'),
    'gang leader': SourceRecord('movie/5001', 'movie', 'Gang Leader', '1991-05-09'),
}


def make_engine(store, records=None, failing=None, config=None):
    """Engine over a fake source answering from records; failing maps names to exceptions"""
    records = RECORDS if records is None else records
    failing = failing or {}
    source = MagicMock()

    def search(name, year, kind):
        if name in failing:
            raise failing[name]
        return records.get(canonicalize(name))

    def fetch(external_id, kind):
        return next((r for r in records.values() if r.external_id == external_id), None)

    source.search.side_effect = search
    source.fetch.side_effect = fetch
    lines = []
    engine = AuditEngine(store, IdentityGate(source, current_year=2024), config or PipelineConfig(),
                         printer=lines.append, today=TODAY)
    return engine, source, lines


def movie(entity_id, name, year, **kwargs):
    return Entity(id=entity_id, kind=EntityKind.MOVIE, name=name, year=year, **kwargs)


@pytest.fixture
def store(tmp_path):
    return CatalogStore(tmp_path / 'catalog.json')


APPLY = AuditOptions(apply=True)
DESTRUCTIVE = AuditOptions(apply=True, allow_destructive=True)


class TestLattice:
    """Status moves along the lattice, never skipping steps"""

    def test_unverified_becomes_verified(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957))
        engine, _, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.status == EntityStatus.VERIFIED
        assert entity.external_id == 'movie/41234'
        assert entity.slug == 'mayabazar-1957'
        assert report.verified == ['m-0001']

    def test_unmatched_stays_unverified(self, store):
        store.create(movie('m-0001', 'Unknown Village Drama', 1965))
        engine, _, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.status == EntityStatus.UNVERIFIED
        assert entity.status_reasons == ['no_source_match']
        assert report.unverified == ['m-0001']

    def test_verified_failure_goes_to_rework_not_purge(self, store):
        store.create(movie('m-0002', 'Lost Film', 1960, external_id='movie/999',
                           status=EntityStatus.VERIFIED))
        engine, _, _ = make_engine(store)
        report = engine.run_audit(DESTRUCTIVE)
        entity = store.get('m-0002')
        assert entity.status == EntityStatus.NEEDS_REWORK
        assert entity.rework_count == 1
        assert report.needs_rework == ['m-0002']
        assert report.purged == []

    def test_rework_recovers(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957, status=EntityStatus.NEEDS_REWORK,
                           rework_count=2, last_failed_audit='2024-04-01'))
        engine, _, _ = make_engine(store)
        engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.status == EntityStatus.VERIFIED
        assert entity.rework_count == 0

    def test_failure_counted_once_per_day(self, store):
        store.create(movie('m-0002', 'Lost Film', 1960, status=EntityStatus.NEEDS_REWORK,
                           rework_count=1, last_failed_audit='2024-04-01'))
        engine, _, _ = make_engine(store)
        engine.run_audit(APPLY)
        engine.run_audit(APPLY)
        assert store.get('m-0002').rework_count == 2

    def test_terminal_records_skipped(self, store):
        store.create(movie('m-0009', 'Rejected Title', 1970, status=EntityStatus.REJECTED))
        engine, source, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        source.search.assert_not_called()
        assert report.rejected == ['m-0009']
        assert report.writes == 0


class TestPurge:
    """Purges need repeated failures or an operator mark, plus --destructive"""

    def _failing_rework(self, store):
        store.create(movie('m-0003', 'Gone Film', 1960, status=EntityStatus.NEEDS_REWORK,
                           rework_count=2, last_failed_audit='2024-04-01'))

    def test_purge_only_proposed_without_destructive(self, store):
        self._failing_rework(store)
        engine, _, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        assert report.purge_proposals == ['m-0003']
        entity = store.get('m-0003')
        assert entity.status == EntityStatus.NEEDS_REWORK
        assert entity.rework_count == 3

    def test_purge_applied_with_destructive(self, store):
        self._failing_rework(store)
        engine, _, _ = make_engine(store)
        report = engine.run_audit(DESTRUCTIVE)
        assert report.purged == ['m-0003']
        assert store.get('m-0003').status == EntityStatus.PURGED
        assert store.is_retired('m-0003')

    def test_marked_unverified_record_rejected(self, store):
        store.create(movie('m-0004', 'Junk Upload', 1999, marked_for_removal=True))
        engine, _, _ = make_engine(store)
        assert engine.run_audit(APPLY).purge_proposals == ['m-0004']
        report = engine.run_audit(DESTRUCTIVE)
        assert store.get('m-0004').status == EntityStatus.REJECTED
        assert report.rejected == ['m-0004']


class TestIdempotence:
    """A second sweep over unchanged data changes nothing"""

    def test_second_run_writes_nothing(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957))
        store.create(movie('m-0005', 'Unknown Village Drama', 1965,
                           image=ImageRef(url='https://randomblog.net/poster.jpg')))
        store.create(Entity(id='p-0001', kind=EntityKind.PERSON, name='Radhika'))
        store.create(Entity(id='p-0002', kind=EntityKind.PERSON, name='Raadhika'))
        engine, _, _ = make_engine(store)

        first = engine.run_audit(APPLY)
        assert first.writes > 0
        second = engine.run_audit(APPLY)
        assert second.writes == 0
        assert second.classification() == first.classification()

    def test_dry_run_writes_nothing(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957))
        writes_before = store.writes
        engine, _, lines = make_engine(store)
        report = engine.run_audit(AuditOptions())
        assert store.writes == writes_before
        assert store.get('m-0001').status == EntityStatus.UNVERIFIED
        assert report.verified == ['m-0001']
        assert lines[0].startswith('[DRY RUN] m-0001')
        assert all(not f.applied for f in report.fixes)


class TestErrors:
    """One bad record never aborts the sweep"""

    def test_unexpected_error_collected(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957))
        store.create(movie('m-0006', 'Broken Record', 1970))
        engine, _, _ = make_engine(store, failing={'Broken Record': RuntimeError("bad payload")})
        report = engine.run_audit(APPLY)
        assert store.get('m-0001').status == EntityStatus.VERIFIED
        assert [e.entity_id for e in report.unrecoverable_errors] == ['m-0006']
        assert report.unrecoverable_errors[0].kind == 'error'

    def test_lookup_failure_is_retryable(self, store):
        store.create(movie('m-0007', 'Flaky Record', 1970, status=EntityStatus.VERIFIED,
                           external_id=None))
        engine, _, _ = make_engine(store, failing={'Flaky Record': LookupFailed("timeout")})
        report = engine.run_audit(APPLY)
        assert store.get('m-0007').status == EntityStatus.VERIFIED
        assert report.errors[0].kind == 'lookup_failed'
        assert report.errors[0].retryable
        assert report.unrecoverable_errors == []


class TestCancellation:
    """Cancellation stops between chunks"""

    def test_stops_after_current_chunk(self, store):
        for i in range(3):
            store.create(movie(f'm-000{i}', 'Mayabazar', 1957))
        engine, source, _ = make_engine(store)
        original = source.search.side_effect

        def search_then_cancel(name, year, kind):
            engine.cancel()
            return original(name, year, kind)

        source.search.side_effect = search_then_cancel
        report = engine.run_audit(AuditOptions(apply=True, chunk_size=1, workers=1))
        assert report.cancelled
        assert report.validated == 1
        assert store.get('m-0000').status == EntityStatus.VERIFIED
        assert store.get('m-0001').status == EntityStatus.UNVERIFIED


class TestAutoFixes:
    """Safe fixes applied in the sweep"""

    def test_duo_credit_completed_inside_active_years(self, store):
        store.create(movie('m-0010', 'Gang Leader', 1991, roles={'music_director': NameList(('Koti',))}))
        store.create(movie('m-0011', 'Later Film', 2005, roles={'music_director': NameList(('Koti',))}))
        engine, _, _ = make_engine(store)
        engine.run_audit(APPLY)
        assert store.get('m-0010').role('music_director').names == ('Raj-Koti',)
        assert store.get('m-0011').role('music_director').names == ('Koti',)

    def test_lead_removed_from_supporting_cast(self, store):
        store.create(movie('m-0010', 'Gang Leader', 1991,
                           roles={'hero': NameList(('Chiranjeevi',))},
                           supporting_cast=[CastEntry('Chiranjeevi'), CastEntry('Rao Gopal Rao', 'villain')]))
        engine, _, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        assert store.get('m-0010').supporting_cast == [CastEntry('Rao Gopal Rao', 'villain')]
        fix = next(f for f in report.fixes if f.action == 'strip_lead_from_supporting_cast')
        assert fix.applied and not fix.destructive

    def test_archive_card_attached(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957))
        engine, _, _ = make_engine(store)
        engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.image.visual.tier == 3
        assert entity.archive_card.reason == ArchiveReason.NEVER_SEARCHED

    def test_placeholder_kept_without_destructive(self, store):
        url = 'https://via.placeholder.com/300'
        store.create(movie('m-0001', 'Mayabazar', 1957, image=ImageRef(url=url)))
        engine, _, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        assert store.get('m-0001').image.url == url
        fix = next(f for f in report.fixes if f.action == 'clear_placeholder_image')
        assert fix.destructive and not fix.applied

    def test_placeholder_cleared_with_destructive(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957, image=ImageRef(url='https://via.placeholder.com/300')))
        engine, _, _ = make_engine(store)
        engine.run_audit(DESTRUCTIVE)
        entity = store.get('m-0001')
        assert entity.image.url is None
        assert entity.archive_card is not None


CREDITED = {
    'mayabazar': SourceRecord('movie/41234', 'movie', 'Mayabazar', '1957-03-27',
                              imagery=['https://image.tmdb.org/t/p/w500/maya.jpg'],
                              directors=['K. V. Reddy'],
                              cast=['N. T. Rama Rao', 'Savitri', 'S. V. Ranga Rao', 'Relangi']),
}


class TestSourceFills:
    """Poster, director and cast copied from a verified source record"""

    def test_missing_fields_filled(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957, roles={'hero': NameList(('N. T. Rama Rao',))}))
        engine, _, _ = make_engine(store, records=CREDITED)
        report = engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.image.url == 'https://image.tmdb.org/t/p/w500/maya.jpg'
        assert entity.image.visual.tier == 1
        assert entity.archive_card is None
        assert entity.role('director').names == ('K. V. Reddy',)
        assert [c.name for c in entity.supporting_cast] == ['Savitri', 'S. V. Ranga Rao', 'Relangi']
        fields = {f.field for f in report.fixes if f.action == 'fill_from_source'}
        assert fields == {'image.url', 'director', 'supporting_cast'}

    def test_existing_fields_untouched(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957, roles={'director': NameList(('Kadiri Venkata Reddy',))},
                           supporting_cast=[CastEntry('Relangi')],
                           image=ImageRef(url='https://upload.wikimedia.org/wikipedia/en/4/4b/Mayabazar_poster.jpg')))
        engine, _, _ = make_engine(store, records=CREDITED)
        report = engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.role('director').names == ('Kadiri Venkata Reddy',)
        assert entity.supporting_cast == [CastEntry('Relangi')]
        assert 'wikimedia' in entity.image.url
        assert not [f for f in report.fixes if f.action == 'fill_from_source']

    def test_second_run_fills_nothing(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957))
        engine, _, _ = make_engine(store, records=CREDITED)
        engine.run_audit(APPLY)
        report = engine.run_audit(APPLY)
        assert report.writes == 0
        assert report.fixes == []

    def test_unverified_record_not_filled(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1964))
        engine, _, _ = make_engine(store, records=CREDITED)
        engine.run_audit(APPLY)
        entity = store.get('m-0001')
        assert entity.status == EntityStatus.UNVERIFIED
        assert entity.role('director').names == ()
        assert entity.image.url is None

    def test_cleared_placeholder_replaced_by_source_poster(self, store):
        store.create(movie('m-0001', 'Mayabazar', 1957, image=ImageRef(url='https://via.placeholder.com/300')))
        engine, _, _ = make_engine(store, records=CREDITED)
        engine.run_audit(DESTRUCTIVE)
        entity = store.get('m-0001')
        assert entity.image.url == 'https://image.tmdb.org/t/p/w500/maya.jpg'
        assert entity.image.source == 'tmdb'
        assert entity.archive_card is None


class TestDuplicates:
    """The sweep reports duplicate groups but never merges"""

    def test_groups_reported_not_merged(self, store):
        films = ['m-0001', 'm-0002']
        store.create(Entity(id='p-0001', kind=EntityKind.PERSON, name='Radhika', references=films))
        store.create(Entity(id='p-0002', kind=EntityKind.PERSON, name='Raadhika', references=films))
        engine, _, _ = make_engine(store)
        report = engine.run_audit(APPLY)
        assert [g.entity_ids for g in report.duplicates_found] == [['p-0001', 'p-0002']]
        assert len(store) == 2

    def test_detection_can_be_skipped(self, store):
        store.create(Entity(id='p-0001', kind=EntityKind.PERSON, name='Radhika'))
        store.create(Entity(id='p-0002', kind=EntityKind.PERSON, name='Raadhika'))
        engine, _, _ = make_engine(store)
        assert engine.run_audit(AuditOptions(detect_duplicates=False)).duplicates_found == []


class TestDiff:
    """Before/after lines printed ahead of every write"""

    def test_changed_fields_only(self):
        before = movie('m-0001', 'Mayabazar', 1957)
        after = movie('m-0001', 'Mayabazar', 1957, slug='mayabazar-1957')
        after.version = 5
        assert diff_entities(before, after) == ["  slug: '' -> 'mayabazar-1957'"]
