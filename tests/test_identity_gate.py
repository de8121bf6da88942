#!/usr/bin/env python3
"""
Test suite for catalog/identity_gate.py — candidate validation against the authoritative source
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog.config import GatePolicy
from catalog.errors import LookupFailed, RateLimited
from catalog.identity_gate import GateOptions, IdentityGate
from catalog.models import Candidate, EntityKind, GateStatus, SourceRecord


def movie_record(name="Mayabazar", date="1957-03-27", language="te", external_id="movie/41234",
                 **kwargs):
    return SourceRecord(external_id=external_id, type='movie', canonical_name=name,
                        release_or_birth_date=date, original_language=language, **kwargs)


def credited_record(**kwargs):
    return movie_record(imagery=['https://image.tmdb.org/t/p/w500/maya.jpg'],
                        directors=['K. V. Reddy'],
                        cast=['N. T. Rama Rao', 'Savitri', 'S. V. Ranga Rao'], **kwargs)


def person_record(name="Savitri", date=None, external_id="person/9001"):
    return SourceRecord(external_id=external_id, type='person', canonical_name=name,
                        release_or_birth_date=date)


def make_gate(search=None, fetch=None, policy=None, side_effect=None):
    source = MagicMock()
    source.search.return_value = search
    source.fetch.return_value = fetch
    if side_effect is not None:
        source.search.side_effect = side_effect
        source.fetch.side_effect = side_effect
    return IdentityGate(source, policy, current_year=2024), source


class TestMalformation:
    """Junk input is rejected before any lookup"""

    @pytest.mark.parametrize("name,year,reason", [
        ("", None, 'empty_name'),
        ("   ", None, 'empty_name'),
        ("?!...", None, 'punctuation_only'),
        ("x" * 201, None, 'name_too_long'),
        ("Mayabazar", 1700, 'implausible_year'),
        ("Mayabazar", 2040, 'implausible_year'),
    ])
    def test_rejected_without_lookup(self, name, year, reason):
        gate, source = make_gate()
        result = gate.validate_candidate(Candidate(name, EntityKind.MOVIE, year))
        assert result.status == GateStatus.REJECTED
        assert reason in result.reasons
        source.search.assert_not_called()
        source.fetch.assert_not_called()

    def test_near_future_year_allowed(self):
        gate, _ = make_gate(search=movie_record(date="2026-01-10"))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 2026))
        assert result.status != GateStatus.REJECTED


class TestEntityType:
    """The requested kind must match what the source says the thing is"""

    def test_movie_title_requested_as_person(self):
        record = SourceRecord(external_id='movie/77001', type='movie',
                              canonical_name='Ranuva Veeran', release_or_birth_date='1981-01-14')
        gate, _ = make_gate(search=record)
        result = gate.validate_candidate(Candidate("Ranuva Veeran", EntityKind.PERSON))
        assert result.status == GateStatus.REJECTED
        assert result.reasons == ['wrong_entity_type']

    def test_movie_candidate_resolving_to_person(self):
        record = person_record(name='Ranuva Veeran', external_id='person/88001')
        gate, _ = make_gate(search=record)
        result = gate.validate_candidate(Candidate("Ranuva Veeran", EntityKind.MOVIE, 1981))
        assert result.status == GateStatus.REJECTED
        assert result.reasons == ['wrong_entity_type']

    def test_tv_show_requested_as_movie(self):
        record = SourceRecord(external_id='tv/501', type='tv', canonical_name='Amrutham',
                              release_or_birth_date='2001-11-18')
        gate, _ = make_gate(search=record)
        result = gate.validate_candidate(Candidate("Amrutham", EntityKind.MOVIE, 2001))
        assert result.status == GateStatus.REJECTED
        assert 'wrong_entity_type' in result.reasons


class TestScoring:
    """Confidence against the verified and unverified floors"""

    def test_exact_match_verified(self):
        gate, _ = make_gate(search=movie_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.VERIFIED
        assert result.confidence == pytest.approx(1.0)
        assert result.reasons == []
        assert result.canonical_fields['slug'] == 'mayabazar-1957'
        assert result.canonical_fields['external_id'] == 'movie/41234'

    def test_decorated_title_still_verified(self):
        gate, _ = make_gate(search=movie_record())
        result = gate.validate_candidate(Candidate("Mayabazar (1957 film)", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.VERIFIED
        assert result.canonical_fields['canonical_name'] == 'mayabazar'

    def test_year_far_off_needs_review(self):
        gate, _ = make_gate(search=movie_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1962))
        assert result.status == GateStatus.UNVERIFIED
        assert result.reasons == ['needs_review']
        assert result.confidence == pytest.approx(0.8)

    def test_below_unverified_floor(self):
        policy = GatePolicy(unverified_floor=0.85, verified_floor=0.9)
        gate, _ = make_gate(search=movie_record(), policy=policy)
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1962))
        assert result.status == GateStatus.UNVERIFIED
        assert result.reasons == ['low_confidence']

    def test_no_match_is_unverified(self):
        gate, _ = make_gate(search=None)
        result = gate.validate_candidate(Candidate("Unknown Village Drama", EntityKind.MOVIE, 1965))
        assert result.status == GateStatus.UNVERIFIED
        assert result.reasons == ['no_source_match']
        assert result.confidence == 0.0

    def test_person_without_birth_date_not_capped(self):
        gate, _ = make_gate(search=person_record())
        result = gate.validate_candidate(Candidate("Savitri", EntityKind.PERSON))
        assert result.status == GateStatus.VERIFIED
        assert result.confidence == pytest.approx(1.0)

    def test_person_slug_has_no_year(self):
        gate, _ = make_gate(search=person_record(date="1936-12-06"))
        result = gate.validate_candidate(Candidate("Savitri", EntityKind.PERSON, 1936))
        assert result.canonical_fields['slug'] == 'savitri'


class TestMovieRequirements:
    """Release year and language rules for movies"""

    def test_missing_release_year_rejected(self):
        gate, _ = make_gate(search=movie_record(date=None))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE))
        assert result.status == GateStatus.REJECTED
        assert result.reasons == ['no_release_year']

    def test_missing_release_year_allowed_by_option(self):
        gate, _ = make_gate(search=movie_record(date=None))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE),
                                         GateOptions(require_release_year=False))
        assert result.status == GateStatus.VERIFIED

    def test_wrong_language(self):
        gate, _ = make_gate(search=movie_record(language='ta'))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957),
                                         GateOptions(required_language='te'))
        assert result.status == GateStatus.REJECTED
        assert result.reasons == ['wrong_language']

    def test_language_from_policy(self):
        gate, _ = make_gate(search=movie_record(language='ta'), policy=GatePolicy(required_language='te'))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert 'wrong_language' in result.reasons


class TestLookup:
    """External ids and source failures"""

    def test_external_id_fetched_first(self):
        gate, source = make_gate(fetch=movie_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957, "movie/41234"))
        assert result.status == GateStatus.VERIFIED
        source.fetch.assert_called_once_with("movie/41234", 'movie')
        source.search.assert_not_called()

    def test_unknown_external_id_falls_back_to_search(self):
        gate, source = make_gate(fetch=None, search=movie_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957, "movie/1"))
        assert result.status == GateStatus.VERIFIED
        source.search.assert_called_once()

    @pytest.mark.parametrize("error", [LookupFailed("timeout"), RateLimited("429", retry_after=2)])
    def test_lookup_failure_is_not_a_rejection(self, error):
        gate, _ = make_gate(side_effect=error)
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.LOOKUP_FAILED
        assert result.reasons == ['lookup_failed']

    def test_gate_is_read_only(self):
        gate, source = make_gate(search=movie_record())
        gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        called = {name for name, _, _ in source.mock_calls}
        assert called <= {'search', 'fetch'}


class TestTitleRetry:
    """A title the source does not list as written is searched again in bare form"""

    def test_decorated_title_retried_bare(self):
        gate, source = make_gate()
        source.search.side_effect = lambda name, year, kind: movie_record() if name == 'mayabazar' else None
        result = gate.validate_candidate(Candidate("Mayabazar (1957 film)", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.VERIFIED
        assert [c.args[0] for c in source.search.call_args_list] == ["Mayabazar (1957 film)", 'mayabazar']

    def test_leading_article_retried_without_it(self):
        gate, source = make_gate()
        record = movie_record(name="The Ghazi Attack", date="2017-02-17", external_id="movie/420000")
        source.search.side_effect = lambda name, year, kind: record if name == 'ghazi attack' else None
        result = gate.validate_candidate(Candidate("The Ghazi Attack", EntityKind.MOVIE, 2017))
        assert result.status == GateStatus.VERIFIED
        assert result.canonical_fields['canonical_name'] == 'ghazi attack'
        assert result.canonical_fields['slug'] == 'the-ghazi-attack-2017'

    def test_plain_title_searched_once(self):
        gate, source = make_gate(search=None)
        gate.validate_candidate(Candidate("Gundamma Katha", EntityKind.MOVIE, 1962))
        source.search.assert_called_once()

    def test_people_not_retried(self):
        gate, source = make_gate(search=None)
        gate.validate_candidate(Candidate("The Savitri", EntityKind.PERSON))
        source.search.assert_called_once()


class TestCompleteness:
    """Director, cast and image checks on movie records"""

    def test_complete_record_has_no_warnings(self):
        gate, _ = make_gate(search=credited_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.VERIFIED
        assert result.warnings == []

    def test_missing_credit_data_warns(self):
        gate, _ = make_gate(search=movie_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.VERIFIED
        assert result.warnings == ['no_crew_data', 'no_cast_data', 'no_images']

    def test_thin_credits_warn(self):
        gate, _ = make_gate(search=movie_record(imagery=['https://image.tmdb.org/t/p/w500/maya.jpg'],
                                                directors=['  '], cast=['Savitri', '']))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert result.warnings == ['no_director', 'insufficient_cast']

    def test_min_cast_from_options(self):
        gate, _ = make_gate(search=credited_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957),
                                         GateOptions(min_cast_members=5))
        assert result.warnings == ['insufficient_cast']

    def test_people_not_checked(self):
        gate, _ = make_gate(search=person_record())
        result = gate.validate_candidate(Candidate("Savitri", EntityKind.PERSON))
        assert result.warnings == []

    def test_strict_rejects_with_warnings_as_reasons(self):
        gate, _ = make_gate(search=movie_record(imagery=['https://image.tmdb.org/t/p/w500/maya.jpg'],
                                                directors=[], cast=['Savitri']))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957),
                                         GateOptions(strict=True))
        assert result.status == GateStatus.REJECTED
        assert result.reasons == ['no_director', 'insufficient_cast']

    def test_strict_from_policy(self):
        gate, _ = make_gate(search=movie_record(), policy=GatePolicy(strict=True))
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957))
        assert result.status == GateStatus.REJECTED
        assert 'no_images' in result.reasons

    def test_strict_complete_record_verified(self):
        gate, _ = make_gate(search=credited_record())
        result = gate.validate_candidate(Candidate("Mayabazar", EntityKind.MOVIE, 1957),
                                         GateOptions(strict=True))
        assert result.status == GateStatus.VERIFIED

    def test_strict_rejects_unmatched(self):
        gate, _ = make_gate(search=None)
        result = gate.validate_candidate(Candidate("Unknown Village Drama", EntityKind.MOVIE, 1965),
                                         GateOptions(strict=True))
        assert result.status == GateStatus.REJECTED
        assert result.reasons == ['no_source_match']
