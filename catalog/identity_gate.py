#!/usr/bin/env python3
"""
Identity gate: decide whether a candidate movie/person may exist in the catalog

Order of checks:
1. Malformation (no network for junk input)
2. Authoritative lookup + entity type verification
3. Release year / language requirements
4. Movie completeness: director, minimum cast, imagery. These are warnings,
   or rejections in strict mode
5. Canonicalization (canonical name + slug)
6. Confidence scoring against the floors

A lookup failure is reported as LOOKUP_FAILED, never as a rejection: the
caller retries later and nothing gets branded invalid because of a flaky
network call. The gate itself never writes anything.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import List, Optional

from fuzzywuzzy import fuzz

from catalog.config import GatePolicy
from catalog.errors import LookupFailed
from catalog.models import (
    Candidate, EntityKind, GateStatus, SourceRecord, ValidationResult
)
from catalog.normalization import canonicalize, canonicalize_title, generate_slug

logger = logging.getLogger(__name__)

# Reason codes
EMPTY_NAME = 'empty_name'
PUNCTUATION_ONLY = 'punctuation_only'
NAME_TOO_LONG = 'name_too_long'
IMPLAUSIBLE_YEAR = 'implausible_year'
WRONG_ENTITY_TYPE = 'wrong_entity_type'
WRONG_LANGUAGE = 'wrong_language'
NO_RELEASE_YEAR = 'no_release_year'
NO_SOURCE_MATCH = 'no_source_match'
LOW_CONFIDENCE = 'low_confidence'
NEEDS_REVIEW = 'needs_review'
LOOKUP_FAILED = 'lookup_failed'

# Completeness warnings
NO_CREW_DATA = 'no_crew_data'
NO_DIRECTOR = 'no_director'
NO_CAST_DATA = 'no_cast_data'
INSUFFICIENT_CAST = 'insufficient_cast'
NO_IMAGES = 'no_images'


@dataclass
class GateOptions:
    """Per-call overrides of the gate policy"""
    require_release_year: Optional[bool] = None
    required_language: Optional[str] = None
    strict: Optional[bool] = None
    min_cast_members: Optional[int] = None


def canonical_form(name: str, kind: EntityKind) -> str:
    """Titles lose edition decorations; person names are canonicalized as-is"""
    if kind == EntityKind.MOVIE:
        return canonicalize_title(name)
    return canonicalize(name)


class IdentityGate:
    """Validates candidates against an authoritative source (anything with search()/fetch())"""

    def __init__(self, source, policy: Optional[GatePolicy] = None, current_year: Optional[int] = None):
        self.source = source
        self.policy = policy or GatePolicy()
        self.current_year = current_year or datetime.date.today().year

    def _malformation_reasons(self, candidate: Candidate) -> List[str]:
        name = candidate.name if isinstance(candidate.name, str) else ''
        if not name.strip():
            return [EMPTY_NAME]

        reasons = []
        if len(name) > self.policy.max_name_length:
            reasons.append(NAME_TOO_LONG)
        if not canonicalize(name):
            reasons.append(PUNCTUATION_ONLY)
        if candidate.year is not None:
            latest = self.current_year + self.policy.max_future_years
            if not (self.policy.min_year <= candidate.year <= latest):
                reasons.append(IMPLAUSIBLE_YEAR)
        return reasons

    def _lookup(self, candidate: Candidate) -> Optional[SourceRecord]:
        kind = candidate.kind.value
        if candidate.external_id:
            record = self.source.fetch(candidate.external_id, kind)
            if record is not None:
                return record
            logger.debug(f"External id {candidate.external_id} not found, searching by name")
        record = self.source.search(candidate.name, candidate.year, kind)
        if record is None and candidate.kind == EntityKind.MOVIE:
            # "Mayabazar (1957 film)" or "The ..." may only be listed under the bare title
            retry = canonicalize_title(candidate.name)
            if retry and retry != candidate.name.strip().lower():
                logger.debug(f"No match for '{candidate.name}', retrying as '{retry}'")
                record = self.source.search(retry, candidate.year, kind)
        return record

    @staticmethod
    def completeness_warnings(record: SourceRecord, min_cast_members: int) -> List[str]:
        """Director, cast and imagery checks for a movie record"""
        warnings = []
        if record.directors is None:
            warnings.append(NO_CREW_DATA)
        elif not any(d and d.strip() for d in record.directors):
            warnings.append(NO_DIRECTOR)

        if record.cast is None:
            warnings.append(NO_CAST_DATA)
        elif len([c for c in record.cast if c and c.strip()]) < min_cast_members:
            warnings.append(INSUFFICIENT_CAST)

        if not record.imagery:
            warnings.append(NO_IMAGES)
        return warnings

    def _year_score(self, wanted: Optional[int], found: Optional[int]) -> Optional[float]:
        if wanted is None or found is None:
            return None
        delta = abs(wanted - found)
        if delta == 0:
            return 1.0
        if delta <= self.policy.year_tolerance:
            return 0.5
        return 0.0

    def score(self, candidate: Candidate, record: Optional[SourceRecord]) -> float:
        """
        Weighted 0-1 confidence from external id / name similarity / year proximity

        When either year is unknown the year weight is dropped and the other
        two are renormalized, so people without birth dates are not capped.
        """
        if record is None:
            return 0.0

        wanted = canonical_form(candidate.name, candidate.kind)
        found = canonical_form(record.canonical_name, candidate.kind)
        name_similarity = fuzz.ratio(wanted, found) / 100.0 if found else 0.0

        parts = [
            (self.policy.weight_external_id, 1.0),
            (self.policy.weight_name, name_similarity),
        ]
        year_score = self._year_score(candidate.year, record.year)
        if year_score is not None:
            parts.append((self.policy.weight_year, year_score))

        total_weight = sum(w for w, _ in parts)
        if total_weight <= 0:
            return 0.0
        return round(sum(w * v for w, v in parts) / total_weight, 4)

    def _canonical_fields(self, candidate: Candidate, record: Optional[SourceRecord]) -> dict:
        year = candidate.year
        if record is not None and record.year is not None and candidate.kind == EntityKind.MOVIE:
            year = year or record.year
        canonical = canonical_form(candidate.name, candidate.kind)
        if candidate.kind == EntityKind.MOVIE:
            slug = generate_slug(canonicalize_title(candidate.name, strip_article=False), year)
        else:
            slug = generate_slug(canonical)
        return {
            'name': candidate.name.strip() if isinstance(candidate.name, str) else '',
            'canonical_name': canonical,
            'slug': slug,
            'year': year,
            'external_id': record.external_id if record else candidate.external_id,
            'original_language': record.original_language if record else None,
        }

    def validate_candidate(self, candidate: Candidate, options: Optional[GateOptions] = None) -> ValidationResult:
        """Run every check and return the verdict. Read-only."""
        options = options or GateOptions()
        require_year = (self.policy.require_release_year
                        if options.require_release_year is None else options.require_release_year)
        required_language = options.required_language or self.policy.required_language
        strict = self.policy.strict if options.strict is None else options.strict
        min_cast = options.min_cast_members or self.policy.min_cast_members

        reasons = self._malformation_reasons(candidate)
        if reasons:
            logger.debug(f"Gate: '{candidate.name}' malformed: {reasons}")
            return ValidationResult(
                status=GateStatus.REJECTED,
                reasons=reasons,
                canonical_fields=self._canonical_fields(candidate, None),
            )

        try:
            record = self._lookup(candidate)
        except LookupFailed as e:
            logger.warning(f"Gate: lookup failed for '{candidate.name}': {e}")
            return ValidationResult(
                status=GateStatus.LOOKUP_FAILED,
                reasons=[LOOKUP_FAILED],
                canonical_fields=self._canonical_fields(candidate, None),
            )

        fields = self._canonical_fields(candidate, record)

        if record is None:
            # Strict mode accepts nothing the source cannot confirm
            return ValidationResult(
                status=GateStatus.REJECTED if strict else GateStatus.UNVERIFIED,
                reasons=[NO_SOURCE_MATCH],
                canonical_fields=fields,
                confidence=0.0,
            )

        if record.type != candidate.kind.value:
            logger.info(f"Gate: '{candidate.name}' requested as {candidate.kind.value}, "
                        f"source says {record.type}")
            return ValidationResult(
                status=GateStatus.REJECTED,
                reasons=[WRONG_ENTITY_TYPE],
                canonical_fields=fields,
                source_record=record,
            )

        rejections, warnings = [], []
        if candidate.kind == EntityKind.MOVIE:
            if require_year and record.year is None:
                rejections.append(NO_RELEASE_YEAR)
            if (required_language and record.original_language
                    and record.original_language != required_language):
                rejections.append(WRONG_LANGUAGE)
            warnings = self.completeness_warnings(record, min_cast)
            if strict:
                rejections.extend(warnings)
        if rejections:
            return ValidationResult(
                status=GateStatus.REJECTED,
                reasons=rejections,
                canonical_fields=fields,
                source_record=record,
                warnings=warnings,
            )

        confidence = self.score(candidate, record)
        if confidence >= self.policy.verified_floor:
            status, reasons = GateStatus.VERIFIED, []
        elif confidence >= self.policy.unverified_floor:
            status, reasons = GateStatus.UNVERIFIED, [NEEDS_REVIEW]
        else:
            status, reasons = GateStatus.UNVERIFIED, [LOW_CONFIDENCE]

        logger.debug(f"Gate: '{candidate.name}' -> {status.value} ({confidence:.2f})")
        return ValidationResult(
            status=status,
            reasons=reasons,
            canonical_fields=fields,
            confidence=confidence,
            source_record=record,
            warnings=warnings,
        )
