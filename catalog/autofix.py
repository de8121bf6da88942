#!/usr/bin/env python3
"""
Audit auto-fixes

Each fix mutates the entity it is given and returns the FixActions it made,
with old and new values so the change can be reversed by hand.

Safe (information-preserving):
- strip_lead_from_supporting_cast
- complete_duo_name
- fill_external_id / fill_slug
- fill_from_source (poster, director and cast a verified record lacks)
- refresh_visual

Destructive (proposed only unless the operator allows them):
- clear_placeholder_image
"""

import logging
from typing import List, Optional

from catalog.config import DuoRule, MatchPolicy
from catalog.constants import LEAD_ROLE_FIELDS
from catalog.models import (
    Entity, EntityKind, FixAction, GateStatus, ImageRef, ValidationResult, VisualConfidenceResult
)
from catalog.names import CastEntry, NameList, any_name_matches
from catalog.normalization import canonicalize
from catalog.visual import apply_visual

logger = logging.getLogger(__name__)


def _cast_names(entity: Entity) -> List[str]:
    return [f"{c.name} ({c.role})" if c.role else c.name for c in entity.supporting_cast]


def strip_lead_from_supporting_cast(entity: Entity, match_policy: Optional[MatchPolicy] = None) -> List[FixAction]:
    """Drop supporting-cast entries that repeat the hero/heroine credit"""
    if entity.kind != EntityKind.MOVIE or not entity.supporting_cast:
        return []

    leads = [name for role_field in LEAD_ROLE_FIELDS for name in entity.role(role_field)]
    if not leads:
        return []

    kept = [c for c in entity.supporting_cast if not any_name_matches(c.name, leads, match_policy)]
    if len(kept) == len(entity.supporting_cast):
        return []

    before = _cast_names(entity)
    logger.debug(f"{entity.id}: dropping {len(entity.supporting_cast) - len(kept)} lead credit(s) from supporting cast")
    entity.supporting_cast = kept
    return [FixAction(entity.id, 'strip_lead_from_supporting_cast', 'supporting_cast',
                      before, _cast_names(entity))]


def _complete_duo(names: NameList, rule: DuoRule) -> NameList:
    members = {canonicalize(m) for m in rule.members}
    joint_key = canonicalize(rule.joint_name)

    out: List[str] = []
    for name in names:
        key = canonicalize(name)
        value = rule.joint_name if key in members or key == joint_key else name
        if canonicalize(value) not in {canonicalize(o) for o in out}:
            out.append(value)
    return NameList(tuple(out))


def complete_duo_name(entity: Entity, rules) -> List[FixAction]:
    """
    Replace a lone duo member's composer credit with the joint credit

    Only inside the duo's active years: Koti credited alone on a 1990 film
    is Raj-Koti, on a 2005 film it is Koti.
    """
    if entity.kind != EntityKind.MOVIE or entity.year is None:
        return []

    composers = entity.role('music_director')
    if not composers:
        return []

    fixes = []
    for rule in rules:
        if not (rule.first_year <= entity.year <= rule.last_year):
            continue
        updated = _complete_duo(composers, rule)
        if updated != composers:
            fixes.append(FixAction(entity.id, 'complete_duo_name', 'music_director',
                                   composers.as_text(), updated.as_text()))
            composers = updated

    if fixes:
        logger.debug(f"{entity.id}: composer credit completed to {composers.as_text()}")
        entity.roles['music_director'] = composers
    return fixes


def fill_external_id(entity: Entity, result: ValidationResult) -> List[FixAction]:
    """Record the external id of a verified match when the entity has none"""
    external_id = result.canonical_fields.get('external_id')
    if result.status != GateStatus.VERIFIED or entity.external_id or not external_id:
        return []
    entity.external_id = external_id
    return [FixAction(entity.id, 'fill_external_id', 'external_id', None, external_id)]


def fill_slug(entity: Entity) -> List[FixAction]:
    """Regenerate a missing or stale slug from the canonical name"""
    expected = entity.expected_slug()
    if not expected or entity.slug == expected:
        return []
    before = entity.slug
    entity.slug = expected
    return [FixAction(entity.id, 'fill_slug', 'slug', before or None, expected)]


def _distinct(names) -> List[str]:
    out: List[str] = []
    for name in names or []:
        name = (name or '').strip()
        if name and canonicalize(name) not in {canonicalize(o) for o in out}:
            out.append(name)
    return out


def fill_from_source(entity: Entity, result: ValidationResult,
                     match_policy: Optional[MatchPolicy] = None) -> List[FixAction]:
    """
    Copy what a verified source record has and the entity lacks

    - poster: the record's first image, as a cleared TMDb image
    - director: every credited director
    - supporting cast: the billed cast minus the hero/heroine credits

    Fields that already hold anything are left alone, so a second run is a no-op.
    """
    record = result.source_record
    if (result.status != GateStatus.VERIFIED or record is None
            or record.type != entity.kind.value):
        return []

    fixes = []
    if not entity.image.url and record.imagery:
        entity.image = ImageRef(url=record.imagery[0], source='tmdb', rights_status='cleared')
        fixes.append(FixAction(entity.id, 'fill_from_source', 'image.url', None, record.imagery[0]))

    if entity.kind != EntityKind.MOVIE:
        return fixes

    directors = _distinct(record.directors)
    if directors and not entity.role('director'):
        entity.roles['director'] = NameList(tuple(directors))
        fixes.append(FixAction(entity.id, 'fill_from_source', 'director', None,
                               entity.role('director').as_text()))

    if not entity.supporting_cast:
        leads = [name for role_field in LEAD_ROLE_FIELDS for name in entity.role(role_field)]
        cast = [n for n in _distinct(record.cast) if not any_name_matches(n, leads, match_policy)]
        if cast:
            entity.supporting_cast = [CastEntry(n) for n in cast]
            fixes.append(FixAction(entity.id, 'fill_from_source', 'supporting_cast', [], cast))

    if fixes:
        logger.debug(f"{entity.id}: filled {', '.join(f.field for f in fixes)} from {record.external_id}")
    return fixes


def refresh_visual(entity: Entity, result: VisualConfidenceResult) -> List[FixAction]:
    """Write visual tier metadata and attach or drop the archive card"""
    before_visual = entity.image.visual.to_dict() if entity.image.visual else None
    before_card = entity.archive_card.to_dict() if entity.archive_card else None
    if not apply_visual(entity, result):
        return []

    fixes = []
    after_visual = result.to_dict()
    if before_visual != after_visual:
        fixes.append(FixAction(entity.id, 'refresh_visual', 'image.visual', before_visual, after_visual))
    after_card = entity.archive_card.to_dict() if entity.archive_card else None
    if before_card != after_card:
        fixes.append(FixAction(entity.id, 'refresh_visual', 'archive_card', before_card, after_card))
    return fixes


def clear_placeholder_image(entity: Entity, result: VisualConfidenceResult) -> List[FixAction]:
    """Remove an image URL that only points at a placeholder (destructive)"""
    if result.reason != 'placeholder' or not entity.image.url:
        return []
    before = entity.image.url
    entity.image.url = None
    entity.image.source = None
    return [FixAction(entity.id, 'clear_placeholder_image', 'image.url', before, None, destructive=True)]

