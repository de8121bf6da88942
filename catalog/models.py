#!/usr/bin/env python3
"""
Data model for catalog entities and pipeline results

Entity.from_dict() is the single place where loosely-typed stored records
(comma-list role fields, string/dict/JSON supporting cast) are normalized.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from catalog.constants import MOVIE_ROLE_FIELDS
from catalog.errors import InvalidTransition
from catalog.names import CastEntry, NameList, parse_cast, parse_name_list
from catalog.normalization import canonicalize, canonicalize_title, generate_slug


class EntityKind(str, Enum):
    MOVIE = 'movie'
    PERSON = 'person'


class EntityStatus(str, Enum):
    UNVERIFIED = 'unverified'
    VERIFIED = 'verified'
    REJECTED = 'rejected'
    NEEDS_REWORK = 'needs_rework'
    PURGED = 'purged'

    @property
    def terminal(self) -> bool:
        return self in (EntityStatus.REJECTED, EntityStatus.PURGED)

    def can_transition_to(self, target: 'EntityStatus') -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    EntityStatus.UNVERIFIED: {EntityStatus.VERIFIED, EntityStatus.REJECTED},
    EntityStatus.VERIFIED: {EntityStatus.NEEDS_REWORK},
    EntityStatus.NEEDS_REWORK: {EntityStatus.VERIFIED, EntityStatus.PURGED},
    EntityStatus.REJECTED: set(),
    EntityStatus.PURGED: set(),
}


class GateStatus(str, Enum):
    """Identity gate outcome"""
    VERIFIED = 'verified'
    UNVERIFIED = 'unverified'
    REJECTED = 'rejected'
    LOOKUP_FAILED = 'lookup_failed'


class VisualType(str, Enum):
    ORIGINAL_POSTER = 'original_poster'
    ARCHIVAL_STILL = 'archival_still'
    PLACEHOLDER = 'placeholder'


class ArchiveReason(str, Enum):
    NO_VERIFIED_SOURCE = 'no_verified_source'
    NEVER_SEARCHED = 'never_searched'
    SEARCHED_NOT_FOUND = 'searched_not_found'
    PENDING_RIGHTS_CLEARANCE = 'pending_rights_clearance'


@dataclass
class VisualConfidenceResult:
    """Tier and confidence for one image reference"""
    tier: int
    confidence: float
    visual_type: VisualType
    reason: str
    source: Optional[str] = None       # registry code when recognized
    attribution: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'tier': self.tier,
            'confidence': self.confidence,
            'visual_type': self.visual_type.value,
            'reason': self.reason,
            'source': self.source,
            'attribution': self.attribution,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'VisualConfidenceResult':
        return cls(
            tier=int(data['tier']),
            confidence=float(data['confidence']),
            visual_type=VisualType(data['visual_type']),
            reason=data.get('reason', ''),
            source=data.get('source'),
            attribution=data.get('attribution'),
        )


@dataclass
class ImageRef:
    """Image reference plus provenance metadata"""
    url: Optional[str] = None
    source: Optional[str] = None           # declared source code, e.g. 'tmdb', 'wikimedia'
    rights_status: str = 'unknown'         # cleared | pending | unknown
    searched_at: Optional[str] = None      # ISO date of the last image search, None = never
    visual: Optional[VisualConfidenceResult] = None

    def to_dict(self) -> dict:
        return {
            'url': self.url,
            'source': self.source,
            'rights_status': self.rights_status,
            'searched_at': self.searched_at,
            'visual': self.visual.to_dict() if self.visual else None,
        }

    @classmethod
    def from_dict(cls, data) -> 'ImageRef':
        if isinstance(data, str):
            return cls(url=data or None)
        if not isinstance(data, dict):
            return cls()
        visual = data.get('visual')
        return cls(
            url=data.get('url') or None,
            source=data.get('source') or None,
            rights_status=data.get('rights_status') or 'unknown',
            searched_at=data.get('searched_at'),
            visual=VisualConfidenceResult.from_dict(visual) if visual else None,
        )


@dataclass
class ArchiveCard:
    """Honest 'no image available' record. Never carries an image URL."""
    reason: ArchiveReason
    reason_text: str
    verification_status: str
    display_title: str
    display_year: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'reason': self.reason.value,
            'reason_text': self.reason_text,
            'verification_status': self.verification_status,
            'display_title': self.display_title,
            'display_year': self.display_year,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ArchiveCard':
        return cls(
            reason=ArchiveReason(data['reason']),
            reason_text=data.get('reason_text', ''),
            verification_status=data.get('verification_status', ''),
            display_title=data.get('display_title', ''),
            display_year=data.get('display_year'),
        )


@dataclass
class Entity:
    """A movie or person record in the catalog"""
    id: str
    kind: EntityKind
    name: str
    external_id: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    year: Optional[int] = None
    slug: str = ''
    roles: Dict[str, NameList] = field(default_factory=dict)   # movies only
    occupations: List[str] = field(default_factory=list)       # people only
    supporting_cast: List[CastEntry] = field(default_factory=list)
    image: ImageRef = field(default_factory=ImageRef)
    archive_card: Optional[ArchiveCard] = None
    status: EntityStatus = EntityStatus.UNVERIFIED
    status_reasons: List[str] = field(default_factory=list)
    analytics: Dict[str, int] = field(default_factory=dict)
    references: List[str] = field(default_factory=list)
    original_language: Optional[str] = None
    rework_count: int = 0
    last_failed_audit: Optional[str] = None    # ISO date; failures count once per day
    marked_for_removal: bool = False
    version: int = 0

    @property
    def canonical_name(self) -> str:
        if self.kind == EntityKind.MOVIE:
            return canonicalize_title(self.name)
        return canonicalize(self.name)

    def expected_slug(self) -> str:
        if self.kind == EntityKind.MOVIE:
            return generate_slug(canonicalize_title(self.name, strip_article=False), self.year)
        return generate_slug(self.canonical_name)

    def all_names(self) -> List[str]:
        """Canonical name first, then aliases"""
        return [self.name] + [a for a in self.aliases if a]

    def add_alias(self, alias: str) -> bool:
        """Add alias unless it is canonically equal to a name already held"""
        key = canonicalize(alias)
        if not key or key in {canonicalize(n) for n in self.all_names()}:
            return False
        self.aliases.append(alias)
        return True

    def role(self, role_field: str) -> NameList:
        return self.roles.get(role_field, NameList())

    def transition(self, target: EntityStatus):
        """Move along the status lattice, raising InvalidTransition otherwise"""
        if target == self.status:
            return
        if not self.status.can_transition_to(target):
            raise InvalidTransition(self.id, self.status, target)
        self.status = target

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'name': self.name,
            'external_id': self.external_id,
            'aliases': list(self.aliases),
            'year': self.year,
            'slug': self.slug,
            'roles': {k: list(v.names) for k, v in self.roles.items() if v},
            'occupations': list(self.occupations),
            'supporting_cast': [c.to_dict() for c in self.supporting_cast],
            'image': self.image.to_dict(),
            'archive_card': self.archive_card.to_dict() if self.archive_card else None,
            'status': self.status.value,
            'status_reasons': list(self.status_reasons),
            'analytics': dict(self.analytics),
            'references': list(self.references),
            'original_language': self.original_language,
            'rework_count': self.rework_count,
            'last_failed_audit': self.last_failed_audit,
            'marked_for_removal': self.marked_for_removal,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Entity':
        """Build an Entity from a stored or imported record, normalizing free-text fields"""
        kind = EntityKind(data.get('kind', 'movie'))

        roles: Dict[str, NameList] = {}
        raw_roles = data.get('roles') or {}
        for role_field in MOVIE_ROLE_FIELDS:
            value = raw_roles.get(role_field, data.get(role_field))
            names = parse_name_list(value)
            if names:
                roles[role_field] = names

        occupations = data.get('occupations') or data.get('occupation') or []
        if isinstance(occupations, str):
            occupations = [o.strip().lower() for o in occupations.split(',') if o.strip()]

        year = data.get('year')
        try:
            year = int(year) if year not in (None, '') else None
        except (TypeError, ValueError):
            year = None

        card = data.get('archive_card')
        external_id = data.get('external_id')

        return cls(
            id=str(data['id']),
            kind=kind,
            name=(data.get('name') or '').strip(),
            external_id=str(external_id) if external_id not in (None, '') else None,
            aliases=[a for a in (data.get('aliases') or []) if isinstance(a, str) and a.strip()],
            year=year,
            slug=data.get('slug') or '',
            roles=roles,
            occupations=list(occupations),
            supporting_cast=parse_cast(data.get('supporting_cast')),
            image=ImageRef.from_dict(data.get('image')),
            archive_card=ArchiveCard.from_dict(card) if card else None,
            status=EntityStatus(data.get('status', 'unverified')),
            status_reasons=list(data.get('status_reasons') or []),
            analytics={k: int(v) for k, v in (data.get('analytics') or {}).items()},
            references=[str(r) for r in (data.get('references') or [])],
            original_language=data.get('original_language'),
            rework_count=int(data.get('rework_count') or 0),
            last_failed_audit=data.get('last_failed_audit'),
            marked_for_removal=bool(data.get('marked_for_removal', False)),
            version=int(data.get('version') or 0),
        )


@dataclass
class SourceRecord:
    """What the authoritative source says about an entity"""
    external_id: str
    type: str                               # movie | person | tv | collection
    canonical_name: str
    release_or_birth_date: Optional[str] = None
    imagery: List[str] = field(default_factory=list)
    original_language: Optional[str] = None
    # Credits; None when the source sent no crew/cast data at all
    directors: Optional[List[str]] = None
    cast: Optional[List[str]] = None

    @property
    def year(self) -> Optional[int]:
        date = self.release_or_birth_date or ''
        try:
            return int(date[:4]) if len(date) >= 4 else None
        except ValueError:
            return None

    def to_dict(self) -> dict:
        return {
            'external_id': self.external_id,
            'type': self.type,
            'canonical_name': self.canonical_name,
            'release_or_birth_date': self.release_or_birth_date,
            'imagery': list(self.imagery),
            'original_language': self.original_language,
            'directors': self.directors,
            'cast': self.cast,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SourceRecord':
        return cls(
            external_id=str(data['external_id']),
            type=data['type'],
            canonical_name=data.get('canonical_name', ''),
            release_or_birth_date=data.get('release_or_birth_date'),
            imagery=list(data.get('imagery') or []),
            original_language=data.get('original_language'),
            directors=data.get('directors'),
            cast=data.get('cast'),
        )


@dataclass
class Candidate:
    """A record someone wants to create (or an existing one being re-validated)"""
    name: str
    kind: EntityKind
    year: Optional[int] = None
    external_id: Optional[str] = None

    @classmethod
    def from_entity(cls, entity: Entity) -> 'Candidate':
        return cls(entity.name, entity.kind, entity.year, entity.external_id)


@dataclass
class ValidationResult:
    """Identity gate verdict"""
    status: GateStatus
    reasons: List[str] = field(default_factory=list)
    canonical_fields: Dict[str, object] = field(default_factory=dict)
    confidence: float = 0.0
    source_record: Optional[SourceRecord] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class PairEvidence:
    """Why two records were grouped, and how strongly"""
    left: str
    right: str
    score: float
    name_similarity: float
    filmography_overlap: Optional[float]
    signals: List[str] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    """Records believed to be the same real-world entity. Not persisted."""
    entity_ids: List[str]
    kind: EntityKind
    confidence: float
    suggested_name: str
    evidence: List[PairEvidence] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, ...]:
        return tuple(sorted(self.entity_ids))


@dataclass(frozen=True)
class MergeLogEntry:
    """Immutable audit trail for one merge (or its undo)"""
    entry_id: str
    action: str                              # merge | undo
    survivor_id: str
    survivor_name: str
    absorbed_ids: Tuple[str, ...]
    absorbed_aliases: Tuple[str, ...]
    affected_ids: Tuple[str, ...]
    analytics: Tuple[Tuple[str, int], ...]
    timestamp: str
    confidence: Optional[float] = None
    snapshots: Tuple[Tuple[str, str], ...] = ()   # (entity id, JSON of the record before)
    result_versions: Tuple[Tuple[str, int], ...] = ()
    undoes: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'entry_id': self.entry_id,
            'action': self.action,
            'survivor_id': self.survivor_id,
            'survivor_name': self.survivor_name,
            'absorbed_ids': list(self.absorbed_ids),
            'absorbed_aliases': list(self.absorbed_aliases),
            'affected_ids': list(self.affected_ids),
            'analytics': dict(self.analytics),
            'timestamp': self.timestamp,
            'confidence': self.confidence,
            'snapshots': dict(self.snapshots),
            'result_versions': dict(self.result_versions),
            'undoes': self.undoes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'MergeLogEntry':
        return cls(
            entry_id=data['entry_id'],
            action=data.get('action', 'merge'),
            survivor_id=data['survivor_id'],
            survivor_name=data.get('survivor_name', ''),
            absorbed_ids=tuple(data.get('absorbed_ids') or ()),
            absorbed_aliases=tuple(data.get('absorbed_aliases') or ()),
            affected_ids=tuple(data.get('affected_ids') or ()),
            analytics=tuple(sorted((data.get('analytics') or {}).items())),
            timestamp=data.get('timestamp', ''),
            confidence=data.get('confidence'),
            snapshots=tuple(sorted((data.get('snapshots') or {}).items())),
            result_versions=tuple(sorted((data.get('result_versions') or {}).items())),
            undoes=data.get('undoes'),
        )


@dataclass
class MergeResult:
    """Outcome of merge(); identical shape for dry-run and apply"""
    survivor_id: str
    survivor_name: str
    absorbed_ids: List[str]
    absorbed_aliases: List[str]
    affected_ids: List[str]
    analytics: Dict[str, int]
    dry_run: bool
    applied: bool = False
    log_entry: Optional[MergeLogEntry] = None
    changes: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def decision(self) -> tuple:
        """Everything that must agree between a preview and the real merge"""
        return (
            self.survivor_id,
            self.survivor_name,
            tuple(self.absorbed_ids),
            tuple(sorted(self.absorbed_aliases)),
            tuple(sorted(self.affected_ids)),
            tuple(sorted(self.analytics.items())),
        )


@dataclass
class FixAction:
    """One proposed or applied auto-fix, with enough detail to reverse it"""
    entity_id: str
    action: str
    field: str
    old_value: object
    new_value: object
    destructive: bool = False
    applied: bool = False


@dataclass
class AuditError:
    """Per-entity failure collected during a sweep"""
    entity_id: str
    kind: str               # lookup_failed | stale_write | merge_conflict | error
    message: str
    retryable: bool


@dataclass
class AuditReport:
    """Result of one audit sweep, classified by each entity's resulting status"""
    validated: int = 0
    verified: List[str] = field(default_factory=list)
    unverified: List[str] = field(default_factory=list)
    needs_rework: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    purged: List[str] = field(default_factory=list)
    purge_proposals: List[str] = field(default_factory=list)
    duplicates_found: List[DuplicateGroup] = field(default_factory=list)
    fixes: List[FixAction] = field(default_factory=list)
    errors: List[AuditError] = field(default_factory=list)
    writes: int = 0
    cancelled: bool = False

    @property
    def unrecoverable_errors(self) -> List[AuditError]:
        return [e for e in self.errors if not e.retryable]

    def classification(self) -> dict:
        """Order-independent view used to compare two sweeps"""
        return {
            'validated': self.validated,
            'verified': sorted(self.verified),
            'unverified': sorted(self.unverified),
            'needs_rework': sorted(self.needs_rework),
            'rejected': sorted(self.rejected),
            'purged': sorted(self.purged),
            'purge_proposals': sorted(self.purge_proposals),
            'duplicates_found': sorted(
                (g.key, round(g.confidence, 4)) for g in self.duplicates_found
            ),
        }
