#!/usr/bin/env python3
"""
Immutable pipeline configuration

load_config() reads the YAML file once at startup and returns a frozen
PipelineConfig that is passed into every component. Defaults come from
catalog/constants.py; any YAML section only overrides the keys it names.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import yaml

from catalog import constants as C
from catalog.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchPolicy:
    """Disambiguation guard for token-set name matches"""
    min_guard_tokens: int = C.MIN_GUARD_TOKENS
    min_guard_token_length: int = C.MIN_GUARD_TOKEN_LENGTH


@dataclass(frozen=True)
class GatePolicy:
    """Identity gate bounds, weights and floors"""
    max_name_length: int = C.MAX_NAME_LENGTH
    min_year: int = C.MIN_YEAR
    max_future_years: int = C.MAX_FUTURE_YEARS
    weight_external_id: float = C.WEIGHT_EXTERNAL_ID
    weight_name: float = C.WEIGHT_NAME_SIMILARITY
    weight_year: float = C.WEIGHT_YEAR_PROXIMITY
    year_tolerance: int = C.YEAR_TOLERANCE
    unverified_floor: float = C.UNVERIFIED_FLOOR
    verified_floor: float = C.VERIFIED_FLOOR
    require_release_year: bool = True
    required_language: Optional[str] = None  # ISO 639-1, e.g. 'te'
    strict: bool = False                     # credit/image warnings reject
    min_cast_members: int = C.MIN_CAST_MEMBERS


@dataclass(frozen=True)
class KnownSource:
    """One entry of the image source registry"""
    code: str
    name: str
    tier: int
    domains: Tuple[str, ...] = ()
    base_confidence: float = 0.5
    attribution: str = ''
    license: str = 'unknown'

    @property
    def requires_attribution(self) -> bool:
        return self.license in ('attribution_required', 'editorial_use', 'archive_license')

    def owns_host(self, host: str) -> bool:
        """True if host is one of the registered domains or a subdomain of one"""
        host = host.lower()
        return any(host == d or host.endswith('.' + d) for d in self.domains)


def _default_sources() -> Tuple[KnownSource, ...]:
    return tuple(
        KnownSource(code, name, tier, tuple(domains), base, attribution, license_)
        for code, (name, tier, domains, base, attribution, license_) in C.KNOWN_SOURCES.items()
    )


@dataclass(frozen=True)
class VisualPolicy:
    """Visual tier ranges, placeholder detection and the source registry"""
    tier_ranges: Tuple[Tuple[int, float, float], ...] = tuple(
        (tier, low, high) for tier, (low, high) in sorted(C.TIER_RANGES.items())
    )
    tier3_no_image: float = C.TIER3_NO_IMAGE
    tier3_placeholder: float = C.TIER3_PLACEHOLDER
    tier3_unreachable: float = C.TIER3_UNREACHABLE
    tier3_unrecognized: float = C.TIER3_UNRECOGNIZED
    placeholder_patterns: Tuple[str, ...] = tuple(C.PLACEHOLDER_PATTERNS)
    suspicious_hosts: Tuple[str, ...] = tuple(C.SUSPICIOUS_HOSTS)
    reachability_timeout: float = C.REACHABILITY_TIMEOUT
    sources: Tuple[KnownSource, ...] = field(default_factory=_default_sources)

    def tier_range(self, tier: int) -> Tuple[float, float]:
        for t, low, high in self.tier_ranges:
            if t == tier:
                return low, high
        raise KeyError(f"No confidence range configured for tier {tier}")

    def source_by_code(self, code: Optional[str]) -> Optional[KnownSource]:
        if not code:
            return None
        code = code.lower()
        for source in self.sources:
            if source.code == code:
                return source
        return None

    def source_for_url(self, url: str) -> Optional[KnownSource]:
        host = urlparse(url).hostname or ''
        if not host:
            return None
        for source in self.sources:
            if source.owns_host(host):
                return source
        return None


@dataclass(frozen=True)
class MergePolicy:
    """Duplicate linking, pair scoring and auto-merge floor"""
    link_similarity: float = C.LINK_SIMILARITY
    collapsed_similarity: float = C.COLLAPSED_SIMILARITY
    name_weight: float = C.NAME_WEIGHT
    filmography_weight: float = C.FILMOGRAPHY_WEIGHT
    disjoint_filmography_factor: float = C.DISJOINT_FILMOGRAPHY_FACTOR
    missing_filmography_factor: float = C.MISSING_FILMOGRAPHY_FACTOR
    year_mismatch_factor: float = C.YEAR_MISMATCH_FACTOR
    group_size_decay: float = C.GROUP_SIZE_DECAY
    year_tolerance: int = C.YEAR_TOLERANCE
    auto_merge_floor: float = C.AUTO_MERGE_FLOOR
    lock_timeout: float = C.LOCK_TIMEOUT
    completeness_weights: Tuple[Tuple[str, int], ...] = tuple(C.COMPLETENESS_WEIGHTS.items())
    analytics_counters: Tuple[str, ...] = tuple(C.ANALYTICS_COUNTERS)


@dataclass(frozen=True)
class DuoRule:
    """Professional duo credited under a joint name while active"""
    members: Tuple[str, ...]
    joint_name: str
    first_year: int
    last_year: int


@dataclass(frozen=True)
class AuditPolicy:
    """Batching, worker pool and purge policy for audit sweeps"""
    batch_size: int = C.DEFAULT_BATCH_SIZE
    chunk_size: int = C.DEFAULT_CHUNK_SIZE
    workers: int = C.DEFAULT_WORKERS
    purge_after_reworks: int = C.PURGE_AFTER_REWORKS
    duo_rules: Tuple[DuoRule, ...] = tuple(
        DuoRule(tuple(members), joint, first, last)
        for members, joint, first, last in C.DUO_RULES
    )


@dataclass(frozen=True)
class PipelineConfig:
    """Everything a pipeline component needs, built once per run"""
    tmdb_api_key: Optional[str] = None
    catalog_path: Path = Path('output/catalog.json')
    merge_log_path: Path = Path('output/merge_log.jsonl')
    cache_path: Path = Path('output/tmdb_cache.json')
    matching: MatchPolicy = field(default_factory=MatchPolicy)
    gate: GatePolicy = field(default_factory=GatePolicy)
    visual: VisualPolicy = field(default_factory=VisualPolicy)
    merge: MergePolicy = field(default_factory=MergePolicy)
    audit: AuditPolicy = field(default_factory=AuditPolicy)


def _override(section: str, base, values: Optional[Dict]):
    """Return a copy of a policy dataclass with the YAML keys applied"""
    if not values:
        return base
    if not isinstance(values, dict):
        raise ConfigError(f"Config section '{section}' must be a mapping")

    known = {f.name for f in dataclasses.fields(base)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")

    converted = {}
    for key, value in values.items():
        current = getattr(base, key)
        # YAML gives lists; the frozen policies hold tuples
        if isinstance(current, tuple) and isinstance(value, list):
            value = tuple(tuple(v) if isinstance(v, list) else v for v in value)
        converted[key] = value
    return dataclasses.replace(base, **converted)


def _merge_sources(visual: VisualPolicy, entries) -> VisualPolicy:
    """Add or replace registry entries by code"""
    if not entries:
        return visual
    by_code = {s.code: s for s in visual.sources}
    for entry in entries:
        try:
            source = KnownSource(
                code=entry['code'],
                name=entry.get('name', entry['code']),
                tier=int(entry['tier']),
                domains=tuple(entry.get('domains', [])),
                base_confidence=float(entry.get('base_confidence', 0.5)),
                attribution=entry.get('attribution', ''),
                license=entry.get('license', 'unknown'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid source registry entry {entry!r}: {e}") from e
        if source.tier not in (1, 2):
            raise ConfigError(f"Source '{source.code}' must be tier 1 or 2")
        by_code[source.code] = source
    return dataclasses.replace(visual, sources=tuple(by_code.values()))


def _duo_rules(audit: AuditPolicy, entries) -> AuditPolicy:
    if not entries:
        return audit
    try:
        rules = tuple(
            DuoRule(tuple(e['members']), e['joint_name'], int(e['first_year']), int(e['last_year']))
            for e in entries
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid duo rule: {e}") from e
    return dataclasses.replace(audit, duo_rules=rules)


TOP_LEVEL_KEYS = frozenset({
    'tmdb_api_key', 'catalog_path', 'merge_log_path', 'cache_path',
    'matching', 'gate', 'visual', 'sources', 'merge', 'audit',
})


def build_config(raw: Optional[Dict]) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed YAML mapping"""
    raw = dict(raw or {})
    defaults = PipelineConfig()

    # A misspelled section would otherwise fall back to defaults silently
    unknown = set(raw) - TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown top-level config keys: {', '.join(sorted(map(str, unknown)))}")

    audit_section = dict(raw.get('audit') or {})
    duo_entries = audit_section.pop('duo_rules', None)

    visual = _override('visual', defaults.visual, raw.get('visual'))
    visual = _merge_sources(visual, raw.get('sources'))

    return PipelineConfig(
        tmdb_api_key=raw.get('tmdb_api_key') or None,
        catalog_path=Path(raw.get('catalog_path', defaults.catalog_path)),
        merge_log_path=Path(raw.get('merge_log_path', defaults.merge_log_path)),
        cache_path=Path(raw.get('cache_path', defaults.cache_path)),
        matching=_override('matching', defaults.matching, raw.get('matching')),
        gate=_override('gate', defaults.gate, raw.get('gate')),
        visual=visual,
        merge=_override('merge', defaults.merge, raw.get('merge')),
        audit=_duo_rules(_override('audit', defaults.audit, audit_section), duo_entries),
    )


def load_config(config_path: Path) -> PipelineConfig:
    """Load configuration from YAML file"""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e

    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    config = build_config(raw)
    logger.debug(f"Loaded config from {config_path}")
    return config
