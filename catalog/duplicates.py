#!/usr/bin/env python3
"""
Duplicate detection: link records that look like the same entity, close the
links transitively, and score each resulting group

Linking signals (any one is enough):
- same external id
- canonical names/aliases equal, or equal once repeated letters collapse
  ("Radhika" / "Raadhika")
- names_match() in either direction
- canonical name similarity >= link_similarity

Never linked: different kinds, different external ids, years further apart
than the tolerance.

Group confidence is the mean pair score over ALL pairs in the group, decayed
by group size, so a chain of weak links scores lower than a tight pair.
Filmography overlap dominates: two "Prasad"s with disjoint filmographies are
almost certainly two people.
"""

import logging
from collections import Counter, defaultdict
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Set, Tuple

from fuzzywuzzy import fuzz

from catalog.config import MatchPolicy, MergePolicy
from catalog.models import DuplicateGroup, Entity, EntityKind, PairEvidence
from catalog.names import names_match
from catalog.normalization import canonicalize, canonicalize_title, collapse_repeats

logger = logging.getLogger(__name__)

# Token prefixes used for blocking; pairs sharing no block are never compared
BLOCK_PREFIX_LENGTH = 4
MIN_BLOCK_TOKEN_LENGTH = 3


def _canonical(name: str, kind: EntityKind) -> str:
    return canonicalize_title(name) if kind == EntityKind.MOVIE else canonicalize(name)


class _UnionFind:
    def __init__(self):
        self.parent: Dict[str, str] = {}

    def find(self, x: str) -> str:
        self.parent.setdefault(x, x)
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: str, b: str):
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Smaller id becomes root so grouping is deterministic
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra


def mention_counts(entities: Iterable[Entity]) -> Counter:
    """How often each exact spelling is used across names and movie credits"""
    counts: Counter = Counter()
    for entity in entities:
        counts[entity.name.strip()] += 1
        if entity.kind == EntityKind.MOVIE:
            for names in entity.roles.values():
                for name in names:
                    counts[name.strip()] += 1
            for entry in entity.supporting_cast:
                counts[entry.name.strip()] += 1
    return counts


def completeness(entity: Entity, weights: Iterable[Tuple[str, int]]) -> int:
    """Data completeness score used to pick a merge survivor"""
    present = {
        'name': bool(entity.name),
        'year': entity.year is not None,
        'external_id': bool(entity.external_id),
        'image': bool(entity.image.url),
        'roles': bool(entity.roles) or bool(entity.occupations),
        'supporting_cast': bool(entity.supporting_cast),
        'aliases': bool(entity.aliases),
        'references': bool(entity.references),
        'original_language': bool(entity.original_language),
    }
    return sum(weight for key, weight in weights if present.get(key))


def rank_survivors(entities: List[Entity], counts: Counter,
                   weights: Iterable[Tuple[str, int]]) -> List[Entity]:
    """
    Best survivor first: external id, then completeness, then most frequent
    spelling, then lowest id
    """
    weights = list(weights)
    return sorted(
        entities,
        key=lambda e: (
            0 if e.external_id else 1,
            -completeness(e, weights),
            -counts.get(e.name.strip(), 0),
            e.id,
        )
    )


class DuplicateDetector:
    """Finds and scores duplicate groups among catalog entities"""

    def __init__(self, policy: Optional[MergePolicy] = None, match_policy: Optional[MatchPolicy] = None):
        self.policy = policy or MergePolicy()
        self.match_policy = match_policy or MatchPolicy()

    # ------------------------------------------------------------------
    # Pair level
    # ------------------------------------------------------------------

    def _blocking_keys(self, entity: Entity) -> Set[str]:
        keys = set()
        if entity.external_id:
            keys.add(f"ext:{entity.external_id}")
        for name in entity.all_names():
            canonical = _canonical(name, entity.kind)
            if not canonical:
                continue
            keys.add(f"full:{collapse_repeats(canonical.replace(' ', ''))}")
            for token in canonical.split(' '):
                if len(token) >= MIN_BLOCK_TOKEN_LENGTH:
                    keys.add(f"tok:{collapse_repeats(token)[:BLOCK_PREFIX_LENGTH]}")
        return {f"{entity.kind.value}|{k}" for k in keys}

    def _years_compatible(self, a: Entity, b: Entity) -> bool:
        if a.year is None or b.year is None:
            return True
        return abs(a.year - b.year) <= self.policy.year_tolerance

    def name_similarity(self, a: Entity, b: Entity) -> Tuple[float, List[str]]:
        """Best similarity over all name/alias pairs, with the signals that fired"""
        best = 0.0
        signals: Set[str] = set()
        for name_a in a.all_names():
            for name_b in b.all_names():
                ca, cb = _canonical(name_a, a.kind), _canonical(name_b, b.kind)
                if not ca or not cb:
                    continue
                if ca == cb:
                    best = 1.0
                    signals.add('exact_name' if name_a == a.name and name_b == b.name else 'alias_collision')
                    continue
                similarity = fuzz.ratio(ca, cb) / 100.0
                if collapse_repeats(ca) == collapse_repeats(cb):
                    similarity = max(similarity, self.policy.collapsed_similarity)
                    signals.add('collapsed_name')
                if names_match(name_a, name_b, self.match_policy) or names_match(name_b, name_a, self.match_policy):
                    similarity = max(similarity, self.policy.link_similarity)
                    signals.add('name_match')
                if similarity >= self.policy.link_similarity:
                    signals.add('similar_name')
                best = max(best, similarity)
        return best, sorted(signals)

    def linked(self, a: Entity, b: Entity) -> Optional[List[str]]:
        """Signals linking a and b, or None if they must not be grouped"""
        if a.kind != b.kind or a.id == b.id:
            return None
        if a.external_id and b.external_id:
            if a.external_id == b.external_id:
                return ['external_id']
            return None
        if not self._years_compatible(a, b):
            return None
        similarity, signals = self.name_similarity(a, b)
        if similarity >= self.policy.link_similarity and signals:
            return signals
        return None

    def pair_evidence(self, a: Entity, b: Entity) -> PairEvidence:
        """Score how likely a and b are the same entity"""
        if a.external_id and b.external_id:
            same = a.external_id == b.external_id
            return PairEvidence(a.id, b.id, 1.0 if same else 0.0, 1.0 if same else 0.0, None,
                                ['external_id'] if same else ['conflicting_external_ids'])
        if not self._years_compatible(a, b):
            return PairEvidence(a.id, b.id, 0.0, 0.0, None, ['year_conflict'])

        similarity, signals = self.name_similarity(a, b)
        refs_a, refs_b = set(a.references), set(b.references)

        overlap = None
        if refs_a and refs_b:
            overlap = len(refs_a & refs_b) / len(refs_a | refs_b)
            if overlap == 0:
                score = similarity * self.policy.disjoint_filmography_factor
                signals = signals + ['disjoint_filmography']
            else:
                score = similarity * self.policy.name_weight + overlap * self.policy.filmography_weight
                signals = signals + ['shared_filmography']
        else:
            score = similarity * self.policy.missing_filmography_factor

        if a.year is not None and b.year is not None and a.year != b.year:
            score *= self.policy.year_mismatch_factor
            signals = signals + ['year_differs']

        return PairEvidence(a.id, b.id, round(score, 4), round(similarity, 4),
                            None if overlap is None else round(overlap, 4), signals)

    # ------------------------------------------------------------------
    # Group level
    # ------------------------------------------------------------------

    def group_confidence(self, evidence: List[PairEvidence], size: int) -> float:
        if not evidence:
            return 0.0
        mean = sum(e.score for e in evidence) / len(evidence)
        decay = self.policy.group_size_decay ** max(0, size - 2)
        return round(mean * decay, 4)

    def score_group(self, members: List[Entity], counts: Optional[Counter] = None) -> DuplicateGroup:
        members = sorted(members, key=lambda e: e.id)
        evidence = [self.pair_evidence(a, b) for a, b in combinations(members, 2)]
        confidence = self.group_confidence(evidence, len(members))

        external_ids = {e.external_id for e in members if e.external_id}
        if len(external_ids) > 1:
            confidence = 0.0

        counts = counts if counts is not None else mention_counts(members)
        survivor = rank_survivors(members, counts, self.policy.completeness_weights)[0]
        return DuplicateGroup(
            entity_ids=[e.id for e in members],
            kind=members[0].kind,
            confidence=confidence,
            suggested_name=survivor.name,
            evidence=evidence,
        )

    def find_groups(self, entities: List[Entity], counts: Optional[Counter] = None) -> List[DuplicateGroup]:
        """
        Group live entities (terminal statuses are ignored)

        counts: spelling frequencies across the whole catalog; computed from
        the given entities when omitted.
        """
        live = [e for e in entities if not e.status.terminal]
        by_id = {e.id: e for e in live}
        if counts is None:
            counts = mention_counts(entities)

        blocks: Dict[str, List[str]] = defaultdict(list)
        for entity in live:
            for key in self._blocking_keys(entity):
                blocks[key].append(entity.id)

        uf = _UnionFind()
        compared: Set[Tuple[str, str]] = set()
        for ids in blocks.values():
            for left, right in combinations(sorted(set(ids)), 2):
                if (left, right) in compared:
                    continue
                compared.add((left, right))
                signals = self.linked(by_id[left], by_id[right])
                if signals:
                    logger.debug(f"Linked {left} ~ {right}: {signals}")
                    uf.union(left, right)

        clusters: Dict[str, List[Entity]] = defaultdict(list)
        for entity_id in uf.parent:
            clusters[uf.find(entity_id)].append(by_id[entity_id])

        groups = [
            self.score_group(members, counts)
            for members in clusters.values() if len(members) >= 2
        ]
        groups.sort(key=lambda g: (-g.confidence, g.key))
        logger.info(f"Duplicate detection: {len(live)} entities, {len(compared)} pairs compared, "
                    f"{len(groups)} groups")
        return groups
