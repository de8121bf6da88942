#!/usr/bin/env python3
"""
Merge engine: collapse a duplicate group into one surviving entity

merge() always builds the full plan in memory first (_plan). dry_run returns
that plan; apply re-plans under the cluster lock and writes it inside one
store transaction, so a preview and the real merge cannot drift apart.

Nothing is discarded:
- absorbed names and aliases become survivor aliases
- empty survivor fields are filled from absorbed records
- analytics counters are summed (preserve_analytics)
- every reference to an absorbed record or name is re-pointed
- the merge log keeps before-snapshots for undo()
"""

import dataclasses
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from catalog.config import MatchPolicy, MergePolicy
from catalog.duplicates import DuplicateDetector, mention_counts, rank_survivors
from catalog.errors import CatalogError, MergeConflict
from catalog.models import (
    DuplicateGroup, Entity, EntityKind, MergeLogEntry, MergeResult
)
from catalog.names import CastEntry
from catalog.normalization import canonicalize, generate_slug
from catalog.store import CatalogStore, MergeLog

logger = logging.getLogger(__name__)

AMBIGUOUS_MATCH = 'ambiguous_match'


@dataclass
class CandidateOptions:
    """Filters for find_merge_candidates()"""
    kind: Optional[EntityKind] = None
    min_confidence: float = 0.0
    entity_id: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class AutoMergeReport:
    merged: List[MergeResult] = field(default_factory=list)
    ambiguous: List[DuplicateGroup] = field(default_factory=list)
    failed: List[MergeResult] = field(default_factory=list)


@dataclass
class _MergePlan:
    survivor: Entity
    absorbed: List[Entity]
    updated_others: List[Entity]
    snapshots: Dict[str, dict]
    read_versions: Dict[str, int]
    absorbed_aliases: List[str]
    changes: List[str]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds')


class MergeEngine:
    """Finds merge candidates and executes (or previews) merges"""

    def __init__(self, store: CatalogStore, merge_log: MergeLog,
                 policy: Optional[MergePolicy] = None, match_policy: Optional[MatchPolicy] = None):
        self.store = store
        self.merge_log = merge_log
        self.policy = policy or MergePolicy()
        self.detector = DuplicateDetector(self.policy, match_policy)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def find_merge_candidates(self, options: Optional[CandidateOptions] = None) -> List[DuplicateGroup]:
        options = options or CandidateOptions()
        entities = self.store.all_entities()
        if options.kind is not None:
            pool = [e for e in entities if e.kind == options.kind]
        else:
            pool = entities

        groups = self.detector.find_groups(pool, mention_counts(entities))
        groups = [g for g in groups if g.confidence >= options.min_confidence]
        if options.entity_id:
            groups = [g for g in groups if options.entity_id in g.entity_ids]
        if options.limit is not None:
            groups = groups[:options.limit]
        return groups

    # ------------------------------------------------------------------
    # Planning (pure, in memory)
    # ------------------------------------------------------------------

    def _load_members(self, group: DuplicateGroup) -> List[Entity]:
        members = []
        for entity_id in group.entity_ids:
            entity = self.store.find(entity_id)
            if entity is None:
                raise MergeConflict(f"Stale group: {entity_id} no longer exists")
            if entity.status.terminal:
                raise MergeConflict(f"{entity_id} is {entity.status.value} and cannot be merged")
            members.append(entity)

        if len(members) < 2:
            raise MergeConflict("A merge needs at least two records")
        if len({m.kind for m in members}) > 1:
            raise MergeConflict("Cannot merge movies with people")
        if len({m.external_id for m in members if m.external_id}) > 1:
            raise MergeConflict("Group holds conflicting external ids")
        return members

    @staticmethod
    def _fill_empty(survivor: Entity, donor: Entity, changes: List[str]):
        def note(field_name, value):
            changes.append(f"{survivor.id}: {field_name} <- {value!r} (from {donor.id})")

        if not survivor.external_id and donor.external_id:
            survivor.external_id = donor.external_id
            note('external_id', donor.external_id)
        if survivor.year is None and donor.year is not None:
            survivor.year = donor.year
            note('year', donor.year)
        if not survivor.original_language and donor.original_language:
            survivor.original_language = donor.original_language
            note('original_language', donor.original_language)
        if not survivor.image.url and donor.image.url:
            survivor.image = dataclasses.replace(donor.image)
            survivor.archive_card = donor.archive_card
            note('image', donor.image.url)
        for role_field, names in donor.roles.items():
            if not survivor.role(role_field) and names:
                survivor.roles[role_field] = names
                note(role_field, names.as_text())
        for occupation in donor.occupations:
            if occupation not in survivor.occupations:
                survivor.occupations.append(occupation)
                note('occupations', occupation)
        if not survivor.supporting_cast and donor.supporting_cast:
            survivor.supporting_cast = list(donor.supporting_cast)
            note('supporting_cast', len(donor.supporting_cast))

    def _repoint(self, other: Entity, absorbed_ids: Set[str], absorbed_names: Set[str],
                 survivor: Entity, changes: List[str]) -> bool:
        """Point other's references and name credits at the survivor"""
        changed = False

        if absorbed_ids & set(other.references):
            refs: List[str] = []
            for ref in other.references:
                ref = survivor.id if ref in absorbed_ids else ref
                if ref not in refs:
                    refs.append(ref)
            changes.append(f"{other.id}: references {other.references} -> {refs}")
            other.references = refs
            changed = True

        if survivor.kind == EntityKind.PERSON and other.kind == EntityKind.MOVIE and absorbed_names:
            for role_field, names in list(other.roles.items()):
                updated = names
                for name in names:
                    if canonicalize(name) in absorbed_names:
                        updated = updated.replace(name, survivor.name)
                if updated != names:
                    changes.append(f"{other.id}: {role_field} {names.as_text()!r} -> {updated.as_text()!r}")
                    other.roles[role_field] = updated
                    changed = True

            cast = []
            for entry in other.supporting_cast:
                if canonicalize(entry.name) in absorbed_names:
                    changes.append(f"{other.id}: supporting_cast {entry.name!r} -> {survivor.name!r}")
                    entry = CastEntry(survivor.name, entry.role)
                    changed = True
                cast.append(entry)
            other.supporting_cast = cast

        return changed

    def _plan(self, group: DuplicateGroup, canonical_name: Optional[str],
              preserve_analytics: bool) -> _MergePlan:
        members = self._load_members(group)
        everyone = self.store.all_entities()
        counts = mention_counts(everyone)

        ranked = rank_survivors(members, counts, self.policy.completeness_weights)
        survivor, absorbed = ranked[0], ranked[1:]
        snapshots = {m.id: m.to_dict() for m in members}
        read_versions = {m.id: m.version for m in members}
        changes: List[str] = []

        renamed_from = None
        if canonical_name and canonical_name.strip() and canonical_name.strip() != survivor.name:
            new_name = canonical_name.strip()
            old_name = renamed_from = survivor.name
            survivor.name = new_name
            survivor.add_alias(old_name)
            changes.append(f"{survivor.id}: name {old_name!r} -> {new_name!r}")

        # Counters before the merge, summed over every member
        analytics: Dict[str, int] = {}
        for member in members:
            for counter, value in member.analytics.items():
                analytics[counter] = analytics.get(counter, 0) + value

        absorbed_aliases: List[str] = []
        for donor in absorbed:
            for name in donor.all_names():
                if survivor.add_alias(name):
                    absorbed_aliases.append(name)
                    changes.append(f"{survivor.id}: alias + {name!r}")
            self._fill_empty(survivor, donor, changes)
            for ref in donor.references:
                if ref not in survivor.references and ref != survivor.id:
                    survivor.references.append(ref)
                    changes.append(f"{survivor.id}: reference + {ref}")
            changes.append(f"{donor.id}: retired (merged into {survivor.id})")

        if preserve_analytics:
            if analytics != survivor.analytics:
                changes.append(f"{survivor.id}: analytics {survivor.analytics} -> {analytics}")
            survivor.analytics = dict(analytics)

        survivor.references = [r for r in survivor.references if r not in {d.id for d in absorbed}]
        survivor.slug = survivor.slug or generate_slug(
            survivor.canonical_name, survivor.year if survivor.kind == EntityKind.MOVIE else None)

        absorbed_ids = {d.id for d in absorbed}
        survivor_key = canonicalize(survivor.name)
        absorbed_names = {
            canonicalize(n) for d in absorbed for n in d.all_names()
        }
        if renamed_from:
            absorbed_names.add(canonicalize(renamed_from))
        absorbed_names = {n for n in absorbed_names if n and n != survivor_key}

        member_ids = {m.id for m in members}
        updated_others = []
        for other in everyone:
            if other.id in member_ids:
                continue
            before = other.to_dict()
            if self._repoint(other, absorbed_ids, absorbed_names, survivor, changes):
                snapshots[other.id] = before
                read_versions[other.id] = other.version
                updated_others.append(other)

        return _MergePlan(
            survivor=survivor,
            absorbed=absorbed,
            updated_others=updated_others,
            snapshots=snapshots,
            read_versions=read_versions,
            absorbed_aliases=absorbed_aliases,
            changes=changes,
        )

    def _result(self, plan: _MergePlan, dry_run: bool, confidence: Optional[float]) -> MergeResult:
        entry = MergeLogEntry(
            entry_id=uuid.uuid4().hex[:12],
            action='merge',
            survivor_id=plan.survivor.id,
            survivor_name=plan.survivor.name,
            absorbed_ids=tuple(d.id for d in plan.absorbed),
            absorbed_aliases=tuple(plan.absorbed_aliases),
            affected_ids=tuple(sorted(o.id for o in plan.updated_others)),
            analytics=tuple(sorted(plan.survivor.analytics.items())),
            timestamp=_now(),
            confidence=confidence,
            snapshots=tuple(sorted(
                (k, json.dumps(v, ensure_ascii=False, sort_keys=True)) for k, v in plan.snapshots.items()
            )),
        )
        return MergeResult(
            survivor_id=plan.survivor.id,
            survivor_name=plan.survivor.name,
            absorbed_ids=[d.id for d in plan.absorbed],
            absorbed_aliases=list(plan.absorbed_aliases),
            affected_ids=sorted(o.id for o in plan.updated_others),
            analytics=dict(plan.survivor.analytics),
            dry_run=dry_run,
            log_entry=entry,
            changes=list(plan.changes),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _write(self, plan: _MergePlan, result: MergeResult):
        """Apply a plan atomically: all entity writes plus the log entry, or nothing"""
        with self.store.transaction():
            versions = {}
            for entity in [plan.survivor] + plan.updated_others:
                self.store.update(entity, expected_version=plan.read_versions[entity.id])
                versions[entity.id] = entity.version
            for donor in plan.absorbed:
                current = self.store.get(donor.id)
                if current.version != plan.read_versions[donor.id]:
                    raise MergeConflict(f"{donor.id} changed while merging")
                self.store.delete(donor.id)
            self.store.flush()

            entry = dataclasses.replace(result.log_entry, result_versions=tuple(sorted(versions.items())))
            self.merge_log.append(entry)
        result.log_entry = entry

    def merge(self, group: DuplicateGroup, canonical_name: Optional[str] = None,
              dry_run: bool = True, preserve_analytics: bool = True) -> MergeResult:
        """
        Merge a duplicate group into its survivor

        Errors (lock timeout, stale group, failed write) come back on
        MergeResult.error with nothing written.
        """
        try:
            plan = self._plan(group, canonical_name, preserve_analytics)
        except CatalogError as e:
            logger.warning(f"Merge of {group.entity_ids} not possible: {e}")
            return self._failed(group, dry_run, str(e))

        result = self._result(plan, dry_run, group.confidence)
        if dry_run:
            return result

        lock_ids = set(group.entity_ids) | set(result.affected_ids)
        try:
            with self.store.lock_entities(lock_ids, self.policy.lock_timeout):
                # Re-plan under the lock; anything that changed since the preview
                # either shows up in the new plan or fails the version checks
                plan = self._plan(group, canonical_name, preserve_analytics)
                if not {o.id for o in plan.updated_others} <= lock_ids:
                    raise MergeConflict("New references appeared since planning; retry next sweep")
                result = self._result(plan, dry_run, group.confidence)
                self._write(plan, result)
        except (CatalogError, OSError) as e:
            logger.error(f"Merge into {result.survivor_id} rolled back: {e}")
            result.error = str(e)
            return result

        result.applied = True
        logger.info(f"Merged {result.absorbed_ids} into {result.survivor_id} '{result.survivor_name}' "
                    f"({len(result.affected_ids)} references re-pointed)")
        return result

    @staticmethod
    def _failed(group: DuplicateGroup, dry_run: bool, message: str) -> MergeResult:
        return MergeResult(
            survivor_id='',
            survivor_name=group.suggested_name,
            absorbed_ids=[],
            absorbed_aliases=[],
            affected_ids=[],
            analytics={},
            dry_run=dry_run,
            error=message,
        )

    def auto_merge(self, min_confidence: Optional[float] = None, dry_run: bool = True,
                   groups: Optional[List[DuplicateGroup]] = None) -> AutoMergeReport:
        """
        Merge every group at or above the floor; route the rest for review
        """
        floor = self.policy.auto_merge_floor if min_confidence is None else min_confidence
        if groups is None:
            groups = self.find_merge_candidates()

        report = AutoMergeReport()
        for group in groups:
            if group.confidence < floor:
                logger.info(f"{AMBIGUOUS_MATCH}: {group.entity_ids} ({group.confidence:.2f} < {floor:.2f})")
                report.ambiguous.append(group)
                continue
            result = self.merge(group, dry_run=dry_run)
            if result.error:
                report.failed.append(result)
            else:
                report.merged.append(result)
        return report

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, entry_id: str, dry_run: bool = True) -> MergeResult:
        """Restore the records a merge touched, if none changed since"""
        entries = self.merge_log.entries()
        entry = next((e for e in entries if e.entry_id == entry_id), None)
        if entry is None or entry.action != 'merge':
            raise CatalogError(f"No merge with entry id {entry_id}")
        if any(e.undoes == entry_id for e in entries):
            raise CatalogError(f"Merge {entry_id} was already undone")

        for entity_id, version in entry.result_versions:
            current = self.store.find(entity_id)
            if current is None or current.version != version:
                raise MergeConflict(f"{entity_id} changed since merge {entry_id}; undo by hand")
        for entity_id in entry.absorbed_ids:
            if entity_id in self.store:
                raise MergeConflict(f"{entity_id} exists again; undo by hand")

        restored = [Entity.from_dict(json.loads(raw)) for _, raw in entry.snapshots]
        result = MergeResult(
            survivor_id=entry.survivor_id,
            survivor_name=entry.survivor_name,
            absorbed_ids=list(entry.absorbed_ids),
            absorbed_aliases=list(entry.absorbed_aliases),
            affected_ids=list(entry.affected_ids),
            analytics=dict(entry.analytics),
            dry_run=dry_run,
            changes=[f"{e.id}: restore version before merge {entry_id}" for e in restored],
        )
        if dry_run:
            return result

        undo_entry = MergeLogEntry(
            entry_id=uuid.uuid4().hex[:12],
            action='undo',
            survivor_id=entry.survivor_id,
            survivor_name=entry.survivor_name,
            absorbed_ids=entry.absorbed_ids,
            absorbed_aliases=entry.absorbed_aliases,
            affected_ids=entry.affected_ids,
            analytics=entry.analytics,
            timestamp=_now(),
            undoes=entry_id,
        )
        with self.store.lock_entities([e.id for e in restored], self.policy.lock_timeout):
            with self.store.transaction():
                for entity in restored:
                    self.store.restore(entity)
                self.store.flush()
                self.merge_log.append(undo_entry)

        result.applied = True
        result.log_entry = undo_entry
        logger.info(f"Undid merge {entry_id}: restored {len(restored)} records")
        return result
