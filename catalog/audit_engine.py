#!/usr/bin/env python3
"""
Audit engine: periodic validation sweep over the existing catalog

For every entity, in bounded batches:
1. Re-run the identity gate and move along the status lattice
   (a VERIFIED entity that now fails goes to NEEDS_REWORK, never straight
   to PURGED; repeated failures or an operator mark propose a purge)
2. Apply safe auto-fixes; destructive ones stay proposals unless allowed
3. Re-score the image and attach/drop the archive card
Then duplicate groups are detected across the swept entities and reported
for the merge engine. The audit never merges.

Gate lookups run in a bounded thread pool, one chunk at a time. Writes
happen on the calling thread after each chunk completes, each one preceded
by a printed before/after diff and guarded by the entity's version.
Cancellation is checked between chunks.

Running the sweep twice with no data change gives the same classification
and writes nothing the second time.
"""

import datetime
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import requests

from catalog import autofix
from catalog.config import PipelineConfig
from catalog.duplicates import DuplicateDetector, mention_counts
from catalog.errors import CatalogError, error_kind
from catalog.identity_gate import GateOptions, IdentityGate
from catalog.models import (
    AuditError, AuditReport, Candidate, Entity, EntityStatus, FixAction, GateStatus,
    ValidationResult
)
from catalog.store import CatalogStore
from catalog.visual import score_visual

logger = logging.getLogger(__name__)


@dataclass
class AuditOptions:
    """Batch options for one sweep"""
    batch_size: Optional[int] = None
    chunk_size: Optional[int] = None
    workers: Optional[int] = None
    limit: Optional[int] = None
    offset: int = 0
    apply: bool = False
    allow_destructive: bool = False
    check_reachability: bool = False
    detect_duplicates: bool = True
    gate_options: Optional[GateOptions] = None


@dataclass
class _Outcome:
    """What auditing one entity produced, before anything is written"""
    entity_id: str
    original: Entity
    updated: Entity
    fixes: List[FixAction] = field(default_factory=list)
    purge_proposed: bool = False
    error: Optional[AuditError] = None

    @property
    def changed(self) -> bool:
        return self.original.to_dict() != self.updated.to_dict()


def diff_entities(before: Entity, after: Entity) -> List[str]:
    """Field-level before/after lines for an entity"""
    old, new = before.to_dict(), after.to_dict()
    lines = []
    for key in old:
        if key == 'version':
            continue
        if old[key] != new.get(key):
            lines.append(f"  {key}: {old[key]!r} -> {new.get(key)!r}")
    return lines


class AuditEngine:
    """Runs validation sweeps over a CatalogStore"""

    def __init__(self, store: CatalogStore, gate: IdentityGate, config: Optional[PipelineConfig] = None,
                 cancel_event: Optional[threading.Event] = None,
                 session: Optional[requests.Session] = None,
                 printer: Callable[[str], None] = print,
                 today: Optional[datetime.date] = None):
        self.store = store
        self.gate = gate
        self.config = config or PipelineConfig()
        self.cancel_event = cancel_event or threading.Event()
        self.session = session
        self.printer = printer
        self.today = (today or datetime.date.today()).isoformat()
        self.detector = DuplicateDetector(self.config.merge, self.config.matching)

    def cancel(self):
        """Stop after the chunk in flight"""
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Status lattice
    # ------------------------------------------------------------------

    @staticmethod
    def _gate_failed(result: ValidationResult) -> bool:
        return result.status in (GateStatus.REJECTED, GateStatus.UNVERIFIED)

    def _record_failure(self, entity: Entity):
        # One failure per entity per day, so re-running a sweep is a no-op
        if entity.last_failed_audit != self.today:
            entity.rework_count += 1
            entity.last_failed_audit = self.today

    def _apply_lattice(self, entity: Entity, result: ValidationResult) -> bool:
        """Move entity along the lattice for this gate result. Returns True if a purge is due."""
        status = entity.status

        if result.status == GateStatus.LOOKUP_FAILED:
            return False

        entity.status_reasons = list(result.reasons)

        if status == EntityStatus.UNVERIFIED:
            if result.status == GateStatus.VERIFIED:
                entity.transition(EntityStatus.VERIFIED)
            elif result.status == GateStatus.REJECTED:
                entity.transition(EntityStatus.REJECTED)

        elif status == EntityStatus.VERIFIED:
            if self._gate_failed(result):
                entity.transition(EntityStatus.NEEDS_REWORK)
                self._record_failure(entity)

        elif status == EntityStatus.NEEDS_REWORK:
            # An operator mark blocks recovery so the purge can go ahead
            if result.status == GateStatus.VERIFIED and not entity.marked_for_removal:
                entity.transition(EntityStatus.VERIFIED)
                entity.rework_count = 0
                entity.last_failed_audit = None
            else:
                self._record_failure(entity)

        return (entity.status == EntityStatus.NEEDS_REWORK
                and entity.rework_count >= self.config.audit.purge_after_reworks)

    # ------------------------------------------------------------------
    # Per entity
    # ------------------------------------------------------------------

    def _audit_entity(self, entity: Entity, options: AuditOptions) -> _Outcome:
        """Compute everything for one entity without writing. Never raises."""
        working = Entity.from_dict(entity.to_dict())
        outcome = _Outcome(entity.id, entity, working)

        if entity.status.terminal:
            return outcome

        try:
            result = self.gate.validate_candidate(Candidate.from_entity(working), options.gate_options)
            if result.status == GateStatus.LOOKUP_FAILED:
                outcome.error = AuditError(entity.id, 'lookup_failed',
                                           'authoritative source unavailable', retryable=True)

            due = self._apply_lattice(working, result)
            outcome.purge_proposed = due or (working.marked_for_removal and not working.status.terminal)

            fixes = []
            fixes += autofix.fill_external_id(working, result)
            fixes += autofix.fill_slug(working)
            fixes += autofix.fill_from_source(working, result, self.config.matching)
            fixes += autofix.strip_lead_from_supporting_cast(working, self.config.matching)
            fixes += autofix.complete_duo_name(working, self.config.audit.duo_rules)

            visual = score_visual(working.image, self.config.visual,
                                  options.check_reachability, self.session)
            if visual.reason == 'placeholder':
                destructive = autofix.clear_placeholder_image(working, visual)
                fixes += destructive
                if destructive and not options.allow_destructive:
                    # Keep the proposal, undo it on the working copy
                    working.image.url = entity.image.url
                    working.image.source = entity.image.source
                else:
                    # The source poster can take the placeholder's place straight away
                    fixes += autofix.fill_from_source(working, result, self.config.matching)
                    visual = score_visual(working.image, self.config.visual, False, self.session)

            fixes += autofix.refresh_visual(working, visual)
            outcome.fixes = fixes

        except CatalogError as e:
            logger.warning(f"Audit of {entity.id} failed: {e}")
            outcome.updated = Entity.from_dict(entity.to_dict())
            outcome.error = AuditError(entity.id, error_kind(e), str(e), e.retryable)
        except Exception as e:
            # One bad record must not abort the sweep
            logger.error(f"Audit of {entity.id} raised {type(e).__name__}: {e}")
            outcome.updated = Entity.from_dict(entity.to_dict())
            outcome.fixes = []
            outcome.error = AuditError(entity.id, 'error', f"{type(e).__name__}: {e}", retryable=False)

        return outcome

    def _purge(self, outcome: _Outcome, options: AuditOptions, report: AuditReport):
        entity = outcome.updated
        if not (options.apply and options.allow_destructive):
            report.purge_proposals.append(entity.id)
            return
        # A verified record steps down first; it can be purged on a later sweep
        if entity.status == EntityStatus.VERIFIED:
            entity.transition(EntityStatus.NEEDS_REWORK)
        elif entity.status == EntityStatus.UNVERIFIED:
            entity.transition(EntityStatus.REJECTED)
        else:
            entity.transition(EntityStatus.PURGED)
        outcome.fixes.append(FixAction(entity.id, 'purge', 'status', outcome.original.status.value,
                                       entity.status.value, destructive=True))

    def _persist(self, outcome: _Outcome, options: AuditOptions, report: AuditReport):
        """Print the diff and write one entity, applying only what the mode allows"""
        if outcome.purge_proposed:
            self._purge(outcome, options, report)

        if not outcome.changed:
            return

        label = '[APPLY]' if options.apply else '[DRY RUN]'
        self.printer(f"{label} {outcome.entity_id} '{outcome.original.name}'")
        for line in diff_entities(outcome.original, outcome.updated):
            self.printer(line)

        if not options.apply:
            return

        for fix in outcome.fixes:
            if not fix.destructive or options.allow_destructive:
                fix.applied = True

        try:
            self.store.update(outcome.updated, expected_version=outcome.original.version)
            if outcome.updated.status.terminal:
                self.store.retire(outcome.entity_id)
            report.writes += 1
        except CatalogError as e:
            logger.warning(f"Write for {outcome.entity_id} skipped: {e}")
            report.errors.append(AuditError(outcome.entity_id, error_kind(e), str(e), e.retryable))
            for fix in outcome.fixes:
                fix.applied = False
            outcome.updated = outcome.original

    @staticmethod
    def _classify(entity: Entity, report: AuditReport):
        buckets = {
            EntityStatus.VERIFIED: report.verified,
            EntityStatus.UNVERIFIED: report.unverified,
            EntityStatus.NEEDS_REWORK: report.needs_rework,
            EntityStatus.REJECTED: report.rejected,
            EntityStatus.PURGED: report.purged,
        }
        buckets[entity.status].append(entity.id)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _chunks(self, batch: List[Entity], size: int):
        for start in range(0, len(batch), size):
            yield batch[start:start + size]

    def run_audit(self, options: Optional[AuditOptions] = None) -> AuditReport:
        """Sweep the catalog and return the report"""
        options = options or AuditOptions()
        policy = self.config.audit
        batch_size = options.batch_size or policy.batch_size
        chunk_size = options.chunk_size or policy.chunk_size
        workers = options.workers or policy.workers

        report = AuditReport()
        swept: List[Entity] = []
        logger.info(f"Audit sweep: batch={batch_size} chunk={chunk_size} workers={workers} "
                    f"apply={options.apply} destructive={options.allow_destructive}")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            for batch in self.store.iter_batches(batch_size, options.limit, options.offset):
                for chunk in self._chunks(batch, chunk_size):
                    if self.cancel_event.is_set():
                        report.cancelled = True
                        break

                    outcomes = list(pool.map(lambda e: self._audit_entity(e, options), chunk))
                    for outcome in outcomes:
                        report.validated += 1
                        if outcome.error is not None:
                            report.errors.append(outcome.error)
                        self._persist(outcome, options, report)
                        report.fixes.extend(outcome.fixes)
                        self._classify(outcome.updated, report)
                        swept.append(outcome.updated)

                if report.cancelled:
                    logger.warning(f"Audit cancelled after {report.validated} entities")
                    break

        if options.detect_duplicates and swept:
            counts = mention_counts(self.store.all_entities())
            report.duplicates_found = self.detector.find_groups(swept, counts)

        logger.info(
            f"Audit done: {report.validated} audited, {len(report.verified)} verified, "
            f"{len(report.needs_rework)} needs rework, {len(report.rejected)} rejected, "
            f"{len(report.purged)} purged, {len(report.duplicates_found)} duplicate groups, "
            f"{len(report.errors)} errors, {report.writes} writes"
        )
        return report
