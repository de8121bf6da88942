#!/usr/bin/env python3
"""
JSON-file catalog store and append-only merge log

CatalogStore keeps every entity keyed by internal id, plus the set of
retired ids (purged, rejected-and-dropped, merged away) that may never be
handed out again.

Write safety:
- update() is optimistic: the caller's version must match the stored one
- transaction() snapshots state and restores it if anything inside raises,
  including a failed file write after flush()
- lock_entities() serializes merges per entity cluster with a bounded wait
- the file is replaced atomically (temp file + os.replace)
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from catalog.errors import (
    CatalogError, EntityNotFound, MergeConflict, RetiredIdentifier, StaleWrite
)
from catalog.models import Entity, EntityKind, MergeLogEntry
from catalog.normalization import canonicalize

logger = logging.getLogger(__name__)


def _atomic_write(path: Path, payload: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class CatalogStore:
    """Entities keyed by internal id, persisted to a single JSON file"""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.RLock()
        self._entities: Dict[str, dict] = {}
        self._retired: Set[str] = set()
        self._entity_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._tx_depth = 0
        self.writes = 0
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self):
        if not self.path.exists():
            logger.info(f"No catalog at {self.path}, starting empty")
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CatalogError(f"Catalog file {self.path} is not valid JSON: {e}") from e

        for record in data.get('entities', []):
            # Round-trip once so stored free-text fields are normalized
            entity = Entity.from_dict(record)
            self._entities[entity.id] = entity.to_dict()
        self._retired = set(data.get('retired_ids', []))
        logger.info(f"Loaded catalog with {len(self._entities)} entities "
                    f"({len(self._retired)} retired ids)")

    def _serialize(self) -> str:
        return json.dumps({
            'entities': [self._entities[k] for k in sorted(self._entities)],
            'retired_ids': sorted(self._retired),
        }, indent=2, ensure_ascii=False)

    def _save(self):
        if self._tx_depth:
            return
        _atomic_write(self.path, self._serialize())
        logger.debug(f"Saved catalog with {len(self._entities)} entities")

    def flush(self):
        """Write the current state now, even inside a transaction"""
        with self._lock:
            _atomic_write(self.path, self._serialize())

    @contextmanager
    def transaction(self):
        """
        All-or-nothing block. Saves once at the end; on any exception the
        in-memory state is restored and, if flush() already ran, re-written.
        """
        with self._lock:
            snapshot = (dict(self._entities), set(self._retired), self.writes)
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._entities, self._retired, self.writes = snapshot
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    try:
                        _atomic_write(self.path, self._serialize())
                    except OSError as e:
                        logger.error(f"Could not restore catalog after rollback: {e}")
                raise
            self._tx_depth -= 1
            try:
                self._save()
            except OSError:
                self._entities, self._retired, self.writes = snapshot
                raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def get(self, entity_id: str) -> Entity:
        with self._lock:
            record = self._entities.get(entity_id)
        if record is None:
            raise EntityNotFound(entity_id)
        return Entity.from_dict(record)

    def find(self, entity_id: str) -> Optional[Entity]:
        with self._lock:
            record = self._entities.get(entity_id)
        return Entity.from_dict(record) if record else None

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._entities)

    def all_entities(self) -> List[Entity]:
        with self._lock:
            records = [self._entities[k] for k in sorted(self._entities)]
        return [Entity.from_dict(r) for r in records]

    def is_retired(self, entity_id: str) -> bool:
        return entity_id in self._retired

    def find_by_slug(self, slug: str) -> List[Entity]:
        return [e for e in self.all_entities() if e.slug == slug]

    def find_by_external_id(self, external_id: str) -> List[Entity]:
        if not external_id:
            return []
        return [e for e in self.all_entities() if e.external_id == external_id]

    def find_by_name(self, name: str, kind: Optional[EntityKind] = None) -> List[Entity]:
        """Entities whose name or any alias is canonically equal to name"""
        key = canonicalize(name)
        if not key:
            return []
        return [
            e for e in self.all_entities()
            if (kind is None or e.kind == kind)
            and key in {canonicalize(n) for n in e.all_names()}
        ]

    def iter_batches(self, batch_size: int, limit: Optional[int] = None,
                     offset: int = 0) -> Iterator[List[Entity]]:
        """Yield entities in id order, batch_size at a time"""
        ids = self.ids()[offset:]
        if limit is not None:
            ids = ids[:limit]
        for start in range(0, len(ids), batch_size):
            batch = [self.find(i) for i in ids[start:start + batch_size]]
            yield [e for e in batch if e is not None]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def new_id(self, kind: EntityKind) -> str:
        with self._lock:
            while True:
                candidate = f"{kind.value[0]}-{uuid.uuid4().hex[:10]}"
                if candidate not in self._entities and candidate not in self._retired:
                    return candidate

    def create(self, entity: Entity) -> Entity:
        with self._lock:
            if entity.id in self._retired:
                raise RetiredIdentifier(f"{entity.id} was retired and cannot be reused")
            if entity.id in self._entities:
                raise CatalogError(f"{entity.id} already exists")
            entity.version = 1
            self._entities[entity.id] = entity.to_dict()
            self.writes += 1
            self._save()
        logger.debug(f"Created {entity.kind.value} {entity.id} '{entity.name}'")
        return entity

    def update(self, entity: Entity, expected_version: Optional[int] = None) -> Entity:
        """Persist entity if nobody else wrote it since expected_version was read"""
        expected = entity.version if expected_version is None else expected_version
        with self._lock:
            current = self._entities.get(entity.id)
            if current is None:
                raise EntityNotFound(entity.id)
            if current['version'] != expected:
                raise StaleWrite(entity.id, expected, current['version'])
            entity.version = expected + 1
            self._entities[entity.id] = entity.to_dict()
            self.writes += 1
            self._save()
        return entity

    def delete(self, entity_id: str):
        """Remove a record and retire its id"""
        with self._lock:
            if entity_id not in self._entities:
                raise EntityNotFound(entity_id)
            del self._entities[entity_id]
            self._retired.add(entity_id)
            self.writes += 1
            self._save()

    def retire(self, entity_id: str):
        """Keep the record as a tombstone but never hand its id out again"""
        with self._lock:
            self._retired.add(entity_id)
            self._save()

    def restore(self, entity: Entity):
        """Put back a snapshot (undo of a merge), un-retiring its id"""
        with self._lock:
            self._retired.discard(entity.id)
            current = self._entities.get(entity.id)
            entity.version = (current['version'] if current else entity.version) + 1
            self._entities[entity.id] = entity.to_dict()
            self.writes += 1
            self._save()

    # ------------------------------------------------------------------
    # Cluster locks
    # ------------------------------------------------------------------

    def _entity_lock(self, entity_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._entity_locks.setdefault(entity_id, threading.Lock())

    @contextmanager
    def lock_entities(self, entity_ids: Iterable[str], timeout: float):
        """
        Exclusive section over a set of entities

        Locks are taken in sorted id order so two merges over overlapping
        clusters can't deadlock. Gives up after timeout with MergeConflict.
        """
        deadline = time.monotonic() + timeout
        acquired: List[threading.Lock] = []
        try:
            for entity_id in sorted(set(entity_ids)):
                lock = self._entity_lock(entity_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    raise MergeConflict(f"Timed out waiting for lock on {entity_id}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class MergeLog:
    """Append-only JSON-lines log of merges, queryable by survivor id"""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def append(self, entry: MergeLogEntry):
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + '\n')
                f.flush()
                os.fsync(f.fileno())
        logger.info(f"Merge log: {entry.action} {entry.entry_id} survivor={entry.survivor_id}")

    def entries(self) -> List[MergeLogEntry]:
        if not self.path.exists():
            return []
        entries = []
        with self._lock, open(self.path, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(MergeLogEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError) as e:
                    logger.warning(f"Skipping unreadable merge log line {line_no}: {e}")
        return entries

    def entries_for(self, survivor_id: str) -> List[MergeLogEntry]:
        return [e for e in self.entries() if e.survivor_id == survivor_id]

    def get(self, entry_id: str) -> Optional[MergeLogEntry]:
        for entry in self.entries():
            if entry.entry_id == entry_id:
                return entry
        return None
