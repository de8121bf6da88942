#!/usr/bin/env python3
"""
Exception hierarchy for the catalog integrity pipeline

External-source failures (LookupFailed, RateLimited) are kept apart from data
problems so a flaky network call never turns into a rejection.
"""

from typing import Optional


class CatalogError(Exception):
    """Base class for all pipeline errors"""

    retryable = False


class ConfigError(CatalogError):
    """Configuration file missing or malformed"""


class LookupFailed(CatalogError):
    """Authoritative source could not be queried (network, timeout, 5xx)"""

    retryable = True


class RateLimited(LookupFailed):
    """Authoritative source kept answering 429 after all retries"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidTransition(CatalogError):
    """Status change not allowed by the entity status lattice"""

    def __init__(self, entity_id: str, current, target):
        super().__init__(f"{entity_id}: cannot move from {current.value} to {target.value}")
        self.entity_id = entity_id
        self.current = current
        self.target = target


class StaleWrite(CatalogError):
    """Entity changed since it was read (optimistic version check failed)"""

    retryable = True

    def __init__(self, entity_id: str, expected: int, actual: int):
        super().__init__(f"{entity_id}: expected version {expected}, store has {actual}")
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class RetiredIdentifier(CatalogError):
    """Identifier belonged to a purged, rejected or merged-away record"""


class EntityNotFound(CatalogError):
    """No entity with the given identifier"""


class MergeConflict(CatalogError):
    """Lock contention, stale merge plan, or a failed write inside a merge"""

    retryable = True


def error_kind(exc: Exception) -> str:
    """Short snake_case label for reports: StaleWrite -> 'stale_write'"""
    if isinstance(exc, LookupFailed):
        return 'lookup_failed'
    if not isinstance(exc, CatalogError):
        return 'error'
    name = type(exc).__name__
    return ''.join('_' + c.lower() if c.isupper() else c for c in name).lstrip('_')
