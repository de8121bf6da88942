#!/usr/bin/env python3
"""
TMDb lookup client with persistent JSON caching

Authoritative source for the identity gate. Answers "what is this, really?"
for a name or an external id and returns a SourceRecord.

Failure contract:
- no match             -> None (cached like any other answer)
- HTTP 429             -> back off and retry, then RateLimited
- timeout / network / 5xx / no API key -> LookupFailed
Failures are never cached, so the next sweep retries them.

External ids are stored typed ("movie/603", "person/1892") because TMDb
numbers movies, shows and people independently.
"""

import difflib
import json
import logging
import random
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import requests

from catalog.constants import (
    SOURCE_TYPE_COLLECTION, SOURCE_TYPE_MOVIE, SOURCE_TYPE_PERSON, SOURCE_TYPE_TV
)
from catalog.errors import LookupFailed, RateLimited
from catalog.models import SourceRecord

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"

# Endpoint lookup order for legacy untyped ids
_LOOKUP_ORDER = [SOURCE_TYPE_MOVIE, SOURCE_TYPE_TV, SOURCE_TYPE_PERSON, SOURCE_TYPE_COLLECTION]

# Media types whose detail endpoint can append credits
_CREDITED_TYPES = (SOURCE_TYPE_MOVIE, SOURCE_TYPE_TV)

# Top-billed cast kept per record
CAST_LIMIT = 10


def split_external_id(external_id: str) -> Tuple[Optional[str], str]:
    """'movie/603' -> ('movie', '603'); '603' -> (None, '603')"""
    if '/' in external_id:
        kind, _, number = external_id.partition('/')
        return kind, number
    return None, external_id


class TMDbClient:
    """Interface to The Movie Database API with persistent caching"""

    def __init__(self, api_key: Optional[str], cache_path: Path,
                 session: Optional[requests.Session] = None,
                 max_retries: int = 3, backoff: float = 1.0, timeout: float = 10,
                 sleep: Callable[[float], None] = time.sleep):
        self.api_key = api_key
        self.base_url = "https://api.themoviedb.org/3"
        self.cache_path = cache_path
        self.session = session or requests.Session()
        self.max_retries = max_retries
        self.backoff = backoff
        self.timeout = timeout
        self._sleep = sleep
        self._lock = threading.Lock()
        self.cache = self._load_cache()
        self.cache_hits = 0
        self.cache_misses = 0
        self.rate_limited = 0

    def _load_cache(self) -> Dict:
        """Load cache from JSON file"""
        if self.cache_path.exists():
            try:
                with open(self.cache_path, 'r', encoding='utf-8') as f:
                    cache = json.load(f)
                logger.info(f"Loaded TMDb cache with {len(cache)} entries")
                return cache
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not load cache: {e}. Starting fresh.")
                return {}
        return {}

    def _save_cache(self):
        """Save cache to JSON file"""
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_path, 'w', encoding='utf-8') as f:
                json.dump(self.cache, f, indent=2, ensure_ascii=False)
            logger.debug(f"Saved TMDb cache with {len(self.cache)} entries")
        except OSError as e:
            logger.error(f"Could not save cache: {e}")

    def _cached(self, key: str, loader: Callable[[], Optional[SourceRecord]]) -> Optional[SourceRecord]:
        with self._lock:
            if key in self.cache:
                self.cache_hits += 1
                logger.debug(f"Cache hit: {key}")
                cached = self.cache[key]
                return SourceRecord.from_dict(cached) if cached else None
            self.cache_misses += 1

        logger.debug(f"Cache miss: {key} - querying TMDb")
        # Raises on failure, so failures never reach the cache
        record = loader()

        with self._lock:
            self.cache[key] = record.to_dict() if record else None
            self._save_cache()
        return record

    def _get(self, path: str, params: Optional[Dict] = None) -> Optional[Dict]:
        """GET with 429 backoff. Returns None on 404."""
        if not self.api_key:
            raise LookupFailed("No TMDb API key configured")

        query = {'api_key': self.api_key}
        query.update(params or {})

        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.get(f"{self.base_url}{path}", params=query, timeout=self.timeout)
            except requests.exceptions.Timeout as e:
                raise LookupFailed(f"TMDb API timeout for {path}") from e
            except requests.exceptions.RequestException as e:
                raise LookupFailed(f"TMDb API request failed for {path}: {e}") from e

            if response.status_code == 429:
                self.rate_limited += 1
                retry_after = response.headers.get('Retry-After')
                try:
                    wait = float(retry_after)
                except (TypeError, ValueError):
                    wait = self.backoff * (2 ** attempt)
                if attempt == self.max_retries:
                    raise RateLimited(f"TMDb rate limit persisted for {path}", retry_after=wait)
                wait += random.uniform(0, self.backoff / 2)
                logger.warning(f"TMDb rate limited on {path}, retrying in {wait:.1f}s "
                               f"(attempt {attempt + 1}/{self.max_retries})")
                self._sleep(wait)
                continue

            if response.status_code == 404:
                return None

            try:
                response.raise_for_status()
            except requests.exceptions.HTTPError as e:
                raise LookupFailed(f"TMDb API HTTP error for {path}: {e}") from e

            try:
                return response.json()
            except ValueError as e:
                raise LookupFailed(f"TMDb returned invalid JSON for {path}") from e

        raise RateLimited(f"TMDb rate limit persisted for {path}")

    @staticmethod
    def _credits(data: Dict) -> Tuple[Optional[List[str]], Optional[List[str]]]:
        """Directors and top-billed cast from an appended credits block"""
        credits = data.get('credits')
        if credits is None:
            return None, None
        directors = [
            member.get('name') for member in credits.get('crew', [])
            if member.get('job') == 'Director' and member.get('name')
        ]
        cast = [
            person.get('name') for person in credits.get('cast', [])[:CAST_LIMIT]
            if person.get('name')
        ]
        return directors, cast

    @classmethod
    def _record(cls, kind: str, data: Dict) -> SourceRecord:
        """Map a TMDb payload of the given media type onto a SourceRecord"""
        name = data.get('title') or data.get('name') or data.get('original_title') or ''
        date = (data.get('release_date') or data.get('first_air_date')
                or data.get('birthday') or None)
        imagery = [
            f"{IMAGE_BASE_URL}{data[key]}"
            for key in ('poster_path', 'backdrop_path', 'profile_path')
            if data.get(key)
        ]
        directors, cast = cls._credits(data)
        return SourceRecord(
            external_id=f"{kind}/{data['id']}",
            type=kind,
            canonical_name=name,
            release_or_birth_date=date or None,
            imagery=imagery,
            original_language=data.get('original_language'),
            directors=directors,
            cast=cast,
        )

    def _details(self, kind: str, result: Dict) -> Dict:
        """Full payload + credits for a search hit; the search payload if that fails to resolve"""
        if kind not in _CREDITED_TYPES:
            return result
        details = self._get(f"/{kind}/{result['id']}", {'append_to_response': 'credits'})
        return details if details and details.get('id') is not None else result

    def _validate_result(self, candidate: Dict, query: str, query_year: Optional[int]) -> bool:
        """
        Validate a TMDb search result against the query parameters.

        Checks name similarity (>= 0.6) and year delta (<= 2 years).
        Year check is skipped when query_year is None or the result has no date.
        """
        result_name = candidate.get('title') or candidate.get('name') or candidate.get('original_title') or ''
        q = query.lower().strip()
        r = result_name.lower().strip()
        if not r:
            return False
        if difflib.SequenceMatcher(None, q, r).ratio() < 0.6:
            return False

        if query_year:
            date = candidate.get('release_date') or candidate.get('first_air_date') or ''
            if date:
                try:
                    if abs(int(date[:4]) - query_year) > 2:
                        return False
                except ValueError:
                    pass  # Cannot parse year, skip year check

        return True

    def _search(self, name: str, year: Optional[int], kind: str) -> Optional[SourceRecord]:
        data = self._get('/search/multi', {'query': name, 'include_adult': False}) or {}
        results: List[Dict] = data.get('results') or []

        plausible = [r for r in results[:5] if self._validate_result(r, name, year)]

        # Prefer a plausible result of the requested type; otherwise report the
        # best plausible result as-is so a type mismatch is visible to the gate
        for result in plausible:
            if result.get('media_type') == kind:
                return self._record(kind, self._details(kind, result))

        if not plausible and kind == SOURCE_TYPE_MOVIE:
            # /search/multi never returns collections
            data = self._get('/search/collection', {'query': name}) or {}
            plausible_collections = [
                r for r in (data.get('results') or [])[:3] if self._validate_result(r, name, None)
            ]
            if plausible_collections:
                return self._record(SOURCE_TYPE_COLLECTION, plausible_collections[0])

        if plausible:
            top = plausible[0]
            media_type = top.get('media_type') or kind
            logger.info(f"TMDb: '{name}' ({year}) best match is a {media_type}, not a {kind}")
            return self._record(media_type, top)

        logger.debug(f"No TMDb results for '{name}' ({year})")
        return None

    def search(self, name: str, year: Optional[int] = None, kind: str = SOURCE_TYPE_MOVIE) -> Optional[SourceRecord]:
        """Find the entity a name (+ year) refers to. Cached."""
        key = f"search|{kind}|{name}|{year if year else 'None'}"
        return self._cached(key, lambda: self._search(name, year, kind))

    def _fetch(self, external_id: str, kind: str) -> Optional[SourceRecord]:
        typed_kind, number = split_external_id(external_id)
        if typed_kind:
            endpoints = [typed_kind]
        else:
            endpoints = [kind] + [k for k in _LOOKUP_ORDER if k != kind]

        for endpoint_kind in endpoints:
            params = {'append_to_response': 'credits'} if endpoint_kind in _CREDITED_TYPES else None
            data = self._get(f"/{endpoint_kind}/{number}", params)
            if data and data.get('id') is not None:
                return self._record(endpoint_kind, data)
        return None

    def fetch(self, external_id: str, kind: str = SOURCE_TYPE_MOVIE) -> Optional[SourceRecord]:
        """Resolve a stored external id to its SourceRecord. Cached."""
        key = f"fetch|{external_id}|{kind}"
        return self._cached(key, lambda: self._fetch(external_id, kind))

    def get_cache_stats(self) -> Dict:
        """Get cache performance statistics"""
        total = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / total * 100) if total > 0 else 0

        return {
            'hits': self.cache_hits,
            'misses': self.cache_misses,
            'total_queries': total,
            'hit_rate': hit_rate,
            'cache_size': len(self.cache),
            'rate_limited': self.rate_limited,
        }
