#!/usr/bin/env python3
"""
Name matching and free-text name field parsing

Legacy role fields hold either a single name, a comma-separated list
("Krishna, Sobhan Babu") or a list; supporting cast arrives as strings,
"Name (role)" strings, dicts, or a JSON string holding any of those.
parse_name_list() and parse_cast() normalize every shape once, on read, so
the rest of the pipeline only ever sees NameList and CastEntry.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from catalog.config import MatchPolicy
from catalog.normalization import canonicalize

logger = logging.getLogger(__name__)

_DEFAULT_POLICY = MatchPolicy()

# "Brahmanandam (comedian)" -> name, role
_NAME_WITH_ROLE = re.compile(r'^\s*(.+?)\s*\(\s*([^)]+?)\s*\)\s*$')


@dataclass(frozen=True)
class NameList:
    """One or more credited names for a role field"""
    names: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.names)

    def __iter__(self):
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    def as_text(self) -> str:
        return ', '.join(self.names)

    def replace(self, old: str, new: str) -> 'NameList':
        """Swap every name canonically equal to old for new (deduplicated)"""
        target = canonicalize(old)
        out: List[str] = []
        for name in self.names:
            value = new if canonicalize(name) == target else name
            if canonicalize(value) not in {canonicalize(n) for n in out}:
                out.append(value)
        return NameList(tuple(out))


@dataclass(frozen=True)
class CastEntry:
    """Supporting-cast credit: a name plus an optional role tag (hero2, villain, cameo...)"""
    name: str
    role: Optional[str] = None

    def to_dict(self) -> dict:
        data = {'name': self.name}
        if self.role:
            data['role'] = self.role
        return data


def split_names(value: Optional[str]) -> List[str]:
    """Split a comma-separated name field into trimmed, non-empty names"""
    if not isinstance(value, str):
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def parse_name_list(value) -> NameList:
    """Normalize a role field (None, str, comma-list str, list) into a NameList"""
    if value is None:
        return NameList()
    if isinstance(value, NameList):
        return value
    if isinstance(value, str):
        return NameList(tuple(split_names(value)))
    if isinstance(value, (list, tuple)):
        names: List[str] = []
        for item in value:
            if isinstance(item, str):
                names.extend(split_names(item))
            elif isinstance(item, dict) and isinstance(item.get('name'), str):
                names.append(item['name'].strip())
        return NameList(tuple(n for n in names if n))
    logger.debug(f"Ignoring unsupported name field value: {value!r}")
    return NameList()


def _cast_entry(item) -> Optional[CastEntry]:
    if isinstance(item, CastEntry):
        return item
    if isinstance(item, str):
        item = item.strip()
        if not item:
            return None
        match = _NAME_WITH_ROLE.match(item)
        if match:
            return CastEntry(match.group(1), match.group(2).lower())
        return CastEntry(item)
    if isinstance(item, dict):
        name = item.get('name') or item.get('actor')
        if not isinstance(name, str) or not name.strip():
            return None
        role = item.get('role') or item.get('type') or item.get('character')
        return CastEntry(name.strip(), role.strip().lower() if isinstance(role, str) and role.strip() else None)
    return None


def parse_cast(value) -> List[CastEntry]:
    """
    Normalize a supporting-cast field into CastEntry records

    Accepts None, a list of strings/dicts, a comma-separated string, or a
    JSON string encoding a list. Unparseable items are dropped.
    """
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith('['):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                logger.debug(f"Supporting cast is not valid JSON, splitting on commas: {text[:60]}")
                value = split_names(text.strip('[]'))
        else:
            value = split_names(text)
    if isinstance(value, dict):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []

    entries = []
    for item in value:
        entry = _cast_entry(item)
        if entry is not None:
            entries.append(entry)
    return entries


def _guard_passes(shorter: set, policy: MatchPolicy) -> bool:
    if len(shorter) >= policy.min_guard_tokens:
        return True
    return len(shorter) == 1 and len(next(iter(shorter))) >= policy.min_guard_token_length


def _token_set_match(query_tokens: set, field_tokens: set, policy: MatchPolicy) -> bool:
    if not query_tokens or not field_tokens:
        return False

    # Same tokens in another order is the same name
    if query_tokens == field_tokens:
        return True

    all_words_present = query_tokens <= field_tokens
    field_is_subset = field_tokens <= query_tokens
    if not (all_words_present or field_is_subset):
        return False

    # On a tie the field side counts as the shorter one
    shorter = query_tokens if len(query_tokens) < len(field_tokens) else field_tokens
    return _guard_passes(shorter, policy)


def names_match(query_name, field_value, policy: Optional[MatchPolicy] = None) -> bool:
    """
    Decide whether query_name denotes someone named in field_value

    field_value may be a comma-separated list of names. Checked in order,
    stopping at the first hit:
    1. Exact canonical equality
    2. Exact canonical equality with any comma element
    3. Token sets per comma element: every query token present in the
       element, or the element's tokens a non-empty subset of the query's
    4. A step-3 match only counts when the shorter token set has at least
       min_guard_tokens tokens, or its single token is at least
       min_guard_token_length characters long

    Never raises; None, empty and non-string input simply don't match.

    Examples:
        >>> names_match("Sobhan Babu", "Krishna, Sobhan Babu")
        True
        >>> names_match("Ravi Teja", "Teja")
        False
    """
    policy = policy or _DEFAULT_POLICY

    if not isinstance(query_name, str) or not isinstance(field_value, str):
        return False

    query = canonicalize(query_name)
    if not query:
        return False

    if query == canonicalize(field_value):
        return True

    elements = [canonicalize(part) for part in field_value.split(',')]
    elements = [e for e in elements if e]
    if query in elements:
        return True

    query_tokens = set(query.split(' '))
    for element in elements:
        if _token_set_match(query_tokens, set(element.split(' ')), policy):
            return True

    return False


def any_name_matches(query_name: str, names: Iterable[str],
                     policy: Optional[MatchPolicy] = None) -> bool:
    """True if query_name matches any of the given names"""
    return any(names_match(query_name, name, policy) for name in names)
