#!/usr/bin/env python3
"""
Shared canonicalization for names and titles

CRITICAL: every comparison in the pipeline goes through canonicalize().
The same normalization MUST be used for:
1. Writing canonical names/slugs into the catalog
2. Matching names, detecting duplicates, re-pointing references

If these differ, matches fail silently and duplicates slip through.
"""

import re
import unicodedata
from typing import List, Optional

from catalog.constants import MAX_CANONICAL_LENGTH, TITLE_DECORATION_WORDS

# Combining diacritics used by Latin-script transliterations ("Bābu").
# Indic vowel signs and viramas are outside these ranges and are kept:
# they distinguish names ("రాము" is not "రమ").
_LATIN_DIACRITIC_RANGES = [
    (0x0300, 0x036F),
    (0x1AB0, 0x1AFF),
    (0x1DC0, 0x1DFF),
    (0x20D0, 0x20FF),
    (0xFE20, 0xFE2F),
]

_LEADING_ARTICLE = re.compile(r"^(?:(?:the|a|an) )+")

_APOSTROPHES = re.compile(r"['‘’ʼ`]")

_DECORATION = re.compile(
    r'\(\s*(?:' + '|'.join(re.escape(w) for w in TITLE_DECORATION_WORDS) + r'|\d{4})\s*\)',
    re.IGNORECASE
)


def _trim(text: str, max_length: int) -> str:
    """Trim to max_length, backing off to the last whole token when possible"""
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    if text[max_length] != ' ' and ' ' in cut:
        cut = cut.rsplit(' ', 1)[0]
    return cut.strip()


def _is_latin_diacritic(char: str) -> bool:
    code = ord(char)
    return any(low <= code <= high for low, high in _LATIN_DIACRITIC_RANGES)


def _fold_char(char: str) -> str:
    """Keep letters, digits and script marks; drop format chars; space out the rest"""
    category = unicodedata.category(char)
    if category == 'Cf':
        return ''
    if category[0] == 'M':
        return '' if _is_latin_diacritic(char) else char
    if category[0] in 'LN':
        return char
    return ' '


def canonicalize(text: Optional[str], max_length: int = MAX_CANONICAL_LENGTH) -> str:
    """
    Fold a free-text name or title into its canonical comparison form

    Normalization steps:
    1. Decompose Unicode (NFKD), then case-fold
    2. Drop Latin diacritics and format characters (zero-width joiners);
       Indic vowel signs and viramas stay
    3. Drop apostrophes ("Can't" -> "cant")
    4. Turn remaining punctuation, symbols and underscores into spaces
    5. Collapse whitespace
    6. Trim to max_length on a token boundary

    Pure and idempotent: canonicalize(canonicalize(x)) == canonicalize(x).
    Non-string input canonicalizes to ''.

    Examples:
        >>> canonicalize("B. V. Prasad")
        'b v prasad'

        >>> canonicalize("Sobhan  Bābu")
        'sobhan babu'
    """
    if not isinstance(text, str):
        return ''

    # Compatibility forms can decompose to capitals ("ℌ" -> "H"), so fold after
    text = unicodedata.normalize('NFKD', unicodedata.normalize('NFKD', text).casefold())
    text = _APOSTROPHES.sub('', text)
    text = ''.join(_fold_char(c) for c in text)
    text = re.sub(r'\s+', ' ', text).strip()

    return _trim(text, max_length)


def canonicalize_title(title: Optional[str], strip_article: bool = True) -> str:
    """
    Canonicalize a movie title after stripping edition decorations

    "(film)", "(movie)", "(1977)", "(Telugu)" and similar never distinguish
    two films, so "Mayabazar (1957 film)" style suffixes are removed first.
    Leading articles are dropped for matching ("The Ghazi Attack" and
    "Ghazi Attack" are one film); slugs keep them (strip_article=False).

    Examples:
        >>> canonicalize_title("Mayabazar (Telugu)")
        'mayabazar'

        >>> canonicalize_title("The Ghazi Attack")
        'ghazi attack'
    """
    if not isinstance(title, str):
        return ''
    title = _DECORATION.sub(' ', title)
    title = re.sub(r'\(\s*\d{4}\s+(?:film|movie)\s*\)', ' ', title, flags=re.IGNORECASE)
    canonical = canonicalize(title)
    if strip_article:
        canonical = _LEADING_ARTICLE.sub('', canonical)
    return canonical


def tokens(text: Optional[str]) -> List[str]:
    """Whitespace tokens of the canonical form"""
    canonical = canonicalize(text)
    return canonical.split(' ') if canonical else []


def collapse_repeats(canonical: str) -> str:
    """
    Collapse runs of a repeated character ("raadhika" -> "radhika")

    Only used as a duplicate-detection signal, never stored.
    """
    return re.sub(r'(.)\1+', r'\1', canonical)


def generate_slug(text: Optional[str], year: Optional[int] = None) -> str:
    """
    Build a URL slug from the canonical form, optionally suffixed with a year

    Examples:
        >>> generate_slug("Ranuva Veeran", 1981)
        'ranuva-veeran-1981'
    """
    base = canonicalize(text).replace(' ', '-')
    if not base:
        return ''
    if year:
        return f"{base}-{year}"
    return base
