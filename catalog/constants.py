#!/usr/bin/env python3
"""
Shared constants for the catalog integrity pipeline

Single source of truth for matching guards, confidence floors, visual tier
ranges, placeholder patterns and the known-source registry.
DO NOT inline these numbers in other modules - import from here instead.
Every value can be overridden per run through config (see catalog/config.py).
"""

# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------

# Canonical strings are trimmed to this many characters (on a token boundary).
# Long enough for the longest real titles seen in the catalog
# ("Sri Krishna Pandaveeyam"-style mythologicals with subtitles), short enough
# to keep slugs usable.
MAX_CANONICAL_LENGTH = 160

# Decorations that never distinguish two films and are stripped from titles
# before canonicalization: "(film)", "(movie)", "(1977)", "(telugu)" ...
TITLE_DECORATION_WORDS = [
    'film',
    'movie',
    'telugu',
    'telugu movie',
    'hindi',
    'hindi dubbed',
    'tamil',
    'dubbed',
]

# ---------------------------------------------------------------------------
# Name matching
# ---------------------------------------------------------------------------

# Token-set matches are only trusted when the shorter side is specific enough:
# two or more tokens, or one token of at least 8 characters. A lone short
# given name ("Teja", "Ravi") is shared by too many unrelated people.
MIN_GUARD_TOKENS = 2
MIN_GUARD_TOKEN_LENGTH = 8

# ---------------------------------------------------------------------------
# Identity gate
# ---------------------------------------------------------------------------

# Raw names longer than this are scraped page fragments, not titles.
MAX_NAME_LENGTH = 200

# Earliest plausible release/birth year, and how far ahead of today a release
# date may be (announced films).
MIN_YEAR = 1850
MAX_FUTURE_YEARS = 2

# Confidence weights: external id found / name similarity / year proximity.
# Year weight is redistributed onto the other two when either year is unknown.
WEIGHT_EXTERNAL_ID = 0.4
WEIGHT_NAME_SIMILARITY = 0.4
WEIGHT_YEAR_PROXIMITY = 0.2

# Years within this distance count as a partial match (festival vs theatrical
# release, birth years copied off different sources).
YEAR_TOLERANCE = 1

# Below UNVERIFIED_FLOOR the record is flagged low_confidence; at or above
# VERIFIED_FLOOR it is verified; in between it exists but needs review.
UNVERIFIED_FLOOR = 0.5
VERIFIED_FLOOR = 0.85

# A movie record is complete with a director and at least this many credited
# cast members. Missing credits are warnings, rejections in strict mode.
MIN_CAST_MEMBERS = 3

# Entity types reported by the authoritative source
SOURCE_TYPE_MOVIE = 'movie'
SOURCE_TYPE_PERSON = 'person'
SOURCE_TYPE_TV = 'tv'
SOURCE_TYPE_COLLECTION = 'collection'

# ---------------------------------------------------------------------------
# Visual confidence
# ---------------------------------------------------------------------------

# (low, high) confidence range per tier
TIER_RANGES = {
    1: (0.9, 1.0),
    2: (0.6, 0.8),
    3: (0.3, 0.5),
}

# Tier-3 confidence for each failure mode, inside TIER_RANGES[3]
TIER3_NO_IMAGE = 0.3
TIER3_PLACEHOLDER = 0.3
TIER3_UNREACHABLE = 0.4
TIER3_UNRECOGNIZED = 0.5

# URL fragments that mark a placeholder rather than a real poster/still.
# Anchored to path segment boundaries: "Casino_image.jpg" is a real file.
PLACEHOLDER_PATTERNS = [
    r'(^|[/_.-])placeholder([/_.-]|\d|$)',
    r'(^|[/_.-])no[-_]?image([/_.-]|$)',
    r'(^|/)default\.(jpg|jpeg|png|webp)([?#]|$)',
    r'(^|/)missing\.(jpg|jpeg|png|webp)([?#]|$)',
    r'/null$',
    r'/undefined$',
    r'(^|[/_.-])avatar[-_]default([/_.-]|$)',
    r'(^|[/_.-])profile[-_]placeholder([/_.-]|$)',
]

# Hosts that only ever serve placeholders
SUSPICIOUS_HOSTS = [
    'example.com',
    'placeholder.com',
    'via.placeholder.com',
    'dummyimage.com',
    'placehold.co',
]

REACHABILITY_TIMEOUT = 10

# Known image sources. Tier 1 = authoritative CDN and verified archival
# partners, tier 2 = recognized secondary repositories with attribution.
# code: (name, tier, domains, base_confidence, attribution, license)
KNOWN_SOURCES = {
    'tmdb': (
        'The Movie Database', 1, ['image.tmdb.org', 'themoviedb.org'], 0.95,
        'Image courtesy of The Movie Database (TMDB)', 'api_terms',
    ),
    'nfai': (
        'National Film Archive of India', 1, ['nfai.nfdcindia.com', 'nfrp.gov.in'], 1.0,
        'Courtesy: National Film Archive of India', 'archive_license',
    ),
    'fhf': (
        'Film Heritage Foundation', 1, ['filmheritagefoundation.co.in'], 0.95,
        'Courtesy: Film Heritage Foundation', 'archive_license',
    ),
    'ap_culture': (
        'Andhra Pradesh Department of Culture', 1, ['apculture.gov.in'], 0.9,
        'Courtesy: Government of Andhra Pradesh, Department of Culture', 'public_domain',
    ),
    'ts_culture': (
        'Telangana Department of Culture', 1, ['telanganaculture.gov.in'], 0.9,
        'Courtesy: Government of Telangana, Department of Culture', 'public_domain',
    ),
    'wikimedia': (
        'Wikimedia Commons', 2, ['commons.wikimedia.org', 'upload.wikimedia.org'], 0.75,
        'Source: Wikimedia Commons (see file page for license)', 'attribution_required',
    ),
    'internet_archive': (
        'Internet Archive', 2, ['archive.org'], 0.7,
        'Source: Internet Archive', 'attribution_required',
    ),
    'andhra_patrika': (
        'Andhra Patrika archive', 2, [], 0.7,
        'From the Andhra Patrika archive', 'editorial_use',
    ),
    'sitara': (
        'Sitara magazine archive', 2, [], 0.65,
        'From the Sitara magazine archive', 'editorial_use',
    ),
    'film_society': (
        'Film society collection', 2, [], 0.6,
        'Courtesy of a film society collection', 'attribution_required',
    ),
}

# ---------------------------------------------------------------------------
# Duplicate detection and merging
# ---------------------------------------------------------------------------

# Canonical names at or above this fuzz ratio (0-1) are linked as candidates
LINK_SIMILARITY = 0.85

# Repeat-collapsed equality ("raadhika" == "radhika") counts as this similarity
COLLAPSED_SIMILARITY = 0.95

# Pair score blending: with filmographies on both sides
NAME_WEIGHT = 0.6
FILMOGRAPHY_WEIGHT = 0.4
# Disjoint filmographies: name similarity is scaled down hard
DISJOINT_FILMOGRAPHY_FACTOR = 0.4
# No filmography to compare on one side
MISSING_FILMOGRAPHY_FACTOR = 0.9
# Years differ but within YEAR_TOLERANCE (beyond it records are never linked)
YEAR_MISMATCH_FACTOR = 0.85
# Each member beyond two shaves this fraction off group confidence
GROUP_SIZE_DECAY = 0.97

# Auto-merge floor. Below it groups are AMBIGUOUS_MATCH.
AUTO_MERGE_FLOOR = 0.9

# Duplicate confidence buckets used by status reports
CONFIDENCE_BUCKETS = [
    ('high', 0.9),
    ('medium', 0.7),
    ('low', 0.0),
]

# Completeness weights used to pick a merge survivor
COMPLETENESS_WEIGHTS = {
    'name': 20,
    'year': 20,
    'external_id': 15,
    'image': 10,
    'roles': 10,
    'supporting_cast': 5,
    'aliases': 5,
    'references': 10,
    'original_language': 5,
}

# Seconds to wait for a cluster lock before giving up (retried next sweep)
LOCK_TIMEOUT = 5.0

# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

# A NEEDS_REWORK entity failing this many audits in a row is proposed for purge
PURGE_AFTER_REWORKS = 3

DEFAULT_BATCH_SIZE = 50
DEFAULT_CHUNK_SIZE = 10
DEFAULT_WORKERS = 4

# Analytics counters summed on merge
ANALYTICS_COUNTERS = ['views', 'mentions', 'searches', 'shares']

# Movie role fields holding names
MOVIE_ROLE_FIELDS = ['director', 'hero', 'heroine', 'music_director', 'producer', 'writer']
LEAD_ROLE_FIELDS = ['hero', 'heroine']

# Professional duos credited jointly: (members, joint credit, first year, last year).
# Inside the active range a lone member credit is completed to the joint name.
DUO_RULES = [
    (('Raj', 'Koti'), 'Raj-Koti', 1982, 1994),
    (('Laxmikant', 'Pyarelal'), 'Laxmikant-Pyarelal', 1963, 1998),
    (('Anand', 'Milind'), 'Anand-Milind', 1984, 2010),
    (('Nadeem', 'Shravan'), 'Nadeem-Shravan', 1973, 2005),
    (('Shankar', 'Ganesh'), 'Shankar-Ganesh', 1967, 2000),
]
