#!/usr/bin/env python3
"""
Test suite for catalog/normalization.py — canonical forms shared by every comparison
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog.normalization import (
    canonicalize, canonicalize_title, collapse_repeats, generate_slug, tokens
)


class TestCanonicalize:
    """Case, punctuation and whitespace folding"""

    def test_initials(self):
        assert canonicalize("B. V. Prasad") == "b v prasad"

    def test_whitespace_collapsed(self):
        assert canonicalize("  Sobhan    Babu ") == "sobhan babu"

    def test_case_folded(self):
        assert canonicalize("NAGARJUNA") == "nagarjuna"

    def test_apostrophe_dropped(self):
        assert canonicalize("Can't Stop") == "cant stop"

    def test_curly_apostrophe_dropped(self):
        assert canonicalize("Rock’n Roll") == "rockn roll"

    def test_hyphen_becomes_space(self):
        assert canonicalize("Raj-Koti") == "raj koti"

    def test_underscore_becomes_space(self):
        assert canonicalize("ravi_teja") == "ravi teja"

    def test_punctuation_only_is_empty(self):
        assert canonicalize("?!...") == ""

    @pytest.mark.parametrize("value", [None, 42, ["Radhika"]])
    def test_non_string_is_empty(self, value):
        assert canonicalize(value) == ""

    @pytest.mark.parametrize("name", [
        "B. V. Prasad", "Sobhan  Bābu", "Mohanlal!", "  ", "Akkineni Nagarjuna",
        "\u210cyderabad Blues", "\u1d2cnand", "İlaiyaraaja", "రాముడు భీముడు", "\u0c15\u0c48",
    ])
    def test_idempotent(self, name):
        once = canonicalize(name)
        assert canonicalize(once) == once


class TestUnicodeNormalization:
    """Diacritics and invisible characters never distinguish names"""

    def test_macron_removed(self):
        assert canonicalize("Sobhan Bābu") == "sobhan babu"

    def test_french_accents(self):
        assert canonicalize("À bout de souffle") == "a bout de souffle"

    def test_zero_width_joiner_removed(self):
        assert canonicalize("Radh\u200dika") == "radhika"

    def test_compatibility_capitals_folded(self):
        assert canonicalize("\u210cyderabad") == "hyderabad"
        assert canonicalize("\u1d2cnand") == "anand"

    def test_telugu_vowel_signs_kept(self):
        assert canonicalize("రాము") == "రాము"
        assert canonicalize("రాము") != canonicalize("రమ")

    def test_telugu_virama_kept(self):
        # "క్ష" (conjunct) and "కష" differ only by the virama
        assert canonicalize("\u0c15\u0c4d\u0c37") != canonicalize("\u0c15\u0c37")

    def test_zero_width_joiner_removed_from_telugu(self):
        assert canonicalize("\u0c30\u0c3e\u200d\u0c2e\u0c41") == "రాము"


class TestLengthBound:
    """Canonical forms are bounded and cut on a token boundary"""

    def test_long_text_trimmed(self):
        result = canonicalize("word " * 100)
        assert len(result) <= 160
        assert result.endswith("word")

    def test_custom_bound(self):
        assert canonicalize("alpha beta gamma", max_length=12) == "alpha beta"


class TestCanonicalizeTitle:
    """Edition decorations are stripped from titles"""

    def test_film_suffix(self):
        assert canonicalize_title("Mayabazar (film)") == "mayabazar"

    def test_year_suffix(self):
        assert canonicalize_title("Mayabazar (1957)") == "mayabazar"

    def test_year_film_suffix(self):
        assert canonicalize_title("Mayabazar (1957 film)") == "mayabazar"

    def test_language_suffix(self):
        assert canonicalize_title("Mayabazar (Telugu)") == "mayabazar"

    def test_plain_title_unchanged(self):
        assert canonicalize_title("Ranuva Veeran") == "ranuva veeran"

    def test_meaningful_parenthetical_kept(self):
        assert canonicalize_title("Vasantha Kokila (Part 2)") == "vasantha kokila part 2"

    def test_leading_article_dropped(self):
        assert canonicalize_title("The Ghazi Attack") == "ghazi attack"
        assert canonicalize_title("The Ghazi Attack") == canonicalize_title("Ghazi Attack (2017 film)")

    def test_article_kept_when_asked(self):
        assert canonicalize_title("The Ghazi Attack", strip_article=False) == "the ghazi attack"

    def test_article_alone_is_the_title(self):
        assert canonicalize_title("The") == "the"

    @pytest.mark.parametrize("title", ["The Ghazi Attack", "A Aa", "The The Film", "Mayabazar (1957 film)"])
    def test_title_idempotent(self, title):
        once = canonicalize_title(title)
        assert canonicalize_title(once) == once


class TestHelpers:
    """Tokens, repeat collapsing and slugs"""

    def test_tokens(self):
        assert tokens("Akkineni  Nagarjuna") == ["akkineni", "nagarjuna"]

    def test_tokens_empty(self):
        assert tokens("...") == []

    def test_collapse_repeats(self):
        assert collapse_repeats("raadhika") == "radhika"
        assert collapse_repeats("radhika") == "radhika"

    def test_slug_with_year(self):
        assert generate_slug("Ranuva Veeran", 1981) == "ranuva-veeran-1981"

    def test_slug_without_year(self):
        assert generate_slug("B. V. Prasad") == "b-v-prasad"

    def test_slug_of_empty_name(self):
        assert generate_slug("!!", 1981) == ""
