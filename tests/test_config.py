#!/usr/bin/env python3
"""
Test suite for catalog/config.py — YAML loading and policy overrides
"""

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from catalog.config import PipelineConfig, build_config, load_config
from catalog.errors import ConfigError


def write(tmp_path, text):
    path = tmp_path / 'config_external.yaml'
    path.write_text(text)
    return path


class TestDefaults:
    """An empty config gives the built-in policy"""

    def test_empty_file(self, tmp_path):
        config = load_config(write(tmp_path, ''))
        assert config == PipelineConfig()

    def test_default_floors(self):
        config = build_config({})
        assert config.gate.verified_floor == 0.85
        assert config.merge.auto_merge_floor == 0.9
        assert config.matching.min_guard_token_length == 8
        assert config.visual.tier_range(2) == (0.6, 0.8)

    def test_registry_has_tiers(self):
        visual = build_config({}).visual
        assert visual.source_by_code('tmdb').tier == 1
        assert visual.source_by_code('wikimedia').tier == 2
        assert visual.source_for_url('https://upload.wikimedia.org/x.jpg').code == 'wikimedia'

    def test_frozen(self):
        config = build_config({})
        with pytest.raises(Exception):
            config.gate.verified_floor = 0.1


class TestOverrides:
    """YAML sections override only the keys they name"""

    def test_section_override(self, tmp_path):
        config = load_config(write(tmp_path, """
tmdb_api_key: abc123
catalog_path: data/catalog.json
gate:
  verified_floor: 0.9
  required_language: te
merge:
  auto_merge_floor: 0.95
"""))
        assert config.tmdb_api_key == 'abc123'
        assert config.catalog_path == Path('data/catalog.json')
        assert config.gate.verified_floor == 0.9
        assert config.gate.unverified_floor == 0.5
        assert config.gate.required_language == 'te'
        assert config.merge.auto_merge_floor == 0.95

    def test_lists_become_tuples(self):
        config = build_config({'visual': {'suspicious_hosts': ['badhost.net']}})
        assert config.visual.suspicious_hosts == ('badhost.net',)

    def test_extra_source(self):
        config = build_config({'sources': [{
            'code': 'cinema_museum', 'tier': 2, 'domains': ['museum.example.org'],
            'base_confidence': 0.7, 'license': 'attribution_required',
        }]})
        source = config.visual.source_by_code('cinema_museum')
        assert source.domains == ('museum.example.org',)
        assert source.requires_attribution
        assert config.visual.source_by_code('tmdb') is not None

    def test_duo_rules(self):
        config = build_config({'audit': {'workers': 2, 'duo_rules': [
            {'members': ['Raj', 'Koti'], 'joint_name': 'Raj-Koti', 'first_year': 1982, 'last_year': 1994},
        ]}})
        assert config.audit.workers == 2
        assert len(config.audit.duo_rules) == 1
        assert config.audit.duo_rules[0].members == ('Raj', 'Koti')


class TestErrors:
    """Bad configuration fails at startup"""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / 'nope.yaml')

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "gate: [unclosed"))

    def test_top_level_not_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "- a\n- b\n"))

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match='verifed_floor'):
            build_config({'gate': {'verifed_floor': 0.9}})

    def test_misspelled_section_refused(self):
        with pytest.raises(ConfigError, match='matchng'):
            build_config({'matchng': {'min_guard_tokens': 3}})

    def test_misspelled_section_in_file(self, tmp_path):
        with pytest.raises(ConfigError, match='audt'):
            load_config(write(tmp_path, "audt:\n  workers: 2\n"))

    def test_source_tier_3_refused(self):
        with pytest.raises(ConfigError):
            build_config({'sources': [{'code': 'blog', 'tier': 3}]})

    def test_bad_duo_rule(self):
        with pytest.raises(ConfigError):
            build_config({'audit': {'duo_rules': [{'members': ['Raj']}]}})
