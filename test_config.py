#!/usr/bin/env python3
"""
Tests for typed configuration loading
"""
import json

import pytest

import config as config_module
from config import DEFAULT_CONFIG_PATH, load_config
from scripts.place_sync.errors import ConfigurationError


@pytest.fixture(autouse=True)
def reset_config():
    yield
    config_module._config_instance = None


def write_config(tmp_path, data):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(data), encoding='utf-8')
    return str(path)


class TestLoadConfig:
    """config.json → typed Config"""

    def test_repo_config(self):
        config = load_config(DEFAULT_CONFIG_PATH, reload=True)

        assert set(config.cities) == {'madrid', 'barcelona', 'prague'}
        madrid = config.get_city('Madrid')
        assert madrid.bounds.south < madrid.bounds.north
        assert config.fetch.default_grid_size == 6
        assert config.fetch.max_pages_per_cell == 3
        assert config.dedup.strong_distance_m == 50
        assert config.dedup.max_distance_m == 100
        assert 'calle' in config.normalization.address_prefixes
        assert any(c['name'] == 'Regular Cafe' for c in config.categories)

    def test_cached_until_reload(self, tmp_path):
        first = load_config(DEFAULT_CONFIG_PATH, reload=True)
        assert load_config() is first
        assert config_module.get_config() is first

    def test_category_mapping(self):
        config = load_config(DEFAULT_CONFIG_PATH, reload=True)
        assert config.category_for('coffee_shop') == 'Regular Cafe'
        assert config.category_for('gym') == 'Gym'
        assert config.category_for('night_club') == config.default_category
        assert config.category_for(None) == config.default_category

    def test_reference_path(self):
        config = load_config(DEFAULT_CONFIG_PATH, reload=True)
        assert config.reference_path('madrid').endswith('madrid.csv')

    def test_unknown_city(self):
        config = load_config(DEFAULT_CONFIG_PATH, reload=True)
        with pytest.raises(ConfigurationError, match='lisbon'):
            config.get_city('lisbon')

    def test_environment_credentials(self, monkeypatch):
        monkeypatch.setenv('SUPABASE_PROD_URL', 'https://prod.supabase.co')
        monkeypatch.setenv('SUPABASE_PROD_KEY', 'secret')
        monkeypatch.delenv('SUPABASE_DEV_URL', raising=False)
        config = load_config(DEFAULT_CONFIG_PATH, reload=True)

        assert config.supabase_credentials('prod') == ('https://prod.supabase.co', 'secret')
        assert config.has_environment('prod')
        assert not config.has_environment('dev')
        with pytest.raises(ConfigurationError):
            config.supabase_credentials('staging')

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match='not found'):
            load_config(str(tmp_path / 'absent.json'), reload=True)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{', encoding='utf-8')
        with pytest.raises(ConfigurationError, match='Invalid JSON'):
            load_config(str(path), reload=True)

    def test_missing_cities(self, tmp_path):
        with pytest.raises(ConfigurationError, match='cities'):
            load_config(write_config(tmp_path, {'fetch': {}}), reload=True)

    def test_invalid_bounds(self, tmp_path):
        data = {'cities': {'nowhere': {'name': 'Nowhere',
                                       'bounds': {'south': 10, 'north': 5, 'west': 0, 'east': 1}}}}
        with pytest.raises(ConfigurationError, match='latitude'):
            load_config(write_config(tmp_path, data), reload=True)

    def test_invalid_thresholds(self, tmp_path):
        data = {'dedup': {'strong_distance_m': 500}, 'cities': {}}
        with pytest.raises(ConfigurationError, match='strong_distance_m'):
            load_config(write_config(tmp_path, data), reload=True)

    def test_unknown_setting(self, tmp_path):
        data = {'fetch': {'grid': 3}, 'cities': {}}
        with pytest.raises(ConfigurationError):
            load_config(write_config(tmp_path, data), reload=True)
