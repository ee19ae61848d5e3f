"""Tests for settings and API key loading."""

import pytest

from hexharvest.errors import ConfigurationError
from hexharvest.settings import Settings, default_pool_size, load_api_key, load_settings


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert 1 <= s.pool_size <= 12
        assert s.pool_size == default_pool_size()
        assert s.default_unit == "kilometers"
        assert s.edge_key_digits == 6

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("HEXHARVEST_POOL_SIZE", "3")
        monkeypatch.setenv("HEXHARVEST_DEFAULT_UNIT", "Miles")
        s = load_settings()
        assert s.pool_size == 3
        assert s.default_unit == "miles"

    def test_explicit_override_wins(self, monkeypatch):
        monkeypatch.setenv("HEXHARVEST_POOL_SIZE", "3")
        assert load_settings(pool_size=5).pool_size == 5

    def test_invalid_value(self, monkeypatch):
        monkeypatch.setenv("HEXHARVEST_POOL_SIZE", "zero")
        with pytest.raises(ConfigurationError):
            load_settings()

    def test_unknown_unit(self):
        with pytest.raises(ConfigurationError):
            load_settings(default_unit="parsecs")


class TestLoadApiKey:
    def test_reads_key_file(self, tmp_path):
        (tmp_path / ".API_KEY.flickr").write_text("abc123\n", encoding="utf-8")
        assert load_api_key("flickr", tmp_path) == "abc123"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_api_key("gmap", tmp_path)

    def test_empty_file(self, tmp_path):
        (tmp_path / ".API_KEY.gmap").write_text("  \n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_api_key("gmap", tmp_path)
