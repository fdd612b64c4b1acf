"""Tests for configuration loading and saving."""

import json

import pytest
from pydantic import ValidationError

from kavita_client.config import HOME_ENV_VAR, ClientConfig, ConfigManager, default_data_dir
from kavita_client.remote.credential_store import FileCredentialStore


class TestDefaultDataDir:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv(HOME_ENV_VAR, str(tmp_path / "kc"))

        assert default_data_dir() == tmp_path / "kc"

    def test_home_fallback(self, monkeypatch):
        monkeypatch.delenv(HOME_ENV_VAR, raising=False)

        assert default_data_dir().name == ".kavita-client"


class TestClientConfig:
    def test_defaults(self):
        config = ClientConfig()

        assert config.timeout == 10.0
        assert config.enrichment_concurrency == 8
        assert config.page_size == 50
        assert config.search_page_size == 100

    @pytest.mark.parametrize(
        "field,value", [("timeout", 0), ("enrichment_concurrency", 0), ("page_size", -1)]
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            ClientConfig(**{field: value})


class TestConfigManager:
    def test_missing_file_gives_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path / "config.json")

        assert manager.load() == ClientConfig()
        assert not (tmp_path / "config.json").exists()

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "sub" / "config.json"
        ConfigManager(path).save(ClientConfig(timeout=4.5, page_size=20))

        loaded = ConfigManager(path).get_config()

        assert loaded.timeout == 4.5
        assert loaded.page_size == 20
        assert json.loads(path.read_text())["timeout"] == 4.5

    def test_invalid_file_raises(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"timeout": "soon"}))

        with pytest.raises(ValueError, match="Failed to load config"):
            ConfigManager(path).load()

    def test_save_without_config_raises(self, tmp_path):
        with pytest.raises(ValueError):
            ConfigManager(tmp_path / "config.json").save()

    def test_env_home_is_used(self, monkeypatch, tmp_path):
        monkeypatch.setenv(HOME_ENV_VAR, str(tmp_path))

        manager = ConfigManager()

        assert manager.config_path == tmp_path / "config.json"
        assert manager.data_dir == tmp_path

    def test_create_store_in_data_dir(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"store_file": "sessions.json"}))

        store = ConfigManager(path).create_store()

        assert isinstance(store, FileCredentialStore)
        assert store.path == tmp_path / "sessions.json"
