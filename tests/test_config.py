"""Tests for configuration loading."""

import pytest
import yaml

from crm_sync.config import SyncConfig, load_config


def test_load_config_from_yaml(tmp_path):
    config_data = {
        "backend": {"url": "https://crm.example.com", "api_key_env": "KEY_1"},
        "auth": {"email": "ana@example.com"},
        "logging": {"level": "debug", "format": "text"},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))

    cfg = load_config(path)
    assert cfg.backend.url == "https://crm.example.com"
    assert cfg.backend.api_key_env == "KEY_1"
    assert cfg.auth.email == "ana@example.com"
    assert cfg.logging.format == "text"


def test_load_config_defaults():
    cfg = SyncConfig()
    assert cfg.backend.url == "http://localhost:54321"
    assert cfg.cache.db_path == "./data/crm_sync_cache.db"
    assert cfg.metrics.port == 9090


def test_secrets_resolved_from_environment(monkeypatch):
    monkeypatch.setenv("CRM_SYNC_API_KEY", "anon")
    monkeypatch.delenv("CRM_SYNC_PASSWORD", raising=False)
    cfg = SyncConfig()
    assert cfg.backend.api_key == "anon"
    assert cfg.auth.password is None


def test_load_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == SyncConfig()


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")
