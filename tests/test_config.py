"""Tests for configuration loading and saving."""
from __future__ import annotations

import json
from unittest.mock import patch

from qbank_importer.config import DEFAULTS, Settings, known_fields, load_settings, save_settings


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.llm_provider == "azure"
        assert s.ai_batch_size == 5
        assert s.ai_concurrency == 10
        assert s.session_ttl_seconds == 1800

    def test_to_dict(self):
        d = Settings().to_dict()
        assert set(d) == set(DEFAULTS)
        assert set(d) == known_fields()

    def test_single_mode_forces_one_by_one(self):
        s = Settings(ai_single_mode=True, ai_batch_size=20, ai_concurrency=8)
        assert s.effective_batch_size == 1
        assert s.effective_concurrency == 1

    def test_effective_sizes_never_zero(self):
        s = Settings(ai_batch_size=0, ai_concurrency=0)
        assert s.effective_batch_size == 1
        assert s.effective_concurrency == 1

    def test_db_full_path_relative_to_project(self):
        s = Settings(db_path="data/q.db")
        assert s.db_full_path == s.project_root / "data/q.db"

    def test_azure_configured_from_env(self, monkeypatch):
        monkeypatch.delenv("AZURE_OPENAI_ENDPOINT", raising=False)
        monkeypatch.delenv("AZURE_OPENAI_CHAT_DEPLOYMENT", raising=False)
        monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
        s = Settings(azure_endpoint="res.openai.azure.com", azure_deployment="gpt")
        assert not s.azure_configured
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "k")
        assert s.azure_configured


class TestLoadSaveSettings:
    def test_load_from_file(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"llm_provider": "openai", "ai_batch_size": 8}))
        with patch("qbank_importer.config.CONFIG_PATH", config_path):
            s = load_settings()
        assert s.llm_provider == "openai"
        assert s.ai_batch_size == 8
        assert s.ai_concurrency == DEFAULTS["ai_concurrency"]

    def test_unknown_keys_ignored(self, tmp_path):
        config_path = tmp_path / "config.json"
        config_path.write_text(json.dumps({"legacy_option": "x", "ai_fast_mode": False}))
        with patch("qbank_importer.config.CONFIG_PATH", config_path):
            s = load_settings()
        assert s.ai_fast_mode is False

    def test_load_missing_file(self, tmp_path):
        with patch("qbank_importer.config.CONFIG_PATH", tmp_path / "nonexistent.json"):
            s = load_settings()
        assert s == Settings()

    def test_save_then_load(self, tmp_path):
        config_path = tmp_path / "config.json"
        with patch("qbank_importer.config.CONFIG_PATH", config_path):
            save_settings(Settings(ai_single_mode=True, stream_interval_seconds=0.5))
            s = load_settings()
        assert s.ai_single_mode is True
        assert s.stream_interval_seconds == 0.5
        assert json.loads(config_path.read_text())["ai_single_mode"] is True
