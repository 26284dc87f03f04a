"""Tests for configuration loading, env overrides, and persistence."""

import json
import os
import stat
import pytest
from unittest.mock import patch

ENV_VARS = (
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "DOCRAG_LLM_PROVIDER",
    "DOCRAG_RESPONSE_MODEL",
    "DOCRAG_FILTER_MODEL",
    "DOCRAG_TIMEOUT_MS",
    "DOCRAG_RESPONDER",
    "DOCRAG_CLI_COMMAND",
    "DOCRAG_TOP_K",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    with patch("docrag.common.config.load_dotenv"):
        yield


class TestDefaults:
    def test_config_defaults(self):
        from docrag.common.config import DocragConfig
        cfg = DocragConfig()
        assert cfg.llm.provider == "google"
        assert cfg.llm.timeout_ms == 60000
        assert cfg.responder.type == "cli"
        assert cfg.responder.cli_args == ["--print"]
        assert cfg.responder.max_tokens == 2048
        assert cfg.retrieval.top_k == 5
        assert cfg.retrieval.chunk_size == 100
        assert cfg.retrieval.chunk_overlap == 20

    def test_model_follows_provider(self):
        from docrag.common.config import LLMConfig
        cfg = LLMConfig(provider="openai", openai_model="gpt-4o", openai_api_key="sk-x")
        assert cfg.model == "gpt-4o"
        assert cfg.api_key == "sk-x"

    def test_missing_file_uses_defaults(self, tmp_path):
        from docrag.common.config import load_config
        with patch("docrag.common.config.CONFIG_PATH", tmp_path / "absent.json"):
            cfg = load_config()
        assert cfg.llm.provider == "google"
        assert cfg.retrieval.top_k == 5


class TestLoadConfig:
    def test_load_sections_from_file(self, tmp_path):
        from docrag.common.config import load_config
        config_data = {
            "llm": {"provider": "anthropic", "anthropic_api_key": "sk-ant", "timeout_ms": 5000},
            "responder": {"type": "cloud", "cli_command": "my-cli"},
            "retrieval": {"top_k": 8},
            "filter": {"model": "small-model"},
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        with patch("docrag.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.provider == "anthropic"
        assert cfg.llm.anthropic_api_key == "sk-ant"
        assert cfg.llm.timeout_ms == 5000
        assert cfg.responder.type == "cloud"
        assert cfg.responder.cli_command == "my-cli"
        assert cfg.retrieval.top_k == 8
        assert cfg.filter.model == "small-model"

    def test_corrupt_file_logs_warning(self, tmp_path, caplog):
        import logging
        from docrag.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("docrag.common.config.CONFIG_PATH", config_file):
            with caplog.at_level(logging.WARNING, logger="docrag.common.config"):
                cfg = load_config()

        assert cfg.llm.provider == "google"
        assert "Failed to load config file" in caplog.text

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        from docrag.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"llm": {"provider": "google", "google_api_key": "from-file"}}))
        monkeypatch.setenv("GEMINI_API_KEY", "from-env")
        monkeypatch.setenv("DOCRAG_RESPONDER", "CLOUD")
        monkeypatch.setenv("DOCRAG_TIMEOUT_MS", "1500")
        monkeypatch.setenv("DOCRAG_TOP_K", "12")
        monkeypatch.setenv("DOCRAG_RESPONSE_MODEL", "gemini-pro")

        with patch("docrag.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.google_api_key == "from-env"
        assert cfg.llm.google_model == "gemini-pro"
        assert cfg.llm.timeout_ms == 1500
        assert cfg.responder.type == "cloud"
        assert cfg.retrieval.top_k == 12
        assert "google_api_key" in cfg._env_sourced_keys


class TestValidateConfig:
    def test_defaults_are_valid(self):
        from docrag.common.config import DocragConfig, validate_config
        validate_config(DocragConfig())

    @pytest.mark.parametrize("section,attr,value", [
        ("retrieval", "top_k", 0),
        ("retrieval", "top_k", 101),
        ("retrieval", "chunk_size", 5),
        ("retrieval", "chunk_overlap", 100),
        ("llm", "timeout_ms", 0),
        ("responder", "type", "carrier-pigeon"),
    ])
    def test_out_of_range(self, section, attr, value):
        from docrag.common.config import DocragConfig, validate_config
        cfg = DocragConfig()
        setattr(getattr(cfg, section), attr, value)
        with pytest.raises(ValueError):
            validate_config(cfg)


class TestSaveConfig:
    def test_env_sourced_keys_not_persisted(self, tmp_path):
        from docrag.common.config import DocragConfig, save_config
        cfg = DocragConfig()
        cfg.llm.google_api_key = "secret-from-env"
        cfg.llm.openai_api_key = "sk-from-file"
        cfg._env_sourced_keys.add("google_api_key")

        config_file = tmp_path / "config.json"
        with patch("docrag.common.config.CONFIG_DIR", tmp_path), \
                patch("docrag.common.config.CONFIG_PATH", config_file):
            save_config(cfg)

        saved = json.loads(config_file.read_text())
        assert saved["llm"]["google_api_key"] == ""
        assert saved["llm"]["openai_api_key"] == "sk-from-file"
        assert stat.S_IMODE(os.stat(config_file).st_mode) == 0o600

    def test_round_trip(self, tmp_path):
        from docrag.common.config import DocragConfig, load_config, save_config
        cfg = DocragConfig()
        cfg.responder.type = "cloud"
        cfg.retrieval.chunk_size = 250

        config_file = tmp_path / "config.json"
        with patch("docrag.common.config.CONFIG_DIR", tmp_path), \
                patch("docrag.common.config.CONFIG_PATH", config_file):
            save_config(cfg)
            loaded = load_config()

        assert loaded.responder.type == "cloud"
        assert loaded.retrieval.chunk_size == 250
