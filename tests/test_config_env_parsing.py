from __future__ import annotations

from pathlib import Path

from elara.config import ElaraConfig


def test_disabled_providers_accepts_empty_env(monkeypatch) -> None:
    monkeypatch.setenv("ELARA_DISABLED_PROVIDERS", "")

    config = ElaraConfig.load()

    assert config.disabled_providers == []


def test_list_env_fields_accept_plain_strings(monkeypatch) -> None:
    monkeypatch.setenv("ELARA_DISABLED_PROVIDERS", "Groq, Cerebras")
    monkeypatch.setenv("ELARA_ANTIGRAVITY_BACKEND_URLS", "https://a.test,https://b.test")

    config = ElaraConfig.load()

    assert config.disabled_providers == ["groq", "cerebras"]
    assert config.is_provider_disabled("GROQ")
    assert config.antigravity.backend_urls == ["https://a.test", "https://b.test"]


def test_list_env_fields_accept_json(monkeypatch) -> None:
    monkeypatch.setenv("ELARA_DISABLED_PROVIDERS", '["Kimi"]')

    assert ElaraConfig.load().disabled_providers == ["kimi"]


def test_yaml_sub_configs_are_loaded(monkeypatch, tmp_path: Path) -> None:
    config_file = tmp_path / "elara.yaml"
    config_file.write_text(
        "port: 9100\n"
        "pow:\n"
        "  workers: 3\n"
        "model_mapping:\n"
        "  opus: DeepSeek/deepseek-reasoner\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("ELARA_CONFIG_PATH", str(config_file))

    config = ElaraConfig.load()

    assert config.port == 9100
    assert config.pow.workers == 3
    assert config.model_mapping.opus == "DeepSeek/deepseek-reasoner"
    assert config.model_mapping.sonnet == ""
