"""Tests for configuration loading."""

import pytest
import yaml

from src.config import PipelineConfig, load_config
from src.errors import ConfigError
from src.main import main


def _write(tmp_path, data) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data), encoding="utf-8")
    return str(path)


def test_load_default_config():
    """Loading the project's config.yaml should work."""
    config = load_config()
    assert isinstance(config, PipelineConfig)
    assert config.source.scraper_type == "dou"
    assert "category=.NET" in config.source.url
    assert config.classification.max_retries == 3


def test_load_missing_file():
    """Missing config file returns defaults."""
    config = load_config("/nonexistent/path.yaml")
    assert isinstance(config, PipelineConfig)
    assert config.database_url == "sqlite:///data/vacancies.db"
    assert config.llm.provider == "anthropic"


def test_custom_config(tmp_path):
    data = {
        "log_level": "DEBUG",
        "database_url": "sqlite://",
        "source": {
            "name": "dou-python",
            "scraper_type": "dou",
            "url": "https://jobs.dou.ua/vacancies/?category=Python",
            "params": {"max_load_more": 2},
        },
        "llm": {"provider": "OpenAI", "model": "gpt-4o-mini", "api_key_env": "OPENAI_API_KEY"},
        "classification": {"max_retries": 1, "concurrency": 2},
        "prompts": {"category": {"system": "Be brief."}},
    }
    config = load_config(_write(tmp_path, data))

    assert config.log_level == "DEBUG"
    assert config.source.name == "dou-python"
    assert config.source.params["max_load_more"] == 2
    assert config.llm.provider == "openai"
    assert config.llm.model == "gpt-4o-mini"
    assert config.classification.max_retries == 1
    assert config.classification.concurrency == 2
    # Keys left out keep their defaults
    assert config.classification.base_delay_seconds == 2.0
    assert config.prompts["category"]["system"] == "Be brief."


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == PipelineConfig()


class TestInvalidConfig:

    def test_unknown_provider(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, {"llm": {"provider": "parrot"}}))

    def test_negative_retries(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, {"classification": {"max_retries": -1}}))

    def test_zero_concurrency(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, {"classification": {"concurrency": 0}}))

    def test_top_level_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, ["not", "a", "mapping"]))

    @pytest.mark.parametrize("data", [
        {"llm": {"max_tokens": "abc"}},
        {"llm": {"temperature": [0.1]}},
        {"classification": {"base_delay_seconds": "soon"}},
        {"request_timeout_seconds": "forever"},
        {"history_limit": None},
    ])
    def test_non_numeric_values(self, tmp_path, data):
        with pytest.raises(ConfigError, match="must be a number"):
            load_config(_write(tmp_path, data))

    def test_section_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="llm must be a mapping"):
            load_config(_write(tmp_path, {"llm": "anthropic"}))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("llm: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(str(path))


def test_cli_exits_with_error_on_bad_config(tmp_path):
    path = _write(tmp_path, {"llm": {"max_tokens": "abc"}})
    assert main(["--config", path, "--database-url", "sqlite://", "stats"]) == 1
