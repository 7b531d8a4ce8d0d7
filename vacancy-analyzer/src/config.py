"""Configuration loader for the vacancy analyzer.

Reads config.yaml and returns typed configuration objects that the
pipeline, the scraper and the completion client consume.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass
class ScraperConfig:
    """Configuration for the listing source."""

    name: str = "dou-dotnet"
    scraper_type: str = "dou"
    url: str = "https://jobs.dou.ua/vacancies/?category=.NET"
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMConfig:
    """Completion client settings. The key itself lives in the environment."""

    provider: str = "anthropic"  # "anthropic" or "openai"
    model: str = "claude-3-5-haiku-latest"
    api_key_env: str = "ANTHROPIC_API_KEY"
    base_url: str = ""
    max_tokens: int = 4096
    temperature: float = 0.0
    timeout_seconds: float = 60.0


@dataclass
class ClassificationConfig:
    """Retry and parallelism knobs for the classification engine."""

    max_retries: int = 3
    base_delay_seconds: float = 2.0
    concurrency: int = 4  # postings classified in parallel
    aspect_concurrency: int = 5  # judge calls in flight per posting


@dataclass
class PipelineConfig:
    """Top-level configuration."""

    source: ScraperConfig = field(default_factory=ScraperConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    database_url: str = "sqlite:///data/vacancies.db"
    log_level: str = "INFO"
    request_delay_seconds: float = 1.0  # polite delay between HTTP requests
    request_timeout_seconds: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    history_limit: int = 30

    # Per-aspect prompt overrides: {"category": {"system": ..., "user": ...}}
    prompts: dict[str, dict[str, str]] = field(default_factory=dict)


_PROVIDERS = {"anthropic", "openai"}


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"{name} must be a mapping, got {type(section).__name__}")
    return section


def _number(section: dict, key: str, default, cast, where: str):
    """Convert one numeric setting, reporting bad values as ConfigError."""
    value = section.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}{key} must be a number, got {value!r}") from exc


def load_config(path: Path | str | None = None) -> PipelineConfig:
    """Load and validate the configuration from a YAML file."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.warning("Config file not found at %s, using defaults", config_path)
        return PipelineConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"{config_path}: invalid YAML: {exc}") from exc

    if not raw:
        return PipelineConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")

    src_raw = _section(raw, "source")
    source = ScraperConfig(
        name=src_raw.get("name", ScraperConfig.name),
        scraper_type=src_raw.get("scraper_type", ScraperConfig.scraper_type),
        url=src_raw.get("url", ScraperConfig.url),
        params=src_raw.get("params", {}) or {},
    )

    llm_raw = _section(raw, "llm")
    llm = LLMConfig(
        provider=str(llm_raw.get("provider", LLMConfig.provider)).lower(),
        model=llm_raw.get("model", LLMConfig.model),
        api_key_env=llm_raw.get("api_key_env", LLMConfig.api_key_env),
        base_url=llm_raw.get("base_url", "") or "",
        max_tokens=_number(llm_raw, "max_tokens", LLMConfig.max_tokens, int, "llm."),
        temperature=_number(llm_raw, "temperature", LLMConfig.temperature, float, "llm."),
        timeout_seconds=_number(
            llm_raw, "timeout_seconds", LLMConfig.timeout_seconds, float, "llm."
        ),
    )
    if llm.provider not in _PROVIDERS:
        raise ConfigError(
            f"Unknown llm.provider {llm.provider!r} (expected one of {sorted(_PROVIDERS)})"
        )

    cls_raw = _section(raw, "classification")
    classification = ClassificationConfig(
        max_retries=_number(
            cls_raw, "max_retries", ClassificationConfig.max_retries, int, "classification."
        ),
        base_delay_seconds=_number(
            cls_raw, "base_delay_seconds", ClassificationConfig.base_delay_seconds, float,
            "classification.",
        ),
        concurrency=_number(
            cls_raw, "concurrency", ClassificationConfig.concurrency, int, "classification."
        ),
        aspect_concurrency=_number(
            cls_raw, "aspect_concurrency", ClassificationConfig.aspect_concurrency, int,
            "classification.",
        ),
    )
    if classification.max_retries < 0:
        raise ConfigError("classification.max_retries must be >= 0")
    if classification.concurrency < 1 or classification.aspect_concurrency < 1:
        raise ConfigError("classification concurrency limits must be >= 1")

    return PipelineConfig(
        source=source,
        llm=llm,
        classification=classification,
        database_url=raw.get("database_url", PipelineConfig.database_url),
        log_level=raw.get("log_level", "INFO"),
        request_delay_seconds=_number(raw, "request_delay_seconds", 1.0, float, ""),
        request_timeout_seconds=_number(raw, "request_timeout_seconds", 30.0, float, ""),
        user_agent=raw.get("user_agent", DEFAULT_USER_AGENT),
        history_limit=_number(raw, "history_limit", 30, int, ""),
        prompts=raw.get("prompts", {}) or {},
    )
