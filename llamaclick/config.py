"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from llamaclick.errors import ConfigError
from llamaclick.utils.platform import get_config_dir, get_data_dir


class LLMConfig(BaseModel):
    provider: Literal["anthropic", "openai", "ollama", "local"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    # Used by the openai/ollama/local providers
    endpoint: str = "https://api.openai.com/v1"
    max_tokens: int = 2048
    temperature: float = 0.2
    request_timeout: float = 120.0


class BrowserConfig(BaseModel):
    driver: Literal["playwright"] = "playwright"
    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    headless: bool = True
    default_timeout: float = 30.0
    user_agent: str = "LlamaClick/0.1 (automated browser)"
    window_width: int = 1280
    window_height: int = 800
    max_candidates: int = 200
    # e.g. http://proxy.local:3128; empty means direct
    proxy: str = ""
    ignore_https_errors: bool = False
    block_images: bool = False


class AgentConfig(BaseModel):
    retry_limit: int = Field(default=3, ge=1)
    replan_budget: int = Field(default=1, ge=0)
    action_timeout: float = Field(default=30.0, gt=0)
    session_timeout: float = Field(default=300.0, gt=0)
    relevance_threshold: float = Field(default=0.35, ge=0, le=1)
    ambiguity_margin: float = Field(default=0.05, ge=0)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_cap: float = Field(default=8.0, ge=0)
    poll_interval: float = Field(default=0.25, gt=0)
    time_between_actions: float = Field(default=0.5, ge=0)
    max_steps: int = Field(default=50, ge=1)
    snapshot_token_budget: int = 3000
    # Screenshot and HTML of the page after each failed attempt
    capture_failures: bool = False
    artifacts_dir: str = ""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LLAMACLICK_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return get_data_dir()


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config.

    ``overrides`` (e.g. from CLI flags) win over the YAML file. Any parse or
    validation problem is raised as :class:`ConfigError`.
    """
    yaml_data: dict[str, Any] = {}

    if config_path is None:
        config_path = os.environ.get("LLAMACLICK_CONFIG")
    if config_path is None:
        default = get_config_dir() / "config.yaml"
        if default.exists():
            config_path = default

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(yaml_data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

    if overrides:
        yaml_data = _deep_merge(yaml_data, overrides)

    try:
        return Settings(**yaml_data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
