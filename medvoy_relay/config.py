"""Configuration models and loaders for medvoy-relay.

This module defines the runtime configuration schema (upstream gateway,
capability endpoints and their failure policies) and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_APOLOGY_MESSAGE = (
    "I'm sorry, I couldn't complete that lookup right now. "
    "Please try again in a moment, or ask me to continue without it."
)
DEFAULT_STREAM_INTERRUPTED_MESSAGE = (
    "I'm sorry, my connection dropped before I could answer. "
    "Please send your message again."
)
DEFAULT_REPROMPT_NOTE = (
    "The `{tool}` lookup failed ({error}). Do not mention internal tools. "
    "Answer the patient's last request from your general knowledge, give "
    "typical ranges where exact figures are unavailable, and say that the "
    "figures are estimates."
)
DEFAULT_SCRAPE_PROMPT = (
    "A patient asked: {question}\n\n"
    "Lookup parameters: {arguments}\n\n"
    "Use the reference material below to answer. Give concrete figures where "
    "the material supports them and state clearly when it does not.\n\n"
    "Reference material:\n{data}"
)


class LoggingConfig(BaseModel):
    """Root log level and output format."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class FallbackStepConfig(BaseModel):
    """One step of a capability failure chain."""

    kind: Literal["reprompt", "scrape", "apology"]
    url: str | None = None
    api_key: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)
    prompt: str | None = None
    message: str | None = None
    max_source_chars: int = 12000
    timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _validate_kind_fields(self) -> "FallbackStepConfig":
        if self.kind == "scrape" and not self.url:
            raise ValueError("fallback step 'scrape' requires url")
        if self.max_source_chars <= 0:
            raise ValueError("max_source_chars must be > 0")
        return self


class CapabilityConfig(BaseModel):
    """One tool declared to the model and fulfilled by an HTTP endpoint."""

    name: str
    description: str
    url: str
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    api_key: str | None = None
    extra_body: dict[str, Any] = Field(default_factory=dict)
    result_key: str | None = None
    options_format: Literal["hospitals", "flights", "cost_estimate", "raw"] = "raw"
    timeout_seconds: float = 30.0
    on_failure: list[FallbackStepConfig] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("capability name must not be empty")
        if not all(char.isalnum() or char in {"_", "-"} for char in name):
            raise ValueError(f"capability name '{name}' may only contain letters, digits, '_' and '-'")
        return name

    @field_validator("on_failure", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` as an empty chain."""
        if value is None:
            return []
        return value

    @field_validator("extra_body", mode="before")
    @classmethod
    def _none_to_empty_dict(cls, value: Any) -> Any:
        if value is None:
            return {}
        return value


class RelayConfig(BaseModel):
    """Top-level relay configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    upstream_base_url: str | None = None
    upstream_api_key: str | None = None
    upstream_chat_path: str = "/v1/chat/completions"
    upstream_model: str = "google/gemini-2.5-flash"
    upstream_connect_retries: int | None = None
    upstream_retry_interval_ms: int | None = None
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 300.0

    system_prompt: str | None = None
    system_prompt_file: str | None = None
    restream_tools: Literal["omit", "redeclare"] | None = None
    stream_keepalive_seconds: float | None = None
    apology_message: str = DEFAULT_APOLOGY_MESSAGE
    stream_interrupted_message: str = DEFAULT_STREAM_INTERRUPTED_MESSAGE

    capability_api_key: str | None = None
    capabilities: list[CapabilityConfig] = Field(default_factory=list)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _apply_defaults(self) -> "RelayConfig":
        bind = urlparse(self.service_base_url)
        if bind.hostname is None or bind.port is None:
            raise ValueError(f"service_base_url must name a host and port: {self.service_base_url!r}")

        names = [capability.name for capability in self.capabilities]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate capability names: {', '.join(duplicates)}")

        if self.upstream_connect_retries is None:
            self.upstream_connect_retries = 0
        if self.upstream_retry_interval_ms is None:
            self.upstream_retry_interval_ms = 1000
        if self.restream_tools is None:
            self.restream_tools = "omit"
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 15.0
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("capabilities", "cors_allow_origins", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """A bare `capabilities:` key in YAML parses as null."""
        if value is None:
            return []
        return value

    def capability(self, name: str) -> CapabilityConfig | None:
        """Return the capability declared under `name`, if any."""
        for capability in self.capabilities:
            if capability.name == name:
                return capability
        return None


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Read the YAML mapping at `path`; an absent file yields `{}` so env-only deployments work."""
    if not path or not Path(path).is_file():
        return {}
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


_ENV_MAP = {
    "service_base_url": "MEDVOY_RELAY_SERVICE_BASE_URL",
    "upstream_base_url": "MEDVOY_RELAY_UPSTREAM_BASE_URL",
    "upstream_api_key": "MEDVOY_RELAY_UPSTREAM_API_KEY",
    "upstream_model": "MEDVOY_RELAY_UPSTREAM_MODEL",
    "upstream_connect_retries": "MEDVOY_RELAY_UPSTREAM_CONNECT_RETRIES",
    "upstream_retry_interval_ms": "MEDVOY_RELAY_UPSTREAM_RETRY_INTERVAL_MS",
    "stream_keepalive_seconds": "MEDVOY_RELAY_STREAM_KEEPALIVE_SECONDS",
    "restream_tools": "MEDVOY_RELAY_RESTREAM_TOOLS",
    "system_prompt_file": "MEDVOY_RELAY_SYSTEM_PROMPT_FILE",
    "capability_api_key": "MEDVOY_RELAY_CAPABILITY_API_KEY",
    "logging.level": "MEDVOY_RELAY_LOG_LEVEL",
    "logging.json_logs": "MEDVOY_RELAY_LOG_JSON",
}


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Parsers for variables whose values are not plain strings.
_ENV_PARSERS: dict[str, Any] = {
    "upstream_connect_retries": int,
    "upstream_retry_interval_ms": int,
    "stream_keepalive_seconds": float,
    "restream_tools": lambda value: value.strip().lower(),
    "logging.json_logs": _env_flag,
}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Layer MEDVOY_RELAY_* variables over the values read from YAML."""
    merged = dict(data)
    section = merged.get("logging")
    merged["logging"] = dict(section) if isinstance(section, dict) else {}

    for key, env_name in _ENV_MAP.items():
        raw_value = os.environ.get(env_name)
        if raw_value is None:
            continue
        value = _ENV_PARSERS.get(key, str)(raw_value)
        if key.startswith("logging."):
            # json_logs is read through its YAML alias.
            field = "json" if key == "logging.json_logs" else key.removeprefix("logging.")
            merged["logging"][field] = value
        else:
            merged[key] = value
    return merged


def config_path_from_env(path: str | None = None) -> str:
    """Resolve the effective config file path."""
    return path or os.getenv("MEDVOY_RELAY_CONFIG") or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> RelayConfig:
    """Build a validated RelayConfig from YAML and the environment."""
    return RelayConfig.model_validate(_override_from_env(_load_yaml(config_path_from_env(path))))
