"""
Configuration loader for KANTHINK.
Merges defaults with per-workspace .kanthink/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    generator: str = "openai/gpt-4o-mini"
    editor: str = "openai/gpt-4o-mini"
    mover: str = "openai/gpt-4o-mini"
    configurator: str = "openai/gpt-4o-mini"
    # None disables web augmentation entirely
    web_search: str | None = None


class LimitsConfig(BaseModel):
    max_tokens_per_run: int = 150_000
    max_dollars_per_run: float = 2.0
    default_card_count: int = 5
    excerpt_chars: int = 150
    web_query_chars: int = 300
    max_runs_per_instruction: int = 10
    request_timeout_seconds: int = 60


class RetryConfig(BaseModel):
    attempts: int = Field(default=2, ge=1)
    delay_seconds: float = Field(default=1.0, ge=0.0)


class SafeguardConfig(BaseModel):
    cooldown_minutes: int = 5
    daily_cap: int = 50
    prevent_loops: bool = True


class QuotaConfig(BaseModel):
    anonymous_limit: int = 10
    user_limit: int = 100
    cookie_name: str = "kanthink_anon_id"
    cookie_max_age_seconds: int = 60 * 60 * 24 * 365


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class KanthinkConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    safeguards: SafeguardConfig = Field(default_factory=SafeguardConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(workdir: Path | None = None) -> KanthinkConfig:
    """
    Load config by merging:
      1. Built-in defaults (kanthink/config.yaml)
      2. Workspace overrides (<workdir>/.kanthink/config.yaml)
      3. KANTHINK_WEB_SEARCH_MODEL env override (empty string disables search)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if workdir:
        local_config = workdir / ".kanthink" / "config.yaml"
        if local_config.exists():
            with open(local_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    web_model = os.environ.get("KANTHINK_WEB_SEARCH_MODEL")
    if web_model is not None:
        base = _deep_merge(base, {"routing": {"web_search": web_model or None}})

    return KanthinkConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "OPENAI_API_KEY":          bool(os.environ.get("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY":       bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OWNER_OPENAI_API_KEY":    bool(os.environ.get("OWNER_OPENAI_API_KEY")),
        "OWNER_ANTHROPIC_API_KEY": bool(os.environ.get("OWNER_ANTHROPIC_API_KEY")),
    }
