"""Elara configuration: loads from elara.yaml + .env."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_yaml_config() -> dict[str, Any]:
    """Load elara.yaml from ELARA_CONFIG_PATH or default locations."""
    config_path = os.getenv("ELARA_CONFIG_PATH")
    search_paths = (
        [Path(config_path)]
        if config_path
        else [
            Path("elara.yaml"),
            Path.home() / ".elara" / "elara.yaml",
        ]
    )
    for path in search_paths:
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}
    return {}


def _split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in text.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value).strip()] if str(value).strip() else []


class AntigravityConfig(BaseSettings):
    """Google Cloud Code (Antigravity) OAuth settings."""

    client_id: str = Field(
        default="1071006060591-tmhssin2h21lcre235vtolojh4g403ep.apps.googleusercontent.com",
    )
    client_secret: str = Field(default="", description="OAuth client secret")
    token_url: str = "https://oauth2.googleapis.com/token"
    backend_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "https://cloudcode-pa.googleapis.com",
            "https://daily-cloudcode-pa.sandbox.googleapis.com",
        ],
    )
    token_safety_margin_s: int = Field(default=60, ge=0)
    min_interval_ms: int = Field(default=250, ge=0, description="Min gap between upstream calls")

    @field_validator("backend_urls", mode="before")
    @classmethod
    def _parse_backend_urls(cls, value: Any) -> list[str]:
        return _split_list(value)

    model_config = SettingsConfigDict(env_prefix="ELARA_ANTIGRAVITY_")


class PowConfig(BaseSettings):
    """Proof-of-work solver pool."""

    workers: int = Field(default=1, ge=1, le=16, description="Solver process pool size")

    model_config = SettingsConfigDict(env_prefix="ELARA_POW_")


class ModelMappingConfig(BaseSettings):
    """Preferred targets for Claude model families.

    Values are ``provider/model``, a bare ``model``, ``auto`` or empty.
    """

    opus: str = ""
    sonnet: str = ""
    haiku: str = ""
    default: str = ""

    model_config = SettingsConfigDict(env_prefix="ELARA_MODEL_MAPPING_")


class ElaraConfig(BaseSettings):
    """Root Elara configuration."""

    # Server
    host: str = Field(default="127.0.0.1", description="Server bind host")
    port: int = Field(default=8000, description="Server bind port")

    # Auth
    api_key: str = Field(default="", description="Key for management routes. Empty = no auth")

    # Paths
    data_dir: str = Field(default=str(Path.home() / ".elara"))
    db_journal_mode: Literal["WAL", "DELETE"] = Field(default="WAL")
    db_busy_timeout_ms: int = Field(default=5000, ge=100, le=120000)

    # Upstream
    request_timeout_s: float = Field(default=120.0, gt=0)
    disabled_providers: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Sub-configs
    antigravity: AntigravityConfig = Field(default_factory=AntigravityConfig)
    pow: PowConfig = Field(default_factory=PowConfig)
    model_mapping: ModelMappingConfig = Field(default_factory=ModelMappingConfig)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    @field_validator("disabled_providers", mode="before")
    @classmethod
    def _parse_disabled_providers(cls, value: Any) -> list[str]:
        return [item.lower() for item in _split_list(value)]

    model_config = SettingsConfigDict(
        env_prefix="ELARA_",
        env_nested_delimiter="__",
    )

    @classmethod
    def load(cls) -> ElaraConfig:
        """Load config from YAML + env vars (env takes precedence)."""
        yaml_cfg = _load_yaml_config()

        antigravity_data = yaml_cfg.pop("antigravity", {})
        pow_data = yaml_cfg.pop("pow", {})
        mapping_data = yaml_cfg.pop("model_mapping", {})

        # Only pass YAML sub-configs if they have data;
        # otherwise let pydantic-settings pick up env vars
        kwargs: dict[str, Any] = {**yaml_cfg}
        if antigravity_data:
            kwargs["antigravity"] = AntigravityConfig(**antigravity_data)
        if pow_data:
            kwargs["pow"] = PowConfig(**pow_data)
        if mapping_data:
            kwargs["model_mapping"] = ModelMappingConfig(**mapping_data)

        return cls(**kwargs)

    def is_provider_disabled(self, name: str) -> bool:
        return name.lower() in self.disabled_providers


# Singleton
_config: ElaraConfig | None = None


def get_config() -> ElaraConfig:
    """Get or create the global config."""
    global _config
    if _config is None:
        _config = ElaraConfig.load()
    return _config
