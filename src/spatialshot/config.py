"""Configuration loading and validation for the Spatialshot session core."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "spatialshot"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

DEFAULT_MODEL = "gemini-2.5-flash"
FALLBACK_MODEL = "gemini-flash-lite-latest"
DEFAULT_PROMPT = (
    "Analyze this image and explain it or discuss fixes about the issue it describes."
)


def _require_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = "Spatialshot"

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _require_string(value)


class ChatConfig(BaseModel):
    """Chat provider model selection and session seeding."""

    model: str = DEFAULT_MODEL
    fallback_model: str = FALLBACK_MODEL
    models: list[str] = Field(default_factory=list)
    prompt: str = DEFAULT_PROMPT
    system_prompt: str = (
        "You are a visual assistant. Describe what the image shows, point out "
        "problems it reveals and suggest concrete fixes. Answer in markdown."
    )
    warm_up_seconds: float = Field(default=3.0, ge=0.0, le=60.0)
    timeout: int = Field(default=120, ge=1, le=3600)

    @field_validator("model", "fallback_model", "prompt", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _require_string(value)

    @field_validator("system_prompt", mode="before")
    @classmethod
    def _normalize_system_prompt(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Expected a string value.")
        return value.strip()

    @field_validator("models", mode="before")
    @classmethod
    def _validate_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("models must be a list of model ids.")
        normalized: list[str] = []
        for item in value:
            candidate = _require_string(item)
            if candidate not in normalized:
                normalized.append(candidate)
        return normalized

    @model_validator(mode="after")
    def _normalize_model_list(self) -> ChatConfig:
        ordered = list(self.models)
        for required in (self.model, self.fallback_model):
            if required not in ordered:
                ordered.append(required)
        self.models = ordered
        return self


class ProvidersConfig(BaseModel):
    """External provider endpoints and host-side secret file names."""

    chat_key_page_url: str = "https://aistudio.google.com/app/apikey"
    chat_secret_file: str = "gemini_key.json"
    image_host_secret_file: str = "imgbb_key.json"
    profile_file: str = "profile.json"
    chat_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    upload_url: str = "https://api.imgbb.com/1/upload"
    reverse_search_url: str = "https://lens.google.com/uploadbyurl"

    @field_validator(
        "chat_secret_file", "image_host_secret_file", "profile_file", mode="before"
    )
    @classmethod
    def _validate_file_name(cls, value: Any) -> str:
        normalized = _require_string(value)
        if "/" in normalized or "\\" in normalized:
            raise ValueError("Secret file names must not contain path separators.")
        return normalized

    @field_validator(
        "chat_key_page_url",
        "chat_api_base",
        "upload_url",
        "reverse_search_url",
        mode="before",
    )
    @classmethod
    def _validate_url(cls, value: Any) -> str:
        normalized = _require_string(value)
        parsed = urlparse(normalized)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError(f"{normalized!r} is not an absolute http(s) URL.")
        return normalized.rstrip("/")


class PrefetchConfig(BaseModel):
    """Background reverse-search prefetch behavior."""

    enabled: bool = True


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/spatialshot/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _require_string(value)


class Config(BaseModel):
    """Root configuration model."""

    app: AppConfig = Field(default_factory=AppConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    prefetch: PrefetchConfig = Field(default_factory=PrefetchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _validate_distinct_secret_files(self) -> Config:
        if self.providers.chat_secret_file == self.providers.image_host_secret_file:
            raise ValueError(
                "providers.chat_secret_file and providers.image_host_secret_file must differ."
            )
        return self


def _build_default_config() -> dict[str, dict[str, Any]]:
    data = Config().model_dump()
    # Keep models empty so a partial TOML that only overrides `model` does not
    # inherit the normalized default list.
    data["chat"]["models"] = []
    return data


DEFAULT_CONFIG: dict[str, dict[str, Any]] = _build_default_config()


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, dict[str, Any]]:
    return Config().model_dump()


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "reason": str(exc)},
        )
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (tomllib.TOMLDecodeError, OSError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _validate_config(merged)
