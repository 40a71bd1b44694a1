"""Pydantic models describing the calibre-updatr configuration."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..runner.environment import (
    DEFAULT_CLEAN_PREFIXES,
    DEFAULT_CLEAN_RETRY_SIGNATURES,
    DEFAULT_HEADLESS_ENV,
    CalibredbEnvMode,
)
from .constants import (
    DEFAULT_CALIBREDB,
    DEFAULT_DELAY_BETWEEN_FETCHES_SECONDS,
    DEFAULT_ENGLISH_CODES,
    DEFAULT_FETCH_HEARTBEAT_SECONDS,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_FETCH_TOOL,
    DEFAULT_FORMATS,
    DEFAULT_MIN_SCORE_TO_SKIP_FETCH,
    ENV_PREFIX,
    VALID_LOG_FORMATS,
)


def normalize_optional_string(value: Any) -> Any:
    """Map blank strings to ``None`` so empty config entries mean "unset"."""

    if isinstance(value, str) and not value.strip():
        return None
    return value


def normalize_library_spec(spec: str) -> str:
    """Trim whitespace and, for Content Server URLs, any trailing slash."""

    trimmed = spec.strip()
    if trimmed.startswith(("http://", "https://")):
        return trimmed.rstrip("/")
    return trimmed


class _Group(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LibrarySettings(_Group):
    path: Optional[str] = None
    url: Optional[str] = None

    @field_validator("path", "url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return normalize_optional_string(value)

    def location(self) -> Optional[str]:
        """The URL wins over the local path, as calibredb accepts either."""

        raw = self.url or self.path
        return normalize_library_spec(raw) if raw else None


class ContentServerSettings(_Group):
    username: Optional[str] = None
    password: Optional[SecretStr] = None

    @field_validator("username", "password", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return normalize_optional_string(value)


class StateSettings(_Group):
    path: Optional[str] = None

    @field_validator("path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return normalize_optional_string(value)


class FormatSettings(_Group):
    names: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FORMATS),
        validation_alias=AliasChoices("list", "names"),
    )

    @field_validator("names", mode="after")
    @classmethod
    def _normalise_names(cls, value: list[str]) -> list[str]:
        cleaned = {name.strip().lstrip(".").lower() for name in value}
        return sorted(name for name in cleaned if name)


class CalibredbSettings(_Group):
    executable: str = DEFAULT_CALIBREDB
    env_mode: CalibredbEnvMode = CalibredbEnvMode.INHERIT
    debug_env: bool = False
    clean_env_prefixes: list[str] = Field(default_factory=lambda: list(DEFAULT_CLEAN_PREFIXES))
    clean_retry_signatures: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CLEAN_RETRY_SIGNATURES)
    )

    @field_validator("env_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class FetchSettings(_Group):
    executable: str = DEFAULT_FETCH_TOOL
    headless: bool = True
    headless_env: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_HEADLESS_ENV))
    use_xvfb: bool = False
    timeout_seconds: float = Field(default=DEFAULT_FETCH_TIMEOUT_SECONDS, gt=0)
    heartbeat_seconds: float = Field(default=DEFAULT_FETCH_HEARTBEAT_SECONDS, ge=0)


class PolicySettings(_Group):
    dry_run: bool = False
    reprocess_on_metadata_change: bool = False
    include_missing_language: bool = True
    english_codes: list[str] = Field(default_factory=lambda: list(DEFAULT_ENGLISH_CODES))
    delay_between_fetches_seconds: float = Field(
        default=DEFAULT_DELAY_BETWEEN_FETCHES_SECONDS, ge=0
    )


class ScoringSettings(_Group):
    """Weights of the good-enough score; all non-negative so the score never drops
    when a field is filled in."""

    title_weight: int = Field(default=2, ge=0)
    authors_weight: int = Field(default=2, ge=0)
    publisher_weight: int = Field(default=1, ge=0)
    pubdate_weight: int = Field(default=1, ge=0)
    isbn_weight: int = Field(default=2, ge=0)
    identifiers_weight: int = Field(default=1, ge=0)
    tags_weight: int = Field(default=1, ge=0)
    comments_weight: int = Field(default=1, ge=0)
    cover_weight: int = Field(default=1, ge=0)
    min_score_to_skip_fetch: int = DEFAULT_MIN_SCORE_TO_SKIP_FETCH
    require_title: bool = True
    require_authors: bool = True


class LoggingSettings(_Group):
    level: str = "info"
    format: str = "json"
    file: Optional[str] = None

    @field_validator("file", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return normalize_optional_string(value)

    @field_validator("format", mode="after")
    @classmethod
    def _check_format(cls, value: str) -> str:
        lowered = value.strip().lower()
        if lowered not in VALID_LOG_FORMATS:
            raise ValueError(f"format must be one of {sorted(VALID_LOG_FORMATS)}")
        return lowered


class UpdatrSettings(BaseModel):
    """Typed representation of ``config.toml``."""

    model_config = ConfigDict(extra="ignore")

    library: LibrarySettings = Field(default_factory=LibrarySettings)
    content_server: ContentServerSettings = Field(default_factory=ContentServerSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    formats: FormatSettings = Field(default_factory=FormatSettings)
    calibredb: CalibredbSettings = Field(default_factory=CalibredbSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class EnvironmentOverrides(BaseSettings):
    """Configuration overrides sourced from ``CALIBRE_UPDATR_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    library: Optional[str] = None
    library_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    state_path: Optional[str] = None
    log_level: Optional[str] = None
    dry_run: Optional[bool] = None

    @field_validator(
        "library", "library_url", "username", "password", "state_path", "log_level", mode="before"
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        return normalize_optional_string(value)


__all__ = [
    "CalibredbSettings",
    "ContentServerSettings",
    "EnvironmentOverrides",
    "FetchSettings",
    "FormatSettings",
    "LibrarySettings",
    "LoggingSettings",
    "PolicySettings",
    "ScoringSettings",
    "StateSettings",
    "UpdatrSettings",
    "normalize_library_spec",
    "normalize_optional_string",
]
