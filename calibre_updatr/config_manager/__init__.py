"""Configuration loading and validation for calibre-updatr."""

from .loader import ConfigError, build_override_payload, load_settings
from .settings import (
    CalibredbSettings,
    ContentServerSettings,
    EnvironmentOverrides,
    FetchSettings,
    FormatSettings,
    LibrarySettings,
    LoggingSettings,
    PolicySettings,
    ScoringSettings,
    StateSettings,
    UpdatrSettings,
    normalize_library_spec,
    normalize_optional_string,
)

__all__ = [
    "CalibredbSettings",
    "ConfigError",
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
    "build_override_payload",
    "load_settings",
    "normalize_library_spec",
    "normalize_optional_string",
]
