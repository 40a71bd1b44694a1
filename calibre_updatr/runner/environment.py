"""Child-process environment construction and calibredb environment strategies."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Mapping, MutableMapping, Sequence

DEFAULT_CLEAN_PREFIXES: tuple[str, ...] = (
    "PYTHON",
    "VIRTUAL_ENV",
    "UV_",
    "PIP_",
    "CONDA",
    "POETRY",
    "PYENV",
)

DEFAULT_CLEAN_RETRY_SIGNATURES: tuple[str, ...] = ("No module named 'msgpack'",)

DEFAULT_HEADLESS_ENV: Mapping[str, str] = {
    "QT_QPA_PLATFORM": "offscreen",
    "QTWEBENGINE_DISABLE_SANDBOX": "1",
    "QTWEBENGINE_CHROMIUM_FLAGS": "--no-sandbox --disable-gpu",
    "QTWEBENGINE_DISABLE_GPU": "1",
    "LIBGL_ALWAYS_SOFTWARE": "1",
}

# Interpreter related keys dumped when calibredb environment debugging is on.
DEBUG_ENV_KEYS: tuple[str, ...] = (
    "PYTHONPATH",
    "PYTHONHOME",
    "PYTHONNOUSERSITE",
    "PYTHONUSERBASE",
    "VIRTUAL_ENV",
    "UV_PROJECT_ENVIRONMENT",
    "UV_PYTHON",
    "UV_PYTHON_BIN",
    "UV_SYSTEM_PYTHON",
    "CONDA_PREFIX",
    "POETRY_ACTIVE",
    "PYENV_VERSION",
    "PATH",
)


class CalibredbEnvMode(str, Enum):
    """How the environment handed to calibredb is prepared."""

    INHERIT = "inherit"
    CLEAN = "clean"
    OVERRIDE = "override"


@dataclass(frozen=True, slots=True)
class EnvVariant:
    """Named set of environment overrides tried by the ``override`` strategy."""

    name: str
    overrides: Mapping[str, str]

    def apply(self, env: Mapping[str, str]) -> dict[str, str]:
        merged = dict(env)
        merged.update(self.overrides)
        return merged


LOCALE_VARIANTS: tuple[EnvVariant, ...] = (
    EnvVariant(
        "en_US.utf8",
        {
            "LC_ALL": "en_US.utf8",
            "LANG": "en_US.utf8",
            "LANGUAGE": "en_US:en",
            "CALIBRE_OVERRIDE_LANG": "en",
        },
    ),
    EnvVariant(
        "C.utf8",
        {
            "LC_ALL": "C.utf8",
            "LANG": "C.utf8",
            "LANGUAGE": "en",
            "CALIBRE_OVERRIDE_LANG": "en",
        },
    ),
    EnvVariant(
        "C",
        {
            "LC_ALL": "C",
            "LANG": "C",
            "LANGUAGE": "en",
            "CALIBRE_OVERRIDE_LANG": "en",
        },
    ),
)


def build_environment(extra_env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of the current environment with ``extra_env`` applied on top."""

    merged: MutableMapping[str, str] = os.environ.copy()
    if extra_env:
        merged.update({str(key): str(value) for key, value in extra_env.items()})
    return dict(merged)


def apply_defaults(env: Mapping[str, str], defaults: Mapping[str, str]) -> dict[str, str]:
    """Add ``defaults`` for keys missing from ``env``; existing values win."""

    merged = dict(env)
    for key, value in defaults.items():
        merged.setdefault(key, value)
    return merged


def clean_environment(
    env: Mapping[str, str], prefixes: Iterable[str] = DEFAULT_CLEAN_PREFIXES
) -> dict[str, str]:
    """Drop variables that belong to foreign Python tooling."""

    prefixes = tuple(prefixes)
    return {key: value for key, value in env.items() if not key.startswith(prefixes)}


def stderr_signature_check(signatures: Sequence[str]) -> Callable[[object], bool]:
    """Build a clean-retry predicate matching any of ``signatures`` in stderr."""

    needles = tuple(signature for signature in signatures if signature)

    def _check(result: object) -> bool:
        stderr = getattr(result, "stderr", "") or ""
        return any(needle in stderr for needle in needles)

    return _check


__all__ = [
    "CalibredbEnvMode",
    "DEBUG_ENV_KEYS",
    "DEFAULT_CLEAN_PREFIXES",
    "DEFAULT_CLEAN_RETRY_SIGNATURES",
    "DEFAULT_HEADLESS_ENV",
    "EnvVariant",
    "LOCALE_VARIANTS",
    "apply_defaults",
    "build_environment",
    "clean_environment",
    "stderr_signature_check",
]
