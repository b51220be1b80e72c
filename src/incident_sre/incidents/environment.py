"""Deploy environment normalization."""

from __future__ import annotations

from collections.abc import Mapping

PRODUCTION = "production"
STAGING = "staging"
DEVELOPMENT = "development"

DEFAULT_ENVIRONMENT_ALIASES: dict[str, str] = {
    "prod": PRODUCTION,
    "production": PRODUCTION,
    "prd": PRODUCTION,
    "stage": STAGING,
    "staging": STAGING,
    "stg": STAGING,
    "dev": DEVELOPMENT,
    "development": DEVELOPMENT,
}


def normalize_environment(
    value: object,
    aliases: Mapping[str, str] | None = None,
) -> str:
    """Return the canonical name for an environment alias.

    Raises:
        ValueError: if *value* is empty or not a known alias.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"environment must be a non-empty string, got {value!r}")
    table = {**DEFAULT_ENVIRONMENT_ALIASES, **{k.lower(): v for k, v in (aliases or {}).items()}}
    key = value.strip().lower()
    if key not in table:
        raise ValueError(f"unknown environment {value!r}")
    return table[key]


def try_normalize_environment(
    value: object,
    aliases: Mapping[str, str] | None = None,
) -> str | None:
    try:
        return normalize_environment(value, aliases)
    except ValueError:
        return None
