"""Presence checks for mandatory run parameters."""

from __future__ import annotations

import logging

from codex_build.errors import ConfigurationError
from codex_build.schemas import RunConfiguration

logger = logging.getLogger(__name__)

MANDATORY_FIELDS: tuple[str, ...] = ("prompt", "api_key_credential_id", "repository_url")


def missing_fields(config: RunConfiguration) -> list[str]:
    """Return the mandatory fields that are empty or whitespace-only."""
    return [
        name
        for name in MANDATORY_FIELDS
        if not str(getattr(config, name, "") or "").strip()
    ]


def validate_configuration(config: RunConfiguration) -> None:
    """Raise :class:`ConfigurationError` naming every missing mandatory field."""
    missing = missing_fields(config)
    if missing:
        raise ConfigurationError(
            "Missing required parameter(s): " + ", ".join(missing),
            missing=missing,
        )
    logger.debug("Configuration valid for build %d", config.build_id)
