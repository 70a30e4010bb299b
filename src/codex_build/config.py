"""Build a :class:`RunConfiguration` from CLI arguments layered over the environment."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from codex_build.credentials import DEFAULT_KEYRING_SERVICE
from codex_build.errors import ConfigurationError
from codex_build.schemas import RunConfiguration

logger = logging.getLogger(__name__)

#: RunConfiguration field -> environment variable consulted when no CLI value is given.
ENV_VARS: dict[str, str] = {
    "prompt": "CODEX_BUILD_PROMPT",
    "api_key_credential_id": "CODEX_BUILD_API_KEY_ID",
    "api_base_url": "CODEX_BUILD_API_BASE_URL",
    "repository_url": "CODEX_BUILD_REPO_URL",
    "branch": "CODEX_BUILD_BRANCH",
    "git_author_name": "CODEX_BUILD_GIT_AUTHOR_NAME",
    "git_author_email": "CODEX_BUILD_GIT_AUTHOR_EMAIL",
    "git_credential_id": "CODEX_BUILD_GIT_CREDENTIAL_ID",
    "model": "CODEX_BUILD_MODEL",
    "provider": "CODEX_BUILD_PROVIDER",
    "push_enabled": "CODEX_BUILD_PUSH",
    "agent_binary": "CODEX_BUILD_AGENT_BIN",
    "agent_timeout_seconds": "CODEX_BUILD_AGENT_TIMEOUT",
    "build_id": "BUILD_NUMBER",
}
CREDENTIALS_FILE_ENV = "CODEX_BUILD_CREDENTIALS_FILE"
KEYRING_SERVICE_ENV = "CODEX_BUILD_KEYRING_SERVICE"
WORKSPACE_ENV = "WORKSPACE"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def parse_bool(value: Any) -> bool:
    """Parse a loosely typed boolean flag (``1/true/yes/on``)."""
    if isinstance(value, bool):
        return value
    normalized = str(value or "").strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value!r}")


def load_configuration(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfiguration:
    """Return the run configuration.

    Values in *overrides* (typically parsed CLI arguments) win over the
    environment; ``None`` means "not given".  Empty environment values are
    treated as unset so field defaults apply.
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for field_name, env_name in ENV_VARS.items():
        raw = env.get(env_name)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw
    for field_name, value in (overrides or {}).items():
        if field_name not in ENV_VARS:
            raise ConfigurationError(f"Unknown configuration field: {field_name}")
        if value is not None:
            values[field_name] = value
    if "push_enabled" in values:
        values["push_enabled"] = parse_bool(values["push_enabled"])

    try:
        return RunConfiguration(**values)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise ConfigurationError(
            "Invalid configuration value(s): " + ", ".join(fields)
        ) from None


def resolve_workspace(value: str | None = None, environ: Mapping[str, str] | None = None) -> Path:
    """Return the workspace directory: explicit value, then ``$WORKSPACE``, then cwd."""
    env = os.environ if environ is None else environ
    chosen = (value or "").strip() or env.get(WORKSPACE_ENV, "").strip()
    return Path(chosen).expanduser() if chosen else Path.cwd()


def resolve_credentials_file(
    value: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path | None:
    """Return the credentials file path from the CLI or environment, if any."""
    env = os.environ if environ is None else environ
    chosen = (value or "").strip() or env.get(CREDENTIALS_FILE_ENV, "").strip()
    return Path(chosen).expanduser() if chosen else None


def resolve_keyring_service(
    value: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Return the keyring service holding credentials when no file is configured."""
    env = os.environ if environ is None else environ
    chosen = (value or "").strip() or env.get(KEYRING_SERVICE_ENV, "").strip()
    return chosen or DEFAULT_KEYRING_SERVICE
