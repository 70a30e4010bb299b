"""Setup diagnostics for the ``doctor`` command."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from codex_build.codex_cli import resolve_binary
from codex_build.credentials import DEFAULT_KEYRING_SERVICE


@dataclass(frozen=True)
class PreflightCheck:
    """A single readiness check result."""

    key: str
    label: str
    status: str
    detail: str
    hint: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "pass"

    def to_dict(self) -> dict[str, str]:
        return {
            "key": self.key,
            "label": self.label,
            "status": self.status,
            "detail": self.detail,
            "hint": self.hint,
        }


def _binary_check(key: str, label: str, binary: str, hint: str) -> PreflightCheck:
    resolved = resolve_binary(binary)
    found = bool(resolved) and (shutil.which(resolved) is not None or Path(resolved).is_file())
    if found:
        return PreflightCheck(key, label, "pass", f"found at {resolved}")
    return PreflightCheck(key, label, "fail", f"'{binary}' not found on PATH", hint)


def _keyring_check(service: str) -> PreflightCheck:
    import keyring
    from keyring.backends import fail

    backend = keyring.get_keyring()
    name = type(backend).__name__
    if isinstance(backend, fail.Keyring):
        return PreflightCheck(
            "credentials",
            "Credential keyring",
            "fail",
            "no usable keyring backend",
            "Pass --credentials-file or set CODEX_BUILD_CREDENTIALS_FILE.",
        )
    return PreflightCheck(
        "credentials",
        "Credential keyring",
        "pass",
        f"service '{service}' via {type(backend).__module__}.{name}",
    )


def build_preflight_checks(
    *,
    agent_binary: str = "codex",
    credentials_file: Path | None = None,
    keyring_service: str = DEFAULT_KEYRING_SERVICE,
) -> list[PreflightCheck]:
    """Return readiness checks for git, the agent binary, and the credential source."""
    checks = [
        _binary_check("git", "Git executable", "git", "Install git and ensure it is on PATH."),
        _binary_check(
            "agent",
            "Coding agent executable",
            agent_binary,
            "Install the Codex CLI (npm install -g @openai/codex) or pass --agent-bin.",
        ),
    ]
    if credentials_file is None:
        checks.append(_keyring_check(keyring_service))
    elif credentials_file.is_file():
        checks.append(
            PreflightCheck("credentials", "Credentials file", "pass", f"readable at {credentials_file}")
        )
    else:
        checks.append(
            PreflightCheck(
                "credentials",
                "Credentials file",
                "fail",
                f"{credentials_file} does not exist",
                "Create the JSON credentials file or fix the path.",
            )
        )
    return checks
