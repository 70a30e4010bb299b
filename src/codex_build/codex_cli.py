"""Interface to the Codex CLI in quiet, fully automatic mode."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time
from pathlib import Path

from pydantic import SecretStr

from codex_build.agent_runner import AgentRunner, register_agent
from codex_build.redaction import log_prompt, redact_sensitive_text
from codex_build.schemas import (
    DEFAULT_AGENT_BINARY,
    DEFAULT_AGENT_TIMEOUT,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    AgentResult,
    RunConfiguration,
)

logger = logging.getLogger(__name__)

NON_INTERACTIVE_FLAG = "--full-auto"
_MAX_ERROR_CHARS = 2000


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    resolved = shutil.which(expanded)
    if resolved:
        return resolved
    return expanded


def provider_env_prefix(provider: str) -> str:
    """Return the environment prefix for *provider*, e.g. ``openai`` -> ``OPENAI``."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "_", str(provider or "").strip()).strip("_")
    return (cleaned or DEFAULT_PROVIDER).upper()


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class CodexRunner(AgentRunner):
    """Spawn ``codex "<prompt>" --model M --provider P --full-auto --quiet``.

    Parameters
    ----------
    codex_binary:
        Path or name of the Codex CLI binary.  Defaults to ``"codex"`` (must
        be on ``$PATH``).
    model:
        Model passed via ``--model``.
    provider:
        Provider passed via ``--provider``; also selects the environment
        variable names (``<PROVIDER>_API_KEY`` / ``<PROVIDER>_BASE_URL``).
    timeout:
        Wall-clock limit in seconds for the whole invocation.  ``0``
        disables the limit.
    env_overrides:
        Extra environment variables forwarded to the child process.
    """

    name = "Codex"

    def __init__(
        self,
        codex_binary: str = DEFAULT_AGENT_BINARY,
        *,
        model: str = DEFAULT_MODEL,
        provider: str = DEFAULT_PROVIDER,
        timeout: int = DEFAULT_AGENT_TIMEOUT,
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.codex_binary = codex_binary or DEFAULT_AGENT_BINARY
        self.model = (model or DEFAULT_MODEL).strip() or DEFAULT_MODEL
        self.provider = (provider or DEFAULT_PROVIDER).strip() or DEFAULT_PROVIDER
        try:
            self.timeout = max(0, int(timeout))
        except (TypeError, ValueError):
            logger.warning("Invalid agent timeout %r; using %ss", timeout, DEFAULT_AGENT_TIMEOUT)
            self.timeout = DEFAULT_AGENT_TIMEOUT
        self.env_overrides = env_overrides or {}

    @classmethod
    def from_configuration(cls, config: RunConfiguration) -> CodexRunner:
        return cls(
            config.agent_binary,
            model=config.model,
            provider=config.provider,
            timeout=config.agent_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        workspace: str | Path,
        prompt: str,
        *,
        api_key: SecretStr,
        api_base_url: str,
    ) -> AgentResult:
        """Execute a single Codex CLI invocation.

        Any non-zero exit, timeout, or launch failure yields
        ``success=False``; output is not interpreted.  Prompts beginning
        with ``-`` are not supported: the CLI would parse them as options,
        so they are rejected without launching anything.
        """
        workspace = Path(workspace).resolve()
        if not workspace.is_dir():
            return AgentResult(
                success=False,
                exit_code=-1,
                errors=[f"workspace does not exist: {workspace}"],
            )
        if prompt.startswith("-"):
            return AgentResult(
                success=False,
                exit_code=-1,
                errors=["prompt must not start with '-'; the agent CLI would read it as an option"],
            )

        cmd = self._build_command(prompt)
        env = {**os.environ, **self.env_overrides, **self._build_env(api_key, api_base_url)}
        secret = api_key.get_secret_value()
        logger.info(
            "Running %s (cwd=%s, model=%s, provider=%s, timeout=%s)",
            self.name,
            workspace,
            self.model,
            self.provider,
            f"{self.timeout}s" if self.timeout else "none",
        )
        log_prompt(logger, prompt)

        start = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                cwd=workspace,
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout or None,
            )
        except subprocess.TimeoutExpired as exc:
            stdout = redact_sensitive_text(_as_text(exc.stdout), (secret,))
            stderr = redact_sensitive_text(_as_text(exc.stderr), (secret,))
            self._log_output(stdout, stderr)
            return AgentResult(
                success=False,
                exit_code=-1,
                stdout=stdout,
                stderr=stderr,
                timed_out=True,
                errors=[f"{self.name} process timed out after {self.timeout}s"],
                duration_seconds=time.monotonic() - start,
            )
        except OSError as exc:
            return AgentResult(
                success=False,
                exit_code=-1,
                errors=[f"Failed to execute {cmd[0]}: {exc}"],
                duration_seconds=time.monotonic() - start,
            )

        stdout = redact_sensitive_text(proc.stdout or "", (secret,))
        stderr = redact_sensitive_text(proc.stderr or "", (secret,))
        self._log_output(stdout, stderr)
        return self._aggregate(proc.returncode, stdout, stderr, time.monotonic() - start)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_command(self, prompt: str) -> list[str]:
        # The prompt stays a single argv element; no shell is involved.
        return [
            resolve_binary(self.codex_binary),
            prompt,
            "--model",
            self.model,
            "--provider",
            self.provider,
            NON_INTERACTIVE_FLAG,
            "--quiet",
        ]

    def _build_env(self, api_key: SecretStr, api_base_url: str) -> dict[str, str]:
        prefix = provider_env_prefix(self.provider)
        env = {f"{prefix}_API_KEY": api_key.get_secret_value()}
        if api_base_url:
            env[f"{prefix}_BASE_URL"] = api_base_url
        return env

    def _log_output(self, stdout: str, stderr: str) -> None:
        for line in stdout.splitlines():
            if line.strip():
                logger.info("[%s] %s", self.name.lower(), line)
        for line in stderr.splitlines():
            if line.strip():
                logger.debug("[%s:stderr] %s", self.name.lower(), line)

    def _aggregate(
        self,
        exit_code: int,
        stdout: str,
        stderr: str,
        duration: float,
    ) -> AgentResult:
        errors: list[str] = []
        if exit_code != 0:
            detail = stderr.strip() or stdout.strip()
            if detail:
                errors.append(detail[-_MAX_ERROR_CHARS:])
            else:
                errors.append(f"{self.name} exited with status {exit_code} and no output")
        return AgentResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            errors=errors,
            duration_seconds=duration,
        )


register_agent("codex", CodexRunner)
