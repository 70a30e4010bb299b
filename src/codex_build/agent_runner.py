"""Abstract base class for coding-agent runners.

Agent runners wrap a coding-agent CLI so the orchestrator can invoke any of
them the same way: one non-interactive process against the workspace, with
the API key and base URL injected into the child environment only.
"""

from __future__ import annotations

import abc
from pathlib import Path

from pydantic import SecretStr

from codex_build.schemas import AgentResult, RunConfiguration


class AgentRunner(abc.ABC):
    """Common interface for coding-agent CLI wrappers.

    Subclasses must implement :meth:`run` which accepts a workspace path and
    a prompt and returns an :class:`AgentResult`.
    """

    #: Human-readable name used in log lines.
    name: str = "base"

    @classmethod
    def from_configuration(cls, config: RunConfiguration) -> AgentRunner:
        """Build a runner from the run's model/provider/binary settings."""
        return cls()

    @abc.abstractmethod
    def run(
        self,
        workspace: str | Path,
        prompt: str,
        *,
        api_key: SecretStr,
        api_base_url: str,
    ) -> AgentResult:
        """Execute a single agent invocation and return its result.

        Parameters
        ----------
        workspace:
            Working directory (the checked-out repository).
        prompt:
            Natural-language task prompt, passed as one argument.
        api_key:
            Provider API key; only ever placed in the child environment.
        api_base_url:
            Provider API base URL.
        """


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[AgentRunner]] = {}


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Register an agent runner class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Agent key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentRunner):
        raise TypeError("Registered agent must be an AgentRunner subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Agent '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_agent_class(key: str) -> type[AgentRunner]:
    """Look up a registered agent runner class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_agents() -> list[str]:
    """Return all registered agent keys."""
    return sorted(_REGISTRY)
