"""Error taxonomy for build stages.

Every stage failure is a :class:`BuildError` carrying the stage it belongs
to, so the orchestrator can report one diagnostic of the form
``[<stage>] <message>``.
"""

from __future__ import annotations

from codex_build.schemas import Stage


class BuildError(RuntimeError):
    """Base class for fatal stage failures."""

    default_stage: Stage = Stage.FINALIZE

    def __init__(self, message: str, *, stage: Stage | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage or self.default_stage

    def __str__(self) -> str:
        return f"[{self.stage.value}] {self.message}"


class ConfigurationError(BuildError):
    """Mandatory configuration is missing or malformed."""

    default_stage = Stage.VALIDATE

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class CredentialError(BuildError):
    """A credential reference is unknown or resolves to the wrong kind."""

    default_stage = Stage.INIT


class WorkspaceError(BuildError):
    """A git command failed while preparing the workspace."""

    default_stage = Stage.INIT


class AgentError(BuildError):
    """The coding agent exited non-zero or could not be started."""

    default_stage = Stage.INVOKE


class DetectionError(BuildError):
    """The porcelain status query failed."""

    default_stage = Stage.DETECT


class PublishError(BuildError):
    """Branch creation, commit, or push failed."""

    default_stage = Stage.COMMIT_PUSH
