"""Pydantic models for structured data throughout a build."""

from __future__ import annotations

import datetime as dt
import logging
import os
import tempfile
import time
from contextlib import suppress
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr

logger = logging.getLogger(__name__)
_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01

DEFAULT_API_BASE_URL = "https://api.openai.com/v1"
DEFAULT_BRANCH = "master"
DEFAULT_AUTHOR_NAME = "Codex Build"
DEFAULT_AUTHOR_EMAIL = "codex-build@localhost"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_PROVIDER = "openai"
DEFAULT_AGENT_BINARY = "codex"
DEFAULT_AGENT_TIMEOUT = 3600  # seconds; 0 disables

RELEASE_BRANCH_PREFIX = "codex-build-"


def _utcnow() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


class RunConfiguration(BaseModel):
    """Immutable input set for one build.

    ``prompt``, ``api_key_credential_id`` and ``repository_url`` are
    mandatory; their presence is checked by
    :func:`codex_build.validation.validate_configuration` rather than here so
    the validator can report every missing field at once.
    """

    model_config = ConfigDict(frozen=True)

    prompt: str = ""
    api_key_credential_id: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    repository_url: str = ""
    branch: str = DEFAULT_BRANCH
    git_author_name: str = DEFAULT_AUTHOR_NAME
    git_author_email: str = DEFAULT_AUTHOR_EMAIL
    git_credential_id: str | None = None
    model: str = DEFAULT_MODEL
    provider: str = DEFAULT_PROVIDER
    push_enabled: bool = False
    build_id: int = 0
    agent_binary: str = DEFAULT_AGENT_BINARY
    agent_timeout_seconds: int = DEFAULT_AGENT_TIMEOUT


def release_branch_name(build_id: int) -> str:
    """Return the per-run branch name, e.g. ``codex-build-42``."""
    return f"{RELEASE_BRANCH_PREFIX}{int(build_id)}"


# ---------------------------------------------------------------------------
# Credential material
# ---------------------------------------------------------------------------


class CredentialKind(str, Enum):
    """Kinds of secret a credential reference can resolve to."""

    SECRET_TEXT = "secret_text"
    USERNAME_PASSWORD = "username_password"
    SSH_PRIVATE_KEY = "ssh_private_key"


class SecretText(BaseModel):
    """A bearer token such as an API key."""

    kind: Literal["secret_text"] = "secret_text"
    secret: SecretStr


class UsernamePassword(BaseModel):
    """A username/password pair for HTTP(S) remotes."""

    kind: Literal["username_password"] = "username_password"
    username: str
    password: SecretStr


class SshPrivateKey(BaseModel):
    """An SSH private key blob with an optional passphrase."""

    kind: Literal["ssh_private_key"] = "ssh_private_key"
    private_key: SecretStr
    passphrase: SecretStr | None = None


CredentialMaterial = Annotated[
    Union[SecretText, UsernamePassword, SshPrivateKey],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


class AgentResult(BaseModel):
    """Result of a single coding-agent invocation."""

    success: bool = False
    exit_code: int = -1
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


class ChangeSet(BaseModel):
    """Whether the workspace diverged from HEAD, with the affected paths."""

    changed: bool = False
    paths: list[str] = Field(default_factory=list)
    porcelain: str = ""


# ---------------------------------------------------------------------------
# Orchestration state
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    """States of the build pipeline, in execution order."""

    VALIDATE = "validate"
    INIT = "init"
    INVOKE = "invoke"
    DETECT = "detect"
    COMMIT_PUSH = "commit_push"
    SKIP_COMMIT = "skip_commit"
    FINALIZE = "finalize"


class StageStatus(str, Enum):
    """Outcome of a single stage."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageRecord(BaseModel):
    """Persisted record of one stage transition."""

    stage: Stage
    status: StageStatus
    detail: str = ""
    duration_seconds: float = 0.0


class BuildReport(BaseModel):
    """Outcome of a whole run.  Never carries secret material."""

    build_id: int = 0
    success: bool = False
    failed_stage: Stage | None = None
    diagnostic: str = ""
    stages: list[StageRecord] = Field(default_factory=list)
    change_set: ChangeSet | None = None
    release_branch: str | None = None
    commit_sha: str | None = None
    pushed: bool = False
    started_at: str = Field(default_factory=_utcnow)
    finished_at: str | None = None

    # -- helpers --

    def record(
        self,
        stage: Stage,
        status: StageStatus,
        detail: str = "",
        duration_seconds: float = 0.0,
    ) -> StageRecord:
        """Append a stage record and return it."""
        entry = StageRecord(
            stage=stage,
            status=status,
            detail=detail,
            duration_seconds=round(max(0.0, duration_seconds), 3),
        )
        self.stages.append(entry)
        return entry

    def status_of(self, stage: Stage) -> StageStatus | None:
        """Return the recorded status of *stage*, or ``None`` if never reached."""
        for entry in self.stages:
            if entry.stage == stage:
                return entry.status
        return None

    def save(self, path: str | Path) -> None:
        """Persist the report to *path* as JSON, atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{path.name}.",
            suffix=".tmp",
            dir=str(path.parent),
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            _replace_file_with_retry(tmp_path, path)
        finally:
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    """Replace *dst* with *src*, retrying on transient Windows file-lock races."""
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error
