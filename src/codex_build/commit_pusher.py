"""Commit the agent's changes to a fresh release branch and optionally push it."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TypeVar

from codex_build import git_tools
from codex_build.credentials import CredentialResolver
from codex_build.errors import PublishError
from codex_build.git_tools import GitError
from codex_build.schemas import release_branch_name
from codex_build.workspace import REMOTE_NAME

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StepPolicy(str, Enum):
    """How a failing step affects the stage."""

    BEST_EFFORT = "best_effort"
    FATAL = "fatal"


def run_step(policy: StepPolicy, description: str, action: Callable[[], T]) -> T | None:
    """Run *action* under *policy*.

    ``FATAL`` converts git failures into :class:`PublishError`;
    ``BEST_EFFORT`` logs them and returns ``None``.
    """
    try:
        return action()
    except GitError as exc:
        if policy is StepPolicy.BEST_EFFORT:
            logger.warning("Ignoring failure to %s: %s", description, exc)
            return None
        raise PublishError(f"Failed to {description}: {exc}") from exc


def build_commit_message(build_id: int, prompt: str) -> str:
    """Return ``"Codex build #<id>"``, a blank line, then *prompt* verbatim."""
    return f"Codex build #{build_id}\n\n{prompt}"


@dataclass(frozen=True)
class PublishResult:
    """Where the changes ended up."""

    branch: str
    commit_sha: str
    pushed: bool


class CommitPusher:
    """Create ``codex-build-<id>``, commit everything, and push when enabled."""

    def __init__(self, workspace: str | Path, resolver: CredentialResolver) -> None:
        self.workspace = Path(workspace)
        self.resolver = resolver
        self.last_commit_sha: str | None = None

    def publish(
        self,
        *,
        build_id: int,
        prompt: str,
        author_name: str,
        author_email: str,
        push_enabled: bool,
        repository_url: str,
        credential_id: str | None = None,
    ) -> PublishResult:
        """Commit the workspace to the release branch and push it if enabled.

        On push failure the local commit is kept; :attr:`last_commit_sha`
        still names it.  A credential embedded in the URL is written to
        ``origin`` only for the push and replaced by *repository_url* after.
        """
        repo = self.workspace
        self.last_commit_sha = None
        run_step(
            StepPolicy.BEST_EFFORT,
            "set git user.name",
            lambda: git_tools.set_config(repo, "user.name", author_name),
        )
        run_step(
            StepPolicy.BEST_EFFORT,
            "set git user.email",
            lambda: git_tools.set_config(repo, "user.email", author_email),
        )

        branch = release_branch_name(build_id)
        run_step(
            StepPolicy.FATAL,
            f"create branch {branch}",
            lambda: git_tools.create_branch(repo, branch),
        )
        run_step(StepPolicy.FATAL, "stage changes", lambda: git_tools.stage_all(repo))
        message = build_commit_message(build_id, prompt)
        sha = run_step(
            StepPolicy.FATAL,
            "commit changes",
            lambda: git_tools.commit(repo, message),
        )
        if sha is None:
            raise PublishError("Failed to commit changes: git reported no commit")
        self.last_commit_sha = sha
        logger.info("Committed %s on %s", sha[:12], branch)

        if not push_enabled:
            logger.info("Push disabled; leaving %s local-only", branch)
            return PublishResult(branch=branch, commit_sha=sha, pushed=False)

        with self.resolver.remote_access(repository_url, credential_id) as access:
            logger.info("Pushing %s to %s", branch, access.display_url)
            if access.embeds_secret:
                run_step(
                    StepPolicy.FATAL,
                    f"point {REMOTE_NAME} at the authenticated URL",
                    lambda: git_tools.set_remote_url(repo, REMOTE_NAME, access.git_url()),
                )
            try:
                run_step(
                    StepPolicy.FATAL,
                    f"push {branch} to {REMOTE_NAME}",
                    lambda: git_tools.push_branch(
                        repo,
                        branch,
                        remote=REMOTE_NAME,
                        env=access.git_env(),
                    ),
                )
            finally:
                if access.embeds_secret:
                    run_step(
                        StepPolicy.BEST_EFFORT,
                        f"restore plain {REMOTE_NAME} URL",
                        lambda: git_tools.set_remote_url(repo, REMOTE_NAME, repository_url),
                    )
        logger.info("Pushed %s", branch)
        return PublishResult(branch=branch, commit_sha=sha, pushed=True)
