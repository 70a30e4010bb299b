"""Bring a working directory to an exact, clean checkout of ``origin/<branch>``."""

from __future__ import annotations

import logging
from pathlib import Path

from codex_build import git_tools
from codex_build.credentials import CredentialResolver
from codex_build.errors import WorkspaceError
from codex_build.git_tools import GitError

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"


class WorkspaceInitializer:
    """Idempotently mirror a remote branch into *workspace*.

    The directory may be absent, pristine, or hold a previous run's
    artifacts.  After :meth:`initialize` returns, HEAD equals
    ``origin/<branch>`` and no untracked or ignored files remain.
    """

    def __init__(self, workspace: str | Path, resolver: CredentialResolver) -> None:
        self.workspace = Path(workspace)
        self.resolver = resolver

    def initialize(
        self,
        repository_url: str,
        branch: str,
        credential_id: str | None = None,
    ) -> str:
        """Run the init sequence and return the checked-out HEAD SHA.

        Order matters: only the named branch is fetched, and the hard reset
        happens before ``clean`` so cleaning never touches tracked files of
        the reset target.  A credential embedded in the URL is written to
        ``origin`` for the fetch alone; afterwards ``origin`` holds the plain
        *repository_url*.
        """
        with self.resolver.remote_access(repository_url, credential_id) as access:
            logger.info(
                "Initializing workspace %s from %s (branch %s)",
                self.workspace,
                access.display_url,
                branch,
            )
            tracking_ref = f"refs/remotes/{REMOTE_NAME}/{branch}"
            try:
                if not git_tools.is_repository(self.workspace):
                    git_tools.init_repository(self.workspace)
                if git_tools.remove_remote(self.workspace, REMOTE_NAME):
                    logger.debug("Removed stale '%s' remote", REMOTE_NAME)
                git_tools.add_remote(self.workspace, REMOTE_NAME, access.git_url())
                try:
                    git_tools.fetch_branch(
                        self.workspace,
                        branch,
                        remote=REMOTE_NAME,
                        env=access.git_env(),
                    )
                finally:
                    if access.embeds_secret:
                        # origin only holds the credential URL while fetching.
                        git_tools.set_remote_url(self.workspace, REMOTE_NAME, repository_url)
                git_tools.force_checkout(self.workspace, branch, tracking_ref)
                git_tools.reset_hard(self.workspace, tracking_ref)
                git_tools.clean_all(self.workspace)
                sha = git_tools.head_sha(self.workspace)
            except (GitError, OSError) as exc:
                raise WorkspaceError(str(exc)) from exc

        logger.info("Workspace at %s is now %s", branch, sha[:12])
        return sha
