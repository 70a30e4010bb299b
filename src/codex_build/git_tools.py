"""Git helper utilities for workspace setup, status queries, commits, and pushes."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path

from codex_build.redaction import redact_url_credentials

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 60
NETWORK_GIT_TIMEOUT = 600


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""

    def __init__(self, message: str, *, returncode: int = -1, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def _render_args(args: tuple[str, ...]) -> str:
    return redact_url_credentials(" ".join(args))


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = DEFAULT_GIT_TIMEOUT,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess.

    Credentials embedded in URLs are redacted from the logged command line
    and from the error message.  ``GIT_TERMINAL_PROMPT=0`` keeps git from
    ever blocking on an interactive credential prompt.
    """
    cmd = ["git", *args]
    rendered = _render_args(args)
    logger.debug("git %s (cwd=%s)", rendered, cwd)
    child_env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **(env or {})}
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=child_env,
            **_git_subprocess_isolation_kwargs(),
        )
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"`git {rendered}` timed out after {timeout}s") from exc
    except OSError as exc:
        raise GitError(f"`git {rendered}` could not be started: {exc}") from exc
    if check and result.returncode != 0:
        stderr = redact_url_credentials(result.stderr.strip())
        raise GitError(
            f"`git {rendered}` failed (rc={result.returncode}): {stderr}",
            returncode=result.returncode,
            stderr=stderr,
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def is_repository(repo: str | Path) -> bool:
    """Return True when *repo* already holds a git repository."""
    return (Path(repo) / ".git").exists()


def status_porcelain(repo: str | Path) -> str:
    """Return NUL-separated ``git status --porcelain=v1`` output.

    Untracked files are listed individually; ignored files are not listed.
    """
    return _run_git(
        "status",
        "--porcelain=v1",
        "-z",
        "--untracked-files=all",
        cwd=Path(repo),
    ).stdout


def head_sha(repo: str | Path) -> str:
    """Return the full SHA of HEAD."""
    return _run_git("rev-parse", "HEAD", cwd=Path(repo)).stdout.strip()


def remote_url(repo: str | Path, name: str = "origin") -> str | None:
    """Return the configured URL of remote *name*, or ``None`` if absent."""
    result = _run_git("remote", "get-url", name, cwd=Path(repo), check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def init_repository(repo: str | Path) -> None:
    """Create *repo* if needed and ``git init`` it."""
    cwd = Path(repo)
    cwd.mkdir(parents=True, exist_ok=True)
    _run_git("init", cwd=cwd)
    logger.info("Initialized git repository in %s", cwd)


def remove_remote(repo: str | Path, name: str = "origin") -> bool:
    """Remove remote *name*; return False when it did not exist."""
    result = _run_git("remote", "remove", name, cwd=Path(repo), check=False)
    if result.returncode == 0:
        return True
    stderr = result.stderr.strip()
    if "no such remote" in stderr.lower():
        return False
    raise GitError(
        f"`git remote remove {name}` failed (rc={result.returncode}): "
        f"{redact_url_credentials(stderr)}",
        returncode=result.returncode,
        stderr=redact_url_credentials(stderr),
    )


def add_remote(repo: str | Path, name: str, url: str) -> None:
    """Add remote *name* pointing at *url*."""
    _run_git("remote", "add", name, url, cwd=Path(repo))


def set_remote_url(repo: str | Path, name: str, url: str) -> None:
    """Point existing remote *name* at *url*."""
    _run_git("remote", "set-url", name, url, cwd=Path(repo))


def fetch_branch(
    repo: str | Path,
    branch: str,
    *,
    remote: str = "origin",
    env: Mapping[str, str] | None = None,
) -> None:
    """Fetch exactly ``refs/heads/<branch>`` into ``refs/remotes/<remote>/<branch>``."""
    refspec = f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}"
    _run_git(
        "fetch",
        "--no-tags",
        remote,
        refspec,
        cwd=Path(repo),
        timeout=NETWORK_GIT_TIMEOUT,
        env=env,
    )


def force_checkout(repo: str | Path, branch: str, start_point: str) -> None:
    """Force-checkout *branch*, creating or resetting it at *start_point*."""
    _run_git("checkout", "-f", "-B", branch, start_point, cwd=Path(repo))


def reset_hard(repo: str | Path, ref: str) -> None:
    """Hard-reset the current branch to *ref*."""
    _run_git("reset", "--hard", ref, cwd=Path(repo))


def clean_all(repo: str | Path) -> None:
    """Remove every untracked and ignored file and directory."""
    _run_git("clean", "-fdx", cwd=Path(repo))


def set_config(repo: str | Path, key: str, value: str) -> None:
    """Set a repo-local config value."""
    _run_git("config", key, value, cwd=Path(repo))


def create_branch(repo: str | Path, branch_name: str) -> str:
    """Create and checkout a new branch; fails when it already exists."""
    _run_git("checkout", "-b", branch_name, cwd=Path(repo))
    logger.info("Created branch %s", branch_name)
    return branch_name


def stage_all(repo: str | Path) -> None:
    """Stage every new, modified, and deleted path."""
    _run_git("add", "-A", cwd=Path(repo))


def commit(repo: str | Path, message: str) -> str:
    """Commit the index with *message* kept verbatim.  Return the new SHA."""
    _run_git("commit", "--cleanup=verbatim", "-m", message, cwd=Path(repo))
    return head_sha(repo)


def push_branch(
    repo: str | Path,
    branch: str,
    *,
    remote: str = "origin",
    env: Mapping[str, str] | None = None,
) -> None:
    """Push *branch* to *remote* and set it as upstream."""
    _run_git(
        "push",
        "--set-upstream",
        remote,
        branch,
        cwd=Path(repo),
        timeout=NETWORK_GIT_TIMEOUT,
        env=env,
    )
