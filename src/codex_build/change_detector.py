"""Detect whether the agent left the workspace different from HEAD."""

from __future__ import annotations

import logging
from pathlib import Path

from codex_build import git_tools
from codex_build.errors import DetectionError
from codex_build.git_tools import GitError
from codex_build.schemas import ChangeSet

logger = logging.getLogger(__name__)


def parse_porcelain_paths(raw: str) -> list[str]:
    """Return the paths named by NUL-separated ``git status --porcelain=v1 -z`` output.

    Rename and copy records are followed by their source path, which is
    consumed rather than reported.
    """
    records = raw.split("\x00")
    paths: list[str] = []
    idx = 0
    while idx < len(records):
        record = records[idx]
        idx += 1
        if len(record) < 4:
            continue
        status, path = record[:2], record[3:]
        paths.append(path)
        if "R" in status or "C" in status:
            idx += 1
    return paths


def detect_changes(workspace: str | Path) -> ChangeSet:
    """Return the :class:`ChangeSet` for *workspace*.

    Reading the status does not mutate the tree, so calling this twice with
    no intervening edits yields equal results.
    """
    try:
        raw = git_tools.status_porcelain(workspace)
    except GitError as exc:
        raise DetectionError(str(exc)) from exc

    changed = raw.strip() != ""
    paths = parse_porcelain_paths(raw) if changed else []
    if changed:
        logger.info("Detected %d changed path(s)", len(paths))
        for path in paths:
            logger.debug("  changed: %s", path)
    else:
        logger.info("No changes detected in %s", workspace)
    return ChangeSet(changed=changed, paths=paths, porcelain=raw)
