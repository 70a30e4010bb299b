"""Shared pytest configuration: markers, ordering, and git repository fixtures."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive tests that may call external APIs")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _isolated_git_config(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch):
    """Keep the developer's global/system git config out of the tests."""
    home = tmp_path_factory.mktemp("git-home")
    global_config = home / ".gitconfig"
    global_config.write_text("", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("CODEX_BUILD_PROMPT_DEBUG", raising=False)


def git(*args: str, cwd: Path) -> str:
    """Run git with a fixed test identity and return stdout."""
    result = subprocess.run(
        ["git", "-c", "user.name=Test User", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def redirect_remote(url: str, target: Path) -> None:
    """Make git fetch from and push to *target* whenever it is asked for *url*."""
    config = Path(os.environ["GIT_CONFIG_GLOBAL"])
    git("config", "--file", str(config), f"url.{target}.insteadOf", url, cwd=config.parent)


def make_remote(tmp_path: Path, branch: str = "master") -> Path:
    """Create a bare repository whose *branch* holds one commit.

    The commit tracks ``README.md``, ``src/app.txt`` and a ``.gitignore``
    that ignores ``build/``.
    """
    seed = tmp_path / "seed"
    seed.mkdir()
    git("init", cwd=seed)
    git("symbolic-ref", "HEAD", f"refs/heads/{branch}", cwd=seed)
    (seed / "README.md").write_text("# demo\n", encoding="utf-8")
    (seed / "src").mkdir()
    (seed / "src" / "app.txt").write_text("v1\n", encoding="utf-8")
    (seed / ".gitignore").write_text("build/\n", encoding="utf-8")
    git("add", "-A", cwd=seed)
    git("commit", "-m", "initial", cwd=seed)
    bare = tmp_path / "remote.git"
    git("clone", "--bare", str(seed), str(bare), cwd=tmp_path)
    return bare


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """A bare remote with a ``master`` branch."""
    return make_remote(tmp_path)
