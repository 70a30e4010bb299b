"""codex-build - run a coding agent against a branch and publish its changes."""

from importlib.metadata import PackageNotFoundError, version

from codex_build.orchestrator import BuildOrchestrator
from codex_build.schemas import BuildReport, ChangeSet, RunConfiguration

__all__ = ["BuildOrchestrator", "BuildReport", "ChangeSet", "RunConfiguration"]

try:
    __version__ = version("codex-build")
except PackageNotFoundError:
    __version__ = "0.0.0"
