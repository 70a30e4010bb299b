"""Build orchestrator.

:class:`BuildOrchestrator` drives one build through a fixed state machine::

    validate -> init -> invoke -> detect -> commit_push | skip_commit -> finalize

``detect`` moves to ``commit_push`` only when the agent changed something.
Any stage failure skips the remaining stages and jumps to ``finalize``,
which always runs.  No stage is retried.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TypeVar

from codex_build import codex_cli  # noqa: F401  registers the "codex" runner
from codex_build import git_tools
from codex_build.agent_runner import AgentRunner, get_agent_class
from codex_build.change_detector import detect_changes
from codex_build.commit_pusher import CommitPusher
from codex_build.credentials import CredentialResolver, CredentialStore
from codex_build.errors import AgentError, BuildError
from codex_build.git_tools import GitError
from codex_build.schemas import (
    BuildReport,
    ChangeSet,
    RunConfiguration,
    Stage,
    StageStatus,
    release_branch_name,
)
from codex_build.validation import validate_configuration
from codex_build.workspace import REMOTE_NAME, WorkspaceInitializer

logger = logging.getLogger(__name__)

T = TypeVar("T")

Finalizer = Callable[[BuildReport], None]

PIPELINE_STAGES: tuple[Stage, ...] = (
    Stage.VALIDATE,
    Stage.INIT,
    Stage.INVOKE,
    Stage.DETECT,
    Stage.COMMIT_PUSH,
)


class BuildOrchestrator:
    """Run one build against a host-isolated workspace.

    Parameters
    ----------
    config:
        The run's inputs; read-only for the whole run.
    workspace:
        Working directory supplied by the host.
    credential_store:
        Host secret store used to resolve credential references.
    runner:
        Agent runner.  Defaults to the registered runner named by *agent*,
        built from *config*.
    agent:
        Registry key used when *runner* is omitted.
    finalizers:
        Callables invoked with the final :class:`BuildReport` during
        ``finalize``.  Their failures are logged and ignored.
    report_path:
        When given, the report is written there as JSON during ``finalize``.
    """

    def __init__(
        self,
        config: RunConfiguration,
        workspace: str | Path,
        *,
        credential_store: CredentialStore,
        runner: AgentRunner | None = None,
        agent: str = "codex",
        finalizers: Iterable[Finalizer] = (),
        report_path: str | Path | None = None,
        temp_dir: str | Path | None = None,
    ) -> None:
        self.config = config
        self.workspace = Path(workspace).resolve()
        self.resolver = CredentialResolver(credential_store, temp_dir=temp_dir)
        self.runner = runner or get_agent_class(agent).from_configuration(config)
        self.finalizers = list(finalizers)
        self.report_path = Path(report_path) if report_path is not None else None

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self) -> BuildReport:
        """Execute the pipeline and return the report.  Never raises BuildError."""
        report = BuildReport(build_id=self.config.build_id)
        logger.info("Starting build %d in %s", self.config.build_id, self.workspace)
        try:
            self._run_stage(report, Stage.VALIDATE, self._validate)
            self._run_stage(report, Stage.INIT, self._init_workspace)
            self._run_stage(report, Stage.INVOKE, self._invoke_agent)
            change_set = self._run_stage(report, Stage.DETECT, self._detect)
            report.change_set = change_set
            if change_set.changed:
                self._run_stage(report, Stage.COMMIT_PUSH, lambda: self._commit_push(report))
            else:
                logger.info("──── Stage: %s ────", Stage.SKIP_COMMIT.value)
                report.record(
                    Stage.SKIP_COMMIT,
                    StageStatus.PASSED,
                    detail="no changes detected; nothing to commit",
                )
            report.success = True
        except BuildError as exc:
            report.success = False
            report.failed_stage = exc.stage
            report.diagnostic = str(exc)
            logger.error("Build failed: %s", exc)
            for stage in PIPELINE_STAGES:
                if report.status_of(stage) is None:
                    report.record(stage, StageStatus.SKIPPED, detail="not run")
        finally:
            self._finalize(report)
        return report

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    def _run_stage(
        self,
        report: BuildReport,
        stage: Stage,
        action: Callable[[], tuple[T, str]],
    ) -> T:
        """Run *action* as *stage*, recording its outcome on *report*."""
        logger.info("──── Stage: %s ────", stage.value)
        start = time.monotonic()
        try:
            value, detail = action()
        except BuildError as exc:
            exc.stage = stage
            report.record(stage, StageStatus.FAILED, exc.message, time.monotonic() - start)
            raise
        except Exception as exc:
            error = BuildError(f"{type(exc).__name__}: {exc}", stage=stage)
            report.record(stage, StageStatus.FAILED, error.message, time.monotonic() - start)
            raise error from exc
        report.record(stage, StageStatus.PASSED, detail, time.monotonic() - start)
        return value

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate(self) -> tuple[None, str]:
        validate_configuration(self.config)
        return None, "mandatory parameters present"

    def _init_workspace(self) -> tuple[str, str]:
        initializer = WorkspaceInitializer(self.workspace, self.resolver)
        sha = initializer.initialize(
            self.config.repository_url,
            self.config.branch,
            self.config.git_credential_id,
        )
        return sha, f"{REMOTE_NAME}/{self.config.branch} at {sha[:12]}"

    def _invoke_agent(self) -> tuple[None, str]:
        cfg = self.config
        with self.resolver.api_key(cfg.api_key_credential_id) as api_key:
            result = self.runner.run(
                self.workspace,
                cfg.prompt,
                api_key=api_key,
                api_base_url=cfg.api_base_url,
            )
        if not result.success:
            detail = "; ".join(result.errors) or "no error output"
            if result.timed_out:
                raise AgentError(f"{self.runner.name} timed out: {detail}")
            raise AgentError(f"{self.runner.name} exited with status {result.exit_code}: {detail}")
        return None, f"{self.runner.name} finished in {result.duration_seconds:.1f}s"

    def _detect(self) -> tuple[ChangeSet, str]:
        change_set = detect_changes(self.workspace)
        detail = f"{len(change_set.paths)} changed path(s)" if change_set.changed else "no changes"
        return change_set, detail

    def _commit_push(self, report: BuildReport) -> tuple[None, str]:
        cfg = self.config
        pusher = CommitPusher(self.workspace, self.resolver)
        try:
            result = pusher.publish(
                build_id=cfg.build_id,
                prompt=cfg.prompt,
                author_name=cfg.git_author_name,
                author_email=cfg.git_author_email,
                push_enabled=cfg.push_enabled,
                repository_url=cfg.repository_url,
                credential_id=cfg.git_credential_id,
            )
        finally:
            # A failed push still leaves the local commit behind.
            if pusher.last_commit_sha:
                report.commit_sha = pusher.last_commit_sha
                report.release_branch = release_branch_name(cfg.build_id)
        report.pushed = result.pushed
        action = "pushed" if result.pushed else "committed locally"
        return None, f"{action} {result.branch} at {result.commit_sha[:12]}"

    def _finalize(self, report: BuildReport) -> None:
        """Always-run cleanup and reporting hook."""
        logger.info("──── Stage: %s ────", Stage.FINALIZE.value)
        start = time.monotonic()
        notes: list[str] = []
        if self._origin_may_hold_credentials(report):
            try:
                git_tools.set_remote_url(self.workspace, REMOTE_NAME, self.config.repository_url)
                notes.append("origin credentials scrubbed")
            except GitError as exc:
                logger.warning("Could not reset origin URL: %s", exc)

        for hook in self.finalizers:
            try:
                hook(report)
            except Exception:
                logger.exception("Finalizer %r failed", hook)

        report.finished_at = dt.datetime.now(dt.timezone.utc).isoformat()
        report.record(
            Stage.FINALIZE,
            StageStatus.PASSED,
            "; ".join(notes) or ("success" if report.success else "failure"),
            time.monotonic() - start,
        )
        if self.report_path is not None:
            try:
                report.save(self.report_path)
                logger.info("Wrote build report to %s", self.report_path)
            except OSError as exc:
                logger.error("Could not write build report %s: %s", self.report_path, exc)

        for entry in report.stages:
            logger.info("  %-12s %-8s %s", entry.stage.value, entry.status.value, entry.detail)
        if report.success:
            logger.info("Build %d succeeded", report.build_id)
        else:
            logger.error("Build %d failed: %s", report.build_id, report.diagnostic)

    def _origin_may_hold_credentials(self, report: BuildReport) -> bool:
        if not (self.config.git_credential_id or "").strip():
            return False
        if report.status_of(Stage.INIT) not in (StageStatus.PASSED, StageStatus.FAILED):
            return False
        if not git_tools.is_repository(self.workspace):
            return False
        try:
            return git_tools.remote_url(self.workspace, REMOTE_NAME) is not None
        except GitError:
            return False
