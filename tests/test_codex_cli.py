"""Unit tests for codex_cli module."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from pydantic import SecretStr

from codex_build.codex_cli import CodexRunner, provider_env_prefix, resolve_binary
from codex_build.schemas import RunConfiguration

API_KEY = SecretStr("sk-unit-test-secret-value")
PROMPT = 'Refactor "utils"; then\nrun `make` && echo $HOME'


class _FakeRun:
    """Stand-in for ``subprocess.run`` that records its call."""

    def __init__(self, *, returncode=0, stdout="", stderr="", raises=None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if self.raises is not None:
            raise self.raises
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def fake_run(monkeypatch) -> _FakeRun:
    fake = _FakeRun()
    monkeypatch.setattr("codex_build.codex_cli.subprocess.run", fake)
    monkeypatch.setattr("codex_build.codex_cli.shutil.which", lambda name: None)
    return fake


def _run(runner: CodexRunner, workspace: Path, base_url: str = "https://llm.example.com/v1"):
    return runner.run(workspace, PROMPT, api_key=API_KEY, api_base_url=base_url)


class TestCommand:
    def test_prompt_is_single_argument(self, fake_run, tmp_path):
        _run(CodexRunner(model="gpt-4.1", provider="openai"), tmp_path)

        cmd, kwargs = fake_run.calls[0]
        assert cmd == [
            "codex",
            PROMPT,
            "--model",
            "gpt-4.1",
            "--provider",
            "openai",
            "--full-auto",
            "--quiet",
        ]
        assert "shell" not in kwargs
        assert kwargs["cwd"] == tmp_path.resolve()
        assert kwargs["stdin"] is subprocess.DEVNULL

    def test_option_like_prompt_is_rejected(self, fake_run, tmp_path):
        result = CodexRunner().run(
            tmp_path, "--help me refactor", api_key=API_KEY, api_base_url=""
        )

        assert result.success is False
        assert "must not start with '-'" in result.errors[0]
        assert fake_run.calls == []

    def test_secret_only_in_environment(self, fake_run, tmp_path):
        _run(CodexRunner(provider="openai"), tmp_path)

        cmd, kwargs = fake_run.calls[0]
        assert kwargs["env"]["OPENAI_API_KEY"] == API_KEY.get_secret_value()
        assert kwargs["env"]["OPENAI_BASE_URL"] == "https://llm.example.com/v1"
        assert all(API_KEY.get_secret_value() not in part for part in cmd)

    def test_provider_selects_variable_names(self, fake_run, tmp_path):
        _run(CodexRunner(provider="azure-openai"), tmp_path)

        env = fake_run.calls[0][1]["env"]
        assert env["AZURE_OPENAI_API_KEY"] == API_KEY.get_secret_value()

    def test_empty_base_url_is_not_exported(self, fake_run, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
        _run(CodexRunner(), tmp_path, base_url="")

        assert "OPENAI_BASE_URL" not in fake_run.calls[0][1]["env"]

    def test_timeout_zero_disables_limit(self, fake_run, tmp_path):
        _run(CodexRunner(timeout=0), tmp_path)
        assert fake_run.calls[0][1]["timeout"] is None

        _run(CodexRunner(timeout=90), tmp_path)
        assert fake_run.calls[1][1]["timeout"] == 90


class TestResult:
    def test_zero_exit_is_success(self, fake_run, tmp_path):
        fake_run.stdout = "Applied 2 edits\n"
        result = _run(CodexRunner(), tmp_path)

        assert result.success is True
        assert result.exit_code == 0
        assert result.errors == []
        assert "Applied 2 edits" in result.stdout

    def test_non_zero_exit_is_failure(self, fake_run, tmp_path):
        fake_run.returncode = 2
        fake_run.stderr = "error: model not found\n"
        result = _run(CodexRunner(), tmp_path)

        assert result.success is False
        assert result.exit_code == 2
        assert result.errors == ["error: model not found"]

    def test_silent_failure_still_has_error(self, fake_run, tmp_path):
        fake_run.returncode = 1
        result = _run(CodexRunner(), tmp_path)
        assert result.errors == ["Codex exited with status 1 and no output"]

    def test_timeout(self, fake_run, tmp_path):
        fake_run.raises = subprocess.TimeoutExpired(cmd=["codex"], timeout=5, output=b"partial")
        result = _run(CodexRunner(timeout=5), tmp_path)

        assert result.success is False
        assert result.timed_out is True
        assert result.stdout == "partial"
        assert "timed out after 5s" in result.errors[0]

    def test_missing_binary(self, fake_run, tmp_path):
        fake_run.raises = FileNotFoundError(2, "No such file or directory")
        result = _run(CodexRunner(codex_binary="codex-missing"), tmp_path)

        assert result.success is False
        assert "Failed to execute codex-missing" in result.errors[0]

    def test_missing_workspace(self, fake_run, tmp_path):
        result = _run(CodexRunner(), tmp_path / "absent")

        assert result.success is False
        assert fake_run.calls == []

    def test_output_echoing_key_is_redacted(self, fake_run, tmp_path, caplog):
        caplog.set_level("INFO", logger="codex_build.codex_cli")
        fake_run.stdout = f"using key {API_KEY.get_secret_value()}\n"
        fake_run.stderr = "Authorization: Bearer abcdefghijklmnop\n"
        result = _run(CodexRunner(), tmp_path)

        assert API_KEY.get_secret_value() not in result.stdout
        assert "abcdefghijklmnop" not in result.stderr
        assert API_KEY.get_secret_value() not in caplog.text

    def test_prompt_logged_as_metadata_by_default(self, fake_run, tmp_path, caplog):
        caplog.set_level("INFO", logger="codex_build.codex_cli")
        _run(CodexRunner(), tmp_path)

        assert "Prompt metadata: len=" in caplog.text
        assert PROMPT not in caplog.text


def test_from_configuration_copies_agent_settings():
    config = RunConfiguration(
        model="o3",
        provider="openrouter",
        agent_binary="/opt/codex/bin/codex",
        agent_timeout_seconds=120,
    )
    runner = CodexRunner.from_configuration(config)

    assert runner.model == "o3"
    assert runner.provider == "openrouter"
    assert runner.codex_binary == "/opt/codex/bin/codex"
    assert runner.timeout == 120


@pytest.mark.parametrize(
    "provider,expected",
    [("openai", "OPENAI"), ("azure-openai", "AZURE_OPENAI"), ("  ", "OPENAI"), ("x.ai", "X_AI")],
)
def test_provider_env_prefix(provider, expected):
    assert provider_env_prefix(provider) == expected


def test_resolve_binary_strips_shell_quotes(monkeypatch):
    monkeypatch.setattr("codex_build.codex_cli.shutil.which", lambda name: None)
    assert resolve_binary('"/opt/my tools/codex"') == "/opt/my tools/codex"
    assert resolve_binary("") == ""
