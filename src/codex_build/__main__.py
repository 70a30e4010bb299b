"""CLI entrypoint for codex-build."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from codex_build.agent_runner import list_agents
from codex_build.config import (
    load_configuration,
    resolve_credentials_file,
    resolve_keyring_service,
    resolve_workspace,
)
from codex_build.credentials import CredentialStore, JsonFileCredentialStore, KeyringCredentialStore
from codex_build.errors import ConfigurationError
from codex_build.orchestrator import BuildOrchestrator
from codex_build.preflight import PreflightCheck, build_preflight_checks


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="codex-build",
        description="codex-build - run a coding agent against a branch and publish its changes.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    # Run sub-command.  Every option falls back to its environment variable.
    run_p = sub.add_parser("run", help="Run one build.")
    run_p.add_argument("--prompt", help="Task prompt for the agent (env CODEX_BUILD_PROMPT).")
    run_p.add_argument(
        "--prompt-file",
        type=Path,
        help="Read the prompt from a file instead of --prompt.",
    )
    run_p.add_argument(
        "--api-key-id",
        dest="api_key_credential_id",
        help="Credential id of the provider API key (env CODEX_BUILD_API_KEY_ID).",
    )
    run_p.add_argument("--api-base-url", dest="api_base_url", help="Provider API base URL.")
    run_p.add_argument("--repo-url", dest="repository_url", help="Repository URL to clone.")
    run_p.add_argument("--branch", help="Branch to check out (default master).")
    run_p.add_argument("--author-name", dest="git_author_name", help="Commit author name.")
    run_p.add_argument("--author-email", dest="git_author_email", help="Commit author email.")
    run_p.add_argument(
        "--git-credential-id",
        dest="git_credential_id",
        help="Credential id for repository access (username/password or SSH key).",
    )
    run_p.add_argument("--model", help="Model passed to the agent.")
    run_p.add_argument("--provider", help="Provider passed to the agent (default openai).")
    run_p.add_argument(
        "--push",
        dest="push_enabled",
        action="store_const",
        const=True,
        default=None,
        help="Push the release branch after committing.",
    )
    run_p.add_argument("--build-id", dest="build_id", type=int, help="Build number (env BUILD_NUMBER).")
    run_p.add_argument("--agent-bin", dest="agent_binary", help="Agent executable (default codex).")
    run_p.add_argument(
        "--agent-timeout",
        dest="agent_timeout_seconds",
        type=int,
        help="Agent time limit in seconds; 0 disables (default 3600).",
    )
    run_p.add_argument("--agent", default="codex", help="Registered agent runner key.")
    run_p.add_argument("--workspace", help="Working directory (env WORKSPACE, default cwd).")
    run_p.add_argument(
        "--credentials-file",
        help="JSON credentials file (env CODEX_BUILD_CREDENTIALS_FILE).",
    )
    run_p.add_argument(
        "--keyring-service",
        help="Keyring service used without a credentials file (env CODEX_BUILD_KEYRING_SERVICE).",
    )
    run_p.add_argument("--report", type=Path, help="Write the JSON build report here.")

    doctor_p = sub.add_parser("doctor", help="Check that git, the agent, and credentials are set up.")
    doctor_p.add_argument("--agent-bin", dest="agent_binary", default=None, help="Agent executable.")
    doctor_p.add_argument("--credentials-file", help="JSON credentials file.")
    doctor_p.add_argument("--keyring-service", help="Keyring service to check.")
    doctor_p.add_argument("--json", action="store_true", help="Emit machine-readable JSON.")

    sub.add_parser("list-agents", help="List registered agent runners.")
    return p


_CONFIG_OPTIONS = (
    "prompt",
    "api_key_credential_id",
    "api_base_url",
    "repository_url",
    "branch",
    "git_author_name",
    "git_author_email",
    "git_credential_id",
    "model",
    "provider",
    "push_enabled",
    "build_id",
    "agent_binary",
    "agent_timeout_seconds",
)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate command."""
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all modes) --------------------------------
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.command == "run":
        return _run_build(args)
    if args.command == "doctor":
        return _run_doctor(args)
    if args.command == "list-agents":
        for key in list_agents():
            print(key)
        return 0

    parser.print_help()
    print("\nTip: run 'codex-build run --help' for build options.", file=sys.stderr)
    return 1


def _run_build(args: argparse.Namespace) -> int:
    overrides = {name: getattr(args, name, None) for name in _CONFIG_OPTIONS}
    try:
        if args.prompt_file is not None:
            overrides["prompt"] = args.prompt_file.read_text(encoding="utf-8")
        config = load_configuration(overrides)
    except (ConfigurationError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    store = _credential_store(args)
    try:
        orchestrator = BuildOrchestrator(
            config,
            resolve_workspace(args.workspace),
            credential_store=store,
            agent=args.agent,
            report_path=args.report,
        )
    except KeyError as exc:
        print(f"error: {exc.args[0]}", file=sys.stderr)
        return 1
    report = orchestrator.run()
    return 0 if report.success else 1


def _credential_store(args: argparse.Namespace) -> CredentialStore:
    credentials_file = resolve_credentials_file(args.credentials_file)
    if credentials_file is not None:
        return JsonFileCredentialStore(credentials_file)
    return KeyringCredentialStore(resolve_keyring_service(args.keyring_service))


def _print_checks(checks: list[PreflightCheck]) -> None:
    print("\n  codex-build doctor")
    print("  " + "=" * 58)
    for check in checks:
        marker = "OK  " if check.ok else "FAIL"
        print(f"  [{marker}] {check.label}: {check.detail}")
        if check.hint and not check.ok:
            print(f"         hint: {check.hint}")
    print()


def _run_doctor(args: argparse.Namespace) -> int:
    try:
        config = load_configuration({"agent_binary": args.agent_binary})
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    checks = build_preflight_checks(
        agent_binary=config.agent_binary,
        credentials_file=resolve_credentials_file(args.credentials_file),
        keyring_service=resolve_keyring_service(args.keyring_service),
    )
    if args.json:
        print(json.dumps([check.to_dict() for check in checks], indent=2))
    else:
        _print_checks(checks)
    return 0 if all(check.ok for check in checks) else 1


if __name__ == "__main__":
    raise SystemExit(main())
