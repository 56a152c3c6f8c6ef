from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from order.agents import SkillCollaborators
from order.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from order.config import (
    DEFAULT_CONFIG_PATH,
    BackendName,
    OrderConfig,
    load_config,
    save_config,
)
from order.dispatch import TaskDispatcher
from order.driver import LifecycleDriver
from order.host import BeadsTracker, GitHubCLIHost, Workspace
from order.logging import setup_logging
from order.outcome import OutcomeRecorder
from order.pipeline import PRIntegrationPipeline
from order.safety import SafetyGate
from order.state import RunRecord, RunStateError, RunStore


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: OrderConfig
    store: RunStore
    driver: LifecycleDriver


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_path: Path) -> OrderConfig:
    try:
        return load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "codex_sdk":
        return CodexSDKBackend(working_directory=repo_root)
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_executor_backend(config: OrderConfig, repo_root: Path) -> AgentBackend:
    # The executor edits the working tree; it always runs as a CLI agent.
    if config.backend.primary in ("codex", "codex_sdk"):
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_backend_event(store: RunStore, event: dict[str, Any]) -> None:
    def _apply(record: RunRecord) -> None:
        record.record_backend_event(event)

    store.update(_apply)


def _build_backend(config: OrderConfig, repo_root: Path, store: RunStore) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(store, event),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = _load(config_path)
    setup_logging(json_output=config.logging.json, log_level=config.logging.level)
    store = RunStore(config.state_path(repo_root))
    gate = SafetyGate(config.safety, config.kill_switch_path(repo_root))
    workspace = Workspace(repo_root, trunk=config.project.trunk, remote=config.project.remote)
    host = GitHubCLIHost(
        repo_root,
        retry_policy=RetryPolicy(
            max_retries=max(0, int(config.host.max_retries)),
            backoff_seconds=max(0.0, float(config.host.retry_backoff_seconds)),
            timeout_seconds=120.0,
        ),
    )
    agents = SkillCollaborators(
        _build_backend(config, repo_root, store),
        _build_executor_backend(config, repo_root),
        executor_timeout_seconds=config.executor.timeout_seconds,
    )
    outcome = OutcomeRecorder(
        store, workspace, host, config.project, tracker=BeadsTracker(repo_root)
    )
    dispatcher = TaskDispatcher(
        store, workspace, agents, outcome, model=config.executor.model
    )
    pipeline = PRIntegrationPipeline(
        store,
        workspace,
        host,
        agents,
        gate,
        ci=config.ci,
        merge=config.merge,
        review=config.review,
    )
    driver = LifecycleDriver(config, repo_root, store, gate, agents, dispatcher, pipeline)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        driver=driver,
    )


def _status_payload(runtime: Runtime, *, verbose: bool) -> dict[str, Any]:
    record = runtime.store.read()
    kill_switch = runtime.config.kill_switch_path(runtime.repo_root)
    if verbose:
        payload = record.to_dict()
        payload["kill_switch"] = kill_switch.exists()
        payload["revision"] = runtime.store.revision
        return payload
    return {
        "state": record.state.value,
        "step": record.step,
        "step_id": record.step_id,
        "verdict": record.verdict.value if record.verdict else None,
        "iterations": record.iterations,
        "consecutive_failures": record.consecutive_failures,
        "steps_completed": record.steps_completed,
        "in_flight": record.in_flight,
        "completed": list(record.completed),
        "failed": list(record.failed),
        "prs": {str(number): pr.status.value for number, pr in sorted(record.prs.items())},
        "backend_metrics": dict(record.backend_metrics),
        "kill_switch": kill_switch.exists(),
    }


@click.group()
def cli() -> None:
    """ORDER: autonomous roadmap coordinator."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load(config_path)
    if not config_path.exists():
        save_config(config_path, config)

    config.state_dir(repo_root).mkdir(parents=True, exist_ok=True)
    config.handoffs_path(repo_root).mkdir(parents=True, exist_ok=True)
    store = RunStore(config.state_path(repo_root))
    try:
        record = store.initialize()
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized ORDER in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.path} ({record.state.value})")


@cli.command("run")
@click.option("--max-steps", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def run_command(max_steps: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        outcome = asyncio.run(runtime.driver.run(max_steps=max_steps))
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"State: {outcome.state.value}")
    click.echo(f"Steps completed: {outcome.steps_completed}")
    click.echo(outcome.reason)
    sys.exit(outcome.exit_code)


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        payload = _status_payload(runtime, verbose=verbose)
    except RunStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("stop")
@click.option("--clear", is_flag=True, default=False, help="Remove the kill switch.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def stop_command(clear: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load(_resolve_config_path(repo_root, config_value))
    kill_switch = config.kill_switch_path(repo_root)
    if clear:
        if kill_switch.exists():
            kill_switch.unlink()
            click.echo(f"Kill switch removed: {kill_switch}")
        else:
            click.echo("Kill switch not set.")
        return
    kill_switch.parent.mkdir(parents=True, exist_ok=True)
    kill_switch.touch()
    click.echo(f"Kill switch set: {kill_switch}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
