from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from flowpilot.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
)
from flowpilot.collaborators import build_registry
from flowpilot.config import (
    BACKEND_NAMES,
    BackendName,
    FlowpilotConfig,
    load_config,
    save_config,
)
from flowpilot.documents import Conditions, resolve
from flowpilot.errors import FlowpilotError
from flowpilot.escalation import EscalationRequired
from flowpilot.execution import CommitStrategy
from flowpilot.flow import FlowInstance, TaskRequest
from flowpilot.gates import PendingApproval
from flowpilot.orchestrator import FlowOrchestrator
from flowpilot.phases import FeatureType, FlowMode, Scenario
from flowpilot.responses import StructuredResponse
from flowpilot.scale import classify
from flowpilot.state import FlowStateStore, GitCommitter

CONFIG_OPTION_DEFAULT = "flowpilot.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: FlowpilotConfig
    store: FlowStateStore
    committer: GitCommitter
    orchestrator: FlowOrchestrator


class ConsoleApprover:
    """Asks the person at the terminal to approve or reject each stop point."""

    async def request(self, pending: PendingApproval, response: StructuredResponse) -> None:
        click.echo("")
        click.echo(f"Stop point: {pending.phase.name} ({pending.approval_id})")
        click.echo(f"Artifact: {pending.artifact_ref}")
        if response.payload:
            click.echo(json.dumps(response.payload, ensure_ascii=False, indent=2))
        if click.confirm("Approve and continue?", default=False):
            pending.approve()
            return
        reason = click.prompt("What has to change")
        pending.reject(reason)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, config: FlowpilotConfig, repo_root: Path
) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    if backend_name == "codex_sdk":
        return CodexSDKBackend(model=config.backend.sdk_model, working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_backend_event(store: FlowStateStore, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    store.add_event(payload)


def _build_backend(
    config: FlowpilotConfig, repo_root: Path, store: FlowStateStore
) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, config, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, config, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(store, event),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = FlowStateStore(repo_root, directory=config.state.directory)
    committer = GitCommitter(repo_root)
    backend = _build_backend(config, repo_root, store)
    orchestrator = FlowOrchestrator(
        build_registry(backend, model=config.agents.collaborator_model),
        store,
        config,
        approver=ConsoleApprover(),
        committer=committer,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        committer=committer,
        orchestrator=orchestrator,
    )


def _request_from_options(
    description: str,
    files: int | None,
    mode: str,
    scenario: str,
    feature_type: str | None,
    existing_prd: bool,
) -> TaskRequest:
    return TaskRequest.from_text(
        description,
        file_count_estimate=files,
        mode=FlowMode(mode),
        scenario=Scenario(scenario),
        feature_type=FeatureType(feature_type) if feature_type else None,
        existing_prd=existing_prd,
    )


def _request_options(command):
    options = [
        click.option(
            "--files",
            type=click.IntRange(min=0),
            default=None,
            help="Estimated number of files the change touches.",
        ),
        click.option(
            "--mode",
            type=click.Choice([mode.value for mode in FlowMode]),
            default=FlowMode.FULL.value,
            show_default=True,
        ),
        click.option(
            "--scenario",
            type=click.Choice([item.value for item in Scenario]),
            default=Scenario.EXISTING_PROJECT.value,
            show_default=True,
        ),
        click.option(
            "--feature-type",
            type=click.Choice([item.value for item in FeatureType]),
            default=None,
            help="Game feature type; selects the game flow.",
        ),
        click.option("--existing-prd", is_flag=True, default=False),
    ]
    for option in reversed(options):
        command = option(command)
    return command


@click.group()
def cli() -> None:
    """Flowpilot CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_NAMES), default=None)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    store = FlowStateStore(repo_root, directory=config.state.directory)
    if not store.get_context():
        store.set_context({"status": "ready", "phase": None, "flow": None})

    click.echo(f"Initialized Flowpilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Git commits: {'enabled' if GitCommitter(repo_root).available else 'unavailable'}")


@cli.command("classify")
@click.argument("file_count", type=int)
@click.option("--ui", "ui_involved", is_flag=True, default=False)
@click.option("--architecture-change", is_flag=True, default=False)
@click.option("--new-dependency", is_flag=True, default=False)
@click.option("--data-flow-change", is_flag=True, default=False)
@click.option("--existing-prd", is_flag=True, default=False)
def classify_command(
    file_count: int,
    ui_involved: bool,
    architecture_change: bool,
    new_dependency: bool,
    data_flow_change: bool,
    existing_prd: bool,
) -> None:
    try:
        scale = classify(file_count)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="FILE_COUNT") from exc
    conditions = Conditions(
        architecture_change=architecture_change,
        new_dependency=new_dependency,
        data_flow_change=data_flow_change,
        ui_involved=ui_involved,
        existing_prd=existing_prd,
    )
    click.echo(json.dumps(resolve(scale, conditions).to_dict(), ensure_ascii=False, indent=2))


@cli.command("plan")
@click.argument("description")
@_request_options
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def plan_command(
    description: str,
    files: int | None,
    mode: str,
    scenario: str,
    feature_type: str | None,
    existing_prd: bool,
    config_value: str,
) -> None:
    """Show the phases a request would run through, without calling any collaborator."""
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    request = _request_from_options(description, files, mode, scenario, feature_type, existing_prd)
    try:
        flow = FlowInstance.start(request)
        phases = flow.phases(expert_analysis=bool(config.workflow.expert_perspectives))
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Scale: {flow.scale.value}")
    click.echo(f"Flow: {flow.variant.value}")
    for kind, level in flow.documents.levels.items():
        click.echo(f"  {kind.value:<10} {level.value}")
    for index, phase in enumerate(phases):
        marker = " [stop]" if phase.is_gate else ""
        if phase.is_batch_gate:
            marker = " [batch approval]"
        click.echo(f"{index:>2}. {phase.name}{marker}")


@cli.command("run")
@click.argument("description")
@_request_options
@click.option(
    "--commit-strategy",
    type=click.Choice([strategy.value for strategy in CommitStrategy]),
    default=None,
    help="Defaults to workflow.default_commit_strategy.",
)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def run_command(
    description: str,
    files: int | None,
    mode: str,
    scenario: str,
    feature_type: str | None,
    existing_prd: bool,
    commit_strategy: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    request = _request_from_options(description, files, mode, scenario, feature_type, existing_prd)
    try:
        report = asyncio.run(runtime.orchestrator.run(request, commit_strategy=commit_strategy))
    except EscalationRequired as exc:
        raise click.ClickException(f"Escalation required\n{exc.event.render()}") from exc
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Flow complete: {report.flow_id}")
    click.echo(f"Tasks completed: {report.tasks_completed}")
    click.echo(f"Commits: {len(report.commits)}")
    click.echo(f"Checks passed: {report.checks_passed}")
    if report.awaiting_commit:
        click.echo("Awaiting manual commit: " + ", ".join(report.awaiting_commit))
    if report.escalations:
        click.echo(f"Escalations recorded: {len(report.escalations)}")


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        payload = runtime.orchestrator.status(verbose=verbose)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("stop")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def stop_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runtime.orchestrator.stop()
    click.echo("Stop requested. The running flow halts before its next step.")


@cli.command("commit")
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def commit_command(config_value: str) -> None:
    """Commit tasks that passed quality checks but were left for manual commit."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        report = runtime.orchestrator.commit_pending()
    except EscalationRequired as exc:
        raise click.ClickException(exc.event.render()) from exc
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    if not report.commits:
        click.echo("Nothing to commit.")
        return
    for commit in report.commits:
        click.echo(f"{commit['ref'][:10]} {', '.join(commit['tasks'])}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(BACKEND_NAMES))
@click.option("--config", "config_value", default=CONFIG_OPTION_DEFAULT, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
