from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "codex_sdk", "claude"]
BACKEND_NAMES: tuple[str, ...] = ("codex", "codex_sdk", "claude")
CommitStrategyName = Literal["per-task", "per-phase", "per-feature", "manual"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    docs_root: str = "docs"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0
    sdk_model: str = "gpt-5-codex"


@dataclass(slots=True)
class AgentsConfig:
    collaborator_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class WorkflowConfig:
    max_revisions: int = 2
    max_quality_attempts: int = 3
    max_execution_attempts: int = 2
    default_commit_strategy: CommitStrategyName = "per-task"
    expert_perspectives: list[str] = field(default_factory=list)
    expert_analysis_timeout_seconds: float = 900.0


@dataclass(slots=True)
class ThresholdsConfig:
    files_per_task: int = 5
    edit_invocations: int = 5
    same_file_edits: int = 3
    repeated_error: int = 3


@dataclass(slots=True)
class StateConfig:
    directory: str = ".flowpilot"


@dataclass(slots=True)
class FlowpilotConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    thresholds: ThresholdsConfig = field(default_factory=ThresholdsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> FlowpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FlowpilotConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            thresholds=ThresholdsConfig(**data.get("thresholds", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "docs_root": self.project.docs_root,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "sdk_model": self.backend.sdk_model,
            },
            "agents": {
                "collaborator_model": self.agents.collaborator_model,
            },
            "workflow": {
                "max_revisions": self.workflow.max_revisions,
                "max_quality_attempts": self.workflow.max_quality_attempts,
                "max_execution_attempts": self.workflow.max_execution_attempts,
                "default_commit_strategy": self.workflow.default_commit_strategy,
                "expert_perspectives": list(self.workflow.expert_perspectives),
                "expert_analysis_timeout_seconds": (
                    self.workflow.expert_analysis_timeout_seconds
                ),
            },
            "thresholds": {
                "files_per_task": self.thresholds.files_per_task,
                "edit_invocations": self.thresholds.edit_invocations,
                "same_file_edits": self.thresholds.same_file_edits,
                "repeated_error": self.thresholds.repeated_error,
            },
            "state": {
                "directory": self.state.directory,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FlowpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "agents", "workflow", "thresholds", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FlowpilotConfig:
    if not path.exists():
        return FlowpilotConfig.default()
    return FlowpilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FlowpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
