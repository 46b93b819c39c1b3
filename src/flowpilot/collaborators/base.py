from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from importlib import resources
from typing import Any

from flowpilot.backends.base import AgentBackend, BackendExecutionError
from flowpilot.escalation import EscalationEvent, EscalationKind, EscalationRequired
from flowpilot.responses import StructuredResponse, parse_response

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}
READ_ONLY_TOOLS = ["read_file", "search"]
DOCUMENT_TOOLS = ["read_file", "write_file", "edit_file", "search"]
CODE_TOOLS = ["read_file", "write_file", "edit_file", "run_command", "search"]


class CollaboratorRole(str, Enum):
    REQUIREMENT_ANALYZER = "requirement-analyzer"
    PRD_CREATOR = "prd-creator"
    UX_DESIGNER = "ux-designer"
    TECHNICAL_DESIGNER = "technical-designer"
    DOCUMENT_REVIEWER = "document-reviewer"
    DESIGN_SYNC = "design-sync"
    ACCEPTANCE_TEST_GENERATOR = "acceptance-test-generator"
    WORK_PLANNER = "work-planner"
    TASK_DECOMPOSER = "task-decomposer"
    TASK_EXECUTOR = "task-executor"
    QUALITY_FIXER = "quality-fixer"
    INTEGRATION_TEST_REVIEWER = "integration-test-reviewer"
    ROOT_CAUSE_INVESTIGATOR = "root-cause-investigator"
    EXPERT_ANALYST = "expert-analyst"
    MARKET_ANALYST = "market-analyst"
    GAME_DESIGNER = "game-designer"
    ART_DIRECTOR = "art-director"
    FEEL_POLISHER = "feel-polisher"
    UI_SPECIALIST = "ui-specialist"
    ANALYTICS_DESIGNER = "analytics-designer"


@dataclass(slots=True)
class Invocation:
    """One call to a collaborator: a short description plus the full prompt."""

    role: CollaboratorRole
    description: str
    prompt: str
    constraints: list[str] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        words = self.description.split()
        if not 3 <= len(words) <= 5:
            raise ValueError(
                f"Invocation description must be 3-5 words, got {len(words)}: "
                f"{self.description!r}"
            )

    def render(self) -> str:
        parts = [self.prompt.strip()]
        if self.constraints:
            parts.append("Constraints:\n" + "\n".join(f"- {item}" for item in self.constraints))
        parts.append("Finish your answer with a single JSON object describing the result.")
        return "\n\n".join(parts)


class Collaborator:
    role: CollaboratorRole
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software delivery collaborator."
    allowed_tools: list[str] | None = None

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("flowpilot.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    @staticmethod
    def _normalize_allowed_tools(allowed_tools: list[str] | None) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise ValueError(
                "Tool policy rejected unknown tools for collaborator run: " + ", ".join(unknown)
            )
        return normalized

    async def invoke(self, invocation: Invocation) -> StructuredResponse:
        if invocation.role is not self.role:
            raise ValueError(
                f"Invocation for {invocation.role.value} sent to {self.role.value}."
            )
        run_context = dict(invocation.context)
        run_context["role"] = self.role.value
        run_context["description"] = invocation.description
        if self.model:
            run_context["model"] = self.model

        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=invocation.render(),
            context=run_context,
            tools=self._normalize_allowed_tools(self.allowed_tools),
        ):
            chunks.append(chunk)
        return parse_response(self.role.value, "".join(chunks).strip())


class CollaboratorRegistry:
    """Closed mapping from role to collaborator instance."""

    def __init__(self, collaborators: Iterable[Collaborator] = ()) -> None:
        self._by_role: dict[CollaboratorRole, Collaborator] = {}
        for collaborator in collaborators:
            self.register(collaborator)

    def register(self, collaborator: Collaborator) -> None:
        self._by_role[collaborator.role] = collaborator

    def __contains__(self, role: CollaboratorRole) -> bool:
        return role in self._by_role

    def roles(self) -> list[CollaboratorRole]:
        return [role for role in CollaboratorRole if role in self._by_role]

    def get(self, role: CollaboratorRole) -> Collaborator:
        collaborator = self._by_role.get(role)
        if collaborator is None:
            raise EscalationRequired(
                EscalationEvent(
                    kind=EscalationKind.COLLABORATOR_UNAVAILABLE,
                    summary=f"No collaborator registered for {role.value}.",
                    reason="The phase cannot run without its owning collaborator and "
                    "skipping it would hide missing work.",
                    next_step=f"Register a {role.value} collaborator and resume the flow.",
                    payload={"role": role.value},
                )
            )
        return collaborator

    async def invoke(self, invocation: Invocation) -> StructuredResponse:
        collaborator = self.get(invocation.role)
        try:
            return await collaborator.invoke(invocation)
        except BackendExecutionError as exc:
            raise EscalationRequired(
                EscalationEvent(
                    kind=EscalationKind.COLLABORATOR_UNAVAILABLE,
                    summary=f"{invocation.role.value} failed on backend {exc.backend}.",
                    reason=str(exc),
                    next_step="Check the backend CLI or API credentials, then resume.",
                    payload={
                        "role": invocation.role.value,
                        "backend": exc.backend,
                        "exit_code": exc.exit_code,
                        "retriable": exc.retriable,
                    },
                )
            ) from exc
