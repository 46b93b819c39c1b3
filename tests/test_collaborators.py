import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from flowpilot.backends.base import AgentBackend, BackendExecutionError
from flowpilot.collaborators import (
    COLLABORATOR_TYPES,
    CollaboratorRegistry,
    CollaboratorRole,
    Invocation,
    PrdCreator,
    TaskExecutor,
    build_registry,
)
from flowpilot.escalation import EscalationKind, EscalationRequired
from flowpilot.responses import ResponseStatus


class FakeBackend(AgentBackend):
    def __init__(self, reply: str = '{"status": "completed"}') -> None:
        self.reply = reply
        self.execute_calls = 0
        self.last_system_prompt: str | None = None
        self.last_user_prompt: str | None = None
        self.last_context: dict[str, Any] | None = None
        self.last_tools: list[str] | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        self.execute_calls += 1
        self.last_system_prompt = system_prompt
        self.last_user_prompt = user_prompt
        self.last_context = context
        self.last_tools = tools
        yield "Working on it.\n"
        yield self.reply


def test_invocation_description_must_be_three_to_five_words() -> None:
    Invocation(CollaboratorRole.PRD_CREATOR, "Create product requirements document", "...")

    with pytest.raises(ValueError):
        Invocation(CollaboratorRole.PRD_CREATOR, "Create PRD", "...")
    with pytest.raises(ValueError):
        Invocation(
            CollaboratorRole.PRD_CREATOR,
            "Create the product requirements document now",
            "...",
        )


def test_invocation_render_appends_constraints_and_json_instruction() -> None:
    rendered = Invocation(
        CollaboratorRole.TASK_EXECUTOR,
        "Implement one planned task",
        "Implement T1",
        constraints=["Write tests first."],
    ).render()

    assert rendered.startswith("Implement T1")
    assert "- Write tests first." in rendered
    assert rendered.endswith("describing the result.")


def test_collaborator_invoke_parses_structured_response() -> None:
    backend = FakeBackend('{"status": "completed", "filesModified": ["src/cart.py"]}')
    executor = TaskExecutor(backend, model="claude-sonnet-4-5")

    response = asyncio.run(
        executor.invoke(
            Invocation(
                CollaboratorRole.TASK_EXECUTOR,
                "Implement one planned task",
                "Implement T1",
                context={"task_id": "T1"},
            )
        )
    )

    assert response.role == "task-executor"
    assert response.status is ResponseStatus.COMPLETED
    assert response.payload["filesModified"] == ["src/cart.py"]
    assert backend.last_context == {
        "task_id": "T1",
        "role": "task-executor",
        "description": "Implement one planned task",
        "model": "claude-sonnet-4-5",
    }
    assert backend.last_tools == ["edit_file", "read_file", "run_command", "search", "write_file"]
    assert backend.last_system_prompt is not None
    assert backend.last_system_prompt.startswith("# Task Executor")


def test_collaborator_without_prompt_file_uses_fallback_prompt() -> None:
    creator = PrdCreator(FakeBackend())

    assert "docs/prd/" in creator.system_prompt


def test_collaborator_rejects_invocation_for_another_role() -> None:
    creator = PrdCreator(FakeBackend())

    with pytest.raises(ValueError):
        asyncio.run(
            creator.invoke(
                Invocation(CollaboratorRole.TASK_EXECUTOR, "Implement one planned task", "x")
            )
        )


def test_collaborator_rejects_unknown_tools() -> None:
    class ShellHappy(PrdCreator):
        allowed_tools = ["read_file", "rm_rf"]

    backend = FakeBackend()
    collaborator = ShellHappy(backend)

    with pytest.raises(ValueError):
        asyncio.run(
            collaborator.invoke(
                Invocation(
                    CollaboratorRole.PRD_CREATOR, "Create product requirements document", "x"
                )
            )
        )
    assert backend.execute_calls == 0


def test_registry_covers_every_role() -> None:
    registry = build_registry(FakeBackend())

    assert registry.roles() == list(CollaboratorRole)
    assert len(COLLABORATOR_TYPES) == len(CollaboratorRole)


def test_missing_collaborator_escalates_instead_of_skipping() -> None:
    registry = CollaboratorRegistry([PrdCreator(FakeBackend())])

    assert CollaboratorRole.PRD_CREATOR in registry
    with pytest.raises(EscalationRequired) as excinfo:
        asyncio.run(
            registry.invoke(
                Invocation(CollaboratorRole.UX_DESIGNER, "Create UX requirements document", "x")
            )
        )
    assert excinfo.value.event.kind is EscalationKind.COLLABORATOR_UNAVAILABLE
    assert excinfo.value.event.payload == {"role": "ux-designer"}


def test_backend_failure_escalates_as_unavailable_collaborator() -> None:
    class BrokenBackend(FakeBackend):
        async def execute(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
            tools: list[str] | None = None,
        ) -> AsyncIterator[str]:
            _ = system_prompt, user_prompt, context, tools
            raise BackendExecutionError(
                "codex exited with code 2", backend="codex", exit_code=2, retriable=False
            )
            yield ""

    registry = build_registry(BrokenBackend())

    with pytest.raises(EscalationRequired) as excinfo:
        asyncio.run(
            registry.invoke(
                Invocation(CollaboratorRole.WORK_PLANNER, "Create work plan document", "x")
            )
        )

    event = excinfo.value.event
    assert event.kind is EscalationKind.COLLABORATOR_UNAVAILABLE
    assert event.reason == "codex exited with code 2"
    assert event.payload == {
        "role": "work-planner",
        "backend": "codex",
        "exit_code": 2,
        "retriable": False,
    }
    assert isinstance(excinfo.value.__cause__, BackendExecutionError)
