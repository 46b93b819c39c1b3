"""Autonomous per-task execution after batch approval.

Each task walks ``pending -> executing -> [review_needed ->] quality_checking
-> quality_checked -> committed``. Any blocking escalation moves the in-flight
task to ``escalated`` and re-raises; nothing is committed without a recorded
quality-checking to quality-checked transition.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from flowpilot.collaborators.base import CollaboratorRegistry, CollaboratorRole, Invocation
from flowpilot.errors import FlowpilotError, InvalidTransition, OwnershipError
from flowpilot.escalation import (
    BlockedError,
    EscalationEvent,
    EscalationKind,
    EscalationMonitor,
    EscalationRequired,
)
from flowpilot.phases import check_write
from flowpilot.responses import (
    ImplementationReport,
    QualityReport,
    ResponseStatus,
    ReviewReport,
    StructuredResponse,
)

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    REVIEW_NEEDED = "review_needed"
    QUALITY_CHECKING = "quality_checking"
    QUALITY_CHECKED = "quality_checked"
    COMMITTED = "committed"
    ESCALATED = "escalated"


TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.EXECUTING, TaskState.ESCALATED}),
    TaskState.EXECUTING: frozenset(
        {TaskState.REVIEW_NEEDED, TaskState.QUALITY_CHECKING, TaskState.ESCALATED}
    ),
    TaskState.REVIEW_NEEDED: frozenset(
        {TaskState.EXECUTING, TaskState.QUALITY_CHECKING, TaskState.ESCALATED}
    ),
    TaskState.QUALITY_CHECKING: frozenset({TaskState.QUALITY_CHECKED, TaskState.ESCALATED}),
    TaskState.QUALITY_CHECKED: frozenset({TaskState.COMMITTED}),
    TaskState.COMMITTED: frozenset(),
    # Reopened after a human resolved the escalation.
    TaskState.ESCALATED: frozenset({TaskState.PENDING}),
}


class CommitStrategy(str, Enum):
    PER_TASK = "per-task"
    PER_PHASE = "per-phase"
    PER_FEATURE = "per-feature"
    MANUAL = "manual"


INTEGRATION_TEST_PATTERN = re.compile(
    r"(\.(?:int|integration|e2e)\.test\.\w+$)"
    r"|((?:^|/)(?:integration|e2e)/)"
    r"|((?:^|/)test_\w*_(?:integration|e2e)\.py$)"
    r"|((?:^|/)\w+_(?:integration|e2e)_test\.\w+$)",
    re.IGNORECASE,
)


def is_integration_test(path: str) -> bool:
    return INTEGRATION_TEST_PATTERN.search(path.replace("\\", "/")) is not None


def _str_list(task_id: str, data: dict[str, Any], *keys: str) -> list[str]:
    """First non-null value under ``keys``; collaborators send ``null`` for empty lists."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            raise FlowpilotError(f"Task {task_id}: {key} must be a list, got {value!r}.")
        return [str(item) for item in value]
    return []


@dataclass(slots=True)
class ExecutionTask:
    id: str
    title: str
    phase: str = ""
    depends_on: list[str] = field(default_factory=list)
    target_files: list[str] = field(default_factory=list)
    state: TaskState = TaskState.PENDING
    history: list[dict[str, str]] = field(default_factory=list)
    attempts: int = 0
    fix_list: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    tests_added: list[str] = field(default_factory=list)
    commit_ref: str | None = None
    escalation: dict[str, Any] | None = None

    def transition(self, new_state: TaskState, note: str = "") -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Task {self.id} cannot move from {self.state.value} to {new_state.value}."
            )
        if new_state is TaskState.COMMITTED and not self.quality_approved():
            raise InvalidTransition(f"Task {self.id} has no recorded quality approval.")
        self.history.append(
            {
                "from": self.state.value,
                "to": new_state.value,
                "at": _utcnow_iso(),
                "note": note,
            }
        )
        self.state = new_state

    def quality_approved(self) -> bool:
        return any(
            entry["from"] == TaskState.QUALITY_CHECKING.value
            and entry["to"] == TaskState.QUALITY_CHECKED.value
            for entry in self.history
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionTask:
        task_id = str(data.get("id") or "").strip()
        if not task_id:
            raise FlowpilotError(f"Task entry without an id: {data!r}")
        try:
            state = TaskState(data.get("state") or TaskState.PENDING.value)
            attempts = int(data.get("attempts") or 0)
        except (TypeError, ValueError) as exc:
            raise FlowpilotError(f"Task {task_id} has an invalid entry: {exc}") from exc
        history = data.get("history") or []
        if not isinstance(history, list) or not all(isinstance(i, dict) for i in history):
            raise FlowpilotError(f"Task {task_id} has a malformed history.")
        return cls(
            id=task_id,
            title=str(data.get("title") or task_id),
            phase=str(data.get("phase") or ""),
            depends_on=_str_list(task_id, data, "dependsOn", "depends_on"),
            target_files=_str_list(task_id, data, "targetFiles", "target_files"),
            state=state,
            history=[dict(item) for item in history],
            attempts=attempts,
            fix_list=_str_list(task_id, data, "fix_list"),
            files_modified=_str_list(task_id, data, "files_modified"),
            tests_added=_str_list(task_id, data, "tests_added"),
            commit_ref=data.get("commit_ref"),
            escalation=data.get("escalation"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "phase": self.phase,
            "depends_on": list(self.depends_on),
            "target_files": list(self.target_files),
            "state": self.state.value,
            "history": [dict(item) for item in self.history],
            "attempts": self.attempts,
            "fix_list": list(self.fix_list),
            "files_modified": list(self.files_modified),
            "tests_added": list(self.tests_added),
            "commit_ref": self.commit_ref,
            "escalation": self.escalation,
        }


def tasks_from_decomposition(response: StructuredResponse) -> list[ExecutionTask]:
    raw_tasks = response.payload.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise FlowpilotError("Task decomposition returned no tasks.")
    malformed = [item for item in raw_tasks if not isinstance(item, dict)]
    if malformed:
        raise FlowpilotError(f"Task decomposition returned non-object entries: {malformed!r}")
    return [ExecutionTask.from_dict(item) for item in raw_tasks]


def order_tasks(tasks: Iterable[ExecutionTask]) -> list[ExecutionTask]:
    """Dependency order, keeping plan order among independent tasks."""
    pending = list(tasks)
    known = {task.id for task in pending}
    for task in pending:
        missing = [dep for dep in task.depends_on if dep not in known]
        if missing:
            raise FlowpilotError(f"Task {task.id} depends on unknown tasks: {missing}")

    ordered: list[ExecutionTask] = []
    placed: set[str] = set()
    while pending:
        ready = [task for task in pending if all(dep in placed for dep in task.depends_on)]
        if not ready:
            raise FlowpilotError(
                "Task dependencies form a cycle: " + ", ".join(task.id for task in pending)
            )
        task = ready[0]
        ordered.append(task)
        placed.add(task.id)
        pending.remove(task)
    return ordered


class Committer(Protocol):
    @property
    def available(self) -> bool: ...

    def commit(self, tasks: list[ExecutionTask], message: str) -> str: ...


@dataclass(slots=True)
class ExecutionReport:
    tasks: list[ExecutionTask]
    commits: list[dict[str, Any]] = field(default_factory=list)
    checks_passed: int = 0
    impact_reports: list[dict[str, Any]] = field(default_factory=list)
    root_cause_analyses: list[dict[str, Any]] = field(default_factory=list)

    @property
    def awaiting_commit(self) -> list[str]:
        return [task.id for task in self.tasks if task.state is TaskState.QUALITY_CHECKED]

    @property
    def tasks_completed(self) -> int:
        return sum(
            1
            for task in self.tasks
            if task.state in {TaskState.QUALITY_CHECKED, TaskState.COMMITTED}
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "tasks_completed": self.tasks_completed,
            "commits": list(self.commits),
            "checks_passed": self.checks_passed,
            "awaiting_commit": self.awaiting_commit,
            "impact_reports": list(self.impact_reports),
            "root_cause_analyses": list(self.root_cause_analyses),
        }


TaskHook = Callable[[ExecutionTask], None]


class ExecutionLoop:
    def __init__(
        self,
        registry: CollaboratorRegistry,
        monitor: EscalationMonitor,
        committer: Committer | None = None,
        *,
        max_revisions: int = 2,
        max_quality_attempts: int = 3,
        max_execution_attempts: int = 2,
        plan_ref: str = "",
        on_task_update: TaskHook | None = None,
    ) -> None:
        self.registry = registry
        self.monitor = monitor
        self.committer = committer
        self.max_revisions = max(0, max_revisions)
        self.max_quality_attempts = max(1, max_quality_attempts)
        self.max_execution_attempts = max(1, max_execution_attempts)
        self.plan_ref = plan_ref
        self.on_task_update = on_task_update

    def _move(self, task: ExecutionTask, state: TaskState, note: str = "") -> None:
        task.transition(state, note)
        logger.debug("task %s -> %s %s", task.id, state.value, note)
        if self.on_task_update is not None:
            self.on_task_update(task)

    def check_preconditions(self, strategy: CommitStrategy) -> None:
        if strategy is CommitStrategy.MANUAL:
            return
        if self.committer is None or not self.committer.available:
            raise self.monitor.escalate(
                EscalationKind.BLOCKED,
                f"Commit strategy {strategy.value} needs a commit capability.",
                reason="No git repository or committer is available in this environment.",
                next_step="Initialize a git repository or rerun with the manual strategy.",
                payload={"strategy": strategy.value},
                error_type=BlockedError,
            )

    async def run(
        self, tasks: Iterable[ExecutionTask], strategy: CommitStrategy
    ) -> ExecutionReport:
        self.check_preconditions(strategy)
        try:
            ordered = order_tasks(tasks)
        except FlowpilotError as exc:
            raise self.monitor.escalate_error(exc) from exc
        report = ExecutionReport(tasks=ordered)
        for task in ordered:
            if task.state is TaskState.ESCALATED:
                self._move(task, TaskState.PENDING, "resumed after escalation")
            if task.state is TaskState.PENDING:
                self.monitor.check_stop(task_id=task.id)
            try:
                if task.state is TaskState.PENDING:
                    await self._run_task(task, report)
                self._commit_ready(ordered, task, strategy, report)
            except EscalationRequired as exc:
                self._escalate_task(task, exc.event)
                raise
            except FlowpilotError as exc:
                escalation = self.monitor.escalate_error(exc, payload={"task_id": task.id})
                self._escalate_task(task, escalation.event)
                raise escalation from exc

        if strategy is CommitStrategy.PER_FEATURE:
            ready = [task for task in ordered if task.state is TaskState.QUALITY_CHECKED]
            if ready:
                try:
                    self._commit(ready, "feature: " + self._feature_label(ordered), report)
                except FlowpilotError as exc:
                    raise self.monitor.escalate_error(exc) from exc
        return report

    def commit_pending(
        self, tasks: Iterable[ExecutionTask], report: ExecutionReport | None = None
    ) -> ExecutionReport:
        """Commit every quality-checked task in one go (manual strategy follow-up)."""
        all_tasks = list(tasks)
        report = report or ExecutionReport(tasks=all_tasks)
        if self.committer is None or not self.committer.available:
            raise self.monitor.escalate(
                EscalationKind.BLOCKED,
                "Cannot commit: no commit capability.",
                reason="No git repository or committer is available in this environment.",
                next_step="Initialize a git repository, then run commit again.",
                error_type=BlockedError,
            )
        ready = [task for task in all_tasks if task.state is TaskState.QUALITY_CHECKED]
        if ready:
            self._commit(ready, "tasks: " + ", ".join(task.id for task in ready), report)
        return report

    def _escalate_task(self, task: ExecutionTask, event: EscalationEvent) -> None:
        if not any(recorded is event for recorded in self.monitor.events):
            self.monitor.record(event)
        task.escalation = event.to_dict()
        if TaskState.ESCALATED in TRANSITIONS[task.state]:
            self._move(task, TaskState.ESCALATED, event.kind.value)

    async def _invoke(self, task: ExecutionTask, invocation: Invocation) -> StructuredResponse:
        return await self.monitor.run_until_stopped(
            self.registry.invoke(invocation), task_id=task.id
        )

    async def _run_task(self, task: ExecutionTask, report: ExecutionReport) -> None:
        self._move(task, TaskState.EXECUTING)
        review_rounds = 0
        while True:
            implementation = await self._implement(task, report)
            integration_tests = [
                path for path in implementation.tests_added if is_integration_test(path)
            ]
            if not integration_tests:
                break
            self._move(task, TaskState.REVIEW_NEEDED, ", ".join(integration_tests))
            review = await self._review(task, integration_tests)
            if review.approval_ready:
                break
            review_rounds += 1
            if review_rounds > self.max_revisions:
                raise self.monitor.escalate(
                    EscalationKind.REVISION_LIMIT,
                    f"Integration tests for {task.id} were rejected {review_rounds} times.",
                    reason="; ".join(review.issues) or "The reviewer kept requesting changes.",
                    next_step="Decide on the disputed test design and resume the task.",
                    payload={"task_id": task.id, "issues": review.issues},
                )
            task.fix_list = review.issues
            self._move(task, TaskState.EXECUTING, "integration review requested fixes")

        self._move(task, TaskState.QUALITY_CHECKING)
        await self._quality_check(task, report)
        self._move(task, TaskState.QUALITY_CHECKED)

    async def _implement(
        self, task: ExecutionTask, report: ExecutionReport
    ) -> ImplementationReport:
        for attempt in range(1, self.max_execution_attempts + 1):
            task.attempts += 1
            response = await self._invoke(
                task,
                Invocation(
                    role=CollaboratorRole.TASK_EXECUTOR,
                    description="Implement one planned task",
                    prompt=self._executor_prompt(task),
                    constraints=[
                        "Stay within the target files unless the task cannot be done otherwise.",
                        "Write tests for the behavior you add.",
                    ],
                    context={"task_id": task.id, "attempt": attempt},
                )
            )
            self._raise_if_halted(task, response)
            implementation = ImplementationReport.from_response(response)
            self._check_ownership(task, implementation.files_modified)
            task.files_modified = sorted(
                set(task.files_modified) | set(implementation.files_modified)
            )
            task.tests_added = sorted(set(task.tests_added) | set(implementation.tests_added))
            for event in self.monitor.observe_task(
                task.id, implementation.files_modified, implementation.edit_counts
            ):
                await self._impact_report(task, event, report)
            if implementation.ready_for_quality_check:
                task.fix_list = []
                return implementation
            logger.info("task %s not ready after attempt %d", task.id, attempt)

        raise self.monitor.escalate(
            EscalationKind.EXECUTION_INCOMPLETE,
            f"Task {task.id} never reported readyForQualityCheck.",
            reason=f"{self.max_execution_attempts} executor attempts ended without a "
            "complete implementation.",
            next_step="Inspect the partial changes and split or clarify the task.",
            payload={"task_id": task.id, "files_modified": task.files_modified},
        )

    async def _impact_report(
        self, task: ExecutionTask, event: EscalationEvent, report: ExecutionReport
    ) -> None:
        response = await self._invoke(
            task,
            Invocation(
                role=CollaboratorRole.TASK_EXECUTOR,
                description="Report change impact analysis",
                prompt=(
                    f"Stop editing and report the impact of the changes made for task "
                    f"{task.id}.\n\nTrigger: {event.summary}\n\nList affected modules, "
                    "callers, and any change that goes beyond the plan."
                ),
                constraints=["Do not modify any file while writing the report."],
                context={"task_id": task.id, "trigger": event.kind.value},
            )
        )
        self._raise_if_halted(task, response)
        text = response.raw.strip()
        if not text:
            raise self.monitor.escalate(
                EscalationKind.EXPLICIT,
                f"No impact report for {task.id}.",
                reason=event.summary,
                next_step="Review the changes by hand before resuming.",
                payload={"task_id": task.id, "trigger": event.to_dict()},
            )
        report.impact_reports.append(
            {"task_id": task.id, "trigger": event.kind.value, "report": text}
        )

    async def _review(self, task: ExecutionTask, integration_tests: list[str]) -> ReviewReport:
        response = await self._invoke(
            task,
            Invocation(
                role=CollaboratorRole.INTEGRATION_TEST_REVIEWER,
                description="Review integration test implementation",
                prompt=(
                    f"Review the integration and E2E tests written for task {task.id} "
                    f"({task.title}).\n\nTests:\n"
                    + "\n".join(f"- {path}" for path in integration_tests)
                ),
                constraints=["Return status approved or needs_revision with an issues list."],
                context={"task_id": task.id},
            )
        )
        self._raise_if_halted(task, response)
        return ReviewReport.from_response(response)

    async def _quality_check(self, task: ExecutionTask, report: ExecutionReport) -> None:
        last_errors: list[str] = []
        for attempt in range(1, self.max_quality_attempts + 1):
            analyses = [
                analysis
                for analysis in (self.monitor.errors.analysis_for(error) for error in last_errors)
                if analysis
            ]
            response = await self._invoke(
                task,
                Invocation(
                    role=CollaboratorRole.QUALITY_FIXER,
                    description="Run quality checks and fixes",
                    prompt=self._quality_prompt(task, last_errors, analyses),
                    constraints=["Report approved: true only when every check passes."],
                    context={"task_id": task.id, "attempt": attempt},
                )
            )
            self._raise_if_halted(task, response)
            quality = QualityReport.from_response(response)
            if quality.approved:
                report.checks_passed += len(quality.checks_performed) or 1
                return

            last_errors = quality.errors or [f"quality checks failed for {task.id}"]
            for error in last_errors:
                self.monitor.errors.record(error)
                if self.monitor.errors.requires_analysis(error):
                    await self._root_cause(task, error, report)

        raise self.monitor.escalate(
            EscalationKind.QUALITY_NOT_CONVERGED,
            f"Quality checks for {task.id} still fail after "
            f"{self.max_quality_attempts} attempts.",
            reason="; ".join(last_errors[:3]),
            next_step="Review the remaining errors and decide how to proceed.",
            payload={"task_id": task.id, "errors": last_errors},
        )

    async def _root_cause(self, task: ExecutionTask, error: str, report: ExecutionReport) -> None:
        self.monitor.record(
            EscalationEvent(
                kind=EscalationKind.REPEATED_ERROR,
                summary=f"The same error occurred {self.monitor.errors.count(error)} times.",
                reason=error,
                next_step="Run root-cause analysis before the next fix attempt.",
                payload={"task_id": task.id, "error": error},
            )
        )
        response = await self._invoke(
            task,
            Invocation(
                role=CollaboratorRole.ROOT_CAUSE_INVESTIGATOR,
                description="Analyze recurring error root cause",
                prompt=(
                    f"The following error keeps recurring while fixing task {task.id}:\n\n"
                    f"{error}\n\nFind the root cause before anyone tries another fix."
                ),
                context={"task_id": task.id},
            )
        )
        self._raise_if_halted(task, response)
        artifact = str(response.payload.get("rootCause") or response.raw).strip()
        if not artifact:
            raise self.monitor.escalate(
                EscalationKind.EXPLICIT,
                f"Root-cause analysis for {task.id} produced nothing.",
                reason=error,
                next_step="Investigate the recurring error by hand.",
                payload={"task_id": task.id, "error": error},
            )
        self.monitor.errors.acknowledge_analysis(error, artifact)
        report.root_cause_analyses.append(
            {"task_id": task.id, "error": error, "analysis": artifact}
        )

    def _check_ownership(self, task: ExecutionTask, paths: list[str]) -> None:
        for path in paths:
            try:
                check_write(CollaboratorRole.TASK_EXECUTOR, path)
            except OwnershipError as exc:
                raise self.monitor.escalate(
                    EscalationKind.OWNERSHIP_VIOLATION,
                    f"Task {task.id} wrote a document it does not own.",
                    reason=str(exc),
                    next_step="Revert the change and route it through the owning phase.",
                    payload={"task_id": task.id, "path": path},
                ) from exc

    def _raise_if_halted(self, task: ExecutionTask, response: StructuredResponse) -> None:
        if not response.status.halts_flow:
            return
        blocked = response.status is ResponseStatus.BLOCKED
        raise self.monitor.escalate(
            EscalationKind.BLOCKED if blocked else EscalationKind.EXPLICIT,
            f"{response.role} stopped on task {task.id}.",
            reason=str(response.payload.get("reason") or response.status.value),
            next_step="Resolve the reported issue, then resume the task.",
            payload={"task_id": task.id, "response": response.to_dict()},
        )

    def _commit_ready(
        self,
        tasks: list[ExecutionTask],
        current: ExecutionTask,
        strategy: CommitStrategy,
        report: ExecutionReport,
    ) -> None:
        if current.state is not TaskState.QUALITY_CHECKED:
            return
        if strategy is CommitStrategy.PER_TASK:
            self._commit([current], f"{current.id}: {current.title}", report)
        elif strategy is CommitStrategy.PER_PHASE:
            same_phase = [task for task in tasks if task.phase == current.phase]
            done = {TaskState.QUALITY_CHECKED, TaskState.COMMITTED}
            if all(task.state in done for task in same_phase):
                ready = [task for task in same_phase if task.state is TaskState.QUALITY_CHECKED]
                self._commit(ready, f"phase {current.phase or 'default'}", report)

    def _commit(
        self, tasks: list[ExecutionTask], message: str, report: ExecutionReport
    ) -> None:
        for task in tasks:
            if task.state is not TaskState.QUALITY_CHECKED or not task.quality_approved():
                raise InvalidTransition(f"Task {task.id} is not quality-checked.")
        assert self.committer is not None
        ref = self.committer.commit(tasks, message)
        for task in tasks:
            task.commit_ref = ref
            self._move(task, TaskState.COMMITTED, ref)
        report.commits.append({"ref": ref, "message": message, "tasks": [t.id for t in tasks]})

    def _feature_label(self, tasks: list[ExecutionTask]) -> str:
        return self.plan_ref or f"{len(tasks)} tasks"

    def _executor_prompt(self, task: ExecutionTask) -> str:
        lines = [f"Implement task {task.id}: {task.title}"]
        if self.plan_ref:
            lines.append(f"Work plan: {self.plan_ref}")
        if task.target_files:
            lines.append("Target files:\n" + "\n".join(f"- {path}" for path in task.target_files))
        if task.fix_list:
            lines.append("Fix these review findings first:\n" + "\n".join(
                f"- {item}" for item in task.fix_list
            ))
        return "\n\n".join(lines)

    @staticmethod
    def _quality_prompt(task: ExecutionTask, errors: list[str], analyses: list[str]) -> str:
        touched = task.files_modified or ["(none)"]
        lines = [
            f"Run the project's quality checks for task {task.id} and fix what fails.",
            "Files touched:\n" + "\n".join(f"- {path}" for path in touched),
        ]
        if errors:
            lines.append(
                "Errors from the previous attempt:\n" + "\n".join(f"- {e}" for e in errors)
            )
        if analyses:
            lines.append("Root-cause analysis:\n" + "\n\n".join(analyses))
        return "\n\n".join(lines)
