from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from flowpilot.collaborators.base import CollaboratorRegistry, CollaboratorRole, Invocation
from flowpilot.config import FlowpilotConfig
from flowpilot.documents import Conditions
from flowpilot.errors import FlowpilotError, GateError, OwnershipError
from flowpilot.escalation import (
    EscalationEvent,
    EscalationKind,
    EscalationMonitor,
    EscalationRequired,
)
from flowpilot.execution import (
    CommitStrategy,
    Committer,
    ExecutionLoop,
    ExecutionReport,
    ExecutionTask,
    tasks_from_decomposition,
)
from flowpilot.flow import FlowInstance, TaskRequest
from flowpilot.gates import ApprovalDecision, PendingApproval, StopPointGate
from flowpilot.phases import PHASE_CATALOG, FlowMode, Phase, check_write
from flowpilot.responses import ResponseStatus, StructuredResponse
from flowpilot.sequencer import HALT, PhaseSequencer
from flowpilot.state.store import FlowStateStore

logger = logging.getLogger(__name__)

STOP_PATTERN = re.compile(r"^\s*(stop|halt|abort|cancel)\b", re.IGNORECASE)
MIN_EXPERTS = 3
MAX_EXPERTS = 5

_CONDITION_KEYS = {
    "architectureChange": "architecture_change",
    "newDependency": "new_dependency",
    "dataFlowChange": "data_flow_change",
    "uiInvolved": "ui_involved",
    "existingPrd": "existing_prd",
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class _Superseded(Exception):
    """A stop-point rejection changed the requirements; design restarts on the successor."""

    def __init__(self, successor: FlowInstance) -> None:
        super().__init__(successor.flow_id)
        self.successor = successor


class Approver(Protocol):
    async def request(self, pending: PendingApproval, response: StructuredResponse) -> None:
        """Present the stop point and eventually resolve ``pending``."""


class ScriptedApprover:
    """Resolves stop points from a fixed list of decisions, approving once it runs out."""

    def __init__(self, decisions: Iterable[ApprovalDecision] = ()) -> None:
        self._decisions = deque(decisions)
        self.seen: list[str] = []

    async def request(self, pending: PendingApproval, response: StructuredResponse) -> None:
        self.seen.append(pending.phase.name)
        decision = self._decisions.popleft() if self._decisions else ApprovalDecision.approve()
        pending.resolve(decision)


@dataclass(slots=True)
class DesignOutcome:
    flow: FlowInstance
    artifacts: dict[str, str] = field(default_factory=dict)
    tasks: list[ExecutionTask] = field(default_factory=list)
    batch_approved: bool = False


@dataclass(slots=True)
class CompletionReport:
    flow_id: str
    documents: dict[str, str]
    artifacts: dict[str, str]
    tasks_completed: int
    commits: list[dict[str, Any]]
    checks_passed: int
    awaiting_commit: list[str]
    escalations: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "documents": dict(self.documents),
            "artifacts": dict(self.artifacts),
            "tasks_completed": self.tasks_completed,
            "commits": list(self.commits),
            "checks_passed": self.checks_passed,
            "awaiting_commit": list(self.awaiting_commit),
            "escalations": list(self.escalations),
        }


class FlowOrchestrator:
    """Drives one flow from request to completion report."""

    def __init__(
        self,
        registry: CollaboratorRegistry,
        store: FlowStateStore,
        config: FlowpilotConfig,
        *,
        approver: Approver,
        committer: Committer | None = None,
        monitor: EscalationMonitor | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.config = config
        self.approver = approver
        self.committer = committer
        self.monitor = monitor or EscalationMonitor(
            repeated_error_threshold=config.thresholds.repeated_error,
            files_per_task=config.thresholds.files_per_task,
            edit_invocations=config.thresholds.edit_invocations,
            same_file_edits=config.thresholds.same_file_edits,
        )
        if self.monitor.notify is None:
            self.monitor.notify = self._on_escalation
        if self.monitor.stop_probe is None:
            self.monitor.stop_probe = self._stop_flag_set
        self.flow: FlowInstance | None = None

    def _record_event(self, event: str, **data: Any) -> None:
        payload = {"event": event, "at": _utcnow_iso(), **data}
        self.store.add_event(payload)

    def _on_escalation(self, event: EscalationEvent) -> None:
        log = logger.warning if event.blocking else logger.info
        log("escalation %s: %s", event.kind.value, event.summary)
        self.store.add_escalation(event.to_dict())

    def _stop_flag_set(self) -> bool:
        return bool(self.store.get_context().get("stop_requested"))

    def _ensure_recorded(self, event: EscalationEvent) -> None:
        if not any(recorded is event for recorded in self.monitor.events):
            self.monitor.record(event)

    def _set_flow(self, flow: FlowInstance, **context: Any) -> FlowInstance:
        self.flow = flow
        self.store.update_context(flow=flow.to_dict(), **context)
        return flow

    def start(self, request: TaskRequest, *, commit_strategy: str | None = None) -> FlowInstance:
        flow = FlowInstance.start(request, commit_strategy=commit_strategy)
        self.monitor.clear_stop()
        logger.info(
            "flow %s: scale=%s variant=%s", flow.flow_id, flow.scale.value, flow.variant.value
        )
        self._record_event("flow_started", flow_id=flow.flow_id, scale=flow.scale.value)
        return self._set_flow(
            flow,
            status="in_progress",
            phase=None,
            stop_requested=False,
            pending_approval=None,
            started_at=_utcnow_iso(),
        )

    def phases_for(self, flow: FlowInstance) -> tuple[Phase, ...]:
        return flow.phases(expert_analysis=bool(self.config.workflow.expert_perspectives))

    async def run_design(self, flow: FlowInstance) -> DesignOutcome:
        try:
            while True:
                try:
                    return await self._run_design(flow)
                except _Superseded as change:
                    logger.info("flow %s superseded by %s", flow.flow_id, change.successor.flow_id)
                    flow = change.successor
        except EscalationRequired as exc:
            self._ensure_recorded(exc.event)
            self.store.update_context(status="escalated", escalation=exc.event.to_dict())
            raise
        except FlowpilotError as exc:
            escalation = self._escalate_error(exc)
            raise escalation from exc

    def _escalate_error(self, exc: FlowpilotError) -> EscalationRequired:
        payload = {"flow_id": self.flow.flow_id} if self.flow is not None else {}
        escalation = self.monitor.escalate_error(exc, payload=payload)
        self.store.update_context(status="escalated", escalation=escalation.event.to_dict())
        return escalation

    async def _run_design(self, flow: FlowInstance) -> DesignOutcome:
        phases = self.phases_for(flow)
        sequencer = PhaseSequencer(phases, max_revisions=self.config.workflow.max_revisions)
        gate = StopPointGate()
        outcome = DesignOutcome(flow=flow)
        outputs: dict[str, StructuredResponse] = {}
        feedback: dict[str, str] = {}
        index: int | None = flow.phase_index

        while index is not HALT:
            self.monitor.check_stop()
            gate.ensure_clear()
            phase = sequencer.begin(index)
            flow = self._set_flow(flow.with_phase_index(index), phase=phase.name)
            self._record_event("phase_started", flow_id=flow.flow_id, phase=phase.name)
            logger.info("flow %s: phase %s", flow.flow_id, phase.name)

            if phase.fan_out:
                response = await self.run_expert_analysis(flow, outputs)
            else:
                response = await self._invoke_phase(
                    flow, phase, outputs, feedback.pop(phase.name, "")
                )
            artifact_ref = self._check_artifacts(flow, phase, response)
            outputs[phase.name] = response
            outcome.artifacts[phase.name] = artifact_ref

            if phase.name == "requirement-analysis" and not response.status.halts_flow:
                refined = self._refine(flow, response)
                if refined is not flow:
                    flow = self._set_flow(refined)
                    refined_phases = self.phases_for(flow)
                    if refined_phases != phases:
                        phases = refined_phases
                        sequencer = PhaseSequencer(
                            phases,
                            max_revisions=self.config.workflow.max_revisions,
                            revisions=sequencer.revision_counts(),
                        )
                        sequencer.begin(index)

            result = sequencer.advance(index, response)
            if result.gate_reached:
                decision = await self._stop_point(gate, phase, artifact_ref, response)
                if not decision.approved:
                    successor = self._supersede_on_change(flow, decision.reason)
                    if successor is not None:
                        raise _Superseded(successor)
                result = sequencer.resume_after_approval(index, decision)
                if not decision.approved and result.next_index is not None:
                    feedback[phases[result.next_index].name] = decision.reason
            elif result.revision and result.next_index is not None:
                feedback[phases[result.next_index].name] = self._revision_feedback(response)

            if phase.name == "task-decomposition":
                outcome.tasks = tasks_from_decomposition(response)
                self.store.set_tasks([task.to_dict() for task in outcome.tasks])
            index = result.next_index

        outcome.flow = self._set_flow(
            flow.with_phase_index(len(phases)), phase=None, status="designed"
        )
        outcome.batch_approved = gate.batch_approved
        return outcome

    async def _stop_point(
        self,
        gate: StopPointGate,
        phase: Phase,
        artifact_ref: str,
        response: StructuredResponse,
    ) -> ApprovalDecision:
        pending = gate.request_approval(phase, artifact_ref)
        self.store.update_context(status="awaiting_approval", pending_approval=pending.to_dict())
        self._record_event("approval_requested", phase=phase.name, approval_id=pending.approval_id)
        await self.approver.request(pending, response)
        decision = await pending.wait()
        self.store.add_approval(pending.to_dict())
        self.store.update_context(status="in_progress", pending_approval=None)
        logger.info(
            "stop point %s %s", phase.name, "approved" if decision.approved else "rejected"
        )
        return decision

    @staticmethod
    def _revision_feedback(response: StructuredResponse) -> str:
        issues = response.payload.get("issues")
        if isinstance(issues, list) and issues:
            return "\n".join(f"- {item}" for item in issues)
        return str(response.payload.get("reason") or response.raw)

    def _phase_prompt(
        self,
        flow: FlowInstance,
        phase: Phase,
        outputs: dict[str, StructuredResponse],
        feedback: str,
    ) -> str:
        sections = [
            f"Request:\n{flow.request.description}",
            f"Scale: {flow.scale.value} ({flow.variant.value} flow)",
            "Documents: "
            + ", ".join(
                f"{kind.value}={level.value}" for kind, level in flow.documents.levels.items()
            ),
            f"Docs root: {self.config.project.docs_root}",
        ]
        if phase.document is not None:
            sections.append(f"Document for this phase: {phase.document.value}")
        if outputs:
            sections.append(
                "Earlier phase results:\n"
                + "\n".join(
                    f"- {name}: {json.dumps(output.payload, ensure_ascii=False)[:2000]}"
                    for name, output in outputs.items()
                )
            )
        if feedback:
            sections.append(f"Revise your previous output. Reviewer feedback:\n{feedback}")
        return "\n\n".join(sections)

    async def _invoke_phase(
        self,
        flow: FlowInstance,
        phase: Phase,
        outputs: dict[str, StructuredResponse],
        feedback: str = "",
    ) -> StructuredResponse:
        invocation = Invocation(
            role=phase.role,
            description=phase.description,
            prompt=self._phase_prompt(flow, phase, outputs, feedback),
            constraints=[
                "List every file you wrote under filesWritten.",
                "Write only the documents your role owns.",
            ],
            context={"flow_id": flow.flow_id, "phase": phase.name},
        )
        return await self.monitor.run_until_stopped(self.registry.invoke(invocation))

    def _check_artifacts(
        self, flow: FlowInstance, phase: Phase, response: StructuredResponse
    ) -> str:
        written = response.payload.get("filesWritten") or response.payload.get("artifacts") or []
        if isinstance(written, str):
            written = [written]
        paths = [str(path) for path in written if str(path).strip()]
        for path in paths:
            try:
                check_write(phase.role, path)
            except OwnershipError as exc:
                raise self.monitor.escalate(
                    EscalationKind.OWNERSHIP_VIOLATION,
                    f"{phase.name} wrote {path}.",
                    reason=str(exc),
                    next_step="Revert the file and rerun the phase that owns it.",
                    payload={"phase": phase.name, "path": path},
                ) from exc
        return paths[0] if paths else f"{flow.flow_id}/{phase.name}"

    @staticmethod
    def _refine(flow: FlowInstance, response: StructuredResponse) -> FlowInstance:
        payload = response.payload
        estimate = payload.get("fileCountEstimate")
        file_count = None
        if isinstance(estimate, int) and not isinstance(estimate, bool):
            file_count = estimate
        flags = {
            field_name: payload[key]
            for key, field_name in _CONDITION_KEYS.items()
            if isinstance(payload.get(key), bool)
        }
        if file_count is None and not flags:
            return flow
        return flow.refine(
            file_count_estimate=file_count,
            conditions=Conditions(**flags) if flags else None,
        )

    async def run_expert_analysis(
        self, flow: FlowInstance, outputs: dict[str, StructuredResponse]
    ) -> StructuredResponse:
        """Fan out one analyst per perspective and join on all of them."""
        perspectives = list(self.config.workflow.expert_perspectives)
        if not MIN_EXPERTS <= len(perspectives) <= MAX_EXPERTS:
            raise FlowpilotError(
                f"Expert analysis needs {MIN_EXPERTS} to {MAX_EXPERTS} perspectives, "
                f"got {len(perspectives)}."
            )
        invocations = [
            Invocation(
                role=CollaboratorRole.EXPERT_ANALYST,
                description="Analyze design from perspective",
                prompt=f"Perspective: {perspective}\n\n"
                + self._phase_prompt(flow, PHASE_CATALOG["expert-analysis"], outputs, ""),
                context={"flow_id": flow.flow_id, "perspective": perspective},
            )
            for perspective in perspectives
        ]
        timeout = float(self.config.workflow.expert_analysis_timeout_seconds)
        try:
            responses = await self.monitor.run_until_stopped(
                asyncio.wait_for(
                    asyncio.gather(*(self.registry.invoke(item) for item in invocations)),
                    timeout=timeout,
                )
            )
        except TimeoutError as exc:
            raise self.monitor.escalate(
                EscalationKind.EXPERT_ANALYSIS_TIMEOUT,
                f"Expert analysis did not finish within {timeout:g}s.",
                reason="The design phase needs every perspective; partial results are "
                "not merged.",
                next_step="Retry the analysis or drop a perspective from the config.",
                payload={"perspectives": perspectives},
            ) from exc

        for perspective, response in zip(perspectives, responses):
            if response.status.halts_flow:
                raise self.monitor.escalate(
                    EscalationKind.EXPLICIT,
                    f"The {perspective} analyst asked to stop.",
                    reason=str(response.payload.get("reason") or response.status.value),
                    next_step="Address the analyst's concern before designing further.",
                    payload={"perspective": perspective, "response": response.to_dict()},
                )
        return StructuredResponse.of(
            CollaboratorRole.EXPERT_ANALYST.value,
            ResponseStatus.COMPLETED,
            analyses=[
                {"perspective": perspective, "result": response.payload}
                for perspective, response in zip(perspectives, responses)
            ],
        )

    def _execution_loop(self, plan_ref: str = "") -> ExecutionLoop:
        workflow = self.config.workflow
        return ExecutionLoop(
            self.registry,
            self.monitor,
            self.committer,
            max_revisions=workflow.max_revisions,
            max_quality_attempts=workflow.max_quality_attempts,
            max_execution_attempts=workflow.max_execution_attempts,
            plan_ref=plan_ref,
            on_task_update=lambda task: self.store.upsert_task(task.to_dict()),
        )

    async def execute(self, outcome: DesignOutcome, strategy: CommitStrategy) -> ExecutionReport:
        if not outcome.batch_approved:
            raise GateError("Tasks run only after the work plan was batch approved.")
        loop = self._execution_loop(outcome.artifacts.get("work-planning", ""))
        self.store.update_context(status="executing", phase="execution")
        try:
            report = await loop.run(outcome.tasks, strategy)
        except EscalationRequired as exc:
            self._ensure_recorded(exc.event)
            self.store.update_context(status="escalated", escalation=exc.event.to_dict())
            raise
        except FlowpilotError as exc:
            escalation = self._escalate_error(exc)
            raise escalation from exc
        return report

    async def run(
        self, request: TaskRequest, *, commit_strategy: str | None = None
    ) -> CompletionReport:
        strategy = CommitStrategy(commit_strategy or self.config.workflow.default_commit_strategy)
        flow = self.start(request, commit_strategy=strategy.value)
        outcome = await self.run_design(flow)
        execution: ExecutionReport | None = None
        if outcome.flow.request.mode is not FlowMode.DESIGN_ONLY and outcome.tasks:
            execution = await self.execute(outcome, strategy)

        report = CompletionReport(
            flow_id=outcome.flow.flow_id,
            documents={
                kind.value: level.value for kind, level in outcome.flow.documents.levels.items()
            },
            artifacts=dict(outcome.artifacts),
            tasks_completed=execution.tasks_completed if execution else 0,
            commits=execution.commits if execution else [],
            checks_passed=execution.checks_passed if execution else 0,
            awaiting_commit=execution.awaiting_commit if execution else [],
            escalations=[event.to_dict() for event in self.monitor.events],
        )
        self.store.add_report(report.to_dict())
        self.store.update_context(status="completed", phase=None)
        self._record_event("flow_completed", flow_id=report.flow_id)
        return report

    def receive_user_input(self, flow: FlowInstance, text: str) -> FlowInstance:
        """Route mid-flow input: a stop request, a requirement change, or neither."""
        if STOP_PATTERN.match(text):
            self.stop()
            return flow
        return self._supersede_on_change(flow, text) or flow

    def _supersede_on_change(self, flow: FlowInstance, text: str) -> FlowInstance | None:
        if self.monitor.detect_requirement_change(text) is None:
            return None
        successor = flow.supersede(text)
        self._record_event(
            "flow_superseded",
            flow_id=flow.flow_id,
            successor=successor.flow_id,
            generation=successor.generation,
        )
        return self._set_flow(successor, status="in_progress", phase=None, pending_approval=None)

    def stop(self) -> None:
        self.monitor.request_stop()
        self.store.update_context(stop_requested=True)
        self._record_event("stop_requested")

    def commit_pending(self) -> ExecutionReport:
        tasks = [ExecutionTask.from_dict(item) for item in self.store.get_tasks()]
        return self._execution_loop().commit_pending(tasks)

    def status(self, verbose: bool = False) -> dict[str, Any]:
        tasks = self.store.get_tasks()
        if not verbose:
            tasks = [
                {"id": task.get("id"), "title": task.get("title"), "state": task.get("state")}
                for task in tasks
            ]
        return {
            "context": self.store.get_context(),
            "tasks": tasks,
            "approvals": self.store.get_approvals(),
            "escalations": self.store.get_escalations()[-10:],
            "events": self.store.get_events()[-20:] if verbose else [],
            "reports": self.store.get_reports()[-1:],
        }

