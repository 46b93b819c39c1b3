from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from flowpilot.documents import DocumentRequirementSet
from flowpilot.errors import SequencerError
from flowpilot.escalation import EscalationEvent, EscalationKind, EscalationRequired
from flowpilot.gates import ApprovalDecision
from flowpilot.phases import FlowVariant, Phase, build_phases, revision_target
from flowpilot.responses import ResponseStatus, StructuredResponse

HALT = None


@dataclass(frozen=True, slots=True)
class AdvanceResult:
    next_index: int | None
    gate_reached: bool = False
    revision: int = 0

    @property
    def halted(self) -> bool:
        return self.next_index is HALT


class PhaseSequencer:
    """Walks one flow's phase list, one active phase at a time."""

    def __init__(
        self,
        phases: tuple[Phase, ...],
        *,
        max_revisions: int = 2,
        revisions: Mapping[str, int] | None = None,
    ) -> None:
        if not phases:
            raise SequencerError("A flow needs at least one phase.")
        self._phases = phases
        self.max_revisions = max(0, max_revisions)
        # Counts carried over from an earlier phase list are keyed by producer name.
        carried = revisions or {}
        self._revisions: Counter[int] = Counter(
            {
                index: carried[phase.name]
                for index, phase in enumerate(phases)
                if carried.get(phase.name)
            }
        )
        self._awaiting: int | None = None
        self._active: int | None = None

    def __len__(self) -> int:
        return len(self._phases)

    @property
    def phases(self) -> tuple[Phase, ...]:
        return self._phases

    @property
    def awaiting_approval(self) -> int | None:
        return self._awaiting

    @property
    def active_index(self) -> int | None:
        return self._active

    def phase_at(self, index: int) -> Phase:
        self._check_index(index)
        return self._phases[index]

    def revisions_for(self, index: int) -> int:
        return self._revisions[revision_target(self._phases, index)]

    def revision_counts(self) -> dict[str, int]:
        return {
            self._phases[index].name: count for index, count in self._revisions.items() if count
        }

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._phases):
            raise SequencerError(f"Phase index {index} is outside 0..{len(self._phases) - 1}.")

    def _next(self, index: int) -> int | None:
        return index + 1 if index + 1 < len(self._phases) else HALT

    def begin(self, index: int) -> Phase:
        self._check_index(index)
        if self._awaiting is not None:
            raise SequencerError(
                f"Phase {self._phases[self._awaiting].name} is waiting for approval."
            )
        if self._active is not None and self._active != index:
            raise SequencerError(
                f"Phase {self._phases[self._active].name} is still active; "
                f"cannot start {self._phases[index].name}."
            )
        self._active = index
        return self._phases[index]

    def advance(self, index: int, response: StructuredResponse) -> AdvanceResult:
        self._check_index(index)
        if self._awaiting is not None:
            raise SequencerError(
                f"Phase {self._phases[self._awaiting].name} is waiting for approval; "
                "use resume_after_approval."
            )
        phase = self._phases[index]
        self._active = None

        if response.status.halts_flow:
            raise self._halt(phase, response)
        if response.status.wants_revision:
            return self._loop_back(index, self._revision_reason(response))
        if phase.review and not response.parsed:
            # A verdict phase without a result object never counts as approval.
            return self._loop_back(
                index, f"{phase.name} returned no structured verdict: {response.raw[:200]}"
            )
        if phase.is_gate:
            self._awaiting = index
            return AdvanceResult(next_index=index, gate_reached=True)
        if phase.review:
            self._revisions.pop(revision_target(self._phases, index), None)
        return AdvanceResult(next_index=self._next(index))

    def resume_after_approval(self, index: int, decision: ApprovalDecision) -> AdvanceResult:
        if self._awaiting != index:
            raise SequencerError(f"Phase index {index} is not waiting for approval.")
        self._awaiting = None
        if not decision.approved:
            return self._loop_back(index, decision.reason)
        self._revisions.pop(revision_target(self._phases, index), None)
        return AdvanceResult(next_index=self._next(index))

    def _loop_back(self, index: int, reason: str) -> AdvanceResult:
        target = revision_target(self._phases, index)
        count = self._revisions[target] + 1
        phase = self._phases[index]
        producer = self._phases[target]
        if count > self.max_revisions:
            raise EscalationRequired(
                EscalationEvent(
                    kind=EscalationKind.REVISION_LIMIT,
                    summary=f"{producer.name} still needs revision after "
                    f"{self.max_revisions} attempts.",
                    reason=reason or f"{phase.name} keeps requesting changes.",
                    next_step="Decide on the open issues and restart the phase manually.",
                    payload={"phase": phase.name, "producer": producer.name, "attempts": count},
                )
            )
        self._revisions[target] = count
        return AdvanceResult(next_index=target, revision=count)

    @staticmethod
    def _revision_reason(response: StructuredResponse) -> str:
        issues = response.payload.get("issues")
        if isinstance(issues, list) and issues:
            return "; ".join(str(item) for item in issues[:5])
        return str(response.payload.get("reason") or "")

    @staticmethod
    def _halt(phase: Phase, response: StructuredResponse) -> EscalationRequired:
        blocked = response.status is ResponseStatus.BLOCKED
        payload: dict[str, Any] = {"phase": phase.name, "response": response.to_dict()}
        return EscalationRequired(
            EscalationEvent(
                kind=EscalationKind.BLOCKED if blocked else EscalationKind.EXPLICIT,
                summary=f"{response.role} stopped during {phase.name}.",
                reason=str(response.payload.get("reason") or response.status.value),
                next_step="Resolve the reported issue, then resume from this phase.",
                payload=payload,
            )
        )


def advance(
    variant: FlowVariant,
    current_index: int,
    response: StructuredResponse,
    documents: DocumentRequirementSet,
    **build_options: Any,
) -> AdvanceResult:
    """Stateless form of :meth:`PhaseSequencer.advance` for a single step."""
    sequencer = PhaseSequencer(build_phases(variant, documents, **build_options))
    return sequencer.advance(current_index, response)
