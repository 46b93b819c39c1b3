"""Task requests and the immutable flow instance built from them.

A :class:`FlowInstance` is never edited in place. Advancing the phase index,
refining conditions after requirement analysis, or superseding the flow on a
requirement change all return a new value; the orchestrator decides which
one is current.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any
from uuid import uuid4

from flowpilot.documents import Conditions, DocumentRequirementSet, detect_conditions, resolve
from flowpilot.errors import FlowStateError
from flowpilot.phases import (
    FeatureType,
    FlowMode,
    FlowVariant,
    Phase,
    Scenario,
    build_phases,
    variant_for,
)
from flowpilot.scale import ScaleClass, classify, estimate_file_count


def _new_flow_id() -> str:
    return f"flow-{uuid4().hex[:10]}"


@dataclass(frozen=True, slots=True)
class TaskRequest:
    description: str
    file_count_estimate: int = 0
    mode: FlowMode = FlowMode.FULL
    scenario: Scenario = Scenario.EXISTING_PROJECT
    conditions: Conditions = field(default_factory=Conditions)
    feature_type: FeatureType | None = None

    @classmethod
    def from_text(
        cls,
        text: str,
        *,
        file_count_estimate: int | None = None,
        mode: FlowMode = FlowMode.FULL,
        scenario: Scenario = Scenario.EXISTING_PROJECT,
        feature_type: FeatureType | None = None,
        existing_prd: bool = False,
    ) -> TaskRequest:
        """Build a request whose conditions and estimate come from the text itself."""
        estimate = estimate_file_count(text) if file_count_estimate is None else file_count_estimate
        return cls(
            description=text.strip(),
            file_count_estimate=estimate,
            mode=mode,
            scenario=scenario,
            conditions=detect_conditions(text, existing_prd=existing_prd),
            feature_type=feature_type,
        )

    def merged_with(self, text: str, *, file_count_estimate: int | None = None) -> TaskRequest:
        merged = f"{self.description}\n\n{text.strip()}".strip()
        detected = detect_conditions(merged, existing_prd=self.conditions.existing_prd)
        if file_count_estimate is None:
            file_count_estimate = max(self.file_count_estimate, estimate_file_count(merged))
        return replace(
            self,
            description=merged,
            file_count_estimate=file_count_estimate,
            conditions=self.conditions.merge(detected),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "file_count_estimate": self.file_count_estimate,
            "mode": self.mode.value,
            "scenario": self.scenario.value,
            "conditions": self.conditions.to_dict(),
            "feature_type": self.feature_type.value if self.feature_type else None,
        }


@dataclass(frozen=True, slots=True)
class FlowInstance:
    flow_id: str
    request: TaskRequest
    scale: ScaleClass
    documents: DocumentRequirementSet
    variant: FlowVariant
    phase_index: int = 0
    generation: int = 1
    supersedes: str | None = None
    commit_strategy: str | None = None

    @classmethod
    def start(cls, request: TaskRequest, *, commit_strategy: str | None = None) -> FlowInstance:
        scale = classify(request.file_count_estimate)
        return cls(
            flow_id=_new_flow_id(),
            request=request,
            scale=scale,
            documents=resolve(scale, request.conditions),
            variant=variant_for(scale, request.mode, request.feature_type),
            commit_strategy=commit_strategy,
        )

    def phases(self, *, expert_analysis: bool = False) -> tuple[Phase, ...]:
        return build_phases(
            self.variant,
            self.documents,
            mode=self.request.mode,
            scenario=self.request.scenario,
            feature_type=self.request.feature_type,
            expert_analysis=expert_analysis,
        )

    def with_phase_index(self, index: int) -> FlowInstance:
        if index < 0:
            raise FlowStateError(f"Phase index must be non-negative, got {index}.")
        return replace(self, phase_index=index)

    def with_commit_strategy(self, strategy: str) -> FlowInstance:
        return replace(self, commit_strategy=strategy)

    def refine(
        self,
        *,
        file_count_estimate: int | None = None,
        conditions: Conditions | None = None,
    ) -> FlowInstance:
        """Re-resolve with what requirement analysis found.

        Only allowed before the first phase has been left behind: once a later
        phase ran, a changed picture is a requirement change and must supersede.
        """
        if self.phase_index != 0:
            raise FlowStateError(
                f"{self.flow_id} is at phase {self.phase_index}; refine only applies "
                "to requirement analysis output."
            )
        request = self.request
        if conditions is not None:
            request = replace(request, conditions=request.conditions.merge(conditions))
        if file_count_estimate is not None:
            request = replace(request, file_count_estimate=file_count_estimate)
        scale = classify(request.file_count_estimate)
        return replace(
            self,
            request=request,
            scale=scale,
            documents=resolve(scale, request.conditions),
            variant=variant_for(scale, request.mode, request.feature_type),
        )

    def supersede(self, text: str, *, file_count_estimate: int | None = None) -> FlowInstance:
        request = self.request.merged_with(text, file_count_estimate=file_count_estimate)
        successor = FlowInstance.start(request, commit_strategy=self.commit_strategy)
        return replace(successor, generation=self.generation + 1, supersedes=self.flow_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "request": self.request.to_dict(),
            "scale": self.scale.value,
            "documents": self.documents.to_dict(),
            "variant": self.variant.value,
            "phase_index": self.phase_index,
            "generation": self.generation,
            "supersedes": self.supersedes,
            "commit_strategy": self.commit_strategy,
        }
