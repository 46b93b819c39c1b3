"""Phase catalog and the ordered phase list for each flow variant."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from enum import Enum

from flowpilot.collaborators.base import CollaboratorRole
from flowpilot.documents import DocumentKind, DocumentRequirementSet
from flowpilot.errors import OwnershipError, SequencerError
from flowpilot.scale import ScaleClass


class GateKind(str, Enum):
    REQUIREMENT_ANALYSIS = "requirement_analysis"
    PRD_REVIEW = "prd_review"
    UXRD_REVIEW = "uxrd_review"
    ADR_REVIEW = "adr_review"
    DESIGN_SYNC = "design_sync"
    BATCH_APPROVAL = "batch_approval"


class FlowVariant(str, Enum):
    LARGE = "large"
    MEDIUM = "medium"
    SMALL = "small"
    GAME = "game"


class FlowMode(str, Enum):
    FULL = "full"
    DESIGN_ONLY = "design-only"
    PROTOTYPE = "prototype"


class Scenario(str, Enum):
    NEW_PROJECT = "new"
    EXISTING_PROJECT = "existing"


class FeatureType(str, Enum):
    POLISH = "polish"
    ART = "art"
    UI = "ui"
    ANALYTICS = "analytics"
    CODE_ONLY = "code-only"


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    role: CollaboratorRole
    description: str
    gate: GateKind | None = None
    document: DocumentKind | None = None
    review: bool = False
    condition: str | None = None
    fan_out: bool = False

    @property
    def is_gate(self) -> bool:
        return self.gate is not None

    @property
    def is_batch_gate(self) -> bool:
        return self.gate is GateKind.BATCH_APPROVAL


_R = CollaboratorRole

PHASE_CATALOG: dict[str, Phase] = {
    phase.name: phase
    for phase in (
        Phase(
            "requirement-analysis",
            _R.REQUIREMENT_ANALYZER,
            "Analyze requirement scope",
            gate=GateKind.REQUIREMENT_ANALYSIS,
        ),
        Phase(
            "market-analysis",
            _R.MARKET_ANALYST,
            "Analyze market and audience",
            condition="scenario_new",
        ),
        Phase("game-design", _R.GAME_DESIGNER, "Define core game design"),
        Phase(
            "prd-creation",
            _R.PRD_CREATOR,
            "Create product requirements document",
            document=DocumentKind.PRD,
        ),
        Phase(
            "prd-update",
            _R.PRD_CREATOR,
            "Update existing product requirements",
            document=DocumentKind.PRD,
        ),
        Phase(
            "prd-review",
            _R.DOCUMENT_REVIEWER,
            "Review product requirements document",
            gate=GateKind.PRD_REVIEW,
            document=DocumentKind.PRD,
            review=True,
        ),
        Phase(
            "uxrd-creation",
            _R.UX_DESIGNER,
            "Create UX requirements document",
            document=DocumentKind.UXRD,
        ),
        Phase(
            "uxrd-review",
            _R.DOCUMENT_REVIEWER,
            "Review UX requirements document",
            gate=GateKind.UXRD_REVIEW,
            document=DocumentKind.UXRD,
            review=True,
        ),
        Phase(
            "feel-polish",
            _R.FEEL_POLISHER,
            "Specify game feel polish",
            condition="feature_polish",
        ),
        Phase(
            "art-direction",
            _R.ART_DIRECTOR,
            "Define art direction assets",
            condition="feature_art",
        ),
        Phase(
            "ui-specification",
            _R.UI_SPECIALIST,
            "Specify in-game user interface",
            condition="feature_ui",
        ),
        Phase(
            "analytics-design",
            _R.ANALYTICS_DESIGNER,
            "Design analytics event tracking",
            condition="feature_analytics",
        ),
        Phase(
            "adr-creation",
            _R.TECHNICAL_DESIGNER,
            "Create architecture decision record",
            document=DocumentKind.ADR,
        ),
        Phase(
            "adr-review",
            _R.DOCUMENT_REVIEWER,
            "Review architecture decision record",
            gate=GateKind.ADR_REVIEW,
            document=DocumentKind.ADR,
            review=True,
        ),
        Phase(
            "expert-analysis",
            _R.EXPERT_ANALYST,
            "Run parallel expert analysis",
            condition="expert_analysis",
            fan_out=True,
        ),
        Phase(
            "design-doc-creation",
            _R.TECHNICAL_DESIGNER,
            "Create technical design document",
            document=DocumentKind.DESIGN_DOC,
        ),
        Phase(
            "design-doc-review",
            _R.DOCUMENT_REVIEWER,
            "Review technical design document",
            document=DocumentKind.DESIGN_DOC,
            review=True,
        ),
        Phase(
            "design-sync",
            _R.DESIGN_SYNC,
            "Check design document consistency",
            gate=GateKind.DESIGN_SYNC,
            document=DocumentKind.DESIGN_DOC,
            review=True,
        ),
        Phase(
            "acceptance-test-generation",
            _R.ACCEPTANCE_TEST_GENERATOR,
            "Generate acceptance test skeletons",
            document=DocumentKind.DESIGN_DOC,
        ),
        Phase(
            "work-planning",
            _R.WORK_PLANNER,
            "Create implementation work plan",
            gate=GateKind.BATCH_APPROVAL,
            document=DocumentKind.WORK_PLAN,
        ),
        Phase("task-decomposition", _R.TASK_DECOMPOSER, "Decompose plan into tasks"),
    )
}

VARIANT_PHASES: dict[FlowVariant, tuple[str, ...]] = {
    FlowVariant.LARGE: (
        "requirement-analysis",
        "prd-creation",
        "prd-review",
        "uxrd-creation",
        "uxrd-review",
        "adr-creation",
        "adr-review",
        "expert-analysis",
        "design-doc-creation",
        "design-doc-review",
        "design-sync",
        "acceptance-test-generation",
        "work-planning",
        "task-decomposition",
    ),
    FlowVariant.MEDIUM: (
        "requirement-analysis",
        "prd-update",
        "prd-review",
        "uxrd-creation",
        "uxrd-review",
        "adr-creation",
        "adr-review",
        "expert-analysis",
        "design-doc-creation",
        "design-doc-review",
        "design-sync",
        "work-planning",
        "task-decomposition",
    ),
    FlowVariant.SMALL: (
        "requirement-analysis",
        "prd-update",
        "work-planning",
        "task-decomposition",
    ),
    FlowVariant.GAME: (
        "requirement-analysis",
        "market-analysis",
        "game-design",
        "prd-creation",
        "prd-review",
        "feel-polish",
        "art-direction",
        "ui-specification",
        "analytics-design",
        "adr-creation",
        "adr-review",
        "design-doc-creation",
        "design-doc-review",
        "design-sync",
        "work-planning",
        "task-decomposition",
    ),
}

EXECUTION_PHASES = frozenset({"work-planning", "task-decomposition"})


def variant_for(
    scale: ScaleClass, mode: FlowMode, feature_type: FeatureType | None = None
) -> FlowVariant:
    if feature_type is not None:
        return FlowVariant.GAME
    if mode is FlowMode.PROTOTYPE:
        return FlowVariant.SMALL
    return {
        ScaleClass.SMALL: FlowVariant.SMALL,
        ScaleClass.MEDIUM: FlowVariant.MEDIUM,
        ScaleClass.LARGE: FlowVariant.LARGE,
    }[scale]


def _condition_holds(
    condition: str | None,
    *,
    scenario: Scenario,
    feature_type: FeatureType | None,
    expert_analysis: bool,
) -> bool:
    if condition is None:
        return True
    if condition == "scenario_new":
        return scenario is Scenario.NEW_PROJECT
    if condition == "expert_analysis":
        return expert_analysis
    if condition.startswith("feature_"):
        return feature_type is not None and feature_type.value == condition[len("feature_") :]
    raise SequencerError(f"Unknown phase condition: {condition}")


def build_phases(
    variant: FlowVariant,
    documents: DocumentRequirementSet,
    *,
    mode: FlowMode = FlowMode.FULL,
    scenario: Scenario = Scenario.EXISTING_PROJECT,
    feature_type: FeatureType | None = None,
    expert_analysis: bool = False,
) -> tuple[Phase, ...]:
    """Resolve the variant's phase list against the document requirements."""
    phases: list[Phase] = []
    for name in VARIANT_PHASES[variant]:
        phase = PHASE_CATALOG[name]
        if mode is FlowMode.DESIGN_ONLY and name in EXECUTION_PHASES:
            continue
        if phase.document is not None and not documents.needs(phase.document):
            continue
        if not _condition_holds(
            phase.condition,
            scenario=scenario,
            feature_type=feature_type,
            expert_analysis=expert_analysis,
        ):
            continue
        phases.append(phase)
    result = tuple(phases)
    validate_phases(result, requires_execution=mode is not FlowMode.DESIGN_ONLY)
    return result


def revision_target(phases: tuple[Phase, ...], index: int) -> int:
    """Index of the phase that must redo its work when ``phases[index]`` asks for revision."""
    phase = phases[index]
    if not phase.review:
        return index
    for candidate in range(index - 1, -1, -1):
        producer = phases[candidate]
        if producer.document is phase.document and not producer.review:
            return candidate
    return index


def validate_phases(phases: tuple[Phase, ...], *, requires_execution: bool) -> None:
    names = [phase.name for phase in phases]
    if len(names) != len(set(names)):
        raise SequencerError(f"Duplicate phase names in flow: {names}")
    batch_indexes = [index for index, phase in enumerate(phases) if phase.is_batch_gate]
    if len(batch_indexes) > 1:
        raise SequencerError("A flow may contain only one batch approval gate.")
    if requires_execution and len(batch_indexes) != 1:
        raise SequencerError("A flow that executes tasks needs exactly one batch approval gate.")
    if batch_indexes:
        trailing_gates = [phase.name for phase in phases[batch_indexes[0] + 1 :] if phase.is_gate]
        if trailing_gates:
            raise SequencerError(
                "No gate may follow the batch approval gate: " + ", ".join(trailing_gates)
            )


ARTIFACT_OWNERS: tuple[tuple[str, CollaboratorRole], ...] = (
    ("docs/plans/tasks/*/task-[0-9][0-9].md", _R.TASK_DECOMPOSER),
    ("docs/plans/*.md", _R.WORK_PLANNER),
    ("docs/prd/*.md", _R.PRD_CREATOR),
    ("docs/adr/ADR-[0-9][0-9][0-9][0-9]-*.md", _R.TECHNICAL_DESIGNER),
    ("docs/design/*.md", _R.TECHNICAL_DESIGNER),
    ("docs/uxrd/*.md", _R.UX_DESIGNER),
)


def owner_for(path: str) -> CollaboratorRole | None:
    normalized = path.replace("\\", "/").removeprefix("./")
    for pattern, role in ARTIFACT_OWNERS:
        if fnmatch.fnmatch(normalized, pattern):
            return role
    return None


def check_write(role: CollaboratorRole, path: str) -> None:
    owner = owner_for(path)
    if owner is not None and owner is not role:
        raise OwnershipError(f"{role.value} may not write {path}; it is owned by {owner.value}.")
