import pytest

from flowpilot.collaborators.base import CollaboratorRole
from flowpilot.documents import Conditions, resolve
from flowpilot.errors import OwnershipError, SequencerError
from flowpilot.phases import (
    PHASE_CATALOG,
    FeatureType,
    FlowMode,
    FlowVariant,
    Scenario,
    build_phases,
    check_write,
    owner_for,
    revision_target,
    validate_phases,
)
from flowpilot.scale import ScaleClass


def _names(phases) -> list[str]:
    return [phase.name for phase in phases]


def test_medium_flow_skips_documents_that_are_not_needed() -> None:
    documents = resolve(ScaleClass.MEDIUM, Conditions())

    assert _names(build_phases(FlowVariant.MEDIUM, documents)) == [
        "requirement-analysis",
        "design-doc-creation",
        "design-doc-review",
        "design-sync",
        "work-planning",
        "task-decomposition",
    ]


def test_medium_flow_with_ui_and_existing_prd_runs_conditional_phases() -> None:
    documents = resolve(ScaleClass.MEDIUM, Conditions(ui_involved=True, existing_prd=True))
    names = _names(build_phases(FlowVariant.MEDIUM, documents, expert_analysis=True))

    assert names[:5] == [
        "requirement-analysis",
        "prd-update",
        "prd-review",
        "uxrd-creation",
        "uxrd-review",
    ]
    assert "adr-creation" not in names
    assert names.index("expert-analysis") < names.index("design-doc-creation")


def test_large_flow_includes_prd_adr_and_acceptance_tests() -> None:
    documents = resolve(ScaleClass.LARGE, Conditions(architecture_change=True))
    names = _names(build_phases(FlowVariant.LARGE, documents))

    for name in ("prd-creation", "adr-creation", "adr-review", "acceptance-test-generation"):
        assert name in names
    assert names[-2:] == ["work-planning", "task-decomposition"]


def test_small_flow_is_short() -> None:
    documents = resolve(ScaleClass.SMALL, Conditions())

    assert _names(build_phases(FlowVariant.SMALL, documents)) == [
        "requirement-analysis",
        "work-planning",
        "task-decomposition",
    ]


def test_every_variant_starts_with_requirement_analysis_gate() -> None:
    documents = resolve(ScaleClass.LARGE, Conditions(ui_involved=True))
    for variant in FlowVariant:
        phases = build_phases(variant, documents, feature_type=FeatureType.UI)
        assert phases[0].name == "requirement-analysis"
        assert phases[0].is_gate


def test_game_flow_interleaves_feature_specialists() -> None:
    documents = resolve(ScaleClass.MEDIUM, Conditions())
    names = _names(
        build_phases(
            FlowVariant.GAME,
            documents,
            scenario=Scenario.NEW_PROJECT,
            feature_type=FeatureType.ART,
        )
    )

    assert "market-analysis" in names
    assert "art-direction" in names
    assert "feel-polish" not in names
    assert "analytics-design" not in names

    code_only = _names(
        build_phases(FlowVariant.GAME, documents, feature_type=FeatureType.CODE_ONLY)
    )
    assert "market-analysis" not in code_only
    assert not {"feel-polish", "art-direction", "ui-specification", "analytics-design"} & set(
        code_only
    )


def test_design_only_mode_has_no_batch_gate() -> None:
    documents = resolve(ScaleClass.MEDIUM, Conditions())
    phases = build_phases(FlowVariant.MEDIUM, documents, mode=FlowMode.DESIGN_ONLY)

    assert not any(phase.is_batch_gate for phase in phases)
    assert _names(phases)[-1] == "design-sync"


def test_exactly_one_batch_gate_and_none_after_it() -> None:
    for scale, variant in (
        (ScaleClass.SMALL, FlowVariant.SMALL),
        (ScaleClass.MEDIUM, FlowVariant.MEDIUM),
        (ScaleClass.LARGE, FlowVariant.LARGE),
    ):
        phases = build_phases(variant, resolve(scale, Conditions(ui_involved=True)))
        batch = [index for index, phase in enumerate(phases) if phase.is_batch_gate]
        assert len(batch) == 1
        assert not any(phase.is_gate for phase in phases[batch[0] + 1 :])


def test_validate_phases_rejects_broken_lists() -> None:
    ra = PHASE_CATALOG["requirement-analysis"]
    wp = PHASE_CATALOG["work-planning"]
    prd_review = PHASE_CATALOG["prd-review"]

    with pytest.raises(SequencerError):
        validate_phases((ra, ra), requires_execution=False)
    with pytest.raises(SequencerError):
        validate_phases((ra,), requires_execution=True)
    with pytest.raises(SequencerError):
        validate_phases((ra, wp, prd_review), requires_execution=True)


def test_revision_target_points_at_producer() -> None:
    documents = resolve(ScaleClass.MEDIUM, Conditions())
    phases = build_phases(FlowVariant.MEDIUM, documents)

    assert revision_target(phases, 2) == 1  # design-doc-review -> design-doc-creation
    assert revision_target(phases, 3) == 1  # design-sync -> design-doc-creation
    assert revision_target(phases, 4) == 4  # work-planning redoes itself


def test_artifact_ownership_table() -> None:
    assert owner_for("docs/prd/checkout.md") is CollaboratorRole.PRD_CREATOR
    assert owner_for("./docs/adr/ADR-0007-queue.md") is CollaboratorRole.TECHNICAL_DESIGNER
    assert owner_for("docs/plans/tasks/checkout/task-03.md") is CollaboratorRole.TASK_DECOMPOSER
    assert owner_for("docs/plans/checkout.md") is CollaboratorRole.WORK_PLANNER
    assert owner_for("src/app.py") is None

    check_write(CollaboratorRole.UX_DESIGNER, "docs/uxrd/checkout.md")
    check_write(CollaboratorRole.TASK_EXECUTOR, "src/app.py")
    with pytest.raises(OwnershipError):
        check_write(CollaboratorRole.TASK_EXECUTOR, "docs/design/checkout.md")
