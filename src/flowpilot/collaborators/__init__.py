from flowpilot.backends.base import AgentBackend
from flowpilot.collaborators.base import (
    Collaborator,
    CollaboratorRegistry,
    CollaboratorRole,
    Invocation,
)
from flowpilot.collaborators.documents import (
    AcceptanceTestGenerator,
    DesignSync,
    DocumentReviewer,
    PrdCreator,
    RequirementAnalyzer,
    TechnicalDesigner,
    UxDesigner,
    WorkPlanner,
)
from flowpilot.collaborators.execution import (
    IntegrationTestReviewer,
    QualityFixer,
    RootCauseInvestigator,
    TaskDecomposer,
    TaskExecutor,
)
from flowpilot.collaborators.specialists import (
    AnalyticsDesigner,
    ArtDirector,
    ExpertAnalyst,
    FeelPolisher,
    GameDesigner,
    MarketAnalyst,
    UiSpecialist,
)

COLLABORATOR_TYPES: tuple[type[Collaborator], ...] = (
    RequirementAnalyzer,
    PrdCreator,
    UxDesigner,
    TechnicalDesigner,
    DocumentReviewer,
    DesignSync,
    AcceptanceTestGenerator,
    WorkPlanner,
    TaskDecomposer,
    TaskExecutor,
    QualityFixer,
    IntegrationTestReviewer,
    RootCauseInvestigator,
    ExpertAnalyst,
    MarketAnalyst,
    GameDesigner,
    ArtDirector,
    FeelPolisher,
    UiSpecialist,
    AnalyticsDesigner,
)


def build_registry(backend: AgentBackend, *, model: str | None = None) -> CollaboratorRegistry:
    return CollaboratorRegistry(
        collaborator_type(backend, model=model) for collaborator_type in COLLABORATOR_TYPES
    )


__all__ = [
    "COLLABORATOR_TYPES",
    "AcceptanceTestGenerator",
    "AnalyticsDesigner",
    "ArtDirector",
    "Collaborator",
    "CollaboratorRegistry",
    "CollaboratorRole",
    "DesignSync",
    "DocumentReviewer",
    "ExpertAnalyst",
    "FeelPolisher",
    "GameDesigner",
    "IntegrationTestReviewer",
    "Invocation",
    "MarketAnalyst",
    "PrdCreator",
    "QualityFixer",
    "RequirementAnalyzer",
    "RootCauseInvestigator",
    "TaskDecomposer",
    "TaskExecutor",
    "TechnicalDesigner",
    "UiSpecialist",
    "UxDesigner",
    "WorkPlanner",
    "build_registry",
]
