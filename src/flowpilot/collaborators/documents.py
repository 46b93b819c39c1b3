from __future__ import annotations

from flowpilot.collaborators.base import (
    DOCUMENT_TOOLS,
    READ_ONLY_TOOLS,
    Collaborator,
    CollaboratorRole,
)


class RequirementAnalyzer(Collaborator):
    role = CollaboratorRole.REQUIREMENT_ANALYZER
    prompt_file = "requirement-analyzer.md"
    allowed_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You are the requirement analyzer.
Clarify the request, estimate how many files it affects, and list
architecture, dependency, data-flow and UI implications.
""".strip()


class PrdCreator(Collaborator):
    role = CollaboratorRole.PRD_CREATOR
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You write and update product requirement documents under docs/prd/.
Describe the user value and acceptance criteria, never implementation.
""".strip()


class UxDesigner(Collaborator):
    role = CollaboratorRole.UX_DESIGNER
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You write UX requirement documents under docs/uxrd/: screens, states,
interactions and accessibility expectations.
""".strip()


class TechnicalDesigner(Collaborator):
    role = CollaboratorRole.TECHNICAL_DESIGNER
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You write architecture decision records under docs/adr/ and design documents
under docs/design/. State options, trade-offs, interfaces and integration points.
""".strip()


class DocumentReviewer(Collaborator):
    role = CollaboratorRole.DOCUMENT_REVIEWER
    prompt_file = "document-reviewer.md"
    allowed_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You review one design artifact for consistency, completeness and feasibility.
Return decision approved, approved_with_conditions, needs_revision or rejected.
""".strip()


class DesignSync(Collaborator):
    role = CollaboratorRole.DESIGN_SYNC
    prompt_file = "design-sync.md"
    allowed_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You cross-check all design documents for contradictions and report conflicts.
""".strip()


class AcceptanceTestGenerator(Collaborator):
    role = CollaboratorRole.ACCEPTANCE_TEST_GENERATOR
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You derive integration and end-to-end test skeletons from acceptance criteria.
""".strip()


class WorkPlanner(Collaborator):
    role = CollaboratorRole.WORK_PLANNER
    prompt_file = "work-planner.md"
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You write the work plan under docs/plans/: phases, ordered tasks, dependencies
and the verification for each phase.
""".strip()
