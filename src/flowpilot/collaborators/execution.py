from __future__ import annotations

from flowpilot.collaborators.base import (
    CODE_TOOLS,
    DOCUMENT_TOOLS,
    READ_ONLY_TOOLS,
    Collaborator,
    CollaboratorRole,
)


class TaskDecomposer(Collaborator):
    role = CollaboratorRole.TASK_DECOMPOSER
    prompt_file = "task-decomposer.md"
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You split an approved work plan into atomic task files under
docs/plans/tasks/<plan-name>/task-NN.md, one commit-sized change each.
""".strip()


class TaskExecutor(Collaborator):
    role = CollaboratorRole.TASK_EXECUTOR
    prompt_file = "task-executor.md"
    allowed_tools = CODE_TOOLS
    fallback_prompt = """
You implement exactly one task with test-first discipline and report the
files you changed and the tests you added.
""".strip()


class QualityFixer(Collaborator):
    role = CollaboratorRole.QUALITY_FIXER
    prompt_file = "quality-fixer.md"
    allowed_tools = CODE_TOOLS
    fallback_prompt = """
You run lint, type checks and tests, fix what fails, and report approved only
when every check passes.
""".strip()


class IntegrationTestReviewer(Collaborator):
    role = CollaboratorRole.INTEGRATION_TEST_REVIEWER
    allowed_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You review integration and end-to-end tests against the acceptance criteria
and list required fixes.
""".strip()


class RootCauseInvestigator(Collaborator):
    role = CollaboratorRole.ROOT_CAUSE_INVESTIGATOR
    allowed_tools = ["read_file", "run_command", "search"]
    fallback_prompt = """
You investigate an error that keeps recurring. Produce a root-cause analysis:
observed symptom, causal chain, the actual cause, and a fix that addresses it.
""".strip()
