from __future__ import annotations

from flowpilot.collaborators.base import (
    DOCUMENT_TOOLS,
    READ_ONLY_TOOLS,
    Collaborator,
    CollaboratorRole,
)


class ExpertAnalyst(Collaborator):
    role = CollaboratorRole.EXPERT_ANALYST
    allowed_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You analyze a design problem from one assigned perspective and report
findings, risks and recommendations for that perspective only.
""".strip()


class MarketAnalyst(Collaborator):
    role = CollaboratorRole.MARKET_ANALYST
    allowed_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You study comparable titles and the target audience for a new game project.
""".strip()


class GameDesigner(Collaborator):
    role = CollaboratorRole.GAME_DESIGNER
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You define core loop, mechanics and progression for the requested feature.
""".strip()


class ArtDirector(Collaborator):
    role = CollaboratorRole.ART_DIRECTOR
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You specify the visual direction and asset list for art-heavy features.
""".strip()


class FeelPolisher(Collaborator):
    role = CollaboratorRole.FEEL_POLISHER
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You specify juice and game feel: timing, feedback, easing and effects.
""".strip()


class UiSpecialist(Collaborator):
    role = CollaboratorRole.UI_SPECIALIST
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You specify in-game UI: HUD, menus, navigation and input handling.
""".strip()


class AnalyticsDesigner(Collaborator):
    role = CollaboratorRole.ANALYTICS_DESIGNER
    allowed_tools = DOCUMENT_TOOLS
    fallback_prompt = """
You define telemetry events, funnels and the KPIs a feature must move.
""".strip()
