from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType

from flowpilot.scale import ScaleClass


class DocumentKind(str, Enum):
    PRD = "prd"
    UXRD = "uxrd"
    ADR = "adr"
    DESIGN_DOC = "design_doc"
    WORK_PLAN = "work_plan"


class RequirementLevel(str, Enum):
    REQUIRED = "required"
    CONDITIONAL = "conditional"
    NOT_NEEDED = "not_needed"
    UPDATE_IF_EXISTS = "update_if_exists"
    SIMPLIFIED = "simplified"


ADR_NESTED_CONTRACT_DEPTH = 3
ADR_CONTRACT_CHANGE_SITES = 3
ADR_PROCESSING_REORDER_STEPS = 3
ADR_CONCURRENT_STATES = 3
ADR_CONCURRENT_ASYNC_OPERATIONS = 5


@dataclass(frozen=True, slots=True)
class Conditions:
    architecture_change: bool = False
    new_dependency: bool = False
    data_flow_change: bool = False
    ui_involved: bool = False
    existing_prd: bool = False
    nested_contract_depth: int = 0
    multi_location_contract_change: int = 0
    processing_reorder_steps: int = 0
    concurrent_states: int = 0
    concurrent_async_operations: int = 0

    def merge(self, other: Conditions) -> Conditions:
        merged: dict[str, bool | int] = {}
        for item in fields(self):
            left = getattr(self, item.name)
            right = getattr(other, item.name)
            if isinstance(left, bool):
                merged[item.name] = left or right
            else:
                merged[item.name] = max(left, right)
        return Conditions(**merged)

    def adr_triggers(self) -> tuple[str, ...]:
        checks = (
            ("nested_contract_depth", self.nested_contract_depth >= ADR_NESTED_CONTRACT_DEPTH),
            (
                "multi_location_contract_change",
                self.multi_location_contract_change >= ADR_CONTRACT_CHANGE_SITES,
            ),
            ("architecture_change", self.architecture_change),
            ("new_dependency", self.new_dependency),
            ("data_flow_change", self.data_flow_change),
            (
                "processing_reorder_steps",
                self.processing_reorder_steps >= ADR_PROCESSING_REORDER_STEPS,
            ),
            ("concurrent_states", self.concurrent_states >= ADR_CONCURRENT_STATES),
            (
                "concurrent_async_operations",
                self.concurrent_async_operations >= ADR_CONCURRENT_ASYNC_OPERATIONS,
            ),
        )
        return tuple(name for name, fired in checks if fired)

    def to_dict(self) -> dict[str, bool | int]:
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True, slots=True)
class DocumentRequirementSet:
    scale: ScaleClass
    levels: Mapping[DocumentKind, RequirementLevel]
    conditional_kinds: frozenset[DocumentKind] = field(default_factory=frozenset)
    adr_triggers: tuple[str, ...] = ()
    existing_prd: bool = False

    def __getitem__(self, kind: DocumentKind) -> RequirementLevel:
        return self.levels[kind]

    def needs(self, kind: DocumentKind) -> bool:
        """Whether a phase producing ``kind`` has to run in this flow."""
        level = self.levels[kind]
        if level is RequirementLevel.NOT_NEEDED:
            return False
        if level is RequirementLevel.UPDATE_IF_EXISTS:
            return self.existing_prd
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            "scale": self.scale.value,
            "levels": {kind.value: level.value for kind, level in self.levels.items()},
            "conditional_kinds": sorted(kind.value for kind in self.conditional_kinds),
            "adr_triggers": list(self.adr_triggers),
            "existing_prd": self.existing_prd,
        }


_BASE_TABLES: dict[ScaleClass, dict[DocumentKind, RequirementLevel]] = {
    ScaleClass.SMALL: {
        DocumentKind.PRD: RequirementLevel.UPDATE_IF_EXISTS,
        DocumentKind.ADR: RequirementLevel.NOT_NEEDED,
        DocumentKind.DESIGN_DOC: RequirementLevel.NOT_NEEDED,
        DocumentKind.WORK_PLAN: RequirementLevel.SIMPLIFIED,
    },
    ScaleClass.MEDIUM: {
        DocumentKind.PRD: RequirementLevel.UPDATE_IF_EXISTS,
        DocumentKind.ADR: RequirementLevel.CONDITIONAL,
        DocumentKind.DESIGN_DOC: RequirementLevel.REQUIRED,
        DocumentKind.WORK_PLAN: RequirementLevel.REQUIRED,
    },
    ScaleClass.LARGE: {
        DocumentKind.PRD: RequirementLevel.REQUIRED,
        DocumentKind.ADR: RequirementLevel.CONDITIONAL,
        DocumentKind.DESIGN_DOC: RequirementLevel.REQUIRED,
        DocumentKind.WORK_PLAN: RequirementLevel.REQUIRED,
    },
}


def resolve(scale: ScaleClass, conditions: Conditions) -> DocumentRequirementSet:
    base = dict(_BASE_TABLES[scale])
    if scale is ScaleClass.LARGE and conditions.existing_prd:
        base[DocumentKind.PRD] = RequirementLevel.UPDATE_IF_EXISTS

    conditional_kinds = {DocumentKind.UXRD}
    conditional_kinds.update(
        kind for kind, level in base.items() if level is RequirementLevel.CONDITIONAL
    )

    triggers = conditions.adr_triggers()
    if triggers:
        base[DocumentKind.ADR] = RequirementLevel.REQUIRED
    elif base[DocumentKind.ADR] is RequirementLevel.CONDITIONAL:
        base[DocumentKind.ADR] = RequirementLevel.NOT_NEEDED

    base[DocumentKind.UXRD] = (
        RequirementLevel.REQUIRED if conditions.ui_involved else RequirementLevel.NOT_NEEDED
    )

    ordered = {kind: base[kind] for kind in DocumentKind}
    return DocumentRequirementSet(
        scale=scale,
        levels=MappingProxyType(ordered),
        conditional_kinds=frozenset(conditional_kinds),
        adr_triggers=triggers,
        existing_prd=conditions.existing_prd,
    )


_UI_PATTERN = re.compile(
    r"\b(ui|ux|screen|page|form|button|modal|dialog|layout|component|frontend|css|"
    r"dashboard|view)s?\b",
    re.IGNORECASE,
)
_ARCHITECTURE_PATTERN = re.compile(
    r"\b(architecture|architectural|layer(?:ing)?|microservice|monolith|"
    r"module boundar(?:y|ies)|re-?architect)\b",
    re.IGNORECASE,
)
_DEPENDENCY_PATTERN = re.compile(
    r"\b(new (?:library|dependency|package|framework|sdk|service)|add(?:ing)? (?:a )?"
    r"(?:library|dependency|package)|third[- ]party|external (?:api|service))\b",
    re.IGNORECASE,
)
_DATA_FLOW_PATTERN = re.compile(
    r"\b(data ?flow|data model|schema|migration|pipeline|storage format)\b",
    re.IGNORECASE,
)


def detect_conditions(text: str, *, existing_prd: bool = False) -> Conditions:
    """Derive conditions from request text with simple keyword guards."""
    return Conditions(
        architecture_change=bool(_ARCHITECTURE_PATTERN.search(text)),
        new_dependency=bool(_DEPENDENCY_PATTERN.search(text)),
        data_flow_change=bool(_DATA_FLOW_PATTERN.search(text)),
        ui_involved=bool(_UI_PATTERN.search(text)),
        existing_prd=existing_prd,
    )
