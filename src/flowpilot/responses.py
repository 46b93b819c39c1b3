from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)


class ResponseStatus(str, Enum):
    COMPLETED = "completed"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    REJECTED = "rejected"
    ESCALATION_NEEDED = "escalation_needed"
    BLOCKED = "blocked"

    @property
    def wants_revision(self) -> bool:
        return self in {ResponseStatus.NEEDS_REVISION, ResponseStatus.REJECTED}

    @property
    def halts_flow(self) -> bool:
        return self in {ResponseStatus.ESCALATION_NEEDED, ResponseStatus.BLOCKED}


_STATUS_ALIASES = {
    "completed": ResponseStatus.COMPLETED,
    "complete": ResponseStatus.COMPLETED,
    "success": ResponseStatus.COMPLETED,
    "done": ResponseStatus.COMPLETED,
    "approved": ResponseStatus.APPROVED,
    "approved_with_conditions": ResponseStatus.APPROVED,
    "no_conflicts": ResponseStatus.APPROVED,
    "needs_revision": ResponseStatus.NEEDS_REVISION,
    "revision_needed": ResponseStatus.NEEDS_REVISION,
    "conflicts_found": ResponseStatus.NEEDS_REVISION,
    "rejected": ResponseStatus.REJECTED,
    "escalation_needed": ResponseStatus.ESCALATION_NEEDED,
    "escalate": ResponseStatus.ESCALATION_NEEDED,
    "blocked": ResponseStatus.BLOCKED,
}


@dataclass(slots=True)
class StructuredResponse:
    role: str
    status: ResponseStatus
    payload: dict[str, Any] = field(default_factory=dict)
    raw: str = ""
    # False when the reply carried no JSON result object.
    parsed: bool = True

    @classmethod
    def of(
        cls, role: str, status: ResponseStatus | str, **payload: Any
    ) -> StructuredResponse:
        return cls(role=role, status=ResponseStatus(status), payload=dict(payload))

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "status": self.status.value, "payload": dict(self.payload)}


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """Collect JSON objects from fenced blocks and from single-line objects."""
    payloads: list[dict[str, Any]] = []
    candidates = [match.group(1).strip() for match in FENCED_JSON_PATTERN.finditer(raw_text)]
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if line.startswith("{") and line.endswith("}"):
            candidates.append(line)
    stripped = raw_text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        candidates.append(stripped)

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def normalize_status(payload: dict[str, Any]) -> ResponseStatus:
    for key in ("status", "decision", "sync_status"):
        value = payload.get(key)
        if isinstance(value, str):
            status = _STATUS_ALIASES.get(value.strip().lower().replace(" ", "_"))
            if status is not None:
                return status
    for key in ("approved", "approvalReady"):
        value = payload.get(key)
        if isinstance(value, bool):
            return ResponseStatus.APPROVED if value else ResponseStatus.NEEDS_REVISION
    return ResponseStatus.COMPLETED


def parse_response(role: str, text: str) -> StructuredResponse:
    """Build a structured response from raw collaborator output.

    The last JSON object wins; collaborators are asked to finish with their
    result object, and earlier objects are usually echoed inputs.
    """
    payloads = extract_json_objects(text)
    if not payloads:
        return StructuredResponse(
            role=role, status=ResponseStatus.COMPLETED, raw=text, parsed=False
        )
    payload = payloads[-1]
    return StructuredResponse(
        role=role,
        status=normalize_status(payload),
        payload=payload,
        raw=text,
    )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


@dataclass(slots=True)
class ImplementationReport:
    status: ResponseStatus
    files_modified: list[str]
    tests_added: list[str]
    ready_for_quality_check: bool
    edit_counts: dict[str, int]

    @classmethod
    def from_response(cls, response: StructuredResponse) -> ImplementationReport:
        payload = response.payload
        raw_counts = payload.get("editCounts", {})
        edit_counts: dict[str, int] = {}
        if isinstance(raw_counts, dict):
            for path, count in raw_counts.items():
                try:
                    edit_counts[str(path)] = int(count)
                except (TypeError, ValueError):
                    continue
        return cls(
            status=response.status,
            files_modified=_string_list(payload.get("filesModified")),
            tests_added=_string_list(payload.get("testsAdded")),
            ready_for_quality_check=payload.get("readyForQualityCheck") is True,
            edit_counts=edit_counts,
        )


@dataclass(slots=True)
class QualityReport:
    status: ResponseStatus
    approved: bool
    checks_performed: list[str]
    fixes_applied: list[str]
    errors: list[str]

    @classmethod
    def from_response(cls, response: StructuredResponse) -> QualityReport:
        payload = response.payload
        return cls(
            status=response.status,
            approved=payload.get("approved") is True,
            checks_performed=_string_list(payload.get("checksPerformed")),
            fixes_applied=_string_list(payload.get("fixesApplied")),
            errors=_string_list(payload.get("errors")),
        )


@dataclass(slots=True)
class ReviewReport:
    status: ResponseStatus
    decision: str
    revision_agent: str | None
    issues: list[str]
    approval_ready: bool

    @classmethod
    def from_response(cls, response: StructuredResponse) -> ReviewReport:
        payload = response.payload
        issues: list[str] = []
        raw_issues = payload.get("issues", [])
        if isinstance(raw_issues, list):
            for item in raw_issues:
                if isinstance(item, dict):
                    issues.append(str(item.get("description") or item.get("title") or item))
                elif str(item).strip():
                    issues.append(str(item))
        revision_agent = payload.get("revision_agent")
        return cls(
            status=response.status,
            decision=str(payload.get("decision") or response.status.value),
            revision_agent=str(revision_agent) if revision_agent else None,
            issues=issues,
            approval_ready=payload.get("approvalReady") is True
            or response.status is ResponseStatus.APPROVED,
        )


@dataclass(slots=True)
class SyncReport:
    status: ResponseStatus
    sync_status: str
    total_conflicts: int
    conflicts: list[dict[str, Any]]

    @classmethod
    def from_response(cls, response: StructuredResponse) -> SyncReport:
        payload = response.payload
        conflicts = payload.get("conflicts", [])
        if not isinstance(conflicts, list):
            conflicts = []
        try:
            total = int(payload.get("total_conflicts", len(conflicts)))
        except (TypeError, ValueError):
            total = len(conflicts)
        return cls(
            status=response.status,
            sync_status=str(payload.get("sync_status") or "UNKNOWN"),
            total_conflicts=total,
            conflicts=[item for item in conflicts if isinstance(item, dict)],
        )
