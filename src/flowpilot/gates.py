from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from flowpilot.errors import GateError
from flowpilot.phases import GateKind, Phase

__all__ = ["ApprovalDecision", "GateKind", "PendingApproval", "StopPointGate"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    approved: bool
    reason: str = ""

    @classmethod
    def approve(cls, reason: str = "") -> ApprovalDecision:
        return cls(approved=True, reason=reason)

    @classmethod
    def reject(cls, reason: str) -> ApprovalDecision:
        if not reason.strip():
            raise GateError("A rejection must say what has to change.")
        return cls(approved=False, reason=reason)


class PendingApproval:
    """A stop point waiting for an explicit human decision.

    There is no timeout: ``wait`` returns only after ``approve``, ``reject``
    or ``resolve`` is called.
    """

    def __init__(self, gate: StopPointGate, phase: Phase, artifact_ref: str) -> None:
        self.approval_id = f"approval-{uuid4().hex[:8]}"
        self.phase = phase
        self.artifact_ref = artifact_ref
        self.requested_at = _utcnow_iso()
        self._gate = gate
        self._event = asyncio.Event()
        self._decision: ApprovalDecision | None = None

    @property
    def done(self) -> bool:
        return self._decision is not None

    @property
    def decision(self) -> ApprovalDecision | None:
        return self._decision

    def resolve(self, decision: ApprovalDecision) -> None:
        if self._decision is not None:
            raise GateError(f"{self.approval_id} for {self.phase.name} is already resolved.")
        self._decision = decision
        self._gate._on_resolved(self)
        self._event.set()

    def approve(self, reason: str = "") -> None:
        self.resolve(ApprovalDecision.approve(reason))

    def reject(self, reason: str) -> None:
        self.resolve(ApprovalDecision.reject(reason))

    async def wait(self) -> ApprovalDecision:
        await self._event.wait()
        if self._decision is None:
            raise GateError(f"{self.approval_id} woke without a decision.")
        return self._decision

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.approval_id,
            "phase": self.phase.name,
            "gate": self.phase.gate.value if self.phase.gate else None,
            "artifact_ref": self.artifact_ref,
            "requested_at": self.requested_at,
            "approved": None if self._decision is None else self._decision.approved,
            "reason": None if self._decision is None else self._decision.reason,
        }


class StopPointGate:
    def __init__(self) -> None:
        self._pending: PendingApproval | None = None
        self._batch_approved = False
        self.history: list[dict[str, Any]] = []

    @staticmethod
    def is_gate(phase: Phase) -> bool:
        return phase.is_gate

    @property
    def batch_approved(self) -> bool:
        return self._batch_approved

    @property
    def pending(self) -> PendingApproval | None:
        if self._pending is not None and not self._pending.done:
            return self._pending
        return None

    def ensure_clear(self) -> None:
        pending = self.pending
        if pending is not None:
            raise GateError(
                f"Waiting for approval of {pending.phase.name} ({pending.approval_id})."
            )

    def request_approval(self, phase: Phase, artifact_ref: str) -> PendingApproval:
        if not phase.is_gate:
            raise GateError(f"Phase {phase.name} is not a stop point.")
        if self._batch_approved:
            raise GateError(
                f"Batch approval was already granted; {phase.name} cannot open a new gate."
            )
        self.ensure_clear()
        self._pending = PendingApproval(self, phase, artifact_ref)
        return self._pending

    def _on_resolved(self, pending: PendingApproval) -> None:
        decision = pending.decision
        if decision is not None and decision.approved and pending.phase.is_batch_gate:
            self._batch_approved = True
        self.history.append(pending.to_dict())
