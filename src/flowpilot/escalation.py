"""Escalation events and the watchers that raise them.

Every watcher funnels into :class:`EscalationEvent`. Blocking events are
raised as :class:`EscalationRequired` and always surface to a human; soft
events (breadth thresholds) require an impact report before work continues
but do not stop the flow.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from flowpilot.errors import FlowpilotError

T = TypeVar("T")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class EscalationKind(str, Enum):
    EXPLICIT = "explicit"
    REVISION_LIMIT = "revision_limit"
    QUALITY_NOT_CONVERGED = "quality_not_converged"
    EXECUTION_INCOMPLETE = "execution_incomplete"
    REPEATED_ERROR = "repeated_error"
    FILE_COUNT_THRESHOLD = "file_count_threshold"
    EDIT_COUNT_THRESHOLD = "edit_count_threshold"
    SAME_FILE_EDIT_THRESHOLD = "same_file_edit_threshold"
    USER_STOP = "user_stop"
    REQUIREMENT_CHANGE = "requirement_change"
    BLOCKED = "blocked"
    COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"
    EXPERT_ANALYSIS_TIMEOUT = "expert_analysis_timeout"
    OWNERSHIP_VIOLATION = "ownership_violation"


SOFT_KINDS = frozenset(
    {
        EscalationKind.FILE_COUNT_THRESHOLD,
        EscalationKind.EDIT_COUNT_THRESHOLD,
        EscalationKind.SAME_FILE_EDIT_THRESHOLD,
        EscalationKind.REPEATED_ERROR,
    }
)


@dataclass(frozen=True, slots=True)
class EscalationEvent:
    kind: EscalationKind
    summary: str
    reason: str
    next_step: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow_iso)

    @property
    def blocking(self) -> bool:
        return self.kind not in SOFT_KINDS

    def render(self) -> str:
        return (
            f"[{self.kind.value}] {self.summary}\n"
            f"Why: {self.reason}\n"
            f"Next step: {self.next_step}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "summary": self.summary,
            "reason": self.reason,
            "next_step": self.next_step,
            "payload": dict(self.payload),
            "blocking": self.blocking,
            "created_at": self.created_at,
        }


class EscalationRequired(FlowpilotError):
    """Raised when the flow must stop and hand control to a human."""

    def __init__(self, event: EscalationEvent) -> None:
        super().__init__(event.render())
        self.event = event


class BlockedError(EscalationRequired):
    """Raised when an environment precondition for execution is missing."""


_NEW_FEATURE_PATTERN = re.compile(
    r"\b(also (?:add|support|include|need)|new feature|additionally|another feature|"
    r"add (?:a |an )?(?:new )?(?:feature|endpoint|screen|page|option|command)|"
    r"can you also|and also)\b",
    re.IGNORECASE,
)
_NEW_CONSTRAINT_PATTERN = re.compile(
    r"\b(must (?:not |also )?|must be|should not|cannot|can't|constraint|"
    r"limit(?:ed)? to|within \d+|deadline|no more than|at most|at least|"
    r"has to be|needs to be)\b",
    re.IGNORECASE,
)
_TECH_CHANGE_PATTERN = re.compile(
    r"\b(instead of|switch(?:ing)? to|migrate to|change (?:the )?\w+ to|"
    r"rather than|replace \w+ with|use \w+ instead)\b",
    re.IGNORECASE,
)


class RequirementChangeDetector:
    """Pattern match on new user input for requirement changes."""

    PATTERNS = {
        "new_feature": _NEW_FEATURE_PATTERN,
        "new_constraint": _NEW_CONSTRAINT_PATTERN,
        "technical_change": _TECH_CHANGE_PATTERN,
    }

    def detect(self, text: str) -> list[str]:
        return [name for name, pattern in self.PATTERNS.items() if pattern.search(text)]


class RepeatedErrorWatcher:
    """Counts identical errors and demands root-cause analysis at the threshold."""

    _VOLATILE = re.compile(r"(0x[0-9a-f]+|\d+)", re.IGNORECASE)

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = max(1, threshold)
        self._counts: Counter[str] = Counter()
        self._analyses: dict[str, str] = {}

    @classmethod
    def signature(cls, error: str) -> str:
        normalized = cls._VOLATILE.sub("#", " ".join(error.split()).lower())
        return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:12]

    def record(self, error: str) -> int:
        sig = self.signature(error)
        self._counts[sig] += 1
        return self._counts[sig]

    def count(self, error: str) -> int:
        return self._counts[self.signature(error)]

    def requires_analysis(self, error: str) -> bool:
        sig = self.signature(error)
        return self._counts[sig] >= self.threshold and sig not in self._analyses

    def acknowledge_analysis(self, error: str, artifact: str) -> None:
        if not artifact.strip():
            raise FlowpilotError("Root-cause analysis artifact must not be empty.")
        sig = self.signature(error)
        self._analyses[sig] = artifact
        self._counts[sig] = 0

    def analysis_for(self, error: str) -> str | None:
        return self._analyses.get(self.signature(error))


class BreadthWatcher:
    """File-edit counters that require an impact report when they trip."""

    def __init__(
        self,
        *,
        files_per_task: int = 5,
        edit_invocations: int = 5,
        same_file_edits: int = 3,
    ) -> None:
        self.files_per_task = files_per_task
        self.edit_invocations = edit_invocations
        self.same_file_edits = same_file_edits
        self._edit_total = 0
        self._per_file: Counter[str] = Counter()
        self._reported: set[tuple[str, str]] = set()
        self._task_id: str | None = None

    def reset(self) -> None:
        self._task_id = None
        self._edit_total = 0
        self._per_file.clear()
        self._reported.clear()

    def observe_task(
        self,
        task_id: str,
        files_modified: list[str],
        edit_counts: dict[str, int] | None = None,
    ) -> list[EscalationEvent]:
        if task_id != self._task_id:
            # Edit counters are scoped to one task.
            self.reset()
            self._task_id = task_id
        events: list[EscalationEvent] = []
        distinct = sorted(set(files_modified))
        if len(distinct) >= self.files_per_task:
            events.append(
                EscalationEvent(
                    kind=EscalationKind.FILE_COUNT_THRESHOLD,
                    summary=f"Task {task_id} changed {len(distinct)} files.",
                    reason=f"Changing {self.files_per_task} or more files in one task "
                    "widens the blast radius beyond the plan.",
                    next_step="Produce an impact report before continuing.",
                    payload={"task_id": task_id, "files": distinct},
                )
            )

        counts = edit_counts or {path: 1 for path in distinct}
        for path, count in counts.items():
            self._edit_total += int(count)
            self._per_file[path] += int(count)

        if self._edit_total >= self.edit_invocations and self._mark("edits", "*"):
            events.append(
                EscalationEvent(
                    kind=EscalationKind.EDIT_COUNT_THRESHOLD,
                    summary=f"{self._edit_total} cumulative edits recorded.",
                    reason=f"{self.edit_invocations} or more edit invocations without an "
                    "impact review.",
                    next_step="Produce an impact report before continuing.",
                    payload={"task_id": task_id, "edit_total": self._edit_total},
                )
            )
        for path, count in sorted(self._per_file.items()):
            if count >= self.same_file_edits and self._mark("same_file", path):
                events.append(
                    EscalationEvent(
                        kind=EscalationKind.SAME_FILE_EDIT_THRESHOLD,
                        summary=f"{path} was edited {count} times.",
                        reason="Repeated edits to one file usually mean the approach is "
                        "not converging.",
                        next_step="Produce an impact report before continuing.",
                        payload={"task_id": task_id, "path": path, "count": count},
                    )
                )
        return events

    def _mark(self, watcher: str, key: str) -> bool:
        marker = (watcher, key)
        if marker in self._reported:
            return False
        self._reported.add(marker)
        return True


EventHook = Callable[[EscalationEvent], None]


class EscalationMonitor:
    """Observes a running flow; never mutates phase or task state."""

    def __init__(
        self,
        *,
        repeated_error_threshold: int = 3,
        files_per_task: int = 5,
        edit_invocations: int = 5,
        same_file_edits: int = 3,
        notify: EventHook | None = None,
        stop_probe: Callable[[], bool] | None = None,
        stop_poll_seconds: float = 0.5,
    ) -> None:
        self.requirement_changes = RequirementChangeDetector()
        self.errors = RepeatedErrorWatcher(threshold=repeated_error_threshold)
        self.breadth = BreadthWatcher(
            files_per_task=files_per_task,
            edit_invocations=edit_invocations,
            same_file_edits=same_file_edits,
        )
        self.notify = notify
        self.stop_probe = stop_probe
        self.stop_poll_seconds = stop_poll_seconds
        self.events: list[EscalationEvent] = []
        self._stop_requested = False
        self._stop_signals: set[asyncio.Event] = set()

    @property
    def stop_requested(self) -> bool:
        if self._stop_requested:
            return True
        # A stop may come from another process through the probe.
        return self.stop_probe is not None and self.stop_probe()

    def request_stop(self) -> None:
        self._stop_requested = True
        for signal in self._stop_signals:
            signal.set()

    def clear_stop(self) -> None:
        self._stop_requested = False

    def record(self, event: EscalationEvent) -> EscalationEvent:
        self.events.append(event)
        if self.notify is not None:
            self.notify(event)
        return event

    def escalate(
        self,
        kind: EscalationKind,
        summary: str,
        *,
        reason: str,
        next_step: str,
        payload: dict[str, Any] | None = None,
        error_type: type[EscalationRequired] = EscalationRequired,
    ) -> EscalationRequired:
        event = self.record(
            EscalationEvent(
                kind=kind,
                summary=summary,
                reason=reason,
                next_step=next_step,
                payload=payload or {},
            )
        )
        return error_type(event)

    def escalate_error(
        self, exc: FlowpilotError, *, payload: dict[str, Any] | None = None
    ) -> EscalationRequired:
        """Record an unexpected flow error as a blocking escalation."""
        return self.escalate(
            EscalationKind.BLOCKED,
            f"{type(exc).__name__}: {exc}",
            reason="The flow hit an error it cannot recover from on its own.",
            next_step="Fix the reported problem, then resume the flow.",
            payload={"error_type": type(exc).__name__, **(payload or {})},
        )

    def _user_stop(self, task_id: str | None) -> EscalationRequired:
        return self.escalate(
            EscalationKind.USER_STOP,
            "Execution halted by user request.",
            reason="A stop signal was received.",
            next_step="Review the recorded task state and resume when ready.",
            payload={"task_id": task_id} if task_id else {},
        )

    def check_stop(self, *, task_id: str | None = None) -> None:
        if self.stop_requested:
            raise self._user_stop(task_id)

    async def _wait_for_stop(self, signal: asyncio.Event) -> None:
        while not self.stop_requested:
            try:
                await asyncio.wait_for(signal.wait(), timeout=self.stop_poll_seconds)
            except TimeoutError:
                continue

    async def run_until_stopped(
        self, awaitable: Awaitable[T], *, task_id: str | None = None
    ) -> T:
        """Await ``awaitable`` unless a stop arrives first.

        A stop cancels the pending work and raises the USER_STOP escalation;
        the probe is polled every ``stop_poll_seconds`` meanwhile.
        """
        self.check_stop(task_id=task_id)
        signal = asyncio.Event()
        self._stop_signals.add(signal)
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._wait_for_stop(signal))
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._stop_signals.discard(signal)
            for future in (work, watcher):
                if not future.done():
                    future.cancel()
            await asyncio.gather(work, watcher, return_exceptions=True)
        if work.done() and not work.cancelled():
            return work.result()
        raise self._user_stop(task_id)

    def detect_requirement_change(self, text: str) -> EscalationEvent | None:
        matches = self.requirement_changes.detect(text)
        if not matches:
            return None
        return self.record(
            EscalationEvent(
                kind=EscalationKind.REQUIREMENT_CHANGE,
                summary="New input changes the requirements of the running flow.",
                reason="Detected: " + ", ".join(matches) + ".",
                next_step="Re-plan from the first phase with the merged request.",
                payload={"matches": matches, "input": text},
            )
        )

    def observe_task(
        self,
        task_id: str,
        files_modified: list[str],
        edit_counts: dict[str, int] | None = None,
    ) -> list[EscalationEvent]:
        return [
            self.record(event)
            for event in self.breadth.observe_task(task_id, files_modified, edit_counts)
        ]
