from __future__ import annotations


class FlowpilotError(RuntimeError):
    """Base class for orchestration failures."""


class SequencerError(FlowpilotError):
    """Raised when the phase sequencer is driven out of order."""


class GateError(FlowpilotError):
    """Raised when a stop-point gate is misused."""


class InvalidTransition(FlowpilotError):
    """Raised when a task is moved along an edge its state machine does not have."""


class OwnershipError(FlowpilotError):
    """Raised when a collaborator writes outside the artifacts it owns."""


class FlowStateError(FlowpilotError):
    """Raised when shared-state operations fail."""
