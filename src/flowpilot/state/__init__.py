from flowpilot.state.commits import GitCommitter
from flowpilot.state.store import FlowStateStore

__all__ = ["FlowStateStore", "GitCommitter"]
