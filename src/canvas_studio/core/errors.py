"""
Workflow Errors - Error taxonomy for graph execution.

Resolution-time errors (MissingInput, CycleDetected, StructuralError) are
raised before anything is submitted to the task queue. AdapterFailure and
Cancelled come back from the queue. The execution engine turns all of them
into node state instead of letting them escape to the UI.
"""

from __future__ import annotations


class WorkflowError(Exception):
    """Base exception for workflow graph errors."""
    pass


class StructuralError(WorkflowError):
    """Invalid graph structure (dangling node id, bad connection, busy node)."""
    pass


class MissingInput(WorkflowError):
    """A required input port has neither a usable connection nor a local value."""

    def __init__(self, port: str, node_id: str | None = None):
        self.port = port
        self.node_id = node_id
        super().__init__(f"Missing input: {port}")


class CycleDetected(WorkflowError):
    """The dependency chain of a node revisits itself."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__("Cycle detected: " + " -> ".join(p[:8] for p in path))


class AdapterFailure(WorkflowError):
    """An external adapter call failed."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class Cancelled(WorkflowError):
    """Work was cancelled before it settled."""
    pass
