"""
Core module - Graph store, input resolution and node execution.

This module provides the fundamental building blocks for Canvas Studio:
- Graph: Nodes, connections and the canvas graph store
- Node Types: Per-kind capability table
- Resolver: Input resolution and fingerprints
- Task Queue: Bounded-concurrency scheduler
- Execution: Per-node state machine
- Cascade: Batch execution and downstream re-runs
- Workspace: Canvas persistence
- Templates: Creative-library templates
"""

from canvas_studio.core.errors import (
    AdapterFailure,
    Cancelled,
    CycleDetected,
    MissingInput,
    StructuralError,
    WorkflowError,
)

from canvas_studio.core.node_types import (
    KIND_SPECS,
    PRIMARY_PORT,
    DataType,
    InputDefinition,
    NodeCategory,
    NodeKind,
    NodeKindSpec,
    ResultSlot,
    get_kind_spec,
)

from canvas_studio.core.graph import (
    CanvasGraph,
    Connection,
    ConnectionId,
    Node,
    NodeId,
    NodeStatus,
    Point2D,
    new_connection_id,
    new_node_id,
)

from canvas_studio.core.resolver import (
    InputResolver,
    ResolvedInputs,
    input_fingerprint,
)

from canvas_studio.core.task_queue import (
    AbortSignal,
    TaskHandle,
    TaskQueue,
    TaskStatus,
)

from canvas_studio.core.execution import (
    ExecutionContext,
    ExecutionEngine,
    NodeEvent,
    NodeProgress,
)

from canvas_studio.core.cascade import CascadeOrchestrator

from canvas_studio.core.workspace import CanvasStore

from canvas_studio.core.templates import (
    CreativeTemplate,
    TemplateField,
    instantiate_template,
    load_library,
    render_prompt,
)


__all__ = [
    # errors.py
    "WorkflowError",
    "StructuralError",
    "MissingInput",
    "CycleDetected",
    "AdapterFailure",
    "Cancelled",
    # node_types.py
    "DataType",
    "NodeKind",
    "NodeCategory",
    "ResultSlot",
    "InputDefinition",
    "NodeKindSpec",
    "KIND_SPECS",
    "PRIMARY_PORT",
    "get_kind_spec",
    # graph.py
    "CanvasGraph",
    "Connection",
    "ConnectionId",
    "Node",
    "NodeId",
    "NodeStatus",
    "Point2D",
    "new_connection_id",
    "new_node_id",
    # resolver.py
    "InputResolver",
    "ResolvedInputs",
    "input_fingerprint",
    # task_queue.py
    "AbortSignal",
    "TaskHandle",
    "TaskQueue",
    "TaskStatus",
    # execution.py
    "ExecutionContext",
    "ExecutionEngine",
    "NodeEvent",
    "NodeProgress",
    # cascade.py
    "CascadeOrchestrator",
    # workspace.py
    "CanvasStore",
    # templates.py
    "CreativeTemplate",
    "TemplateField",
    "instantiate_template",
    "load_library",
    "render_prompt",
]
