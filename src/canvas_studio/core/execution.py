"""
Execution Engine - Per-node execution state machine.

This module runs individual nodes of a CanvasGraph:
- Resolves inputs (MissingInput / CycleDetected end in ERROR without a
  queue submission)
- Submits one TaskQueue item per run wrapping the kind's adapter
- Writes results, errors and status back onto the node
- Notifies listeners of every observable change

Status transitions: IDLE/COMPLETED/ERROR -> RUNNING -> COMPLETED | ERROR,
and RUNNING -> IDLE on cancellation. A RUNNING node is never started twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from canvas_studio.core.errors import (
    AdapterFailure,
    Cancelled,
    CycleDetected,
    MissingInput,
    StructuralError,
)
from canvas_studio.core.graph import (
    CanvasGraph,
    Connection,
    ConnectionId,
    Node,
    NodeId,
    NodeStatus,
    Point2D,
)
from canvas_studio.core.node_types import NodeKind, ResultSlot
from canvas_studio.core.resolver import InputResolver, ResolvedInputs, input_fingerprint
from canvas_studio.core.task_queue import AbortSignal, TaskHandle, TaskQueue

if TYPE_CHECKING:
    from canvas_studio.adapters.base import AdapterResult
    from canvas_studio.adapters.registry import AdapterRegistry
    from canvas_studio.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class NodeEvent:
    """An observable change to a node, delivered to engine listeners."""
    node_id: NodeId
    status: NodeStatus
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeProgress:
    """Progress reported by an adapter while a node runs."""
    node_id: NodeId
    message: str = ""
    fraction: float | None = None


class ExecutionContext:
    """
    Context passed to adapters during a run.

    Provides access to:
    - The abort signal of the queue item
    - Cancellation checking
    - Progress reporting
    - Application settings
    """

    def __init__(
        self,
        node_id: NodeId,
        signal: AbortSignal | None = None,
        settings: Settings | None = None,
        on_progress: Callable[[NodeProgress], None] | None = None,
    ):
        self.node_id = node_id
        self.signal = signal or AbortSignal()
        self.settings = settings
        self._on_progress = on_progress

    @property
    def is_cancelled(self) -> bool:
        return self.signal.aborted

    def check_cancelled(self) -> None:
        """Raise Cancelled if the run was aborted."""
        self.signal.raise_if_aborted()

    def report_progress(self, message: str, fraction: float | None = None) -> None:
        """Report progress to listeners."""
        if self._on_progress:
            self._on_progress(NodeProgress(self.node_id, message, fraction))


Listener = Callable[[NodeEvent], None]
CompletionHook = Callable[[NodeId], None]


class ExecutionEngine:
    """
    Executes single nodes of a graph through a shared TaskQueue.

    The engine is the only writer of a node while it is RUNNING; UI edits
    through update_node and connection changes are refused for such nodes.
    """

    def __init__(
        self,
        graph: CanvasGraph,
        adapters: AdapterRegistry,
        queue: TaskQueue | None = None,
        settings: Settings | None = None,
    ):
        from canvas_studio.config import Settings

        self.graph = graph
        self.adapters = adapters
        self.settings = settings or Settings()
        self.queue = queue or TaskQueue(self.settings.concurrency_limit)
        self.resolver = InputResolver(graph)

        self._handles: dict[NodeId, TaskHandle] = {}
        self._listeners: list[Listener] = []
        self._completion_hooks: list[CompletionHook] = []
        self._on_progress: Callable[[NodeProgress], None] | None = None

    # --- Observers ---

    def add_listener(self, listener: Listener) -> None:
        """Register a callback for node status/content/field changes."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Register a callback invoked after a node reaches COMPLETED."""
        self._completion_hooks.append(hook)

    def set_progress_callback(self, callback: Callable[[NodeProgress], None]) -> None:
        self._on_progress = callback

    def _notify(self, node: Node, **changes: Any) -> None:
        event = NodeEvent(node.id, node.status, changes)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Node listener failed for %s", node.id[:8])

    # --- Editing ---

    def update_node(
        self,
        node_id: NodeId,
        content: str | None = None,
        fields: dict[str, Any] | None = None,
        title: str | None = None,
        position: Point2D | None = None,
    ) -> Node:
        """
        Apply a user edit to a node.

        Raises:
            StructuralError: Unknown node, or the node is running
        """
        node = self._require_idle(node_id)
        changes: dict[str, Any] = {}
        if content is not None:
            node.content = content
            changes["content"] = content
        if fields:
            node.fields.update(fields)
            changes["fields"] = dict(fields)
        if title is not None:
            node.title = title
            changes["title"] = title
        if position is not None:
            node.position = position
            changes["position"] = position
        if changes:
            self._notify(node, **changes)
        return node

    def add_connection(
        self,
        from_node: NodeId,
        to_node: NodeId,
        to_port: str | None = None,
    ) -> Connection:
        """Connect two nodes; refused while the target is running."""
        self._require_idle(to_node)
        return self.graph.connect(from_node, to_node, to_port)

    def remove_connection(self, connection_id: ConnectionId) -> Connection | None:
        """Remove a connection; refused while its target is running."""
        conn = self.graph.get_connection(connection_id)
        if conn is None:
            return None
        self._require_idle(conn.to_node)
        return self.graph.remove_connection(connection_id)

    def remove_node(self, node_id: NodeId) -> Node | None:
        """Remove a node, cancelling its queue item if it is in flight."""
        self.stop(node_id)
        return self.graph.remove_node(node_id)

    def _require_idle(self, node_id: NodeId) -> Node:
        node = self.graph.require_node(node_id)
        if node.is_running:
            raise StructuralError(f"Node {node_id[:8]} is running")
        return node

    # --- Execution ---

    def is_busy(self, node_id: NodeId) -> bool:
        return node_id in self._handles

    def get_handle(self, node_id: NodeId) -> TaskHandle | None:
        return self._handles.get(node_id)

    async def execute(self, node_id: NodeId) -> Node:
        """
        Run one node to a terminal state.

        Never raises for run-time problems; they end up in node.status and
        node.fields["error"]. Returns the node.

        Raises:
            StructuralError: The node doesn't exist
        """
        node = self.graph.require_node(node_id)

        if not node.spec.executable:
            logger.debug("Skipping non-executable %s node %s", node.kind.value, node.id[:8])
            return node
        if node.is_running:
            logger.debug("Node %s is already running", node.id[:8])
            return node

        self.begin(node)
        try:
            cycle = self.graph.find_cycle(node.id)
            if cycle is not None:
                raise CycleDetected(cycle)
            inputs = self.resolver.resolve(node.id)
        except (MissingInput, CycleDetected, StructuralError) as e:
            self.fail(node, str(e))
            return node

        await self.run(node, node.kind, inputs, dict(node.fields))
        return node

    def begin(self, node: Node) -> None:
        """
        Enter RUNNING, clearing the previous result and error.

        Container content is cleared only when it is fed by a connection,
        so uploaded or typed content survives a re-run.
        """
        node.fields.pop("output", None)
        node.fields.pop("error", None)
        changes: dict[str, Any] = {"fields": {"output": None, "error": None}}
        if node.spec.primary is not None and self.graph.incoming_connections(node.id, None):
            node.content = ""
            changes["content"] = ""
        node.status = NodeStatus.RUNNING
        logger.debug("Node %s -> running", node.id[:8])
        self._notify(node, **changes)

    def reset(self, node: Node) -> None:
        """Return a cancelled RUNNING node to IDLE."""
        if node.id not in self.graph or not node.is_running:
            return
        node.status = NodeStatus.IDLE
        logger.info("Node %s cancelled", node.id[:8])
        self._notify(node)

    def fail(self, node: Node, message: str) -> None:
        """Enter ERROR with a message."""
        node.status = NodeStatus.ERROR
        node.fields["error"] = message
        logger.debug("Node %s -> error: %s", node.id[:8], message)
        self._notify(node, fields={"error": message})

    async def run(
        self,
        node: Node,
        kind: NodeKind,
        inputs: ResolvedInputs,
        fields: dict[str, Any],
    ) -> None:
        """
        Submit a RUNNING node's adapter call and apply the outcome.

        `kind` selects the adapter; batch siblings run their source's kind
        with a copy of the source's inputs and fields.
        """
        from canvas_studio.adapters.base import AdapterRequest

        adapter = self.adapters.get(kind)
        if adapter is None:
            self.fail(node, f"No adapter registered for {kind.value} nodes")
            return

        fingerprint = input_fingerprint(node, inputs)
        request = AdapterRequest(node_id=node.id, kind=kind, inputs=inputs, fields=fields)
        timeout = self.settings.task_timeout

        async def call(signal: AbortSignal) -> AdapterResult:
            context = ExecutionContext(node.id, signal, self.settings, self._on_progress)
            if timeout:
                return await asyncio.wait_for(adapter.execute(request, context), timeout)
            return await adapter.execute(request, context)

        handle = self.queue.submit(
            call, label=f"{kind.value}:{node.id[:8]}", owner=node.id
        )
        self._handles[node.id] = handle
        logger.info("Submitted %s node %s", kind.value, node.id[:8])

        try:
            result = await handle.wait()
        except asyncio.CancelledError:
            # The caller dropped the run; the queue item goes with it.
            self.queue.cancel(handle.id)
            self.reset(node)
            raise
        except Cancelled:
            self.reset(node)
            return
        except asyncio.TimeoutError:
            self._settle_failure(node, f"Timed out after {timeout:g}s")
            return
        except Exception as e:
            self._settle_failure(node, str(e) or e.__class__.__name__)
            return
        finally:
            if self._handles.get(node.id) is handle:
                del self._handles[node.id]

        if node.id not in self.graph:
            logger.debug("Discarding result for removed node %s", node.id[:8])
            return

        self._apply_result(node, result)
        node.input_hash = fingerprint
        node.status = NodeStatus.COMPLETED
        logger.debug("Node %s -> completed", node.id[:8])
        self._notify(
            node,
            content=node.content,
            fields={k: node.fields.get(k) for k in ("output", *result.fields)},
        )

        for hook in list(self._completion_hooks):
            hook(node.id)

    def _settle_failure(self, node: Node, message: str) -> None:
        if node.id not in self.graph:
            return
        failure = AdapterFailure(message)
        logger.warning("Node %s failed: %s", node.id[:8], failure.message)
        self.fail(node, failure.message)

    def _apply_result(self, node: Node, result: AdapterResult) -> None:
        if result.content is not None:
            node.content = result.content
        if result.output is not None:
            node.fields["output"] = result.output
        node.fields.update(result.fields)

        # A batch sibling may hold its value in a different slot than the
        # adapter that produced it.
        value = result.value
        if value is not None and node.result_value() in (None, "", []):
            if node.spec.result_slot == ResultSlot.OUTPUT:
                node.fields["output"] = value
            else:
                node.content = value

    def stop(self, node_id: NodeId) -> bool:
        """Cancel the in-flight or queued run of a node."""
        handle = self._handles.get(node_id)
        if handle is None:
            return False
        return self.queue.cancel(handle.id)

    async def join(self) -> None:
        """Wait until the task queue is empty."""
        await self.queue.join()
