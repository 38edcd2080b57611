"""
Cascade Orchestrator - Batch execution and automatic downstream re-runs.

- Batch: one resolution of a source node fans out into N sibling result
  nodes, each with its own task queue item. The source keeps its status.
- Cascade: when a node completes, every direct consumer (looking through
  relays) whose inputs now resolve is executed. Consumers that depend on a
  node in ERROR, are already running, or completed with the same input
  fingerprint are left alone.
- Upstream pull (opt-in): before a node runs, executable upstream nodes
  that have not completed are run first, in dependency order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from canvas_studio.core.errors import CycleDetected, MissingInput, StructuralError
from canvas_studio.core.execution import ExecutionEngine
from canvas_studio.core.graph import Node, NodeId, NodeStatus, Point2D
from canvas_studio.core.node_types import DataType, NodeKind, ResultSlot
from canvas_studio.core.resolver import ResolvedInputs, input_fingerprint

logger = logging.getLogger(__name__)

# Sibling layout, to the right of the source
BATCH_OFFSET_X = 430.0
BATCH_SPACING_Y = 320.0

# Marks batch siblings so cascades never overwrite a variant
BATCH_SOURCE_FIELD = "batch_source"

# Kind of the sibling node holding each batch variant
SIBLING_KINDS = {
    DataType.TEXT: NodeKind.TEXT,
    DataType.IMAGE: NodeKind.IMAGE,
    DataType.VIDEO: NodeKind.VIDEO,
}


class CascadeOrchestrator:
    """
    Drives multi-node work on top of an ExecutionEngine.

    Registers itself as a completion hook on the engine. Cascade runs are
    spawned as tasks on the running loop; drain() waits for all of them.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        auto_cascade: bool | None = None,
        max_batch_count: int | None = None,
        pull_upstream: bool | None = None,
    ):
        self.engine = engine
        self.graph = engine.graph
        settings = engine.settings
        self.auto_cascade = settings.auto_cascade if auto_cascade is None else auto_cascade
        self.max_batch_count = max_batch_count or settings.max_batch_count
        self.pull_upstream = settings.pull_upstream if pull_upstream is None else pull_upstream

        self._tasks: set[asyncio.Task] = set()
        self._batches: dict[NodeId, set[NodeId]] = {}
        self._pulling: set[NodeId] = set()
        engine.add_completion_hook(self._on_completed)

    # --- Entry points ---

    async def execute(
        self,
        node_id: NodeId,
        count: int = 1,
        pull_upstream: bool | None = None,
    ) -> list[Node]:
        """
        Execute a node once, or as a batch when count > 1.

        With pull_upstream, executable upstream nodes that have not
        completed are run first.

        Returns the nodes holding the results: the node itself, or the
        batch siblings.
        """
        if count < 1:
            raise ValueError(f"Batch count must be >= 1, got {count}")
        if pull_upstream is None:
            pull_upstream = self.pull_upstream

        node = self.graph.require_node(node_id)
        if pull_upstream and not node.is_running:
            cycle = self.graph.find_cycle(node_id)
            if cycle is not None:
                if node.spec.executable:
                    self.engine.fail(node, str(CycleDetected(cycle)))
                return [node] if count == 1 else []
            # The target runs below; cascades from its upstream must not start it too
            self._pulling.add(node_id)
            try:
                await self.run_upstream(node_id)
            finally:
                self._pulling.discard(node_id)

        if count > 1:
            return await self.run_batch(node_id, count)
        return [await self.engine.execute(node_id)]

    async def run_upstream(self, node_id: NodeId) -> list[NodeId]:
        """
        Run every executable upstream node of `node_id` that has not
        completed, dependencies first. The graph must be acyclic above
        `node_id`.

        Returns the ids of the nodes that were run.
        """
        ran: list[NodeId] = []
        for upstream_id in self._pending_upstream(node_id, set()):
            upstream = self.graph.get_node(upstream_id)
            if upstream is None or upstream.is_running:
                continue
            if upstream.status == NodeStatus.COMPLETED:
                # Completed by a cascade meanwhile
                continue
            logger.info("Running upstream node %s first", upstream_id[:8])
            await self.engine.execute(upstream_id)
            ran.append(upstream_id)
        return ran

    def _pending_upstream(self, node_id: NodeId, seen: set[NodeId]) -> list[NodeId]:
        order: list[NodeId] = []
        for upstream_id in self.graph.upstream_of(node_id):
            if upstream_id in seen:
                continue
            seen.add(upstream_id)
            upstream = self.graph.get_node(upstream_id)
            if upstream is None or upstream.status == NodeStatus.COMPLETED:
                continue
            if (
                upstream.status == NodeStatus.IDLE
                and upstream.spec.result_slot == ResultSlot.CONTENT
                and upstream.content
                and not self.graph.incoming_connections(upstream_id)
            ):
                # Standalone source, usable as-is
                continue
            order.extend(self._pending_upstream(upstream_id, seen))
            if upstream.spec.executable:
                order.append(upstream_id)
        return order

    async def run_batch(self, node_id: NodeId, count: int) -> list[Node]:
        """
        Generate `count` variants of a node into new sibling nodes.

        Inputs are resolved once; each sibling gets a copy. A resolution
        failure puts the source in ERROR and creates no siblings.
        """
        source = self.graph.require_node(node_id)
        if not source.spec.executable:
            return []
        if source.is_running:
            logger.debug("Node %s is already running", source.id[:8])
            return []

        count = min(count, self.max_batch_count)

        try:
            sibling_kind = SIBLING_KINDS.get(source.spec.output_type)
            if sibling_kind is None:
                raise StructuralError(
                    f"Batch runs are not supported for {source.kind.value} nodes"
                )
            cycle = self.graph.find_cycle(source.id)
            if cycle is not None:
                raise CycleDetected(cycle)
            inputs = self.engine.resolver.resolve(source.id)
            siblings = self._create_siblings(source, sibling_kind, count)
        except (MissingInput, CycleDetected, StructuralError) as e:
            self.engine.fail(source, str(e))
            return []

        in_flight = self._batches.setdefault(source.id, set())
        in_flight.update(s.id for s in siblings)
        logger.info("Batch of %d for %s node %s", count, source.kind.value, source.id[:8])

        for sibling in siblings:
            self.engine.begin(sibling)

        await asyncio.gather(*(
            self._run_sibling(source, sibling, inputs.copy(), dict(source.fields))
            for sibling in siblings
        ))
        return siblings

    def stop(self, node_id: NodeId) -> bool:
        """Stop a node and every batch sibling it still has in flight."""
        stopped = self.engine.stop(node_id)
        for sibling_id in list(self._batches.get(node_id, ())):
            stopped = self.engine.stop(sibling_id) or stopped
        return stopped

    async def drain(self) -> None:
        """Wait for every spawned cascade run, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # --- Batch helpers ---

    def _create_siblings(self, source: Node, kind: NodeKind, count: int) -> list[Node]:
        """Add `count` sibling nodes wired from the source; all or none."""
        siblings: list[Node] = []
        try:
            for index in range(count):
                siblings.append(self._create_sibling(source, kind, index, count))
        except StructuralError:
            for sibling in siblings:
                self.graph.remove_node(sibling.id)
            raise
        return siblings

    def _create_sibling(self, source: Node, kind: NodeKind, index: int, count: int) -> Node:
        fields = {BATCH_SOURCE_FIELD: source.id}
        if kind == NodeKind.IMAGE:
            fields["prompt"] = source.fields.get("prompt", "")

        offset = Point2D(BATCH_OFFSET_X, (index - (count - 1) / 2) * BATCH_SPACING_Y)
        sibling = Node.create(
            kind,
            fields=fields,
            position=source.position + offset,
            title=f"Result {index + 1}",
        )
        self.graph.add_node(sibling)
        try:
            self.graph.connect(source.id, sibling.id)
        except StructuralError:
            self.graph.remove_node(sibling.id)
            raise
        return sibling

    async def _run_sibling(
        self,
        source: Node,
        sibling: Node,
        inputs: ResolvedInputs,
        fields: dict[str, Any],
    ) -> None:
        try:
            await self.engine.run(sibling, source.kind, inputs, fields)
        finally:
            in_flight = self._batches.get(source.id)
            if in_flight is not None:
                in_flight.discard(sibling.id)
                if not in_flight:
                    del self._batches[source.id]

    # --- Cascade ---

    def _on_completed(self, node_id: NodeId) -> None:
        if not self.auto_cascade:
            return
        for target_id in self.cascade_targets(node_id):
            if self.should_cascade(target_id):
                logger.info("Cascading into node %s", target_id[:8])
                self._spawn(self._cascade_run(target_id))

    def cascade_targets(self, node_id: NodeId) -> list[NodeId]:
        """Direct consumers of a node, looking through relays."""
        targets: list[NodeId] = []
        seen: set[NodeId] = {node_id}
        pending = list(self.graph.downstream_of(node_id))

        while pending:
            current = pending.pop(0)
            if current in seen:
                continue
            seen.add(current)
            node = self.graph.get_node(current)
            if node is None:
                continue
            if node.kind == NodeKind.RELAY:
                pending.extend(self.graph.downstream_of(current))
            else:
                targets.append(current)

        return targets

    def should_cascade(self, node_id: NodeId) -> bool:
        """Check whether an upstream completion should re-run this node."""
        node = self.graph.get_node(node_id)
        if node is None or not node.spec.executable or node.is_running:
            return False
        if BATCH_SOURCE_FIELD in node.fields:
            return False
        if node_id in self._pulling:
            return False

        for upstream_id in self.graph.get_upstream_nodes(node_id):
            upstream = self.graph.get_node(upstream_id)
            if upstream is not None and upstream.status == NodeStatus.ERROR:
                return False

        if self.graph.find_cycle(node_id) is not None:
            return False
        try:
            inputs = self.engine.resolver.resolve(node_id)
        except (MissingInput, CycleDetected):
            return False

        if node.status == NodeStatus.COMPLETED and node.input_hash == input_fingerprint(node, inputs):
            logger.debug("Node %s is up to date", node_id[:8])
            return False
        return True

    async def _cascade_run(self, node_id: NodeId) -> None:
        try:
            await self.engine.execute(node_id)
        except StructuralError as e:
            logger.warning("Cascade into %s skipped: %s", node_id[:8], e)

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
