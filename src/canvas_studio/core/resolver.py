"""
Input Resolver - Turn a node's incoming connections into concrete inputs.

Rules:
- Primary (unnamed) port: the connected upstream value, or the node's own
  content when nothing is connected. Multi-input ports aggregate every
  upstream value into an ordered, de-duplicated list.
- Named ports: the connected upstream value, or the node's own field value
  (or the port default) when nothing is connected.
- Relays are transparent: their value is their own resolved input, computed
  on demand and never cached.
- A connected upstream that has no usable value yet (running, idle container,
  error) makes the port pending, which surfaces as MissingInput.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from canvas_studio.core.errors import CycleDetected, MissingInput
from canvas_studio.core.graph import (
    RESULT_FIELDS,
    CanvasGraph,
    Connection,
    Node,
    NodeId,
    NodeStatus,
)
from canvas_studio.core.node_types import (
    PRIMARY_PORT,
    InputDefinition,
    NodeKind,
    ResultSlot,
)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


@dataclass
class ResolvedInputs:
    """
    Resolved input set for one node.

    Attributes:
        primary: Value of the unnamed port (a list for multi-input ports)
        ports: Named port values by port name
        connected: Names of ports whose value came from a connection
    """
    primary: Any = None
    ports: dict[str, Any] = field(default_factory=dict)
    connected: set[str] = field(default_factory=set)

    def get(self, name: str, default: Any = None) -> Any:
        """Get an input by port name (PRIMARY_PORT for the unnamed port)."""
        if name == PRIMARY_PORT:
            value = self.primary
        else:
            value = self.ports.get(name)
        return default if _is_empty(value) else value

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def copy(self) -> ResolvedInputs:
        primary = list(self.primary) if isinstance(self.primary, list) else self.primary
        return ResolvedInputs(primary, dict(self.ports), set(self.connected))

    def to_dict(self) -> dict[str, Any]:
        return {PRIMARY_PORT: self.primary, **self.ports}


class InputResolver:
    """
    Resolves node inputs against a CanvasGraph.

    The resolver only reads the graph; it is safe to call at any time from
    the event loop, including for readiness checks during cascades.
    """

    def __init__(self, graph: CanvasGraph):
        self.graph = graph

    def resolve(self, node_id: NodeId) -> ResolvedInputs:
        """
        Resolve all inputs of a node.

        Raises:
            MissingInput: A required port (or a requires-any group) has no
                value, or a connected upstream is not ready.
            CycleDetected: A relay chain loops back on itself.
            StructuralError: The node doesn't exist.
        """
        node = self.graph.require_node(node_id)
        spec = node.spec
        resolved = ResolvedInputs()

        if spec.primary is not None:
            resolved.primary = self._resolve_port(node, spec.primary, None, resolved)

        for port in spec.get_ports(node.fields):
            resolved.ports[port.name] = self._resolve_port(node, port, port.name, resolved)

        if spec.requires_any and not any(resolved.has(name) for name in spec.requires_any):
            raise MissingInput("/".join(spec.requires_any), node.id)

        return resolved

    def is_ready(self, node_id: NodeId) -> bool:
        """Check whether every required input of a node currently resolves."""
        try:
            self.resolve(node_id)
        except (MissingInput, CycleDetected):
            return False
        return True

    def effective_output(self, node_id: NodeId) -> Any:
        """
        Value a node currently exposes to its consumers, or None if pending.

        For relays this is the relay's resolved input.
        """
        node = self.graph.require_node(node_id)
        return self._upstream_value(node, [])

    def _resolve_port(
        self,
        node: Node,
        port: InputDefinition,
        to_port: str | None,
        resolved: ResolvedInputs,
    ) -> Any:
        connections = self.graph.incoming_connections(node.id, to_port)

        if not connections:
            value = self._local_value(node, port)
        elif port.multiple:
            value = self._aggregate(connections, port)
            resolved.connected.add(port.name)
        else:
            # Single-input ports hold at most one connection; the newest wins
            # if a snapshot was edited by hand.
            source = self.graph.require_node(connections[-1].from_node)
            value = self._upstream_value(source, [node.id])
            if value is None:
                raise MissingInput(port.name, node.id)
            resolved.connected.add(port.name)

        if port.required and _is_empty(value):
            raise MissingInput(port.name, node.id)
        return value

    def _local_value(self, node: Node, port: InputDefinition) -> Any:
        if port.name == PRIMARY_PORT:
            local = node.content
        elif port.name in node.fields:
            local = node.fields[port.name]
        else:
            local = port.default_value

        if port.multiple:
            if _is_empty(local):
                return []
            return list(local) if isinstance(local, list) else [local]
        return local

    def _aggregate(self, connections: list[Connection], port: InputDefinition) -> list[Any]:
        sources = [self.graph.require_node(conn.from_node) for conn in connections]
        sources.sort(key=lambda n: (n.position.y, n.position.x))

        values: list[Any] = []
        for source in sources:
            value = self._upstream_value(source, [connections[0].to_node])
            if value is None:
                raise MissingInput(port.name, connections[0].to_node)
            for item in value if isinstance(value, list) else [value]:
                if item not in values:
                    values.append(item)
        return values

    def _upstream_value(self, source: Node, path: list[NodeId]) -> Any:
        if source.id in path:
            raise CycleDetected(path[path.index(source.id):] + [source.id])

        if source.kind == NodeKind.RELAY:
            feeds = self.graph.incoming_connections(source.id, None)
            if not feeds:
                return None
            upstream = self.graph.require_node(feeds[-1].from_node)
            return self._upstream_value(upstream, path + [source.id])

        if source.status == NodeStatus.COMPLETED:
            value = source.result_value()
            return None if _is_empty(value) else value

        # Standalone content nodes (uploaded image, typed text) are usable as-is
        if (
            source.status == NodeStatus.IDLE
            and source.spec.result_slot == ResultSlot.CONTENT
            and not self.graph.incoming_connections(source.id)
            and source.content
        ):
            return source.content

        return None


def input_fingerprint(node: Node, inputs: ResolvedInputs) -> str:
    """
    Stable hash of everything a run of this node depends on.

    Covers the kind, the resolved inputs and the user-editable fields;
    result fields written by the engine are excluded.
    """
    config = {k: v for k, v in node.fields.items() if k not in RESULT_FIELDS}
    payload = {
        "kind": node.kind.value,
        "inputs": inputs.to_dict(),
        "fields": config,
    }
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
