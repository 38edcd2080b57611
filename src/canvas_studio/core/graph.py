"""
Node Graph Model - Core data structures for the canvas workflow.

This module defines the fundamental building blocks:
- Node: A single processing unit with content, fields and a status
- Connection: A directed edge, optionally scoped to a named target port
- CanvasGraph: The graph store holding nodes and connections

The graph may contain cycles; they are detected lazily at execution time
(see CanvasGraph.find_cycle) rather than forbidden when drawing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NewType
from uuid import uuid4

from canvas_studio.core.errors import StructuralError
from canvas_studio.core.node_types import (
    NodeKind,
    NodeKindSpec,
    ResultSlot,
    get_kind_spec,
)

logger = logging.getLogger(__name__)


# Type aliases for clarity
NodeId = NewType("NodeId", str)
ConnectionId = NewType("ConnectionId", str)

# Matches connections on every port in incoming_connections()
ANY_PORT = "*"

# Field keys written by the engine rather than the user
RESULT_FIELDS = frozenset({"output", "error", "received_images", "outputs", "rendered_prompt"})


def new_node_id() -> NodeId:
    """Generate a new unique node ID."""
    return NodeId(uuid4().hex)


def new_connection_id() -> ConnectionId:
    """Generate a new unique connection ID."""
    return ConnectionId(uuid4().hex)


class NodeStatus(str, Enum):
    """Lifecycle state of a node."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class Point2D:
    """2D point for node positioning on the canvas."""
    x: float = 0.0
    y: float = 0.0

    def __add__(self, other: Point2D) -> Point2D:
        return Point2D(self.x + other.x, self.y + other.y)


@dataclass
class Connection:
    """
    A connection (wire) between two nodes.

    to_port names the target field on multi-parameter nodes; None targets
    the node's primary input.
    """
    id: ConnectionId
    from_node: NodeId
    to_node: NodeId
    to_port: str | None = None

    @classmethod
    def create(
        cls,
        from_node: NodeId,
        to_node: NodeId,
        to_port: str | None = None,
    ) -> Connection:
        """Factory method to create a new connection."""
        return cls(
            id=new_connection_id(),
            from_node=from_node,
            to_node=to_node,
            to_port=to_port,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fromNode": self.from_node,
            "toNode": self.to_node,
            "toPortKey": self.to_port,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Connection:
        return cls(
            id=ConnectionId(data.get("id") or new_connection_id()),
            from_node=NodeId(data["fromNode"]),
            to_node=NodeId(data["toNode"]),
            to_port=data.get("toPortKey"),
        )


@dataclass
class Node:
    """
    A single node in the canvas graph.

    Nodes have:
    - A unique ID and a kind (references KIND_SPECS)
    - Primary content (text, or an image/video reference)
    - Kind-specific fields (prompts, parameters, cached output, last error)
    - A lifecycle status

    While status is RUNNING only the execution engine writes to the node.
    """
    id: NodeId
    kind: NodeKind
    content: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.IDLE
    title: str = ""
    position: Point2D = field(default_factory=Point2D)

    # Fingerprint of the inputs of the last successful run (not serialized)
    input_hash: str | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        kind: NodeKind | str,
        content: str = "",
        fields: dict[str, Any] | None = None,
        position: Point2D | None = None,
        title: str = "",
    ) -> Node:
        """Factory method to create a new node with the kind's default fields."""
        kind = NodeKind(kind)
        merged = get_kind_spec(kind).get_default_fields()
        merged.update(fields or {})
        return cls(
            id=new_node_id(),
            kind=kind,
            content=content,
            fields=merged,
            position=position or Point2D(),
            title=title,
        )

    @property
    def spec(self) -> NodeKindSpec:
        return get_kind_spec(self.kind)

    @property
    def error(self) -> str | None:
        return self.fields.get("error")

    @property
    def is_running(self) -> bool:
        return self.status == NodeStatus.RUNNING

    def result_value(self) -> Any:
        """Value this node exposes downstream once completed."""
        if self.spec.result_slot == ResultSlot.OUTPUT:
            return self.fields.get("output")
        return self.content

    def to_dict(self) -> dict[str, Any]:
        """Snapshot of the node; a running node is saved as idle."""
        status = NodeStatus.IDLE if self.is_running else self.status
        return {
            "id": self.id,
            "type": self.kind.value,
            "title": self.title,
            "content": self.content,
            "data": self.fields,
            "status": status.value,
            "x": self.position.x,
            "y": self.position.y,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        kind = NodeKind(data["type"])
        fields = get_kind_spec(kind).get_default_fields()
        fields.update(data.get("data") or {})
        status = NodeStatus(data.get("status") or NodeStatus.IDLE.value)
        if status == NodeStatus.RUNNING:
            status = NodeStatus.IDLE
        return cls(
            id=NodeId(data["id"]),
            kind=kind,
            content=data.get("content") or "",
            fields=fields,
            status=status,
            title=data.get("title") or "",
            position=Point2D(data.get("x", 0.0), data.get("y", 0.0)),
        )


class CanvasGraph:
    """
    The graph store for one canvas.

    Contains nodes and the connections between them. Provides structural
    queries only; it never executes anything. All mutation happens on the
    event loop thread, so no locking is needed.
    """

    def __init__(self, name: str = "Untitled", id: str | None = None):
        self.id: str = id or uuid4().hex
        self.name: str = name
        self._nodes: dict[NodeId, Node] = {}
        self._connections: list[Connection] = []

    # --- Node operations ---

    @property
    def nodes(self) -> dict[NodeId, Node]:
        """Get all nodes (read-only view)."""
        return self._nodes.copy()

    def add_node(self, node: Node) -> Node:
        """Add a node to the graph."""
        if node.id in self._nodes:
            raise StructuralError(f"Duplicate node id: {node.id}")
        self._nodes[node.id] = node
        return node

    def remove_node(self, node_id: NodeId) -> Node | None:
        """
        Remove a node and all its connections.

        Returns the removed node, or None if not found.
        """
        node = self._nodes.pop(node_id, None)
        if node:
            self._connections = [
                conn for conn in self._connections
                if conn.from_node != node_id and conn.to_node != node_id
            ]
        return node

    def get_node(self, node_id: NodeId) -> Node | None:
        """Get a node by ID."""
        return self._nodes.get(node_id)

    def require_node(self, node_id: NodeId) -> Node:
        """Get a node by ID, raising StructuralError if it doesn't exist."""
        node = self._nodes.get(node_id)
        if node is None:
            raise StructuralError(f"Unknown node: {node_id}")
        return node

    # --- Connection operations ---

    @property
    def connections(self) -> list[Connection]:
        """Get all connections (read-only copy)."""
        return self._connections.copy()

    def add_connection(self, connection: Connection) -> Connection:
        """
        Add a connection to the graph.

        Raises StructuralError if either node is missing, the target port
        doesn't exist, the data types don't match, or the target port is
        single-input and already connected. Cycles are allowed here.
        """
        source = self._nodes.get(connection.from_node)
        target = self._nodes.get(connection.to_node)
        if source is None:
            raise StructuralError(f"Unknown source node: {connection.from_node}")
        if target is None:
            raise StructuralError(f"Unknown target node: {connection.to_node}")

        port = target.spec.get_port(connection.to_port, target.fields)
        if port is None:
            port_name = connection.to_port or "primary input"
            raise StructuralError(
                f"{target.kind.value} node has no port '{port_name}'"
            )

        if not source.spec.output_type.is_compatible_with(port.data_type):
            raise StructuralError(
                f"Cannot connect {source.spec.output_type.name} output to "
                f"{port.data_type.name} port '{port.name}'"
            )

        for existing in self.incoming_connections(target.id, connection.to_port):
            if existing.from_node == source.id:
                raise StructuralError("Connection already exists")
            if not port.multiple:
                raise StructuralError(f"Port '{port.name}' already has an input")

        self._connections.append(connection)
        return connection

    def connect(
        self,
        from_node: NodeId,
        to_node: NodeId,
        to_port: str | None = None,
    ) -> Connection:
        """Create and add a connection."""
        return self.add_connection(Connection.create(from_node, to_node, to_port))

    def remove_connection(self, connection_id: ConnectionId) -> Connection | None:
        """Remove a connection by ID."""
        for i, conn in enumerate(self._connections):
            if conn.id == connection_id:
                return self._connections.pop(i)
        return None

    def get_connection(self, connection_id: ConnectionId) -> Connection | None:
        for conn in self._connections:
            if conn.id == connection_id:
                return conn
        return None

    def incoming_connections(
        self, node_id: NodeId, port: str | None = ANY_PORT
    ) -> list[Connection]:
        """Connections into a node; filter by port (None = primary input)."""
        return [
            conn for conn in self._connections
            if conn.to_node == node_id and (port == ANY_PORT or conn.to_port == port)
        ]

    def outgoing_connections(self, node_id: NodeId) -> list[Connection]:
        """Connections leaving a node."""
        return [conn for conn in self._connections if conn.from_node == node_id]

    # --- Graph analysis ---

    def downstream_of(self, node_id: NodeId) -> list[NodeId]:
        """Nodes fed directly by this node (one hop, connection order)."""
        result: list[NodeId] = []
        for conn in self.outgoing_connections(node_id):
            if conn.to_node not in result:
                result.append(conn.to_node)
        return result

    def upstream_of(self, node_id: NodeId) -> list[NodeId]:
        """Nodes feeding directly into this node (one hop)."""
        result: list[NodeId] = []
        for conn in self.incoming_connections(node_id):
            if conn.from_node not in result:
                result.append(conn.from_node)
        return result

    def get_upstream_nodes(self, node_id: NodeId) -> set[NodeId]:
        """Get all nodes that this node depends on (directly or indirectly)."""
        upstream: set[NodeId] = set()
        to_visit = [node_id]

        while to_visit:
            current = to_visit.pop()
            for source_id in self.upstream_of(current):
                if source_id not in upstream:
                    upstream.add(source_id)
                    to_visit.append(source_id)

        return upstream

    def get_downstream_nodes(self, node_id: NodeId) -> set[NodeId]:
        """Get all nodes that depend on this node (directly or indirectly)."""
        downstream: set[NodeId] = set()
        to_visit = [node_id]

        while to_visit:
            current = to_visit.pop()
            for target_id in self.downstream_of(current):
                if target_id not in downstream:
                    downstream.add(target_id)
                    to_visit.append(target_id)

        return downstream

    def has_path(self, start: NodeId, end: NodeId) -> bool:
        """Check if end is reachable from start following connection direction."""
        visited: set[NodeId] = set()
        to_visit = list(self.downstream_of(start))

        while to_visit:
            current = to_visit.pop()
            if current == end:
                return True
            if current in visited:
                continue
            visited.add(current)
            to_visit.extend(self.downstream_of(current))

        return False

    def find_cycle(self, node_id: NodeId) -> list[NodeId] | None:
        """
        Find a cycle in the dependency chain of a node.

        Walks upstream from node_id depth-first. Returns the cycle as a list
        of node ids (first and last equal), or None if the chain is acyclic.
        Every node is expanded at most once, so malformed graphs terminate.
        """
        done: set[NodeId] = set()
        path: list[NodeId] = [node_id]
        on_path: set[NodeId] = {node_id}
        stack = [iter(self.upstream_of(node_id))]

        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                continue
            if nxt in on_path:
                return path[path.index(nxt):] + [nxt]
            if nxt in done:
                continue
            path.append(nxt)
            on_path.add(nxt)
            stack.append(iter(self.upstream_of(nxt)))

        return None

    # --- Snapshot ---

    def to_dict(self) -> dict[str, Any]:
        """Serializable snapshot of the graph contents."""
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "connections": [conn.to_dict() for conn in self._connections],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CanvasGraph:
        """
        Rebuild a graph from a snapshot.

        Connections that no longer validate (dangling ids, duplicate inputs)
        are dropped rather than failing the whole load.
        """
        graph = cls(name=data.get("name", "Untitled"), id=data.get("id"))
        for node_data in data.get("nodes", []):
            graph.add_node(Node.from_dict(node_data))
        for conn_data in data.get("connections", []):
            try:
                graph.add_connection(Connection.from_dict(conn_data))
            except (StructuralError, KeyError) as e:
                logger.warning("Dropping connection %s: %s", conn_data.get("id"), e)
        return graph

    # --- Utility ---

    def clear(self) -> None:
        """Remove all nodes and connections."""
        self._nodes.clear()
        self._connections.clear()

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self._nodes)

    def __contains__(self, node_id: NodeId) -> bool:
        """Check if a node exists in the graph."""
        return node_id in self._nodes
