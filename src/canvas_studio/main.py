"""
Canvas Studio - Main Entry Point

Command-line front end for stored canvases:

    canvas-studio list
    canvas-studio show CANVAS
    canvas-studio run CANVAS NODE [--count N] [--no-cascade] [--pull-upstream]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from canvas_studio.adapters import default_registry
from canvas_studio.config import Settings, load_settings
from canvas_studio.core import (
    CanvasGraph,
    CanvasStore,
    CascadeOrchestrator,
    ExecutionEngine,
    NodeStatus,
    StructuralError,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canvas-studio",
        description="Run node-graph canvases for AI image and video creation.",
    )
    parser.add_argument("--config", type=Path, help="Settings file (default ~/.config/canvas_studio/settings.json)")
    parser.add_argument("--data-dir", type=Path, help="Directory holding saved canvases")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List stored canvases")

    show = sub.add_parser("show", help="Show the nodes of a canvas")
    show.add_argument("canvas", help="Canvas id or name")

    run = sub.add_parser("run", help="Execute a node and cascade downstream")
    run.add_argument("canvas", help="Canvas id or name")
    run.add_argument("node", help="Node id (or unique id prefix)")
    run.add_argument("--count", type=int, default=1, help="Batch count (default 1)")
    run.add_argument("--no-cascade", action="store_true", help="Don't run downstream nodes")
    run.add_argument(
        "--pull-upstream", action="store_true", help="Run unfinished upstream nodes first"
    )
    return parser


def _find_node(graph: CanvasGraph, ref: str) -> str:
    if ref in graph:
        return ref
    matches = [nid for nid in graph.nodes if nid.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise StructuralError(f"No node matching '{ref}'")
    raise StructuralError(f"Node prefix '{ref}' is ambiguous")


def _load(store: CanvasStore, ref: str) -> CanvasGraph:
    canvas_id = store.find(ref)
    if canvas_id is None:
        raise FileNotFoundError(f"Canvas not found: {ref}")
    return store.load_canvas(canvas_id)


def cmd_list(store: CanvasStore) -> int:
    canvases = store.list_canvases()
    if not canvases:
        print("No canvases.")
        return 0
    for canvas in canvases:
        print(f"{canvas['id']}  {canvas['name']}  ({canvas['node_count']} nodes, {canvas['saved_at']})")
    return 0


def cmd_show(store: CanvasStore, ref: str) -> int:
    graph = _load(store, ref)
    print(f"{graph.name} [{graph.id}]")
    for node in sorted(graph.nodes.values(), key=lambda n: (n.position.y, n.position.x)):
        line = f"  {node.id[:8]}  {node.kind.value:<16} {node.status.value:<10} {node.title}"
        if node.error:
            line += f"  error: {node.error}"
        print(line)
        for conn in graph.incoming_connections(node.id):
            port = conn.to_port or "input"
            print(f"      <- {conn.from_node[:8]} ({port})")
    return 0


async def run_node(
    graph: CanvasGraph,
    node_ref: str,
    settings: Settings,
    count: int = 1,
    cascade: bool = True,
    pull_upstream: bool | None = None,
) -> bool:
    """Execute a node on a graph; True if every resulting node completed."""
    node_id = _find_node(graph, node_ref)
    engine = ExecutionEngine(graph, default_registry(settings), settings=settings)
    orchestrator = CascadeOrchestrator(engine, auto_cascade=cascade)

    engine.add_listener(
        lambda event: logger.info("%s -> %s", event.node_id[:8], event.status.value)
    )

    results = await orchestrator.execute(node_id, count, pull_upstream)
    await orchestrator.drain()
    await engine.join()

    for node in results:
        print(f"{node.id[:8]}  {node.status.value}  {node.error or ''}".rstrip())
    return bool(results) and all(n.status == NodeStatus.COMPLETED for n in results)


def cmd_run(store: CanvasStore, settings: Settings, args: argparse.Namespace) -> int:
    graph = _load(store, args.canvas)
    ok = asyncio.run(run_node(
        graph, args.node, settings, args.count,
        cascade=not args.no_cascade,
        pull_upstream=args.pull_upstream or None,
    ))
    store.save_canvas(graph)
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Canvas Studio.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
        if args.data_dir:
            settings.data_dir = args.data_dir
        store = CanvasStore(settings.data_dir)

        if args.command == "list":
            return cmd_list(store)
        elif args.command == "show":
            return cmd_show(store, args.canvas)
        elif args.command == "run":
            return cmd_run(store, settings, args)
    except (FileNotFoundError, ValueError, StructuralError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
