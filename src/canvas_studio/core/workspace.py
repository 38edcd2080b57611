"""
Canvas Persistence - Save and load canvases to/from disk.

One JSON document per canvas:
    {"version", "id", "name", "saved_at", "nodes", "connections"}

The engine only needs a serializable snapshot of the graph; running nodes
are stored as idle.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from canvas_studio.core.graph import CanvasGraph

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_CANVAS_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class CanvasStore:
    """Directory-backed store of canvases."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, canvas_id: str) -> Path:
        if not _CANVAS_ID_RE.match(canvas_id):
            raise ValueError(f"Invalid canvas id: {canvas_id!r}")
        return self.root / f"{canvas_id}.json"

    def exists(self, canvas_id: str) -> bool:
        return self._path(canvas_id).exists()

    def save_canvas(self, graph: CanvasGraph) -> Path:
        """
        Save a canvas to disk.

        Returns:
            Path where the canvas was saved
        """
        path = self._path(graph.id)
        data = {
            "version": FORMAT_VERSION,
            "saved_at": datetime.now().isoformat(),
            **graph.to_dict(),
        }

        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)

        logger.debug("Saved canvas %s to %s", graph.id, path)
        return path

    def load_canvas(self, canvas_id: str) -> CanvasGraph:
        """
        Load a canvas from disk.

        Raises:
            FileNotFoundError: If the canvas doesn't exist
            ValueError: If the file format is invalid
        """
        path = self._path(canvas_id)
        if not path.exists():
            raise FileNotFoundError(f"Canvas not found: {canvas_id}")

        data = self._read(path)
        if "version" not in data or "nodes" not in data:
            raise ValueError(f"Invalid canvas format: {path}")
        if data["version"] > FORMAT_VERSION:
            raise ValueError(f"Canvas {canvas_id} uses newer format {data['version']}")

        data.setdefault("id", canvas_id)
        try:
            return CanvasGraph.from_dict(data)
        except (KeyError, ValueError) as e:
            raise ValueError(f"Invalid canvas {canvas_id}: {e}") from e

    def list_canvases(self) -> list[dict[str, Any]]:
        """
        List all saved canvases, most recent first.

        Returns:
            Dicts with 'id', 'name', 'saved_at' and 'node_count'
        """
        if not self.root.exists():
            return []

        canvases = []
        for path in self.root.glob("*.json"):
            try:
                data = self._read(path)
            except ValueError as e:
                logger.warning("Skipping unreadable canvas %s: %s", path.name, e)
                continue
            canvases.append({
                "id": data.get("id", path.stem),
                "name": data.get("name", path.stem),
                "saved_at": data.get("saved_at", ""),
                "node_count": len(data.get("nodes", [])),
            })

        canvases.sort(key=lambda c: c["saved_at"] or "", reverse=True)
        return canvases

    def delete_canvas(self, canvas_id: str) -> bool:
        """Delete a canvas. Returns False if it didn't exist."""
        path = self._path(canvas_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def rename_canvas(self, canvas_id: str, name: str) -> None:
        """Rename a stored canvas without touching its contents."""
        if not name.strip():
            raise ValueError("Canvas name must not be empty")
        path = self._path(canvas_id)
        if not path.exists():
            raise FileNotFoundError(f"Canvas not found: {canvas_id}")

        data = self._read(path)
        data["name"] = name.strip()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def find(self, ref: str) -> str | None:
        """Resolve a canvas id or name to an id."""
        if _CANVAS_ID_RE.match(ref) and self.exists(ref):
            return ref
        for canvas in self.list_canvases():
            if canvas["name"] == ref:
                return canvas["id"]
        return None

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Invalid canvas format: {path}")
        return data
