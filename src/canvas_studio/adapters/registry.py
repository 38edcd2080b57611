"""
Adapter Registry - Capability lookup table from node kind to adapter.

The engine never branches on kind; it asks the registry for the adapter
serving a kind. Each engine owns its registry, so tests can register
in-memory fakes without touching global state.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from canvas_studio.adapters.base import NodeAdapter, ProviderConfig
from canvas_studio.adapters.gemini import GeminiAdapter
from canvas_studio.adapters.local import LocalAdapter
from canvas_studio.adapters.runninghub import RunningHubAdapter
from canvas_studio.core.node_types import KIND_SPECS, NodeKind

if TYPE_CHECKING:
    from canvas_studio.config import Settings

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Maps node kinds to adapter instances."""

    def __init__(self) -> None:
        self._adapters: dict[NodeKind, NodeAdapter] = {}

    def register(
        self,
        adapter: NodeAdapter,
        kinds: tuple[NodeKind, ...] | list[NodeKind] | None = None,
    ) -> None:
        """Register an adapter for the given kinds (default: adapter.kinds)."""
        for kind in kinds if kinds is not None else adapter.kinds:
            kind = NodeKind(kind)
            if kind in self._adapters:
                logger.debug("Replacing adapter for %s nodes", kind.value)
            self._adapters[kind] = adapter

    def unregister(self, kind: NodeKind) -> NodeAdapter | None:
        return self._adapters.pop(NodeKind(kind), None)

    def get(self, kind: NodeKind | str) -> NodeAdapter | None:
        """Get the adapter serving a kind."""
        return self._adapters.get(NodeKind(kind))

    def list_kinds(self) -> list[NodeKind]:
        """Get the kinds that have an adapter."""
        return list(self._adapters.keys())

    def missing_kinds(self) -> list[NodeKind]:
        """Executable kinds without an adapter."""
        return [
            kind for kind, spec in KIND_SPECS.items()
            if spec.executable and kind not in self._adapters
        ]

    def __contains__(self, kind: NodeKind) -> bool:
        return kind in self._adapters


def default_registry(settings: Settings | None = None) -> AdapterRegistry:
    """
    Build the registry with the built-in adapters.

    HTTP adapters are registered only when enabled in the settings.
    """
    registry = AdapterRegistry()
    registry.register(LocalAdapter())

    providers = settings.providers if settings is not None else {}
    gemini = providers.get(GeminiAdapter.id, ProviderConfig())
    if gemini.enabled:
        registry.register(GeminiAdapter(gemini))
    runninghub = providers.get(RunningHubAdapter.id, ProviderConfig())
    if runninghub.enabled:
        registry.register(RunningHubAdapter(runninghub))

    missing = registry.missing_kinds()
    if missing:
        logger.info("No adapter for: %s", ", ".join(k.value for k in missing))
    return registry
