from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    """
    Ensure `src/` is on sys.path so tests can import `canvas_studio`
    without requiring an editable install.
    """
    repo_root = Path(__file__).resolve().parents[1]
    src_root = repo_root / "src"
    sys.path.insert(0, str(src_root))


class FakeAdapter:
    """
    In-memory adapter serving every kind.

    Records requests, tracks concurrency and can be held open with a gate
    or made to fail.
    """

    id = "fake"
    name = "Fake"

    def __init__(self, delay: float = 0.0, fail: str | None = None):
        from canvas_studio.core.node_types import NodeKind

        self.kinds = tuple(NodeKind)
        self.delay = delay
        self.fail = fail
        self.gate: asyncio.Event | None = None
        self.results: dict = {}
        self.calls: list = []
        self.active = 0
        self.max_active = 0

    async def execute(self, request, context):
        from canvas_studio.adapters.base import AdapterResult, GenerationError
        from canvas_studio.core.node_types import ResultSlot, get_kind_spec

        self.calls.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            context.check_cancelled()
            if self.fail:
                raise GenerationError(self.fail)

            value = self.results.get(request.kind)
            if value is None:
                value = f"{request.kind.value}({request.primary})"
            if get_kind_spec(request.kind).result_slot == ResultSlot.OUTPUT:
                return AdapterResult(output=value)
            return AdapterResult(content=value)
        finally:
            self.active -= 1


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def registry(fake_adapter):
    from canvas_studio.adapters.registry import AdapterRegistry

    registry = AdapterRegistry()
    registry.register(fake_adapter, fake_adapter.kinds)
    return registry


@pytest.fixture
def settings(tmp_path):
    from canvas_studio.config import Settings

    return Settings(data_dir=tmp_path / "canvases", poll_interval=0.01, task_timeout=0)


@pytest.fixture
def graph():
    from canvas_studio.core.graph import CanvasGraph

    return CanvasGraph("Test")


@pytest.fixture
def engine(graph, registry, settings):
    from canvas_studio.core.execution import ExecutionEngine

    return ExecutionEngine(graph, registry, settings=settings)


@pytest.fixture
def orchestrator(engine):
    from canvas_studio.core.cascade import CascadeOrchestrator

    return CascadeOrchestrator(engine)
