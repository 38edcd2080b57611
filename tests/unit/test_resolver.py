"""
Tests for input resolution.
"""

import pytest

from canvas_studio.core.errors import CycleDetected, MissingInput
from canvas_studio.core.graph import CanvasGraph, Node, NodeStatus, Point2D
from canvas_studio.core.node_types import NodeKind
from canvas_studio.core.resolver import InputResolver, input_fingerprint


def _add(graph, kind, content="", status=NodeStatus.IDLE, position=None, **fields):
    node = Node.create(kind, content=content, fields=fields, position=position)
    node.status = status
    return graph.add_node(node)


class TestPrimaryPort:
    """Tests for the unnamed input port."""

    def test_completed_llm_output_feeds_text(self):
        graph = CanvasGraph()
        llm = _add(graph, NodeKind.LLM, status=NodeStatus.COMPLETED, output="hello")
        text = _add(graph, NodeKind.TEXT)
        graph.connect(llm.id, text.id)

        inputs = InputResolver(graph).resolve(text.id)
        assert inputs.primary == "hello"
        assert inputs.get("input") == "hello"
        assert "input" in inputs.connected

    def test_unconnected_uses_own_content(self):
        graph = CanvasGraph()
        text = _add(graph, NodeKind.TEXT, "typed")
        inputs = InputResolver(graph).resolve(text.id)
        assert inputs.primary == "typed"
        assert inputs.connected == set()

    def test_standalone_upload_is_usable_while_idle(self):
        graph = CanvasGraph()
        image = _add(graph, NodeKind.IMAGE, "cat.png")
        upscale = _add(graph, NodeKind.UPSCALE)
        graph.connect(image.id, upscale.id)

        assert InputResolver(graph).resolve(upscale.id).primary == "cat.png"

    def test_running_upstream_is_pending(self):
        graph = CanvasGraph()
        image = _add(graph, NodeKind.IMAGE, "cat.png", status=NodeStatus.RUNNING)
        upscale = _add(graph, NodeKind.UPSCALE)
        graph.connect(image.id, upscale.id)

        with pytest.raises(MissingInput) as exc:
            InputResolver(graph).resolve(upscale.id)
        assert exc.value.port == "input"
        assert str(exc.value) == "Missing input: input"

    def test_idle_fed_container_is_pending(self):
        graph = CanvasGraph()
        src = _add(graph, NodeKind.TEXT, "a")
        mid = _add(graph, NodeKind.TEXT, "stale")
        out = _add(graph, NodeKind.TEXT)
        graph.connect(src.id, mid.id)
        graph.connect(mid.id, out.id)

        resolver = InputResolver(graph)
        assert not resolver.is_ready(out.id)

    def test_errored_upstream_is_pending(self):
        graph = CanvasGraph()
        image = _add(graph, NodeKind.IMAGE, "cat.png", status=NodeStatus.ERROR, error="boom")
        edit = _add(graph, NodeKind.EDIT, prompt="x")
        graph.connect(image.id, edit.id)

        # Standalone content counts only while idle
        with pytest.raises(MissingInput):
            InputResolver(graph).resolve(edit.id)

    def test_required_port_without_value(self):
        graph = CanvasGraph()
        upscale = _add(graph, NodeKind.UPSCALE)
        with pytest.raises(MissingInput):
            InputResolver(graph).resolve(upscale.id)


class TestNamedPorts:
    """Tests for named (parameter) ports."""

    def test_named_port_falls_back_to_field(self):
        graph = CanvasGraph()
        edit = _add(graph, NodeKind.EDIT, prompt="make it blue")
        inputs = InputResolver(graph).resolve(edit.id)
        assert inputs.get("prompt") == "make it blue"
        assert inputs.primary == []

    def test_connection_overrides_field(self):
        graph = CanvasGraph()
        text = _add(graph, NodeKind.TEXT, "from wire")
        edit = _add(graph, NodeKind.EDIT, prompt="local")
        graph.connect(text.id, edit.id, "prompt")

        inputs = InputResolver(graph).resolve(edit.id)
        assert inputs.get("prompt") == "from wire"
        assert "prompt" in inputs.connected

    def test_requires_any_group(self):
        graph = CanvasGraph()
        image = _add(graph, NodeKind.IMAGE)
        with pytest.raises(MissingInput) as exc:
            InputResolver(graph).resolve(image.id)
        assert exc.value.port == "input/prompt"

        image.fields["prompt"] = "a cat"
        assert InputResolver(graph).is_ready(image.id)

    def test_external_app_ports(self):
        graph = CanvasGraph()
        app = _add(
            graph,
            NodeKind.RUNNINGHUB,
            webapp_id="123",
            node_info_list=[
                {"nodeId": "7", "fieldName": "image", "fieldType": "IMAGE"},
                {"nodeId": "9", "fieldName": "text", "fieldType": "STRING", "fieldValue": "hi"},
            ],
        )
        image = _add(graph, NodeKind.IMAGE, "cat.png")
        graph.connect(image.id, app.id, "7_image")

        inputs = InputResolver(graph).resolve(app.id)
        assert inputs.get("7_image") == "cat.png"
        assert inputs.get("9_text") == "hi"


class TestMultiInput:
    """Tests for aggregating multi-input ports."""

    def test_ordered_by_position_and_deduplicated(self):
        graph = CanvasGraph()
        lower = _add(graph, NodeKind.IMAGE, "b.png", position=Point2D(0, 200))
        upper = _add(graph, NodeKind.IMAGE, "a.png", position=Point2D(0, 100))
        dup = _add(graph, NodeKind.IMAGE, "a.png", position=Point2D(50, 300))
        board = _add(graph, NodeKind.DRAWING_BOARD)
        for source in (lower, upper, dup):
            graph.connect(source.id, board.id)

        inputs = InputResolver(graph).resolve(board.id)
        assert inputs.primary == ["a.png", "b.png"]

    def test_one_pending_source_blocks(self):
        graph = CanvasGraph()
        ready = _add(graph, NodeKind.IMAGE, "a.png")
        busy = _add(graph, NodeKind.IMAGE, "b.png", status=NodeStatus.RUNNING)
        board = _add(graph, NodeKind.DRAWING_BOARD)
        graph.connect(ready.id, board.id)
        graph.connect(busy.id, board.id)

        assert not InputResolver(graph).is_ready(board.id)

    def test_unconnected_multi_port_wraps_own_content(self):
        graph = CanvasGraph()
        edit = _add(graph, NodeKind.EDIT, "photo.png", prompt="make it blue")
        empty = _add(graph, NodeKind.DRAWING_BOARD)

        resolver = InputResolver(graph)
        assert resolver.resolve(edit.id).primary == ["photo.png"]
        assert resolver.resolve(edit.id).get("prompt") == "make it blue"
        assert edit.content == "photo.png"
        with pytest.raises(MissingInput):
            resolver.resolve(empty.id)


class TestRelay:
    """Tests for transparent relay nodes."""

    def test_relay_passes_upstream_value(self):
        graph = CanvasGraph()
        image = _add(graph, NodeKind.IMAGE, "cat.png")
        relay = _add(graph, NodeKind.RELAY)
        upscale = _add(graph, NodeKind.UPSCALE)
        graph.connect(image.id, relay.id)
        graph.connect(relay.id, upscale.id)

        resolver = InputResolver(graph)
        assert resolver.resolve(upscale.id).primary == "cat.png"
        assert resolver.effective_output(relay.id) == "cat.png"

    def test_unfed_relay_is_pending(self):
        graph = CanvasGraph()
        relay = _add(graph, NodeKind.RELAY)
        upscale = _add(graph, NodeKind.UPSCALE)
        graph.connect(relay.id, upscale.id)
        assert not InputResolver(graph).is_ready(upscale.id)

    def test_relay_loop_is_a_cycle(self):
        graph = CanvasGraph()
        r1 = _add(graph, NodeKind.RELAY)
        r2 = _add(graph, NodeKind.RELAY)
        upscale = _add(graph, NodeKind.UPSCALE)
        graph.connect(r1.id, r2.id)
        graph.connect(r2.id, r1.id)
        graph.connect(r2.id, upscale.id)

        with pytest.raises(CycleDetected):
            InputResolver(graph).resolve(upscale.id)


class TestFingerprint:
    """Tests for input fingerprints."""

    def test_ignores_result_fields(self):
        graph = CanvasGraph()
        edit = _add(graph, NodeKind.EDIT, prompt="blue")
        inputs = InputResolver(graph).resolve(edit.id)
        before = input_fingerprint(edit, inputs)

        edit.fields["output"] = "data:image/png;base64,AAAA"
        edit.fields["error"] = "old"
        assert input_fingerprint(edit, inputs) == before

    def test_changes_with_config_and_inputs(self):
        graph = CanvasGraph()
        edit = _add(graph, NodeKind.EDIT, prompt="blue")
        inputs = InputResolver(graph).resolve(edit.id)
        before = input_fingerprint(edit, inputs)

        edit.fields["prompt"] = "red"
        assert input_fingerprint(edit, inputs) != before

        changed = inputs.copy()
        changed.primary = ["a.png"]
        assert input_fingerprint(edit, changed) != input_fingerprint(edit, inputs)
