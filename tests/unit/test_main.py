"""
Tests for the command-line front end.
"""

from canvas_studio.core.graph import CanvasGraph, Node, NodeStatus
from canvas_studio.core.node_types import NodeKind
from canvas_studio.core.workspace import CanvasStore
from canvas_studio.main import main


def _args(tmp_path, *rest):
    return ["--config", str(tmp_path / "settings.json"), "--data-dir", str(tmp_path / "data"), *rest]


def _saved_canvas(tmp_path):
    graph = CanvasGraph("Notes")
    source = graph.add_node(Node.create(NodeKind.TEXT, content="hello", title="Source"))
    copy = graph.add_node(Node.create(NodeKind.TEXT, title="Copy"))
    graph.connect(source.id, copy.id)
    CanvasStore(tmp_path / "data").save_canvas(graph)
    return graph, source, copy


def test_list_empty(tmp_path, capsys):
    assert main(_args(tmp_path, "list")) == 0
    assert "No canvases" in capsys.readouterr().out


def test_list_and_show(tmp_path, capsys):
    graph, source, _ = _saved_canvas(tmp_path)

    assert main(_args(tmp_path, "list")) == 0
    assert "Notes" in capsys.readouterr().out

    assert main(_args(tmp_path, "show", "Notes")) == 0
    out = capsys.readouterr().out
    assert graph.id in out
    assert source.id[:8] in out


def test_run_cascades_and_saves(tmp_path):
    graph, source, copy = _saved_canvas(tmp_path)

    assert main(_args(tmp_path, "run", graph.id, source.id[:6])) == 0

    saved = CanvasStore(tmp_path / "data").load_canvas(graph.id)
    assert saved.get_node(source.id).status == NodeStatus.COMPLETED
    assert saved.get_node(copy.id).status == NodeStatus.COMPLETED
    assert saved.get_node(copy.id).content == "hello"


def test_run_without_cascade(tmp_path):
    graph, source, copy = _saved_canvas(tmp_path)

    assert main(_args(tmp_path, "run", graph.id, source.id, "--no-cascade")) == 0

    saved = CanvasStore(tmp_path / "data").load_canvas(graph.id)
    assert saved.get_node(copy.id).status == NodeStatus.IDLE


def test_run_failure_exit_code(tmp_path):
    graph = CanvasGraph("Broken")
    upscale = graph.add_node(Node.create(NodeKind.UPSCALE))
    CanvasStore(tmp_path / "data").save_canvas(graph)

    assert main(_args(tmp_path, "run", "Broken", upscale.id)) == 1

    saved = CanvasStore(tmp_path / "data").load_canvas(graph.id)
    assert saved.get_node(upscale.id).error == "Missing input: input"


def test_unknown_canvas(tmp_path, capsys):
    assert main(_args(tmp_path, "show", "missing")) == 2
    assert "Canvas not found" in capsys.readouterr().err


def test_run_pulls_upstream(tmp_path):
    graph, source, copy = _saved_canvas(tmp_path)
    source.content = ""
    origin = graph.add_node(Node.create(NodeKind.TEXT, content="hello", title="Origin"))
    graph.connect(origin.id, source.id)
    CanvasStore(tmp_path / "data").save_canvas(graph)

    assert main(_args(tmp_path, "run", graph.id, copy.id, "--pull-upstream", "--no-cascade")) == 0

    saved = CanvasStore(tmp_path / "data").load_canvas(graph.id)
    assert saved.get_node(source.id).status == NodeStatus.COMPLETED
    assert saved.get_node(copy.id).content == "hello"
