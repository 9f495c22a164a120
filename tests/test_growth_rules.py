"""
Tests for graph growth and connection rules.

Covers:
- Children get inputs == [parent] and matching connections
- Growth is append-only and bumps the version once
- Stack / grid layouts and the bounding group
- validate_connection / connect / check_ready / validate_snapshot
"""

import pytest

from studioflow.graph.growth import ChildSpec, GridLayout, StackLayout, new_node_id, spawn_children
from studioflow.graph.model import Connection, NodeKind, NodeStatus, Size
from studioflow.graph.rules import check_ready, connect, validate_connection, validate_snapshot

K = NodeKind


@pytest.fixture
def parent_canvas(make_node, make_canvas):
    return make_canvas(
        make_node("src", K.PROMPT_INPUT, prompt="x"),
        make_node("parent", K.SCRIPT_EPISODE, inputs=["src"], x=100, y=200),
    )


# ---------------------------------------------------------------------------
# Growth
# ---------------------------------------------------------------------------


def test_new_node_id_format():
    node_id = new_node_id("n-ep")
    prefix, _, rest = node_id.partition("n-ep-")
    assert prefix == ""
    timestamp, suffix = rest.split("-")
    assert timestamp.isdigit()
    assert len(suffix) == 6
    assert new_node_id() != new_node_id()


def test_spawn_children_wires_parent(parent_canvas):
    specs = [
        ChildSpec(kind=K.PROMPT_INPUT, title=f"Ep {i}", payload={"prompt": f"p{i}"})
        for i in range(3)
    ]
    result = spawn_children(parent_canvas, "parent", specs)

    assert len(result.nodes) == 3
    assert all(child.inputs == ["parent"] for child in result.nodes)
    assert result.connections == [Connection(source="parent", target=c.id) for c in result.nodes]
    assert result.snapshot.version == parent_canvas.version + 1
    assert result.snapshot.edges_consistent()
    assert [c.get("prompt") for c in result.nodes] == ["p0", "p1", "p2"]


def test_spawn_children_is_append_only(parent_canvas):
    result = spawn_children(parent_canvas, "parent", [ChildSpec(kind=K.PROMPT_INPUT)])
    assert result.snapshot.nodes[: len(parent_canvas.nodes)] == parent_canvas.nodes
    original = parent_canvas.connections
    assert result.snapshot.connections[: len(original)] == original
    # The input snapshot is untouched
    assert len(parent_canvas.nodes) == 2


def test_spawn_children_unknown_parent(parent_canvas):
    with pytest.raises(ValueError):
        spawn_children(parent_canvas, "ghost", [ChildSpec(kind=K.PROMPT_INPUT)])


def test_spawn_nothing_keeps_snapshot(parent_canvas):
    result = spawn_children(parent_canvas, "parent", [])
    assert result.snapshot is parent_canvas
    assert result.nodes == []


def test_stack_layout_positions(parent_canvas):
    parent = parent_canvas.get_node("parent")
    specs = [ChildSpec(kind=K.PROMPT_INPUT)] * 3
    positions = StackLayout(item_height=360, gap=40)(parent, specs)

    assert {p.x for p in positions} == {parent.right + 150}
    assert [p.y for p in positions] == [200, 600, 1000]


def test_stack_layout_start_index(parent_canvas):
    parent = parent_canvas.get_node("parent")
    layout = StackLayout(item_height=150, gap=0, offset_x=50, start_index=2)
    (position,) = layout(parent, [ChildSpec(kind=K.STORYBOARD_VIDEO_CHILD)])
    assert position.x == parent.right + 50
    assert position.y == 200 + 300


def test_grid_layout_and_group(parent_canvas):
    specs = [ChildSpec(kind=K.IMAGE_GENERATOR, size=Size(width=100, height=50)) for _ in range(4)]
    result = spawn_children(
        parent_canvas,
        "parent",
        specs,
        layout=GridLayout(columns=3, gap_x=10, gap_y=20),
        group_title="Storyboard",
    )
    parent = parent_canvas.get_node("parent")
    xs = [c.position.x for c in result.nodes]
    ys = [c.position.y for c in result.nodes]
    start = parent.right + 150
    assert xs == [start, start + 110, start + 220, start]
    assert ys == [200, 200, 200, 270]

    group = result.group
    assert group.title == "Storyboard"
    assert group.position.x == start - 30
    assert group.position.y == 200 - 30
    assert group.size.width == 320 + 60
    assert group.size.height == 120 + 60
    assert result.snapshot.groups == [group]


def test_child_status_from_spec(parent_canvas):
    result = spawn_children(
        parent_canvas, "parent", [ChildSpec(kind=K.DRAMA_REFINED, status=NodeStatus.SUCCESS)]
    )
    assert result.nodes[0].status == NodeStatus.SUCCESS


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def test_validate_connection_accepts_allowed_kind(make_node, make_canvas):
    snapshot = make_canvas(make_node("p", K.PROMPT_INPUT), make_node("a", K.AUDIO_GENERATOR))
    result = validate_connection(snapshot, "p", "a")
    assert result.success
    assert result.error == ""


def test_validate_connection_rejections(make_node, make_canvas):
    snapshot = make_canvas(
        make_node("p", K.PROMPT_INPUT),
        make_node("v", K.VIDEO_GENERATOR),
        make_node("an", K.VIDEO_ANALYZER, inputs=["v"]),
        make_node("v2", K.VIDEO_GENERATOR),
    )
    assert not validate_connection(snapshot, "p", "p").success
    assert not validate_connection(snapshot, "p", "ghost").success
    assert not validate_connection(snapshot, "v", "an").success  # duplicate
    assert not validate_connection(snapshot, "p", "an").success  # kind not allowed
    assert "at most 1" in validate_connection(snapshot, "v2", "an").error


def test_validate_connection_warns_on_cycle(make_node, make_canvas):
    snapshot = make_canvas(
        make_node("a", K.IMAGE_GENERATOR),
        make_node("b", K.IMAGE_GENERATOR, inputs=["a"]),
    )
    result = validate_connection(snapshot, "b", "a")
    assert result.success
    assert result.warnings


def test_connect_updates_both_representations(make_node, make_canvas):
    snapshot = make_canvas(make_node("p", K.PROMPT_INPUT), make_node("img", K.IMAGE_GENERATOR))
    connected = connect(snapshot, "p", "img")
    assert connected.get_node("img").inputs == ["p"]
    assert Connection(source="p", target="img") in connected.connections
    assert connected.edges_consistent()
    assert connected.version == snapshot.version + 1


def test_connect_raises_on_invalid(make_node, make_canvas):
    snapshot = make_canvas(make_node("p", K.PROMPT_INPUT), make_node("q", K.PROMPT_INPUT))
    with pytest.raises(ValueError):
        connect(snapshot, "p", "q")


def test_check_ready(make_node, make_canvas):
    snapshot = make_canvas(
        make_node("ep", K.SCRIPT_EPISODE),
        make_node("img", K.IMAGE_GENERATOR),
    )
    result = check_ready(snapshot, snapshot.get_node("ep"))
    assert not result.success
    assert any("at least 1" in e for e in result.errors)
    assert "Select a chapter to split" in result.errors


def test_validate_snapshot_reports_rule_violations(make_node, make_canvas):
    snapshot = make_canvas(
        make_node("p", K.PROMPT_INPUT),
        make_node("an", K.VIDEO_ANALYZER, inputs=["p"]),
    )
    result = validate_snapshot(snapshot)
    assert not result.success
    assert any("does not accept" in e for e in result.errors)


def test_validate_snapshot_clean_canvas(make_node, make_canvas):
    snapshot = make_canvas(
        make_node("d", K.DRAMA_ANALYZER, drama_name="Nirvana in Fire"),
        make_node("r", K.DRAMA_REFINED, inputs=["d"]),
    )
    result = validate_snapshot(snapshot)
    assert result.success
    assert result.errors == []
