"""
Dynamic Graph Growth - materialize generation results as new nodes.

A growth step:
1. Creates child nodes whose inputs are exactly ``[parent_id]``
2. Creates the matching connections
3. Optionally wraps the siblings in a Group

Growth is append-only: nothing already on the canvas is changed or removed.
Layout is cosmetic; children are placed to the right of the parent and
stacked or gridded with fixed gaps. Callers checkpoint history once before
publishing the grown snapshot so the whole fan-out undoes as one step.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from studioflow.graph.model import (
    CanvasSnapshot,
    Connection,
    Group,
    Node,
    NodeKind,
    NodeStatus,
    Position,
    Size,
)

CHILD_OFFSET_X = 150.0
GROUP_PADDING = 30.0


def new_node_id(prefix: str = "n") -> str:
    """Fresh id: millisecond timestamp plus a random suffix."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


@dataclass
class ChildSpec:
    """What to spawn; the id, inputs and position are filled in by ``spawn_children``."""

    kind: NodeKind
    title: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.IDLE
    size: Size | None = None
    id_prefix: str = "n"


class Layout(Protocol):
    def __call__(self, parent: Node, specs: list[ChildSpec]) -> list[Position]: ...


@dataclass
class StackLayout:
    """One column to the right of the parent, ``start_index`` slots down."""

    item_height: float = 360.0
    gap: float = 40.0
    offset_x: float = CHILD_OFFSET_X
    start_index: int = 0

    def __call__(self, parent: Node, specs: list[ChildSpec]) -> list[Position]:
        x = parent.right + self.offset_x
        return [
            Position(
                x=x,
                y=parent.position.y + (self.start_index + i) * (self.item_height + self.gap),
            )
            for i in range(len(specs))
        ]


@dataclass
class GridLayout:
    """Row-major grid to the right of the parent, cell size taken from the first spec."""

    columns: int = 3
    gap_x: float = 40.0
    gap_y: float = 40.0
    offset_x: float = CHILD_OFFSET_X

    def __call__(self, parent: Node, specs: list[ChildSpec]) -> list[Position]:
        if not specs:
            return []
        cell = specs[0].size or Size(width=parent.width, height=parent.height)
        start_x = parent.right + self.offset_x
        start_y = parent.position.y
        positions = []
        for index in range(len(specs)):
            col = index % self.columns
            row = index // self.columns
            positions.append(
                Position(
                    x=start_x + col * (cell.width + self.gap_x),
                    y=start_y + row * (cell.height + self.gap_y),
                )
            )
        return positions


@dataclass
class GrowthResult:
    """The grown snapshot plus what was added to it."""

    snapshot: CanvasSnapshot
    nodes: list[Node] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)
    group: Group | None = None

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]


def _bounding_group(nodes: list[Node], title: str, padding: float) -> Group:
    left = min(n.position.x for n in nodes)
    top = min(n.position.y for n in nodes)
    right = max(n.right for n in nodes)
    bottom = max(n.bottom for n in nodes)
    return Group(
        id=new_node_id("g"),
        title=title,
        position=Position(x=left - padding, y=top - padding),
        size=Size(width=right - left + 2 * padding, height=bottom - top + 2 * padding),
    )


def spawn_children(
    snapshot: CanvasSnapshot,
    parent_id: str,
    specs: list[ChildSpec],
    layout: Layout | None = None,
    group_title: str | None = None,
    group_padding: float = GROUP_PADDING,
) -> GrowthResult:
    """
    Append one child per spec under ``parent_id``.

    Args:
        snapshot: Current canvas
        parent_id: Originating node; every child gets ``inputs == [parent_id]``
        specs: Children to create, in order
        layout: Position strategy (defaults to a single stacked column)
        group_title: When set, a Group bounding all new children is added

    Returns:
        GrowthResult whose snapshot has ``version + 1``

    Raises:
        ValueError: if the parent is not on the canvas
    """
    parent = snapshot.get_node(parent_id)
    if parent is None:
        raise ValueError(f"Cannot grow from unknown node '{parent_id}'")
    if not specs:
        return GrowthResult(snapshot=snapshot)

    layout = layout or StackLayout()
    positions = layout(parent, specs)

    children = [
        Node(
            id=new_node_id(spec.id_prefix),
            kind=spec.kind,
            title=spec.title,
            position=position,
            size=spec.size,
            status=spec.status,
            inputs=[parent_id],
            payload=dict(spec.payload),
        )
        for spec, position in zip(specs, positions, strict=True)
    ]
    connections = [Connection(source=parent_id, target=child.id) for child in children]
    group = _bounding_group(children, group_title, group_padding) if group_title else None

    grown = snapshot.model_copy(
        update={
            "nodes": [*snapshot.nodes, *children],
            "connections": [*snapshot.connections, *connections],
            "groups": [*snapshot.groups, group] if group else list(snapshot.groups),
            "version": snapshot.version + 1,
        }
    )
    return GrowthResult(snapshot=grown, nodes=children, connections=connections, group=group)
