"""
Graph Model - the canvas as an immutable snapshot.

A snapshot holds:
1. Nodes (kind, status, ordered inputs, kind-specific payload)
2. Connections, kept in step with each node's ``inputs``
3. Groups, purely cosmetic containers

Snapshots are never mutated. The runtime store and the growth module derive
new snapshots with ``model_copy``; every read here is a projection over one
consistent snapshot. Missing ids yield ``None`` or an empty list, never an error.
"""

from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NodeKind(StrEnum):
    """The closed set of node roles."""

    PROMPT_INPUT = "prompt_input"
    IMAGE_GENERATOR = "image_generator"
    VIDEO_GENERATOR = "video_generator"
    VIDEO_ANALYZER = "video_analyzer"
    IMAGE_EDITOR = "image_editor"
    AUDIO_GENERATOR = "audio_generator"
    SCRIPT_PLANNER = "script_planner"
    SCRIPT_EPISODE = "script_episode"
    STORYBOARD_GENERATOR = "storyboard_generator"
    STORYBOARD_IMAGE = "storyboard_image"
    STORYBOARD_SPLITTER = "storyboard_splitter"
    CHARACTER_NODE = "character_node"
    DRAMA_ANALYZER = "drama_analyzer"
    DRAMA_REFINED = "drama_refined"
    STYLE_PRESET = "style_preset"
    SORA_VIDEO_GENERATOR = "sora_video_generator"
    SORA_VIDEO_CHILD = "sora_video_child"
    STORYBOARD_VIDEO_GENERATOR = "storyboard_video_generator"
    STORYBOARD_VIDEO_CHILD = "storyboard_video_child"


class NodeStatus(StrEnum):
    """Execution status of a node."""

    IDLE = "idle"
    WORKING = "working"
    SUCCESS = "success"
    ERROR = "error"


DEFAULT_NODE_WIDTH = 420.0

# Approximate rendered heights, used only for layout of spawned children
APPROX_NODE_HEIGHTS: dict[NodeKind, float] = {
    NodeKind.PROMPT_INPUT: 320,
    NodeKind.IMAGE_GENERATOR: 360,
    NodeKind.VIDEO_GENERATOR: 400,
    NodeKind.AUDIO_GENERATOR: 300,
    NodeKind.VIDEO_ANALYZER: 360,
    NodeKind.IMAGE_EDITOR: 360,
    NodeKind.SCRIPT_PLANNER: 480,
    NodeKind.SCRIPT_EPISODE: 420,
    NodeKind.STORYBOARD_GENERATOR: 500,
    NodeKind.CHARACTER_NODE: 520,
    NodeKind.DRAMA_ANALYZER: 600,
    NodeKind.DRAMA_REFINED: 400,
}


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0

    model_config = ConfigDict(frozen=True)


class Size(BaseModel):
    width: float
    height: float

    model_config = ConfigDict(frozen=True)


class Node(BaseModel):
    """
    A unit of work on the canvas.

    ``inputs`` lists upstream node ids in the order the user connected them.
    It duplicates the connection list so upstream lookups need no edge scan.
    ``payload`` is the kind-specific bag of fields; treat it as read-only and
    go through the store to change it.
    """

    id: str
    kind: NodeKind
    title: str = ""
    position: Position = Field(default_factory=Position)
    size: Size | None = None
    status: NodeStatus = NodeStatus.IDLE
    inputs: list[str] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _reject_self_input(self) -> "Node":
        if self.id in self.inputs:
            raise ValueError(f"Node '{self.id}' cannot list itself as an input")
        return self

    @property
    def width(self) -> float:
        return self.size.width if self.size else DEFAULT_NODE_WIDTH

    @property
    def height(self) -> float:
        if self.size:
            return self.size.height
        return APPROX_NODE_HEIGHTS.get(self.kind, 360.0)

    @property
    def right(self) -> float:
        return self.position.x + self.width

    @property
    def bottom(self) -> float:
        return self.position.y + self.height

    def get(self, key: str, default: Any = None) -> Any:
        """Shorthand for ``payload.get``."""
        return self.payload.get(key, default)


class Connection(BaseModel):
    """Directed edge ``source -> target``; mirrors ``target.inputs``."""

    source: str
    target: str

    model_config = ConfigDict(frozen=True)


class Group(BaseModel):
    """Visual container around a batch of spawned nodes. No execution meaning."""

    id: str
    title: str = ""
    position: Position = Field(default_factory=Position)
    size: Size

    model_config = ConfigDict(frozen=True)


class CanvasSnapshot(BaseModel):
    """One consistent, versioned view of the whole canvas."""

    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    groups: list[Group] = Field(default_factory=list)
    version: int = 0

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_nodes(
        cls,
        nodes: Iterable[Node],
        groups: Iterable[Group] = (),
        version: int = 0,
    ) -> "CanvasSnapshot":
        """Build a snapshot whose connections are derived from each node's inputs."""
        nodes = list(nodes)
        connections = [
            Connection(source=source, target=node.id) for node in nodes for source in node.inputs
        ]
        return cls(nodes=nodes, connections=connections, groups=list(groups), version=version)

    # === QUERIES ===

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_nodes_by_ids(self, node_ids: Iterable[str]) -> list[Node]:
        """Nodes for ``node_ids`` in the given order; unknown ids are skipped."""
        by_id = {node.id: node for node in self.nodes}
        return [by_id[node_id] for node_id in node_ids if node_id in by_id]

    def get_upstream_nodes(self, node_id: str, kind: NodeKind | None = None) -> list[Node]:
        """Direct predecessors of ``node_id`` in input order, optionally filtered by kind."""
        node = self.get_node(node_id)
        if node is None:
            return []
        upstream = self.get_nodes_by_ids(node.inputs)
        if kind is None:
            return upstream
        return [n for n in upstream if n.kind == kind]

    def get_downstream_nodes(self, node_id: str, kind: NodeKind | None = None) -> list[Node]:
        """Direct successors of ``node_id`` in canvas order."""
        return [
            n
            for n in self.nodes
            if node_id in n.inputs and (kind is None or n.kind == kind)
        ]

    def edges_consistent(self) -> bool:
        """True when the connection list and the nodes' inputs describe the same edges."""
        from_inputs = {(source, node.id) for node in self.nodes for source in node.inputs}
        from_connections = {(c.source, c.target) for c in self.connections}
        return from_inputs == from_connections
