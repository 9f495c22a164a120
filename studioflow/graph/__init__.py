"""Graph structures: nodes, snapshots, traversal, grouping and growth."""

from studioflow.graph.context import (
    StyleContext,
    combine_prompt,
    resolve_direct_context,
    resolve_style_context,
    resolve_upstream_context,
    visual_prompt_prefix,
)
from studioflow.graph.grouping import TaskGroup, TaskGroupStage, WorkItem, group_work_items
from studioflow.graph.growth import (
    ChildSpec,
    GridLayout,
    GrowthResult,
    StackLayout,
    new_node_id,
    spawn_children,
)
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
from studioflow.graph.rules import (
    ValidationResult,
    check_ready,
    connect,
    validate_connection,
    validate_snapshot,
)
from studioflow.graph.traversal import find_upstream, iter_upstream, walk_upstream

__all__ = [
    # Model
    "CanvasSnapshot",
    "Connection",
    "Group",
    "Node",
    "NodeKind",
    "NodeStatus",
    "Position",
    "Size",
    # Traversal / context
    "iter_upstream",
    "walk_upstream",
    "find_upstream",
    "StyleContext",
    "combine_prompt",
    "resolve_direct_context",
    "resolve_style_context",
    "resolve_upstream_context",
    "visual_prompt_prefix",
    # Grouping
    "WorkItem",
    "TaskGroup",
    "TaskGroupStage",
    "group_work_items",
    # Growth
    "ChildSpec",
    "GridLayout",
    "StackLayout",
    "GrowthResult",
    "new_node_id",
    "spawn_children",
    # Rules
    "ValidationResult",
    "check_ready",
    "connect",
    "validate_connection",
    "validate_snapshot",
]
