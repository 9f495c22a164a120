"""
Command-line interface for studioflow.

Usage:
    studioflow context canvas.json n-42
    studioflow plan canvas.json n-42 --max-duration 10
    studioflow validate canvas.json
"""

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError as SchemaError

from studioflow.config import get_max_task_duration
from studioflow.graph.context import resolve_style_context, resolve_upstream_context
from studioflow.graph.grouping import WorkItem, group_work_items
from studioflow.graph.model import CanvasSnapshot, NodeKind
from studioflow.graph.rules import validate_snapshot
from studioflow.observability import configure_logging
from studioflow.schemas.shots import DEFAULT_SHOT_SECONDS


def load_canvas(path: str) -> CanvasSnapshot:
    """
    Load a canvas export. A file without a ``connections`` list gets one
    derived from the nodes' inputs.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if "connections" not in data:
        snapshot = CanvasSnapshot.model_validate({**data, "connections": []})
        return CanvasSnapshot.from_nodes(snapshot.nodes, snapshot.groups, snapshot.version)
    return CanvasSnapshot.model_validate(data)


def _split_shots(snapshot: CanvasSnapshot, node_id: str) -> list[dict]:
    node = snapshot.get_node(node_id)
    if node is None:
        return []
    if node.kind == NodeKind.STORYBOARD_SPLITTER:
        return list(node.get("split_shots") or [])
    return [
        shot
        for splitter in snapshot.get_upstream_nodes(node_id, NodeKind.STORYBOARD_SPLITTER)
        for shot in splitter.get("split_shots") or []
    ]


def cmd_context(args: argparse.Namespace) -> int:
    """Print what a node would receive from upstream."""
    snapshot = load_canvas(args.canvas)
    if snapshot.get_node(args.node_id) is None:
        print(f"Error: node '{args.node_id}' not found", file=sys.stderr)
        return 1

    context = resolve_upstream_context(snapshot, args.node_id)
    style = resolve_style_context(snapshot, args.node_id)

    if args.json:
        print(
            json.dumps(
                {
                    "node_id": args.node_id,
                    "context": context,
                    "style": {
                        "visual_style": style.visual_style,
                        "genre": style.genre,
                        "setting": style.setting,
                    },
                },
                indent=2,
                ensure_ascii=False,
            )
        )
        return 0

    print(f"Node: {args.node_id}")
    print(f"Style: {style.visual_style}" + (f" / {style.genre}" if style.genre else ""))
    if style.setting:
        print(f"Setting: {style.setting}")
    print()
    if not context:
        print("(no upstream context)")
    for i, text in enumerate(context, 1):
        print(f"--- [{i}] ---")
        print(text)
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    """Print the task groups a node's split shots pack into."""
    snapshot = load_canvas(args.canvas)
    shots = _split_shots(snapshot, args.node_id)
    if not shots:
        print(f"Error: no split shots upstream of '{args.node_id}'", file=sys.stderr)
        return 1

    max_duration = args.max_duration or get_max_task_duration()
    try:
        items = [
            WorkItem(duration=float(s.get("duration") or DEFAULT_SHOT_SECONDS), payload=s)
            for s in shots
        ]
        groups = group_work_items(items, max_duration)
    except (SchemaError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        plan = [
            {
                "id": g.id,
                "total_duration": g.total_duration,
                "shots": [item.payload.get("id") for item in g.items],
            }
            for g in groups
        ]
        print(json.dumps(plan, indent=2))
        return 0

    print(f"{len(shots)} shot(s) -> {len(groups)} task group(s), max {max_duration:g}s each")
    for group in groups:
        over = "  (over limit)" if group.total_duration > max_duration else ""
        shot_ids = ", ".join(str(item.payload.get("id", "?")) for item in group.items)
        print(f"  #{group.sequence_number}  {group.total_duration:5.1f}s  [{shot_ids}]{over}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check edge consistency and connection rules."""
    try:
        snapshot = load_canvas(args.canvas)
    except SchemaError as e:
        print(f"✗ Invalid canvas: {e}", file=sys.stderr)
        return 1

    result = validate_snapshot(snapshot)
    for error in result.errors:
        print(f"✗ {error}")
    for warning in result.warnings:
        print(f"⚠ {warning}")
    if result.success:
        print(f"✓ {len(snapshot.nodes)} node(s), {len(snapshot.connections)} connection(s) valid")
        return 0
    return 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="studioflow",
        description="studioflow - inspect and check content-generation canvases",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "human", "json"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    context_parser = subparsers.add_parser(
        "context", help="Show a node's resolved upstream context"
    )
    context_parser.add_argument("canvas", help="Path to a canvas JSON export")
    context_parser.add_argument("node_id", help="Node to resolve")
    context_parser.add_argument("--json", action="store_true", help="Output as JSON")
    context_parser.set_defaults(func=cmd_context)

    plan_parser = subparsers.add_parser("plan", help="Show task groups for a node's split shots")
    plan_parser.add_argument("canvas", help="Path to a canvas JSON export")
    plan_parser.add_argument("node_id", help="Video node (or splitter) to plan for")
    plan_parser.add_argument(
        "--max-duration", type=float, default=None, help="Seconds per task group"
    )
    plan_parser.add_argument("--json", action="store_true", help="Output as JSON")
    plan_parser.set_defaults(func=cmd_plan)

    validate_parser = subparsers.add_parser(
        "validate", help="Check a canvas for broken edges and rule violations"
    )
    validate_parser.add_argument("canvas", help="Path to a canvas JSON export")
    validate_parser.set_defaults(func=cmd_validate)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
