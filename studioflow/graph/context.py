"""
Upstream Context Resolver.

Turns the ancestors of a node into:
- an ordered list of context strings, one per contributing ancestor
- a style triple (visual style, genre, setting) taken from the nearest
  script planner

Contributions are kind-dispatched: each kind maps its payload to at most one
string. Kinds without an entry contribute nothing. The resolver never raises.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from studioflow.graph.model import CanvasSnapshot, Node, NodeKind
from studioflow.graph.traversal import find_upstream, walk_upstream

DEFAULT_VISUAL_STYLE = "REAL"

# Drama analysis fields a user can opt in to propagate, with their labels
DRAMA_FIELD_LABELS: dict[str, str] = {
    "drama_introduction": "Drama introduction",
    "worldview": "Worldview",
    "logical_consistency": "Logical consistency",
    "extensibility": "Extensibility",
    "character_tags": "Character tags",
    "protagonist_arc": "Protagonist arc",
    "audience_resonance": "Audience resonance",
    "art_style": "Art style",
}


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _episode_lines(node: Node) -> str | None:
    episodes = node.get("generated_episodes") or []
    if not episodes:
        return None
    # Titles and cast only; full episode bodies would swamp downstream prompts
    return "\n".join(
        f"{ep.get('title', '')}\nCharacters: {ep.get('characters', '')}" for ep in episodes
    )


def _drama_selection(node: Node) -> str | None:
    selected = node.get("selected_fields") or []
    if not selected:
        return None
    parts = []
    for field_key in selected:
        label = DRAMA_FIELD_LABELS.get(field_key, field_key)
        value = node.get(field_key) or ""
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        parts.append(f"[{label}]\n{value}")
    return "\n\n".join(parts)


def _refined_tags(node: Node) -> str | None:
    refined = node.get("refined_content") or {}
    tags = refined.get("character_tags") or []
    if not tags:
        return None
    return f"Character tags: {', '.join(tags)}"


CONTRIBUTIONS: dict[NodeKind, Callable[[Node], str | None]] = {
    NodeKind.PROMPT_INPUT: lambda n: _text(n.get("prompt")),
    NodeKind.VIDEO_ANALYZER: lambda n: _text(n.get("analysis")),
    NodeKind.SCRIPT_EPISODE: _episode_lines,
    NodeKind.SCRIPT_PLANNER: lambda n: _text(n.get("script_outline")),
    NodeKind.DRAMA_ANALYZER: _drama_selection,
    NodeKind.DRAMA_REFINED: _refined_tags,
}


def contribution_of(node: Node) -> str | None:
    """The context string ``node`` contributes downstream, if any."""
    project = CONTRIBUTIONS.get(node.kind)
    if project is None:
        return None
    return project(node)


def resolve_upstream_context(snapshot: CanvasSnapshot, node_id: str) -> list[str]:
    """Context strings from every ancestor of ``node_id``, in traversal order."""
    return walk_upstream(snapshot, node_id, contribution_of)


def resolve_direct_context(snapshot: CanvasSnapshot, node_id: str) -> list[str]:
    """Context strings from the direct inputs of ``node_id`` only."""
    texts = []
    for node in snapshot.get_upstream_nodes(node_id):
        text = contribution_of(node)
        if text is not None:
            texts.append(text)
    return texts


def combine_prompt(context: list[str], prompt: str | None) -> str:
    """Upstream context first, then the node's own prompt, separated by blank lines."""
    combined = "\n\n".join(context)
    prompt = prompt or ""
    if combined and prompt:
        return f"{combined}\n\n{prompt}"
    return combined or prompt


# ---------------------------------------------------------------------------
# Style context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StyleContext:
    """Visual style inherited from the planning chain."""

    visual_style: str = DEFAULT_VISUAL_STYLE
    genre: str = ""
    setting: str = ""


def _from_planner(planner: Node, visual_style: str) -> StyleContext:
    return StyleContext(
        visual_style=planner.get("script_visual_style") or visual_style,
        genre=planner.get("script_genre") or "",
        setting=planner.get("script_setting") or "",
    )


def resolve_style_context(snapshot: CanvasSnapshot, node_id: str) -> StyleContext:
    """
    Find the style triple for ``node_id``.

    Search order, nearest first:
    1. a direct script episode input (and that episode's direct planner)
    2. a direct script planner input
    3. the nearest script planner anywhere upstream, depth-first

    Falls back to defaults when no planner is reachable.
    """
    node = snapshot.get_node(node_id)
    if node is None:
        return StyleContext()

    visual_style = node.get("script_visual_style") or DEFAULT_VISUAL_STYLE
    inputs = snapshot.get_upstream_nodes(node_id)

    episode = next((n for n in inputs if n.kind == NodeKind.SCRIPT_EPISODE), None)
    if episode is not None:
        visual_style = episode.get("script_visual_style") or visual_style
        planner = next(iter(snapshot.get_upstream_nodes(episode.id, NodeKind.SCRIPT_PLANNER)), None)
        if planner is not None:
            return _from_planner(planner, visual_style)
        return StyleContext(visual_style=visual_style)

    planner = next((n for n in inputs if n.kind == NodeKind.SCRIPT_PLANNER), None)
    if planner is None:
        planner = find_upstream(snapshot, node_id, lambda n: n.kind == NodeKind.SCRIPT_PLANNER)
    if planner is not None:
        return _from_planner(planner, visual_style)

    return StyleContext(visual_style=visual_style)


STYLE_PREAMBLES: dict[str, str] = {
    "ANIME": (
        "Anime style, Japanese 2D animation, vibrant colors, clean lines, high detail, "
        "8k resolution, cel shaded, flat color, expressive characters."
    ),
    "3D": (
        "Stylized 3D animation, semi-realistic, high precision modeling, PBR shading with soft "
        "translucency, subsurface scattering, ambient occlusion, flowing fabric, individual hair "
        "strands, soft ethereal lighting, cinematic rim lighting, vibrant colors."
    ),
    "REAL": (
        "Cinematic, photorealistic, 8k, raw photo, hyperrealistic, movie still, live action, "
        "cinematic lighting, depth of field, film grain, color graded."
    ),
}


def visual_prompt_prefix(style: str, genre: str = "", setting: str = "") -> str:
    """Style preamble prepended to image prompts so a batch shares one look."""
    base = STYLE_PREAMBLES.get(style, STYLE_PREAMBLES["REAL"])
    if genre:
        base += f" Genre: {genre}."
    if setting:
        base += f" Setting: {setting}."
    return base + " Unified art style, consistent character design across all generated images."
