"""Connection rules for authoring the canvas.

Which kinds may feed which, how many inputs a kind accepts, and the minimal
configuration a node needs before it can run. Kinds missing from the table
are unconstrained. Cycles are reported as warnings, not errors: the engine
tolerates them.
"""

import logging
from dataclasses import dataclass, field

from studioflow.graph.model import CanvasSnapshot, Connection, Node, NodeKind
from studioflow.graph.traversal import iter_upstream

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating a connection or a node."""

    success: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


@dataclass(frozen=True)
class KindRule:
    allowed_inputs: frozenset[NodeKind]
    min_inputs: int
    max_inputs: int


def _rule(allowed: list[NodeKind], min_inputs: int, max_inputs: int) -> KindRule:
    return KindRule(frozenset(allowed), min_inputs, max_inputs)


K = NodeKind

CONNECTION_RULES: dict[NodeKind, KindRule] = {
    K.PROMPT_INPUT: _rule([], 0, 0),
    K.IMAGE_GENERATOR: _rule(
        [K.PROMPT_INPUT, K.IMAGE_GENERATOR, K.IMAGE_EDITOR, K.STORYBOARD_GENERATOR,
         K.CHARACTER_NODE, K.DRAMA_REFINED, K.SCRIPT_EPISODE, K.STYLE_PRESET],
        0, 5,
    ),
    K.VIDEO_GENERATOR: _rule(
        [K.PROMPT_INPUT, K.IMAGE_GENERATOR, K.VIDEO_GENERATOR, K.IMAGE_EDITOR,
         K.STORYBOARD_GENERATOR, K.CHARACTER_NODE, K.VIDEO_ANALYZER, K.STYLE_PRESET],
        0, 3,
    ),
    K.AUDIO_GENERATOR: _rule([K.PROMPT_INPUT, K.STYLE_PRESET], 1, 2),
    K.VIDEO_ANALYZER: _rule([K.VIDEO_GENERATOR], 1, 1),
    K.IMAGE_EDITOR: _rule([K.IMAGE_GENERATOR, K.IMAGE_EDITOR, K.STYLE_PRESET], 1, 2),
    K.SCRIPT_PLANNER: _rule(
        [K.PROMPT_INPUT, K.VIDEO_ANALYZER, K.DRAMA_REFINED, K.DRAMA_ANALYZER], 0, 3
    ),
    K.SCRIPT_EPISODE: _rule([K.SCRIPT_PLANNER, K.DRAMA_REFINED], 1, 2),
    K.STORYBOARD_GENERATOR: _rule([K.SCRIPT_EPISODE, K.PROMPT_INPUT], 1, 1),
    K.CHARACTER_NODE: _rule([K.SCRIPT_PLANNER, K.SCRIPT_EPISODE, K.PROMPT_INPUT], 1, 2),
    K.DRAMA_ANALYZER: _rule([], 0, 0),
    K.DRAMA_REFINED: _rule([K.DRAMA_ANALYZER], 1, 1),
}

# Payload keys a kind needs before it can run, with the message shown when missing
REQUIRED_FIELDS: dict[NodeKind, tuple[str, str]] = {
    K.SCRIPT_EPISODE: ("selected_chapter", "Select a chapter to split"),
    K.DRAMA_ANALYZER: ("drama_name", "Enter a drama name"),
    K.IMAGE_EDITOR: ("prompt", "Enter an edit instruction"),
}

PROMPT_OR_INPUT_KINDS = {K.IMAGE_GENERATOR, K.VIDEO_GENERATOR, K.AUDIO_GENERATOR}


def _creates_cycle(snapshot: CanvasSnapshot, source_id: str, target_id: str) -> bool:
    """Adding ``source -> target`` closes a loop iff ``target`` is upstream of ``source``."""
    return any(node.id == target_id for node in iter_upstream(snapshot, source_id))


def validate_connection(
    snapshot: CanvasSnapshot, source_id: str, target_id: str
) -> ValidationResult:
    """Check whether ``source -> target`` may be authored on ``snapshot``."""
    errors: list[str] = []
    warnings: list[str] = []

    if source_id == target_id:
        return ValidationResult(success=False, errors=["A node cannot connect to itself"])

    source = snapshot.get_node(source_id)
    target = snapshot.get_node(target_id)
    if source is None or target is None:
        missing = source_id if source is None else target_id
        return ValidationResult(success=False, errors=[f"Unknown node '{missing}'"])

    if source_id in target.inputs:
        errors.append("Connection already exists")

    rule = CONNECTION_RULES.get(target.kind)
    if rule is not None:
        if source.kind not in rule.allowed_inputs:
            errors.append(f"'{target.kind}' does not accept input from '{source.kind}'")
        if len(target.inputs) >= rule.max_inputs:
            errors.append(f"'{target.kind}' accepts at most {rule.max_inputs} input(s)")

    if _creates_cycle(snapshot, source_id, target_id):
        warnings.append(f"Connecting '{source_id}' -> '{target_id}' creates a cycle")

    return ValidationResult(success=not errors, errors=errors, warnings=warnings)


def connect(snapshot: CanvasSnapshot, source_id: str, target_id: str) -> CanvasSnapshot:
    """
    Return a new snapshot with ``source -> target`` added to both edge representations.

    Raises:
        ValueError: if the connection violates the rules
    """
    result = validate_connection(snapshot, source_id, target_id)
    if not result.success:
        raise ValueError(result.error)
    for warning in result.warnings:
        logger.warning(warning)

    nodes = [
        n.model_copy(update={"inputs": [*n.inputs, source_id]}) if n.id == target_id else n
        for n in snapshot.nodes
    ]
    return snapshot.model_copy(
        update={
            "nodes": nodes,
            "connections": [*snapshot.connections, Connection(source=source_id, target=target_id)],
            "version": snapshot.version + 1,
        }
    )


def check_ready(snapshot: CanvasSnapshot, node: Node) -> ValidationResult:
    """Minimal pre-flight check: input count and required configuration."""
    errors: list[str] = []
    input_count = len(snapshot.get_nodes_by_ids(node.inputs))

    rule = CONNECTION_RULES.get(node.kind)
    if rule is not None and input_count < rule.min_inputs:
        errors.append(f"'{node.kind}' needs at least {rule.min_inputs} input(s)")

    required = REQUIRED_FIELDS.get(node.kind)
    if required is not None and not node.get(required[0]):
        errors.append(required[1])

    if node.kind in PROMPT_OR_INPUT_KINDS and not node.get("prompt") and input_count == 0:
        errors.append("Enter a prompt or connect an input node")

    return ValidationResult(success=not errors, errors=errors)


def validate_snapshot(snapshot: CanvasSnapshot) -> ValidationResult:
    """
    Check a whole canvas.

    Broken edges and rule violations are errors. Nodes that are merely not
    ready to run yet are reported as warnings.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not snapshot.edges_consistent():
        errors.append("Node inputs and the connection list disagree")

    for node in snapshot.nodes:
        rule = CONNECTION_RULES.get(node.kind)
        for input_id in node.inputs:
            source = snapshot.get_node(input_id)
            if source is None:
                errors.append(f"{node.id}: unknown input '{input_id}'")
            elif rule is not None and source.kind not in rule.allowed_inputs:
                errors.append(
                    f"{node.id}: '{node.kind}' does not accept input from '{source.kind}'"
                )
        if rule is not None and len(node.inputs) > rule.max_inputs:
            errors.append(f"{node.id}: '{node.kind}' accepts at most {rule.max_inputs} input(s)")

        ready = check_ready(snapshot, node)
        warnings.extend(f"{node.id}: {e}" for e in ready.errors)

    return ValidationResult(success=not errors, errors=errors, warnings=warnings)
