"""Backward traversal over node inputs.

One depth-first walk shared by the context resolver and the style search.
The walk is guarded by a visited set, so cyclic canvases (which the editor
does not prevent) terminate in O(V + E) and every ancestor is seen once.
"""

from collections.abc import Callable, Iterator
from typing import TypeVar

from studioflow.graph.model import CanvasSnapshot, Node

T = TypeVar("T")


def iter_upstream(snapshot: CanvasSnapshot, start_id: str) -> Iterator[Node]:
    """
    Yield every ancestor of ``start_id`` in depth-first pre-order.

    Direct inputs are taken in ``inputs`` order and each one's own ancestors
    are exhausted before its next sibling. The start node is never yielded,
    even when a cycle leads back to it. Dangling input ids are skipped.
    """
    start = snapshot.get_node(start_id)
    if start is None:
        return

    by_id = {node.id: node for node in snapshot.nodes}
    visited = {start.id}
    stack = [by_id[i] for i in reversed(start.inputs) if i in by_id]

    while stack:
        node = stack.pop()
        if node.id in visited:
            continue
        visited.add(node.id)
        yield node
        stack.extend(by_id[i] for i in reversed(node.inputs) if i in by_id and i not in visited)


def walk_upstream(
    snapshot: CanvasSnapshot,
    start_id: str,
    contribute: Callable[[Node], T | None],
) -> list[T]:
    """Collect ``contribute(node)`` for every ancestor, dropping ``None`` results."""
    results: list[T] = []
    for node in iter_upstream(snapshot, start_id):
        value = contribute(node)
        if value is not None:
            results.append(value)
    return results


def find_upstream(
    snapshot: CanvasSnapshot,
    start_id: str,
    predicate: Callable[[Node], bool],
) -> Node | None:
    """Nearest ancestor matching ``predicate`` under the same depth-first order."""
    for node in iter_upstream(snapshot, start_id):
        if predicate(node):
            return node
    return None
