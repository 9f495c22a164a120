"""
Canvas Store - the single writer of canvas snapshots.

Every write builds a new frozen snapshot from the current one and swaps it in
under a lock, so concurrent handlers never lose each other's updates and a
reader always holds one complete snapshot. Each published write bumps
``version``.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from studioflow.graph.growth import ChildSpec, GrowthResult, Layout, spawn_children
from studioflow.graph.model import CanvasSnapshot, Node, NodeStatus
from studioflow.runtime.event_bus import EventBus

if TYPE_CHECKING:
    from studioflow.engine.services import HistoryRecorder

logger = logging.getLogger(__name__)


def merge_payload(payload: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Shallow merge; a ``None`` value in ``patch`` removes the key."""
    merged = dict(payload)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class CanvasStore:
    """
    Copy-on-write holder of the current ``CanvasSnapshot``.

    Example:
        store = CanvasStore(snapshot)
        await store.update_node("n-1", status=NodeStatus.WORKING, payload={"error": None})
        node = store.snapshot.get_node("n-1")
    """

    def __init__(self, snapshot: CanvasSnapshot | None = None, event_bus: EventBus | None = None):
        self._snapshot = snapshot or CanvasSnapshot()
        self._event_bus = event_bus
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> CanvasSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def get_node(self, node_id: str) -> Node | None:
        return self._snapshot.get_node(node_id)

    async def update_node(
        self,
        node_id: str,
        status: NodeStatus | None = None,
        payload: dict[str, Any] | None = None,
        title: str | None = None,
    ) -> Node | None:
        """
        Patch one node and publish the result.

        Returns:
            The updated node, or None when the node no longer exists
        """
        old_stage = None
        new_stage = None
        async with self._lock:
            current = self._snapshot.get_node(node_id)
            if current is None:
                logger.warning(f"Update for missing node {node_id} dropped")
                return None

            update: dict[str, Any] = {}
            if status is not None:
                update["status"] = status
            if title is not None:
                update["title"] = title
            if payload:
                update["payload"] = merge_payload(current.payload, payload)
                if "stage" in payload:
                    old_stage = current.payload.get("stage")
                    new_stage = payload["stage"]

            updated = current.model_copy(update=update)
            self._snapshot = self._snapshot.model_copy(
                update={
                    "nodes": [updated if n.id == node_id else n for n in self._snapshot.nodes],
                    "version": self._snapshot.version + 1,
                }
            )

        if self._event_bus and new_stage is not None and new_stage != old_stage:
            await self._event_bus.emit_stage_changed(node_id, old_stage, new_stage)
        return updated

    async def grow(
        self,
        parent_id: str,
        specs: list[ChildSpec],
        layout: Layout | None = None,
        group_title: str | None = None,
        history: "HistoryRecorder | None" = None,
    ) -> GrowthResult:
        """
        Spawn children under ``parent_id`` on the current snapshot.

        History is checkpointed once, right before the grown snapshot is
        published, so the whole fan-out undoes in one step.
        """
        async with self._lock:
            result = spawn_children(
                self._snapshot, parent_id, specs, layout=layout, group_title=group_title
            )
            if not result.nodes:
                return result
            if history is not None:
                history.save_history()
            self._snapshot = result.snapshot

        logger.info(f"Spawned {len(result.nodes)} node(s) under {parent_id}")
        if self._event_bus:
            await self._event_bus.emit_nodes_spawned(
                parent_id, result.node_ids, result.group.id if result.group else None
            )
        return result

    async def apply(self, change: Callable[[CanvasSnapshot], CanvasSnapshot]) -> CanvasSnapshot:
        """Publish ``change(current)``; the change must not mutate its argument."""
        async with self._lock:
            changed = change(self._snapshot)
            self._snapshot = changed.model_copy(
                update={"version": max(changed.version, self._snapshot.version + 1)}
            )
            snapshot = self._snapshot
        if self._event_bus:
            await self._event_bus.emit_snapshot_published(snapshot.version)
        return snapshot

    async def replace(self, snapshot: CanvasSnapshot) -> CanvasSnapshot:
        """Publish a whole snapshot (undo/redo, load). Version keeps increasing."""
        return await self.apply(lambda _current: snapshot)
