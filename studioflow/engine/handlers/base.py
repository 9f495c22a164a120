"""
Handler protocol and the context handed to every handler run.

A handler reads the canvas through ``HandlerContext``, writes only through
it, and signals failure by raising a ``NodeActionError``. It never sets the
node's final status; the executor does that.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, TypeVar

from studioflow.config import EngineConfig
from studioflow.engine.errors import (
    CancellationSignal,
    ExternalServiceError,
    MissingUpstreamError,
    NodeActionError,
)
from studioflow.engine.services import Services
from studioflow.graph.growth import ChildSpec, GrowthResult, Layout
from studioflow.graph.model import CanvasSnapshot, Node, NodeKind, NodeStatus
from studioflow.runtime.cancellation import CancellationToken
from studioflow.runtime.canvas_store import CanvasStore
from studioflow.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

T = TypeVar("T")


def map_progress(progress: int, window: tuple[int, int]) -> int:
    """Map a provider's 0-100 onto ``window``: ``lo + round(p * (hi - lo) / 100)``."""
    lo, hi = window
    progress = max(0, min(100, progress))
    return lo + round(progress * (hi - lo) / 100)


@dataclass
class HandlerContext:
    """Everything a handler may touch during one ``execute`` call."""

    node_id: str
    kind: NodeKind
    action: str | None
    store: CanvasStore
    services: Services
    config: EngineConfig
    event_bus: EventBus | None = None
    token_factory: Callable[[], CancellationToken] = field(default=CancellationToken)

    # === READS ===

    @property
    def snapshot(self) -> CanvasSnapshot:
        return self.store.snapshot

    @property
    def node(self) -> Node:
        """The node as of the latest published snapshot."""
        node = self.store.get_node(self.node_id)
        if node is None:
            raise MissingUpstreamError(f"Node {self.node_id} was removed")
        return node

    def get(self, key: str, default: Any = None) -> Any:
        return self.node.get(key, default)

    def upstream(self, kind: NodeKind | None = None) -> list[Node]:
        return self.snapshot.get_upstream_nodes(self.node_id, kind)

    def first_upstream(self, kind: NodeKind) -> Node | None:
        return next(iter(self.upstream(kind)), None)

    # === WRITES ===

    async def update(self, status: NodeStatus | None = None, **payload: Any) -> None:
        """Merge ``payload`` into this node; ``None`` values delete keys."""
        await self.store.update_node(self.node_id, status=status, payload=payload or None)

    async def update_node(
        self, node_id: str, status: NodeStatus | None = None, **payload: Any
    ) -> None:
        await self.store.update_node(node_id, status=status, payload=payload or None)

    async def set_stage(self, stage: str, **payload: Any) -> None:
        await self.update(stage=stage, **payload)

    async def report_progress(self, progress: int) -> None:
        await self.update(progress=progress)
        if self.event_bus:
            await self.event_bus.emit_progress(self.node_id, progress)

    def progress_callback(
        self, window: tuple[int, int] | None = None
    ) -> Callable[[int], Awaitable[None]]:
        """Callback for providers: 0-100 in, this node's progress window out."""
        window = window or self.config.progress_window

        async def on_progress(progress: int) -> None:
            await self.report_progress(map_progress(progress, window))

        return on_progress

    async def grow(
        self,
        specs: list[ChildSpec],
        layout: Layout | None = None,
        group_title: str | None = None,
    ) -> GrowthResult:
        """Spawn children under this node, checkpointing history first."""
        return await self.store.grow(
            self.node_id,
            specs,
            layout=layout,
            group_title=group_title,
            history=self.services.history,
        )

    # === COLLABORATORS ===

    def new_token(self) -> CancellationToken:
        """Cancellation token registered with the executor for this node."""
        return self.token_factory()

    async def call(self, awaitable: Awaitable[T], provider: str) -> T:
        """
        Await a collaborator call, wrapping foreign failures.

        Raises:
            CancellationSignal: unchanged
            NodeActionError: unchanged
            ExternalServiceError: for anything else the collaborator raises
        """
        try:
            return await awaitable
        except (CancellationSignal, NodeActionError):
            raise
        except Exception as e:
            logger.error(f"{provider} call failed for {self.node_id}: {e}")
            raise ExternalServiceError(str(e) or type(e).__name__, provider=provider, raw=e) from e

    async def cached_outputs(self) -> list[str] | None:
        """Outputs saved by an earlier run; lookup failures count as a miss."""
        store = self.services.output_store
        if store is None:
            return None
        try:
            return await store.check_cache(self.node_id, self.kind.value)
        except Exception as e:
            logger.warning(f"Output cache lookup failed for {self.node_id}: {e}")
            return None

    async def save_outputs(self, outputs: list[str]) -> None:
        """Persist outputs; failures are logged and never fail the node."""
        store = self.services.output_store
        if store is None or not outputs:
            return
        try:
            await store.save_output(self.node_id, self.kind.value, outputs)
        except Exception as e:
            logger.warning(f"Saving outputs failed for {self.node_id}: {e}")


class NodeHandler(ABC):
    """Runs one node kind."""

    kinds: ClassVar[tuple[NodeKind, ...]] = ()
    # Kinds whose payload carries a pipeline stage
    staged: ClassVar[bool] = False

    @abstractmethod
    async def run(self, ctx: HandlerContext) -> None:
        """Do the work for ``ctx.action``; raise ``NodeActionError`` on failure."""


class PassiveHandler(NodeHandler):
    """Kinds that only hold data produced elsewhere."""

    kinds = (
        NodeKind.STORYBOARD_SPLITTER,
        NodeKind.DRAMA_REFINED,
        NodeKind.SORA_VIDEO_CHILD,
        NodeKind.STORYBOARD_VIDEO_CHILD,
    )

    async def run(self, ctx: HandlerContext) -> None:
        logger.debug(f"{ctx.kind} node {ctx.node_id} has no action")
