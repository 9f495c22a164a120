"""
Node Action Executor - runs one action on one node.

``execute`` is the single entry point the canvas calls. It owns the node's
status transitions (working, then success or error), records failures in
``payload["error"]`` and never lets an exception escape: a handler failure
is something to show on the node, not a crash of the caller.

Example:
    store = CanvasStore(snapshot, event_bus=bus)
    executor = NodeActionExecutor(store, services, event_bus=bus)
    await executor.execute("n-42", "generate-video")
    executor.cancel("n-42")  # from another task, while the job runs
"""

import logging
import time
import uuid

from studioflow.config import EngineConfig
from studioflow.engine.errors import (
    CancellationSignal,
    ExternalServiceError,
    NodeActionError,
)
from studioflow.engine.handlers import HandlerContext, NodeHandler, default_handlers
from studioflow.engine.services import Services
from studioflow.graph.model import Node, NodeKind, NodeStatus
from studioflow.observability import reset_trace_context, set_trace_context
from studioflow.runtime.cancellation import CancellationToken
from studioflow.runtime.canvas_store import CanvasStore
from studioflow.runtime.event_bus import EventBus
from studioflow.schemas.shots import PipelineStage

logger = logging.getLogger(__name__)

CANCEL_ACTION = "cancel"


class NodeActionExecutor:
    """
    Dispatches node actions to handlers and applies their outcome.

    A node runs at most once at a time per executor: a second ``execute``
    for a node that is still running is rejected with a warning and a
    ``node_rejected`` event. ``cancel`` is the only action accepted while
    the node runs.
    """

    def __init__(
        self,
        store: CanvasStore,
        services: Services | None = None,
        handlers: dict[NodeKind, NodeHandler] | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.services = services or Services()
        self.handlers = handlers if handlers is not None else default_handlers()
        self.event_bus = event_bus
        self.config = config or EngineConfig()
        self._running: set[str] = set()
        self._tokens: dict[str, CancellationToken] = {}

    def is_running(self, node_id: str) -> bool:
        return node_id in self._running

    def cancel(self, node_id: str) -> bool:
        """
        Signal the in-flight call of ``node_id``.

        Returns:
            True if there was something to cancel
        """
        token = self._tokens.get(node_id)
        if token is None:
            logger.info(f"Nothing to cancel for {node_id}")
            return False
        token.cancel()
        return True

    async def execute(self, node_id: str, action: str | None = None) -> None:
        """Run ``action`` on ``node_id``. Never raises."""
        node = self.store.get_node(node_id)
        if node is None:
            logger.warning(f"Execute on missing node {node_id} ignored")
            return

        if action == CANCEL_ACTION:
            self.cancel(node_id)
            return

        if node_id in self._running:
            logger.warning(f"Node {node_id} is already running, rejecting action {action!r}")
            if self.event_bus:
                await self.event_bus.emit_node_rejected(node_id, node.kind.value, action)
            return

        self._running.add(node_id)
        token = CancellationToken(label=node_id)
        self._tokens[node_id] = token
        trace = set_trace_context(
            execution_id=uuid.uuid4().hex,
            node_id=node_id,
            node_kind=node.kind.value,
            action=action,
        )
        try:
            await self._run(node, action, token)
        finally:
            reset_trace_context(trace)
            self._running.discard(node_id)
            if self._tokens.get(node_id) is token:
                del self._tokens[node_id]

    async def _run(self, node: Node, action: str | None, token: CancellationToken) -> None:
        node_id = node.id
        kind = node.kind

        handler = self.handlers.get(kind)
        logger.info(f"▶ {kind.value} {node_id}" + (f" [{action}]" if action else ""))
        await self.store.update_node(node_id, status=NodeStatus.WORKING, payload={"error": None})
        if self.event_bus:
            await self.event_bus.emit_node_started(node_id, kind.value, action)

        start = time.monotonic()
        try:
            if handler is None:
                raise NodeActionError(f"No handler registered for {kind.value}")
            ctx = HandlerContext(
                node_id=node_id,
                kind=kind,
                action=action,
                store=self.store,
                services=self.services,
                config=self.config,
                event_bus=self.event_bus,
                token_factory=lambda: token,
            )
            await handler.run(ctx)
        except CancellationSignal:
            await self._on_cancelled(node_id, kind, action, handler)
        except NodeActionError as e:
            await self._on_failed(node_id, kind, action, e)
        except Exception as e:
            logger.exception(f"Unexpected error in {kind.value} {node_id}")
            wrapped = ExternalServiceError(str(e) or type(e).__name__, raw=e)
            await self._on_failed(node_id, kind, action, wrapped)
        else:
            latency_ms = int((time.monotonic() - start) * 1000)
            await self.store.update_node(node_id, status=NodeStatus.SUCCESS)
            logger.info(f"✓ {kind.value} {node_id} done in {latency_ms}ms")
            if self.event_bus:
                await self.event_bus.emit_node_completed(
                    node_id, kind.value, action, latency_ms=latency_ms
                )

    async def _on_cancelled(
        self, node_id: str, kind: NodeKind, action: str | None, handler: NodeHandler | None
    ) -> None:
        payload: dict = {"error": None}
        if handler is not None and handler.staged:
            payload["stage"] = PipelineStage.PROMPTING
        await self.store.update_node(node_id, status=NodeStatus.SUCCESS, payload=payload)
        logger.info(f"⏹ {kind.value} {node_id} cancelled")
        if self.event_bus:
            await self.event_bus.emit_node_cancelled(node_id, kind.value, action)

    async def _on_failed(
        self, node_id: str, kind: NodeKind, action: str | None, error: NodeActionError
    ) -> None:
        payload = {**error.partial, "error": error.message}
        if error.rollback_stage is not None:
            payload["stage"] = error.rollback_stage
        await self.store.update_node(node_id, status=NodeStatus.ERROR, payload=payload)
        logger.error(f"✗ {kind.value} {node_id} failed: {error.message}")
        if self.event_bus:
            await self.event_bus.emit_node_failed(node_id, kind.value, error.message, action)
