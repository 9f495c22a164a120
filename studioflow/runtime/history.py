"""
Canvas History - undo/redo checkpoints over published snapshots.

Snapshots are immutable, so a checkpoint is just a reference; no copying.
"""

import logging

from studioflow.config import DEFAULT_HISTORY_SIZE
from studioflow.engine.services import HistoryRecorder
from studioflow.graph.model import CanvasSnapshot
from studioflow.runtime.canvas_store import CanvasStore

logger = logging.getLogger(__name__)


class CanvasHistory(HistoryRecorder):
    """
    Bounded undo/redo stack bound to a ``CanvasStore``.

    ``save_history()`` records the store's current snapshot. Recording after
    an undo drops the redo branch. The oldest checkpoint is discarded once
    ``max_size`` is exceeded.
    """

    def __init__(self, store: CanvasStore, max_size: int = DEFAULT_HISTORY_SIZE):
        self._store = store
        self._max_size = max_size
        self._undo: list[CanvasSnapshot] = []
        self._redo: list[CanvasSnapshot] = []

    def save_history(self) -> None:
        self._undo.append(self._store.snapshot)
        if len(self._undo) > self._max_size:
            self._undo.pop(0)
        self._redo.clear()
        logger.debug(
            f"Checkpoint saved at version {self._store.version} ({len(self._undo)} in history)"
        )

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    async def undo(self) -> CanvasSnapshot | None:
        """Restore the last checkpoint; None when there is nothing to undo."""
        if not self._undo:
            return None
        self._redo.append(self._store.snapshot)
        return await self._store.replace(self._undo.pop())

    async def redo(self) -> CanvasSnapshot | None:
        if not self._redo:
            return None
        self._undo.append(self._store.snapshot)
        return await self._store.replace(self._redo.pop())

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
