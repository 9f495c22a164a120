"""
Output Store - file-backed generation cache.

Handlers call ``check_cache`` before an expensive generation and
``save_output`` after a successful one. Everything lives in one JSON index:

    {base_path}/
        index.json      # {"<kind>/<node_id>": OutputEntry}
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from studioflow.engine.services import OutputStore
from studioflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class OutputEntry(BaseModel):
    """Outputs saved for one node."""

    node_id: str
    kind: str
    outputs: list[str] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=datetime.now)


class OutputIndex(BaseModel):
    entries: dict[str, OutputEntry] = Field(default_factory=dict)


def _key(node_id: str, kind: str) -> str:
    return f"{kind}/{node_id}"


class FileOutputStore(OutputStore):
    """
    ``OutputStore`` persisted under ``base_path``.

    Blocking file I/O runs in a worker thread; index updates are serialized
    with a lock so concurrent saves never lose each other's entries.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.index_path = self.base_path / "index.json"
        self._index_lock = asyncio.Lock()

    def _read_index(self) -> OutputIndex:
        if not self.index_path.exists():
            return OutputIndex()
        try:
            return OutputIndex.model_validate_json(self.index_path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.error(f"Output index {self.index_path} is unreadable, starting empty: {e}")
            return OutputIndex()

    def _write_index(self, index: OutputIndex) -> None:
        with atomic_write(self.index_path) as f:
            f.write(index.model_dump_json(indent=2))

    async def check_cache(self, node_id: str, kind: str) -> list[str] | None:
        """
        Outputs saved for the node, or None on a miss.

        An entry with no outputs counts as a miss.
        """
        index = await asyncio.to_thread(self._read_index)
        entry = index.entries.get(_key(node_id, kind))
        if entry is None or not entry.outputs:
            return None
        logger.debug(f"Cache hit for {kind} {node_id}: {len(entry.outputs)} output(s)")
        return list(entry.outputs)

    async def save_output(self, node_id: str, kind: str, outputs: list[str]) -> None:
        def _save() -> None:
            index = self._read_index()
            index.entries[_key(node_id, kind)] = OutputEntry(
                node_id=node_id, kind=kind, outputs=list(outputs)
            )
            self._write_index(index)

        async with self._index_lock:
            await asyncio.to_thread(_save)
        logger.debug(f"Saved {len(outputs)} output(s) for {kind} {node_id}")

    async def clear(self, node_id: str | None = None) -> int:
        """
        Drop cached outputs for one node, or all of them.

        Returns:
            Number of entries removed
        """

        def _clear() -> int:
            index = self._read_index()
            if node_id is None:
                removed = len(index.entries)
                index.entries.clear()
            else:
                keys = [k for k, e in index.entries.items() if e.node_id == node_id]
                for k in keys:
                    del index.entries[k]
                removed = len(keys)
            self._write_index(index)
            return removed

        async with self._index_lock:
            return await asyncio.to_thread(_clear)
