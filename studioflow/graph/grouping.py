"""
Task Grouping - partition ordered, timed work items into batches.

Each batch becomes one downstream generation call, so a batch's summed
duration must stay within the provider's clip length. Items are never
reordered: shots have to play back in script order.
"""

from collections.abc import Iterable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class WorkItem(BaseModel):
    """One ordered unit of work with a duration in seconds."""

    duration: float = Field(ge=0)
    payload: Any = None


class TaskGroupStage(StrEnum):
    """Generation progress of a single task group."""

    IDLE = "idle"
    PROMPT_READY = "prompt_ready"
    IMAGE_FUSED = "image_fused"
    UPLOADING = "uploading"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskGroup(BaseModel):
    """An ordered batch of work items plus the fields later pipeline steps fill in."""

    id: str
    sequence_number: int
    items: list[WorkItem] = Field(default_factory=list)
    total_duration: float = 0.0
    stage: TaskGroupStage = TaskGroupStage.IDLE

    # Written by later steps
    prompt: str = ""
    prompt_modified: bool = False
    reference_image: str | None = None
    remote_job_id: str | None = None
    progress: int = 0
    video_url: str | None = None
    error: str | None = None

    model_config = {"extra": "allow"}

    @property
    def is_empty(self) -> bool:
        return not self.items


def group_work_items(
    items: Iterable[WorkItem],
    max_duration: float,
    id_prefix: str = "tg",
) -> list[TaskGroup]:
    """
    Greedy single pass over ``items``.

    The current group is closed when adding the next item would push it past
    ``max_duration`` and it already holds something. The item is then always
    added, so an item longer than ``max_duration`` ends up alone in its own
    over-limit group instead of being dropped or split.

    Not an optimal packing (no look-ahead, no reordering), but linear,
    deterministic and order preserving.

    Raises:
        ValueError: if ``max_duration`` is not positive.
    """
    if max_duration <= 0:
        raise ValueError(f"max_duration must be positive, got {max_duration}")

    groups: list[TaskGroup] = []

    def new_group() -> TaskGroup:
        number = len(groups) + 1
        return TaskGroup(id=f"{id_prefix}-{number}", sequence_number=number)

    current = new_group()
    for item in items:
        if current.total_duration + item.duration > max_duration and not current.is_empty:
            groups.append(current)
            current = new_group()
        current.items.append(item)
        current.total_duration += item.duration

    if not current.is_empty:
        groups.append(current)

    return groups
