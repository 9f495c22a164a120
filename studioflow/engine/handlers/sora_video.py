"""
Task-group video generation.

Split shots from the connected splitters are packed into task groups that
each fit one clip (``video_config["duration"]`` seconds). Every group then
moves through its own stages: prompt_ready -> image_fused -> generating ->
completed, or failed with the error kept on the group. Actions address a
group by its sequence number, e.g. ``generate-video:2``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

import pydantic

from studioflow.engine.errors import (
    CancellationSignal,
    ExternalServiceError,
    MissingPromptError,
    MissingUpstreamError,
    NodeActionError,
    ValidationError,
)
from studioflow.engine.handlers.base import HandlerContext, NodeHandler, map_progress
from studioflow.engine.services import ProgressCallback, VideoService
from studioflow.graph.grouping import TaskGroup, TaskGroupStage, WorkItem, group_work_items
from studioflow.graph.growth import ChildSpec, StackLayout
from studioflow.graph.model import NodeKind, NodeStatus
from studioflow.runtime.cancellation import CancellationToken
from studioflow.schemas.shots import DEFAULT_SHOT_SECONDS, VideoJobRequest, basic_shot_listing

logger = logging.getLogger(__name__)

CHILD_OFFSET_X = 50.0
CHILD_ROW_HEIGHT = 150.0

IN_FLIGHT = (TaskGroupStage.UPLOADING, TaskGroupStage.GENERATING)


@dataclass
class _Run:
    """State shared by the coroutines of one handler run."""

    groups: list[TaskGroup]
    token: CancellationToken
    child_ids: list[str] = field(default_factory=list)
    next_slot: int = 0

    def group(self, number: int) -> TaskGroup:
        for group in self.groups:
            if group.sequence_number == number:
                return group
        raise ValidationError(f"No task group #{number}")


class SoraVideoHandler(NodeHandler):
    kinds = (NodeKind.SORA_VIDEO_GENERATOR,)

    async def run(self, ctx: HandlerContext) -> None:
        if ctx.action is None:
            await self.build_groups(ctx)
            return

        name, _, arg = ctx.action.partition(":")
        run = _Run(
            groups=[TaskGroup.model_validate(g) for g in ctx.get("task_groups") or []],
            token=ctx.new_token(),
            child_ids=list(ctx.get("child_node_ids") or []),
        )
        run.next_slot = len(run.child_ids)
        if not run.groups:
            raise MissingUpstreamError("Build the task groups first")

        try:
            if name == "regenerate-prompt":
                await self.regenerate_prompt(ctx, run, run.group(self._index(arg)))
            elif name == "remove-sensitive-words":
                await self.remove_sensitive_words(ctx, run, run.group(self._index(arg)))
            elif name == "fuse-images":
                await self.fuse_images(ctx, run)
            elif name == "generate-video":
                await self.generate_one(ctx, run, run.group(self._index(arg)))
            elif name == "generate-videos":
                await self.generate_all(ctx, run)
            else:
                raise ValidationError(f"Unknown action '{ctx.action}'")
        except CancellationSignal:
            for group in run.groups:
                if group.stage in IN_FLIGHT:
                    group.stage = TaskGroupStage.PROMPT_READY
                    group.progress = 0
            await self._publish(ctx, run)
            raise

    @staticmethod
    def _index(arg: str) -> int:
        try:
            return int(arg)
        except ValueError:
            raise ValidationError(f"Invalid task group index '{arg}'") from None

    async def _publish(self, ctx: HandlerContext, run: _Run) -> None:
        await ctx.update(
            task_groups=[g.model_dump(mode="json") for g in run.groups],
            child_node_ids=list(run.child_ids),
        )

    # === GROUPING ===

    async def build_groups(self, ctx: HandlerContext) -> None:
        splitters = ctx.upstream(NodeKind.STORYBOARD_SPLITTER)
        if not splitters:
            raise MissingUpstreamError("Connect a storyboard splitter node")
        shots = [shot for splitter in splitters for shot in splitter.get("split_shots") or []]
        if not shots:
            raise MissingUpstreamError("The connected splitters have no shots")

        video_config = ctx.get("video_config") or {}
        max_duration = float(video_config.get("duration") or ctx.config.max_task_duration)

        try:
            items = [
                WorkItem(duration=float(s.get("duration") or DEFAULT_SHOT_SECONDS), payload=s)
                for s in shots
            ]
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid shot duration: {e.errors()[0]['msg']}") from e
        groups = group_work_items(items, max_duration, id_prefix=f"{ctx.node_id}-tg")
        logger.info(
            f"Packed {len(items)} shot(s) into {len(groups)} task group(s) of <= {max_duration}s"
        )

        for group in groups:
            group.prompt = await self._build_prompt(ctx, group)
            group.stage = TaskGroupStage.PROMPT_READY

        await ctx.update(task_groups=[g.model_dump(mode="json") for g in groups])

    async def _build_prompt(self, ctx: HandlerContext, group: TaskGroup) -> str:
        shots = [item.payload for item in group.items]
        builder = ctx.services.prompt_builder
        if builder is None:
            return basic_shot_listing(shots, include_black_screen=True)
        try:
            return await ctx.call(builder.build(shots, include_black_screen=True), "prompt_builder")
        except NodeActionError as e:
            logger.warning(
                f"Prompt builder failed for {group.id}, using the plain listing: {e.message}"
            )
            return basic_shot_listing(shots, include_black_screen=True)

    # === PROMPTS ===

    async def regenerate_prompt(self, ctx: HandlerContext, run: _Run, group: TaskGroup) -> None:
        group.prompt = await self._build_prompt(ctx, group)
        group.prompt_modified = False
        group.error = None
        group.stage = TaskGroupStage.PROMPT_READY
        await self._publish(ctx, run)

    async def remove_sensitive_words(
        self, ctx: HandlerContext, run: _Run, group: TaskGroup
    ) -> None:
        if not group.prompt:
            raise MissingPromptError(f"Task group #{group.sequence_number} has no prompt")
        text = ctx.services.require("text")
        group.prompt = await run.token.guard(ctx.call(text.sanitize_prompt(group.prompt), "text"))
        group.prompt_modified = True
        await self._publish(ctx, run)

    # === REFERENCE IMAGES ===

    async def fuse_images(self, ctx: HandlerContext, run: _Run) -> None:
        fuser = ctx.services.require("image_fuser")
        uploader = ctx.services.asset_uploader

        for group in run.groups:
            images = [
                item.payload.get("split_image")
                for item in group.items
                if item.payload.get("split_image")
            ]
            if not images:
                logger.debug(f"No shot images in {group.id}, skipping fusion")
                continue

            fused = await run.token.guard(ctx.call(fuser.fuse(images), "image_fuser"))
            if uploader is not None:
                group.stage = TaskGroupStage.UPLOADING
                await self._publish(ctx, run)
                filename = f"sora-reference-{group.id}-{int(time.time() * 1000)}.png"
                fused = await run.token.guard(
                    ctx.call(uploader.upload(fused, filename), "asset_uploader")
                )

            group.reference_image = fused
            group.stage = TaskGroupStage.IMAGE_FUSED
            await self._publish(ctx, run)

    # === GENERATION ===

    async def generate_one(self, ctx: HandlerContext, run: _Run, group: TaskGroup) -> None:
        await self._generate(ctx, run, group)

    async def generate_all(self, ctx: HandlerContext, run: _Run) -> None:
        pending = [g for g in run.groups if g.stage != TaskGroupStage.COMPLETED]
        if not pending:
            logger.info(f"All task groups of {ctx.node_id} are already completed")
            return

        results = await asyncio.gather(
            *(self._generate(ctx, run, g) for g in pending), return_exceptions=True
        )

        for result in results:
            if isinstance(result, CancellationSignal):
                raise result
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            if not isinstance(failure, NodeActionError):
                raise failure
        if failures and len(failures) == len(pending):
            raise NodeActionError(f"All {len(pending)} task groups failed: {failures[0].message}")
        if failures:
            logger.warning(
                f"{len(failures)} of {len(pending)} task groups failed for {ctx.node_id}"
            )

    async def _generate(self, ctx: HandlerContext, run: _Run, group: TaskGroup) -> None:
        if not group.prompt:
            raise MissingPromptError(f"Task group #{group.sequence_number} has no prompt")
        video = ctx.services.require("video")
        video_config = ctx.get("video_config") or {}

        group.stage = TaskGroupStage.GENERATING
        group.progress = 0
        group.error = None
        await self._publish(ctx, run)

        async def on_progress(progress: int) -> None:
            group.progress = map_progress(progress, ctx.config.progress_window)
            await self._publish(ctx, run)

        try:
            await self._submit(ctx, run, group, video, video_config, on_progress)
        except CancellationSignal:
            raise
        except NodeActionError as e:
            await self._fail_group(ctx, run, group, e.message)
            raise
        except Exception as e:
            logger.exception(f"Task group {group.id} failed unexpectedly")
            message = str(e) or type(e).__name__
            await self._fail_group(ctx, run, group, message)
            raise ExternalServiceError(message, raw=e) from e

    async def _fail_group(self, ctx: HandlerContext, run: _Run, group: TaskGroup, message: str):
        group.stage = TaskGroupStage.FAILED
        group.error = message
        group.progress = 0
        await self._publish(ctx, run)

    async def _submit(
        self,
        ctx: HandlerContext,
        run: _Run,
        group: TaskGroup,
        video: VideoService,
        video_config: dict,
        on_progress: ProgressCallback,
    ) -> None:
        request = VideoJobRequest(
            prompt=group.prompt,
            duration=group.total_duration or ctx.config.max_task_duration,
            reference_image=group.reference_image,
            model=video_config.get("model"),
            aspect_ratio=video_config.get("aspect_ratio") or "16:9",
        )
        result = await run.token.guard(ctx.call(video.submit_job(request, on_progress), "video"))

        group.remote_job_id = result.job_id
        group.video_url = result.video_url

        # Reserved before awaiting so concurrent groups get distinct rows
        slot = run.next_slot
        run.next_slot += 1
        spec = ChildSpec(
            kind=NodeKind.SORA_VIDEO_CHILD,
            title=f"Task group #{group.sequence_number}",
            status=NodeStatus.SUCCESS,
            payload={
                "task_group_id": group.id,
                "sequence_number": group.sequence_number,
                "prompt": group.prompt,
                "video_url": result.video_url,
                "video_duration": result.duration or group.total_duration,
                "job_id": result.job_id,
            },
            id_prefix="n-sora",
        )
        layout = StackLayout(
            item_height=CHILD_ROW_HEIGHT, gap=0, offset_x=CHILD_OFFSET_X, start_index=slot
        )
        growth = await ctx.grow([spec], layout=layout)
        run.child_ids.extend(growth.node_ids)

        group.stage = TaskGroupStage.COMPLETED
        group.progress = 100
        await self._publish(ctx, run)
