"""
Storyboard video pipeline.

``payload["stage"]`` walks Idle -> Selecting -> Prompting -> Generating ->
Completed. Without an explicit action the current stage decides what runs
next. A failed generation falls back to Prompting with the prompt and any
uploaded reference kept, so the user can retry without redoing earlier steps.
"""

import logging
import time

from studioflow.engine.errors import (
    CancellationSignal,
    EmptySelectionError,
    ExternalServiceError,
    MissingPromptError,
    MissingUpstreamError,
    NodeActionError,
    ValidationError,
)
from studioflow.engine.handlers.base import HandlerContext, NodeHandler
from studioflow.graph.growth import ChildSpec, StackLayout
from studioflow.graph.model import NodeKind, NodeStatus
from studioflow.runtime.cancellation import CancellationToken
from studioflow.schemas.shots import PipelineStage, VideoJobRequest

logger = logging.getLogger(__name__)

DEFAULT_MODEL_CONFIG = {"aspect_ratio": "16:9", "duration": "5", "quality": "standard"}

# Result children sit just right of the generator, one row per result
CHILD_OFFSET_X = 50.0
CHILD_ROW_HEIGHT = 150.0


class StoryboardVideoHandler(NodeHandler):
    kinds = (NodeKind.STORYBOARD_VIDEO_GENERATOR,)
    staged = True

    async def run(self, ctx: HandlerContext) -> None:
        stage = ctx.get("stage") or PipelineStage.IDLE
        action = ctx.action

        if action == "fetch-shots" or (action is None and stage == PipelineStage.IDLE):
            await self.fetch_shots(ctx)
        elif action == "generate-prompt" or (action is None and stage == PipelineStage.SELECTING):
            await self.build_prompt(ctx)
        elif action in ("reset", "revise"):
            await ctx.set_stage(PipelineStage.PROMPTING, progress=0)
        elif action in ("generate-video", "regenerate") or action is None:
            await self.generate(ctx)
        else:
            raise ValidationError(f"Unknown action '{action}'")

    # === STAGES ===

    async def fetch_shots(self, ctx: HandlerContext) -> None:
        splitter = ctx.first_upstream(NodeKind.STORYBOARD_SPLITTER)
        if splitter is None:
            raise MissingUpstreamError("Connect a storyboard splitter node")
        shots = splitter.get("split_shots") or []
        if not shots:
            raise MissingUpstreamError("The storyboard splitter has no shots")

        character_node = ctx.first_upstream(NodeKind.CHARACTER_NODE)
        characters = (character_node.get("generated_characters") or []) if character_node else []

        await ctx.set_stage(
            PipelineStage.SELECTING,
            available_shots=list(shots),
            selected_shot_ids=[],
            character_data=list(characters),
        )

    async def build_prompt(self, ctx: HandlerContext) -> None:
        selected_ids = ctx.get("selected_shot_ids") or []
        if not selected_ids:
            raise EmptySelectionError("Select at least one shot")

        wanted = set(selected_ids)
        shots = [s for s in ctx.get("available_shots") or [] if s.get("id") in wanted]

        builder = ctx.services.require("prompt_builder")
        prompt = await ctx.call(builder.build(shots), "prompt_builder")
        await ctx.set_stage(PipelineStage.PROMPTING, generated_prompt=prompt)

    async def generate(self, ctx: HandlerContext) -> None:
        prompt = ctx.get("generated_prompt")
        if not prompt:
            raise MissingPromptError("Generate a prompt first")
        ctx.services.require("video")

        model_config = ctx.get("model_config") or DEFAULT_MODEL_CONFIG
        await ctx.set_stage(PipelineStage.GENERATING, progress=0)

        try:
            await self._generate_video(ctx, prompt, model_config)
        except CancellationSignal:
            await ctx.update(progress=0)
            raise
        except NodeActionError as e:
            if e.rollback_stage is None:
                e.rollback_stage = PipelineStage.PROMPTING
            raise
        except Exception as e:
            logger.exception(f"Video generation failed for {ctx.node_id}")
            raise ExternalServiceError(
                str(e) or type(e).__name__, raw=e, rollback_stage=PipelineStage.PROMPTING
            ) from e

    async def _generate_video(self, ctx: HandlerContext, prompt: str, model_config: dict) -> None:
        """Submit the job and spawn its result child; any failure rolls back to Prompting."""
        video = ctx.services.require("video")
        token = ctx.new_token()
        reference = await self._reference_image(ctx, token)
        request = VideoJobRequest(
            prompt=prompt,
            duration=float(model_config.get("duration") or 5),
            reference_image=reference,
            model=ctx.get("selected_model"),
            aspect_ratio=model_config.get("aspect_ratio") or "16:9",
        )
        result = await token.guard(
            ctx.call(video.submit_job(request, ctx.progress_callback()), "video")
        )

        child_ids = list(ctx.get("child_node_ids") or [])
        index = len(child_ids) + 1
        spec = ChildSpec(
            kind=NodeKind.STORYBOARD_VIDEO_CHILD,
            title=f"Video result #{index}",
            status=NodeStatus.SUCCESS,
            payload={
                "prompt": prompt,
                "model_config": dict(model_config),
                "video_url": result.video_url,
                "video_duration": result.duration,
                "job_id": result.job_id,
                "fused_image_url": ctx.get("fused_image_url"),
            },
            id_prefix="n-sbv",
        )
        layout = StackLayout(
            item_height=CHILD_ROW_HEIGHT, gap=0, offset_x=CHILD_OFFSET_X, start_index=index - 1
        )
        growth = await ctx.grow([spec], layout=layout)

        await ctx.set_stage(
            PipelineStage.COMPLETED,
            progress=100,
            video_url=result.video_url,
            child_node_ids=[*child_ids, *growth.node_ids],
        )

    # === REFERENCE IMAGE ===

    async def _reference_image(self, ctx: HandlerContext, token: CancellationToken) -> str | None:
        """
        The reference image for the job, uploading it at most once.

        An already uploaded URL is reused. Otherwise the selected shots'
        images are fused when the node asks for a reference, then uploaded
        (progress 10 -> 20) or passed inline when no asset store is set up.
        """
        if ctx.get("fused_image_url"):
            return ctx.get("fused_image_url")

        fused = ctx.get("fused_image")
        fuser = ctx.services.image_fuser
        if not fused and ctx.get("use_reference_image") and fuser is not None:
            wanted = set(ctx.get("selected_shot_ids") or [])
            images = [
                s["split_image"]
                for s in ctx.get("available_shots") or []
                if s.get("id") in wanted and s.get("split_image")
            ]
            if images:
                fused = await token.guard(ctx.call(fuser.fuse(images), "image_fuser"))
                await ctx.update(fused_image=fused)

        if not fused:
            return None

        uploader = ctx.services.asset_uploader
        if uploader is None:
            return fused

        await ctx.report_progress(10)
        filename = f"storyboard-fusion-{ctx.node_id}-{int(time.time() * 1000)}.png"
        url = await token.guard(ctx.call(uploader.upload(fused, filename), "asset_uploader"))
        await ctx.update(fused_image_url=url)
        await ctx.report_progress(20)
        return url
