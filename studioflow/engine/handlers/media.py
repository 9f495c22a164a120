"""
Handlers for the media kinds: images, edits, videos, audio, video analysis
and storyboards.

Generators consult the output store first and save what they produce; both
steps are best effort.
"""

import asyncio
import json
import logging
import math
import re
from typing import Any

from studioflow.engine.errors import (
    ExternalServiceError,
    MissingUpstreamError,
    NodeActionError,
    ValidationError,
)
from studioflow.engine.handlers.base import HandlerContext, NodeHandler
from studioflow.engine.handlers.content import direct_prompt, style_prompt_of
from studioflow.graph.context import (
    resolve_direct_context,
    resolve_style_context,
    visual_prompt_prefix,
)
from studioflow.graph.growth import ChildSpec, GridLayout
from studioflow.graph.model import Node, NodeKind, NodeStatus, Size
from studioflow.schemas.shots import StoryboardShot

logger = logging.getLogger(__name__)

STORYBOARD_REQUEST = re.compile(r"分镜|storyboard|sequence|shots|frames|json", re.IGNORECASE)
FALLBACK_IMAGE_NOTICE = "Region restricted: generated a preview image instead."
SUPPORTED_RATIOS = ["1:1", "4:3", "3:4", "16:9", "9:16", "21:9", "9:21"]

# grid type -> (columns, rows)
STORYBOARD_GRIDS: dict[str, tuple[int, int]] = {"9": (3, 3), "6": (3, 2)}

# Payload keys a spawned storyboard child must not inherit from its parent
_NOT_INHERITED = ("image", "images", "error", "is_cached", "progress")


def styled(prefix: str, prompt: str) -> str:
    return f"{prefix}, {prompt}" if prefix else prompt


def upstream_images(ctx: HandlerContext) -> list[str]:
    return [n.get("image") for n in ctx.upstream() if n.get("image")]


def parse_ratio(ratio: str) -> tuple[int, int]:
    try:
        width, height = (int(part) for part in ratio.split(":"))
    except ValueError:
        return 16, 9
    return (width, height) if width > 0 and height > 0 else (16, 9)


def grid_aspect_ratio(columns: int, rows: int, panel_ratio: str = "16:9") -> str:
    """The supported aspect ratio closest to a ``columns x rows`` grid of ``panel_ratio`` panels."""
    panel_w, panel_h = parse_ratio(panel_ratio)
    target = (columns * panel_w) / (rows * panel_h)

    def distance(ratio: str) -> float:
        w, h = parse_ratio(ratio)
        return abs(w / h - target)

    return min(SUPPORTED_RATIOS, key=distance)


class ImageGeneratorHandler(NodeHandler):
    """
    Generates images from the combined prompt.

    A prompt that reads like a storyboard request is first planned into shot
    prompts; more than one shot fans out into a grid of child generators, each
    rendered concurrently and carrying its own status.
    """

    kinds = (NodeKind.IMAGE_GENERATOR,)
    columns = 3

    async def run(self, ctx: HandlerContext) -> None:
        prompt = styled(style_prompt_of(ctx), direct_prompt(ctx))
        if not prompt.strip():
            raise ValidationError("Enter a prompt or connect an input node")

        image = ctx.services.require("image")
        references = upstream_images(ctx)

        if STORYBOARD_REQUEST.search(prompt) and ctx.services.text is not None:
            shot_prompts = await self._plan(ctx, prompt)
            if len(shot_prompts) > 1:
                await self._fan_out(ctx, image, shot_prompts, references)
                return

        cached = await ctx.cached_outputs()
        if cached:
            await ctx.update(image=cached[0], images=cached, is_cached=True)
            return

        images = await ctx.call(
            image.generate(
                prompt,
                references or None,
                aspect_ratio=ctx.get("aspect_ratio") or "16:9",
                count=ctx.get("image_count") or 1,
            ),
            "image",
        )
        if not images:
            raise ExternalServiceError("Image service returned no images", provider="image")

        await ctx.update(image=images[0], images=images, is_cached=False)
        await ctx.save_outputs(images)

    async def _plan(self, ctx: HandlerContext, prompt: str) -> list[str]:
        context = "\n".join(resolve_direct_context(ctx.snapshot, ctx.node_id))
        try:
            return await ctx.call(ctx.services.text.plan_storyboard(prompt, context), "text")
        except ExternalServiceError as e:
            logger.warning(
                f"Storyboard planning failed for {ctx.node_id}, generating a single image: {e}"
            )
            return []

    async def _fan_out(
        self, ctx: HandlerContext, image: Any, shot_prompts: list[str], references: list[str]
    ) -> None:
        parent = ctx.node
        ratio = parent.get("aspect_ratio") or "16:9"
        ratio_w, ratio_h = parse_ratio(ratio)
        size = Size(width=parent.width, height=parent.width * ratio_h / ratio_w)

        inherited = {k: v for k, v in parent.payload.items() if k not in _NOT_INHERITED}
        specs = [
            ChildSpec(
                kind=NodeKind.IMAGE_GENERATOR,
                title=f"Shot {i + 1}",
                status=NodeStatus.WORKING,
                size=size,
                payload={**inherited, "aspect_ratio": ratio, "prompt": shot, "image_count": 1},
            )
            for i, shot in enumerate(shot_prompts)
        ]
        result = await ctx.grow(
            specs, layout=GridLayout(columns=self.columns), group_title="Storyboard"
        )

        async def render(child: Node) -> None:
            try:
                images = await ctx.call(
                    image.generate(
                        child.get("prompt"), references or None, aspect_ratio=ratio, count=1
                    ),
                    "image",
                )
                await ctx.update_node(
                    child.id, status=NodeStatus.SUCCESS, image=images[0], images=images
                )
            except NodeActionError as e:
                await ctx.update_node(child.id, status=NodeStatus.ERROR, error=e.message)

        await asyncio.gather(*(render(child) for child in result.nodes))


class ImageEditorHandler(NodeHandler):
    kinds = (NodeKind.IMAGE_EDITOR,)

    async def run(self, ctx: HandlerContext) -> None:
        base = ctx.get("image") or next(iter(upstream_images(ctx)), None)
        if not base:
            raise MissingUpstreamError("Connect an image to edit")

        prompt = styled(style_prompt_of(ctx), direct_prompt(ctx))
        if not prompt.strip():
            raise ValidationError("Enter an edit instruction")

        image = ctx.services.require("image")
        edited = await ctx.call(image.edit(base, prompt), "image")
        await ctx.update(image=edited)


class VideoGeneratorHandler(NodeHandler):
    kinds = (NodeKind.VIDEO_GENERATOR,)

    async def run(self, ctx: HandlerContext) -> None:
        prompt = styled(style_prompt_of(ctx), direct_prompt(ctx))

        cached = await ctx.cached_outputs()
        if cached:
            await ctx.update(video_uri=cached[0], video_uris=cached, is_cached=True)
            return

        video = ctx.services.require("video")
        options = {
            "aspect_ratio": ctx.get("aspect_ratio") or "16:9",
            "count": ctx.get("video_count") or 1,
            "resolution": ctx.get("resolution"),
            "model": ctx.get("model"),
            "generation_mode": ctx.get("generation_mode"),
        }
        result = await ctx.call(video.generate(prompt, upstream_images(ctx), options), "video")

        if result.get("is_fallback_image"):
            # Stored as a preview; the node still succeeds with a notice
            await ctx.update(
                image=result["uri"],
                video_uri=None,
                error=FALLBACK_IMAGE_NOTICE,
                is_cached=False,
            )
            return

        uris = result.get("uris") or [result["uri"]]
        await ctx.update(video_uri=result["uri"], video_uris=uris, is_cached=False)
        await ctx.save_outputs(uris)


class AudioGeneratorHandler(NodeHandler):
    kinds = (NodeKind.AUDIO_GENERATOR,)

    async def run(self, ctx: HandlerContext) -> None:
        prompt = styled(style_prompt_of(ctx), direct_prompt(ctx))

        cached = await ctx.cached_outputs()
        if cached:
            await ctx.update(audio_uri=cached[0], is_cached=True)
            return

        audio = ctx.services.require("audio")
        audio_uri = await ctx.call(audio.generate(prompt, ctx.get("voice")), "audio")
        await ctx.update(audio_uri=audio_uri, is_cached=False)
        await ctx.save_outputs([audio_uri])


class VideoAnalyzerHandler(NodeHandler):
    kinds = (NodeKind.VIDEO_ANALYZER,)

    async def run(self, ctx: HandlerContext) -> None:
        video_uri = ctx.get("video_uri") or next(
            (n.get("video_uri") for n in ctx.upstream() if n.get("video_uri")), None
        )
        if not video_uri:
            raise MissingUpstreamError("No video input found")

        text = ctx.services.require("text")
        analysis = await ctx.call(text.analyze_video(video_uri, direct_prompt(ctx)), "text")
        await ctx.update(analysis=analysis)


class StoryboardGeneratorHandler(NodeHandler):
    """Cinematic storyboard from episode content, then one image per shot."""

    kinds = (NodeKind.STORYBOARD_GENERATOR,)

    async def run(self, ctx: HandlerContext) -> None:
        content = direct_prompt(ctx)
        if not content.strip():
            raise ValidationError("Connect a node that holds the episode content")

        style = ctx.get("storyboard_style") or "REAL"
        text = ctx.services.require("text")
        raw_shots = await ctx.call(
            text.cinematic_storyboard(
                content,
                ctx.get("storyboard_count") or 6,
                ctx.get("storyboard_duration") or 4,
                style,
            ),
            "text",
        )
        shots = [
            StoryboardShot.model_validate({"id": f"sb-{i + 1}", **raw})
            for i, raw in enumerate(raw_shots)
        ]
        await ctx.update(storyboard_shots=[s.model_dump() for s in shots])

        image = ctx.services.image
        if image is None:
            logger.info(f"No image service configured; {ctx.node_id} keeps text-only shots")
            return

        prefix = visual_prompt_prefix(style)
        ratio = ctx.get("aspect_ratio") or "16:9"

        async def render(index: int) -> None:
            shot = shots[index]
            prompt = (
                f"{prefix}\nSubject: {shot.subject}.\nScene: {shot.scene}.\n"
                f"Camera: {shot.camera}.\n"
                f"Lighting: {shot.lighting}.\nStyle: {shot.style}.\nNegative: {shot.negative}."
            )
            try:
                images = await ctx.call(
                    image.generate(prompt, None, aspect_ratio=ratio, count=1), "image"
                )
            except ExternalServiceError as e:
                logger.warning(f"Image for shot {index + 1} of {ctx.node_id} failed: {e.message}")
                return
            if images:
                shots[index] = shot.model_copy(update={"image_url": images[0]})
                await ctx.update(storyboard_shots=[s.model_dump() for s in shots])

        await asyncio.gather(*(render(i) for i in range(len(shots))))


def extract_shots(content: str) -> list[dict[str, Any]]:
    """
    Shot descriptions from free text.

    Tried in order: a JSON object with ``shots``, such an object embedded in
    prose, numbered lines, then any line longer than ten characters.
    """
    candidates = [content]
    embedded = re.search(r"\{[\s\S]*\"shots\"[\s\S]*\}", content)
    if embedded:
        candidates.append(embedded.group(0))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("shots"), list) and parsed["shots"]:
            return parsed["shots"]

    numbered = re.findall(r"^\d+[.、)]\s*(.+)$", content, flags=re.MULTILINE)
    if numbered:
        return [{"visual_description": line.strip()} for line in numbered]

    lines = [line.strip() for line in re.split(r"\n+", content)]
    return [{"visual_description": line} for line in lines if len(line) > 10]


class StoryboardImageHandler(NodeHandler):
    """Renders shots as paged grid images, 9 or 6 panels per page."""

    kinds = (NodeKind.STORYBOARD_IMAGE,)

    async def run(self, ctx: HandlerContext) -> None:
        shots = self._collect_shots(ctx)
        if not shots:
            raise ValidationError("No shot descriptions found in the input")

        grid_type = str(ctx.get("storyboard_grid_type") or "9")
        columns, rows = STORYBOARD_GRIDS.get(grid_type, STORYBOARD_GRIDS["9"])
        per_page = columns * rows
        total_pages = math.ceil(len(shots) / per_page)
        aspect_ratio = grid_aspect_ratio(
            columns, rows, ctx.get("storyboard_panel_orientation") or "16:9"
        )

        style = resolve_style_context(ctx.snapshot, ctx.node_id)
        prefix = visual_prompt_prefix(style.visual_style)
        references, names = self._character_refs(ctx)

        image = ctx.services.require("image")
        grid_images: list[str] = []
        for page in range(total_pages):
            page_shots = shots[page * per_page : (page + 1) * per_page]
            prompt = self._page_prompt(prefix, columns, rows, page_shots, page * per_page, names)
            images = await ctx.call(
                image.generate(prompt, references or None, aspect_ratio=aspect_ratio, count=1),
                "image",
            )
            if not images:
                raise ExternalServiceError(
                    f"No grid image returned for page {page + 1}",
                    provider="image",
                    partial={"grid_images": grid_images, "total_pages": total_pages},
                )
            grid_images.append(images[0])
            await ctx.report_progress(round(100 * (page + 1) / total_pages))

        await ctx.update(
            storyboard_shots=shots,
            storyboard_grid_type=grid_type,
            grid_images=grid_images,
            total_pages=total_pages,
        )

    def _collect_shots(self, ctx: HandlerContext) -> list[dict[str, Any]]:
        source = ctx.first_upstream(NodeKind.PROMPT_INPUT)
        storyboard = source.get("episode_storyboard") if source else None
        if storyboard and storyboard.get("shots"):
            return list(storyboard["shots"])
        return extract_shots(direct_prompt(ctx).strip())

    def _character_refs(self, ctx: HandlerContext) -> tuple[list[str], list[str]]:
        references: list[str] = []
        names: list[str] = []
        character_node = ctx.first_upstream(NodeKind.CHARACTER_NODE)
        characters = (character_node.get("generated_characters") or []) if character_node else []
        for character in characters:
            sheet = character.get("three_view_sheet") or character.get("expression_sheet")
            if sheet:
                references.append(sheet)
            if character.get("name"):
                names.append(character["name"])
        return references, names

    def _page_prompt(
        self,
        prefix: str,
        columns: int,
        rows: int,
        shots: list[dict[str, Any]],
        offset: int,
        names: list[str],
    ) -> str:
        lines = [
            prefix,
            f"A {columns}x{rows} storyboard grid, panels read left to right, top to bottom, "
            "thin white borders, no text.",
        ]
        for i, shot in enumerate(shots):
            parts = [shot.get("visual_description") or shot.get("scene") or ""]
            for key in ("shot_size", "camera_angle", "camera_movement"):
                if shot.get(key):
                    parts.append(shot[key])
            lines.append(f"Panel {offset + i + 1}: {', '.join(p for p in parts if p)}")
        if names:
            lines.append(f"Characters: {', '.join(names)}")
        return "\n".join(lines)
