"""
Handlers for the planning kinds: prompts, scripts, episodes, drama analysis,
style presets and characters. All of them are single-shot: one call of
``run`` takes the node from working to success or error.
"""

import logging
import re

from studioflow.engine.errors import (
    CancellationSignal,
    MissingUpstreamError,
    NodeActionError,
    ValidationError,
)
from studioflow.engine.handlers.base import HandlerContext, NodeHandler
from studioflow.graph.context import (
    DRAMA_FIELD_LABELS,
    combine_prompt,
    resolve_direct_context,
    resolve_style_context,
    resolve_upstream_context,
    visual_prompt_prefix,
)
from studioflow.graph.growth import ChildSpec, StackLayout, new_node_id
from studioflow.graph.model import NodeKind, NodeStatus
from studioflow.schemas.shots import (
    CharacterProfile,
    DetailedShot,
    EpisodeDraft,
    EpisodeStoryboard,
    ScriptSettings,
    StylePreset,
)

logger = logging.getLogger(__name__)

MIN_EPISODE_LENGTH = 50
DEFAULT_EPISODE_SECONDS = 60.0
DEFAULT_EPISODE_SPLIT = 3


def style_prompt_of(ctx: HandlerContext) -> str:
    """Style prompt of a directly connected style preset, if any."""
    preset = ctx.first_upstream(NodeKind.STYLE_PRESET)
    return (preset.get("style_prompt") or "") if preset else ""


def direct_prompt(ctx: HandlerContext) -> str:
    """Direct upstream context followed by the node's own prompt."""
    return combine_prompt(resolve_direct_context(ctx.snapshot, ctx.node_id), ctx.get("prompt"))


class PromptInputHandler(NodeHandler):
    """Holds text; the ``generate-storyboard`` action breaks an episode into shots."""

    kinds = (NodeKind.PROMPT_INPUT,)

    async def run(self, ctx: HandlerContext) -> None:
        if ctx.action != "generate-storyboard":
            return

        content = ctx.get("prompt") or ""
        if len(content) < MIN_EPISODE_LENGTH:
            raise ValidationError("Episode content is too short to break into shots")

        title = re.sub(r"^#+\s*", "", content.split("\n")[0]).strip() or "Untitled episode"

        duration = DEFAULT_EPISODE_SECONDS
        visual_style = "ANIME"
        episode = ctx.first_upstream(NodeKind.SCRIPT_EPISODE)
        if episode is not None:
            planners = ctx.snapshot.get_upstream_nodes(episode.id, NodeKind.SCRIPT_PLANNER)
            if planners:
                planner = planners[0]
                if planner.get("script_duration"):
                    duration = float(planner.get("script_duration")) * 60
                visual_style = planner.get("script_visual_style") or visual_style

        text = ctx.services.require("text")
        raw_shots = await ctx.call(
            text.breakdown_episode(content, title, duration, visual_style), "text"
        )

        shots = [
            DetailedShot.model_validate({"id": f"shot-{i + 1}", "shot_number": i + 1, **raw})
            for i, raw in enumerate(raw_shots)
        ]
        storyboard = EpisodeStoryboard(
            episode_title=title,
            total_duration=sum(s.duration for s in shots),
            total_shots=len(shots),
            shots=shots,
            visual_style=visual_style,
        )
        await ctx.update(episode_storyboard=storyboard.model_dump())


class ScriptPlannerHandler(NodeHandler):
    kinds = (NodeKind.SCRIPT_PLANNER,)

    async def run(self, ctx: HandlerContext) -> None:
        refined_node = ctx.first_upstream(NodeKind.DRAMA_REFINED)
        refined = refined_node.get("refined_content") if refined_node else None
        settings = ScriptSettings.from_payload(ctx.node.payload)

        text = ctx.services.require("text")
        outline = await ctx.call(text.plan_script(direct_prompt(ctx), settings, refined), "text")
        await ctx.update(script_outline=outline)


class ScriptEpisodeHandler(NodeHandler):
    """Writes the episodes of one chapter and spawns one prompt node per episode."""

    kinds = (NodeKind.SCRIPT_EPISODE,)

    async def run(self, ctx: HandlerContext) -> None:
        planner = ctx.first_upstream(NodeKind.SCRIPT_PLANNER)
        if planner is None or not planner.get("script_outline"):
            raise MissingUpstreamError("Connect a script planner that has an outline")

        chapter = ctx.get("selected_chapter")
        if not chapter:
            raise ValidationError("Select a chapter first")

        visual_style = ctx.get("script_visual_style")
        if not visual_style and planner.get("script_visual_style"):
            visual_style = planner.get("script_visual_style")
            await ctx.update(script_visual_style=visual_style)

        # Every episode written so far, for continuity across chapters
        previous = [
            EpisodeDraft.model_validate(ep)
            for node in ctx.snapshot.nodes
            if node.kind == NodeKind.SCRIPT_EPISODE
            for ep in node.get("generated_episodes") or []
        ]

        text = ctx.services.require("text")
        episodes = await ctx.call(
            text.write_episodes(
                planner.get("script_outline"),
                chapter,
                ctx.get("episode_split_count") or DEFAULT_EPISODE_SPLIT,
                planner.get("script_duration") or 1,
                visual_style or "REAL",
                previous,
                ctx.get("episode_modification_suggestion"),
            ),
            "text",
        )
        if not episodes:
            return

        specs = [
            ChildSpec(
                kind=NodeKind.PROMPT_INPUT,
                title=ep.title,
                payload={"prompt": ep.to_markdown()},
                id_prefix="n-ep",
            )
            for ep in episodes
        ]
        await ctx.grow(specs, layout=StackLayout(item_height=360, gap=40))
        await ctx.update(generated_episodes=[ep.model_dump() for ep in episodes])


class DramaAnalyzerHandler(NodeHandler):
    """Analyzes a drama by name; ``extract`` condenses the selected fields into a refined node."""

    kinds = (NodeKind.DRAMA_ANALYZER,)

    async def run(self, ctx: HandlerContext) -> None:
        if ctx.action == "extract":
            await self._extract(ctx)
            return

        drama_name = (ctx.get("drama_name") or "").strip()
        if not drama_name:
            raise ValidationError("Enter a drama name")

        text = ctx.services.require("text")
        analysis = await ctx.call(text.analyze_drama(drama_name), "text")
        fields = {key: analysis.get(key) for key in DRAMA_FIELD_LABELS}
        await ctx.update(selected_fields=[], **fields)

    async def _extract(self, ctx: HandlerContext) -> None:
        selected = ctx.get("selected_fields") or []
        if not selected:
            raise ValidationError("Select the analysis fields to extract first")

        text = ctx.services.require("text")
        refined = await ctx.call(
            text.extract_refined_tags(dict(ctx.node.payload), selected), "text"
        )

        spec = ChildSpec(
            kind=NodeKind.DRAMA_REFINED,
            title="Refined drama",
            status=NodeStatus.SUCCESS,
            payload={
                "refined_content": refined,
                "source_drama_name": ctx.get("drama_name"),
                "source_node_id": ctx.node_id,
                "selected_fields": list(selected),
            },
            id_prefix="n-refined",
        )
        await ctx.grow([spec], layout=StackLayout(offset_x=150))


class StylePresetHandler(NodeHandler):
    kinds = (NodeKind.STYLE_PRESET,)

    async def run(self, ctx: HandlerContext) -> None:
        art_style = ""
        visual_style = "ANIME"
        genre = ""
        setting = ""

        # Later inputs override earlier ones
        for node in ctx.upstream():
            if node.kind == NodeKind.DRAMA_ANALYZER and node.get("art_style"):
                art_style = node.get("art_style")
            elif node.kind == NodeKind.SCRIPT_PLANNER:
                visual_style = node.get("script_visual_style") or visual_style
                genre = node.get("script_genre") or genre
                setting = node.get("script_setting") or setting
            elif node.kind == NodeKind.DRAMA_REFINED:
                refined_styles = (node.get("refined_content") or {}).get("art_style") or []
                if refined_styles:
                    art_style = ", ".join(refined_styles)

        text = ctx.services.require("text")
        result = await ctx.call(
            text.generate_style_preset(
                {
                    "preset_type": ctx.get("style_preset_type") or "SCENE",
                    "visual_style": visual_style,
                    "art_style": art_style,
                    "genre": genre,
                    "setting": setting,
                    "user_input": ctx.get("style_user_input") or "",
                }
            ),
            "text",
        )
        preset = StylePreset(
            style_prompt=result.get("style_prompt", ""),
            negative_prompt=result.get("negative_prompt", ""),
            visual_style=visual_style,
        )
        await ctx.update(**preset.model_dump())


class CharacterNodeHandler(NodeHandler):
    """
    Two steps per run:

    1. No names yet: extract them from the direct inputs and stop.
    2. Names known: write a profile for every name that has none, using the
       full upstream context. A failing character is marked on the character
       itself and the node still succeeds.
    """

    kinds = (NodeKind.CHARACTER_NODE,)

    async def run(self, ctx: HandlerContext) -> None:
        text = ctx.services.require("text")
        names = ctx.get("extracted_character_names") or []

        if not names:
            await self._extract_names(ctx, text)
            return

        characters = [dict(c) for c in ctx.get("generated_characters") or []]
        known = {c.get("name") for c in characters}
        pending = [name for name in names if name not in known]
        if not pending:
            return

        style_prefix = style_prompt_of(ctx)
        if not style_prefix:
            style = resolve_style_context(ctx.snapshot, ctx.node_id)
            style_prefix = visual_prompt_prefix(style.visual_style, style.genre, style.setting)
        context = "\n".join(resolve_upstream_context(ctx.snapshot, ctx.node_id))
        configs = ctx.get("character_configs") or {}

        for name in pending:
            characters.append({"id": "", "name": name, "status": "generating"})
            await ctx.update(generated_characters=list(characters))

            method = (configs.get(name) or {}).get("method", "AI_AUTO")
            try:
                profile = await ctx.call(
                    text.generate_character_profile(name, context, style_prefix), "text"
                )
                entry = CharacterProfile.model_validate(
                    {
                        "id": new_node_id("char"),
                        **profile,
                        "name": name,
                        "role_type": "supporting" if method == "SUPPORTING_ROLE" else "main",
                        "status": "success",
                    }
                ).model_dump()
            except CancellationSignal:
                raise
            except NodeActionError as e:
                logger.warning(f"Profile for {name} failed: {e.message}")
                entry = {"id": "", "name": name, "status": "error", "error": e.message}

            characters[-1] = entry
            await ctx.update(generated_characters=list(characters))

    async def _extract_names(self, ctx: HandlerContext, text) -> None:
        texts = resolve_direct_context(ctx.snapshot, ctx.node_id)
        if not texts:
            raise MissingUpstreamError("Connect a script planner or episode node first")

        names: list[str] = []
        for chunk in texts:
            names.extend(await ctx.call(text.extract_character_names(chunk), "text"))

        unique = list(dict.fromkeys(n.strip() for n in names if n.strip()))
        logger.info(f"Found {len(unique)} character(s) for {ctx.node_id}")
        await ctx.update(extracted_character_names=unique, character_configs={})
