"""
LLM-enhanced video prompts.

``LLMPromptBuilder`` asks an LLM to rewrite the selected shots with
cinematography terms and falls back to ``basic_shot_listing`` whenever the
call fails or returns nothing usable.
"""

import logging
from typing import Any

from studioflow.engine.services import PromptBuilder
from studioflow.llm.provider import LLMProvider
from studioflow.schemas.shots import (
    BLACK_SCREEN_SCENE,
    BLACK_SCREEN_SECONDS,
    DEFAULT_SHOT_SECONDS,
    basic_shot_listing,
)

logger = logging.getLogger(__name__)

ENHANCE_SYSTEM_PROMPT = """You are a film director writing prompts for a text-to-video model.

Rewrite the shot list you are given into a continuous, filmable sequence.
For every shot keep its number and its duration, and describe:
- shot size (extreme wide, wide, medium, close-up, extreme close-up)
- camera angle and camera movement (static, pan, tilt, dolly, tracking, crane, handheld)
- lighting and color mood
- the visible action, in the present tense

Keep characters, costumes and locations consistent across shots.
Do not add dialogue that is not in the input. Do not add new shots.

Output only the shots, in exactly this format, separated by blank lines:

Shot 1:
duration: 3.0sec
Scene: <description>"""

# Shot fields passed to the LLM, with the label it sees
SHOT_FIELDS = [
    ("scene", "Location"),
    ("characters", "Characters"),
    ("shot_size", "Shot size"),
    ("camera_angle", "Camera angle"),
    ("camera_movement", "Camera movement"),
    ("visual_description", "Scene"),
    ("dialogue", "Dialogue"),
    ("visual_effects", "Visual effects"),
    ("audio_effects", "Audio"),
]


def describe_shot(index: int, shot: dict[str, Any]) -> str:
    lines = [
        f"Shot {index + 1}:",
        f"duration: {float(shot.get('duration') or DEFAULT_SHOT_SECONDS):.1f}sec",
    ]
    for key, label in SHOT_FIELDS:
        value = shot.get(key)
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        if value:
            lines.append(f"{label}: {value}")
    return "\n".join(lines)


class LLMPromptBuilder(PromptBuilder):
    """``PromptBuilder`` backed by an ``LLMProvider``."""

    def __init__(self, provider: LLMProvider, max_tokens: int = 2048):
        self.provider = provider
        self.max_tokens = max_tokens

    async def build(self, shots: list[dict[str, Any]], include_black_screen: bool = False) -> str:
        listing = basic_shot_listing(shots, include_black_screen=include_black_screen)
        if not shots:
            return listing

        request = "Shot list:\n\n" + "\n\n".join(
            describe_shot(i, shot) for i, shot in enumerate(shots)
        )
        if include_black_screen:
            request += (
                f"\n\nStart with 'Shot 0' lasting {BLACK_SCREEN_SECONDS:.1f}sec, "
                f"unchanged: {BLACK_SCREEN_SCENE}"
            )

        try:
            enhanced = await self.provider.ask(
                request, system=ENHANCE_SYSTEM_PROMPT, max_tokens=self.max_tokens
            )
        except Exception as e:
            logger.warning(f"Prompt enhancement failed, using the plain shot listing: {e}")
            return listing

        enhanced = enhanced.strip()
        if "Shot" not in enhanced:
            logger.warning("Prompt enhancement returned no shots, using the plain shot listing")
            return listing
        return enhanced
