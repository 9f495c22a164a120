"""
Payload Schemas - records stored inside node payloads.

Payloads are plain dicts so a canvas round-trips through JSON unchanged.
Handlers validate what they read with ``Model.model_validate`` and write back
``model_dump()``. Unknown keys are kept: the editor attaches its own fields.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class PipelineStage(StrEnum):
    """Stage of a multi-stage pipeline node, kept in ``payload["stage"]``."""

    IDLE = "idle"
    SELECTING = "selecting"  # Picking shots
    PROMPTING = "prompting"  # Reviewing the built prompt
    GENERATING = "generating"  # Remote job in flight
    COMPLETED = "completed"


class DetailedShot(BaseModel):
    """One shot of an episode breakdown."""

    id: str
    shot_number: int = 0
    duration: float = 3.0

    scene: str = ""
    characters: list[str] = Field(default_factory=list)

    # Standard film terms: shot size, angle, movement
    shot_size: str = ""
    camera_angle: str = ""
    camera_movement: str = ""

    visual_description: str = ""
    dialogue: str = ""
    visual_effects: str = ""
    audio_effects: str = ""

    start_time: float = 0.0
    end_time: float = 0.0

    model_config = {"extra": "allow"}


class SplitShot(DetailedShot):
    """A shot cut out of a storyboard grid image; the unit fed to video generation."""

    source_node_id: str = ""
    source_page: int = 0
    panel_index: int = 0
    split_image: str = ""  # URL or data URI


class EpisodeStoryboard(BaseModel):
    """Shot breakdown of one episode."""

    episode_title: str
    total_duration: float
    total_shots: int
    shots: list[DetailedShot] = Field(default_factory=list)
    visual_style: str = "ANIME"


class EpisodeDraft(BaseModel):
    """One episode written by the episode writer."""

    title: str
    content: str = ""
    characters: str = ""
    key_items: str = ""
    continuity_note: str = ""

    model_config = {"extra": "allow"}

    def to_markdown(self) -> str:
        text = f"## {self.title}\n\n**Characters**: {self.characters}\n"
        if self.key_items:
            text += f"**Key items**: {self.key_items}\n"
        text += f"\n{self.content}"
        if self.continuity_note:
            text += f"\n\n**Continuity**: {self.continuity_note}"
        return text


class StoryboardShot(BaseModel):
    """A cinematic storyboard panel."""

    id: str
    subject: str = ""
    scene: str = ""
    camera: str = ""
    lighting: str = ""
    dynamics: str = ""
    audio: str = ""
    style: str = ""
    negative: str = ""
    image_url: str | None = None
    duration: float | None = None

    model_config = {"extra": "allow"}

    def image_prompt(self) -> str:
        parts = (self.subject, self.scene, self.camera, self.lighting, self.style)
        return ", ".join(p for p in parts if p)


class CharacterProfile(BaseModel):
    """A character sheet extracted from the script."""

    id: str
    name: str
    alias: str | None = None
    role_type: str | None = None  # "main" or "supporting"
    basic_stats: str | None = None
    profession: str | None = None
    appearance: str | None = None
    personality: str | None = None
    motivation: str | None = None
    relationships: str | None = None
    expression_sheet: str | None = None
    three_view_sheet: str | None = None

    # Per-character outcome, independent of the owning node
    status: str = "idle"
    error: str | None = None

    model_config = {"extra": "allow"}


class StylePreset(BaseModel):
    """Style prompt produced by a style preset node."""

    style_prompt: str
    negative_prompt: str = ""
    visual_style: str = "REAL"


class ScriptSettings(BaseModel):
    """Planner settings passed to the script planner service."""

    theme: str = ""
    genre: str = ""
    setting: str = ""
    episodes: int = 10
    duration_minutes: float = 1.0
    visual_style: str = "REAL"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ScriptSettings":
        return cls(
            theme=payload.get("script_theme") or "",
            genre=payload.get("script_genre") or "",
            setting=payload.get("script_setting") or "",
            episodes=payload.get("script_episodes") or 10,
            duration_minutes=payload.get("script_duration") or 1.0,
            visual_style=payload.get("script_visual_style") or "REAL",
        )


class VideoJobRequest(BaseModel):
    """A remote video generation job."""

    prompt: str
    duration: float = 10.0
    reference_image: str | None = None
    model: str | None = None
    aspect_ratio: str = "16:9"

    model_config = {"extra": "allow"}


class VideoJobResult(BaseModel):
    """Outcome of a remote video job."""

    video_url: str
    job_id: str | None = None
    duration: float | None = None
    thumbnail_url: str | None = None

    model_config = {"extra": "allow"}


# === SHOT LISTING ===

DEFAULT_SHOT_SECONDS = 5.0
BLACK_SCREEN_SECONDS = 0.5
BLACK_SCREEN_SCENE = "Pure black screen, silence, no characters and no movement."


def _shot_value(shot: Any, key: str, default: Any = None) -> Any:
    if isinstance(shot, dict):
        return shot.get(key, default)
    return getattr(shot, key, default)


def basic_shot_listing(shots: list[Any], include_black_screen: bool = False) -> str:
    """
    Plain video prompt, one block per shot, joined by blank lines::

        Shot 1:
        duration: 3.0sec
        Scene: ...

    Shots without a duration count as 5 seconds. With
    ``include_black_screen`` a half-second black lead-in comes first as
    ``Shot 0``, which keeps the model from cutting into the first frame.
    """
    blocks = []
    if include_black_screen:
        blocks.append(
            f"Shot 0:\nduration: {BLACK_SCREEN_SECONDS:.1f}sec\nScene: {BLACK_SCREEN_SCENE}"
        )

    for i, shot in enumerate(shots):
        duration = _shot_value(shot, "duration") or DEFAULT_SHOT_SECONDS
        scene = _shot_value(shot, "visual_description") or ""
        blocks.append(f"Shot {i + 1}:\nduration: {float(duration):.1f}sec\nScene: {scene}")

    return "\n\n".join(blocks)
