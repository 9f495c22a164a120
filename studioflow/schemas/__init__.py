"""Schema definitions for node payload records."""

from studioflow.schemas.shots import (
    CharacterProfile,
    DetailedShot,
    EpisodeDraft,
    EpisodeStoryboard,
    PipelineStage,
    ScriptSettings,
    SplitShot,
    StoryboardShot,
    StylePreset,
    VideoJobRequest,
    VideoJobResult,
    basic_shot_listing,
)

__all__ = [
    "CharacterProfile",
    "DetailedShot",
    "EpisodeDraft",
    "EpisodeStoryboard",
    "PipelineStage",
    "ScriptSettings",
    "SplitShot",
    "StoryboardShot",
    "StylePreset",
    "VideoJobRequest",
    "VideoJobResult",
    "basic_shot_listing",
]
