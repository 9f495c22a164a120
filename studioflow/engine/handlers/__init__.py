"""Node handlers, one per node kind, and the default dispatch table."""

from studioflow.engine.handlers.base import (
    HandlerContext,
    NodeHandler,
    PassiveHandler,
    map_progress,
)
from studioflow.engine.handlers.content import (
    CharacterNodeHandler,
    DramaAnalyzerHandler,
    PromptInputHandler,
    ScriptEpisodeHandler,
    ScriptPlannerHandler,
    StylePresetHandler,
)
from studioflow.engine.handlers.media import (
    AudioGeneratorHandler,
    ImageEditorHandler,
    ImageGeneratorHandler,
    StoryboardGeneratorHandler,
    StoryboardImageHandler,
    VideoAnalyzerHandler,
    VideoGeneratorHandler,
)
from studioflow.engine.handlers.sora_video import SoraVideoHandler
from studioflow.engine.handlers.storyboard_video import StoryboardVideoHandler
from studioflow.graph.model import NodeKind

HANDLER_CLASSES: list[type[NodeHandler]] = [
    PromptInputHandler,
    ScriptPlannerHandler,
    ScriptEpisodeHandler,
    DramaAnalyzerHandler,
    StylePresetHandler,
    CharacterNodeHandler,
    ImageGeneratorHandler,
    ImageEditorHandler,
    VideoGeneratorHandler,
    AudioGeneratorHandler,
    VideoAnalyzerHandler,
    StoryboardGeneratorHandler,
    StoryboardImageHandler,
    StoryboardVideoHandler,
    SoraVideoHandler,
    PassiveHandler,
]


def default_handlers() -> dict[NodeKind, NodeHandler]:
    """Dispatch table covering every ``NodeKind``."""
    table: dict[NodeKind, NodeHandler] = {}
    for handler_cls in HANDLER_CLASSES:
        handler = handler_cls()
        for kind in handler.kinds:
            table[kind] = handler
    return table


__all__ = [
    "HANDLER_CLASSES",
    "HandlerContext",
    "NodeHandler",
    "PassiveHandler",
    "SoraVideoHandler",
    "StoryboardVideoHandler",
    "default_handlers",
    "map_progress",
]
