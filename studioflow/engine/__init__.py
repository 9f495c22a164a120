"""Node action engine: error taxonomy, collaborator interfaces and the executor."""

from studioflow.engine.errors import (
    CancellationSignal,
    EmptySelectionError,
    ExternalServiceError,
    MissingPromptError,
    MissingUpstreamError,
    NodeActionError,
    ServiceUnavailableError,
    ValidationError,
)
from studioflow.engine.services import (
    AssetUploader,
    AudioService,
    HistoryRecorder,
    ImageFuser,
    ImageService,
    OutputStore,
    ProgressCallback,
    PromptBuilder,
    Services,
    TextService,
    VideoService,
)
from studioflow.engine.executor import NodeActionExecutor

__all__ = [
    # Errors
    "CancellationSignal",
    "EmptySelectionError",
    "ExternalServiceError",
    "MissingPromptError",
    "MissingUpstreamError",
    "NodeActionError",
    "ServiceUnavailableError",
    "ValidationError",
    # Collaborators
    "AssetUploader",
    "AudioService",
    "HistoryRecorder",
    "ImageFuser",
    "ImageService",
    "OutputStore",
    "ProgressCallback",
    "PromptBuilder",
    "Services",
    "TextService",
    "VideoService",
    # Executor
    "NodeActionExecutor",
]
