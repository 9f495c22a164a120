"""
Collaborator interfaces.

The engine never talks to a model, a bucket or a disk directly; it goes
through these narrow interfaces. Anything not configured is simply absent
from ``Services`` and handlers that need it fail with
``ServiceUnavailableError``.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from typing import Any

from studioflow.engine.errors import ServiceUnavailableError
from studioflow.schemas.shots import (
    EpisodeDraft,
    ScriptSettings,
    VideoJobRequest,
    VideoJobResult,
)

ProgressCallback = Callable[[int], Awaitable[None]]


class TextService(ABC):
    """Text and vision-language model calls used by the planning kinds."""

    @abstractmethod
    async def plan_script(
        self, context: str, settings: ScriptSettings, refined: dict[str, Any] | None = None
    ) -> str:
        """Return a chapter outline for a series."""

    @abstractmethod
    async def write_episodes(
        self,
        outline: str,
        chapter: str,
        count: int,
        duration_minutes: float,
        visual_style: str,
        previous_episodes: list[EpisodeDraft],
        suggestion: str | None = None,
    ) -> list[EpisodeDraft]:
        """Write ``count`` episodes for one chapter of ``outline``."""

    @abstractmethod
    async def breakdown_episode(
        self, content: str, title: str, total_duration: float, visual_style: str
    ) -> list[dict[str, Any]]:
        """Split one episode into timed shots."""

    @abstractmethod
    async def analyze_drama(self, drama_name: str) -> dict[str, Any]:
        """Analyze an existing drama; keys follow the drama field labels."""

    @abstractmethod
    async def extract_refined_tags(
        self, analysis: dict[str, Any], selected_fields: list[str]
    ) -> dict[str, Any]:
        """Condense the selected analysis fields into refined content."""

    @abstractmethod
    async def generate_style_preset(self, inputs: dict[str, Any]) -> dict[str, Any]:
        """Return ``style_prompt`` and ``negative_prompt`` for the given hints."""

    @abstractmethod
    async def extract_character_names(self, context: str) -> list[str]:
        """Names of the characters appearing in ``context``."""

    @abstractmethod
    async def generate_character_profile(
        self, name: str, context: str, style_prefix: str
    ) -> dict[str, Any]:
        """A character sheet for ``name``."""

    @abstractmethod
    async def plan_storyboard(self, prompt: str, context: str) -> list[str]:
        """Per-shot image prompts; a single entry means "not a storyboard"."""

    @abstractmethod
    async def cinematic_storyboard(
        self, content: str, count: int, duration: float, style: str
    ) -> list[dict[str, Any]]:
        """Cinematic storyboard panels for ``content``."""

    @abstractmethod
    async def analyze_video(self, video_uri: str, prompt: str) -> str:
        """Free-text analysis of a video."""

    @abstractmethod
    async def sanitize_prompt(self, prompt: str) -> str:
        """Rewrite ``prompt`` without words a provider may reject."""


class ImageService(ABC):
    @abstractmethod
    async def generate(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        aspect_ratio: str = "16:9",
        count: int = 1,
    ) -> list[str]:
        """Image URLs or data URIs."""

    @abstractmethod
    async def edit(self, image: str, prompt: str) -> str:
        """The edited image."""


class VideoService(ABC):
    @abstractmethod
    async def generate(
        self, prompt: str, images: list[str], options: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Single-shot video generation.

        Returns:
            ``{"uri": ..., "is_fallback_image": bool}``; a fallback image means
            the provider could only return a still.
        """

    @abstractmethod
    async def submit_job(
        self, request: VideoJobRequest, on_progress: ProgressCallback | None = None
    ) -> VideoJobResult:
        """Submit a remote job and wait for it; ``on_progress`` receives 0-100."""


class AudioService(ABC):
    @abstractmethod
    async def generate(self, prompt: str, voice: str | None = None) -> str:
        """An audio URL or data URI."""


class PromptBuilder(ABC):
    @abstractmethod
    async def build(self, shots: list[dict[str, Any]], include_black_screen: bool = False) -> str:
        """One video prompt covering ``shots`` in order."""


class ImageFuser(ABC):
    @abstractmethod
    async def fuse(self, images: list[str]) -> str:
        """Stitch ``images`` into one reference image (data URI)."""


class AssetUploader(ABC):
    @abstractmethod
    async def upload(self, data: str, filename: str) -> str:
        """Upload a data URI and return its public URL."""


class OutputStore(ABC):
    """Cache of generated outputs keyed by node."""

    @abstractmethod
    async def check_cache(self, node_id: str, kind: str) -> list[str] | None:
        """Previously saved outputs, or None."""

    @abstractmethod
    async def save_output(self, node_id: str, kind: str, outputs: list[str]) -> None:
        """Record outputs for later ``check_cache`` hits."""


class HistoryRecorder(ABC):
    @abstractmethod
    def save_history(self) -> None:
        """Checkpoint the current canvas for undo."""


@dataclass
class Services:
    """Bundle of configured collaborators; any of them may be absent."""

    text: TextService | None = None
    image: ImageService | None = None
    video: VideoService | None = None
    audio: AudioService | None = None
    prompt_builder: PromptBuilder | None = None
    image_fuser: ImageFuser | None = None
    asset_uploader: AssetUploader | None = None
    output_store: OutputStore | None = None
    history: HistoryRecorder | None = None

    def require(self, name: str) -> Any:
        """
        Get a collaborator that the current action cannot do without.

        Raises:
            ServiceUnavailableError: if it is not configured
        """
        if name not in {f.name for f in fields(self)}:
            raise ValueError(f"Unknown service '{name}'")
        service = getattr(self, name)
        if service is None:
            raise ServiceUnavailableError(
                f"{name.replace('_', ' ')} service is not configured", provider=name
            )
        return service

    def available(self) -> list[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]
