"""Shared fixtures: canvas builders and fake collaborators."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from studioflow.config import EngineConfig
from studioflow.engine.executor import NodeActionExecutor
from studioflow.engine.services import (
    AssetUploader,
    AudioService,
    HistoryRecorder,
    ImageFuser,
    ImageService,
    OutputStore,
    PromptBuilder,
    Services,
    TextService,
    VideoService,
)
from studioflow.graph.model import CanvasSnapshot, Node, NodeKind, NodeStatus, Position
from studioflow.observability import clear_trace_context
from studioflow.runtime.canvas_store import CanvasStore
from studioflow.runtime.event_bus import EventBus


@pytest.fixture(autouse=True)
def _reset_trace_context():
    yield
    clear_trace_context()


@pytest.fixture
def make_node():
    """Factory: make_node("n1", NodeKind.PROMPT_INPUT, inputs=["n0"], prompt="hi")."""

    def _make(
        node_id: str,
        kind: NodeKind,
        inputs: list[str] | None = None,
        status: NodeStatus = NodeStatus.IDLE,
        x: float = 0.0,
        y: float = 0.0,
        **payload,
    ) -> Node:
        return Node(
            id=node_id,
            kind=kind,
            inputs=list(inputs or []),
            status=status,
            position=Position(x=x, y=y),
            payload=payload,
        )

    return _make


@pytest.fixture
def make_canvas():
    """Factory: snapshot whose connections are derived from the nodes' inputs."""

    def _make(*nodes: Node) -> CanvasSnapshot:
        return CanvasSnapshot.from_nodes(nodes)

    return _make


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        text_model="test/model",
        api_key=None,
        max_task_duration=10.0,
        cache_dir=tmp_path / "outputs",
    )


@pytest.fixture
def services():
    """Every collaborator present, as spec'd mocks with async methods."""
    text = MagicMock(spec=TextService)
    for name in (
        "plan_script",
        "write_episodes",
        "breakdown_episode",
        "analyze_drama",
        "extract_refined_tags",
        "generate_style_preset",
        "extract_character_names",
        "generate_character_profile",
        "plan_storyboard",
        "cinematic_storyboard",
        "analyze_video",
        "sanitize_prompt",
    ):
        setattr(text, name, AsyncMock())

    image = MagicMock(spec=ImageService)
    image.generate = AsyncMock(return_value=["data:image/png;base64,AAAA"])
    image.edit = AsyncMock(return_value="data:image/png;base64,EDIT")

    video = MagicMock(spec=VideoService)
    video.generate = AsyncMock(
        return_value={"uri": "https://cdn/video.mp4", "is_fallback_image": False}
    )
    video.submit_job = AsyncMock()

    audio = MagicMock(spec=AudioService)
    audio.generate = AsyncMock(return_value="data:audio/wav;base64,AAAA")

    prompt_builder = MagicMock(spec=PromptBuilder)
    prompt_builder.build = AsyncMock(return_value="Shot 1:\nduration: 3.0sec\nScene: a")

    image_fuser = MagicMock(spec=ImageFuser)
    image_fuser.fuse = AsyncMock(return_value="data:image/png;base64,FUSED")

    asset_uploader = MagicMock(spec=AssetUploader)
    asset_uploader.upload = AsyncMock(return_value="https://assets/fused.png")

    output_store = MagicMock(spec=OutputStore)
    output_store.check_cache = AsyncMock(return_value=None)
    output_store.save_output = AsyncMock()

    history = MagicMock(spec=HistoryRecorder)

    return Services(
        text=text,
        image=image,
        video=video,
        audio=audio,
        prompt_builder=prompt_builder,
        image_fuser=image_fuser,
        asset_uploader=asset_uploader,
        output_store=output_store,
        history=history,
    )


@pytest.fixture
def make_store(event_bus):
    def _make(snapshot: CanvasSnapshot) -> CanvasStore:
        return CanvasStore(snapshot, event_bus=event_bus)

    return _make


@pytest.fixture
def make_executor(services, event_bus, config):
    """Factory: executor over ``store`` with the fake services and test config."""

    def _make(store: CanvasStore, handlers=None) -> NodeActionExecutor:
        return NodeActionExecutor(
            store, services, handlers=handlers, event_bus=event_bus, config=config
        )

    return _make
