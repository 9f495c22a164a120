"""
Tests for task-group video generation: grouping, prompts, fusion, generation
and cancellation of individual groups.
"""

import asyncio
import copy
from unittest.mock import AsyncMock

import pytest

from studioflow.engine.errors import ExternalServiceError
from studioflow.graph.grouping import TaskGroupStage
from studioflow.graph.model import NodeKind, NodeStatus
from studioflow.runtime.canvas_store import CanvasStore
from studioflow.schemas.shots import VideoJobResult

K = NodeKind


def split_shot(index: int, duration: float = 4.0, image: str | None = None) -> dict:
    shot = {
        "id": f"split-{index}",
        "shot_number": index,
        "duration": duration,
        "visual_description": f"scene {index}",
    }
    if image:
        shot["split_image"] = image
    return shot


@pytest.fixture
def sora_store(make_node, make_canvas, event_bus):
    shots = [split_shot(i + 1, image=f"https://cdn/split-{i + 1}.png") for i in range(3)]
    return CanvasStore(
        make_canvas(
            make_node("split", K.STORYBOARD_SPLITTER, split_shots=shots),
            make_node(
                "sora", K.SORA_VIDEO_GENERATOR, inputs=["split"], video_config={"duration": 10}
            ),
        ),
        event_bus=event_bus,
    )


def groups_of(store: CanvasStore) -> list[dict]:
    return copy.deepcopy(store.get_node("sora").get("task_groups"))


async def built(store: CanvasStore, executor) -> list[dict]:
    await executor.execute("sora")
    return groups_of(store)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_build_groups_packs_shots(sora_store, make_executor, services):
    groups = await built(sora_store, make_executor(sora_store))

    assert [g["id"] for g in groups] == ["sora-tg-1", "sora-tg-2"]
    assert [g["total_duration"] for g in groups] == [8.0, 4.0]
    shot_ids = [[i["payload"]["id"] for i in g["items"]] for g in groups]
    assert shot_ids == [["split-1", "split-2"], ["split-3"]]
    assert all(g["stage"] == "prompt_ready" for g in groups)
    assert groups[0]["prompt"] == "Shot 1:\nduration: 3.0sec\nScene: a"

    (shots,) = services.prompt_builder.build.call_args_list[0].args
    assert [s["id"] for s in shots] == ["split-1", "split-2"]
    assert services.prompt_builder.build.call_args_list[0].kwargs == {"include_black_screen": True}


@pytest.mark.asyncio
async def test_build_groups_falls_back_to_listing(sora_store, make_executor, services):
    services.prompt_builder.build.side_effect = RuntimeError("model offline")

    groups = await built(sora_store, make_executor(sora_store))

    assert sora_store.get_node("sora").status == NodeStatus.SUCCESS
    assert groups[1]["prompt"] == (
        "Shot 0:\nduration: 0.5sec\n"
        "Scene: Pure black screen, silence, no characters and no movement.\n\n"
        "Shot 1:\nduration: 4.0sec\nScene: scene 3"
    )


@pytest.mark.asyncio
async def test_build_groups_uses_configured_duration(
    make_node, make_canvas, make_store, make_executor
):
    store = make_store(
        make_canvas(
            make_node(
                "split",
                K.STORYBOARD_SPLITTER,
                split_shots=[split_shot(i + 1, 3.0) for i in range(4)],
            ),
            make_node("sora", K.SORA_VIDEO_GENERATOR, inputs=["split"]),
        )
    )
    # EngineConfig.max_task_duration is 10s in the test config
    groups = await built(store, make_executor(store))
    assert [g["total_duration"] for g in groups] == [9.0, 3.0]


@pytest.mark.asyncio
async def test_build_groups_requires_splitter(make_node, make_canvas, make_store, make_executor):
    store = make_store(make_canvas(make_node("sora", K.SORA_VIDEO_GENERATOR)))
    await make_executor(store).execute("sora")

    node = store.get_node("sora")
    assert node.status == NodeStatus.ERROR
    assert node.get("error") == "Connect a storyboard splitter node"


@pytest.mark.asyncio
async def test_build_groups_requires_shots(make_node, make_canvas, make_store, make_executor):
    store = make_store(
        make_canvas(
            make_node("split", K.STORYBOARD_SPLITTER, split_shots=[]),
            make_node("sora", K.SORA_VIDEO_GENERATOR, inputs=["split"]),
        )
    )
    await make_executor(store).execute("sora")
    assert store.get_node("sora").get("error") == "The connected splitters have no shots"


@pytest.mark.asyncio
async def test_actions_need_groups(sora_store, make_executor):
    await make_executor(sora_store).execute("sora", "generate-videos")
    assert sora_store.get_node("sora").get("error") == "Build the task groups first"


@pytest.mark.asyncio
async def test_invalid_group_index(sora_store, make_executor):
    executor = make_executor(sora_store)
    await built(sora_store, executor)

    await executor.execute("sora", "generate-video:two")
    assert "Invalid task group index" in sora_store.get_node("sora").get("error")

    await executor.execute("sora", "generate-video:7")
    assert sora_store.get_node("sora").get("error") == "No task group #7"


@pytest.mark.asyncio
async def test_unknown_action(sora_store, make_executor):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    await executor.execute("sora", "explode")
    assert sora_store.get_node("sora").get("error") == "Unknown action 'explode'"


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_regenerate_prompt_resets_modified_flag(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    services.text.sanitize_prompt.return_value = "clean prompt"
    await executor.execute("sora", "remove-sensitive-words:2")

    group = groups_of(sora_store)[1]
    assert group["prompt"] == "clean prompt"
    assert group["prompt_modified"] is True

    services.prompt_builder.build.return_value = "Shot 1:\nduration: 4.0sec\nScene: fresh"
    await executor.execute("sora", "regenerate-prompt:2")

    group = groups_of(sora_store)[1]
    assert group["prompt"] == "Shot 1:\nduration: 4.0sec\nScene: fresh"
    assert group["prompt_modified"] is False
    assert groups_of(sora_store)[0]["prompt"] == "Shot 1:\nduration: 3.0sec\nScene: a"


@pytest.mark.asyncio
async def test_remove_sensitive_words_needs_prompt(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    groups = groups_of(sora_store)
    groups[0]["prompt"] = ""
    await sora_store.update_node("sora", payload={"task_groups": groups})

    await executor.execute("sora", "remove-sensitive-words:1")

    assert sora_store.get_node("sora").get("error") == "Task group #1 has no prompt"
    services.text.sanitize_prompt.assert_not_called()


# ---------------------------------------------------------------------------
# Reference images
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fuse_images_uploads_reference(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)

    await executor.execute("sora", "fuse-images")

    services.image_fuser.fuse.assert_any_await(
        ["https://cdn/split-1.png", "https://cdn/split-2.png"]
    )
    assert services.image_fuser.fuse.await_count == 2
    data, filename = services.asset_uploader.upload.call_args_list[0].args
    assert data == "data:image/png;base64,FUSED"
    assert filename.startswith("sora-reference-sora-tg-1-")
    assert filename.endswith(".png")

    groups = groups_of(sora_store)
    assert all(g["stage"] == "image_fused" for g in groups)
    assert all(g["reference_image"] == "https://assets/fused.png" for g in groups)


@pytest.mark.asyncio
async def test_fuse_images_without_uploader_keeps_data_uri(sora_store, make_executor, services):
    services.asset_uploader = None
    executor = make_executor(sora_store)
    await built(sora_store, executor)

    await executor.execute("sora", "fuse-images")

    assert groups_of(sora_store)[0]["reference_image"] == "data:image/png;base64,FUSED"


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_generate_one_group_spawns_child(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    seen_progress = []

    async def submit(request, on_progress):
        await on_progress(50)
        seen_progress.append(groups_of(sora_store)[1]["progress"])
        return VideoJobResult(video_url="https://cdn/tg2.mp4", job_id="job-2")

    services.video.submit_job.side_effect = submit

    await executor.execute("sora", "generate-video:2")

    request = services.video.submit_job.call_args.args[0]
    assert request.duration == 4.0
    assert request.aspect_ratio == "16:9"
    assert seen_progress == [65]

    node = sora_store.get_node("sora")
    assert node.status == NodeStatus.SUCCESS
    group = node.get("task_groups")[1]
    assert group["stage"] == TaskGroupStage.COMPLETED
    assert group["progress"] == 100
    assert group["video_url"] == "https://cdn/tg2.mp4"
    assert group["remote_job_id"] == "job-2"
    assert node.get("task_groups")[0]["stage"] == "prompt_ready"

    (child,) = sora_store.snapshot.get_downstream_nodes("sora")
    assert child.kind == K.SORA_VIDEO_CHILD
    assert child.status == NodeStatus.SUCCESS
    assert child.get("video_url") == "https://cdn/tg2.mp4"
    assert child.get("sequence_number") == 2
    assert node.get("child_node_ids") == [child.id]


@pytest.mark.asyncio
async def test_generate_all_partial_failure(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)

    async def submit(request, on_progress):
        if "scene 3" in request.prompt:
            raise RuntimeError("moderation")
        return VideoJobResult(video_url="https://cdn/ok.mp4")

    groups = groups_of(sora_store)
    groups[0]["prompt"] = "scene 1 scene 2"
    groups[1]["prompt"] = "scene 3"
    await sora_store.update_node("sora", payload={"task_groups": groups})
    services.video.submit_job.side_effect = submit

    await executor.execute("sora", "generate-videos")

    node = sora_store.get_node("sora")
    assert node.status == NodeStatus.SUCCESS
    first, second = node.get("task_groups")
    assert first["stage"] == "completed"
    assert second["stage"] == "failed"
    assert second["error"] == "moderation"
    assert len(sora_store.snapshot.get_downstream_nodes("sora")) == 1


@pytest.mark.asyncio
async def test_unexpected_error_marks_group_failed(
    sora_store, make_executor, services, monkeypatch
):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    services.video.submit_job.return_value = VideoJobResult(video_url="https://cdn/v.mp4")
    monkeypatch.setattr(sora_store, "grow", AsyncMock(side_effect=KeyError("sora")))

    await executor.execute("sora", "generate-video:1")

    node = sora_store.get_node("sora")
    assert node.status == NodeStatus.ERROR
    first, second = node.get("task_groups")
    assert first["stage"] == "failed"
    assert "sora" in first["error"]
    assert first["progress"] == 0
    assert second["stage"] == "prompt_ready"


@pytest.mark.asyncio
async def test_generate_all_total_failure(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    services.video.submit_job.side_effect = ExternalServiceError("quota", provider="video")

    await executor.execute("sora", "generate-videos")

    node = sora_store.get_node("sora")
    assert node.status == NodeStatus.ERROR
    assert node.get("error") == "All 2 task groups failed: quota"
    assert all(g["stage"] == "failed" for g in node.get("task_groups"))


@pytest.mark.asyncio
async def test_generate_all_skips_completed(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    groups = groups_of(sora_store)
    groups[0]["stage"] = "completed"
    await sora_store.update_node("sora", payload={"task_groups": groups})
    services.video.submit_job.return_value = VideoJobResult(video_url="https://cdn/v.mp4")

    await executor.execute("sora", "generate-videos")

    assert services.video.submit_job.await_count == 1
    assert services.video.submit_job.call_args.args[0].duration == 4.0


@pytest.mark.asyncio
async def test_concurrent_children_get_distinct_rows(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    services.video.submit_job.return_value = VideoJobResult(video_url="https://cdn/v.mp4")

    await executor.execute("sora", "generate-videos")

    children = sora_store.snapshot.get_downstream_nodes("sora")
    assert len(children) == 2
    assert len({c.position.y for c in children}) == 2
    assert sora_store.get_node("sora").get("child_node_ids") == [c.id for c in children]


@pytest.mark.asyncio
async def test_cancel_resets_in_flight_groups(sora_store, make_executor, services):
    executor = make_executor(sora_store)
    await built(sora_store, executor)
    started = asyncio.Event()

    async def slow_submit(request, on_progress):
        started.set()
        await asyncio.sleep(10)
        return VideoJobResult(video_url="https://cdn/never.mp4")

    services.video.submit_job.side_effect = slow_submit

    task = asyncio.create_task(executor.execute("sora", "generate-video:1"))
    await asyncio.wait_for(started.wait(), timeout=1)
    assert groups_of(sora_store)[0]["stage"] == "generating"

    assert executor.cancel("sora")
    await asyncio.wait_for(task, timeout=1)

    node = sora_store.get_node("sora")
    assert node.status == NodeStatus.SUCCESS
    assert node.get("error") is None
    assert node.get("stage") is None
    group = node.get("task_groups")[0]
    assert group["stage"] == "prompt_ready"
    assert group["progress"] == 0
    assert sora_store.snapshot.get_downstream_nodes("sora") == []
