"""
End-to-end generation flows through CanvasController, the dispatcher and
the mock backend.

Each test wires a small canvas the way a user would, lets the jobs run,
and then checks the store: node states, edges, and what reached the
backend.
"""
import asyncio

import pytest

from core.graph_invariants import assert_valid
from core.ontology import EdgeState, GenerationKind, TargetSlot, VideoStatus
from core.readiness import Verdict
from core.schemas import ImageNode, VideoNode
from infrastructure.event_bus import EventType
from orchestration.canvas import CanvasController
from orchestration.mock_backend import MockGenerationBackend


def videos(store):
    return [n for n in store.nodes() if isinstance(n, VideoNode)]


def images(store):
    return [n for n in store.nodes() if isinstance(n, ImageNode)]


# =============================================================================
# DISPATCH GUARANTEES
# =============================================================================

@pytest.mark.asyncio
async def test_concurrent_dispatch_reaches_backend_once(controller, backend):
    video = controller.add_video_node(prompt_text="lanterns on a river")
    controller.store.update_node(video.id, {"status": VideoStatus.QUEUED})

    results = await asyncio.gather(
        controller.dispatcher.dispatch(video.id),
        controller.dispatcher.dispatch(video.id),
    )

    assert sorted(results) == [False, True]
    assert len(backend.submissions) == 1
    assert controller.store.get_node(video.id).status == VideoStatus.READY
    assert controller.dispatcher.in_flight == frozenset()


@pytest.mark.asyncio
async def test_result_after_delete_is_dropped(store, vision, canvas_config):
    backend = MockGenerationBackend(latency=0.05)
    controller = CanvasController(backend, vision, canvas_config, store)
    video = controller.add_video_node(prompt_text="a paper boat")

    controller.request_generation(video.id)
    await asyncio.sleep(0.01)
    assert store.get_node(video.id).status == VideoStatus.GENERATING

    assert controller.delete_node(video.id) is True
    await controller.dispatcher.wait_idle()

    assert store.get_node(video.id) is None
    assert store.node_count == 0
    assert controller.dispatcher.in_flight == frozenset()


# =============================================================================
# READINESS
# =============================================================================

@pytest.mark.asyncio
async def test_video_waits_until_prompt_or_image(controller, synced_image):
    video = controller.add_video_node()
    assert controller.readiness(video.id).verdict == Verdict.WAITING

    controller.request_generation(video.id)
    await controller.dispatcher.wait_idle()
    assert controller.store.get_node(video.id).status == VideoStatus.PENDING

    image = synced_image("frame")
    controller.connect(image.id, video.id, TargetSlot.START_IMAGE)
    assert controller.readiness(video.id).verdict == Verdict.NEEDS_CAPTION

    controller.set_prompt(video.id, "a gust of wind")
    assert controller.readiness(video.id).verdict == Verdict.READY


@pytest.mark.asyncio
async def test_references_without_prompt_stay_pending(controller, backend, synced_image):
    ref = synced_image("ref")
    video = controller.add_video_node()
    controller.connect(ref.id, video.id, TargetSlot.REF_IMAGE_1)

    statuses = []

    def record(event):
        if event.type == EventType.NODE_UPDATED and event.payload["node_id"] == video.id:
            statuses.append(event.payload["node"].status)

    controller.store.subscribe(record)
    assert controller.request_generation(video.id) is None
    await controller.dispatcher.wait_idle()

    assert VideoStatus.QUEUED not in statuses
    assert set(statuses) <= {VideoStatus.PENDING}
    node = controller.store.get_node(video.id)
    assert node.status == VideoStatus.PENDING
    assert node.ready_for_generation is False
    assert backend.submissions == []
    assert controller.dispatcher.in_flight == frozenset()


@pytest.mark.asyncio
async def test_local_frame_is_uploaded_once_for_all_siblings(store, vision, canvas_config):
    backend = MockGenerationBackend(latency=0.05)
    controller = CanvasController(backend, vision, canvas_config, store)
    frame = controller.store.add_node(ImageNode.create(content_b64="aGFyYm91cg=="))
    video = controller.add_video_node(prompt_text="three takes", generation_count=3)
    controller.connect(frame.id, video.id, TargetSlot.START_IMAGE)

    controller.request_generation(video.id)
    await controller.dispatcher.wait_idle()

    assert len(backend.calls_named("upload_content")) == 1
    synced = store.get_node(frame.id)
    siblings = videos(store)
    assert len(siblings) == 3
    assert all(s.status == VideoStatus.READY for s in siblings)
    assert {inputs.start_media_id for _, inputs in backend.submissions} == {synced.media_id}


# =============================================================================
# SCENARIOS
# =============================================================================

@pytest.mark.asyncio
async def test_frame_video_is_captioned_then_generated(controller, backend, vision, synced_image):
    frame = synced_image("i1")
    video = controller.add_video_node()
    controller.connect(frame.id, video.id, TargetSlot.START_IMAGE)

    controller.request_generation(video.id)
    await controller.dispatcher.wait_idle()

    assert vision.calls == [[frame.id]]
    kind, inputs = backend.submissions[0]
    assert kind == GenerationKind.IMAGE_TO_IMAGE
    assert inputs.start_media_id == "i1"
    assert inputs.prompt == "A gentle pan across the harbour"

    node = controller.store.get_node(video.id)
    assert node.status == VideoStatus.READY
    assert node.src == "https://mock.canvasflow.local/media-job-1-0.mp4"
    assert node.media_id == "media-job-1-0"
    assert node.prompt_text == "A gentle pan across the harbour"
    (edge,) = controller.store.incoming_edges(video.id)
    assert edge.animated is False
    assert edge.state == EdgeState.IDLE


@pytest.mark.asyncio
async def test_generation_count_fans_out_into_siblings(controller, backend, synced_image):
    source = synced_image("src")
    video = controller.add_video_node(prompt_text="three takes", generation_count=3)
    controller.connect(source.id, video.id, TargetSlot.START_IMAGE)

    controller.request_generation(video.id)
    await controller.dispatcher.wait_idle()

    siblings = videos(controller.store)
    assert len(siblings) == 3
    assert len(backend.submissions) == 3
    for sibling in siblings:
        assert sibling.generation_count == 1
        assert sibling.status == VideoStatus.READY
        assert [e.source_id for e in controller.store.incoming_edges(sibling.id)] == [source.id]
    assert len({s.position.x for s in siblings}) == 3
    assert_valid(controller.store)


@pytest.mark.asyncio
async def test_one_failing_sibling_leaves_the_rest(store, vision, canvas_config):
    class FlakyBackend(MockGenerationBackend):
        async def await_result(self, ref):
            if ref.job_id == "job-2":
                await asyncio.sleep(0)
                raise ConnectionError("backend dropped the job")
            return await super().await_result(ref)

    controller = CanvasController(FlakyBackend(latency=0.0), vision, canvas_config, store)
    video = controller.add_video_node(prompt_text="two takes", generation_count=2)
    controller.request_generation(video.id)
    await controller.dispatcher.wait_idle()

    statuses = sorted(v.status.value for v in videos(store))
    assert statuses == ["error", "ready"]
    (failed,) = [v for v in videos(store) if v.status == VideoStatus.ERROR]
    assert failed.error_message == "backend dropped the job"


@pytest.mark.asyncio
async def test_reference_without_media_id_fails_before_backend(controller, backend, synced_image):
    a = synced_image("a")
    b = controller.add_image_node("https://img.example/local.png")
    video = controller.add_video_node(prompt_text="the two of them dancing")
    controller.connect(a.id, video.id, TargetSlot.REF_IMAGE_1)
    controller.connect(b.id, video.id, TargetSlot.REF_IMAGE_2)

    controller.request_generation(video.id)
    await controller.dispatcher.wait_idle()

    node = controller.store.get_node(video.id)
    assert node.status == VideoStatus.ERROR
    assert b.id in node.error_message
    assert backend.submissions == []


@pytest.mark.asyncio
async def test_derivative_without_source_media_raises_alert(controller, backend):
    alerts = []
    controller.store.events.subscribe(EventType.ALERT, alerts.append)
    source = controller.store.add_node(VideoNode.create(status=VideoStatus.READY, src="https://x/v.mp4"))

    extended = controller.extend_video(source.id, "keep going")
    await controller.dispatcher.wait_idle()

    assert controller.store.get_node(extended.id).status == VideoStatus.ERROR
    assert backend.submissions == []
    assert len(alerts) == 1
    assert alerts[0].payload["node_id"] == extended.id


# =============================================================================
# IMAGES & STRUCTURE
# =============================================================================

@pytest.mark.asyncio
async def test_short_image_batch_discards_surplus(store, vision, canvas_config):
    controller = CanvasController(MockGenerationBackend(latency=0.0, image_results=1), vision, canvas_config, store)
    text = controller.add_text_node("a lighthouse at night")

    ids = await controller.text_to_image(text_id=text.id, count=3)

    assert len(ids) == 1
    (image,) = images(store)
    assert image.id == ids[0]
    assert image.pending_generation is False
    assert image.src.endswith(".png")
    assert [e.target_id for e in store.outgoing_edges(text.id)] == ids
    assert_valid(store)


@pytest.mark.asyncio
async def test_delete_cascades_edges(controller, synced_image):
    image = synced_image("hub")
    first = controller.add_video_node(prompt_text="one")
    second = controller.add_video_node(prompt_text="two")
    controller.connect(image.id, first.id, TargetSlot.START_IMAGE)
    controller.connect(image.id, second.id, TargetSlot.REF_IMAGE_1)
    controller.connect(first.id, second.id, TargetSlot.SOURCE_VIDEO)

    controller.delete_node(first.id)
    assert controller.store.edge_count == 1
    controller.delete_node(image.id)
    assert controller.store.edge_count == 0

    node_ids = {n.id for n in controller.store.nodes()}
    for edge in controller.store.edges():
        assert {edge.source_id, edge.target_id} <= node_ids
    assert_valid(controller.store)
