"""
GenerationDispatcher: the per-node job state machine.

Verifies:
- single-flight per node id
- readiness routing (pending / error without an adapter call)
- auto-captioning and the missing-credential gap
- fan-out into queued siblings
- error classes mapped onto node + edge state
- late results for deleted nodes are dropped
"""
import asyncio

import pytest

from core.ontology import EdgeState, GenerationKind, TargetSlot, VideoModel, VideoStatus
from core.schemas import Edge, GeneratedFrom, VideoNode
from infrastructure.config import OrchestrationConfig
from infrastructure.event_bus import EventType
from orchestration.adapter import AdapterError, GenerationResult, MissingCredentialError
from orchestration.dispatcher import GenerationDispatcher
from orchestration.mock_backend import EchoVisionAnalyzer, MockGenerationBackend


def queued_video(store, **fields) -> VideoNode:
    fields.setdefault("status", VideoStatus.QUEUED)
    return store.add_node(VideoNode.create(**fields))


def wire(store, source_id, target_id, slot):
    return store.add_edge(Edge.create(source_id, target_id, slot))


class GatedBackend(MockGenerationBackend):
    """Holds await_result until the test opens the gate."""

    def __init__(self):
        super().__init__(latency=0.0)
        self.gate = asyncio.Event()

    async def await_result(self, ref):
        self.calls.append(("await_result", ref))
        await self.gate.wait()
        return GenerationResult(content_url="https://late.example/v.mp4", media_id="late")


# =============================================================================
# HAPPY PATH
# =============================================================================

class TestDispatchSuccess:

    @pytest.mark.asyncio
    async def test_text_to_video_reaches_ready(self, store, dispatcher, backend):
        video = queued_video(store, prompt_text="a paper boat in the rain")
        assert await dispatcher.dispatch(video.id) is True

        done = store.get_node(video.id)
        assert done.status == VideoStatus.READY
        assert done.progress == 100
        assert done.src.endswith(".mp4")
        assert done.media_id is not None
        kind, inputs = backend.submissions[0]
        assert kind == GenerationKind.TEXT_TO_VIDEO
        assert inputs.prompt == "a paper boat in the rain"

    @pytest.mark.asyncio
    async def test_frames_are_sent_as_media_ids(self, store, dispatcher, backend, synced_image):
        start, end = synced_image("m-start"), synced_image("m-end")
        video = queued_video(store, start_image_id=start.id, end_image_id=end.id, prompt_text="morph")
        wire(store, start.id, video.id, TargetSlot.START_IMAGE)
        wire(store, end.id, video.id, TargetSlot.END_IMAGE)

        await dispatcher.dispatch(video.id)

        kind, inputs = backend.submissions[0]
        assert kind == GenerationKind.IMAGE_TO_IMAGE
        assert (inputs.start_media_id, inputs.end_media_id) == ("m-start", "m-end")
        assert all(e.state == EdgeState.IDLE and not e.animated for e in store.incoming_edges(video.id))

    @pytest.mark.asyncio
    async def test_edges_animate_while_generating(self, store, synced_image, orchestration_config):
        backend = GatedBackend()
        dispatcher = GenerationDispatcher(store, backend, config=orchestration_config)
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id, prompt_text="go")
        wire(store, start.id, video.id, TargetSlot.START_IMAGE)

        task = asyncio.create_task(dispatcher.dispatch(video.id))
        await asyncio.sleep(0.01)
        edge = store.incoming_edges(video.id)[0]
        assert edge.animated and edge.state == EdgeState.GENERATING
        assert store.get_node(video.id).status == VideoStatus.GENERATING
        assert store.get_node(video.id).progress == orchestration_config.initial_progress

        backend.gate.set()
        await task
        assert store.get_node(video.id).status == VideoStatus.READY
        assert not store.incoming_edges(video.id)[0].animated


# =============================================================================
# GUARDS
# =============================================================================

class TestGuards:

    @pytest.mark.asyncio
    async def test_single_flight(self, store, orchestration_config):
        backend = GatedBackend()
        dispatcher = GenerationDispatcher(store, backend, config=orchestration_config)
        video = queued_video(store, prompt_text="once")

        first = asyncio.create_task(dispatcher.dispatch(video.id))
        await asyncio.sleep(0.01)
        assert video.id in dispatcher.in_flight
        assert await dispatcher.dispatch(video.id) is False

        backend.gate.set()
        await first
        assert len(backend.submissions) == 1
        assert dispatcher.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_only_queued_videos_dispatch(self, store, dispatcher, backend):
        pending = store.add_node(VideoNode.create(prompt_text="x"))
        assert await dispatcher.dispatch(pending.id) is False
        assert await dispatcher.dispatch("video-missing") is False
        assert backend.submissions == []

    @pytest.mark.asyncio
    async def test_waiting_goes_back_to_pending(self, store, dispatcher, backend):
        video = queued_video(store)
        assert await dispatcher.dispatch(video.id) is False
        assert store.get_node(video.id).status == VideoStatus.PENDING
        assert backend.submissions == []

    @pytest.mark.asyncio
    async def test_invalid_errors_without_adapter_call(self, store, dispatcher, backend, synced_image):
        start, end = synced_image("a"), synced_image("b")
        video = queued_video(
            store, start_image_id=start.id, end_image_id=end.id,
            prompt_text="x", video_model=VideoModel.HAILUO_2_3,
        )
        await dispatcher.dispatch(video.id)
        failed = store.get_node(video.id)
        assert failed.status == VideoStatus.ERROR
        assert "end frame" in failed.error_message
        assert backend.submissions == []

    @pytest.mark.asyncio
    async def test_reference_without_media_id_errors(self, store, dispatcher, backend):
        from core.schemas import ImageNode
        ref = store.add_node(ImageNode.create(src="https://x/r.png"))
        video = queued_video(store, reference_image_ids=[ref.id], prompt_text="dance")
        await dispatcher.dispatch(video.id)
        failed = store.get_node(video.id)
        assert failed.status == VideoStatus.ERROR
        assert ref.id in failed.error_message
        assert backend.submissions == []


# =============================================================================
# CAPTIONING
# =============================================================================

class TestCaptioning:

    @pytest.mark.asyncio
    async def test_prompt_inferred_from_frames(self, store, dispatcher, backend, vision, synced_image):
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id)
        await dispatcher.dispatch(video.id)

        done = store.get_node(video.id)
        assert done.status == VideoStatus.READY
        assert done.prompt_text == vision.caption
        assert vision.calls == [[start.id]]
        assert backend.submissions[0][1].prompt == vision.caption

    @pytest.mark.asyncio
    async def test_missing_credential_returns_to_pending(self, store, backend, synced_image, orchestration_config):
        vision = EchoVisionAnalyzer(error=MissingCredentialError("DASHSCOPE_API_KEY unset"))
        dispatcher = GenerationDispatcher(store, backend, vision, orchestration_config)
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id)

        assert await dispatcher.dispatch(video.id) is False
        node = store.get_node(video.id)
        assert node.status == VideoStatus.PENDING
        assert "DASHSCOPE_API_KEY" in node.error_message
        assert backend.submissions == []

    @pytest.mark.asyncio
    async def test_no_analyzer_behaves_like_missing_credential(self, store, backend, synced_image, orchestration_config):
        dispatcher = GenerationDispatcher(store, backend, None, orchestration_config)
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id)
        await dispatcher.dispatch(video.id)
        assert store.get_node(video.id).status == VideoStatus.PENDING

    @pytest.mark.asyncio
    async def test_caption_failure_is_an_error(self, store, backend, synced_image, orchestration_config):
        vision = EchoVisionAnalyzer(error=AdapterError("model offline"))
        dispatcher = GenerationDispatcher(store, backend, vision, orchestration_config)
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id)
        await dispatcher.dispatch(video.id)
        node = store.get_node(video.id)
        assert node.status == VideoStatus.ERROR
        assert node.error_message.startswith("prompt inference failed")


# =============================================================================
# FAN-OUT
# =============================================================================

class TestFanOut:

    @pytest.mark.asyncio
    async def test_count_produces_siblings(self, store, dispatcher, backend, synced_image):
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id, prompt_text="pan", generation_count=3)
        wire(store, start.id, video.id, TargetSlot.START_IMAGE)

        await dispatcher.dispatch(video.id)
        await dispatcher.wait_idle()

        videos = [n for n in store.nodes() if isinstance(n, VideoNode)]
        assert len(videos) == 3
        assert all(v.status == VideoStatus.READY for v in videos)
        assert all(v.generation_count == 1 for v in videos)
        assert len(backend.submissions) == 3
        # every sibling keeps the frame edge
        assert all(len(store.incoming_edges(v.id)) == 1 for v in videos)

    @pytest.mark.asyncio
    async def test_siblings_do_not_overlap(self, store, dispatcher):
        video = queued_video(store, prompt_text="pan", generation_count=2)
        await dispatcher.dispatch(video.id)
        await dispatcher.wait_idle()
        xs = sorted(n.position.x for n in store.nodes())
        assert xs[1] - xs[0] >= video.size.width

    @pytest.mark.asyncio
    async def test_count_is_capped(self, store, backend, orchestration_config):
        config = OrchestrationConfig(stagger_seconds=0.0, ticker_interval=60.0, max_generation_count=2)
        dispatcher = GenerationDispatcher(store, backend, config=config)
        video = store.add_node(VideoNode.create(status=VideoStatus.QUEUED, prompt_text="x", generation_count=4))
        await dispatcher.dispatch(video.id)
        await dispatcher.wait_idle()
        assert store.node_count == 2


# =============================================================================
# FAILURES
# =============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_adapter_failure_marks_node_and_edges(self, store, synced_image, orchestration_config):
        backend = MockGenerationBackend(latency=0.0, fail_kinds=[GenerationKind.IMAGE_TO_IMAGE])
        dispatcher = GenerationDispatcher(store, backend, config=orchestration_config)
        start = synced_image("m1")
        video = queued_video(store, start_image_id=start.id, prompt_text="x")
        wire(store, start.id, video.id, TargetSlot.START_IMAGE)

        assert await dispatcher.dispatch(video.id) is True
        failed = store.get_node(video.id)
        assert failed.status == VideoStatus.ERROR
        assert "mock backend failed" in failed.error_message
        assert failed.progress is None
        edge = store.incoming_edges(video.id)[0]
        assert edge.state == EdgeState.ERROR and not edge.animated

    @pytest.mark.asyncio
    async def test_result_deadline(self, store):
        backend = GatedBackend()
        config = OrchestrationConfig(ticker_interval=60.0, result_timeout_seconds=0.05)
        dispatcher = GenerationDispatcher(store, backend, config=config)
        video = queued_video(store, prompt_text="slow")
        await dispatcher.dispatch(video.id)
        failed = store.get_node(video.id)
        assert failed.status == VideoStatus.ERROR
        assert failed.error_message == "generation timed out"

    @pytest.mark.asyncio
    async def test_derivative_without_source_media_alerts(self, store, dispatcher, backend):
        source = store.add_node(VideoNode.create(status=VideoStatus.READY))
        video = queued_video(
            store, source_video_id=source.id,
            generated_from=GeneratedFrom(kind=GenerationKind.UPSCALE, source_ids=[source.id]),
        )
        alerts = []
        store.events.subscribe(EventType.ALERT, alerts.append)

        await dispatcher.dispatch(video.id)

        assert store.get_node(video.id).status == VideoStatus.ERROR
        assert len(alerts) == 1
        assert alerts[0].payload["node_id"] == video.id
        assert alerts[0].payload["error_type"] == "PreconditionFailure"
        assert backend.submissions == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_still_settles(self, store, orchestration_config):
        class Broken(MockGenerationBackend):
            async def submit_generation(self, kind, inputs):
                raise RuntimeError("socket closed")

        dispatcher = GenerationDispatcher(store, Broken(latency=0.0), config=orchestration_config)
        video = queued_video(store, prompt_text="x")
        await dispatcher.dispatch(video.id)
        assert store.get_node(video.id).error_message == "socket closed"
        assert dispatcher.in_flight == frozenset()


# =============================================================================
# CANCELLATION BY DELETE
# =============================================================================

class TestDeleteWhileInFlight:

    @pytest.mark.asyncio
    async def test_late_result_is_dropped(self, store, orchestration_config):
        backend = GatedBackend()
        dispatcher = GenerationDispatcher(store, backend, config=orchestration_config)
        video = queued_video(store, prompt_text="doomed")
        events = []

        task = asyncio.create_task(dispatcher.dispatch(video.id))
        await asyncio.sleep(0.01)
        store.delete_node(video.id)
        store.subscribe(events.append)

        backend.gate.set()
        await task
        assert not store.has_node(video.id)
        assert store.node_count == 0
        assert events == []

    @pytest.mark.asyncio
    async def test_schedule_and_wait_idle(self, store, dispatcher):
        video = queued_video(store, prompt_text="bg")
        dispatcher.schedule(video.id)
        await dispatcher.wait_idle()
        assert store.get_node(video.id).status == VideoStatus.READY
