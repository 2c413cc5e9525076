"""
CANVASFLOW DISPATCHER - One Generation Job per Node

dispatch(node_id) drives a queued video node through the state machine:

    1. single-flight guard (in-flight set, released in finally)
    2. precondition: node exists, is a video, status == queued
    3. readiness: WAITING -> pending, INVALID -> error (no adapter call)
    4. auto-caption when the node has frames but no prompt
    5. fan-out: generation_count > 1 clones N-1 queued siblings
    6. queued -> generating, edges animated, progress ticker started
    7. media ids resolved (uploads for local frames)
    8. submit_generation + await_result, bounded by the result deadline
    9. success or error patch through the placeholder manager

Concurrency:
    Everything runs on one event loop. The only suspension points are the
    adapter / vision calls, so the store is never written concurrently.
    Siblings share no lock; each one is dispatched on its own.

Cancellation:
    Deleting the node is the only cancellation. The in-flight adapter call
    keeps running and its result patch becomes a no-op.
"""
import asyncio
import logging
from typing import Coroutine, FrozenSet, List, Optional, Set

import msgspec

from core.layout import fanout_position, node_size
from core.ontology import DERIVATIVE_OPERATIONS, GenerationKind, NodeKind, VideoStatus
from core.readiness import Readiness, Verdict, evaluate_readiness, resolve_inputs
from core.schemas import Edge, ImageNode, VideoNode, generate_node_id, now_utc
from infrastructure.config import OrchestrationConfig
from infrastructure.event_bus import publish_alert
from orchestration.adapter import (
    GenerationAdapter,
    GenerationError,
    GenerationInputs,
    GenerationResult,
    MissingCredentialError,
    PreconditionFailure,
    ResultRef,
    ResultTimeoutError,
    ValidationFailure,
    VisionAnalyzer,
)
from orchestration.media_sync import ensure_media_id
from orchestration.placeholders import PlaceholderManager
from orchestration.progress import ProgressTicker

logger = logging.getLogger("canvasflow.dispatcher")


class GenerationDispatcher:
    """
    State machine and concurrency guard for video generation jobs.

    Usage:
        dispatcher = GenerationDispatcher(store, adapter, vision, config.orchestration)
        await dispatcher.dispatch("video-3f2a")   # run one job to completion
        dispatcher.schedule("video-3f2a")         # fire-and-forget
        await dispatcher.wait_idle()              # drain spawned jobs (siblings too)
    """

    def __init__(
        self,
        store,
        adapter: GenerationAdapter,
        vision: Optional[VisionAnalyzer] = None,
        config: Optional[OrchestrationConfig] = None,
        placeholders: Optional[PlaceholderManager] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.vision = vision
        self.config = config or OrchestrationConfig()
        self.placeholders = placeholders or PlaceholderManager(store)

        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> FrozenSet[str]:
        """Node ids with a job currently running."""
        return frozenset(self._in_flight)

    # =========================================================================
    # TASKS
    # =========================================================================

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Dispatch task crashed: {exc}", exc_info=exc)

    def schedule(self, node_id: str, delay: float = 0.0) -> asyncio.Task:
        """Dispatch in the background, optionally after `delay` seconds."""
        return self._spawn(self._dispatch_later(node_id, delay))

    async def _dispatch_later(self, node_id: str, delay: float) -> bool:
        if delay > 0:
            await asyncio.sleep(delay)
        return await self.dispatch(node_id)

    async def wait_idle(self) -> None:
        """Wait until every spawned job, including fan-out siblings, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, node_id: str) -> bool:
        """
        Run one generation job for a queued video node.

        A second call for a node that is already in flight is a silent no-op.
        Generation failures never escape: they end as node state.

        Returns:
            True if the job reached the adapter and its outcome was applied
        """
        if node_id in self._in_flight:
            logger.debug(f"dispatch({node_id}) ignored: already in flight")
            return False

        self._in_flight.add(node_id)
        try:
            return await self._run(node_id)
        finally:
            self._in_flight.discard(node_id)

    async def _run(self, node_id: str) -> bool:
        node = self.store.get_node(node_id)
        if not isinstance(node, VideoNode):
            logger.debug(f"dispatch({node_id}) ignored: not a video node")
            return False
        if node.status != VideoStatus.QUEUED:
            logger.debug(f"dispatch({node_id}) ignored: status is {node.status.value}")
            return False

        readiness = evaluate_readiness(node, resolve_inputs(self.store, node))

        if readiness.verdict == Verdict.WAITING:
            logger.info(f"{node_id} not ready: {readiness.reason}")
            self.store.update_node(node_id, {"status": VideoStatus.PENDING, "ready_for_generation": False})
            return False
        if readiness.verdict == Verdict.INVALID:
            logger.warning(f"{node_id} invalid: {readiness.reason}")
            self.store.update_node(node_id, {"ready_for_generation": False})
            self.placeholders.patch_on_error(node_id, readiness.reason)
            return False

        prompt = readiness.prompt
        if readiness.verdict == Verdict.NEEDS_CAPTION:
            prompt = await self._caption(node_id, readiness)
            if prompt is None:
                return False

        node = self.store.get_node(node_id)
        if not isinstance(node, VideoNode):
            return False
        if node.generation_count > 1:
            self._fan_out(node)

        patch = {
            "status": VideoStatus.GENERATING,
            "progress": self.config.initial_progress,
            "error_message": None,
            "ready_for_generation": True,
        }
        if self.store.update_node(node_id, patch) is None:
            return False
        self.placeholders.mark_edges_generating(node_id)
        logger.info(f"Dispatching {readiness.operation.value} for {node_id}")

        try:
            async with ProgressTicker(
                self.store,
                node_id,
                interval=self.config.ticker_interval,
                step=self.config.ticker_step,
                ceiling=self.config.ticker_ceiling,
            ):
                inputs = await self._build_inputs(node, readiness, prompt)
                ref = await self.adapter.submit_generation(readiness.operation, inputs)
                result = await self._await_result(ref)
        except PreconditionFailure as e:
            logger.error(f"Precondition failed for {node_id}: {e}")
            publish_alert(self.store.events, str(e), node_id=node_id, error_type="PreconditionFailure")
            self.placeholders.patch_on_error(node_id, str(e))
            return True
        except ResultTimeoutError as e:
            logger.warning(f"{node_id}: {e}")
            self.placeholders.patch_on_error(node_id, "generation timed out")
            return True
        except GenerationError as e:
            logger.error(f"Generation failed for {node_id}: {e}")
            self.placeholders.patch_on_error(node_id, str(e))
            return True
        except Exception as e:
            logger.error(f"Adapter raised for {node_id}: {e}", exc_info=True)
            self.placeholders.patch_on_error(node_id, str(e) or type(e).__name__)
            return True

        if self.placeholders.patch_on_success(node_id, result):
            logger.info(f"{node_id} ready: {result.content_url}")
        return True

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _caption(self, node_id: str, readiness: Readiness) -> Optional[str]:
        """
        Synthesize a prompt from the frame inputs.

        Returns:
            The prompt, or None when the job must stop (node moved to
            pending or error, or deleted meanwhile)
        """
        self.store.update_node(node_id, {
            "status": VideoStatus.GENERATING,
            "progress": self.config.caption_progress,
        })
        images: List[ImageNode] = [
            img for img in (
                self.store.get_node(readiness.start_image_id) if readiness.start_image_id else None,
                self.store.get_node(readiness.end_image_id) if readiness.end_image_id else None,
            )
            if isinstance(img, ImageNode)
        ]

        try:
            if self.vision is None:
                raise MissingCredentialError("no vision analyzer configured")
            prompt = await self.vision.infer_prompt_from_images(images)
        except MissingCredentialError as e:
            logger.warning(f"Cannot caption {node_id}: {e}")
            self.store.update_node(node_id, {
                "status": VideoStatus.PENDING,
                "progress": None,
                "error_message": str(e),
                "ready_for_generation": False,
            })
            return None
        except Exception as e:
            logger.error(f"Captioning {node_id} failed: {e}")
            self.placeholders.patch_on_error(node_id, f"prompt inference failed: {e}")
            return None

        if self.store.update_node(node_id, {
            "prompt_text": prompt,
            "progress": self.config.captioned_progress,
        }) is None:
            logger.debug(f"{node_id} deleted while captioning")
            return None
        return prompt

    def _fan_out(self, node: VideoNode) -> List[str]:
        """
        Clone `node` into generation_count - 1 queued siblings.

        Each clone gets count 1, the same inputs, a copy of every incoming
        edge, and its own staggered dispatch.
        """
        count = min(node.generation_count, self.config.max_generation_count)
        self.store.update_node(node.id, {"generation_count": 1})

        size = node_size(node)
        incoming = self.store.incoming_edges(node.id)
        clone_ids: List[str] = []

        for index in range(1, count):
            clone = msgspec.structs.replace(
                node,
                id=generate_node_id(NodeKind.VIDEO),
                position=fanout_position(node.position, size, index, self.config.fanout_gap),
                status=VideoStatus.QUEUED,
                progress=None,
                generation_count=1,
                error_message=None,
                ready_for_generation=True,
                created_at=now_utc(),
            )
            self.store.add_node(clone)
            for edge in incoming:
                self.store.add_edge(Edge.create(edge.source_id, clone.id, edge.target_slot))
            clone_ids.append(clone.id)
            self.schedule(clone.id, delay=index * self.config.stagger_seconds)

        if clone_ids:
            logger.info(f"Fanned out {node.id} into {len(clone_ids) + 1} siblings")
        return clone_ids

    async def _build_inputs(self, node: VideoNode, readiness: Readiness, prompt: str) -> GenerationInputs:
        """
        Resolve every input to a backend media id.

        Raises:
            ValidationFailure: A reference image has no media id, or a frame
                               cannot be uploaded
            PreconditionFailure: A derivative source video has no media id
        """
        operation = readiness.operation
        start_media_id = end_media_id = source_media_id = None
        reference_media_ids: List[str] = []

        if operation == GenerationKind.IMAGE_TO_IMAGE:
            start_media_id = await ensure_media_id(self.store, self.adapter, readiness.start_image_id)
            if readiness.end_image_id:
                end_media_id = await ensure_media_id(self.store, self.adapter, readiness.end_image_id)

        elif operation == GenerationKind.REFERENCE_IMAGES:
            for ref_id in readiness.reference_image_ids:
                image = self.store.get_node(ref_id)
                if not isinstance(image, ImageNode) or not image.media_id:
                    raise ValidationFailure(f"reference image {ref_id} has no media id")
                reference_media_ids.append(image.media_id)

        elif operation in DERIVATIVE_OPERATIONS:
            source = self.store.get_node(readiness.source_id) if readiness.source_id else None
            if not isinstance(source, VideoNode) or not source.media_id:
                raise PreconditionFailure(
                    f"{operation.value} requires source video {readiness.source_id} to have a media id"
                )
            source_media_id = source.media_id

        return GenerationInputs(
            prompt=prompt,
            aspect_ratio=node.aspect_ratio,
            start_media_id=start_media_id,
            end_media_id=end_media_id,
            reference_media_ids=reference_media_ids,
            source_media_id=source_media_id,
            motion_type=node.motion_type,
            video_model=node.video_model,
        )

    async def _await_result(self, ref: ResultRef) -> GenerationResult:
        timeout = self.config.result_timeout_seconds
        if not timeout:
            return await self.adapter.await_result(ref)
        try:
            return await asyncio.wait_for(self.adapter.await_result(ref), timeout)
        except asyncio.TimeoutError as e:
            raise ResultTimeoutError(f"generation timed out after {timeout:g}s") from e
