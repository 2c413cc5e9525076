"""
CANVASFLOW CANVAS - The UI Bridge

CanvasController translates user actions (add, connect, disconnect, drag,
delete, generate) into Graph Store mutations and generation requests. It
owns the wiring between the store, the dispatcher and the image service,
and is the object the API layer and the demo CLI talk to.

Connection rules (target is a video):
    image -> start-image / end-image     sets the frame, kind image-to-image
    image -> ref-image-N                 sets reference slot N (positional)
    text  -> prompt-text / default       copies the text into prompt_text
    video -> source-video                sets the derivative source
    anything else into a video           rejected
A ready video that gets re-wired resets to pending with its content
cleared. An errored video keeps its status: retry is a new node.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import msgspec

from core.graph_store import GraphStore
from core.layout import right_of, video_ratio_for_image
from core.ontology import (
    AspectRatio,
    GenerationKind,
    NodeKind,
    REFERENCE_SLOTS,
    TargetSlot,
    UploadState,
    VideoStatus,
    reference_slot_index,
)
from core.readiness import Readiness, Verdict, readiness_for, refresh_readiness
from core.schemas import (
    AnyNode,
    Edge,
    GeneratedFrom,
    ImageNode,
    Position,
    Size,
    TextNode,
    VideoNode,
    generate_node_id,
    now_utc,
)
from infrastructure.config import CanvasConfig
from orchestration.adapter import GenerationAdapter, ValidationFailure, VisionAnalyzer
from orchestration.dispatcher import GenerationDispatcher
from orchestration.image_generation import ImageGenerationService
from orchestration.placeholders import PlaceholderManager

logger = logging.getLogger("canvasflow.canvas")

FRAME_SLOTS = (TargetSlot.START_IMAGE, TargetSlot.END_IMAGE)
TEXT_SLOTS = (TargetSlot.PROMPT_TEXT, TargetSlot.DEFAULT)


class CanvasController:
    """
    Usage:
        controller = CanvasController(adapter=MockGenerationBackend(), vision=EchoVisionAnalyzer())
        image = controller.add_image_node(src="https://...", media_id="m1")
        video = controller.add_video_node(prompt_text="a slow dolly in")
        controller.connect(image.id, video.id, TargetSlot.START_IMAGE)
        controller.request_generation(video.id)
        await controller.dispatcher.wait_idle()
    """

    def __init__(
        self,
        adapter: GenerationAdapter,
        vision: Optional[VisionAnalyzer] = None,
        config: Optional[CanvasConfig] = None,
        store: Optional[GraphStore] = None,
    ):
        self.config = config or CanvasConfig()
        self.store = store if store is not None else GraphStore()
        self.adapter = adapter
        self.placeholders = PlaceholderManager(self.store)
        self.dispatcher = GenerationDispatcher(
            self.store, adapter, vision, self.config.orchestration, self.placeholders,
        )
        self.images = ImageGenerationService(
            self.store, adapter, self.placeholders, self.config.orchestration,
        )
        self._selection: Tuple[str, ...] = ()

    @property
    def orchestration(self):
        return self.config.orchestration

    def _video(self, video_id: str) -> VideoNode:
        node = self.store.require_node(video_id)
        if not isinstance(node, VideoNode):
            raise ValidationFailure(f"{video_id} is not a video node")
        return node

    # =========================================================================
    # ADDING NODES
    # =========================================================================

    def add_text_node(self, text: str = "", position: Optional[Position] = None) -> TextNode:
        return self.store.add_node(TextNode.create(text=text, position=position))

    def add_image_node(self, src: str = "", position: Optional[Position] = None, **fields) -> ImageNode:
        if fields.get("media_id") and "upload_state" not in fields:
            fields["upload_state"] = UploadState.SYNCED
        return self.store.add_node(ImageNode.create(src=src, position=position, **fields))

    def add_video_node(self, position: Optional[Position] = None, **fields) -> VideoNode:
        """Add a video node; its status starts pending and readiness is computed."""
        fields.setdefault("video_model", self.orchestration.default_video_model)
        count = fields.get("generation_count", 1)
        if not 1 <= count <= self.orchestration.max_generation_count:
            raise ValidationFailure(
                f"generation_count must be between 1 and {self.orchestration.max_generation_count}"
            )
        video = self.store.add_node(VideoNode.create(position=position, **fields))
        refresh_readiness(self.store, video.id)
        return self.store.get_node(video.id)

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    def connect(self, source_id: str, target_id: str, slot: TargetSlot = TargetSlot.DEFAULT) -> Edge:
        """
        Connect two nodes, updating the target video's inputs.

        The edge id is deterministic per (source, target, slot), so
        reconnecting the same slot replaces the edge.

        Raises:
            NodeNotFoundError: Either end does not exist
            ValidationFailure: The connection is not meaningful for a video
            GraphInvariantError: Self-loop or cycle
        """
        slot = TargetSlot(slot)
        source = self.store.require_node(source_id)
        target = self.store.require_node(target_id)

        if isinstance(target, VideoNode):
            patch = self._connection_patch(source, target, slot)
            if target.status == VideoStatus.READY:
                patch.update(self._reset_content())
            edge = self.store.add_edge(Edge.create(source_id, target_id, slot))
            self.store.update_node(target_id, patch)
            self._after_rewire(target_id)
        else:
            edge = self.store.add_edge(Edge.create(source_id, target_id, slot))
        logger.debug(f"Connected {source_id} -> {target_id} [{slot.value}]")
        return edge

    def _connection_patch(self, source: AnyNode, video: VideoNode, slot: TargetSlot) -> Dict[str, Any]:
        previous = video.generated_from
        source_ids = list(previous.source_ids) if previous else []

        if isinstance(source, ImageNode) and slot in FRAME_SLOTS:
            field = "start_image_id" if slot == TargetSlot.START_IMAGE else "end_image_id"
            other = video.end_image_id if slot == TargetSlot.START_IMAGE else video.start_image_id
            ids = [i for i in (*source_ids, source.id, other) if i]
            return {
                field: source.id,
                "generated_from": GeneratedFrom(
                    kind=GenerationKind.IMAGE_TO_IMAGE,
                    source_ids=list(dict.fromkeys(ids)),
                    prompt=video.prompt_text or None,
                ),
            }

        if isinstance(source, ImageNode) and slot in REFERENCE_SLOTS:
            references = list(video.reference_image_ids)
            index = reference_slot_index(slot)
            references.extend([None] * (index + 1 - len(references)))
            references[index] = source.id
            return {
                "reference_image_ids": references,
                "generated_from": GeneratedFrom(
                    kind=GenerationKind.REFERENCE_IMAGES,
                    source_ids=[ref for ref in references if ref],
                    prompt=video.prompt_text or None,
                ),
            }

        if isinstance(source, TextNode) and slot in TEXT_SLOTS:
            patch: Dict[str, Any] = {"prompt_text": source.text}
            if previous is not None:
                patch["generated_from"] = msgspec.structs.replace(previous, prompt=source.text or None)
            return patch

        if isinstance(source, VideoNode) and slot == TargetSlot.SOURCE_VIDEO:
            kind = previous.kind if previous and previous.kind in (
                GenerationKind.EXTEND, GenerationKind.RESHOOT, GenerationKind.UPSCALE
            ) else GenerationKind.EXTEND
            return {
                "source_video_id": source.id,
                "generated_from": GeneratedFrom(kind=kind, source_ids=[source.id], prompt=video.prompt_text or None),
            }

        raise ValidationFailure(
            f"cannot connect {source.node_kind.value} to a video's {slot.value} input"
        )

    @staticmethod
    def _reset_content() -> Dict[str, Any]:
        return {
            "status": VideoStatus.PENDING,
            "progress": None,
            "src": "",
            "thumbnail": "",
            "media_id": None,
            "duration": 0.0,
        }

    def _after_rewire(self, video_id: str) -> Optional[Readiness]:
        auto = self.orchestration.auto_generate_on_connect
        readiness = refresh_readiness(self.store, video_id, queue_if_ready=auto)
        video = self.store.get_node(video_id)
        if auto and isinstance(video, VideoNode) and video.status == VideoStatus.QUEUED:
            self.dispatcher.schedule(video_id)
        return readiness

    def disconnect(self, edge_id: str) -> Optional[Edge]:
        """Remove an edge and clear the input slot it fed. Missing ids are a no-op."""
        edge = self.store.remove_edge(edge_id)
        if edge is None:
            return None
        target = self.store.get_node(edge.target_id)
        if isinstance(target, VideoNode):
            patch = self._clear_slot_patch(target, edge)
            if patch:
                self.store.update_node(target.id, patch)
            refresh_readiness(self.store, target.id)
        return edge

    @staticmethod
    def _clear_slot_patch(video: VideoNode, edge: Edge) -> Dict[str, Any]:
        slot = edge.target_slot
        patch: Dict[str, Any] = {}
        if slot == TargetSlot.START_IMAGE and video.start_image_id == edge.source_id:
            patch["start_image_id"] = None
        elif slot == TargetSlot.END_IMAGE and video.end_image_id == edge.source_id:
            patch["end_image_id"] = None
        elif slot in REFERENCE_SLOTS:
            references = list(video.reference_image_ids)
            index = reference_slot_index(slot)
            if index < len(references) and references[index] == edge.source_id:
                references[index] = None
                patch["reference_image_ids"] = references
        elif slot == TargetSlot.SOURCE_VIDEO and video.source_video_id == edge.source_id:
            patch["source_video_id"] = None
        elif slot in TEXT_SLOTS:
            patch["prompt_text"] = ""

        if patch and video.generated_from is not None:
            remaining = [i for i in video.generated_from.source_ids if i != edge.source_id]
            patch["generated_from"] = msgspec.structs.replace(video.generated_from, source_ids=remaining)
        return patch

    # =========================================================================
    # EDITING
    # =========================================================================

    def move_node(self, node_id: str, x: float, y: float) -> Optional[AnyNode]:
        return self.store.update_node(node_id, {"position": Position(x, y)})

    def resize_node(self, node_id: str, width: float, height: float) -> Optional[AnyNode]:
        return self.store.update_node(node_id, {"size": Size(width, height)})

    def set_prompt(self, node_id: str, text: str) -> Optional[AnyNode]:
        """Set a text node's text or a video node's prompt."""
        node = self.store.get_node(node_id)
        if isinstance(node, TextNode):
            return self.store.update_node(node_id, {"text": text})
        if isinstance(node, VideoNode):
            self.store.update_node(node_id, {"prompt_text": text})
            refresh_readiness(self.store, node_id)
            return self.store.get_node(node_id)
        if node is None:
            return None
        raise ValidationFailure(f"{node_id} has no prompt")

    def set_generation_count(self, video_id: str, count: int) -> VideoNode:
        limit = self.orchestration.max_generation_count
        if not 1 <= count <= limit:
            raise ValidationFailure(f"generation_count must be between 1 and {limit}")
        self._video(video_id)
        return self.store.update_node(video_id, {"generation_count": count})

    def delete_node(self, node_id: str) -> bool:
        """
        Delete a node and its edges.

        Videos it fed lose the corresponding input. An in-flight job for the
        node keeps running; its result is dropped when it lands.
        """
        dependents = self.store.outgoing_edges(node_id)
        removed = self.store.delete_node(node_id)
        if not removed:
            return False
        for edge in dependents:
            target = self.store.get_node(edge.target_id)
            if isinstance(target, VideoNode):
                patch = self._clear_slot_patch(target, edge)
                if patch:
                    self.store.update_node(target.id, patch)
                refresh_readiness(self.store, target.id)
        self._selection = tuple(i for i in self._selection if i != node_id)
        return True

    # =========================================================================
    # SELECTION (read-only input)
    # =========================================================================

    def select(self, node_ids: Sequence[str]) -> Tuple[str, ...]:
        self._selection = tuple(i for i in node_ids if self.store.has_node(i))
        return self._selection

    @property
    def selection(self) -> Tuple[str, ...]:
        return self._selection

    # =========================================================================
    # GENERATION REQUESTS
    # =========================================================================

    def request_generation(self, video_id: str):
        """
        Queue a video and schedule its dispatch.

        A pending node whose inputs are still incomplete stays pending.
        Inputs that can never work (e.g. a reference without a media id)
        are queued anyway so the dispatch turns the node into an error card.

        Returns:
            The scheduled task, or None if the node is already generating
            or still waiting for inputs

        Raises:
            ValidationFailure: The node is ready or errored (use regenerate)
        """
        video = self._video(video_id)
        if video.status == VideoStatus.GENERATING:
            return None
        if video.status not in (VideoStatus.PENDING, VideoStatus.QUEUED):
            raise ValidationFailure(f"{video_id} is {video.status.value}; regenerate creates a new node")
        if video.status == VideoStatus.PENDING:
            readiness = refresh_readiness(self.store, video_id, queue_if_ready=True)
            if readiness is None or readiness.verdict == Verdict.WAITING:
                logger.info(f"{video_id} stays pending: {readiness.reason if readiness else 'gone'}")
                return None
            if readiness.verdict == Verdict.INVALID:
                self.store.update_node(video_id, {"status": VideoStatus.QUEUED})
        return self.dispatcher.schedule(video_id)

    def regenerate(self, video_id: str) -> VideoNode:
        """
        Retry as a NEW node next to the original, with the same inputs and
        incoming edges. The original is never mutated.
        """
        original = self._video(video_id)
        retry_node = msgspec.structs.replace(
            original,
            id=generate_node_id(NodeKind.VIDEO),
            position=right_of(original, self.orchestration.fanout_gap),
            status=VideoStatus.QUEUED,
            progress=None,
            error_message=None,
            src="",
            thumbnail="",
            duration=0.0,
            media_id=None,
            generation_count=1,
            created_at=now_utc(),
        )
        self.store.add_node(retry_node)
        for edge in self.store.incoming_edges(video_id):
            self.store.add_edge(Edge.create(edge.source_id, retry_node.id, edge.target_slot))
        refresh_readiness(self.store, retry_node.id)
        self.dispatcher.schedule(retry_node.id)
        return self.store.get_node(retry_node.id)

    def _spawn_video(
        self,
        anchor: AnyNode,
        edges: Sequence[Tuple[str, TargetSlot]],
        **fields,
    ) -> VideoNode:
        """Add a derivative video right of `anchor`, wire it, queue it if ready."""
        fields.setdefault("video_model", self.orchestration.default_video_model)
        video = VideoNode.create(position=right_of(anchor, self.orchestration.fanout_gap), **fields)
        self.store.add_node(video)
        for source_id, slot in edges:
            self.store.add_edge(Edge.create(source_id, video.id, slot))

        readiness = refresh_readiness(self.store, video.id, queue_if_ready=True)
        if readiness is not None and readiness.dispatchable:
            self.dispatcher.schedule(video.id)
        return self.store.get_node(video.id)

    def text_to_video(self, text_id: str) -> VideoNode:
        text = self.store.require_node(text_id)
        if not isinstance(text, TextNode):
            raise ValidationFailure(f"{text_id} is not a text node")
        if not text.text.strip():
            raise ValidationFailure("text-to-video needs a non-empty prompt")
        return self._spawn_video(
            text,
            [(text.id, TargetSlot.PROMPT_TEXT)],
            prompt_text=text.text,
            generated_from=GeneratedFrom(kind=GenerationKind.TEXT_TO_VIDEO, source_ids=[text.id], prompt=text.text),
        )

    def create_video_from_image(
        self,
        image_id: str,
        slot: TargetSlot = TargetSlot.START_IMAGE,
        prompt: str = "",
    ) -> VideoNode:
        """Start a video from an image wired into the given slot."""
        image = self.store.require_node(image_id)
        if not isinstance(image, ImageNode):
            raise ValidationFailure(f"{image_id} is not an image node")
        slot = TargetSlot(slot)
        fields: Dict[str, Any] = {
            "prompt_text": prompt,
            "aspect_ratio": video_ratio_for_image(image.aspect_ratio),
        }
        if slot == TargetSlot.START_IMAGE:
            fields["start_image_id"] = image.id
            kind = GenerationKind.IMAGE_TO_IMAGE
        elif slot == TargetSlot.END_IMAGE:
            fields["end_image_id"] = image.id
            kind = GenerationKind.IMAGE_TO_IMAGE
        elif slot in REFERENCE_SLOTS:
            references: List[Optional[str]] = [None] * (reference_slot_index(slot) + 1)
            references[-1] = image.id
            fields["reference_image_ids"] = references
            kind = GenerationKind.REFERENCE_IMAGES
        else:
            raise ValidationFailure(f"an image cannot feed a video's {slot.value} input")
        fields["generated_from"] = GeneratedFrom(kind=kind, source_ids=[image.id], prompt=prompt or None)
        return self._spawn_video(image, [(image.id, slot)], **fields)

    def _derive(self, video_id: str, kind: GenerationKind, **fields) -> VideoNode:
        source = self._video(video_id)
        if source.status != VideoStatus.READY:
            raise ValidationFailure(f"{kind.value} needs a ready source video")
        return self._spawn_video(
            source,
            [(source.id, TargetSlot.SOURCE_VIDEO)],
            source_video_id=source.id,
            aspect_ratio=source.aspect_ratio,
            video_model=source.video_model,
            generated_from=GeneratedFrom(kind=kind, source_ids=[source.id], prompt=fields.get("prompt_text") or None),
            **fields,
        )

    def extend_video(self, video_id: str, prompt: str = "") -> VideoNode:
        """Continue a ready video. Without a prompt the new node stays pending."""
        return self._derive(video_id, GenerationKind.EXTEND, prompt_text=prompt)

    def reshoot_video(self, video_id: str, motion_type: str) -> VideoNode:
        if not motion_type:
            raise ValidationFailure("reshoot needs a motion type")
        return self._derive(video_id, GenerationKind.RESHOOT, motion_type=motion_type)

    def upscale_video(self, video_id: str) -> VideoNode:
        source = self._video(video_id)
        if source.aspect_ratio != AspectRatio.LANDSCAPE:
            raise ValidationFailure("upscale only supports 16:9 videos")
        return self._derive(video_id, GenerationKind.UPSCALE)

    async def text_to_image(
        self,
        text_id: Optional[str] = None,
        prompt: Optional[str] = None,
        count: int = 1,
        aspect_ratio: AspectRatio = AspectRatio.SQUARE,
        anchor: Optional[Position] = None,
    ) -> List[str]:
        return await self.images.generate_from_text(
            text_node_id=text_id, prompt=prompt, count=count, aspect_ratio=aspect_ratio, anchor=anchor,
        )

    async def image_to_image(
        self,
        image_id: str,
        prompt: str,
        count: int = 1,
        aspect_ratio: Optional[AspectRatio] = None,
    ) -> List[str]:
        return await self.images.generate_from_image(image_id, prompt, count=count, aspect_ratio=aspect_ratio)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def readiness(self, video_id: str) -> Optional[Readiness]:
        return readiness_for(self.store, video_id)
