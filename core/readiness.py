"""
CANVASFLOW READINESS - Go / No-Go for a Video Node

evaluate_readiness() is a pure function: given a video node and the input
nodes its typed references resolve to, it decides whether the node may be
dispatched, which operation it will run, and whether a prompt still has to
be synthesized by the vision analyzer first.

Verdicts:
    READY          - dispatch now with the node's own prompt
    NEEDS_CAPTION  - image input present, prompt empty: caption first
    WAITING        - inputs incomplete; node belongs in `pending`
    INVALID        - inputs can never work as wired; node belongs in `error`

Rules by operation:
    text-to-video     prompt required
    image-to-image    prompt OR a start/end frame (end-only becomes start);
                      with frames but no prompt -> NEEDS_CAPTION
    reference-images  >= 1 existing reference AND a prompt; every reference
                      must already carry a media id; never auto-captioned
    extend            ready source video + prompt
    reshoot           ready source video + motion type
    upscale           ready 16:9 source video

A missing source media id is NOT judged here: it is a precondition error
raised at dispatch time.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from core.ontology import (
    AspectRatio,
    GenerationKind,
    VideoStatus,
    VIDEO_OPERATIONS,
    supports_end_frame,
)
from core.schemas import ImageNode, VideoNode


class Verdict(str, Enum):
    READY = "ready"
    NEEDS_CAPTION = "needs_caption"
    WAITING = "waiting"
    INVALID = "invalid"


@dataclass(frozen=True)
class ResolvedInputs:
    """Input nodes a video's references point at. Missing nodes are None."""
    start: Optional[ImageNode] = None
    end: Optional[ImageNode] = None
    references: List[Optional[ImageNode]] = field(default_factory=list)
    source: Optional[VideoNode] = None

    @property
    def frames(self) -> List[ImageNode]:
        return [img for img in (self.start, self.end) if img is not None]

    @property
    def present_references(self) -> List[ImageNode]:
        return [img for img in self.references if img is not None]


@dataclass(frozen=True)
class Readiness:
    verdict: Verdict
    operation: GenerationKind
    prompt: str = ""
    reason: str = ""
    start_image_id: Optional[str] = None
    end_image_id: Optional[str] = None
    reference_image_ids: List[str] = field(default_factory=list)
    source_id: Optional[str] = None

    @property
    def dispatchable(self) -> bool:
        return self.verdict in (Verdict.READY, Verdict.NEEDS_CAPTION)

    @property
    def source_ids(self) -> List[str]:
        ids = [self.start_image_id, self.end_image_id, *self.reference_image_ids, self.source_id]
        return [i for i in ids if i]


# =============================================================================
# RESOLUTION
# =============================================================================

def _image(store, node_id: Optional[str]) -> Optional[ImageNode]:
    if not node_id:
        return None
    node = store.get_node(node_id)
    return node if isinstance(node, ImageNode) else None


def resolve_inputs(store, video: VideoNode) -> ResolvedInputs:
    """Look up the nodes a video's typed references name."""
    source = store.get_node(video.source_video_id) if video.source_video_id else None
    return ResolvedInputs(
        start=_image(store, video.start_image_id),
        end=_image(store, video.end_image_id),
        references=[_image(store, ref) for ref in video.reference_image_ids],
        source=source if isinstance(source, VideoNode) else None,
    )


def infer_operation(video: VideoNode) -> GenerationKind:
    """The operation a video will run, from provenance or from its wiring."""
    if video.generated_from is not None and video.generated_from.kind in VIDEO_OPERATIONS:
        return GenerationKind(video.generated_from.kind)
    if video.present_reference_ids:
        return GenerationKind.REFERENCE_IMAGES
    if video.start_image_id or video.end_image_id:
        return GenerationKind.IMAGE_TO_IMAGE
    if video.source_video_id:
        return GenerationKind.EXTEND
    return GenerationKind.TEXT_TO_VIDEO


# =============================================================================
# EVALUATION
# =============================================================================

def evaluate_readiness(video: VideoNode, inputs: ResolvedInputs) -> Readiness:
    """Decide whether `video` may be dispatched. Pure; never touches the store."""
    operation = infer_operation(video)
    prompt = (video.prompt_text or "").strip()

    if operation == GenerationKind.REFERENCE_IMAGES:
        return _evaluate_references(video, inputs, prompt)
    if operation in (GenerationKind.EXTEND, GenerationKind.RESHOOT, GenerationKind.UPSCALE):
        return _evaluate_derivative(video, inputs, prompt, operation)
    return _evaluate_frames(video, inputs, prompt)


def _evaluate_frames(video: VideoNode, inputs: ResolvedInputs, prompt: str) -> Readiness:
    start, end = inputs.start, inputs.end
    # Only an end frame: treat it as the start frame
    if start is None and end is not None:
        start, end = end, None

    if start is None:
        if prompt:
            return Readiness(Verdict.READY, GenerationKind.TEXT_TO_VIDEO, prompt=prompt)
        return Readiness(
            Verdict.WAITING, GenerationKind.TEXT_TO_VIDEO,
            reason="needs a prompt or an image input",
        )

    start_id = start.id
    end_id = end.id if end is not None else None

    if end_id and not supports_end_frame(video.video_model):
        return Readiness(
            Verdict.INVALID, GenerationKind.IMAGE_TO_IMAGE,
            reason=f"model {video.video_model.value} does not support an end frame",
            start_image_id=start_id, end_image_id=end_id,
        )

    if prompt:
        return Readiness(
            Verdict.READY, GenerationKind.IMAGE_TO_IMAGE, prompt=prompt,
            start_image_id=start_id, end_image_id=end_id,
        )
    if not any(img.has_content for img in (start, end) if img is not None):
        return Readiness(
            Verdict.WAITING, GenerationKind.IMAGE_TO_IMAGE,
            reason="image input has no content to describe",
            start_image_id=start_id, end_image_id=end_id,
        )
    return Readiness(
        Verdict.NEEDS_CAPTION, GenerationKind.IMAGE_TO_IMAGE,
        reason="prompt will be inferred from the image input",
        start_image_id=start_id, end_image_id=end_id,
    )


def _evaluate_references(video: VideoNode, inputs: ResolvedInputs, prompt: str) -> Readiness:
    references = inputs.present_references
    ref_ids = [img.id for img in references]

    if not references:
        return Readiness(
            Verdict.WAITING, GenerationKind.REFERENCE_IMAGES, prompt=prompt,
            reason="needs at least one reference image",
        )
    if not prompt:
        return Readiness(
            Verdict.WAITING, GenerationKind.REFERENCE_IMAGES,
            reason="reference-images generation needs a prompt",
            reference_image_ids=ref_ids,
        )
    missing_media = [img.id for img in references if not img.media_id]
    if missing_media:
        return Readiness(
            Verdict.INVALID, GenerationKind.REFERENCE_IMAGES, prompt=prompt,
            reason=f"reference image {', '.join(missing_media)} has no media id",
            reference_image_ids=ref_ids,
        )
    return Readiness(
        Verdict.READY, GenerationKind.REFERENCE_IMAGES, prompt=prompt,
        reference_image_ids=ref_ids,
    )


def _evaluate_derivative(
    video: VideoNode,
    inputs: ResolvedInputs,
    prompt: str,
    operation: GenerationKind,
) -> Readiness:
    source = inputs.source
    if source is None:
        return Readiness(
            Verdict.INVALID, operation, prompt=prompt,
            reason=f"{operation.value} needs an existing source video",
        )
    if source.status != VideoStatus.READY:
        return Readiness(
            Verdict.WAITING, operation, prompt=prompt,
            reason="source video is not ready", source_id=source.id,
        )
    if operation == GenerationKind.UPSCALE and source.aspect_ratio != AspectRatio.LANDSCAPE:
        return Readiness(
            Verdict.INVALID, operation,
            reason="upscale only supports 16:9 videos", source_id=source.id,
        )
    if operation == GenerationKind.EXTEND and not prompt:
        return Readiness(
            Verdict.WAITING, operation,
            reason="extend needs a prompt", source_id=source.id,
        )
    if operation == GenerationKind.RESHOOT and not video.motion_type:
        return Readiness(
            Verdict.WAITING, operation, prompt=prompt,
            reason="reshoot needs a motion type", source_id=source.id,
        )
    return Readiness(Verdict.READY, operation, prompt=prompt, source_id=source.id)


# =============================================================================
# STORE HELPERS
# =============================================================================

def readiness_for(store, video_id: str) -> Optional[Readiness]:
    video = store.get_node(video_id)
    if not isinstance(video, VideoNode):
        return None
    return evaluate_readiness(video, resolve_inputs(store, video))


def refresh_readiness(store, video_id: str, queue_if_ready: bool = False) -> Optional[Readiness]:
    """
    Recompute a video's readiness and store `ready_for_generation`.

    With queue_if_ready, a pending node whose inputs are now sufficient is
    moved to queued. Returns None if the node is gone or not a video.
    """
    video = store.get_node(video_id)
    if not isinstance(video, VideoNode):
        return None
    readiness = evaluate_readiness(video, resolve_inputs(store, video))

    patch = {}
    if video.ready_for_generation != readiness.dispatchable:
        patch["ready_for_generation"] = readiness.dispatchable
    if queue_if_ready and readiness.dispatchable and video.status == VideoStatus.PENDING:
        patch["status"] = VideoStatus.QUEUED
    if patch:
        store.update_node(video_id, patch)
    return readiness
