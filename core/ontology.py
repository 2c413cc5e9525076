"""
CANVASFLOW ONTOLOGY - The Vocabulary of the Canvas

If schemas.py is the Grammar (how a node is laid out),
ontology.py is the Dictionary (the words a node may use).

This module defines:
- Enums: node kinds, video status, upload state, generation kinds, edge slots
- VIDEO_STATUS_TRANSITIONS: the legal moves of the video state machine
- Presentation constants: edge colours, default node sizes
- VIDEO_MODELS: capability table for the supported video models

Key Principle: the state machine is data.
Every status write goes through is_valid_transition(), so an illegal move
is rejected by the Graph Store rather than discovered later by a renderer.
"""
from typing import Dict, FrozenSet, Tuple
from enum import Enum

import msgspec


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class NodeKind(str, Enum):
    """Kinds of canvas content. The tag of the node union."""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class VideoStatus(str, Enum):
    """Lifecycle of a video node."""
    PENDING = "pending"        # Created, missing required inputs
    QUEUED = "queued"          # Inputs satisfied, not yet dispatched
    GENERATING = "generating"  # In flight
    READY = "ready"            # Terminal success
    ERROR = "error"            # Terminal failure


class UploadState(str, Enum):
    """Sync state of an image's content with the generation backend."""
    LOCAL = "local"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class GenerationKind(str, Enum):
    """Operation that produced (or will produce) a node."""
    # Video operations
    TEXT_TO_VIDEO = "text-to-video"
    IMAGE_TO_IMAGE = "image-to-image"      # start/end frame video
    REFERENCE_IMAGES = "reference-images"
    EXTEND = "extend"
    RESHOOT = "reshoot"
    UPSCALE = "upscale"
    # Image operations
    TEXT_TO_IMAGE = "text-to-image"
    IMAGE_EDIT = "image-edit"


class TargetSlot(str, Enum):
    """Input slot on the target node an edge feeds."""
    PROMPT_TEXT = "prompt-text"
    START_IMAGE = "start-image"
    END_IMAGE = "end-image"
    REF_IMAGE_1 = "ref-image-1"
    REF_IMAGE_2 = "ref-image-2"
    REF_IMAGE_3 = "ref-image-3"
    SOURCE_VIDEO = "source-video"
    SOURCE_IMAGE = "source-image"
    DEFAULT = "default"


class EdgeState(str, Enum):
    """Presentation state of an edge."""
    IDLE = "idle"
    GENERATING = "generating"
    ERROR = "error"


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    SQUARE = "1:1"


class VideoModel(str, Enum):
    VEO_3_1 = "veo3.1"
    HAILUO_2_3 = "hailuo-2.3"
    HAILUO_2_3_FAST = "hailuo-2.3-fast"
    HAILUO_2_0 = "hailuo-2.0"
    SORA_2 = "sora2"


VIDEO_OPERATIONS: FrozenSet[GenerationKind] = frozenset({
    GenerationKind.TEXT_TO_VIDEO,
    GenerationKind.IMAGE_TO_IMAGE,
    GenerationKind.REFERENCE_IMAGES,
    GenerationKind.EXTEND,
    GenerationKind.RESHOOT,
    GenerationKind.UPSCALE,
})

DERIVATIVE_OPERATIONS: FrozenSet[GenerationKind] = frozenset({
    GenerationKind.EXTEND,
    GenerationKind.RESHOOT,
    GenerationKind.UPSCALE,
})

REFERENCE_SLOTS: Tuple[TargetSlot, ...] = (
    TargetSlot.REF_IMAGE_1,
    TargetSlot.REF_IMAGE_2,
    TargetSlot.REF_IMAGE_3,
)

MAX_REFERENCE_IMAGES = len(REFERENCE_SLOTS)


def reference_slot_index(slot: TargetSlot) -> int:
    """Zero-based position of a ref-image-N slot."""
    return REFERENCE_SLOTS.index(slot)


# =============================================================================
# VIDEO STATE MACHINE
# =============================================================================

# generating -> pending is reserved for the caption credential gap.
# ready -> pending happens when a finished node has its inputs re-wired.
VIDEO_STATUS_TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    VideoStatus.PENDING: frozenset({VideoStatus.QUEUED}),
    VideoStatus.QUEUED: frozenset({
        VideoStatus.GENERATING,
        VideoStatus.PENDING,
        VideoStatus.ERROR,
    }),
    VideoStatus.GENERATING: frozenset({
        VideoStatus.READY,
        VideoStatus.ERROR,
        VideoStatus.PENDING,
    }),
    VideoStatus.READY: frozenset({VideoStatus.PENDING}),
    VideoStatus.ERROR: frozenset(),
}


def is_valid_transition(old: VideoStatus, new: VideoStatus) -> bool:
    """Check a video status move. Staying put is always legal."""
    if old == new:
        return True
    return new in VIDEO_STATUS_TRANSITIONS[VideoStatus(old)]


# =============================================================================
# VIDEO MODEL CAPABILITIES
# =============================================================================

class VideoModelSpec(msgspec.Struct, kw_only=True, frozen=True):
    name: str
    api_model: str
    supports_end_frame: bool
    provider: str


VIDEO_MODELS: Dict[VideoModel, VideoModelSpec] = {
    VideoModel.VEO_3_1: VideoModelSpec(
        name="Veo 3.1", api_model="veo3.1", supports_end_frame=True, provider="flow",
    ),
    VideoModel.HAILUO_2_3: VideoModelSpec(
        name="Hailuo 2.3", api_model="MiniMax-Hailuo-2.3", supports_end_frame=False, provider="hailuo",
    ),
    VideoModel.HAILUO_2_3_FAST: VideoModelSpec(
        name="Hailuo 2.3 Fast", api_model="MiniMax-Hailuo-2.3-Fast", supports_end_frame=False, provider="hailuo",
    ),
    VideoModel.HAILUO_2_0: VideoModelSpec(
        name="Hailuo 2.0", api_model="MiniMax-Hailuo-02", supports_end_frame=True, provider="hailuo",
    ),
    VideoModel.SORA_2: VideoModelSpec(
        name="Sora 2", api_model="sora-2", supports_end_frame=False, provider="sora2",
    ),
}


def supports_end_frame(model: VideoModel) -> bool:
    return VIDEO_MODELS[VideoModel(model)].supports_end_frame


# =============================================================================
# PRESENTATION (Edge colours, default sizes)
# =============================================================================

EDGE_COLORS: Dict[EdgeState, str] = {
    EdgeState.GENERATING: "#a855f7",  # Purple - in flight
    EdgeState.ERROR: "#ef4444",       # Red - failed
    EdgeState.IDLE: "#64748b",        # Slate - settled
}

# (width, height) keyed by (kind, aspect ratio)
NODE_SIZES: Dict[Tuple[NodeKind, AspectRatio], Tuple[float, float]] = {
    (NodeKind.VIDEO, AspectRatio.LANDSCAPE): (640.0, 360.0),
    (NodeKind.VIDEO, AspectRatio.PORTRAIT): (360.0, 640.0),
    (NodeKind.IMAGE, AspectRatio.SQUARE): (512.0, 512.0),
    (NodeKind.IMAGE, AspectRatio.LANDSCAPE): (640.0, 360.0),
    (NodeKind.IMAGE, AspectRatio.PORTRAIT): (360.0, 640.0),
}

TEXT_NODE_SIZE: Tuple[float, float] = (200.0, 80.0)

DEFAULT_VIDEO_RATIO = AspectRatio.LANDSCAPE
DEFAULT_IMAGE_RATIO = AspectRatio.SQUARE


def default_dimensions(kind: NodeKind, ratio: AspectRatio = None) -> Tuple[float, float]:
    """Default (width, height) for a new node of this kind."""
    if kind == NodeKind.TEXT:
        return TEXT_NODE_SIZE
    if ratio is None:
        ratio = DEFAULT_VIDEO_RATIO if kind == NodeKind.VIDEO else DEFAULT_IMAGE_RATIO
    if kind == NodeKind.VIDEO and ratio == AspectRatio.SQUARE:
        ratio = DEFAULT_VIDEO_RATIO
    return NODE_SIZES[(NodeKind(kind), AspectRatio(ratio))]
