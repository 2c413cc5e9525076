"""
CANVASFLOW SCHEMAS - The Grammar of the Canvas

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how a node is structured).

This module defines the data that flows through the Graph Store:
- TextNode / ImageNode / VideoNode: a closed tagged union on "kind"
- Edge: a slot-addressed, directed dependency between two nodes
- apply_patch(): the only way a stored node changes
- Serialization helpers for the API and the mutation log

Design Principles:
1. CLOSED UNION: every consumer matches on TextNode/ImageNode/VideoNode
2. FROZEN: stored values are immutable; a patch produces a new value
3. VALIDATED PATCHES: a patch is re-decoded through msgspec, so a bad
   value is rejected at the store boundary instead of inside a renderer
4. IMMUTABLE IDS: node/edge ids and node kinds never change
"""
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Dict, List, Mapping, Optional, Union

import msgspec

from core.ontology import (
    AspectRatio,
    EdgeState,
    GenerationKind,
    NodeKind,
    TargetSlot,
    UploadState,
    VideoModel,
    VideoStatus,
    default_dimensions,
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_node_id(kind: NodeKind) -> str:
    """Generate an opaque node id prefixed with its kind, e.g. video-3f2a..."""
    return f"{NodeKind(kind).value}-{uuid.uuid4().hex[:12]}"


def make_edge_id(source_id: str, target_id: str, slot: Optional[TargetSlot] = None) -> str:
    """Deterministic edge id. Reconnecting the same slot upserts the edge."""
    slot_value = TargetSlot(slot).value if slot else TargetSlot.DEFAULT.value
    return f"edge-{source_id}-{target_id}-{slot_value}"


# =============================================================================
# GEOMETRY
# =============================================================================

class Position(msgspec.Struct, frozen=True):
    x: float = 0.0
    y: float = 0.0


class Size(msgspec.Struct, frozen=True):
    width: float
    height: float


class GeneratedFrom(msgspec.Struct, kw_only=True, frozen=True):
    """Provenance: which operation produced a node, from which sources."""
    kind: GenerationKind
    source_ids: List[str] = []
    prompt: Optional[str] = None


# =============================================================================
# NODES (Tagged Union)
# =============================================================================

class CanvasNode(msgspec.Struct, kw_only=True, frozen=True, tag_field="kind"):
    """
    Fields shared by every node kind.

    Never instantiated directly. The concrete kinds below are the only
    members of AnyNode, and the "kind" tag is what the wire format and
    the store's dispatch use to tell them apart.
    """
    node_kind: ClassVar[NodeKind]

    id: str
    position: Position = msgspec.field(default_factory=Position)
    size: Optional[Size] = None
    created_at: str = msgspec.field(default_factory=now_utc)


class TextNode(CanvasNode, tag="text"):
    node_kind: ClassVar[NodeKind] = NodeKind.TEXT

    text: str = ""

    @classmethod
    def create(cls, text: str = "", position: Optional[Position] = None, **kwargs) -> "TextNode":
        width, height = default_dimensions(NodeKind.TEXT)
        node_id = kwargs.pop("id", None) or generate_node_id(NodeKind.TEXT)
        size = kwargs.pop("size", None) or Size(width, height)
        return cls(
            id=node_id,
            position=position or Position(),
            size=size,
            text=text,
            **kwargs,
        )


class ImageNode(CanvasNode, tag="image"):
    """
    An image on the canvas.

    media_id is the backend identifier the generation adapter needs before
    the image can feed another generation; it is back-filled by an upload
    when the image was created locally.
    """
    node_kind: ClassVar[NodeKind] = NodeKind.IMAGE

    src: str = ""
    content_b64: Optional[str] = None
    media_id: Optional[str] = None
    upload_state: UploadState = UploadState.LOCAL
    upload_message: Optional[str] = None
    caption: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    pending_generation: bool = False     # placeholder awaiting a result
    error_message: Optional[str] = None
    generated_from: Optional[GeneratedFrom] = None

    @classmethod
    def create(cls, src: str = "", position: Optional[Position] = None, **kwargs) -> "ImageNode":
        ratio = kwargs.get("aspect_ratio", AspectRatio.SQUARE)
        width, height = default_dimensions(NodeKind.IMAGE, ratio)
        node_id = kwargs.pop("id", None) or generate_node_id(NodeKind.IMAGE)
        size = kwargs.pop("size", None) or Size(width, height)
        return cls(
            id=node_id,
            position=position or Position(),
            size=size,
            src=src,
            **kwargs,
        )

    @property
    def has_content(self) -> bool:
        return bool(self.src or self.content_b64)


class VideoNode(CanvasNode, tag="video"):
    """
    A video on the canvas and the unit of generation.

    Inputs are typed references to other nodes: start/end frames,
    positional reference images (slot N lives at index N-1 and may be
    None), or a source video for derivative operations.
    """
    node_kind: ClassVar[NodeKind] = NodeKind.VIDEO

    src: str = ""
    thumbnail: str = ""
    duration: float = 0.0
    media_id: Optional[str] = None

    status: VideoStatus = VideoStatus.PENDING
    progress: Optional[Annotated[int, msgspec.Meta(ge=0, le=100)]] = None
    error_message: Optional[str] = None
    ready_for_generation: bool = False

    start_image_id: Optional[str] = None
    end_image_id: Optional[str] = None
    reference_image_ids: List[Optional[str]] = []
    source_video_id: Optional[str] = None

    prompt_text: str = ""
    generation_count: Annotated[int, msgspec.Meta(ge=1)] = 1
    generated_from: Optional[GeneratedFrom] = None
    video_model: VideoModel = VideoModel.VEO_3_1
    motion_type: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE

    @classmethod
    def create(cls, position: Optional[Position] = None, **kwargs) -> "VideoNode":
        ratio = kwargs.get("aspect_ratio", AspectRatio.LANDSCAPE)
        width, height = default_dimensions(NodeKind.VIDEO, ratio)
        node_id = kwargs.pop("id", None) or generate_node_id(NodeKind.VIDEO)
        size = kwargs.pop("size", None) or Size(width, height)
        return cls(
            id=node_id,
            position=position or Position(),
            size=size,
            **kwargs,
        )

    @property
    def present_reference_ids(self) -> List[str]:
        """Reference ids with empty slots removed, in slot order."""
        return [ref for ref in self.reference_image_ids if ref]

    @property
    def input_ids(self) -> List[str]:
        """Every node id this video reads from."""
        ids = [self.start_image_id, self.end_image_id, *self.reference_image_ids, self.source_video_id]
        return [i for i in ids if i]


AnyNode = Union[TextNode, ImageNode, VideoNode]

NODE_TYPES: Dict[NodeKind, type] = {
    NodeKind.TEXT: TextNode,
    NodeKind.IMAGE: ImageNode,
    NodeKind.VIDEO: VideoNode,
}


# =============================================================================
# EDGES
# =============================================================================

class Edge(msgspec.Struct, kw_only=True, frozen=True):
    """
    A directed, slot-addressed dependency: source feeds target.

    animated/state are the only presentation flags the orchestration core
    writes directly; they signal in-flight and failed generations.
    """
    id: str
    source_id: str
    target_id: str
    target_slot: TargetSlot = TargetSlot.DEFAULT
    animated: bool = False
    state: EdgeState = EdgeState.IDLE
    created_at: str = msgspec.field(default_factory=now_utc)

    @classmethod
    def create(
        cls,
        source_id: str,
        target_id: str,
        slot: TargetSlot = TargetSlot.DEFAULT,
        **kwargs,
    ) -> "Edge":
        return cls(
            id=make_edge_id(source_id, target_id, slot),
            source_id=source_id,
            target_id=target_id,
            target_slot=slot,
            **kwargs,
        )


# =============================================================================
# PATCHING
# =============================================================================

_IMMUTABLE_FIELDS = frozenset({"id", "kind"})


def apply_patch(value: Union[AnyNode, Edge], patch: Mapping[str, Any]):
    """
    Return a copy of a node or edge with the patch applied.

    The merged mapping is converted back through msgspec, so the result is
    type-checked exactly like a freshly decoded value.

    Raises:
        ValueError: unknown field, attempt to change id/kind, or a value
                    of the wrong type
    """
    struct_type = type(value)
    fields = set(struct_type.__struct_fields__)

    unknown = set(patch) - fields
    if unknown:
        raise ValueError(f"Unknown field(s) for {struct_type.__name__}: {sorted(unknown)}")
    frozen = _IMMUTABLE_FIELDS & set(patch)
    if frozen:
        raise ValueError(f"Field(s) cannot be patched: {sorted(frozen)}")

    merged = msgspec.to_builtins(value)
    merged.update(msgspec.to_builtins(dict(patch)))
    try:
        return msgspec.convert(merged, type=struct_type)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid patch for {struct_type.__name__}: {e}") from e


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

_encoder = msgspec.json.Encoder()
_node_decoder = msgspec.json.Decoder(type=AnyNode)
_node_list_decoder = msgspec.json.Decoder(type=List[AnyNode])
_edge_decoder = msgspec.json.Decoder(type=Edge)
_edge_list_decoder = msgspec.json.Decoder(type=List[Edge])


def serialize_node(node: AnyNode) -> bytes:
    """Serialize a node (with its "kind" tag) to JSON bytes."""
    return _encoder.encode(node)


def deserialize_node(data: bytes) -> AnyNode:
    """Decode JSON bytes into the concrete node kind named by its tag."""
    return _node_decoder.decode(data)


def serialize_nodes(nodes: List[AnyNode]) -> bytes:
    return _encoder.encode(nodes)


def deserialize_nodes(data: bytes) -> List[AnyNode]:
    return _node_list_decoder.decode(data)


def serialize_edge(edge: Edge) -> bytes:
    return _encoder.encode(edge)


def deserialize_edge(data: bytes) -> Edge:
    return _edge_decoder.decode(data)


def serialize_edges(edges: List[Edge]) -> bytes:
    return _encoder.encode(edges)


def deserialize_edges(data: bytes) -> List[Edge]:
    return _edge_list_decoder.decode(data)


def node_from_dict(data: Dict[str, Any]) -> AnyNode:
    """Convert a plain mapping (e.g. an API body) into a node."""
    return msgspec.convert(data, type=AnyNode)


def node_to_dict(node: AnyNode) -> Dict[str, Any]:
    return msgspec.to_builtins(node)


def edge_to_dict(edge: Edge) -> Dict[str, Any]:
    return msgspec.to_builtins(edge)
