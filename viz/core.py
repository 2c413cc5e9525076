"""
CANVASFLOW VISUALIZATION CORE - The Canvas Renderer's Data Model

This module provides the render-facing view of the Graph Store: what the
UI layer receives on connect and after every change.

Architecture:
- VizNode/VizEdge: Lightweight render representations with computed colours
- GraphSnapshot: Full canvas state for initial render
- GraphDelta: Incremental updates for real-time WebSocket streaming
- MutationEvent: Individual graph mutation for the mutation log
- DeltaBuilder: turns store GraphEvents into sequenced GraphDeltas

Colours and labels are computed server-side so every client renders the
same status and edge presentation.
"""
import msgspec
from typing import Optional, Dict, List, Any
from enum import Enum
from datetime import datetime, timezone

from core.ontology import EDGE_COLORS, EdgeState, NodeKind, VideoStatus
from core.schemas import AnyNode, Edge, ImageNode, TextNode, VideoNode, node_to_dict
from infrastructure.event_bus import EventType, GraphEvent


# =============================================================================
# COLOR PALETTES (Consistent across views)
# =============================================================================

NODE_COLORS: Dict[str, str] = {
    NodeKind.TEXT.value: "#F4A261",     # Orange - prompts
    NodeKind.IMAGE.value: "#2A9D8F",    # Teal - images
    NodeKind.VIDEO.value: "#457B9D",    # Blue - videos
    "default": "#6C757D",
}

STATUS_COLORS: Dict[str, str] = {
    VideoStatus.PENDING.value: "#FFC107",     # Amber - waiting for inputs
    VideoStatus.QUEUED.value: "#17A2B8",      # Cyan - about to run
    VideoStatus.GENERATING.value: "#a855f7",  # Purple - in flight
    VideoStatus.READY.value: "#28A745",       # Green - success
    VideoStatus.ERROR.value: "#ef4444",       # Red - failure
    "default": "#6C757D",
}


# =============================================================================
# MUTATION TYPES (For event logging)
# =============================================================================

class MutationType(str, Enum):
    """Types of canvas mutations for event tracking."""
    NODE_CREATED = "NODE_CREATED"
    NODE_UPDATED = "NODE_UPDATED"
    NODE_DELETED = "NODE_DELETED"
    EDGE_CREATED = "EDGE_CREATED"
    EDGE_UPDATED = "EDGE_UPDATED"
    EDGE_DELETED = "EDGE_DELETED"
    STATUS_CHANGED = "STATUS_CHANGED"
    GRAPH_LOADED = "GRAPH_LOADED"
    ALERT = "ALERT"


# =============================================================================
# VISUALIZATION DATA STRUCTURES
# =============================================================================

def _label(node: AnyNode) -> str:
    if isinstance(node, TextNode):
        return node.text[:20] or "text"
    if isinstance(node, VideoNode):
        return node.prompt_text[:20] or f"video:{node.id[-6:]}"
    if isinstance(node, ImageNode):
        return (node.caption or "")[:20] or f"image:{node.id[-6:]}"
    return node.id


class VizNode(msgspec.Struct, kw_only=True):
    """
    Lightweight node representation for rendering.

    `status` is the video status, "pending" for an image placeholder
    awaiting a result, "error" for a failed image, and "ready" otherwise.
    """
    id: str
    kind: str
    status: str
    label: str
    color: str
    x: float = 0.0
    y: float = 0.0
    width: Optional[float] = None
    height: Optional[float] = None
    progress: Optional[int] = None
    src: str = ""
    thumbnail: str = ""
    error_message: Optional[str] = None
    generated_from: Optional[Dict[str, Any]] = None
    created_at: str = ""

    @classmethod
    def from_node(cls, node: AnyNode, color_mode: str = "status") -> "VizNode":
        """Create a VizNode from a store node."""
        progress = None
        thumbnail = ""
        error_message = None
        generated_from = None
        src = ""

        if isinstance(node, VideoNode):
            status = node.status.value
            progress = node.progress
            thumbnail = node.thumbnail
            error_message = node.error_message
            src = node.src
        elif isinstance(node, ImageNode):
            if node.error_message:
                status = VideoStatus.ERROR.value
            elif node.pending_generation:
                status = VideoStatus.PENDING.value
            else:
                status = VideoStatus.READY.value
            error_message = node.error_message
            src = node.src
        else:
            status = VideoStatus.READY.value

        if not isinstance(node, TextNode) and node.generated_from is not None:
            generated_from = msgspec.to_builtins(node.generated_from)

        if color_mode == "status":
            color = STATUS_COLORS.get(status, STATUS_COLORS["default"])
        else:
            color = NODE_COLORS.get(node.node_kind.value, NODE_COLORS["default"])

        return cls(
            id=node.id,
            kind=node.node_kind.value,
            status=status,
            label=_label(node),
            color=color,
            x=node.position.x,
            y=node.position.y,
            width=node.size.width if node.size else None,
            height=node.size.height if node.size else None,
            progress=progress,
            src=src,
            thumbnail=thumbnail,
            error_message=error_message,
            generated_from=generated_from,
            created_at=node.created_at,
        )


class VizEdge(msgspec.Struct, kw_only=True):
    """
    Lightweight edge representation for rendering.
    """
    id: str
    source: str
    target: str
    slot: str
    animated: bool
    state: str
    color: str

    @classmethod
    def from_edge(cls, edge: Edge) -> "VizEdge":
        return cls(
            id=edge.id,
            source=edge.source_id,
            target=edge.target_id,
            slot=edge.target_slot.value,
            animated=edge.animated,
            state=edge.state.value,
            color=EDGE_COLORS.get(edge.state, EDGE_COLORS[EdgeState.IDLE]),
        )


class GraphSnapshot(msgspec.Struct, kw_only=True):
    """
    Complete canvas state for initial render.

    Sent on WebSocket connection and by GET /graph.
    """
    timestamp: str
    node_count: int
    edge_count: int
    nodes: List[VizNode]
    edges: List[VizEdge]

    # Counters for display
    generating_count: int = 0
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return msgspec.to_builtins(self)


class GraphDelta(msgspec.Struct, kw_only=True):
    """
    Incremental canvas update for real-time streaming.

    `raw` carries the full node/edge payload of the change so a client
    can patch its local copy without refetching the snapshot.
    """
    timestamp: str
    sequence: int

    nodes_added: List[VizNode] = msgspec.field(default_factory=list)
    nodes_updated: List[VizNode] = msgspec.field(default_factory=list)
    nodes_removed: List[str] = msgspec.field(default_factory=list)
    edges_added: List[VizEdge] = msgspec.field(default_factory=list)
    edges_updated: List[VizEdge] = msgspec.field(default_factory=list)
    edges_removed: List[str] = msgspec.field(default_factory=list)
    raw: Optional[Dict[str, Any]] = None

    def is_empty(self) -> bool:
        """Check if delta contains any changes."""
        return not (
            self.nodes_added or self.nodes_updated or self.nodes_removed or
            self.edges_added or self.edges_updated or self.edges_removed
        )

    def to_dict(self) -> Dict[str, Any]:
        return msgspec.to_builtins(self)


class MutationEvent(msgspec.Struct, kw_only=True):
    """
    Individual mutation event for the mutation log.
    """
    timestamp: str
    sequence: int
    mutation_type: str                  # MutationType value
    node_id: Optional[str] = None
    node_kind: Optional[str] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    changed: List[str] = msgspec.field(default_factory=list)

    # Edges
    edge_id: Optional[str] = None
    source_id: Optional[str] = None
    target_id: Optional[str] = None

    # Alerts
    message: Optional[str] = None
    source: str = "graph_store"


# =============================================================================
# SNAPSHOTS AND DELTAS
# =============================================================================

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_snapshot_from_store(store, color_mode: str = "status") -> GraphSnapshot:
    """
    Create a GraphSnapshot from a GraphStore.

    Args:
        store: GraphStore instance
        color_mode: "status" or "kind" for node colouring

    Returns:
        GraphSnapshot ready for rendering
    """
    snapshot = store.snapshot()
    viz_nodes = [VizNode.from_node(node, color_mode=color_mode) for node in snapshot.nodes]
    viz_edges = [VizEdge.from_edge(edge) for edge in snapshot.edges]
    return GraphSnapshot(
        timestamp=_now(),
        node_count=len(viz_nodes),
        edge_count=len(viz_edges),
        nodes=viz_nodes,
        edges=viz_edges,
        generating_count=sum(1 for n in viz_nodes if n.status == VideoStatus.GENERATING.value),
        error_count=sum(1 for n in viz_nodes if n.status == VideoStatus.ERROR.value),
    )


class DeltaBuilder:
    """
    Turns store events into sequenced GraphDeltas.

    One builder per stream (e.g. per WebSocket connection) so that each
    client sees a gap-free sequence.
    """

    def __init__(self, color_mode: str = "status"):
        self._sequence = 0
        self._color_mode = color_mode

    @property
    def sequence(self) -> int:
        return self._sequence

    def from_event(self, event: GraphEvent) -> Optional[GraphDelta]:
        """Delta for one store event, or None for events with no render effect."""
        payload = event.payload
        delta_fields: Dict[str, Any] = {}

        if event.type in (EventType.NODE_CREATED, EventType.NODE_UPDATED):
            node = payload["node"]
            key = "nodes_added" if event.type == EventType.NODE_CREATED else "nodes_updated"
            delta_fields[key] = [VizNode.from_node(node, self._color_mode)]
            delta_fields["raw"] = {"node": node_to_dict(node)}
        elif event.type == EventType.NODE_DELETED:
            delta_fields["nodes_removed"] = [payload["node_id"]]
        elif event.type in (EventType.EDGE_CREATED, EventType.EDGE_UPDATED):
            key = "edges_added" if event.type == EventType.EDGE_CREATED else "edges_updated"
            delta_fields[key] = [VizEdge.from_edge(payload["edge"])]
        elif event.type == EventType.EDGE_DELETED:
            delta_fields["edges_removed"] = [payload["edge_id"]]
        else:
            return None

        self._sequence += 1
        return GraphDelta(timestamp=_now(), sequence=self._sequence, **delta_fields)
