"""
CANVASFLOW GRAPH STORE - The Single Source of Truth

Every node and edge on the canvas lives here. Every other component asks
the store for a mutation and never keeps its own copy beyond one operation.

Architecture (The Bridge Pattern):
  Python Layer (Orchestration / UI bridge)
  - Uses opaque string ids: "video-3f2a...", "edge-a-b-start-image"
  - Calls: store.update_node("video-3f2a", {"status": "generating"})

  Bridge Layer (This File)
  - _node_map: Dict[str, int]   (node id -> index)
  - _inv_map:  Dict[int, str]   (index -> node id)
  - _edge_map: Dict[str, int]   (edge id -> edge index)

  Rust Layer (rustworkx.PyDiGraph, multigraph)
  - Integer indices, O(1) neighbour access, native path checks

Mutation Semantics:
- Synchronous and run-to-completion: two in-flight jobs can only interleave
  BETWEEN mutations, never inside one.
- Total for missing ids: update_node/delete_node on an unknown id is a
  silent no-op. A late async result for a deleted node can therefore never
  re-create it; this is the system's cancellation mechanism.
- Cascading: delete_node removes every touching edge in the same step.
- Observable: each successful mutation publishes one GraphEvent on the
  store's own EventBus after the write completes.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

import rustworkx as rx

from core.ontology import VideoStatus, is_valid_transition
from core.schemas import AnyNode, Edge, VideoNode, apply_patch
from infrastructure.event_bus import EventBus, EventType, GraphEvent

logger = logging.getLogger("canvasflow.graph_store")


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for graph operations."""
    pass


class NodeNotFoundError(GraphError):
    """Raised when a node id is required but not in the graph."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class EdgeNotFoundError(GraphError):
    """Raised when an edge id is required but not in the graph."""
    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge not found: {edge_id}")


class GraphInvariantError(GraphError):
    """Raised when a graph invariant is violated (cycles, self-loops)."""
    pass


class DuplicateNodeError(GraphError):
    """Raised when attempting to add a node with existing ID."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


class InvalidTransitionError(GraphError):
    """Raised when a video status patch skips the state machine."""
    def __init__(self, node_id: str, old: VideoStatus, new: VideoStatus):
        self.node_id = node_id
        self.old = old
        self.new = new
        super().__init__(f"Illegal status transition for {node_id}: {old.value} -> {new.value}")


class StoreSnapshot(NamedTuple):
    nodes: Tuple[AnyNode, ...]
    edges: Tuple[Edge, ...]


EdgePredicate = Callable[[Edge], bool]


# =============================================================================
# GRAPH STORE
# =============================================================================

class GraphStore:
    """
    In-memory canvas graph backed by rustworkx.

    Usage:
        store = GraphStore()
        image = ImageNode.create(src="https://...", media_id="m1")
        video = VideoNode.create(start_image_id=image.id)
        store.add_node(image)
        store.add_node(video)
        store.add_edge(Edge.create(image.id, video.id, TargetSlot.START_IMAGE))

        unsubscribe = store.subscribe(lambda event: print(event.type))

    Thread Safety:
        NOT thread-safe. All callers share one asyncio event loop.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)

        # The Bridge: bidirectional id <-> index mapping
        self._node_map: Dict[str, int] = {}
        self._inv_map: Dict[int, str] = {}
        self._edge_map: Dict[str, int] = {}

        self._events = event_bus if event_bus is not None else EventBus()

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def events(self) -> EventBus:
        """The bus this store publishes on."""
        return self._events

    @property
    def node_count(self) -> int:
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.num_edges()

    @property
    def is_empty(self) -> bool:
        return self.node_count == 0

    # =========================================================================
    # SUBSCRIPTION
    # =========================================================================

    def subscribe(self, listener: Callable[[GraphEvent], None]) -> Callable[[], None]:
        """
        Register a listener for every mutation.

        Listeners run synchronously right after each mutation completes.
        A failing listener is logged and never breaks the mutation.

        Returns:
            A callable that removes the listener
        """
        return self._events.subscribe_all(listener)

    def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        self._events.emit(event_type, payload, source="graph_store")

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def add_node(self, node: AnyNode) -> AnyNode:
        """
        Add a node to the graph.

        Raises:
            DuplicateNodeError: If a node with the same id exists
        """
        if node.id in self._node_map:
            raise DuplicateNodeError(node.id)

        idx = self._graph.add_node(node)
        self._node_map[node.id] = idx
        self._inv_map[idx] = node.id

        self._publish(EventType.NODE_CREATED, {
            "node_id": node.id,
            "kind": node.node_kind.value,
            "node": node,
        })
        return node

    def get_node(self, node_id: str) -> Optional[AnyNode]:
        """Retrieve a node by id, or None if it does not exist."""
        idx = self._node_map.get(node_id)
        if idx is None:
            return None
        return self._graph[idx]

    def require_node(self, node_id: str) -> AnyNode:
        """
        Retrieve a node by id.

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        node = self.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_map

    def nodes(self) -> List[AnyNode]:
        return list(self._graph.nodes())

    def update_node(self, node_id: str, patch: Mapping[str, Any]) -> Optional[AnyNode]:
        """
        Apply a partial patch to a node.

        Args:
            node_id: The node to update
            patch: Field -> new value. Enum members, Structs and plain
                   values are all accepted.

        Returns:
            The updated node, or None if node_id does not exist (no-op)

        Raises:
            ValueError: Unknown field, id/kind change, or ill-typed value
            InvalidTransitionError: Video status move not allowed
        """
        idx = self._node_map.get(node_id)
        if idx is None:
            logger.debug(f"update_node on missing node {node_id} ignored")
            return None

        previous = self._graph[idx]
        updated = apply_patch(previous, patch)

        if isinstance(previous, VideoNode) and updated.status != previous.status:
            if not is_valid_transition(previous.status, updated.status):
                raise InvalidTransitionError(node_id, previous.status, updated.status)

        self._graph[idx] = updated
        self._publish(EventType.NODE_UPDATED, {
            "node_id": node_id,
            "kind": updated.node_kind.value,
            "node": updated,
            "previous": previous,
            "changed": sorted(patch.keys()),
        })
        return updated

    def delete_node(self, node_id: str) -> bool:
        """
        Remove a node and every edge touching it.

        Returns:
            True if a node was removed, False if it did not exist (no-op)
        """
        idx = self._node_map.get(node_id)
        if idx is None:
            logger.debug(f"delete_node on missing node {node_id} ignored")
            return False

        node = self._graph[idx]
        touching: List[Edge] = [
            edge for _, _, edge in [*self._graph.in_edges(idx), *self._graph.out_edges(idx)]
        ]
        for edge in touching:
            self._edge_map.pop(edge.id, None)

        # Removing the node drops its incident edges in the same call
        self._graph.remove_node(idx)
        del self._node_map[node_id]
        del self._inv_map[idx]

        for edge in touching:
            self._publish(EventType.EDGE_DELETED, {"edge_id": edge.id, "edge": edge})
        self._publish(EventType.NODE_DELETED, {
            "node_id": node_id,
            "kind": node.node_kind.value,
            "node": node,
        })
        return True

    # =========================================================================
    # EDGE OPERATIONS
    # =========================================================================

    def add_edge(self, edge: Edge) -> Optional[Edge]:
        """
        Add an edge, or replace the edge with the same id.

        Graph-Native Invariant: generation dependencies form a DAG.

        Returns:
            The stored edge, or None if either endpoint is missing (no-op)

        Raises:
            GraphInvariantError: Self-loop, or the edge would close a cycle
        """
        if edge.source_id == edge.target_id:
            raise GraphInvariantError(f"Cannot add self-loop edge {edge.source_id} -> {edge.target_id}")

        src_idx = self._node_map.get(edge.source_id)
        tgt_idx = self._node_map.get(edge.target_id)
        if src_idx is None or tgt_idx is None:
            logger.debug(f"add_edge {edge.id} skipped: endpoint missing")
            return None

        existing_idx = self._edge_map.get(edge.id)
        if existing_idx is not None:
            old_src, old_tgt = self._graph.get_edge_endpoints_by_index(existing_idx)
            if (old_src, old_tgt) == (src_idx, tgt_idx):
                previous = self._graph.get_edge_data_by_index(existing_idx)
                self._graph.update_edge_by_index(existing_idx, edge)
                self._publish(EventType.EDGE_UPDATED, {"edge_id": edge.id, "edge": edge, "previous": previous})
                return edge
            self.remove_edge(edge.id)

        # If target can already reach source, source -> target closes a cycle
        if src_idx in rx.descendants(self._graph, tgt_idx):
            raise GraphInvariantError(
                f"Cannot add edge {edge.source_id} -> {edge.target_id}: "
                f"would create cycle (path exists from target to source)"
            )

        self._edge_map[edge.id] = self._graph.add_edge(src_idx, tgt_idx, edge)
        self._publish(EventType.EDGE_CREATED, {"edge_id": edge.id, "edge": edge})
        return edge

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        idx = self._edge_map.get(edge_id)
        if idx is None:
            return None
        return self._graph.get_edge_data_by_index(idx)

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edge_map

    def edges(self) -> List[Edge]:
        return list(self._graph.edges())

    def find_edges(self, predicate: EdgePredicate) -> List[Edge]:
        return [edge for edge in self._graph.edges() if predicate(edge)]

    def update_edges(self, predicate: EdgePredicate, patch: Mapping[str, Any]) -> int:
        """
        Patch every edge matching predicate.

        Returns:
            Number of edges that actually changed
        """
        changed = 0
        for edge_id, idx in list(self._edge_map.items()):
            edge = self._graph.get_edge_data_by_index(idx)
            if not predicate(edge):
                continue
            updated = apply_patch(edge, patch)
            if updated == edge:
                continue
            self._graph.update_edge_by_index(idx, updated)
            changed += 1
            self._publish(EventType.EDGE_UPDATED, {"edge_id": edge_id, "edge": updated, "previous": edge})
        return changed

    def remove_edge(self, edge_id: str) -> Optional[Edge]:
        """Remove one edge by id. Missing ids are a no-op returning None."""
        idx = self._edge_map.pop(edge_id, None)
        if idx is None:
            return None
        edge = self._graph.get_edge_data_by_index(idx)
        self._graph.remove_edge_from_index(idx)
        self._publish(EventType.EDGE_DELETED, {"edge_id": edge_id, "edge": edge})
        return edge

    def remove_edges(self, predicate: EdgePredicate) -> int:
        """Remove every edge matching predicate. Returns the count removed."""
        doomed = [edge.id for edge in self.find_edges(predicate)]
        for edge_id in doomed:
            self.remove_edge(edge_id)
        return len(doomed)

    def incoming_edges(self, node_id: str) -> List[Edge]:
        """Edges pointing TO a node (empty for unknown ids)."""
        idx = self._node_map.get(node_id)
        if idx is None:
            return []
        return [edge for _, _, edge in self._graph.in_edges(idx)]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Edges pointing FROM a node (empty for unknown ids)."""
        idx = self._node_map.get(node_id)
        if idx is None:
            return []
        return [edge for _, _, edge in self._graph.out_edges(idx)]

    def predecessors(self, node_id: str) -> List[AnyNode]:
        idx = self._node_map.get(node_id)
        if idx is None:
            return []
        return list(self._graph.predecessors(idx))

    # =========================================================================
    # WHOLE-GRAPH OPERATIONS
    # =========================================================================

    def snapshot(self) -> StoreSnapshot:
        """Immutable view of the current nodes and edges."""
        return StoreSnapshot(nodes=tuple(self._graph.nodes()), edges=tuple(self._graph.edges()))

    def load(self, nodes: Iterable[AnyNode], edges: Iterable[Edge] = ()) -> None:
        """
        Replace the whole graph with fully hydrated nodes and edges.

        Edges whose endpoints are not among the nodes are dropped.
        """
        self.clear(publish=False)
        for node in nodes:
            if node.id in self._node_map:
                raise DuplicateNodeError(node.id)
            idx = self._graph.add_node(node)
            self._node_map[node.id] = idx
            self._inv_map[idx] = node.id
        for edge in edges:
            src_idx = self._node_map.get(edge.source_id)
            tgt_idx = self._node_map.get(edge.target_id)
            if src_idx is None or tgt_idx is None or edge.source_id == edge.target_id:
                logger.warning(f"Dropping dangling edge {edge.id} while loading graph")
                continue
            existing_idx = self._edge_map.get(edge.id)
            if existing_idx is not None:
                self._graph.remove_edge_from_index(existing_idx)
            self._edge_map[edge.id] = self._graph.add_edge(src_idx, tgt_idx, edge)

        if not rx.is_directed_acyclic_graph(self._graph):
            self.clear(publish=False)
            raise GraphInvariantError("Loaded graph contains a cycle")

        self._publish(EventType.GRAPH_LOADED, {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
        })

    def clear(self, publish: bool = True) -> None:
        self._graph = rx.PyDiGraph(multigraph=True)
        self._node_map.clear()
        self._inv_map.clear()
        self._edge_map.clear()
        if publish:
            self._publish(EventType.GRAPH_LOADED, {"node_count": 0, "edge_count": 0})

    # =========================================================================
    # INTERNAL ACCESS (invariant checks)
    # =========================================================================

    def _bridge_state(self) -> Tuple[rx.PyDiGraph, Dict[str, int], Dict[int, str], Dict[str, int]]:
        return self._graph, self._node_map, self._inv_map, self._edge_map

    def __len__(self) -> int:
        return self.node_count

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._node_map

    def __repr__(self) -> str:
        return f"GraphStore(nodes={self.node_count}, edges={self.edge_count})"
