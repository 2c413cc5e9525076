"""
CANVASFLOW PLACEHOLDERS - Provisional Nodes and Their Edges

A placeholder is created BEFORE any network call so the canvas shows work
immediately. It is then patched in place when the result lands, turned into
an error card when the job fails, or discarded when the operation never
produced anything worth keeping.

Every method here goes through the Graph Store and tolerates a target that
was deleted in the meantime: deleting a node is the only cancellation there
is, so a late patch must quietly do nothing.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.ontology import EdgeState, NodeKind, TargetSlot, UploadState, VideoStatus, is_valid_transition
from core.schemas import (
    Edge,
    ImageNode,
    Position,
    TextNode,
    VideoNode,
)
from orchestration.adapter import GenerationResult

logger = logging.getLogger("canvasflow.placeholders")


class PlaceholderManager:
    """
    Lifecycle of provisional nodes.

    Usage:
        placeholders = PlaceholderManager(store)
        node_id = placeholders.create_placeholder(NodeKind.IMAGE, Position(10, 20), {"prompt": "cat"})
        placeholders.patch_on_success(node_id, GenerationResult(content_url="u", media_id="m"))
    """

    def __init__(self, store):
        self._store = store

    # =========================================================================
    # CREATE / DISCARD
    # =========================================================================

    def create_placeholder(
        self,
        kind: NodeKind,
        position: Position,
        meta: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Add an empty node of `kind` at `position`.

        Args:
            kind: Node kind to create
            position: Canvas position
            meta: Extra kind-specific fields (prompt_text, generated_from, ...)

        Returns:
            The new node id
        """
        fields: Dict[str, Any] = dict(meta or {})
        kind = NodeKind(kind)
        if kind == NodeKind.IMAGE:
            fields.setdefault("pending_generation", True)
            node = ImageNode.create(position=position, **fields)
        elif kind == NodeKind.VIDEO:
            fields.setdefault("status", VideoStatus.QUEUED)
            node = VideoNode.create(position=position, **fields)
        else:
            node = TextNode.create(position=position, **fields)
        self._store.add_node(node)
        logger.debug(f"Created {kind.value} placeholder {node.id}")
        return node.id

    def discard(self, node_id: str) -> bool:
        """Remove a placeholder and its edges. No-op if already gone."""
        removed = self._store.delete_node(node_id)
        if removed:
            logger.debug(f"Discarded placeholder {node_id}")
        return removed

    # =========================================================================
    # PATCHING
    # =========================================================================

    def patch_on_success(self, node_id: str, result: GenerationResult) -> bool:
        """
        Fill a placeholder with its real content.

        Returns:
            True if the node was patched; False if it was deleted, or it is a
            video that is no longer generating (stale result).
        """
        node = self._store.get_node(node_id)
        if node is None:
            logger.debug(f"Result for deleted node {node_id} dropped")
            return False

        if isinstance(node, VideoNode):
            if node.status != VideoStatus.GENERATING:
                logger.debug(f"Stale result for {node_id} (status={node.status.value}) dropped")
                return False
            patch: Dict[str, Any] = {
                "status": VideoStatus.READY,
                "progress": 100,
                "src": result.content_url,
                "media_id": result.media_id,
                "error_message": None,
            }
            if result.thumbnail:
                patch["thumbnail"] = result.thumbnail
            if result.duration is not None:
                patch["duration"] = result.duration
        elif isinstance(node, ImageNode):
            patch = {
                "src": result.content_url,
                "media_id": result.media_id,
                "pending_generation": False,
                "error_message": None,
            }
            if result.media_id:
                patch["upload_state"] = UploadState.SYNCED
        else:
            logger.warning(f"patch_on_success on {node.node_kind.value} node {node_id} ignored")
            return False

        self._store.update_node(node_id, patch)
        self.settle_edges(node_id)
        return True

    def patch_on_error(self, node_id: str, message: str) -> bool:
        """Turn a node into an inspectable error card; incoming edges go red."""
        node = self._store.get_node(node_id)
        if node is None:
            logger.debug(f"Error for deleted node {node_id} dropped: {message}")
            return False

        if isinstance(node, VideoNode):
            if node.status == VideoStatus.ERROR or not is_valid_transition(node.status, VideoStatus.ERROR):
                logger.debug(f"Error for {node.status.value} node {node_id} dropped: {message}")
                return False
            self._store.update_node(node_id, {
                "status": VideoStatus.ERROR,
                "error_message": message,
                "progress": None,
            })
        elif isinstance(node, ImageNode):
            self._store.update_node(node_id, {"pending_generation": False, "error_message": message})
        else:
            return False

        self._store.update_edges(
            lambda edge: edge.target_id == node_id,
            {"animated": False, "state": EdgeState.ERROR},
        )
        return True

    # =========================================================================
    # EDGES
    # =========================================================================

    def mark_edges_generating(self, node_id: str) -> int:
        return self._store.update_edges(
            lambda edge: edge.target_id == node_id,
            {"animated": True, "state": EdgeState.GENERATING},
        )

    def settle_edges(self, node_id: str) -> int:
        return self._store.update_edges(
            lambda edge: edge.target_id == node_id,
            {"animated": False, "state": EdgeState.IDLE},
        )

    def connect(
        self,
        source_id: str,
        target_id: str,
        slot: TargetSlot = TargetSlot.DEFAULT,
        animated: bool = False,
    ) -> Optional[Edge]:
        """Add a slot-addressed edge; None if either end is gone."""
        state = EdgeState.GENERATING if animated else EdgeState.IDLE
        return self._store.add_edge(Edge.create(source_id, target_id, slot, animated=animated, state=state))

    # =========================================================================
    # BATCHES
    # =========================================================================

    def reconcile_batch(
        self,
        placeholder_ids: Sequence[str],
        results: Sequence[GenerationResult],
    ) -> List[str]:
        """
        Pair results with placeholders in order.

        Surplus placeholders (fewer results than asked) are discarded along
        with their edges. Surplus results are ignored.

        Returns:
            Ids of placeholders that received a result and still exist
        """
        kept: List[str] = []
        for node_id, result in zip(placeholder_ids, results):
            if self.patch_on_success(node_id, result):
                kept.append(node_id)

        surplus = list(placeholder_ids[len(results):])
        for node_id in surplus:
            self.discard(node_id)
        if surplus:
            logger.info(f"Discarded {len(surplus)} surplus placeholder(s): got {len(results)} of {len(placeholder_ids)}")
        return kept
