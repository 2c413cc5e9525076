"""
CANVASFLOW CORE - Central exports for the canvas data model.

This module provides access to:
- Vocabulary and state machine (ontology)
- Node / edge structs (schemas)
- The Graph Store (graph_store)
- Readiness evaluation (readiness)
"""

from core.ontology import (
    NodeKind,
    VideoStatus,
    UploadState,
    GenerationKind,
    TargetSlot,
    EdgeState,
    AspectRatio,
    VideoModel,
    is_valid_transition,
)
from core.schemas import (
    TextNode,
    ImageNode,
    VideoNode,
    Edge,
    Position,
    Size,
    GeneratedFrom,
    AnyNode,
)
from core.graph_store import (
    GraphStore,
    GraphError,
    NodeNotFoundError,
    EdgeNotFoundError,
    DuplicateNodeError,
    GraphInvariantError,
    InvalidTransitionError,
)
from core.readiness import Verdict, Readiness, evaluate_readiness, resolve_inputs

__all__ = [
    # Ontology
    "NodeKind",
    "VideoStatus",
    "UploadState",
    "GenerationKind",
    "TargetSlot",
    "EdgeState",
    "AspectRatio",
    "VideoModel",
    "is_valid_transition",
    # Schemas
    "TextNode",
    "ImageNode",
    "VideoNode",
    "Edge",
    "Position",
    "Size",
    "GeneratedFrom",
    "AnyNode",
    # Store
    "GraphStore",
    "GraphError",
    "NodeNotFoundError",
    "EdgeNotFoundError",
    "DuplicateNodeError",
    "GraphInvariantError",
    "InvalidTransitionError",
    # Readiness
    "Verdict",
    "Readiness",
    "evaluate_readiness",
    "resolve_inputs",
]
