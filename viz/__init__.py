"""
CANVASFLOW VISUALIZATION - The Render-Facing View

This package provides the data the UI layer renders:
- core: VizNode/VizEdge, snapshots, deltas and mutation events
"""

from viz.core import (
    VizNode,
    VizEdge,
    GraphSnapshot,
    GraphDelta,
    MutationEvent,
    MutationType,
    DeltaBuilder,
    create_snapshot_from_store,
)

__all__ = [
    "VizNode",
    "VizEdge",
    "GraphSnapshot",
    "GraphDelta",
    "MutationEvent",
    "MutationType",
    "DeltaBuilder",
    "create_snapshot_from_store",
]
