"""
Canvas geometry helpers.

Pure functions: positions for derivative nodes, fan-out siblings and
placeholder rows, plus aspect ratio detection. Exact pixel layout is a
rendering concern; these only need to be deterministic and non-overlapping.
"""
from typing import List, Optional

from core.ontology import AspectRatio, NodeKind, default_dimensions
from core.schemas import AnyNode, Position, Size

DEFAULT_GAP = 50.0
DEFAULT_ROW_SPACING = 20.0
RATIO_TOLERANCE = 0.1


def node_size(node: AnyNode) -> Size:
    """The node's size, falling back to the default for its kind."""
    if node.size is not None:
        return node.size
    ratio = getattr(node, "aspect_ratio", None)
    width, height = default_dimensions(node.node_kind, ratio)
    return Size(width, height)


def right_of(node: AnyNode, gap: float = DEFAULT_GAP) -> Position:
    """Position immediately to the right of a node, top-aligned."""
    size = node_size(node)
    return Position(node.position.x + size.width + gap, node.position.y)


def fanout_position(origin: Position, size: Size, index: int, gap: float = DEFAULT_GAP) -> Position:
    """Position of the index-th fan-out sibling (index 0 is the original)."""
    return Position(origin.x + (size.width + gap) * index, origin.y)


def row_positions(
    anchor: Position,
    size: Size,
    count: int,
    spacing: float = DEFAULT_ROW_SPACING,
    centered: bool = True,
) -> List[Position]:
    """
    Lay out `count` equally sized nodes in a horizontal row.

    With centered=True the row is centred on anchor.x, otherwise it starts
    at anchor.x.
    """
    if count <= 0:
        return []
    total_width = count * size.width + (count - 1) * spacing
    start_x = anchor.x - total_width / 2 if centered else anchor.x
    return [
        Position(start_x + i * (size.width + spacing), anchor.y)
        for i in range(count)
    ]


def detect_aspect_ratio(width: float, height: float, tolerance: float = RATIO_TOLERANCE) -> AspectRatio:
    """Classify an image by its dimensions. Anything not near 16:9 or 9:16 is 1:1."""
    if height <= 0:
        return AspectRatio.SQUARE
    ratio = width / height
    if abs(ratio - 16 / 9) < tolerance:
        return AspectRatio.LANDSCAPE
    if abs(ratio - 9 / 16) < tolerance:
        return AspectRatio.PORTRAIT
    return AspectRatio.SQUARE


def detect_video_aspect_ratio(width: float, height: float) -> AspectRatio:
    # Videos are 16:9 unless clearly portrait
    if height > 0 and abs(width / height - 9 / 16) < RATIO_TOLERANCE:
        return AspectRatio.PORTRAIT
    return AspectRatio.LANDSCAPE


def video_ratio_for_image(image_ratio: Optional[AspectRatio]) -> AspectRatio:
    """Video output ratio that matches a source image."""
    if image_ratio == AspectRatio.PORTRAIT:
        return AspectRatio.PORTRAIT
    return AspectRatio.LANDSCAPE


def default_size(kind: NodeKind, ratio: Optional[AspectRatio] = None) -> Size:
    width, height = default_dimensions(kind, ratio)
    return Size(width, height)
