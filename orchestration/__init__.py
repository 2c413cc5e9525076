"""
CANVASFLOW ORCHESTRATION - Generation Jobs over the Canvas

- adapter: consumed backend contracts and the error taxonomy
- dispatcher: single-flight state machine with fan-out
- placeholders: provisional nodes and their edges
- image_generation: batched image requests
- canvas: the UI bridge (CanvasController)
- mock_backend: in-process backends for demos and tests
"""

from orchestration.adapter import (
    GenerationAdapter,
    VisionAnalyzer,
    GenerationInputs,
    GenerationResult,
    GenerationError,
    ValidationFailure,
    AdapterError,
    PreconditionFailure,
    MissingCredentialError,
    ResultTimeoutError,
)
from orchestration.dispatcher import GenerationDispatcher
from orchestration.placeholders import PlaceholderManager
from orchestration.canvas import CanvasController
from orchestration.mock_backend import MockGenerationBackend, EchoVisionAnalyzer

__all__ = [
    "GenerationAdapter",
    "VisionAnalyzer",
    "GenerationInputs",
    "GenerationResult",
    "GenerationError",
    "ValidationFailure",
    "AdapterError",
    "PreconditionFailure",
    "MissingCredentialError",
    "ResultTimeoutError",
    "GenerationDispatcher",
    "PlaceholderManager",
    "CanvasController",
    "MockGenerationBackend",
    "EchoVisionAnalyzer",
]
