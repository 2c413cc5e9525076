"""
CANVASFLOW ADAPTER - Consumed Generation Interfaces

The orchestration core depends on, but does not implement, the remote
generation backends. This module pins down their contract as Protocols,
plus the data that crosses the boundary and the error taxonomy every
failure is mapped onto.

Contract:
    submit_generation(kind, inputs) -> ResultRef
    await_result(ref)               -> GenerationResult     (single output)
    await_results(ref)              -> List[GenerationResult] (image batches)
    upload_content(data)            -> UploadResult
    infer_prompt_from_images(imgs)  -> str                  (vision analysis)

Error taxonomy (how the dispatcher reacts):
    ValidationFailure      class 1: missing input; node -> error, no adapter call
    AdapterError           class 2: backend failure; node + edges -> error
    PreconditionFailure    class 3: derivative source lacks media id; alert
    MissingCredentialError caption gap; node -> pending, not error
    ResultTimeoutError     class 2: result deadline expired
"""
from typing import List, Optional, Protocol, runtime_checkable

import msgspec

from core.ontology import AspectRatio, GenerationKind, VideoModel
from core.schemas import ImageNode


# =============================================================================
# ERRORS
# =============================================================================

class GenerationError(Exception):
    """Base exception for everything that can end a generation job."""
    pass


class ValidationFailure(GenerationError):
    """Inputs can never work as wired (reference without media id, ...)."""
    pass


class AdapterError(GenerationError):
    """The backend call itself failed."""
    pass


class PreconditionFailure(GenerationError):
    """A derivative operation was dispatched without a source media id."""
    pass


class MissingCredentialError(GenerationError):
    """The vision analyzer has no credential configured."""
    pass


class ResultTimeoutError(AdapterError):
    """await_result did not complete before the configured deadline."""
    pass


# =============================================================================
# BOUNDARY DATA
# =============================================================================

class GenerationInputs(msgspec.Struct, kw_only=True, frozen=True):
    """Everything a backend needs for one submission."""
    prompt: str = ""
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    start_media_id: Optional[str] = None
    end_media_id: Optional[str] = None
    reference_media_ids: List[str] = []
    source_media_id: Optional[str] = None
    motion_type: Optional[str] = None
    video_model: Optional[VideoModel] = None
    count: int = 1
    seed: Optional[int] = None


class ResultRef(msgspec.Struct, frozen=True):
    """Opaque handle to a submitted job."""
    job_id: str
    kind: GenerationKind


class GenerationResult(msgspec.Struct, kw_only=True, frozen=True):
    content_url: str
    media_id: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[float] = None


class UploadResult(msgspec.Struct, frozen=True):
    media_id: str


# =============================================================================
# PROTOCOLS
# =============================================================================

@runtime_checkable
class GenerationAdapter(Protocol):
    async def submit_generation(self, kind: GenerationKind, inputs: GenerationInputs) -> ResultRef:
        ...

    async def await_result(self, ref: ResultRef) -> GenerationResult:
        ...

    async def await_results(self, ref: ResultRef) -> List[GenerationResult]:
        ...

    async def upload_content(self, data: bytes) -> UploadResult:
        ...


@runtime_checkable
class VisionAnalyzer(Protocol):
    async def infer_prompt_from_images(self, images: List[ImageNode]) -> str:
        ...
