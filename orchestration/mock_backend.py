"""
In-process stand-ins for the remote backends.

MockGenerationBackend simulates latency and failures so the demo CLI, the
dev server and the test suite can exercise the full orchestration flow
without network access. Every call is recorded in `calls`.
"""
import asyncio
import itertools
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from core.ontology import GenerationKind
from core.schemas import ImageNode
from orchestration.adapter import (
    AdapterError,
    GenerationInputs,
    GenerationResult,
    ResultRef,
    UploadResult,
)

logger = logging.getLogger("canvasflow.mock_backend")

MOCK_LATENCY = 1.5


class MockGenerationBackend:
    """
    Latency-simulating GenerationAdapter.

    Args:
        latency: Seconds await_result/await_results sleep before answering
        fail_kinds: Operations whose results raise AdapterError
        image_results: Cap on images returned per batch (simulates short batches)
        fail_uploads: Make upload_content raise AdapterError
    """

    def __init__(
        self,
        latency: float = MOCK_LATENCY,
        fail_kinds: Iterable[GenerationKind] = (),
        image_results: Optional[int] = None,
        fail_uploads: bool = False,
    ):
        self.latency = latency
        self.fail_kinds = set(GenerationKind(kind) for kind in fail_kinds)
        self.image_results = image_results
        self.fail_uploads = fail_uploads

        self.calls: List[Tuple[str, object]] = []
        self._jobs: Dict[str, GenerationInputs] = {}
        self._counter = itertools.count(1)

    def calls_named(self, name: str) -> List[object]:
        return [args for call, args in self.calls if call == name]

    @property
    def submissions(self) -> List[Tuple[GenerationKind, GenerationInputs]]:
        return self.calls_named("submit_generation")

    async def submit_generation(self, kind: GenerationKind, inputs: GenerationInputs) -> ResultRef:
        kind = GenerationKind(kind)
        self.calls.append(("submit_generation", (kind, inputs)))
        job_id = f"job-{next(self._counter)}"
        self._jobs[job_id] = inputs
        logger.debug(f"Submitted {kind.value} as {job_id}")
        return ResultRef(job_id=job_id, kind=kind)

    def _result(self, ref: ResultRef, index: int = 0) -> GenerationResult:
        media_id = f"media-{ref.job_id}-{index}"
        extension = "mp4" if ref.kind not in (GenerationKind.TEXT_TO_IMAGE, GenerationKind.IMAGE_EDIT) else "png"
        return GenerationResult(
            content_url=f"https://mock.canvasflow.local/{media_id}.{extension}",
            media_id=media_id,
            thumbnail=f"https://mock.canvasflow.local/{media_id}.jpg" if extension == "mp4" else None,
            duration=8.0 if extension == "mp4" else None,
        )

    async def await_result(self, ref: ResultRef) -> GenerationResult:
        self.calls.append(("await_result", ref))
        await asyncio.sleep(self.latency)
        if ref.kind in self.fail_kinds:
            raise AdapterError(f"mock backend failed {ref.kind.value}")
        return self._result(ref)

    async def await_results(self, ref: ResultRef) -> List[GenerationResult]:
        self.calls.append(("await_results", ref))
        await asyncio.sleep(self.latency)
        if ref.kind in self.fail_kinds:
            raise AdapterError(f"mock backend failed {ref.kind.value}")
        requested = self._jobs.get(ref.job_id, GenerationInputs()).count
        produced = requested if self.image_results is None else min(requested, self.image_results)
        return [self._result(ref, i) for i in range(produced)]

    async def upload_content(self, data: bytes) -> UploadResult:
        self.calls.append(("upload_content", len(data)))
        await asyncio.sleep(self.latency / 10)
        if self.fail_uploads:
            raise AdapterError("mock upload rejected")
        return UploadResult(media_id=f"upload-{next(self._counter)}")


class EchoVisionAnalyzer:
    """VisionAnalyzer that answers with a deterministic caption, or a configured error."""

    def __init__(self, caption: str = "A slow cinematic push-in on the scene", error: Optional[Exception] = None):
        self.caption = caption
        self.error = error
        self.calls: List[List[str]] = []

    async def infer_prompt_from_images(self, images: List[ImageNode]) -> str:
        self.calls.append([image.id for image in images])
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.caption
