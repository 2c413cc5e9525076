"""
CANVASFLOW IMAGE GENERATION - Batched Image Placeholders

Text-to-image and image-to-image requests produce a row of image
placeholders next to their source, wired with animated edges, before the
backend is called. Unlike video fan-out, an image batch is ONE backend
call asking for `count` outputs; the results are paired with placeholders
in order and any surplus placeholder is removed.

Failure policy:
    Image placeholders never linger as error cards. A failed upload or a
    failed batch discards every placeholder of the request and publishes an
    alert instead.
"""
import asyncio
import logging
from typing import List, Optional

from core.layout import right_of, row_positions, default_size
from core.ontology import AspectRatio, GenerationKind, NodeKind, TargetSlot
from core.schemas import GeneratedFrom, ImageNode, Position, TextNode
from infrastructure.config import OrchestrationConfig
from infrastructure.event_bus import publish_alert
from orchestration.adapter import (
    GenerationAdapter,
    GenerationError,
    GenerationInputs,
    GenerationResult,
    ResultRef,
    ResultTimeoutError,
    ValidationFailure,
)
from orchestration.media_sync import ensure_media_id
from orchestration.placeholders import PlaceholderManager

logger = logging.getLogger("canvasflow.image_generation")


class ImageGenerationService:
    """
    Usage:
        images = ImageGenerationService(store, adapter, placeholders, config.orchestration)
        ids = await images.generate_from_text(text_node_id="text-1", count=2)
        ids = await images.generate_from_image("image-9", "make it night", count=4)
    """

    def __init__(
        self,
        store,
        adapter: GenerationAdapter,
        placeholders: Optional[PlaceholderManager] = None,
        config: Optional[OrchestrationConfig] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.placeholders = placeholders or PlaceholderManager(store)
        self.config = config or OrchestrationConfig()

    def _clamp_count(self, count: int) -> int:
        return max(1, min(int(count), self.config.max_generation_count))

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def generate_from_text(
        self,
        text_node_id: Optional[str] = None,
        prompt: Optional[str] = None,
        count: int = 1,
        aspect_ratio: AspectRatio = AspectRatio.SQUARE,
        anchor: Optional[Position] = None,
    ) -> List[str]:
        """
        Generate `count` images from a text node or a bare prompt.

        With a text node the row starts to its right; with a bare prompt the
        row is centred on `anchor`.

        Returns:
            Ids of image nodes that received a result

        Raises:
            ValidationFailure: No prompt, or text_node_id is not a text node
        """
        source: Optional[TextNode] = None
        if text_node_id is not None:
            node = self.store.get_node(text_node_id)
            if not isinstance(node, TextNode):
                raise ValidationFailure(f"{text_node_id} is not a text node")
            source = node
            prompt = prompt or node.text
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationFailure("text-to-image needs a prompt")

        count = self._clamp_count(count)
        size = default_size(NodeKind.IMAGE, aspect_ratio)
        if source is not None:
            positions = row_positions(right_of(source, self.config.fanout_gap), size, count,
                                      self.config.placeholder_spacing, centered=False)
        else:
            positions = row_positions(anchor or Position(), size, count, self.config.placeholder_spacing)

        source_ids = [source.id] if source else []
        placeholder_ids = self._create_row(
            positions, aspect_ratio, GenerationKind.TEXT_TO_IMAGE, source_ids, prompt, TargetSlot.PROMPT_TEXT,
        )
        inputs = GenerationInputs(prompt=prompt, aspect_ratio=aspect_ratio, count=count)
        return await self._run_batch(GenerationKind.TEXT_TO_IMAGE, inputs, placeholder_ids)

    async def generate_from_image(
        self,
        source_image_id: str,
        prompt: str,
        count: int = 1,
        aspect_ratio: Optional[AspectRatio] = None,
    ) -> List[str]:
        """
        Generate `count` edited variants of an image.

        The source must have (or obtain through upload) a media id. If the
        upload fails, the placeholders are discarded and [] is returned.

        Raises:
            ValidationFailure: No prompt, or the source is not an image
        """
        source = self.store.get_node(source_image_id)
        if not isinstance(source, ImageNode):
            raise ValidationFailure(f"{source_image_id} is not an image node")
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValidationFailure("image-to-image needs a prompt")

        count = self._clamp_count(count)
        ratio = aspect_ratio or source.aspect_ratio
        size = default_size(NodeKind.IMAGE, ratio)
        positions = row_positions(right_of(source, self.config.fanout_gap), size, count,
                                  self.config.placeholder_spacing, centered=False)
        placeholder_ids = self._create_row(
            positions, ratio, GenerationKind.IMAGE_EDIT, [source.id], prompt, TargetSlot.SOURCE_IMAGE,
        )

        try:
            media_id = await ensure_media_id(self.store, self.adapter, source.id)
        except GenerationError as e:
            self._abandon(placeholder_ids, f"upload of {source.id} failed: {e}", source.id)
            return []

        inputs = GenerationInputs(prompt=prompt, aspect_ratio=ratio, start_media_id=media_id, count=count)
        return await self._run_batch(GenerationKind.IMAGE_EDIT, inputs, placeholder_ids)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _create_row(
        self,
        positions: List[Position],
        ratio: AspectRatio,
        kind: GenerationKind,
        source_ids: List[str],
        prompt: str,
        slot: TargetSlot,
    ) -> List[str]:
        ids = []
        for position in positions:
            node_id = self.placeholders.create_placeholder(NodeKind.IMAGE, position, {
                "aspect_ratio": ratio,
                "generated_from": GeneratedFrom(kind=kind, source_ids=list(source_ids), prompt=prompt),
            })
            for source_id in source_ids:
                self.placeholders.connect(source_id, node_id, slot, animated=True)
            ids.append(node_id)
        return ids

    def _abandon(self, placeholder_ids: List[str], message: str, node_id: Optional[str]) -> None:
        for placeholder_id in placeholder_ids:
            self.placeholders.discard(placeholder_id)
        logger.error(message)
        publish_alert(self.store.events, message, node_id=node_id, error_type="AdapterError",
                      source="image_generation")

    async def _run_batch(
        self,
        kind: GenerationKind,
        inputs: GenerationInputs,
        placeholder_ids: List[str],
    ) -> List[str]:
        logger.info(f"Requesting {inputs.count} image(s) for {kind.value}")
        try:
            ref = await self.adapter.submit_generation(kind, inputs)
            results = await self._await_results(ref)
        except Exception as e:
            self._abandon(placeholder_ids, f"{kind.value} failed: {e}", None)
            return []

        kept = self.placeholders.reconcile_batch(placeholder_ids, results)
        logger.info(f"{kind.value} produced {len(kept)} image(s)")
        return kept

    async def _await_results(self, ref: ResultRef) -> List[GenerationResult]:
        timeout = self.config.result_timeout_seconds
        if not timeout:
            return await self.adapter.await_results(ref)
        try:
            return await asyncio.wait_for(self.adapter.await_results(ref), timeout)
        except asyncio.TimeoutError as e:
            raise ResultTimeoutError(f"generation timed out after {timeout:g}s") from e
