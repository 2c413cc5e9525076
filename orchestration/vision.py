"""
CANVASFLOW VISION - Prompt Synthesis from Image Inputs

When a video node has image inputs but no prompt, a vision model looks at
the frame(s) and writes an 8-second cinematic video prompt.

LiteLLMVisionAnalyzer talks to any OpenAI-compatible vision endpoint via
litellm. The default is qwen-vl-max on DashScope's compatible-mode API.

Failure modes:
    MissingCredentialError  no API key in the configured env var; the
                            dispatcher routes the node back to pending
    AdapterError            the call failed or the model returned nothing
"""
import logging
import os
from typing import Any, Dict, List, Optional

import litellm
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from core.schemas import ImageNode
from infrastructure.config import VisionConfig
from orchestration.adapter import AdapterError, MissingCredentialError, ValidationFailure

logger = logging.getLogger("canvasflow.vision")


# =============================================================================
# PROMPT TEMPLATES
# =============================================================================

VIDEO_PROMPT_SINGLE = """Analyze this image and generate an 8-second cinematic video prompt.

STYLE OPTIONS (choose the best fit for this image):
- Single continuous shot: Smooth camera movement (pan, zoom, dolly) with natural motion
- Multi-shot sequence: 2-3 shots with cuts if the scene benefits from angle changes

Focus on: subject movement, camera motion, environmental dynamics, mood/atmosphere.
Output ONLY the prompt text. Under 80 words. English. No shot numbers or timestamps."""

VIDEO_PROMPT_START_END = """Analyze these two images (start frame and end frame) and generate an 8-second video prompt.

STYLE OPTIONS (choose the best fit):
- Single continuous transition: One smooth camera movement from Frame A to Frame B
- Multi-shot transition: 2-3 shots if the change requires cuts or complex motion

Describe the journey from Frame A to Frame B: subject movement, camera motion, environmental changes.
Output ONLY the prompt text. Under 80 words. English. No shot numbers or timestamps."""


def image_url_for(image: ImageNode) -> str:
    """URL or data URI the vision model can fetch."""
    if image.content_b64:
        return f"data:image/png;base64,{image.content_b64}"
    return image.src


def build_messages(images: List[ImageNode]) -> List[Dict[str, Any]]:
    """One user message: image_url parts first, then the instruction text."""
    template = VIDEO_PROMPT_START_END if len(images) >= 2 else VIDEO_PROMPT_SINGLE
    content: List[Dict[str, Any]] = [
        {"type": "image_url", "image_url": {"url": image_url_for(image)}}
        for image in images[:2]
    ]
    content.append({"type": "text", "text": template})
    return [{"role": "user", "content": content}]


def clean_prompt(text: Optional[str]) -> str:
    """Trim whitespace and one layer of wrapping quotes."""
    cleaned = (text or "").strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in ("\"", "'"):
        cleaned = cleaned[1:-1].strip()
    return cleaned


# =============================================================================
# ANALYZER
# =============================================================================

class LiteLLMVisionAnalyzer:
    """
    VisionAnalyzer backed by litellm.acompletion.

    Usage:
        analyzer = LiteLLMVisionAnalyzer(config.vision)
        prompt = await analyzer.infer_prompt_from_images([start, end])
    """

    def __init__(self, config: Optional[VisionConfig] = None):
        self.config = config or VisionConfig()

    def _api_key(self) -> str:
        key = os.environ.get(self.config.api_key_env)
        if not key:
            raise MissingCredentialError(
                f"vision analysis needs {self.config.api_key_env} to be set"
            )
        return key

    async def infer_prompt_from_images(self, images: List[ImageNode]) -> str:
        """
        Describe one or two frames as a video prompt.

        Raises:
            ValidationFailure: No image with content was given
            MissingCredentialError: API key env var unset
            AdapterError: The call failed or returned an empty prompt
        """
        usable = [img for img in images if img.has_content]
        if not usable:
            raise ValidationFailure("no image content to analyze")

        api_key = self._api_key()
        try:
            response = await self._complete(build_messages(usable), api_key)
        except litellm.exceptions.AuthenticationError as e:
            raise MissingCredentialError(f"vision credential rejected: {e}") from e
        except Exception as e:
            logger.error(f"Vision analysis failed: {e}", exc_info=True)
            raise AdapterError(f"vision analysis failed: {e}") from e

        prompt = clean_prompt(response.choices[0].message.content)
        if not prompt:
            raise AdapterError("vision model returned an empty prompt")
        logger.info(f"Inferred prompt from {len(usable)} image(s): {prompt[:60]}")
        return prompt

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(litellm.exceptions.RateLimitError),
        reraise=True,
    )
    async def _complete(self, messages: List[Dict[str, Any]], api_key: str):
        return await litellm.acompletion(
            model=self.config.model,
            messages=messages,
            api_base=self.config.api_base,
            api_key=api_key,
            timeout=self.config.timeout_seconds,
            num_retries=0,
        )
