"""
Back-fill backend media ids for locally created images.

An image can only feed a generation once the backend knows it. Images that
came from a generation already carry a media id; images the user dropped
onto the canvas are uploaded first and the id is persisted on the node.
"""
import asyncio
import base64
import logging
import weakref
from typing import Dict, Optional

from core.ontology import UploadState
from core.layout import detect_aspect_ratio
from core.schemas import ImageNode, Position
from orchestration.adapter import AdapterError, GenerationAdapter, GenerationError, ValidationFailure

logger = logging.getLogger("canvasflow.media_sync")

# store -> {image_id: upload task}; concurrent callers share one upload per image
_in_flight: "weakref.WeakKeyDictionary[object, Dict[str, asyncio.Task]]" = weakref.WeakKeyDictionary()


def _content_bytes(image: ImageNode) -> Optional[bytes]:
    if image.content_b64:
        return base64.b64decode(image.content_b64)
    if image.src.startswith("data:") and "," in image.src:
        return base64.b64decode(image.src.split(",", 1)[1])
    return None


async def ensure_media_id(store, adapter: GenerationAdapter, image_id: str) -> str:
    """
    Return the backend media id for an image node, uploading it if needed.

    Callers that ask for the same image while its upload is in flight
    await that upload instead of starting another one.

    Raises:
        ValidationFailure: The node is missing, not an image, or has no
                           content that could be uploaded
        AdapterError: The upload failed (upload_state is set to error)
    """
    image = store.get_node(image_id)
    if not isinstance(image, ImageNode):
        raise ValidationFailure(f"image {image_id} does not exist")
    if image.media_id:
        return image.media_id

    uploads = _in_flight.setdefault(store, {})
    task = uploads.get(image_id)
    if task is None:
        data = _content_bytes(image)
        if not data:
            raise ValidationFailure(f"image {image_id} has no media id and no content to upload")
        task = asyncio.ensure_future(_upload(store, adapter, image_id, data))
        uploads[image_id] = task
        task.add_done_callback(lambda _: uploads.pop(image_id, None))
    else:
        logger.debug(f"Joining in-flight upload of {image_id}")
    # A cancelled caller must not cancel the upload other callers await
    return await asyncio.shield(task)


async def _upload(store, adapter: GenerationAdapter, image_id: str, data: bytes) -> str:
    store.update_node(image_id, {"upload_state": UploadState.SYNCING, "upload_message": None})
    try:
        uploaded = await adapter.upload_content(data)
    except GenerationError as e:
        store.update_node(image_id, {"upload_state": UploadState.ERROR, "upload_message": str(e)})
        raise
    except Exception as e:
        store.update_node(image_id, {"upload_state": UploadState.ERROR, "upload_message": str(e)})
        raise AdapterError(f"upload of {image_id} failed: {e}") from e

    # The node may have been deleted while the upload was in flight
    store.update_node(image_id, {
        "media_id": uploaded.media_id,
        "upload_state": UploadState.SYNCED,
        "upload_message": None,
    })
    logger.info(f"Uploaded {image_id} -> media {uploaded.media_id}")
    return uploaded.media_id


async def import_image(
    store,
    adapter: GenerationAdapter,
    data: bytes,
    position: Optional[Position] = None,
    width: Optional[float] = None,
    height: Optional[float] = None,
) -> ImageNode:
    """
    Add a local image to the canvas and sync it to the backend.

    A failed upload leaves the node on the canvas with upload_state=error.
    """
    kwargs = {}
    if width and height:
        kwargs["aspect_ratio"] = detect_aspect_ratio(width, height)
    image = ImageNode.create(
        position=position,
        content_b64=base64.b64encode(data).decode("ascii"),
        **kwargs,
    )
    store.add_node(image)
    try:
        await ensure_media_id(store, adapter, image.id)
    except GenerationError as e:
        logger.warning(f"Imported image {image.id} could not be synced: {e}")
    return store.get_node(image.id) or image
