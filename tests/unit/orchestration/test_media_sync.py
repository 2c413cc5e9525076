"""
Media id back-fill for locally created images.
"""
import base64

import pytest

from core.ontology import AspectRatio, UploadState
from core.schemas import ImageNode, TextNode
from orchestration.adapter import AdapterError, ValidationFailure
from orchestration.media_sync import ensure_media_id, import_image
from orchestration.mock_backend import MockGenerationBackend


@pytest.mark.asyncio
async def test_existing_media_id_skips_upload(store, backend, synced_image):
    image = synced_image("m-9")
    assert await ensure_media_id(store, backend, image.id) == "m-9"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_content_is_uploaded_and_persisted(store, backend):
    image = store.add_node(ImageNode.create(content_b64=base64.b64encode(b"pixels").decode()))
    media_id = await ensure_media_id(store, backend, image.id)
    stored = store.get_node(image.id)
    assert stored.media_id == media_id
    assert stored.upload_state == UploadState.SYNCED
    assert backend.calls_named("upload_content") == [6]


@pytest.mark.asyncio
async def test_data_uri_is_uploaded(store, backend):
    src = "data:image/png;base64," + base64.b64encode(b"abc").decode()
    image = store.add_node(ImageNode.create(src=src))
    await ensure_media_id(store, backend, image.id)
    assert backend.calls_named("upload_content") == [3]


@pytest.mark.asyncio
async def test_remote_url_without_media_id_is_rejected(store, backend):
    image = store.add_node(ImageNode.create(src="https://elsewhere.example/a.png"))
    with pytest.raises(ValidationFailure):
        await ensure_media_id(store, backend, image.id)


@pytest.mark.asyncio
async def test_missing_or_wrong_kind(store, backend):
    text = store.add_node(TextNode.create(text="x"))
    with pytest.raises(ValidationFailure):
        await ensure_media_id(store, backend, text.id)
    with pytest.raises(ValidationFailure):
        await ensure_media_id(store, backend, "image-gone")


@pytest.mark.asyncio
async def test_upload_failure_is_recorded(store):
    backend = MockGenerationBackend(latency=0.0, fail_uploads=True)
    image = store.add_node(ImageNode.create(content_b64="aGk="))
    with pytest.raises(AdapterError):
        await ensure_media_id(store, backend, image.id)
    stored = store.get_node(image.id)
    assert stored.upload_state == UploadState.ERROR
    assert stored.upload_message == "mock upload rejected"


@pytest.mark.asyncio
async def test_import_image_detects_ratio_and_syncs(store, backend):
    image = await import_image(store, backend, b"frame", width=1920, height=1080)
    assert image.aspect_ratio == AspectRatio.LANDSCAPE
    assert image.upload_state == UploadState.SYNCED
    assert image.media_id is not None


@pytest.mark.asyncio
async def test_import_image_keeps_node_on_failed_upload(store):
    backend = MockGenerationBackend(latency=0.0, fail_uploads=True)
    image = await import_image(store, backend, b"frame")
    assert store.has_node(image.id)
    assert image.upload_state == UploadState.ERROR
