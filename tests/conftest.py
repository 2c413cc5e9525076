"""
Pytest configuration and shared fixtures for the CanvasFlow test suite.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def store():
    """A fresh, empty GraphStore with its own event bus."""
    from core.graph_store import GraphStore
    return GraphStore()


@pytest.fixture
def orchestration_config():
    """Orchestration settings tuned for fast tests: no stagger, slow ticker."""
    from infrastructure.config import OrchestrationConfig
    return OrchestrationConfig(stagger_seconds=0.0, ticker_interval=60.0, result_timeout_seconds=5.0)


@pytest.fixture
def canvas_config(orchestration_config):
    from infrastructure.config import CanvasConfig
    return CanvasConfig(orchestration=orchestration_config)


@pytest.fixture
def backend():
    """Mock generation backend that answers immediately."""
    from orchestration.mock_backend import MockGenerationBackend
    return MockGenerationBackend(latency=0.0)


@pytest.fixture
def vision():
    from orchestration.mock_backend import EchoVisionAnalyzer
    return EchoVisionAnalyzer(caption="A gentle pan across the harbour")


@pytest.fixture
def placeholders(store):
    from orchestration.placeholders import PlaceholderManager
    return PlaceholderManager(store)


@pytest.fixture
def dispatcher(store, backend, vision, orchestration_config, placeholders):
    from orchestration.dispatcher import GenerationDispatcher
    return GenerationDispatcher(store, backend, vision, orchestration_config, placeholders)


@pytest.fixture
def controller(store, backend, vision, canvas_config):
    from orchestration.canvas import CanvasController
    return CanvasController(adapter=backend, vision=vision, config=canvas_config, store=store)


@pytest.fixture
def synced_image(store):
    """Factory: add an image node that already has a backend media id."""
    from core.ontology import UploadState
    from core.schemas import ImageNode

    def _make(media_id: str = "m-1", **fields):
        image = ImageNode.create(
            src=f"https://img.example/{media_id}.png",
            media_id=media_id,
            upload_state=UploadState.SYNCED,
            **fields,
        )
        return store.add_node(image)
    return _make
