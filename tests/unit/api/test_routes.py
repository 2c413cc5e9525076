"""
HTTP / WebSocket surface over one CanvasController.

Tests:
1. Node and edge CRUD through the API
2. Generation endpoints answer with the node they queued
3. Domain errors map onto 400 / 404 / 409
4. The WebSocket sends a snapshot first and answers pings
"""
import pytest
from starlette.testclient import TestClient

from api.routes import create_app, status_for
from core.graph_store import GraphInvariantError, NodeNotFoundError
from core.ontology import AspectRatio, VideoStatus
from core.schemas import VideoNode
from orchestration.adapter import AdapterError, ValidationFailure


@pytest.fixture
def client(controller):
    app = create_app(controller=controller)
    with TestClient(app) as test_client:
        yield test_client


def create(client, **body):
    response = client.post("/nodes", json=body)
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# HEALTH & GRAPH
# =============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "canvasflow"
    assert data["nodes"] == 0


def test_graph_snapshot_and_validation(client):
    create(client, kind="text", text="hello")
    snapshot = client.get("/graph").json()
    assert snapshot["node_count"] == 1
    assert snapshot["nodes"][0]["kind"] == "text"

    report = client.get("/graph/validate").json()
    assert report["valid"] is True


# =============================================================================
# NODES & EDGES
# =============================================================================

class TestNodesAndEdges:

    def test_create_each_kind(self, client):
        text = create(client, kind="text", text="a kite")
        image = create(client, kind="image", src="https://x/a.png", media_id="m1")
        video = create(client, kind="video", prompt_text="kites at dusk", generation_count=2)

        assert text["kind"] == "text"
        assert image["upload_state"] == "synced"
        assert video["status"] == "pending"
        assert video["ready_for_generation"] is True
        assert video["generation_count"] == 2

    def test_patch_node(self, client):
        video = create(client, kind="video")
        response = client.patch(f"/nodes/{video['id']}", json={"x": 40, "y": 50, "prompt": "snow"})
        assert response.status_code == 200
        data = response.json()
        assert data["position"] == {"x": 40.0, "y": 50.0}
        assert data["prompt_text"] == "snow"

    def test_connect_and_disconnect(self, client):
        image = create(client, kind="image", src="https://x/a.png", media_id="m1")
        video = create(client, kind="video")

        response = client.post("/edges", json={
            "source_id": image["id"], "target_id": video["id"], "slot": "start-image",
        })
        assert response.status_code == 201
        edge = response.json()
        assert edge["target_slot"] == "start-image"

        assert client.delete(f"/edges/{edge['id']}").status_code == 200
        assert client.delete(f"/edges/{edge['id']}").status_code == 404

    def test_delete_node(self, client):
        text = create(client, kind="text", text="x")
        assert client.delete(f"/nodes/{text['id']}").json() == {"deleted": text["id"]}
        assert client.delete(f"/nodes/{text['id']}").status_code == 404


# =============================================================================
# GENERATION
# =============================================================================

class TestGeneration:

    def test_generate_returns_queued_node(self, client):
        video = create(client, kind="video", prompt_text="ocean waves")
        response = client.post(f"/nodes/{video['id']}/generate")
        assert response.status_code == 202
        assert response.json()["status"] == "queued"

    def test_generate_incomplete_video_stays_pending(self, client):
        video = create(client, kind="video")
        response = client.post(f"/nodes/{video['id']}/generate")
        assert response.status_code == 202
        assert response.json()["status"] == "pending"

    def test_extend_a_ready_video(self, client, controller):
        source = controller.store.add_node(VideoNode.create(
            status=VideoStatus.READY, src="https://x/v.mp4", media_id="v-1",
        ))
        response = client.post(f"/nodes/{source.id}/extend", json={"prompt": "and the sun sets"})
        assert response.status_code == 201
        derived = response.json()
        assert derived["source_video_id"] == source.id
        assert derived["generated_from"]["kind"] == "extend"

    def test_reshoot_requires_motion_type(self, client, controller):
        source = controller.store.add_node(VideoNode.create(status=VideoStatus.READY, media_id="v-1"))
        assert client.post(f"/nodes/{source.id}/reshoot", json={}).status_code == 400
        response = client.post(f"/nodes/{source.id}/reshoot", json={"motion_type": "orbit"})
        assert response.status_code == 201

    def test_upscale_rejects_portrait(self, client, controller):
        source = controller.store.add_node(VideoNode.create(
            status=VideoStatus.READY, media_id="v-1", aspect_ratio=AspectRatio.PORTRAIT,
        ))
        response = client.post(f"/nodes/{source.id}/upscale")
        assert response.status_code == 400
        assert "16:9" in response.json()["error"]

    def test_image_batch(self, client):
        text = create(client, kind="text", text="a bonsai tree")
        response = client.post("/images/generate", json={"text_node_id": text["id"], "count": 2})
        assert response.status_code == 200
        assert response.json()["count"] == 2

    def test_image_batch_from_prompt(self, client):
        response = client.post("/images/generate", json={"prompt": "a comet", "x": 10, "y": 10})
        assert response.json()["count"] == 1

    def test_events_recent(self, client):
        video = create(client, kind="video")
        events = client.get("/events/recent", params={"limit": 10}).json()["events"]
        assert events[0]["mutation_type"] == "NODE_CREATED"
        scoped = client.get("/events/recent", params={"node_id": video["id"]}).json()["events"]
        assert all(e["node_id"] == video["id"] for e in scoped)
        assert client.get("/events/recent", params={"limit": "many"}).status_code == 400


# =============================================================================
# ERRORS
# =============================================================================

class TestErrors:

    def test_unknown_node(self, client):
        assert client.post("/nodes/video-missing/generate").status_code == 404
        assert client.patch("/nodes/video-missing", json={"x": 1}).status_code == 404

    def test_meaningless_connection(self, client):
        text = create(client, kind="text", text="x")
        video = create(client, kind="video")
        response = client.post("/edges", json={
            "source_id": text["id"], "target_id": video["id"], "slot": "end-image",
        })
        assert response.status_code == 400

    def test_cycle_conflict(self, client):
        a = create(client, kind="video")
        b = create(client, kind="video")
        client.post("/edges", json={"source_id": a["id"], "target_id": b["id"], "slot": "source-video"})
        response = client.post("/edges", json={"source_id": b["id"], "target_id": a["id"], "slot": "source-video"})
        assert response.status_code == 409

    def test_bad_bodies(self, client):
        assert client.post("/nodes", json={"kind": "hologram"}).status_code == 400
        assert client.post("/nodes", content=b"{nope").status_code == 400
        assert client.post("/nodes", json={"kind": "video", "generation_count": 12}).status_code == 400

    @pytest.mark.parametrize("exc,status", [
        (NodeNotFoundError("x"), 404),
        (GraphInvariantError("cycle"), 409),
        (ValidationFailure("bad"), 400),
        (ValueError("bad"), 400),
        (AdapterError("down"), 502),
    ])
    def test_status_mapping(self, exc, status):
        assert status_for(exc) == status


# =============================================================================
# WEBSOCKET
# =============================================================================

def test_websocket_snapshot_and_ping(client):
    create(client, kind="text", text="on the canvas")
    with client.websocket_connect("/ws") as ws:
        first = ws.receive_json()
        assert first["type"] == "snapshot"
        assert first["data"]["node_count"] == 1

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}
