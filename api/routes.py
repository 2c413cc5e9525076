"""
CANVASFLOW API ROUTES - The HTTP Interface

REST + WebSocket surface over one CanvasController using Starlette.

Endpoints:
- GET    /health                     - Health check
- GET    /graph                      - Full canvas snapshot
- GET    /graph/validate             - Run graph invariants
- POST   /nodes                      - Add a text / image / video node
- PATCH  /nodes/{node_id}            - Move, resize, prompt, generation count
- DELETE /nodes/{node_id}            - Delete a node (edges cascade)
- POST   /edges                      - Connect two nodes into a slot
- DELETE /edges/{edge_id}            - Disconnect
- POST   /nodes/{node_id}/generate   - Queue + dispatch a video
- POST   /nodes/{node_id}/regenerate - Retry as a new sibling node
- POST   /nodes/{node_id}/extend     - Derivative: extend a ready video
- POST   /nodes/{node_id}/reshoot    - Derivative: reshoot with a motion type
- POST   /nodes/{node_id}/upscale    - Derivative: upscale a 16:9 video
- POST   /images/generate            - Text-to-image / image-to-image batch
- GET    /events/recent              - Mutation log tail
- WS     /ws                         - Snapshot, then deltas and alerts

Design:
- Starlette routes for ASGI compatibility with Granian
- msgspec for request decoding and fast JSON responses
- No module-level canvas state: everything lives on app.state
"""
import asyncio
import contextlib
import functools
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

import msgspec
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from core.graph_invariants import validate_store
from core.graph_store import (
    DuplicateNodeError,
    EdgeNotFoundError,
    GraphError,
    GraphInvariantError,
    InvalidTransitionError,
    NodeNotFoundError,
)
from core.ontology import AspectRatio, NodeKind, TargetSlot, VideoModel
from core.schemas import Position
from infrastructure.config import CanvasConfig, load_config
from infrastructure.event_bus import EventType, GraphEvent
from infrastructure.logger import MutationLogger
from orchestration.adapter import GenerationError, ValidationFailure
from orchestration.canvas import CanvasController
from orchestration.mock_backend import MockGenerationBackend
from orchestration.vision import LiteLLMVisionAnalyzer
from viz.core import DeltaBuilder, create_snapshot_from_store


# =============================================================================
# LOGGING
# =============================================================================

logger = logging.getLogger("canvasflow.api")


# =============================================================================
# REQUEST BODIES
# =============================================================================

class NodeCreate(msgspec.Struct, kw_only=True):
    kind: NodeKind
    x: float = 0.0
    y: float = 0.0
    text: str = ""
    src: str = ""
    content_b64: Optional[str] = None
    media_id: Optional[str] = None
    caption: Optional[str] = None
    aspect_ratio: Optional[AspectRatio] = None
    prompt_text: str = ""
    generation_count: int = 1
    video_model: Optional[VideoModel] = None
    motion_type: Optional[str] = None


class NodePatch(msgspec.Struct, kw_only=True):
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    prompt: Optional[str] = None
    generation_count: Optional[int] = None


class ConnectRequest(msgspec.Struct, kw_only=True):
    source_id: str
    target_id: str
    slot: TargetSlot = TargetSlot.DEFAULT


class ExtendRequest(msgspec.Struct, kw_only=True):
    prompt: str = ""


class ReshootRequest(msgspec.Struct, kw_only=True):
    motion_type: str


class ImageGenerateRequest(msgspec.Struct, kw_only=True):
    prompt: Optional[str] = None
    text_node_id: Optional[str] = None
    source_image_id: Optional[str] = None
    count: int = 1
    aspect_ratio: Optional[AspectRatio] = None
    x: float = 0.0
    y: float = 0.0


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

# Pre-compiled msgspec encoder for fast JSON serialization
_json_encoder = msgspec.json.Encoder()


def json_response(data: Any, status_code: int = 200) -> Response:
    """Create JSON response using msgspec (nodes and edges encode natively)."""
    return Response(
        content=_json_encoder.encode(data),
        status_code=status_code,
        media_type="application/json",
    )


def error_response(message: str, status_code: int = 400) -> JSONResponse:
    """Create error response."""
    return JSONResponse({"error": message}, status_code=status_code)


def status_for(exc: Exception) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, (NodeNotFoundError, EdgeNotFoundError)):
        return 404
    if isinstance(exc, (DuplicateNodeError, GraphInvariantError, InvalidTransitionError)):
        return 409
    if isinstance(exc, (ValidationFailure, msgspec.ValidationError, msgspec.DecodeError, ValueError)):
        return 400
    if isinstance(exc, GraphError):
        return 400
    return 502


Handler = Callable[[Request], Awaitable[Response]]


def handles_errors(handler: Handler) -> Handler:
    """Map GraphError / GenerationError / bad bodies onto JSON error responses."""
    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except (GraphError, GenerationError, msgspec.ValidationError, msgspec.DecodeError, ValueError) as e:
            status = status_for(e)
            if status >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {e}")
            return error_response(str(e), status)
    return wrapper


async def decode_body(request: Request, body_type: type):
    """Decode a JSON body into a msgspec Struct. An empty body means defaults."""
    raw = await request.body()
    return msgspec.json.decode(raw or b"{}", type=body_type)


def get_controller(request: Request) -> CanvasController:
    return request.app.state.controller


# =============================================================================
# HEALTH & GRAPH
# =============================================================================

async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    controller = get_controller(request)
    return JSONResponse({
        "status": "healthy",
        "service": "canvasflow",
        "version": "0.1.0",
        "nodes": controller.store.node_count,
        "in_flight": len(controller.dispatcher.in_flight),
    })


async def get_graph(request: Request) -> JSONResponse:
    """Full render snapshot. ?color_mode=kind colours nodes by kind."""
    color_mode = request.query_params.get("color_mode", "status")
    snapshot = create_snapshot_from_store(get_controller(request).store, color_mode=color_mode)
    return JSONResponse(snapshot.to_dict())


async def validate_graph_endpoint(request: Request) -> JSONResponse:
    report = validate_store(get_controller(request).store)
    return JSONResponse(report.to_dict(), status_code=200 if report.valid else 500)


# =============================================================================
# NODE OPERATIONS
# =============================================================================

@handles_errors
async def create_node(request: Request) -> Response:
    """
    Create one node.

    Request body:
        {"kind": "video", "x": 0, "y": 0, "prompt_text": "...", "generation_count": 2}
        {"kind": "image", "src": "https://...", "media_id": "m1"}
        {"kind": "text", "text": "a cat on a skateboard"}
    """
    controller = get_controller(request)
    body: NodeCreate = await decode_body(request, NodeCreate)
    position = Position(body.x, body.y)

    if body.kind == NodeKind.TEXT:
        node = controller.add_text_node(body.text, position)
    elif body.kind == NodeKind.IMAGE:
        fields = {
            key: value for key, value in (
                ("content_b64", body.content_b64),
                ("media_id", body.media_id),
                ("caption", body.caption),
                ("aspect_ratio", body.aspect_ratio),
            ) if value is not None
        }
        node = controller.add_image_node(body.src, position, **fields)
    else:
        fields = {
            "prompt_text": body.prompt_text,
            "generation_count": body.generation_count,
            "motion_type": body.motion_type,
        }
        if body.video_model is not None:
            fields["video_model"] = body.video_model
        if body.aspect_ratio is not None:
            fields["aspect_ratio"] = body.aspect_ratio
        node = controller.add_video_node(position, **fields)

    return json_response(node, status_code=201)


@handles_errors
async def update_node(request: Request) -> Response:
    controller = get_controller(request)
    node_id = request.path_params["node_id"]
    body: NodePatch = await decode_body(request, NodePatch)
    node = controller.store.require_node(node_id)

    if body.x is not None or body.y is not None:
        controller.move_node(
            node_id,
            body.x if body.x is not None else node.position.x,
            body.y if body.y is not None else node.position.y,
        )
    if body.width is not None and body.height is not None:
        controller.resize_node(node_id, body.width, body.height)
    if body.prompt is not None:
        controller.set_prompt(node_id, body.prompt)
    if body.generation_count is not None:
        controller.set_generation_count(node_id, body.generation_count)

    return json_response(controller.store.require_node(node_id))


@handles_errors
async def delete_node(request: Request) -> Response:
    node_id = request.path_params["node_id"]
    if not get_controller(request).delete_node(node_id):
        raise NodeNotFoundError(node_id)
    return JSONResponse({"deleted": node_id})


# =============================================================================
# EDGE OPERATIONS
# =============================================================================

@handles_errors
async def create_edge(request: Request) -> Response:
    """
    Connect two nodes.

    Request body:
        {"source_id": "image-1", "target_id": "video-2", "slot": "start-image"}
    """
    body: ConnectRequest = await decode_body(request, ConnectRequest)
    edge = get_controller(request).connect(body.source_id, body.target_id, body.slot)
    return json_response(edge, status_code=201)


@handles_errors
async def delete_edge(request: Request) -> Response:
    edge_id = request.path_params["edge_id"]
    if get_controller(request).disconnect(edge_id) is None:
        raise EdgeNotFoundError(edge_id)
    return JSONResponse({"deleted": edge_id})


# =============================================================================
# GENERATION
# =============================================================================

@handles_errors
async def generate_node(request: Request) -> Response:
    controller = get_controller(request)
    node_id = request.path_params["node_id"]
    controller.request_generation(node_id)
    return json_response(controller.store.require_node(node_id), status_code=202)


@handles_errors
async def regenerate_node(request: Request) -> Response:
    node = get_controller(request).regenerate(request.path_params["node_id"])
    return json_response(node, status_code=201)


@handles_errors
async def extend_node(request: Request) -> Response:
    body: ExtendRequest = await decode_body(request, ExtendRequest)
    node = get_controller(request).extend_video(request.path_params["node_id"], body.prompt)
    return json_response(node, status_code=201)


@handles_errors
async def reshoot_node(request: Request) -> Response:
    body: ReshootRequest = await decode_body(request, ReshootRequest)
    node = get_controller(request).reshoot_video(request.path_params["node_id"], body.motion_type)
    return json_response(node, status_code=201)


@handles_errors
async def upscale_node(request: Request) -> Response:
    node = get_controller(request).upscale_video(request.path_params["node_id"])
    return json_response(node, status_code=201)


@handles_errors
async def generate_images(request: Request) -> Response:
    """
    Run an image batch and wait for it.

    Request body (one of):
        {"text_node_id": "text-1", "count": 2}
        {"prompt": "a red fox", "count": 4, "x": 100, "y": 200}
        {"source_image_id": "image-3", "prompt": "make it winter"}
    """
    controller = get_controller(request)
    body: ImageGenerateRequest = await decode_body(request, ImageGenerateRequest)

    if body.source_image_id:
        node_ids = await controller.image_to_image(
            body.source_image_id, body.prompt or "", count=body.count, aspect_ratio=body.aspect_ratio,
        )
    else:
        node_ids = await controller.text_to_image(
            text_id=body.text_node_id,
            prompt=body.prompt,
            count=body.count,
            aspect_ratio=body.aspect_ratio or AspectRatio.SQUARE,
            anchor=Position(body.x, body.y),
        )
    return JSONResponse({"node_ids": node_ids, "count": len(node_ids)})


# =============================================================================
# EVENTS
# =============================================================================

async def recent_events(request: Request) -> Response:
    try:
        limit = int(request.query_params.get("limit", "100"))
    except ValueError:
        return error_response("limit must be an integer")
    mutation_log: MutationLogger = request.app.state.mutation_log
    node_id = request.query_params.get("node_id")
    events = mutation_log.get_events_for_node(node_id)[-limit:] if node_id else mutation_log.get_recent_events(limit)
    return json_response({"events": events})


# =============================================================================
# WEBSOCKET
# =============================================================================

async def canvas_websocket(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for real-time canvas updates.

    Protocol:
    1. Client connects
    2. Server sends {"type": "snapshot"}
    3. Server sends {"type": "delta"} on every store change and
       {"type": "alert"} for precondition / batch failures
    4. Client may send {"type": "ping"} or {"type": "snapshot"}
    """
    connections: Set[WebSocket] = websocket.app.state.ws_connections
    store = websocket.app.state.controller.store

    await websocket.accept()
    connections.add(websocket)
    try:
        await websocket.send_json({"type": "snapshot", "data": create_snapshot_from_store(store).to_dict()})
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_json(), timeout=30.0)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})
                continue
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            elif data.get("type") == "snapshot":
                await websocket.send_json({"type": "snapshot", "data": create_snapshot_from_store(store).to_dict()})
    except WebSocketDisconnect:
        pass
    finally:
        connections.discard(websocket)


async def broadcast_json(connections: Set[WebSocket], message: dict) -> None:
    """Send to every connection, dropping the ones that are gone."""
    dead = set()
    for ws in list(connections):
        try:
            await ws.send_json(message)
        except Exception:
            dead.add(ws)
    connections.difference_update(dead)


def make_broadcaster(connections: Set[WebSocket]) -> Callable[[GraphEvent], Awaitable[None]]:
    """Async event-bus handler turning store events into WebSocket messages."""
    deltas = DeltaBuilder()

    async def broadcast_graph_event(event: GraphEvent) -> None:
        if event.type == EventType.ALERT:
            message = {"type": "alert", "data": event.payload}
        else:
            delta = deltas.from_event(event)
            if delta is None:
                return
            message = {"type": "delta", "data": delta.to_dict()}
        if connections:
            await broadcast_json(connections, message)

    return broadcast_graph_event


# =============================================================================
# APP FACTORY
# =============================================================================

def create_routes() -> List[Route]:
    """Create all API routes."""
    return [
        # Health & graph
        Route("/health", health, methods=["GET"]),
        Route("/graph", get_graph, methods=["GET"]),
        Route("/graph/validate", validate_graph_endpoint, methods=["GET"]),

        # Node operations
        Route("/nodes", create_node, methods=["POST"]),
        Route("/nodes/{node_id}", update_node, methods=["PATCH"]),
        Route("/nodes/{node_id}", delete_node, methods=["DELETE"]),

        # Edge operations
        Route("/edges", create_edge, methods=["POST"]),
        Route("/edges/{edge_id}", delete_edge, methods=["DELETE"]),

        # Generation
        Route("/nodes/{node_id}/generate", generate_node, methods=["POST"]),
        Route("/nodes/{node_id}/regenerate", regenerate_node, methods=["POST"]),
        Route("/nodes/{node_id}/extend", extend_node, methods=["POST"]),
        Route("/nodes/{node_id}/reshoot", reshoot_node, methods=["POST"]),
        Route("/nodes/{node_id}/upscale", upscale_node, methods=["POST"]),
        Route("/images/generate", generate_images, methods=["POST"]),

        # Events
        Route("/events/recent", recent_events, methods=["GET"]),
    ]


def create_websocket_routes() -> List[WebSocketRoute]:
    """Create WebSocket routes."""
    return [
        WebSocketRoute("/ws", canvas_websocket),
    ]


def build_default_controller(config: CanvasConfig) -> CanvasController:
    """Controller for the dev server: mock generation backend, real vision analyzer."""
    return CanvasController(
        adapter=MockGenerationBackend(latency=config.server.mock_latency),
        vision=LiteLLMVisionAnalyzer(config.vision),
        config=config,
    )


def create_app(
    controller: Optional[CanvasController] = None,
    config: Optional[CanvasConfig] = None,
) -> Starlette:
    """
    Create the Starlette application around one canvas.

    Args:
        controller: Canvas to serve; a mock-backed one is built if omitted
        config: Configuration; loaded from TOML + env if omitted
    """
    if controller is not None:
        config = config or controller.config
    config = config or load_config()
    controller = controller or build_default_controller(config)

    # CORS middleware for frontend access
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=list(config.server.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    ]

    mutation_log = MutationLogger()
    mutation_log.attach(controller.store)
    ws_connections: Set[WebSocket] = set()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        await controller.dispatcher.shutdown()
        mutation_log.close()

    app = Starlette(
        routes=create_routes() + create_websocket_routes(),
        middleware=middleware,
        lifespan=lifespan,
        debug=False,
    )
    app.state.controller = controller
    app.state.mutation_log = mutation_log
    app.state.ws_connections = ws_connections

    # Store events -> WebSocket deltas
    controller.store.events.subscribe_all(make_broadcaster(ws_connections), is_async=True)
    logger.info("Subscribed to canvas events for WebSocket broadcasting")

    return app


# Application instance for ASGI servers
app = create_app()
