"""
CANVASFLOW MAIN - Entry Point and CLI

Commands:
    serve    - Start the API server (Granian, ASGI)
    demo     - Run a scripted canvas against the mock backend and print the result
    config   - Show the effective configuration (TOML + environment)

Usage:
    # Development server with reload
    python main.py serve

    # Production server
    python main.py serve --prod --workers 4

    # Watch a frames -> video run and a text -> image batch end to end
    python main.py demo --latency 0.2

    # Inspect configuration
    python main.py --config config/canvasflow.toml config
"""
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from infrastructure.config import CONFIG_ENV_VAR, CanvasConfig, load_config

console = Console()
logger = logging.getLogger("canvasflow.main")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


# =============================================================================
# SERVE
# =============================================================================

def run_server(host: str, port: int, workers: int, reload: bool) -> None:
    """Run the API with Granian."""
    from granian import Granian
    from granian.constants import Interfaces

    console.print(f"Starting CanvasFlow API on [bold]{host}:{port}[/bold] ({workers} worker(s))")
    console.print("Press Ctrl+C to stop")

    granian = Granian(
        target="api.routes:app",
        address=host,
        port=port,
        interface=Interfaces.ASGI,
        workers=workers,
        reload=reload,
    )
    granian.serve()


def cmd_serve(args, config: CanvasConfig) -> None:
    """Handle serve command."""
    if args.config:
        # api.routes loads its own config on import
        os.environ[CONFIG_ENV_VAR] = str(args.config)
    host = args.host or config.server.host
    port = args.port or config.server.port
    workers = args.workers or (4 if args.prod else config.server.workers)
    run_server(host, port, workers, reload=not args.prod)


# =============================================================================
# DEMO
# =============================================================================

async def run_demo(config: CanvasConfig, latency: float):
    """Frames -> video with an inferred prompt, then a two-image batch."""
    from core.ontology import TargetSlot
    from core.schemas import Position
    from orchestration.canvas import CanvasController
    from orchestration.mock_backend import EchoVisionAnalyzer, MockGenerationBackend

    controller = CanvasController(
        adapter=MockGenerationBackend(latency=latency),
        vision=EchoVisionAnalyzer(),
        config=config,
    )

    start = controller.add_image_node("https://example.com/first.png", Position(0, 0), media_id="m-first")
    end = controller.add_image_node("https://example.com/last.png", Position(0, 300), media_id="m-last")
    video = controller.add_video_node(Position(400, 150), generation_count=2)
    controller.connect(start.id, video.id, TargetSlot.START_IMAGE)
    controller.connect(end.id, video.id, TargetSlot.END_IMAGE)
    controller.request_generation(video.id)

    prompt = controller.add_text_node("a lighthouse at dusk, oil painting", Position(0, 700))
    image_ids = await controller.text_to_image(text_id=prompt.id, count=2)
    await controller.dispatcher.wait_idle()

    logger.info(f"Image batch produced {len(image_ids)} image(s)")
    return controller


def render_canvas(controller) -> Table:
    from core.schemas import ImageNode, TextNode, VideoNode

    table = Table(title="Canvas")
    table.add_column("Node")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")

    for node in controller.store.nodes():
        if isinstance(node, VideoNode):
            status = node.status.value
            detail = node.src or node.error_message or node.prompt_text
        elif isinstance(node, ImageNode):
            status = "error" if node.error_message else ("pending" if node.pending_generation else "ready")
            detail = node.src
        elif isinstance(node, TextNode):
            status = "-"
            detail = node.text
        else:
            status, detail = "-", ""
        table.add_row(node.id, node.node_kind.value, status, detail)
    return table


def cmd_demo(args, config: CanvasConfig) -> None:
    """Handle demo command."""
    controller = asyncio.run(run_demo(config, args.latency))
    console.print(render_canvas(controller))
    console.print(f"{controller.store.node_count} nodes, {controller.store.edge_count} edges")


# =============================================================================
# CONFIG
# =============================================================================

def cmd_config(args, config: CanvasConfig) -> None:
    """Handle config command."""
    for section, values in config.to_dict().items():
        table = Table(title=f"[{section}]")
        table.add_column("Key")
        table.add_column("Value")
        for key, value in values.items():
            table.add_row(key, repr(value))
        console.print(table)


# =============================================================================
# ENTRY POINT
# =============================================================================

def main(argv: Optional[list] = None) -> None:
    """Main entry point with subcommands."""
    import argparse

    parser = argparse.ArgumentParser(
        description="CanvasFlow - generation orchestration for a node-graph media canvas",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, help="Path to a canvasflow TOML file")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--workers", type=int, default=None, help="Number of workers")
    serve_parser.add_argument("--prod", action="store_true", help="Run in production mode (no reload)")
    serve_parser.set_defaults(func=cmd_serve)

    demo_parser = subparsers.add_parser("demo", help="Run a scripted canvas on the mock backend")
    demo_parser.add_argument("--latency", type=float, default=0.2, help="Mock backend latency in seconds")
    demo_parser.set_defaults(func=cmd_demo)

    config_parser = subparsers.add_parser("config", help="Show effective configuration")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ValueError as e:
        console.print(f"[bold red]Invalid configuration:[/bold red] {e}")
        raise SystemExit(2)

    setup_logging(args.log_level or config.server.log_level)

    if args.command is None:
        args.command = "serve"
        args.host = args.port = args.workers = None
        args.prod = False
        args.func = cmd_serve

    args.func(args, config)


if __name__ == "__main__":
    main()
