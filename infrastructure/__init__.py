"""
CANVASFLOW INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- event_bus: per-store publish/subscribe for graph events
- config: typed configuration from TOML + environment
- logger: mutation ring buffer with optional NDJSON mirror
"""

from infrastructure.event_bus import EventBus, EventType, GraphEvent, publish_alert
from infrastructure.config import CanvasConfig, load_config

__all__ = [
    "EventBus",
    "EventType",
    "GraphEvent",
    "publish_alert",
    "CanvasConfig",
    "load_config",
]
