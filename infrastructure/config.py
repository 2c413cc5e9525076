"""
CANVASFLOW CONFIG - Typed Configuration Loading

Configuration is read once from config/canvasflow.toml (tomllib), converted
into typed msgspec Structs, then overlaid with CANVASFLOW_* environment
variables. Components receive the resulting CanvasConfig explicitly; nothing
reads the TOML file on its own.

Usage:
    from infrastructure.config import load_config

    config = load_config()                      # default file + env
    config = load_config(Path("custom.toml"))   # explicit file
    config.orchestration.result_timeout_seconds

Environment overrides:
    CANVASFLOW_CONFIG           path of the TOML file
    CANVASFLOW_RESULT_TIMEOUT   orchestration.result_timeout_seconds
    CANVASFLOW_VISION_MODEL     vision.model
    CANVASFLOW_AUTO_GENERATE    orchestration.auto_generate_on_connect (1/true/yes)
    CANVASFLOW_LOG_LEVEL        server.log_level
"""
import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import msgspec

from core.ontology import VideoModel

logger = logging.getLogger("canvasflow.config")

CONFIG_ENV_VAR = "CANVASFLOW_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "canvasflow.toml"


# =============================================================================
# CONFIG SECTIONS
# =============================================================================

class OrchestrationConfig(msgspec.Struct, kw_only=True, frozen=True, forbid_unknown_fields=True):
    """Timing, layout and limits for the generation orchestration core."""
    fanout_gap: float = 50.0
    stagger_seconds: float = 0.5
    caption_progress: int = 5
    captioned_progress: int = 15
    initial_progress: int = 20
    ticker_interval: float = 1.0
    ticker_step: int = 3
    ticker_ceiling: int = 95
    result_timeout_seconds: float = 900.0   # 0 disables the deadline
    max_generation_count: int = 4
    default_video_model: VideoModel = VideoModel.VEO_3_1
    auto_generate_on_connect: bool = False
    placeholder_spacing: float = 20.0

    def __post_init__(self):
        if not 0 < self.ticker_ceiling < 100:
            raise ValueError("ticker_ceiling must be between 1 and 99")
        if self.max_generation_count < 1:
            raise ValueError("max_generation_count must be >= 1")
        if self.result_timeout_seconds < 0:
            raise ValueError("result_timeout_seconds must be >= 0")


class VisionConfig(msgspec.Struct, kw_only=True, frozen=True, forbid_unknown_fields=True):
    """Vision model used to caption image inputs into video prompts."""
    model: str = "openai/qwen-vl-max"
    api_base: Optional[str] = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    api_key_env: str = "DASHSCOPE_API_KEY"
    timeout_seconds: float = 60.0


class ServerConfig(msgspec.Struct, kw_only=True, frozen=True, forbid_unknown_fields=True):
    host: str = "127.0.0.1"
    port: int = 8000
    workers: int = 1
    log_level: str = "INFO"
    cors_origins: list[str] = msgspec.field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"]
    )
    mock_latency: float = 1.5


class CanvasConfig(msgspec.Struct, kw_only=True, frozen=True):
    orchestration: OrchestrationConfig = msgspec.field(default_factory=OrchestrationConfig)
    vision: VisionConfig = msgspec.field(default_factory=VisionConfig)
    server: ServerConfig = msgspec.field(default_factory=ServerConfig)

    def to_dict(self) -> Dict[str, Any]:
        return msgspec.to_builtins(self)


# =============================================================================
# LOADING
# =============================================================================

def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read the raw TOML mapping.

    A missing file yields {} (defaults apply). A malformed file raises.
    """
    config_path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        logger.warning(f"Config file {config_path} not found, using defaults")
        return {}
    with open(config_path, "rb") as f:
        return tomllib.load(f)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    overrides: Dict[str, Dict[str, Any]] = {"orchestration": {}, "vision": {}, "server": {}}
    if "CANVASFLOW_RESULT_TIMEOUT" in environ:
        overrides["orchestration"]["result_timeout_seconds"] = float(environ["CANVASFLOW_RESULT_TIMEOUT"])
    if "CANVASFLOW_AUTO_GENERATE" in environ:
        overrides["orchestration"]["auto_generate_on_connect"] = (
            environ["CANVASFLOW_AUTO_GENERATE"].strip().lower() in ("1", "true", "yes")
        )
    if "CANVASFLOW_VISION_MODEL" in environ:
        overrides["vision"]["model"] = environ["CANVASFLOW_VISION_MODEL"]
    if "CANVASFLOW_LOG_LEVEL" in environ:
        overrides["server"]["log_level"] = environ["CANVASFLOW_LOG_LEVEL"].upper()
    return overrides


def build_config(raw: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> CanvasConfig:
    """
    Merge a raw mapping with environment overrides into a CanvasConfig.

    Raises:
        ValueError: On unknown keys or ill-typed values
    """
    merged: Dict[str, Dict[str, Any]] = {
        section: dict(raw.get(section, {})) for section in ("orchestration", "vision", "server")
    }
    unknown = set(raw) - set(merged)
    if unknown:
        raise ValueError(f"Unknown config section(s): {sorted(unknown)}")

    for section, values in _env_overrides(os.environ if environ is None else environ).items():
        merged[section].update(values)

    try:
        return msgspec.convert(merged, type=CanvasConfig, strict=False)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> CanvasConfig:
    """Load configuration from TOML plus environment."""
    return build_config(load_toml_config(path), environ)
