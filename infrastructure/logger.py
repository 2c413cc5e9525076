"""
CANVASFLOW MUTATION LOGGER - The Canvas Flight Recorder

Records every Graph Store mutation as a MutationEvent so the recent
history of a node (queued -> generating -> ready, edges animating, ...) can
be inspected from the API and replayed from disk.

Architecture:
- MutationLogger: Core logging interface, fed by a store subscription
- FileLogger: Optional NDJSON mirror (msgspec-encoded, one file per day)
- EventBuffer: In-memory ring buffer for recent events

Usage:
    mutation_log = MutationLogger()
    detach = mutation_log.attach(store)

    store.update_node("video-1", {"status": "queued"})
    mutation_log.get_events_for_node("video-1")
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

import msgspec

from core.schemas import VideoNode
from infrastructure.event_bus import EventType, GraphEvent
from viz.core import MutationEvent, MutationType

logger = logging.getLogger("canvasflow.mutation_log")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LoggerConfig:
    """Configuration for the mutation logger."""
    enable_file_log: bool = False       # Mirror events to NDJSON files
    log_path: Optional[Path] = None     # Directory for log files
    buffer_size: int = 10000            # In-memory buffer size

    def __post_init__(self):
        if self.log_path is None:
            self.log_path = Path("./workspace/logs")


# =============================================================================
# EVENT BUFFER
# =============================================================================

class EventBuffer:
    """
    Thread-safe ring buffer for recent mutation events.

    Provides O(1) append and O(n) query for filtering.
    """

    def __init__(self, max_size: int = 10000):
        self._buffer: deque[MutationEvent] = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._sequence = 0

    def append(self, event: MutationEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def get_since(self, timestamp: str) -> List[MutationEvent]:
        """Get all events since a timestamp."""
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= timestamp]

    def get_last(self, n: int) -> List[MutationEvent]:
        """Get the last n events."""
        with self._lock:
            items = list(self._buffer)
            return items[-n:] if n > 0 else []

    def get_by_node(self, node_id: str) -> List[MutationEvent]:
        with self._lock:
            return [
                e for e in self._buffer
                if node_id in (e.node_id, e.source_id, e.target_id)
            ]

    def get_by_type(self, mutation_type: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.mutation_type == mutation_type]

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# =============================================================================
# FILE LOGGER
# =============================================================================

class FileLogger:
    """
    File-based event logger.

    Writes events as newline-delimited JSON, one file per UTC day.
    """

    def __init__(self, log_path: Path):
        self._log_path = log_path
        self._current_file: Optional[TextIO] = None
        self._current_date: Optional[str] = None
        self._lock = threading.Lock()
        self._encoder = msgspec.json.Encoder()

        log_path.mkdir(parents=True, exist_ok=True)

    def write(self, event: MutationEvent) -> None:
        with self._lock:
            self._ensure_file()
            line = self._encoder.encode(event).decode("utf-8") + "\n"
            self._current_file.write(line)
            self._current_file.flush()

    def _ensure_file(self) -> None:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._current_date != today:
            if self._current_file:
                self._current_file.close()
            filepath = self._log_path / f"mutations_{today}.jsonl"
            self._current_file = open(filepath, "a", encoding="utf-8")
            self._current_date = today

    def close(self) -> None:
        with self._lock:
            if self._current_file:
                self._current_file.close()
                self._current_file = None

    def read_log(self, date: str) -> List[MutationEvent]:
        """Read events from a specific date's log. Corrupt lines are skipped."""
        filepath = self._log_path / f"mutations_{date}.jsonl"
        if not filepath.exists():
            return []

        events = []
        decoder = msgspec.json.Decoder(type=MutationEvent)
        with open(filepath, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(decoder.decode(line.encode()))
                except msgspec.DecodeError as e:
                    logger.warning(f"Skipping corrupt line {line_no} in {filepath}: {e}")
        return events


# =============================================================================
# MUTATION LOGGER (Main Interface)
# =============================================================================

class MutationLogger:
    """
    Main logging interface for canvas mutations.

    Events go to:
    - In-memory buffer (always)
    - NDJSON files (configurable)
    - Subscribers (e.g. tests, debug views)
    """

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or LoggerConfig()
        self._buffer = EventBuffer(self.config.buffer_size)
        self._file_logger: Optional[FileLogger] = None
        if self.config.enable_file_log and self.config.log_path:
            self._file_logger = FileLogger(self.config.log_path)
        self._subscribers: List[Callable[[MutationEvent], None]] = []

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _emit(self, event: MutationEvent) -> None:
        self._buffer.append(event)

        if self._file_logger:
            try:
                self._file_logger.write(event)
            except OSError as e:
                logger.error(f"Mutation log write failed: {e}")

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Mutation log subscriber error: {e}", exc_info=True)

    # =========================================================================
    # STORE INTEGRATION
    # =========================================================================

    def attach(self, store) -> Callable[[], None]:
        """
        Record every mutation of `store`.

        Returns:
            A callable that detaches the logger
        """
        return store.events.subscribe_all(self.record)

    def record(self, event: GraphEvent) -> List[MutationEvent]:
        """Convert one GraphEvent into mutation events and log them."""
        events = self._translate(event)
        for mutation in events:
            self._emit(mutation)
        return events

    def _translate(self, event: GraphEvent) -> List[MutationEvent]:
        payload: Dict[str, Any] = event.payload
        base = {"timestamp": self._now(), "source": event.source}

        if event.type in (EventType.NODE_CREATED, EventType.NODE_UPDATED, EventType.NODE_DELETED):
            mutation_type = {
                EventType.NODE_CREATED: MutationType.NODE_CREATED,
                EventType.NODE_UPDATED: MutationType.NODE_UPDATED,
                EventType.NODE_DELETED: MutationType.NODE_DELETED,
            }[event.type]
            events = [MutationEvent(
                sequence=self._buffer.next_sequence(),
                mutation_type=mutation_type.value,
                node_id=payload.get("node_id"),
                node_kind=payload.get("kind"),
                changed=list(payload.get("changed", [])),
                **base,
            )]
            previous, node = payload.get("previous"), payload.get("node")
            if (
                event.type == EventType.NODE_UPDATED
                and isinstance(previous, VideoNode)
                and isinstance(node, VideoNode)
                and previous.status != node.status
            ):
                events.append(MutationEvent(
                    sequence=self._buffer.next_sequence(),
                    mutation_type=MutationType.STATUS_CHANGED.value,
                    node_id=node.id,
                    node_kind=node.node_kind.value,
                    old_status=previous.status.value,
                    new_status=node.status.value,
                    **base,
                ))
            return events

        if event.type in (EventType.EDGE_CREATED, EventType.EDGE_UPDATED, EventType.EDGE_DELETED):
            mutation_type = {
                EventType.EDGE_CREATED: MutationType.EDGE_CREATED,
                EventType.EDGE_UPDATED: MutationType.EDGE_UPDATED,
                EventType.EDGE_DELETED: MutationType.EDGE_DELETED,
            }[event.type]
            edge = payload.get("edge")
            return [MutationEvent(
                sequence=self._buffer.next_sequence(),
                mutation_type=mutation_type.value,
                edge_id=payload.get("edge_id"),
                source_id=edge.source_id if edge else None,
                target_id=edge.target_id if edge else None,
                **base,
            )]

        if event.type == EventType.ALERT:
            return [MutationEvent(
                sequence=self._buffer.next_sequence(),
                mutation_type=MutationType.ALERT.value,
                node_id=payload.get("node_id"),
                message=payload.get("message"),
                **base,
            )]

        return [MutationEvent(
            sequence=self._buffer.next_sequence(),
            mutation_type=MutationType.GRAPH_LOADED.value,
            **base,
        )]

    # =========================================================================
    # QUERY METHODS
    # =========================================================================

    def get_recent_events(self, n: int = 100) -> List[MutationEvent]:
        return self._buffer.get_last(n)

    def get_events_since(self, timestamp: str) -> List[MutationEvent]:
        return self._buffer.get_since(timestamp)

    def get_events_for_node(self, node_id: str) -> List[MutationEvent]:
        return self._buffer.get_by_node(node_id)

    def get_events_by_type(self, mutation_type: str) -> List[MutationEvent]:
        return self._buffer.get_by_type(mutation_type)

    def get_status_timeline(self, node_id: str) -> List[str]:
        """Status sequence a video went through, e.g. ["queued", "generating", "ready"]."""
        return [
            e.new_status for e in self._buffer.get_by_node(node_id)
            if e.mutation_type == MutationType.STATUS_CHANGED.value
        ]

    def __len__(self) -> int:
        return len(self._buffer)

    # =========================================================================
    # SUBSCRIPTION
    # =========================================================================

    def subscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def close(self) -> None:
        if self._file_logger:
            self._file_logger.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
