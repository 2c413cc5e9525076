"""
MutationLogger: the canvas flight recorder.
"""
import pytest

from core.ontology import TargetSlot, VideoStatus
from core.schemas import Edge, ImageNode, VideoNode
from infrastructure.event_bus import publish_alert
from infrastructure.logger import EventBuffer, FileLogger, LoggerConfig, MutationLogger
from viz.core import MutationEvent, MutationType


@pytest.fixture
def mutation_log(store):
    log = MutationLogger()
    log.attach(store)
    yield log
    log.close()


class TestRecording:

    def test_status_timeline(self, store, mutation_log):
        video = store.add_node(VideoNode.create(prompt_text="x"))
        for status in (VideoStatus.QUEUED, VideoStatus.GENERATING, VideoStatus.READY):
            store.update_node(video.id, {"status": status})
        store.update_node(video.id, {"prompt_text": "y"})
        assert mutation_log.get_status_timeline(video.id) == ["queued", "generating", "ready"]

    def test_edges_are_indexed_by_both_ends(self, store, mutation_log):
        image = store.add_node(ImageNode.create())
        video = store.add_node(VideoNode.create())
        store.add_edge(Edge.create(image.id, video.id, TargetSlot.START_IMAGE))
        edge_events = mutation_log.get_events_by_type(MutationType.EDGE_CREATED.value)
        assert len(edge_events) == 1
        assert edge_events[0] in mutation_log.get_events_for_node(image.id)
        assert edge_events[0] in mutation_log.get_events_for_node(video.id)

    def test_alerts_are_recorded(self, store, mutation_log):
        publish_alert(store.events, "no media id", node_id="video-7")
        (alert,) = mutation_log.get_events_by_type(MutationType.ALERT.value)
        assert alert.message == "no media id"
        assert alert.source == "dispatcher"

    def test_sequences_increase(self, store, mutation_log):
        store.add_node(VideoNode.create())
        store.add_node(VideoNode.create())
        sequences = [e.sequence for e in mutation_log.get_recent_events()]
        assert sequences == sorted(sequences) and len(set(sequences)) == 2

    def test_detach(self, store):
        log = MutationLogger()
        detach = log.attach(store)
        detach()
        store.add_node(VideoNode.create())
        assert len(log) == 0

    def test_subscribers(self, store, mutation_log):
        seen = []
        mutation_log.subscribe(seen.append)
        store.add_node(VideoNode.create())
        mutation_log.unsubscribe(seen.append)
        store.add_node(VideoNode.create())
        assert len(seen) == 1


def test_ring_buffer_drops_oldest():
    buffer = EventBuffer(max_size=2)
    for i in range(3):
        buffer.append(MutationEvent(timestamp=str(i), sequence=i, mutation_type="NODE_CREATED"))
    assert [e.sequence for e in buffer.get_last(5)] == [1, 2]
    assert [e.sequence for e in buffer.get_since("2")] == [2]
    assert buffer.get_last(0) == []


def test_file_mirror(tmp_path, store):
    log = MutationLogger(LoggerConfig(enable_file_log=True, log_path=tmp_path))
    log.attach(store)
    store.add_node(VideoNode.create())
    log.close()

    (log_file,) = tmp_path.glob("mutations_*.jsonl")
    date = log_file.stem.split("_", 1)[1]
    with open(log_file, "a", encoding="utf-8") as f:
        f.write("{not json\n")

    events = FileLogger(tmp_path).read_log(date)
    assert [e.mutation_type for e in events] == ["NODE_CREATED"]
