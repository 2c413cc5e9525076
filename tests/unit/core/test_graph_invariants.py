"""
Graph invariant checks over the store's rustworkx graph.

These are the canvas's structural guarantees: no dangling edges, bridge
maps that mirror the graph, the handshaking lemma and acyclicity.
"""
import unittest

import rustworkx as rx

from core.graph_invariants import (
    InvariantSeverity,
    assert_valid,
    check_acyclic,
    check_handshaking_lemma,
    validate_store,
)
from core.graph_store import GraphStore
from core.ontology import TargetSlot
from core.schemas import Edge, ImageNode, VideoNode


class TestHandshakingLemma(unittest.TestCase):

    def test_empty_graph_valid(self):
        self.assertIsNone(check_handshaking_lemma(rx.PyDiGraph()))

    def test_multigraph_valid(self):
        graph = rx.PyDiGraph(multigraph=True)
        a, b = graph.add_node("a"), graph.add_node("b")
        graph.add_edge(a, b, "start")
        graph.add_edge(a, b, "end")
        self.assertIsNone(check_handshaking_lemma(graph))


class TestAcyclic(unittest.TestCase):

    def test_cycle_detected(self):
        graph = rx.PyDiGraph()
        a, b = graph.add_node("a"), graph.add_node("b")
        graph.add_edge(a, b, None)
        graph.add_edge(b, a, None)
        violation = check_acyclic(graph)
        self.assertIsNotNone(violation)
        self.assertEqual(violation.severity, InvariantSeverity.ERROR)


class TestValidateStore(unittest.TestCase):

    def setUp(self):
        self.store = GraphStore()
        self.image = self.store.add_node(ImageNode.create(media_id="m1"))
        self.video = self.store.add_node(VideoNode.create())
        self.store.add_edge(Edge.create(self.image.id, self.video.id, TargetSlot.START_IMAGE))

    def test_healthy_store_is_valid(self):
        report = validate_store(self.store)
        self.assertTrue(report.valid)
        self.assertEqual(report.metrics["node_count"], 2)
        self.assertEqual(report.metrics["video_count"], 1)

    def test_valid_after_cascading_delete(self):
        self.store.delete_node(self.image.id)
        assert_valid(self.store)
        self.assertEqual(self.store.edge_count, 0)

    def test_reference_overflow_is_a_warning(self):
        self.store.update_node(self.video.id, {"reference_image_ids": ["a", "b", "c", "d"]})
        report = validate_store(self.store)
        self.assertTrue(report.valid)
        self.assertEqual([v.invariant for v in report.warnings], ["reference_slots"])

    def test_report_serializes(self):
        data = validate_store(self.store).to_dict()
        self.assertEqual(set(data), {"valid", "violations", "metrics"})


if __name__ == "__main__":
    unittest.main()
