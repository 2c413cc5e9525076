"""
CANVASFLOW GRAPH INVARIANTS - Structural Checks for the Canvas

The Graph Store enforces most invariants at write time. This module
re-checks them over a whole store, for tests, for the /graph/validate
endpoint and after bulk loads.

Invariants Implemented:
1. No Dangling Edges: every edge endpoint references an existing node
2. Bridge Consistency: id maps agree with the rustworkx graph
3. Handshaking Lemma: sum(in_degree) == sum(out_degree) == |E|
4. DAG Acyclicity: generation dependencies never loop
5. Video Fields: status is a known VideoStatus, generation_count >= 1,
   reference slots fit the slot count
"""
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from enum import Enum

import rustworkx as rx

from core.ontology import MAX_REFERENCE_IMAGES, VideoStatus
from core.schemas import VideoNode


# =============================================================================
# INVARIANT RESULTS
# =============================================================================

class InvariantSeverity(Enum):
    """Severity levels for invariant violations."""
    ERROR = "error"      # Must be fixed before proceeding
    WARNING = "warning"  # Should be investigated
    INFO = "info"        # For metrics/diagnostics


@dataclass
class InvariantViolation:
    """A specific invariant violation."""
    invariant: str
    severity: InvariantSeverity
    message: str
    nodes_involved: List[str] = field(default_factory=list)
    edges_involved: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invariant": self.invariant,
            "severity": self.severity.value,
            "message": self.message,
            "nodes_involved": self.nodes_involved,
            "edges_involved": self.edges_involved,
        }


@dataclass
class InvariantReport:
    """Complete invariant validation report."""
    valid: bool
    violations: List[InvariantViolation]
    metrics: Dict[str, Any]

    @property
    def errors(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.ERROR]

    @property
    def warnings(self) -> List[InvariantViolation]:
        return [v for v in self.violations if v.severity == InvariantSeverity.WARNING]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "violations": [v.to_dict() for v in self.violations],
            "metrics": self.metrics,
        }


# =============================================================================
# CHECKS
# =============================================================================

def check_no_dangling_edges(store) -> Optional[InvariantViolation]:
    dangling = [
        edge.id for edge in store.edges()
        if not store.has_node(edge.source_id) or not store.has_node(edge.target_id)
    ]
    if not dangling:
        return None
    return InvariantViolation(
        invariant="no_dangling_edges",
        severity=InvariantSeverity.ERROR,
        message=f"{len(dangling)} edge(s) reference missing nodes",
        edges_involved=dangling,
    )


def check_bridge_consistency(store) -> Optional[InvariantViolation]:
    """The id <-> index maps must mirror the rustworkx graph exactly."""
    graph, node_map, inv_map, edge_map = store._bridge_state()

    if len(node_map) != graph.num_nodes() or len(inv_map) != graph.num_nodes():
        return InvariantViolation(
            invariant="bridge_consistency",
            severity=InvariantSeverity.ERROR,
            message=f"node maps ({len(node_map)}/{len(inv_map)}) != |V|={graph.num_nodes()}",
        )
    mismatched = [
        node_id for node_id, idx in node_map.items()
        if inv_map.get(idx) != node_id or graph[idx].id != node_id
    ]
    if mismatched:
        return InvariantViolation(
            invariant="bridge_consistency",
            severity=InvariantSeverity.ERROR,
            message="node id maps disagree with graph payloads",
            nodes_involved=mismatched,
        )
    if len(edge_map) != graph.num_edges():
        return InvariantViolation(
            invariant="bridge_consistency",
            severity=InvariantSeverity.ERROR,
            message=f"edge map size {len(edge_map)} != |E|={graph.num_edges()}",
        )
    return None


def check_handshaking_lemma(graph: rx.PyDiGraph) -> Optional[InvariantViolation]:
    """
    Handshaking Lemma: sum(in_degree) == sum(out_degree) == |E|

    Catches corrupted edge state after cascading deletes.
    """
    num_edges = graph.num_edges()
    node_indices = list(graph.node_indices())
    total_in = sum(graph.in_degree(idx) for idx in node_indices)
    total_out = sum(graph.out_degree(idx) for idx in node_indices)

    if total_in != total_out:
        return InvariantViolation(
            invariant="handshaking_lemma",
            severity=InvariantSeverity.ERROR,
            message=f"sum(in_degree)={total_in} != sum(out_degree)={total_out}",
        )
    if total_in != num_edges:
        return InvariantViolation(
            invariant="handshaking_lemma",
            severity=InvariantSeverity.ERROR,
            message=f"sum(degrees)={total_in} != |E|={num_edges}",
        )
    return None


def check_acyclic(graph: rx.PyDiGraph) -> Optional[InvariantViolation]:
    if rx.is_directed_acyclic_graph(graph):
        return None
    return InvariantViolation(
        invariant="dag_acyclicity",
        severity=InvariantSeverity.ERROR,
        message="Cycle detected in generation dependencies",
    )


def check_video_fields(store) -> List[InvariantViolation]:
    violations = []
    for node in store.nodes():
        if not isinstance(node, VideoNode):
            continue
        if not isinstance(node.status, VideoStatus):
            violations.append(InvariantViolation(
                invariant="video_status",
                severity=InvariantSeverity.ERROR,
                message=f"unknown status {node.status!r}",
                nodes_involved=[node.id],
            ))
        if node.generation_count < 1:
            violations.append(InvariantViolation(
                invariant="generation_count",
                severity=InvariantSeverity.ERROR,
                message=f"generation_count={node.generation_count} < 1",
                nodes_involved=[node.id],
            ))
        if len(node.reference_image_ids) > MAX_REFERENCE_IMAGES:
            violations.append(InvariantViolation(
                invariant="reference_slots",
                severity=InvariantSeverity.WARNING,
                message=f"{len(node.reference_image_ids)} reference slots > {MAX_REFERENCE_IMAGES}",
                nodes_involved=[node.id],
            ))
        if node.progress is not None and not 0 <= node.progress <= 100:
            violations.append(InvariantViolation(
                invariant="progress_range",
                severity=InvariantSeverity.WARNING,
                message=f"progress={node.progress} outside 0-100",
                nodes_involved=[node.id],
            ))
    return violations


# =============================================================================
# ENTRY POINT
# =============================================================================

def validate_store(store) -> InvariantReport:
    """
    Run every invariant over a GraphStore.

    Returns:
        InvariantReport; valid is False if any ERROR-level violation exists
    """
    graph, _, _, _ = store._bridge_state()
    violations: List[InvariantViolation] = []

    for check in (
        check_no_dangling_edges(store),
        check_bridge_consistency(store),
        check_handshaking_lemma(graph),
        check_acyclic(graph),
    ):
        if check is not None:
            violations.append(check)
    violations.extend(check_video_fields(store))

    metrics = {
        "node_count": store.node_count,
        "edge_count": store.edge_count,
        "video_count": sum(1 for n in store.nodes() if isinstance(n, VideoNode)),
    }
    valid = not any(v.severity == InvariantSeverity.ERROR for v in violations)
    return InvariantReport(valid=valid, violations=violations, metrics=metrics)


def assert_valid(store) -> None:
    """Raise AssertionError with every error-level violation (test helper)."""
    report = validate_store(store)
    if not report.valid:
        details = "; ".join(f"{v.invariant}: {v.message}" for v in report.errors)
        raise AssertionError(f"Graph invariants violated: {details}")
