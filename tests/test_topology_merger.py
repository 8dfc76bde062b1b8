"""Tests for structural merging and the geometric fallback."""
import numpy as np
import pytest

from footprint_topology.models.graph_extraction.edge_creation import build_graph
from footprint_topology.models.graph_merging.topology_merger import (
    FallbackMerge, MergeFailure, MergeMethod, StructuralMerge, TopologyMerger
)
from footprint_topology.models.graph_merging.transform_estimation import Transformation, TransformKind


class TestStructuralMerge:
    """Merging two observations of the same outsole."""

    def test_rotated_outsole_scenario(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph)
        assert isinstance(outcome, StructuralMerge)
        assert outcome.method == MergeMethod.TOPOLOGY
        assert outcome.success
        assert len(outcome.correspondences) >= 35
        assert outcome.structural_similarity >= 0.85
        assert outcome.graph.node_count <= 40

        transform = outcome.transformation
        assert transform.kind == TransformKind.RIGID
        assert abs(transform.rotation - 90.0) <= 10.0
        assert transform.dx == pytest.approx(300.0, abs=5.0)
        assert transform.dy == pytest.approx(100.0, abs=5.0)
        assert transform.scale == pytest.approx(1.0, abs=0.05)

    def test_fused_graph_lives_in_first_frame(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph)
        fused = outcome.fused
        assert fused.observed_positions.shape == (fused.graph.node_count, 2)
        np.testing.assert_allclose(np.sort(fused.graph.positions(), axis=0),
                                   np.sort(outsole_graph.positions(), axis=0), atol=1e-6)

    def test_merged_nodes_keep_provenance(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph)
        merged = [node for node in outcome.graph.nodes.values() if node.origin == 'merged']
        assert len(merged) == len(outcome.correspondences)
        assert all(len(node.source_ids) == 2 for node in merged)
        assert all(node.match_score is not None for node in merged)
        assert outcome.fused.nodes_by_origin()['merged'] == len(merged)

    def test_metrics(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph)
        metrics = outcome.metrics
        assert metrics['nodes_before'] == 80
        assert metrics['node_reduction'] == 80 - outcome.graph.node_count
        assert metrics['efficiency'] >= 45.0
        assert metrics['transform_residual'] == pytest.approx(0.0, abs=1e-6)

    def test_known_transformation_is_used(self, outsole_graph, rotated_graph):
        known = Transformation(kind=TransformKind.RIGID, dx=300.0, dy=100.0, rotation=90.0, confidence=1.0)
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph, transformation=known)
        assert outcome.transformation is known

    def test_fused_confidence_is_boosted_and_clamped(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph)
        confidences = outcome.graph.confidences()
        assert confidences.max() <= 1.0
        assert confidences.min() >= 0.1


class TestFallback:
    """Degraded merge paths."""

    def test_small_disjoint_clouds_use_geometric_fallback(self, tiny_disjoint_graphs):
        graph_a, graph_b = tiny_disjoint_graphs
        outcome = TopologyMerger().merge_graphs(graph_a, graph_b)
        assert isinstance(outcome, FallbackMerge)
        assert outcome.method == MergeMethod.FALLBACK
        assert outcome.correspondence_count < 5
        assert outcome.graph.node_count == 8
        assert outcome.point_merge.stats['merge_distance'] == pytest.approx(15.0)

    def test_fallback_uses_known_transformation(self):
        points = [(0, 0), (12, 0), (0, 9), (14, 11)]
        graph_a = build_graph(points)
        graph_b = build_graph([(x + 500, y) for x, y in points])
        shift = Transformation(kind=TransformKind.TRANSLATION, dx=500.0, dy=0.0)
        outcome = TopologyMerger().merge_graphs(graph_a, graph_b, transformation=shift)
        assert isinstance(outcome, FallbackMerge)
        assert outcome.graph.node_count == 4

    def test_too_few_nodes_for_signatures(self):
        graph_a = build_graph([(0, 0), (10, 0)])
        graph_b = build_graph([(0, 0), (10, 0), (5, 5)])
        outcome = TopologyMerger().merge_graphs(graph_a, graph_b)
        assert isinstance(outcome, FallbackMerge)
        assert 'Too few nodes' in outcome.reason

    def test_low_similarity_falls_back(self, outsole_graph, other_outsole_graph):
        merger = TopologyMerger({'structural_similarity_threshold': 1.01})
        outcome = merger.merge_graphs(outsole_graph, other_outsole_graph)
        assert isinstance(outcome, FallbackMerge)
        assert outcome.success

    def test_merge_failure_without_points(self, empty_graph):
        lonely = build_graph([(1, 1)])
        outcome = TopologyMerger().merge_graphs(empty_graph, lonely)
        assert isinstance(outcome, MergeFailure)
        assert outcome.method == MergeMethod.FAILED
        assert not outcome.success
        assert outcome.graph is None

    def test_internal_error_degrades_to_fallback(self, outsole_graph, rotated_graph, monkeypatch):
        merger = TopologyMerger()

        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(merger.correspondence_finder, 'find_correspondence', broken)
        outcome = merger.merge_graphs(outsole_graph, rotated_graph)
        assert isinstance(outcome, FallbackMerge)
        assert 'Internal error' in outcome.reason

    def test_random_clouds_never_raise(self, random_cloud_graphs):
        graph_a, graph_b = random_cloud_graphs
        outcome = TopologyMerger().merge_graphs(graph_a, graph_b)
        assert isinstance(outcome, (StructuralMerge, FallbackMerge))
        assert outcome.graph.node_count <= graph_a.node_count + graph_b.node_count
        assert outcome.fused.observed_positions.shape == (outcome.graph.node_count, 2)


class TestGeometricConsistency:
    """Correspondences must agree with the estimated transform."""

    def test_disjoint_random_clouds_fall_back(self):
        rng = np.random.default_rng(5)
        graph_a = build_graph(rng.uniform(0, 500, size=(40, 2)), graph_id='cloud_a')
        graph_b = build_graph(rng.uniform(2000, 2500, size=(40, 2)), graph_id='cloud_b')
        outcome = TopologyMerger().merge_graphs(graph_a, graph_b)
        assert isinstance(outcome, FallbackMerge)
        assert outcome.method == MergeMethod.FALLBACK
        assert outcome.correspondence_count < 5

    def test_unrelated_outsoles_do_not_merge_structurally(self, outsole_graph, other_outsole_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, other_outsole_graph)
        assert isinstance(outcome, FallbackMerge)
        assert outcome.success

    def test_wrong_known_transformation_falls_back(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph,
                                                transformation=Transformation.identity())
        assert isinstance(outcome, FallbackMerge)
        assert 'inliers' in outcome.reason
        assert outcome.graph.node_count == 80

    def test_consistent_merge_reports_inlier_ratio(self, outsole_graph, rotated_graph):
        outcome = TopologyMerger().merge_graphs(outsole_graph, rotated_graph)
        assert outcome.metrics['inlier_ratio'] == pytest.approx(1.0)
        assert 'rejected_outliers' not in outcome.correspondences.metadata


class TestFusedIdentity:
    """Fused graphs are named after their sources."""

    def test_structural_merge_id(self, outsole_graph, rotated_graph):
        merger = TopologyMerger()
        first = merger.merge_graphs(outsole_graph, rotated_graph)
        second = merger.merge_graphs(outsole_graph, rotated_graph)
        assert first.graph.id == 'outsole_a+outsole_b'
        assert second.graph.id == first.graph.id

    def test_fallback_id(self, tiny_disjoint_graphs):
        outcome = TopologyMerger().merge_graphs(*tiny_disjoint_graphs)
        assert outcome.graph.id == 'tiny_a+tiny_b'
