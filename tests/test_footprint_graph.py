"""Tests for the footprint graph, proximity builder and graph invariants."""
import math

import numpy as np
import pytest

from footprint_topology.models.graph_extraction.edge_creation import (
    ProximityGraphBuilder, build_graph, coerce_points
)
from footprint_topology.models.graph_extraction.footprint_graph import (
    FootprintGraph, Point, clamp_confidence
)
from footprint_topology.models.graph_extraction.graph_invariants import (
    compute_invariants, edge_length_histogram, geometric_diameter
)


class TestFootprintGraph:
    """Node and edge registries."""

    def test_add_node_assigns_ids(self):
        graph = FootprintGraph(graph_id='g')
        first = graph.add_node(1.0, 2.0)
        second = graph.add_node(3.0, 4.0)
        assert first.id == 'n1'
        assert second.id == 'n2'
        assert graph.node_count == 2

    def test_undefined_coordinates_are_skipped(self):
        graph = FootprintGraph()
        assert graph.add_node(None, 1.0) is None
        assert graph.add_node(float('nan'), 1.0) is None
        assert graph.node_count == 0

    def test_confidence_is_clamped(self):
        graph = FootprintGraph()
        assert graph.add_node(0, 0, 5.0).confidence == 1.0
        assert graph.add_node(1, 0, 0.0).confidence == pytest.approx(0.1)
        assert graph.add_node(2, 0).confidence == pytest.approx(0.5)
        assert clamp_confidence(float('nan')) == pytest.approx(0.5)

    def test_add_edge_rejects_invalid_edges(self):
        graph = FootprintGraph()
        a = graph.add_node(0, 0)
        b = graph.add_node(3, 4)

        edge = graph.add_edge(a.id, b.id)
        assert edge.length == pytest.approx(5.0)
        assert graph.add_edge(b.id, a.id) is None
        assert graph.add_edge(a.id, a.id) is None
        assert graph.add_edge(a.id, 'missing') is None
        assert graph.edge_count == 1
        assert a.degree == 1 and b.degree == 1
        assert graph.has_edge(b.id, a.id)

    def test_invariants_are_memoized_until_mutation(self, square_graph):
        first = square_graph.get_invariants()
        assert square_graph.get_invariants() is first

        version = square_graph.version
        square_graph.add_node(50, 50)
        assert square_graph.version > version

        refreshed = square_graph.get_invariants()
        assert refreshed is not first
        assert refreshed.node_count == 5

    def test_update_positions_refreshes_edge_lengths(self, square_graph):
        square_graph.update_positions(square_graph.positions() * 2)
        lengths = [edge.length for edge in square_graph.edges.values()]
        assert lengths == pytest.approx([20.0] * 4)

    def test_update_positions_rejects_wrong_shape(self, square_graph):
        with pytest.raises(ValueError):
            square_graph.update_positions(np.zeros((3, 2)))

    def test_dict_roundtrip_keeps_structure(self, outsole_graph):
        restored = FootprintGraph.from_dict(outsole_graph.to_dict())
        assert restored.id == outsole_graph.id
        assert restored.node_ids() == outsole_graph.node_ids()
        assert restored.edge_count == outsole_graph.edge_count
        np.testing.assert_allclose(restored.positions(), outsole_graph.positions())

    def test_to_dict_contains_invariants(self, square_graph):
        data = square_graph.to_dict()
        assert data['invariants']['node_count'] == 4
        assert data['invariants']['degree_histogram'] == [{'degree': 2, 'count': 4}]

    def test_copy_is_independent(self, square_graph):
        clone = square_graph.copy()
        clone.add_node(100, 100)
        assert clone.id != square_graph.id
        assert square_graph.node_count == 4

    def test_save_and_load_json(self, outsole_graph, tmp_path):
        path = tmp_path / 'graph.json'
        outsole_graph.save(path, format='json')
        loaded = FootprintGraph.load(path, format='json')
        assert loaded.node_count == outsole_graph.node_count
        assert loaded.edge_count == outsole_graph.edge_count

    def test_save_and_load_pickle(self, square_graph, tmp_path):
        path = tmp_path / 'graph.pkl'
        square_graph.save(path, format='pickle')
        assert FootprintGraph.load(path, format='pickle').edge_count == 4

    def test_graphml_export(self, square_graph, tmp_path):
        path = tmp_path / 'graph.graphml'
        square_graph.save(path, format='graphml')
        assert path.exists()

    def test_unsupported_format_raises(self, square_graph, tmp_path):
        with pytest.raises(ValueError):
            square_graph.save(tmp_path / 'graph.txt', format='txt')
        with pytest.raises(ValueError):
            FootprintGraph.load(tmp_path / 'graph.txt', format='txt')

    def test_to_networkx(self, square_graph):
        G = square_graph.to_networkx()
        assert G.number_of_nodes() == 4
        assert G.number_of_edges() == 4
        assert G.nodes['n1']['x'] == pytest.approx(0.0)

    def test_visualization_data(self, square_graph):
        data = square_graph.get_visualization_data()
        assert len(data['nodes']) == 4
        assert len(data['edges']) == 4
        assert data['bounds']['width'] == pytest.approx(10.0)


class TestProximityGraphBuilder:
    """k-nearest-neighbor edge creation."""

    def test_square_becomes_cycle(self, square_graph):
        assert square_graph.node_count == 4
        assert square_graph.edge_count == 4
        assert all(node.degree == 2 for node in square_graph.nodes.values())

    def test_distance_threshold_limits_edges(self):
        graph = build_graph([(0, 0), (500, 0)], distance_threshold=150.0)
        assert graph.edge_count == 0

    def test_max_neighbors_limits_degree_contribution(self, outsole_points):
        builder = ProximityGraphBuilder(max_neighbors=2)
        graph = builder.build(outsole_points)
        assert graph.edge_count <= 2 * graph.node_count

    def test_mixed_inputs_and_skipped_points(self):
        builder = ProximityGraphBuilder()
        graph = FootprintGraph()
        stats = builder.build_from_points(graph, [
            Point(0, 0, 0.9),
            {'x': 10, 'y': 0, 'confidence': 0.8},
            (0, 10),
            {'x': None, 'y': 5},
        ])
        assert stats['nodes'] == 3
        assert stats['skipped_points'] == 1
        assert graph.nodes['n1'].confidence == pytest.approx(0.9)

    def test_single_point_has_no_edges(self):
        graph = build_graph([(5, 5)])
        assert graph.node_count == 1
        assert graph.edge_count == 0

    def test_array_with_confidence_column(self):
        points = coerce_points(np.array([[0.0, 0.0, 0.7], [1.0, 1.0, 0.2]]))
        assert points[0][2] == pytest.approx(0.7)

    def test_bad_array_shape_raises(self):
        with pytest.raises(ValueError):
            coerce_points(np.zeros(5))

    def test_short_point_tuples_are_skipped(self):
        graph = build_graph([(0, 0), (1, 1), (5,), ()])
        assert graph.node_count == 2
        assert graph.edge_count == 1

    def test_short_tuple_coerces_to_missing_coordinates(self):
        assert coerce_points([(5,)]) == [(5, None, None)]

    def test_edge_lengths_are_normalized(self, outsole_graph):
        normalized = [edge.normalized_length for edge in outsole_graph.edges.values()]
        assert np.mean(normalized) == pytest.approx(1.0)


class TestGraphInvariants:
    """Invariant computation and edge cases."""

    def test_empty_graph(self, empty_graph):
        invariants = empty_graph.get_invariants()
        assert invariants.node_count == 0
        assert invariants.avg_degree == 0.0
        assert invariants.edge_length_histogram == [0] * 8

    def test_single_node(self):
        graph = FootprintGraph()
        graph.add_node(1, 1)
        invariants = compute_invariants(graph)
        assert invariants.diameter == 0
        assert invariants.clustering_coefficient == 0.0
        assert invariants.degree_histogram == {0: 1}

    def test_square_cycle(self, square_graph):
        invariants = square_graph.get_invariants()
        assert invariants.density == pytest.approx(4 / 6)
        assert invariants.avg_degree == pytest.approx(2.0)
        assert invariants.max_degree == 2
        assert invariants.clustering_coefficient == 0.0
        assert invariants.diameter == round(math.hypot(10, 10))
        assert invariants.edge_length_histogram == [4, 0, 0, 0, 0, 0, 0, 0]

    def test_triangle_clustering(self):
        graph = build_graph([(0, 0), (10, 0), (5, 8)])
        assert graph.get_invariants().clustering_coefficient == pytest.approx(1.0)

    def test_clustering_ignores_pendant_nodes(self):
        graph = FootprintGraph()
        a, b, c, d = (graph.add_node(x, y) for x, y in [(0, 0), (10, 0), (5, 8), (5, 30)])
        graph.add_edge(a.id, b.id)
        graph.add_edge(b.id, c.id)
        graph.add_edge(a.id, c.id)
        graph.add_edge(c.id, d.id)
        # Triangle corners score 1, the hub 1/3, the pendant node is excluded
        assert graph.get_invariants().clustering_coefficient == pytest.approx(7 / 9)

    def test_edge_length_histogram_spans_range(self):
        histogram = edge_length_histogram(np.array([0.0, 1.0, 2.0, 8.0]), bins=4)
        assert histogram == [2, 1, 0, 1]
        assert sum(histogram) == 4

    def test_geometric_diameter(self):
        assert geometric_diameter(np.array([[0, 0], [3, 4], [1, 1]])) == 5

    def test_rotation_does_not_change_invariants(self, outsole_graph, rotated_graph):
        original = outsole_graph.get_invariants()
        rotated = rotated_graph.get_invariants()
        assert rotated.node_count == original.node_count
        assert rotated.edge_count == original.edge_count
        assert rotated.avg_degree == pytest.approx(original.avg_degree)
        assert rotated.clustering_coefficient == pytest.approx(original.clustering_coefficient)
        assert rotated.avg_edge_length == pytest.approx(original.avg_edge_length)
        assert abs(rotated.diameter - original.diameter) <= 1

    def test_node_distribution_is_normalized(self, outsole_graph):
        distribution = outsole_graph.get_invariants().normalized_node_distribution
        values = np.array([[p['nx'], p['ny']] for p in distribution])
        assert np.all(np.abs(values) <= 0.5 + 1e-9)
