"""Tests for the topology validator."""
import numpy as np
import pytest

from footprint_topology.models.graph_extraction.edge_creation import build_graph
from footprint_topology.models.graph_merging.transform_estimation import Transformation, TransformKind
from footprint_topology.utils.topology_validation import TopologyValidator, angle_change


CHECK_NAMES = {'distance_relations', 'angle_preservation', 'connectivity', 'scale_uniformity', 'local_structure'}


class TestTopologyValidator:
    """Geometry preservation checks."""

    def test_identity_passes(self, outsole_graph):
        positions = outsole_graph.positions()
        result = TopologyValidator().validate_transformation(positions, positions.copy(), outsole_graph)
        assert result.passed
        assert result.score >= 0.99
        assert set(result.checks) == CHECK_NAMES
        assert all(check.passed for check in result.checks.values())
        assert result.summary.startswith("Excellent")
        assert result.failed_checks() == []

    def test_five_fold_stretch_breaks_connectivity(self, outsole_graph):
        positions = outsole_graph.positions()
        result = TopologyValidator().validate_transformation(positions, positions * 5, outsole_graph)
        assert not result.passed
        assert not result.checks['connectivity'].passed
        assert 'connectivity' in result.failed_checks()
        assert result.checks['connectivity'].metrics['broken_edges'] == outsole_graph.edge_count

    def test_single_stretched_edge(self, path_graph):
        before = path_graph.positions()
        after = before.copy()
        after[3] = [70.0, 0.0]
        check = TopologyValidator().validate_transformation(before, after, path_graph).checks['connectivity']
        assert not check.passed
        assert check.score == pytest.approx(2 / 3)
        assert check.metrics['components_after'] == 2

    def test_expected_scale_from_transformation(self, outsole_graph):
        positions = outsole_graph.positions()
        validator = TopologyValidator()
        doubled = Transformation(kind=TransformKind.RIGID, scale=2.0)

        with_scale = validator.validate_transformation(positions, positions * 2, outsole_graph, doubled)
        assert with_scale.checks['distance_relations'].passed

        without_scale = validator.validate_transformation(positions, positions * 2, outsole_graph)
        assert not without_scale.checks['distance_relations'].passed
        assert not without_scale.passed

    def test_rotation_preserves_angles_and_distances(self, outsole_graph):
        rotation = Transformation(kind=TransformKind.RIGID, rotation=30.0, dx=50.0, dy=50.0)
        positions = outsole_graph.positions()
        result = TopologyValidator().validate_transformation(
            positions, rotation.apply(positions), outsole_graph, rotation
        )
        assert result.checks['distance_relations'].passed
        assert result.checks['angle_preservation'].passed
        assert result.checks['connectivity'].passed
        assert result.checks['local_structure'].passed

    def test_anisotropic_scaling_is_detected(self, outsole_graph):
        positions = outsole_graph.positions()
        squashed = positions * np.array([1.0, 0.5])
        check = TopologyValidator().validate_transformation(positions, squashed, outsole_graph) \
            .checks['scale_uniformity']
        assert not check.passed
        assert check.metrics['anisotropic_edges'] > 0

    def test_insufficient_data(self):
        graph = build_graph([(0, 0), (10, 0)])
        positions = graph.positions()
        result = TopologyValidator().validate_transformation(positions, positions, graph)
        assert result.insufficient_data
        assert not result.passed
        assert result.score == 0.0
        assert result.checks == {}

    def test_shape_mismatch_raises(self, outsole_graph):
        with pytest.raises(ValueError):
            TopologyValidator().validate_transformation(np.zeros((3, 2)), np.zeros((3, 2)), outsole_graph)

    def test_validate_graphs(self, outsole_graph):
        result = TopologyValidator().validate_graphs(outsole_graph, outsole_graph.copy())
        assert result.passed

    def test_rigidity(self, outsole_graph):
        validator = TopologyValidator()
        positions = outsole_graph.positions()
        assert validator.is_rigid_transformation(
            validator.validate_transformation(positions, positions, outsole_graph)
        )

    def test_stats(self, outsole_graph):
        validator = TopologyValidator()
        positions = outsole_graph.positions()
        validator.validate_transformation(positions, positions, outsole_graph)
        validator.validate_transformation(positions, positions * 5, outsole_graph)
        stats = validator.get_stats()
        assert stats['total_validations'] == 2
        assert stats['pass_rate'] == pytest.approx(0.5)

    def test_to_dict(self, outsole_graph):
        positions = outsole_graph.positions()
        data = TopologyValidator().validate_transformation(positions, positions, outsole_graph).to_dict()
        assert data['passed']
        assert set(data['checks']) == CHECK_NAMES


class TestAngleChange:
    """Signed angle differences."""

    def test_wraps_across_half_turn(self):
        before = np.array([[0.0, 0.0], [1.0, 0.0], [-1.0, 0.01]])
        after = np.array([[0.0, 0.0], [1.0, 0.0], [-1.0, -0.01]])
        assert angle_change(before, after, 0, 1, 2) == pytest.approx(0.02, abs=1e-3)

    def test_degenerate_vectors(self):
        before = np.array([[0.0, 0.0], [0.0, 0.0], [1.0, 0.0]])
        assert angle_change(before, before, 0, 1, 2) is None
