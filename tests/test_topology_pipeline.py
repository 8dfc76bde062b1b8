"""Tests for the merge pipeline, configuration files and synthetic outsoles."""
from pathlib import Path

import numpy as np
import pytest

from footprint_topology.models.graph_extraction.edge_creation import build_graph
from footprint_topology.models.graph_merging.topology_merger import MergeMethod, StructuralMerge
from footprint_topology.models.pipeline.topology_pipeline import (
    PipelineConfig, StageStatus, TopologyPipeline, create_topology_pipeline
)
from footprint_topology.utils.config import load_config, save_config
from footprint_topology.utils.synthetic import (
    add_noise, drop_points, generate_outsole_points, rotate_and_translate
)


CONFIG_PATH = Path(__file__).parent.parent / 'configs' / 'topology_merge.yaml'


def actions(result):
    return [rec['action'] for rec in result.recommendations]


class TestFullTopologyMerge:
    """Merge, refinement and validation in sequence."""

    def test_rotated_outsole(self, outsole_graph, rotated_graph):
        result = TopologyPipeline().full_topology_merge(outsole_graph, rotated_graph)
        assert result.success
        assert result.merge.method == MergeMethod.TOPOLOGY
        assert all(stage.status == StageStatus.COMPLETED for stage in result.stages.values())
        assert set(result.stages) == {'merge', 'refinement', 'validation'}
        assert result.refinement.success
        assert result.validation.passed
        assert result.combined_score >= 0.9
        assert result.quality == 'excellent'
        assert result.can_use_for_super_model
        assert 'create_super_model' in actions(result)
        assert result.final_graph.node_count <= 40
        assert result.warnings == []

    def test_visualization_data(self, outsole_graph, rotated_graph):
        result = TopologyPipeline().full_topology_merge(outsole_graph, rotated_graph)
        data = result.get_visualization_data()
        assert data['method'] == 'topology_merge'
        assert len(data['correspondences']) == len(result.merge.correspondences)
        assert set(data['checks']) == set(result.validation.checks)
        assert data['graph'] is not None

    def test_refinement_disabled(self, outsole_graph, rotated_graph):
        pipeline = TopologyPipeline(PipelineConfig(enable_refinement=False))
        result = pipeline.full_topology_merge(outsole_graph, rotated_graph)
        assert result.success
        assert result.refinement is None
        assert result.stages['refinement'].status == StageStatus.SKIPPED
        # Skipped stage contributes the flat neutral score
        expected = 0.4 * result.structural_similarity + 0.3 + 0.3 * result.validation.score
        assert result.combined_score == pytest.approx(min(1.0, expected))
        assert 'enable_refinement' in actions(result)

    def test_both_stages_disabled(self, outsole_graph, rotated_graph):
        pipeline = TopologyPipeline(PipelineConfig(enable_refinement=False, enable_validation=False))
        result = pipeline.full_topology_merge(outsole_graph, rotated_graph)
        assert result.validation is None
        assert result.stages['validation'].status == StageStatus.SKIPPED
        assert result.combined_score == pytest.approx(min(1.0, 0.4 * result.structural_similarity + 0.6))

    def test_merge_failure(self, empty_graph):
        result = TopologyPipeline().full_topology_merge(empty_graph, empty_graph.copy())
        assert not result.success
        assert result.combined_score == 0.0
        assert result.quality == 'poor'
        assert not result.can_use_for_super_model
        assert result.stages['merge'].status == StageStatus.FAILED
        assert 'refinement' not in result.stages
        assert result.recommendations[0]['type'] == 'critical'
        assert result.recommendations[0]['action'] == 'check_input'
        assert result.final_graph is None

    def test_fallback_is_reported(self, tiny_disjoint_graphs):
        graph_a, graph_b = tiny_disjoint_graphs
        result = TopologyPipeline().full_topology_merge(*tiny_disjoint_graphs)
        assert result.success
        assert result.merge.method == MergeMethod.FALLBACK
        assert any('fallback' in warning for warning in result.warnings)
        assert result.final_graph.node_count == graph_a.node_count + graph_b.node_count

    def test_small_fused_graph_skips_stages(self):
        graph_a = build_graph([(0, 0)])
        graph_b = build_graph([(0, 1)])
        result = TopologyPipeline().full_topology_merge(graph_a, graph_b)
        assert result.success
        assert result.stages['refinement'].status == StageStatus.SKIPPED
        assert result.stages['validation'].status == StageStatus.SKIPPED

    def test_low_similarity_warning(self, outsole_graph, other_outsole_graph):
        config = PipelineConfig(low_similarity_threshold=1.01)
        result = TopologyPipeline(config).full_topology_merge(outsole_graph, other_outsole_graph)
        assert 'skip_merge' in actions(result)


class TestPipelineOperations:
    """Single-stage entry points and history."""

    def test_quick_merge(self, outsole_graph, rotated_graph):
        outcome = TopologyPipeline().quick_merge(outsole_graph, rotated_graph)
        assert isinstance(outcome, StructuralMerge)

    def test_refine_only(self, outsole_graph):
        assert TopologyPipeline().refine_only(outsole_graph).success

    def test_refine_only_too_few_nodes(self):
        result = TopologyPipeline().refine_only(build_graph([(0, 0), (5, 5)]))
        assert not result.success

    def test_validate_only(self, outsole_graph):
        result = TopologyPipeline().validate_only(outsole_graph, outsole_graph.copy())
        assert result.passed

    def test_validate_only_node_count_mismatch(self, outsole_graph, outsole_points):
        pipeline = TopologyPipeline()
        result = pipeline.validate_only(outsole_graph, build_graph(outsole_points[:30]))
        assert not result.passed
        assert result.insufficient_data
        assert result.score == 0.0
        assert pipeline.get_stats()['total_operations'] == 1

    def test_compare(self, outsole_graph, rotated_graph):
        match = TopologyPipeline().compare(outsole_graph, rotated_graph)
        assert match.similarity >= 0.9

    def test_build_graph_uses_configured_builder(self, outsole_points):
        pipeline = TopologyPipeline(PipelineConfig(graph_config={'max_neighbors': 2}))
        graph = pipeline.build_graph(outsole_points, graph_id='built')
        assert graph.id == 'built'
        assert graph.node_count == 40
        assert graph.edge_count <= 2 * 40

    def test_stats(self, outsole_graph, rotated_graph, empty_graph):
        pipeline = TopologyPipeline()
        pipeline.full_topology_merge(outsole_graph, rotated_graph)
        pipeline.full_topology_merge(empty_graph, empty_graph.copy())
        pipeline.refine_only(outsole_graph)
        stats = pipeline.get_stats()
        assert stats['total_operations'] == 3
        assert stats['full_merges'] == 2
        assert stats['successful_merges'] == 1
        assert stats['fallback_merges'] == 0

    def test_history_is_bounded(self, outsole_graph):
        pipeline = TopologyPipeline(PipelineConfig(history_size=2))
        for _ in range(3):
            pipeline.validate_only(outsole_graph, outsole_graph)
        assert pipeline.get_stats()['total_operations'] == 2


class TestBatchMerge:
    """Folding several observations into one model."""

    def test_three_graphs(self, outsole_graph, rotated_graph, other_outsole_graph):
        batch = TopologyPipeline().batch_merge([outsole_graph, rotated_graph, other_outsole_graph])
        assert batch['success']
        assert len(batch['steps']) == 2
        assert batch['stopped_at'] is None
        assert batch['final_graph'] is batch['steps'][-1].final_graph

    def test_stops_at_first_failure(self, empty_graph, outsole_graph):
        batch = TopologyPipeline().batch_merge([empty_graph, empty_graph.copy(), outsole_graph])
        assert not batch['success']
        assert batch['stopped_at'] == 1
        assert len(batch['steps']) == 1
        assert batch['final_graph'] is empty_graph
        assert batch['reason'].startswith('Merge failed')

    def test_needs_two_graphs(self, outsole_graph):
        batch = TopologyPipeline().batch_merge([outsole_graph])
        assert not batch['success']
        assert batch['steps'] == []
        assert batch['final_graph'] is outsole_graph


class TestConfiguration:
    """YAML configuration handling."""

    def test_shipped_config(self):
        config = PipelineConfig.from_yaml(CONFIG_PATH)
        assert config.enable_refinement
        assert config.structural_weight == pytest.approx(0.4)
        assert config.graph_config['max_neighbors'] == 5
        assert config.merger_config['fallback_merge_distance'] == pytest.approx(15.0)

    def test_create_pipeline_from_file(self):
        pipeline = create_topology_pipeline(CONFIG_PATH)
        assert pipeline.refiner.config['max_iterations'] == 150
        assert pipeline.validator.config['min_overall_score'] == pytest.approx(0.7)

    def test_from_dict_overrides(self):
        config = PipelineConfig.from_dict({'refiner': {'max_iterations': 20},
                                           'pipeline': {'enable_validation': False}})
        assert not config.enable_validation
        assert TopologyPipeline(config).refiner.config['max_iterations'] == 20
        assert config.validator_config == {}

    def test_unknown_section(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("graph:\n  max_neighbors: 3\nrenderer:\n  color: red\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / 'list.yaml'
        path.write_text("- graph\n- matcher\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_save_and_load(self, tmp_path):
        path = tmp_path / 'saved.yaml'
        save_config({'graph': {'max_neighbors': 4}, 'pipeline': {'history_size': 10}}, path)
        config = load_config(path)
        assert config['graph'] == {'max_neighbors': 4}
        assert config['pipeline'] == {'history_size': 10}
        assert config['refiner'] == {}


class TestSyntheticOutsoles:
    """Deterministic demo data."""

    def test_same_seed_same_points(self):
        np.testing.assert_array_equal(generate_outsole_points(seed=5), generate_outsole_points(seed=5))

    def test_points_respect_spacing(self):
        points = generate_outsole_points(num_points=30, seed=2)
        diffs = points[:, None, :2] - points[None, :, :2]
        distances = np.hypot(diffs[..., 0], diffs[..., 1])
        np.fill_diagonal(distances, np.inf)
        assert distances.min() >= 12.0
        assert np.all((points[:, 2] >= 0.6) & (points[:, 2] <= 1.0))

    def test_rotate_and_translate(self):
        points = np.array([[1.0, 0.0, 0.8]])
        moved = rotate_and_translate(points, 90.0, 10.0, 0.0, scale=2.0)
        np.testing.assert_allclose(moved, [[10.0, 2.0, 0.8]], atol=1e-12)

    def test_drop_points(self):
        points = generate_outsole_points(seed=1)
        assert len(drop_points(points, fraction=0.0, seed=1)) == len(points)
        assert len(drop_points(points, fraction=1.0, seed=1)) == 0

    def test_add_noise_keeps_confidence(self):
        points = generate_outsole_points(seed=1)
        noisy = add_noise(points, sigma=2.0, seed=4)
        np.testing.assert_array_equal(noisy[:, 2], points[:, 2])
        assert not np.allclose(noisy[:, :2], points[:, :2])
