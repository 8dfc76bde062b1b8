"""
Topology Merge Pipeline
Integration pipeline sequencing merge, refinement and validation of footprint graphs
"""

import numpy as np
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Sequence, Union
from pathlib import Path
import logging
from tqdm import tqdm

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph
from footprint_topology.models.graph_extraction.edge_creation import ProximityGraphBuilder
from footprint_topology.models.graph_merging.topology_merger import (
    TopologyMerger, MergeOutcome, MergeFailure, MergeMethod
)
from footprint_topology.models.graph_merging.spring_refiner import SpringRefiner, RefinementResult
from footprint_topology.models.graph_merging.transform_estimation import Transformation
from footprint_topology.utils.graph_matching import CoarseMatcher, MatchResult
from footprint_topology.utils.topology_validation import TopologyValidator, ValidationResult
from footprint_topology.utils.config import load_config


@dataclass
class PipelineConfig:
    """Configuration for the complete merge pipeline"""
    # Component configuration
    graph_config: Dict = None       # max_neighbors, distance_threshold
    matcher_config: Dict = None
    merger_config: Dict = None
    refiner_config: Dict = None
    validator_config: Dict = None

    # Stage toggles
    enable_refinement: bool = True
    enable_validation: bool = True
    min_nodes_for_stage: int = 3

    # Combined score
    structural_weight: float = 0.4
    refinement_weight: float = 0.3
    validation_weight: float = 0.3
    skipped_stage_score: float = 0.3   # contribution of a skipped refinement/validation stage

    # Recommendations
    low_similarity_threshold: float = 0.6
    refinement_suggestion_threshold: float = 0.7
    super_model_threshold: float = 0.8

    history_size: int = 100

    def __post_init__(self):
        for name in ('graph_config', 'matcher_config', 'merger_config', 'refiner_config', 'validator_config'):
            if getattr(self, name) is None:
                setattr(self, name, {})

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'PipelineConfig':
        """Build from a sectioned dictionary (see utils.config.load_config)"""
        return cls(
            graph_config=dict(config.get('graph') or {}),
            matcher_config=dict(config.get('matcher') or {}),
            merger_config=dict(config.get('merger') or {}),
            refiner_config=dict(config.get('refiner') or {}),
            validator_config=dict(config.get('validator') or {}),
            **dict(config.get('pipeline') or {})
        )

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> 'PipelineConfig':
        return cls.from_dict(load_config(config_path))


class StageStatus(str, Enum):
    COMPLETED = 'completed'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass
class StageRecord:
    status: StageStatus
    reason: str = ''
    duration: float = 0.0


@dataclass
class PipelineResult:
    """Result from the complete pipeline"""
    success: bool
    merge: Optional[MergeOutcome] = None
    refinement: Optional[RefinementResult] = None
    validation: Optional[ValidationResult] = None
    final_graph: Optional[FootprintGraph] = None

    # Quality
    combined_score: float = 0.0
    quality: str = 'poor'
    can_use_for_super_model: bool = False
    recommendations: List[Dict[str, str]] = None

    # Process information
    stages: Dict[str, StageRecord] = None
    total_time: float = 0.0
    warnings: List[str] = None

    def __post_init__(self):
        if self.recommendations is None:
            self.recommendations = []
        if self.stages is None:
            self.stages = {}
        if self.warnings is None:
            self.warnings = []

    @property
    def structural_similarity(self) -> float:
        return self.merge.structural_similarity if self.merge is not None else 0.0

    def get_visualization_data(self) -> Dict:
        """Read-only snapshot: positions, edges, correspondences and per-check scores"""
        data = {
            'graph': self.final_graph.get_visualization_data() if self.final_graph is not None else None,
            'method': self.merge.method.value if self.merge is not None else None,
            'combined_score': self.combined_score,
            'quality': self.quality,
            'correspondences': [],
            'checks': {},
        }
        correspondences = getattr(self.merge, 'correspondences', None)
        if correspondences is not None:
            data['correspondences'] = correspondences.to_dict()['correspondences']
        if self.validation is not None:
            data['checks'] = {name: check.score for name, check in self.validation.checks.items()}
        return data


class TopologyPipeline:
    """Complete pipeline from two footprint graphs to a validated fused model"""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.logger = logging.getLogger(__name__)

        # Initialize components
        self.graph_builder = ProximityGraphBuilder(**self.config.graph_config)
        self.matcher = CoarseMatcher(self.config.matcher_config)
        self.merger = TopologyMerger(self.config.merger_config)
        self.refiner = SpringRefiner(self.config.refiner_config)
        self.validator = TopologyValidator(self.config.validator_config)

        self.operation_history = deque(maxlen=self.config.history_size)

    def build_graph(self, points: Any, graph_id: Optional[str] = None, name: Optional[str] = None) -> FootprintGraph:
        """Build a proximity graph with the configured builder"""
        return self.graph_builder.build(points, graph_id=graph_id, name=name)

    def compare(self, graph_a: FootprintGraph, graph_b: FootprintGraph) -> MatchResult:
        return self.matcher.compare(graph_a, graph_b)

    def full_topology_merge(self,
                            graph_a: FootprintGraph,
                            graph_b: FootprintGraph,
                            transformation: Optional[Transformation] = None) -> PipelineResult:
        """
        Merge, refine and validate two graphs

        Args:
            graph_a: Reference graph
            graph_b: Graph merged into the reference
            transformation: Known transform mapping A onto B (estimated when omitted)

        Returns:
            PipelineResult; stage failures are recorded, never raised
        """
        start_time = time.time()
        self.logger.info(f"Full topology merge: {graph_a.id} + {graph_b.id}")
        result = PipelineResult(success=False)

        # Step 1: Merge
        stage_start = time.time()
        try:
            result.merge = self.merger.merge_graphs(graph_a, graph_b, transformation)
        except Exception as e:
            self.logger.error(f"Merge stage failed: {e}")
            result.merge = MergeFailure(reason=f"Internal error: {e}")

        if isinstance(result.merge, MergeFailure):
            result.stages['merge'] = StageRecord(StageStatus.FAILED, result.merge.reason, time.time() - stage_start)
            result.warnings.append(f"Merge failed: {result.merge.reason}")
            return self._finish(result, start_time)

        result.stages['merge'] = StageRecord(StageStatus.COMPLETED, result.merge.method.value, time.time() - stage_start)
        if result.merge.method == MergeMethod.FALLBACK:
            result.warnings.append(f"Geometric fallback used: {result.merge.reason}")

        fused = result.merge.fused
        result.final_graph = fused.graph
        enough_nodes = fused.graph.node_count >= self.config.min_nodes_for_stage

        # Step 2: Refinement
        stage_start = time.time()
        if not self.config.enable_refinement:
            result.stages['refinement'] = StageRecord(StageStatus.SKIPPED, "Refinement disabled")
        elif not enough_nodes:
            result.stages['refinement'] = StageRecord(StageStatus.SKIPPED, "Too few nodes")
        else:
            try:
                result.refinement = self.refiner.refine_fused(fused)
                if result.refinement.success:
                    result.final_graph = result.refinement.apply_to(fused.graph)
                    result.stages['refinement'] = StageRecord(StageStatus.COMPLETED, result.refinement.state.value,
                                                              time.time() - stage_start)
                else:
                    result.stages['refinement'] = StageRecord(StageStatus.SKIPPED, result.refinement.reason,
                                                              time.time() - stage_start)
            except Exception as e:
                self.logger.error(f"Refinement stage failed: {e}")
                result.refinement = None
                result.stages['refinement'] = StageRecord(StageStatus.FAILED, str(e), time.time() - stage_start)
                result.warnings.append(f"Refinement failed: {e}")

        # Step 3: Validation against the observed layout
        stage_start = time.time()
        if not self.config.enable_validation:
            result.stages['validation'] = StageRecord(StageStatus.SKIPPED, "Validation disabled")
        elif not enough_nodes:
            result.stages['validation'] = StageRecord(StageStatus.SKIPPED, "Too few nodes")
        else:
            try:
                # Both layouts are expressed in graph A's frame
                result.validation = self.validator.validate_transformation(
                    fused.observed_positions, result.final_graph.positions(), fused.graph
                )
                result.stages['validation'] = StageRecord(
                    StageStatus.COMPLETED, 'passed' if result.validation.passed else 'failed',
                    time.time() - stage_start
                )
            except Exception as e:
                self.logger.error(f"Validation stage failed: {e}")
                result.validation = None
                result.stages['validation'] = StageRecord(StageStatus.FAILED, str(e), time.time() - stage_start)
                result.warnings.append(f"Validation failed: {e}")

        result.success = True
        return self._finish(result, start_time)

    def _finish(self, result: PipelineResult, start_time: float) -> PipelineResult:
        result.combined_score = self._compute_combined_score(result)
        result.quality = self._quality_tier(result.combined_score)
        result.can_use_for_super_model = result.success and result.quality in ('excellent', 'good')
        result.recommendations = self._generate_recommendations(result)
        result.total_time = time.time() - start_time

        self._record_operation('full_topology_merge', result)
        self.logger.info(f"Pipeline completed in {result.total_time:.2f}s: "
                         f"combined score {result.combined_score:.3f} ({result.quality})")
        return result

    def _compute_combined_score(self, result: PipelineResult) -> float:
        if not result.success:
            return 0.0

        combined = self.config.structural_weight * result.structural_similarity

        if result.refinement is not None and result.refinement.success:
            combined += self.config.refinement_weight * result.refinement.consistency
        else:
            combined += self.config.skipped_stage_score

        if result.validation is not None:
            combined += self.config.validation_weight * result.validation.score
        else:
            combined += self.config.skipped_stage_score

        return float(min(1.0, combined))

    @staticmethod
    def _quality_tier(score: float) -> str:
        if score > 0.9:
            return 'excellent'
        if score > 0.7:
            return 'good'
        if score > 0.5:
            return 'acceptable'
        return 'poor'

    def _generate_recommendations(self, result: PipelineResult) -> List[Dict[str, str]]:
        recommendations = []
        similarity = result.structural_similarity

        if not result.success:
            recommendations.append({
                'type': 'critical',
                'action': 'check_input',
                'message': "Merge was not possible; check that both footprints contain points"
            })
            return recommendations

        if similarity < self.config.low_similarity_threshold:
            recommendations.append({
                'type': 'warning',
                'action': 'skip_merge',
                'message': f"Low structural similarity ({similarity:.2f}); footprints may differ"
            })

        refinement_applied = result.refinement is not None and result.refinement.success
        if not refinement_applied and similarity > self.config.refinement_suggestion_threshold:
            recommendations.append({
                'type': 'suggestion',
                'action': 'enable_refinement',
                'message': "Enable refinement to relax the fused layout"
            })

        if result.validation is not None and not result.validation.passed:
            failed = ', '.join(result.validation.failed_checks()) or 'overall score'
            recommendations.append({
                'type': 'critical',
                'action': 'review_transformation',
                'message': f"Validation failed ({failed}); review the transformation"
            })

        if result.combined_score > self.config.super_model_threshold:
            recommendations.append({
                'type': 'success',
                'action': 'create_super_model',
                'message': "Merge quality is sufficient for a consolidated model"
            })

        return recommendations

    def quick_merge(self,
                    graph_a: FootprintGraph,
                    graph_b: FootprintGraph,
                    transformation: Optional[Transformation] = None) -> MergeOutcome:
        """Merge only, without refinement or validation"""
        outcome = self.merger.merge_graphs(graph_a, graph_b, transformation)
        self._record_operation('quick_merge', outcome)
        return outcome

    def refine_only(self,
                    graph: FootprintGraph,
                    transformation: Optional[Transformation] = None) -> RefinementResult:
        """Relax a single graph"""
        try:
            refinement = self.refiner.refine(graph, transformation)
        except Exception as e:
            self.logger.error(f"Refinement failed: {e}")
            positions = graph.positions()
            refinement = RefinementResult(success=False, state=None, positions=positions,
                                          initial_positions=positions.copy(), reason=str(e))
        self._record_operation('refine_only', refinement)
        return refinement

    def validate_only(self,
                      before_graph: FootprintGraph,
                      after_graph: FootprintGraph,
                      transformation: Optional[Transformation] = None) -> ValidationResult:
        """Validate two layouts of the same graph"""
        try:
            validation = self.validator.validate_graphs(before_graph, after_graph, transformation)
        except Exception as e:
            self.logger.error(f"Validation failed: {e}")
            validation = ValidationResult(
                passed=False,
                score=0.0,
                confidence=0.0,
                checks={},
                summary=f"Validation not possible: {e}",
                node_count=before_graph.node_count,
                insufficient_data=True
            )
        self._record_operation('validate_only', validation)
        return validation

    def batch_merge(self, graphs: Sequence[FootprintGraph], show_progress: bool = False) -> Dict:
        """
        Fold a sequence of graphs into one model, merging pairwise in order

        Stops at the first failed step.

        Args:
            graphs: At least two graphs
            show_progress: Display a progress bar

        Returns:
            Dictionary with success flag, final graph and per-step results
        """
        if len(graphs) < 2:
            self.logger.warning("Batch merge needs at least 2 graphs")
            return {'success': False, 'final_graph': graphs[0] if graphs else None, 'steps': [],
                    'stopped_at': None, 'reason': "At least 2 graphs are required"}

        self.logger.info(f"Batch merging {len(graphs)} graphs")
        current = graphs[0]
        steps = []

        for index, graph in enumerate(tqdm(graphs[1:], desc="Merging graphs", disable=not show_progress), start=1):
            step = self.full_topology_merge(current, graph)
            steps.append(step)

            if not step.success or step.final_graph is None:
                self.logger.warning(f"Batch merge stopped at graph {index}")
                return {'success': False, 'final_graph': current, 'steps': steps,
                        'stopped_at': index, 'reason': step.warnings[0] if step.warnings else "Merge failed"}

            current = step.final_graph

        self._log_batch_statistics(steps)
        return {'success': True, 'final_graph': current, 'steps': steps, 'stopped_at': None, 'reason': ''}

    def _log_batch_statistics(self, steps: List[PipelineResult]):
        """Log batch processing statistics"""
        if not steps:
            return

        scores = [step.combined_score for step in steps]
        fallbacks = sum(1 for step in steps if step.merge is not None and step.merge.method == MergeMethod.FALLBACK)

        self.logger.info("Batch merge summary:")
        self.logger.info(f"  Steps: {len(steps)}")
        self.logger.info(f"  Fallback merges: {fallbacks}/{len(steps)}")
        self.logger.info(f"  Average combined score: {np.mean(scores):.3f} ± {np.std(scores):.3f}")

    def _record_operation(self, operation: str, outcome: Any):
        entry = {'operation': operation, 'timestamp': datetime.now().isoformat()}
        if isinstance(outcome, PipelineResult):
            entry.update(success=outcome.success, combined_score=outcome.combined_score,
                         method=outcome.merge.method.value if outcome.merge is not None else None)
        else:
            entry['success'] = bool(getattr(outcome, 'success', getattr(outcome, 'passed', False)))
        self.operation_history.append(entry)

    def get_stats(self) -> Dict:
        """Statistics over the retained operation history"""
        merges = [entry for entry in self.operation_history if entry['operation'] == 'full_topology_merge']
        return {
            'total_operations': len(self.operation_history),
            'full_merges': len(merges),
            'successful_merges': sum(1 for entry in merges if entry['success']),
            'fallback_merges': sum(1 for entry in merges if entry.get('method') == MergeMethod.FALLBACK.value),
            'average_combined_score': float(np.mean([entry['combined_score'] for entry in merges])) if merges else 0.0,
            'matcher': self.matcher.get_stats(),
            'validator': self.validator.get_stats(),
        }


def create_topology_pipeline(config_path: Optional[Union[str, Path]] = None) -> TopologyPipeline:
    """Create a pipeline, optionally from a YAML configuration file"""
    config = PipelineConfig.from_yaml(config_path) if config_path else PipelineConfig()
    return TopologyPipeline(config)
