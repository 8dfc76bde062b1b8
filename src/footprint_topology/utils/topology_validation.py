"""
Topology validation for transformed footprint layouts
Checks that a transformation or refinement preserved the geometry of a graph
"""

import numpy as np
import networkx as nx
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Tuple, List, Optional, Any, TYPE_CHECKING
import logging

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph

if TYPE_CHECKING:
    from footprint_topology.models.graph_merging.transform_estimation import Transformation


@dataclass
class CheckResult:
    """Result of a single invariant check"""
    name: str
    passed: bool
    score: float
    weight: float
    metrics: Dict[str, Any] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'passed': self.passed,
            'score': self.score,
            'weight': self.weight,
            'metrics': self.metrics,
            'issues': list(self.issues),
        }


@dataclass
class ValidationResult:
    """Aggregated validation outcome"""
    passed: bool
    score: float
    confidence: float
    checks: Dict[str, CheckResult]
    summary: str
    recommendations: List[str] = field(default_factory=list)
    node_count: int = 0
    insufficient_data: bool = False

    def failed_checks(self) -> List[str]:
        return [name for name, check in self.checks.items() if not check.passed]

    def to_dict(self) -> Dict:
        return {
            'passed': self.passed,
            'score': self.score,
            'confidence': self.confidence,
            'summary': self.summary,
            'recommendations': list(self.recommendations),
            'node_count': self.node_count,
            'insufficient_data': self.insufficient_data,
            'checks': {name: check.to_dict() for name, check in self.checks.items()},
        }


class TopologyValidator:
    """
    Statistical validation of a before/after layout pair

    Runs five checks (distance relations, angle preservation, connectivity,
    scale uniformity, local structure) and aggregates them into a weighted
    score. A check with nothing to measure passes with full score.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = self._get_default_config()
        if config:
            self.config.update(config)
        self.logger = logging.getLogger(__name__)
        self.validation_history = deque(maxlen=self.config['history_size'])

    def _get_default_config(self) -> Dict:
        return {
            'distance_tolerance': 0.15,     # mean relative edge length error
            'angle_tolerance': 0.2,         # radians
            'connectivity_threshold': 0.8,  # preserved edge fraction
            'min_edge_length': 5.0,
            'max_edge_length': 300.0,
            'max_stretch_ratio': 3.0,       # edge broken beyond this stretch
            'max_broken_length': 200.0,     # or beyond this absolute length
            'min_uniformity': 0.7,
            'cv_tolerance': 0.3,            # coefficient of variation giving zero uniformity
            'min_within_rate': 0.7,
            'min_axis_component': 1.0,
            'anisotropy_component': 5.0,
            'anisotropy_threshold': 0.3,
            'min_scale_uniformity': 0.8,
            'min_local_score': 0.7,
            'problematic_node_score': 0.6,
            'min_overall_score': 0.7,
            'critical_weight': 0.2,         # checks at or above this weight must pass
            'min_nodes': 3,
            'weights': {
                'distance_relations': 0.35,
                'angle_preservation': 0.25,
                'connectivity': 0.20,
                'scale_uniformity': 0.10,
                'local_structure': 0.10,
            },
            'history_size': 50,
        }

    def validate_transformation(self,
                                before: np.ndarray,
                                after: np.ndarray,
                                graph: FootprintGraph,
                                transformation: Optional['Transformation'] = None) -> ValidationResult:
        """
        Validate that after preserves the geometry of before

        Args:
            before: (n, 2) reference positions in graph registry order
            after: (n, 2) transformed positions in the same order
            graph: Graph providing the edges and neighborhoods
            transformation: Expected transform; its scale is the expected edge ratio

        Returns:
            ValidationResult with per-check results and overall verdict
        """
        before = np.asarray(before, dtype=float).reshape(-1, 2)
        after = np.asarray(after, dtype=float).reshape(-1, 2)
        if len(before) != len(after) or len(before) != graph.node_count:
            raise ValueError(f"Position arrays ({len(before)}, {len(after)}) do not match "
                             f"graph with {graph.node_count} nodes")

        if graph.node_count < self.config['min_nodes']:
            result = ValidationResult(
                passed=False,
                score=0.0,
                confidence=0.0,
                checks={},
                summary=f"Insufficient data: {graph.node_count} nodes",
                recommendations=["Provide at least 3 nodes for topology validation"],
                node_count=graph.node_count,
                insufficient_data=True
            )
            self._record(result)
            return result

        expected_scale = transformation.scale if transformation is not None and transformation.scale > 0 else 1.0
        edges = graph.edge_index_pairs()
        neighbors = self._neighbor_lists(graph)

        checks = {
            'distance_relations': self._check_distance_relations(before, after, edges, expected_scale),
            'angle_preservation': self._check_angle_preservation(before, after, neighbors),
            'connectivity': self._check_connectivity(before, after, edges, graph),
            'scale_uniformity': self._check_scale_uniformity(before, after, edges),
            'local_structure': self._check_local_structure(before, after, neighbors),
        }

        result = self._aggregate(checks, graph.node_count)
        self._record(result)

        self.logger.info(f"Validation {'passed' if result.passed else 'failed'}: "
                         f"score {result.score:.3f}, {result.summary}")
        return result

    def validate_graphs(self,
                        before_graph: FootprintGraph,
                        after_graph: FootprintGraph,
                        transformation: Optional['Transformation'] = None) -> ValidationResult:
        """Validate two layouts of the same graph (edges taken from before_graph)"""
        return self.validate_transformation(before_graph.positions(), after_graph.positions(),
                                            before_graph, transformation)

    def is_rigid_transformation(self, result: ValidationResult) -> bool:
        """Distances, angles and scale all preserved"""
        required = ('distance_relations', 'angle_preservation', 'scale_uniformity')
        return all(name in result.checks and result.checks[name].passed for name in required)

    @staticmethod
    def _neighbor_lists(graph: FootprintGraph) -> List[List[int]]:
        index = graph.node_index()
        return [sorted(index[n] for n in node.neighbors) for node in graph.nodes.values()]

    def _check_distance_relations(self, before: np.ndarray, after: np.ndarray,
                                  edges: List[Tuple[int, int]], expected_scale: float) -> CheckResult:
        weight = self.config['weights']['distance_relations']
        ratios = []
        errors = []
        for i, j in edges:
            original = float(np.linalg.norm(before[j] - before[i]))
            if original < self.config['min_edge_length'] or original > self.config['max_edge_length']:
                continue
            transformed = float(np.linalg.norm(after[j] - after[i]))
            expected = expected_scale * original
            ratios.append(transformed / original)
            errors.append(abs(transformed - expected) / max(expected, 1.0))

        if not ratios:
            return CheckResult('distance_relations', True, 1.0, weight, {'measured_edges': 0})

        mean_ratio = float(np.mean(ratios))
        std_ratio = float(np.std(ratios))
        cv = std_ratio / mean_ratio if mean_ratio > 0 else 1.0
        uniformity = 1.0 - min(1.0, cv / self.config['cv_tolerance'])
        mean_error = float(np.mean(errors))
        preservation = 1.0 - min(1.0, mean_error / self.config['distance_tolerance'])

        passed = uniformity > self.config['min_uniformity'] and mean_error <= self.config['distance_tolerance']
        issues = []
        if uniformity <= self.config['min_uniformity']:
            issues.append(f"Non-uniform edge scaling (CV {cv:.3f})")
        if mean_error > self.config['distance_tolerance']:
            issues.append(f"Mean relative distance error {mean_error:.3f} exceeds tolerance")

        return CheckResult(
            name='distance_relations',
            passed=passed,
            score=0.6 * uniformity + 0.4 * preservation,
            weight=weight,
            metrics={
                'measured_edges': len(ratios),
                'mean_ratio': mean_ratio,
                'std_ratio': std_ratio,
                'scale_uniformity': uniformity,
                'mean_error': mean_error,
                'max_error': float(np.max(errors)),
                'distance_preservation': preservation,
            },
            issues=issues
        )

    def _check_angle_preservation(self, before: np.ndarray, after: np.ndarray,
                                  neighbors: List[List[int]]) -> CheckResult:
        weight = self.config['weights']['angle_preservation']
        tolerance = self.config['angle_tolerance']
        changes = []
        for center, around in enumerate(neighbors):
            if len(around) < 2:
                continue
            for a_pos in range(len(around)):
                for b_pos in range(a_pos + 1, len(around)):
                    change = angle_change(before, after, center, around[a_pos], around[b_pos])
                    if change is not None:
                        changes.append(change)

        if not changes:
            return CheckResult('angle_preservation', True, 1.0, weight, {'measured_angles': 0})

        mean_change = float(np.mean(changes))
        within_rate = float(np.mean(np.array(changes) <= tolerance))
        passed = mean_change <= tolerance and within_rate >= self.config['min_within_rate']

        issues = []
        if mean_change > tolerance:
            issues.append(f"Mean angle change {mean_change:.3f} rad exceeds tolerance")
        if within_rate < self.config['min_within_rate']:
            issues.append(f"Only {within_rate:.0%} of angles within tolerance")

        return CheckResult(
            name='angle_preservation',
            passed=passed,
            score=0.7 * (1.0 - min(1.0, mean_change / tolerance)) + 0.3 * within_rate,
            weight=weight,
            metrics={
                'measured_angles': len(changes),
                'mean_change': mean_change,
                'max_change': float(np.max(changes)),
                'within_tolerance_rate': within_rate,
            },
            issues=issues
        )

    def _check_connectivity(self, before: np.ndarray, after: np.ndarray,
                            edges: List[Tuple[int, int]], graph: FootprintGraph) -> CheckResult:
        weight = self.config['weights']['connectivity']
        if not edges:
            return CheckResult('connectivity', True, 1.0, weight, {'total_edges': 0})

        broken = []
        for i, j in edges:
            original = float(np.linalg.norm(before[j] - before[i]))
            transformed = float(np.linalg.norm(after[j] - after[i]))
            if transformed > self.config['max_stretch_ratio'] * original or \
                    transformed > self.config['max_broken_length']:
                broken.append((i, j))

        preserved_fraction = 1.0 - len(broken) / len(edges)
        passed = preserved_fraction >= self.config['connectivity_threshold']

        # Components before and after removing broken edges
        ids = graph.node_ids()
        G = graph.to_networkx().copy()
        components_before = nx.number_connected_components(G)
        G.remove_edges_from((ids[i], ids[j]) for i, j in broken)
        components_after = nx.number_connected_components(G)

        issues = []
        if not passed:
            issues.append(f"{len(broken)} of {len(edges)} edges broken")

        return CheckResult(
            name='connectivity',
            passed=passed,
            score=preserved_fraction,
            weight=weight,
            metrics={
                'total_edges': len(edges),
                'broken_edges': len(broken),
                'preserved_fraction': preserved_fraction,
                'components_before': components_before,
                'components_after': components_after,
            },
            issues=issues
        )

    def _check_scale_uniformity(self, before: np.ndarray, after: np.ndarray,
                                edges: List[Tuple[int, int]]) -> CheckResult:
        weight = self.config['weights']['scale_uniformity']
        min_component = self.config['min_axis_component']
        scales_x = []
        scales_y = []
        anisotropic = 0

        for i, j in edges:
            dx0, dy0 = np.abs(before[j] - before[i])
            dx1, dy1 = np.abs(after[j] - after[i])
            sx = dx1 / dx0 if dx0 > min_component else None
            sy = dy1 / dy0 if dy0 > min_component else None
            if sx is not None:
                scales_x.append(sx)
            if sy is not None:
                scales_y.append(sy)

            if dx0 > self.config['anisotropy_component'] and dy0 > self.config['anisotropy_component']:
                largest = max(sx, sy)
                if largest > 0 and abs(sx - sy) / largest > self.config['anisotropy_threshold']:
                    anisotropic += 1

        if not scales_x and not scales_y:
            return CheckResult('scale_uniformity', True, 1.0, weight, {'measured_edges': 0})

        def axis_uniformity(scales: List[float]) -> Tuple[float, float]:
            if not scales:
                return 1.0, 0.0
            mean = float(np.mean(scales))
            if mean <= 0:
                return 0.0, mean
            return 1.0 - min(1.0, float(np.std(scales)) / mean), mean

        uniformity_x, mean_x = axis_uniformity(scales_x)
        uniformity_y, mean_y = axis_uniformity(scales_y)

        if scales_x and scales_y and max(mean_x, mean_y) > 0:
            scale_difference = abs(mean_x - mean_y) / max(mean_x, mean_y)
        else:
            scale_difference = 0.0

        uniformity = (uniformity_x + uniformity_y) / 2 * (1.0 - scale_difference)
        passed = uniformity > self.config['min_scale_uniformity'] and anisotropic == 0

        issues = []
        if anisotropic:
            issues.append(f"{anisotropic} anisotropically scaled edges")
        if uniformity <= self.config['min_scale_uniformity']:
            issues.append(f"Scale uniformity {uniformity:.3f} below threshold")

        return CheckResult(
            name='scale_uniformity',
            passed=passed,
            score=float(uniformity),
            weight=weight,
            metrics={
                'mean_scale_x': mean_x,
                'mean_scale_y': mean_y,
                'uniformity_x': uniformity_x,
                'uniformity_y': uniformity_y,
                'scale_difference': scale_difference,
                'anisotropic_edges': anisotropic,
            },
            issues=issues
        )

    def _check_local_structure(self, before: np.ndarray, after: np.ndarray,
                               neighbors: List[List[int]]) -> CheckResult:
        weight = self.config['weights']['local_structure']
        node_scores = {}

        for center, around in enumerate(neighbors):
            if len(around) < 2:
                continue

            distance_scores = []
            for n in around:
                original = float(np.linalg.norm(before[n] - before[center]))
                transformed = float(np.linalg.norm(after[n] - after[center]))
                distance_scores.append(1.0 - min(1.0, abs(transformed - original) / max(original, 10.0)))

            angle_scores = []
            for a_pos in range(len(around)):
                for b_pos in range(a_pos + 1, len(around)):
                    change = angle_change(before, after, center, around[a_pos], around[b_pos])
                    if change is not None:
                        angle_scores.append(1.0 - min(1.0, change / np.pi))

            parts = [float(np.mean(distance_scores))]
            if angle_scores:
                parts.append(float(np.mean(angle_scores)))
            node_scores[center] = float(np.mean(parts))

        if not node_scores:
            return CheckResult('local_structure', True, 1.0, weight, {'measured_nodes': 0})

        scores = np.array(list(node_scores.values()))
        mean_score = float(scores.mean())
        good_rate = float(np.mean(scores >= self.config['min_local_score']))
        problematic = [i for i, s in node_scores.items() if s < self.config['problematic_node_score']]

        passed = mean_score >= self.config['min_local_score'] and good_rate >= self.config['min_within_rate']
        issues = [f"Node {i} local structure score {node_scores[i]:.2f}" for i in problematic[:10]]

        return CheckResult(
            name='local_structure',
            passed=passed,
            score=0.6 * mean_score + 0.4 * good_rate,
            weight=weight,
            metrics={
                'measured_nodes': len(node_scores),
                'mean_score': mean_score,
                'good_node_rate': good_rate,
                'problematic_nodes': problematic,
            },
            issues=issues
        )

    def _aggregate(self, checks: Dict[str, CheckResult], node_count: int) -> ValidationResult:
        total_weight = sum(check.weight for check in checks.values())
        score = sum(check.score * check.weight for check in checks.values()) / total_weight

        critical_failures = [
            name for name, check in checks.items()
            if check.weight >= self.config['critical_weight'] and not check.passed
        ]
        passed = not critical_failures and score > self.config['min_overall_score']
        confidence = min(1.0, node_count / 5) * score

        return ValidationResult(
            passed=passed,
            score=float(score),
            confidence=float(confidence),
            checks=checks,
            summary=self._summarize(checks, score, critical_failures),
            recommendations=self._recommendations(checks),
            node_count=node_count
        )

    @staticmethod
    def _summarize(checks: Dict[str, CheckResult], score: float, critical_failures: List[str]) -> str:
        all_passed = all(check.passed for check in checks.values())
        if score > 0.9 and all_passed:
            return "Excellent: geometry preserved"
        if score > 0.7 and not critical_failures:
            return "Good: minor deviations in secondary checks"
        if score > 0.5 and not critical_failures:
            return "Acceptable: noticeable but tolerable deviations"
        if critical_failures:
            return f"Critical violations: {', '.join(critical_failures)}"
        return "Poor: geometry not preserved"

    @staticmethod
    def _recommendations(checks: Dict[str, CheckResult]) -> List[str]:
        advice = {
            'distance_relations': "Check the estimated scale; edge lengths are not preserved",
            'angle_preservation': "Check the estimated rotation; neighbor angles changed",
            'connectivity': "Review the merge; stretched edges disconnect the structure",
            'scale_uniformity': "Transformation is not uniform across axes",
            'local_structure': "Inspect the listed nodes for local distortions",
        }
        return [advice[name] for name, check in checks.items() if not check.passed and name in advice]

    def _record(self, result: ValidationResult):
        self.validation_history.append({
            'timestamp': datetime.now().isoformat(),
            'passed': result.passed,
            'score': result.score,
            'node_count': result.node_count,
        })

    def get_stats(self) -> Dict:
        total = len(self.validation_history)
        if total == 0:
            return {'total_validations': 0, 'pass_rate': 0.0, 'average_score': 0.0}
        return {
            'total_validations': total,
            'pass_rate': sum(1 for entry in self.validation_history if entry['passed']) / total,
            'average_score': float(np.mean([entry['score'] for entry in self.validation_history])),
        }


def angle_change(before: np.ndarray, after: np.ndarray, center: int, a: int, b: int) -> Optional[float]:
    """Absolute change of the signed angle a-center-b, None for degenerate vectors"""
    va0 = before[a] - before[center]
    vb0 = before[b] - before[center]
    va1 = after[a] - after[center]
    vb1 = after[b] - after[center]
    if min(np.linalg.norm(va0), np.linalg.norm(vb0), np.linalg.norm(va1), np.linalg.norm(vb1)) < 1e-9:
        return None

    angle0 = np.arctan2(va0[0] * vb0[1] - va0[1] * vb0[0], np.dot(va0, vb0))
    angle1 = np.arctan2(va1[0] * vb1[1] - va1[1] * vb1[0], np.dot(va1, vb1))
    return float(abs((angle1 - angle0 + np.pi) % (2 * np.pi) - np.pi))


def create_topology_validator(config: Optional[Dict] = None) -> TopologyValidator:
    """Factory function to create topology validator"""
    return TopologyValidator(config)
