"""
Coarse Graph Matching Module
Cascading invariant comparison deciding whether two footprint graphs are the same outsole
"""

import numpy as np
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any, Sequence
import logging
from tqdm import tqdm

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph
from footprint_topology.models.graph_extraction.graph_invariants import GraphInvariants
from footprint_topology.models.graph_extraction.star_vectors import StarVectorBuilder


class MatchDecision(str, Enum):
    SAME = 'same'
    SIMILAR = 'similar'
    DIFFERENT = 'different'


@dataclass
class MatchResult:
    """Outcome of a coarse graph comparison"""
    similarity: float
    decision: MatchDecision
    reason: str
    confidence: float
    stage: str  # quick_check, basic, detailed
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'similarity': self.similarity,
            'decision': self.decision.value,
            'reason': self.reason,
            'confidence': self.confidence,
            'stage': self.stage,
            'details': self.details,
        }


def ratio(a: float, b: float) -> float:
    """min/max ratio, 1.0 when both are zero"""
    largest = max(a, b)
    if largest <= 0:
        return 1.0
    return min(a, b) / largest


def closeness(a: float, b: float, tolerance: float) -> float:
    """1 - |a - b| / tolerance, floored at 0"""
    return 1.0 - min(1.0, abs(a - b) / tolerance)


class CoarseMatcher:
    """
    Compare two footprint graphs with a cheap-to-expensive cascade

    Stage 1 rejects graphs of clearly different size, stage 2 compares scalar
    invariants and the degree histogram, stage 3 (only for promising pairs)
    compares edge-length and node-distribution statistics.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize the coarse matcher

        Args:
            config: Thresholds and weights overriding the defaults
        """
        self.config = self._get_default_config()
        if config:
            self.config.update(config)

        self.logger = logging.getLogger(__name__)
        self.match_history = deque(maxlen=self.config['history_size'])
        self._star_builder = StarVectorBuilder()

    def _get_default_config(self) -> Dict:
        """Get default configuration for coarse matching"""
        return {
            # Decisions
            'same_threshold': 0.7,
            'similar_threshold': 0.4,

            # Stage 1
            'min_node_ratio': 0.7,
            'min_edge_ratio': 0.6,

            # Stage 2 weights (sum to 1)
            'basic_weights': {
                'node_count': 0.20,
                'edge_count': 0.15,
                'avg_degree': 0.15,
                'clustering': 0.15,
                'diameter': 0.10,
                'density': 0.10,
                'degree_histogram': 0.15,
            },
            'avg_degree_tolerance': 0.3,   # fraction of the larger average degree
            'clustering_tolerance': 0.2,
            'density_tolerance': 0.1,

            # Stage 3
            'enable_detailed_match': True,
            'detailed_min_basic_score': 0.5,
            'detailed_weights': {
                'edge_length_histogram': 0.3,
                'normalized_edge_lengths': 0.4,
                'node_distribution': 0.3,
            },
            'star_vector_weight': 0.0,     # optional star-vector profile comparison
            'mean_length_tolerance': 0.2,
            'std_length_tolerance': 0.1,
            'centroid_tolerance': 0.3,
            'min_nodes_for_distribution': 5,

            # Final score
            'basic_stage_weight': 0.4,
            'detailed_stage_weight': 0.6,

            'history_size': 100,
        }

    def compare(self, graph_a: FootprintGraph, graph_b: FootprintGraph) -> MatchResult:
        """
        Compare two graphs

        Args:
            graph_a: First graph
            graph_b: Second graph

        Returns:
            MatchResult with similarity in [0, 1] and a same/similar/different decision
        """
        inv_a = graph_a.get_invariants()
        inv_b = graph_b.get_invariants()

        if inv_a.node_count == 0 or inv_b.node_count == 0:
            result = self._make_decision(0.0, 'quick_check', {}, reason="Empty graph")
            self._record_match(graph_a, graph_b, result)
            return result

        # Stage 1: Quick reject
        quick = self.quick_check(inv_a, inv_b)
        details = {'quick_check': quick}
        if not quick['passed']:
            result = self._make_decision(quick['score'], 'quick_check', details, reason=quick['reason'])
            self._record_match(graph_a, graph_b, result)
            return result

        # Stage 2: Basic invariants
        basic = self.compare_basic_invariants(inv_a, inv_b)
        details['basic'] = basic
        similarity = basic['score']
        stage = 'basic'

        # Stage 3: Detailed comparison for promising pairs
        if self.config['enable_detailed_match'] and basic['score'] > self.config['detailed_min_basic_score']:
            detailed = self.detailed_compare(graph_a, graph_b, inv_a, inv_b)
            details['detailed'] = detailed
            similarity = (self.config['basic_stage_weight'] * basic['score'] +
                          self.config['detailed_stage_weight'] * detailed['score'])
            stage = 'detailed'

        result = self._make_decision(float(np.clip(similarity, 0.0, 1.0)), stage, details)
        self._record_match(graph_a, graph_b, result)

        self.logger.debug(f"Compared {graph_a.id} vs {graph_b.id}: "
                          f"{result.decision.value} ({result.similarity:.3f})")
        return result

    def is_same_shoe(self, graph_a: FootprintGraph, graph_b: FootprintGraph) -> bool:
        return self.compare(graph_a, graph_b).decision == MatchDecision.SAME

    def quick_check(self, inv_a: GraphInvariants, inv_b: GraphInvariants) -> Dict:
        """Stage 1: size ratios"""
        node_ratio = ratio(inv_a.node_count, inv_b.node_count)
        if node_ratio < self.config['min_node_ratio']:
            return {
                'passed': False,
                'score': node_ratio,
                'reason': f"Node count mismatch ({inv_a.node_count} vs {inv_b.node_count})"
            }

        edge_ratio = ratio(inv_a.edge_count, inv_b.edge_count)
        if edge_ratio < self.config['min_edge_ratio']:
            return {
                'passed': False,
                'score': (node_ratio + edge_ratio) / 2,
                'reason': f"Edge count mismatch ({inv_a.edge_count} vs {inv_b.edge_count})"
            }

        diameter_ratio = ratio(inv_a.diameter, inv_b.diameter)
        return {
            'passed': True,
            'score': (node_ratio + edge_ratio + diameter_ratio) / 3,
            'node_ratio': node_ratio,
            'edge_ratio': edge_ratio,
            'diameter_ratio': diameter_ratio,
            'reason': "Quick check passed"
        }

    def compare_basic_invariants(self, inv_a: GraphInvariants, inv_b: GraphInvariants) -> Dict:
        """Stage 2: weighted scalar invariant comparison"""
        degree_tolerance = max(1.0, max(inv_a.avg_degree, inv_b.avg_degree) * self.config['avg_degree_tolerance'])

        scores = {
            'node_count': ratio(inv_a.node_count, inv_b.node_count),
            'edge_count': ratio(inv_a.edge_count, inv_b.edge_count),
            'avg_degree': closeness(inv_a.avg_degree, inv_b.avg_degree, degree_tolerance),
            'clustering': closeness(inv_a.clustering_coefficient, inv_b.clustering_coefficient,
                                    self.config['clustering_tolerance']),
            'diameter': ratio(inv_a.diameter, inv_b.diameter),
            'density': closeness(inv_a.density, inv_b.density, self.config['density_tolerance']),
            'degree_histogram': degree_histogram_similarity(inv_a.degree_histogram, inv_b.degree_histogram),
        }
        return self._weighted(scores, self.config['basic_weights'])

    def detailed_compare(self,
                         graph_a: FootprintGraph,
                         graph_b: FootprintGraph,
                         inv_a: GraphInvariants,
                         inv_b: GraphInvariants) -> Dict:
        """Stage 3: edge-length and node-distribution statistics"""
        weights = dict(self.config['detailed_weights'])
        scores = {
            'edge_length_histogram': histogram_similarity(inv_a.edge_length_histogram,
                                                          inv_b.edge_length_histogram),
            'normalized_edge_lengths': self._compare_normalized_lengths(inv_a.normalized_edge_lengths,
                                                                        inv_b.normalized_edge_lengths),
        }

        min_nodes = self.config['min_nodes_for_distribution']
        if inv_a.node_count > min_nodes and inv_b.node_count > min_nodes:
            scores['node_distribution'] = self._compare_node_distribution(
                inv_a.normalized_node_distribution, inv_b.normalized_node_distribution
            )
        else:
            weights.pop('node_distribution', None)

        if self.config['star_vector_weight'] > 0:
            stars_a = self._star_builder.build(graph_a)
            stars_b = self._star_builder.build(graph_b)
            if stars_a is not None and stars_b is not None:
                forward = stars_a.compare(stars_b)['similarity']
                backward = stars_b.compare(stars_a)['similarity']
                scores['star_vectors'] = (forward + backward) / 2
                weights['star_vectors'] = self.config['star_vector_weight']

        return self._weighted(scores, weights)

    def _compare_normalized_lengths(self, lengths_a: List[float], lengths_b: List[float]) -> float:
        if not lengths_a or not lengths_b:
            return 1.0 if not lengths_a and not lengths_b else 0.0

        mean_score = closeness(float(np.mean(lengths_a)), float(np.mean(lengths_b)),
                               self.config['mean_length_tolerance'])
        std_score = closeness(float(np.std(lengths_a)), float(np.std(lengths_b)),
                              self.config['std_length_tolerance'])
        return (mean_score + std_score) / 2

    def _compare_node_distribution(self,
                                   distribution_a: List[Dict[str, float]],
                                   distribution_b: List[Dict[str, float]]) -> float:
        """Compare how far each centroid sits from its bounding-box centre"""
        centroid_a = np.mean([[p['nx'], p['ny']] for p in distribution_a], axis=0)
        centroid_b = np.mean([[p['nx'], p['ny']] for p in distribution_b], axis=0)
        offset_a = float(np.linalg.norm(centroid_a))
        offset_b = float(np.linalg.norm(centroid_b))
        return closeness(offset_a, offset_b, self.config['centroid_tolerance'])

    @staticmethod
    def _weighted(scores: Dict[str, float], weights: Dict[str, float]) -> Dict:
        total_weight = sum(weights[name] for name in scores if name in weights)
        total = sum(scores[name] * weights[name] for name in scores if name in weights)
        comparisons = [
            {'name': name, 'score': float(score), 'weight': weights.get(name, 0.0)}
            for name, score in scores.items()
        ]
        return {
            'score': float(total / total_weight) if total_weight > 0 else 0.0,
            'comparisons': comparisons
        }

    def _make_decision(self,
                       similarity: float,
                       stage: str,
                       details: Dict,
                       reason: Optional[str] = None) -> MatchResult:
        if similarity >= self.config['same_threshold']:
            decision = MatchDecision.SAME
            confidence = similarity
            reason = reason or f"High structural similarity ({similarity:.2f})"
        elif similarity >= self.config['similar_threshold']:
            decision = MatchDecision.SIMILAR
            confidence = similarity
            reason = reason or f"Partial structural similarity ({similarity:.2f})"
        else:
            decision = MatchDecision.DIFFERENT
            confidence = 1.0 - similarity
            if reason is None:
                weakest = self._weakest_comparison(details)
                reason = f"Low structural similarity ({similarity:.2f})"
                if weakest is not None:
                    reason += f"; weakest comparison: {weakest['name']} ({weakest['score']:.2f})"

        return MatchResult(
            similarity=similarity,
            decision=decision,
            reason=reason,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            stage=stage,
            details=details
        )

    @staticmethod
    def _weakest_comparison(details: Dict) -> Optional[Dict]:
        comparisons = []
        for stage in ('basic', 'detailed'):
            comparisons.extend(details.get(stage, {}).get('comparisons', []))
        if not comparisons:
            return None
        return min(comparisons, key=lambda c: c['score'])

    def find_most_similar(self,
                          target: FootprintGraph,
                          candidates: Sequence[FootprintGraph],
                          max_results: int = 5,
                          show_progress: bool = False) -> Dict:
        """
        Rank candidate graphs by similarity to a target

        Args:
            target: Graph to search for
            candidates: Graphs to compare against (the target itself is skipped)
            max_results: Number of ranked results to return
            show_progress: Display a progress bar

        Returns:
            Dictionary with ranked results and per-decision counts
        """
        ranked = []
        for candidate in tqdm(candidates, desc="Comparing graphs", disable=not show_progress):
            if candidate is target or candidate.id == target.id:
                continue
            ranked.append({'graph_id': candidate.id, 'graph': candidate,
                           'result': self.compare(target, candidate)})

        ranked.sort(key=lambda item: item['result'].similarity, reverse=True)

        counts = {decision: 0 for decision in MatchDecision}
        for item in ranked:
            counts[item['result'].decision] += 1

        return {
            'results': ranked[:max_results],
            'total_compared': len(ranked),
            'same_count': counts[MatchDecision.SAME],
            'similar_count': counts[MatchDecision.SIMILAR],
            'different_count': counts[MatchDecision.DIFFERENT],
        }

    def _record_match(self, graph_a: FootprintGraph, graph_b: FootprintGraph, result: MatchResult):
        self.match_history.append({
            'graph_a': graph_a.id,
            'graph_b': graph_b.id,
            'similarity': result.similarity,
            'decision': result.decision.value,
            'timestamp': datetime.now().isoformat()
        })

    def get_stats(self) -> Dict:
        """Statistics over the retained comparison history"""
        total = len(self.match_history)
        if total == 0:
            return {'total_comparisons': 0, 'same': 0, 'similar': 0, 'different': 0,
                    'average_similarity': 0.0}

        decisions = [entry['decision'] for entry in self.match_history]
        return {
            'total_comparisons': total,
            'same': decisions.count(MatchDecision.SAME.value),
            'similar': decisions.count(MatchDecision.SIMILAR.value),
            'different': decisions.count(MatchDecision.DIFFERENT.value),
            'average_similarity': float(np.mean([entry['similarity'] for entry in self.match_history])),
        }


def histogram_similarity(hist_a: Sequence[float], hist_b: Sequence[float]) -> float:
    """1 - mean relative bin difference; histograms of different length do not match"""
    if len(hist_a) != len(hist_b):
        return 0.0
    if len(hist_a) == 0:
        return 1.0

    differences = [abs(a - b) / max(a, b, 1) for a, b in zip(hist_a, hist_b)]
    return 1.0 - min(1.0, float(np.mean(differences)))


def degree_histogram_similarity(hist_a: Dict[int, int], hist_b: Dict[int, int]) -> float:
    """Histogram similarity after aligning both degree histograms on the union of degrees"""
    degrees = sorted(set(hist_a) | set(hist_b))
    return histogram_similarity([hist_a.get(d, 0) for d in degrees],
                                [hist_b.get(d, 0) for d in degrees])


def create_coarse_matcher(config: Optional[Dict] = None) -> CoarseMatcher:
    """Factory function to create coarse matcher"""
    return CoarseMatcher(config)
