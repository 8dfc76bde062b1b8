"""
Structural Correspondence Module
Finds node correspondences between two footprint graphs from their star-vector signatures
"""

import numpy as np
import networkx as nx
from typing import Dict, List, Optional, Any, Set
from dataclasses import dataclass, field
import logging

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph
from footprint_topology.models.graph_extraction.star_vectors import (
    StarVectorBuilder, StarVectorSet
)


@dataclass
class Correspondence:
    """Hypothesized match between node index_a of graph A and index_b of graph B"""
    index_a: int
    index_b: int
    score: float
    residual: float = 0.0  # neighbor-distance profile mismatch, used to break ties


@dataclass
class CorrespondenceResult:
    """Data structure for storing correspondence matching results"""

    correspondences: List[Correspondence]
    unmatched_a: Set[int]
    unmatched_b: Set[int]

    # Quality metrics
    mean_score: float = 0.0
    coverage: float = 0.0
    topology_preservation: float = 1.0
    structural_similarity: float = 0.0

    metadata: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.correspondences)

    def node_mapping(self) -> Dict[int, int]:
        """index_a -> index_b"""
        return {c.index_a: c.index_b for c in self.correspondences}

    def top(self, count: int) -> List[Correspondence]:
        """Best correspondences by score, ties broken by residual"""
        ranked = sorted(self.correspondences, key=lambda c: (-c.score, c.residual, c.index_a))
        return ranked[:count]

    def to_dict(self) -> Dict:
        return {
            'correspondences': [
                {'index_a': c.index_a, 'index_b': c.index_b, 'score': c.score}
                for c in self.correspondences
            ],
            'unmatched_a': sorted(self.unmatched_a),
            'unmatched_b': sorted(self.unmatched_b),
            'mean_score': self.mean_score,
            'coverage': self.coverage,
            'topology_preservation': self.topology_preservation,
            'structural_similarity': self.structural_similarity,
        }


class StructuralCorrespondenceFinder:
    """
    Greedy one-pass correspondence search between two signature sets

    Each node of graph A, in registry order, claims the best unclaimed node of
    graph B when the signature similarity clears the match threshold. The
    assignment is intentionally greedy, not globally optimal.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize the correspondence finder

        Args:
            config: Configuration parameters for matching
        """
        self.config = self._get_default_config()
        if config:
            self.config.update(config)

        self.logger = logging.getLogger(__name__)
        self.signature_builder = StarVectorBuilder(self.config.get('signature_config'))

    def _get_default_config(self) -> Dict:
        """Get default configuration for correspondence matching"""
        return {
            # Signature similarity
            'angle_weight': 0.4,               # angle histogram intersection
            'distance_weight': 0.3,            # distance histogram intersection
            'degree_weight': 0.3,              # degree closeness
            'degree_scale': 10.0,              # degree difference giving zero closeness
            'match_threshold': 0.6,            # minimum similarity for acceptance
            'tie_tolerance': 1e-9,             # scores closer than this are ties

            # Structural similarity
            'mean_score_weight': 0.5,
            'coverage_weight': 0.3,
            'topology_weight': 0.2,

            'signature_config': None,
        }

    def find_correspondence(self,
                            graph_a: FootprintGraph,
                            graph_b: FootprintGraph,
                            signatures_a: Optional[StarVectorSet] = None,
                            signatures_b: Optional[StarVectorSet] = None) -> CorrespondenceResult:
        """
        Find node correspondences between two graphs

        Args:
            graph_a: First graph
            graph_b: Second graph
            signatures_a: Precomputed signatures of graph_a
            signatures_b: Precomputed signatures of graph_b

        Returns:
            CorrespondenceResult with matches and structural similarity
        """
        # Step 1: Signatures
        if signatures_a is None:
            signatures_a = self.signature_builder.build(graph_a)
        if signatures_b is None:
            signatures_b = self.signature_builder.build(graph_b)

        if signatures_a is None or signatures_b is None:
            self.logger.info("Too few nodes for star-vector correspondence")
            return CorrespondenceResult(
                correspondences=[],
                unmatched_a=set(range(graph_a.node_count)),
                unmatched_b=set(range(graph_b.node_count)),
                topology_preservation=1.0,
                metadata={'reason': 'insufficient_nodes'}
            )

        # Step 2: Similarity and tie-break matrices
        scores = self.similarity_matrix(signatures_a, signatures_b)
        residuals = self._residual_matrix(signatures_a, signatures_b)

        # Step 3: Greedy one-pass assignment
        correspondences = self._greedy_assignment(scores, residuals)

        # Step 4: Quality assessment
        result = CorrespondenceResult(
            correspondences=correspondences,
            unmatched_a=set(range(len(signatures_a))) - {c.index_a for c in correspondences},
            unmatched_b=set(range(len(signatures_b))) - {c.index_b for c in correspondences},
        )
        self._assess_correspondence_quality(graph_a, graph_b, result)
        result.metadata = {
            'graph_a': graph_a.id,
            'graph_b': graph_b.id,
            'nodes_a': graph_a.node_count,
            'nodes_b': graph_b.node_count,
        }

        self.logger.info(f"Correspondence matching completed. Matched {len(correspondences)} nodes, "
                         f"structural similarity {result.structural_similarity:.3f}")
        return result

    def similarity_matrix(self, signatures_a: StarVectorSet, signatures_b: StarVectorSet) -> np.ndarray:
        """Pairwise signature similarity (angle / distance / degree)"""
        angles_a = np.array([s.angle_histogram for s in signatures_a])
        angles_b = np.array([s.angle_histogram for s in signatures_b])
        dists_a = np.array([s.distance_histogram for s in signatures_a])
        dists_b = np.array([s.distance_histogram for s in signatures_b])
        degrees_a = np.array([s.degree for s in signatures_a], dtype=float)
        degrees_b = np.array([s.degree for s in signatures_b], dtype=float)

        angle_score = np.minimum(angles_a[:, None, :], angles_b[None, :, :]).sum(axis=2)
        distance_score = np.minimum(dists_a[:, None, :], dists_b[None, :, :]).sum(axis=2)
        degree_diff = np.abs(degrees_a[:, None] - degrees_b[None, :])
        degree_score = np.maximum(0.0, 1.0 - degree_diff / self.config['degree_scale'])

        return (self.config['angle_weight'] * angle_score +
                self.config['distance_weight'] * distance_score +
                self.config['degree_weight'] * degree_score)

    def _residual_matrix(self, signatures_a: StarVectorSet, signatures_b: StarVectorSet) -> np.ndarray:
        length = max(max(len(s.distance_profile) for s in signatures_a),
                     max(len(s.distance_profile) for s in signatures_b), 1)

        def padded(signatures):
            return np.array([
                np.pad(s.distance_profile, (0, length - len(s.distance_profile)), constant_values=1.0)
                for s in signatures
            ])

        profiles_a = padded(signatures_a)
        profiles_b = padded(signatures_b)
        return np.abs(profiles_a[:, None, :] - profiles_b[None, :, :]).mean(axis=2)

    def _greedy_assignment(self, scores: np.ndarray, residuals: np.ndarray) -> List[Correspondence]:
        threshold = self.config['match_threshold']
        tolerance = self.config['tie_tolerance']
        claimed = np.zeros(scores.shape[1], dtype=bool)
        correspondences = []

        for i in range(scores.shape[0]):
            if claimed.all():
                break

            row = np.where(claimed, -np.inf, scores[i])
            best_score = row.max()
            if best_score <= threshold:
                continue

            tied = np.flatnonzero(row >= best_score - tolerance)
            j = int(tied[np.argmin(residuals[i, tied])])

            claimed[j] = True
            correspondences.append(Correspondence(
                index_a=i,
                index_b=j,
                score=float(scores[i, j]),
                residual=float(residuals[i, j])
            ))

        return correspondences

    def _assess_correspondence_quality(self,
                                       graph_a: FootprintGraph,
                                       graph_b: FootprintGraph,
                                       result: CorrespondenceResult):
        """Fill mean score, coverage, topology preservation and structural similarity"""
        matches = result.correspondences
        min_nodes = min(graph_a.node_count, graph_b.node_count)

        result.mean_score = float(np.mean([c.score for c in matches])) if matches else 0.0
        result.coverage = len(matches) / min_nodes if min_nodes > 0 else 0.0
        result.topology_preservation = self.topology_preservation(graph_a, graph_b, matches)
        result.structural_similarity = (
            self.config['mean_score_weight'] * result.mean_score +
            self.config['coverage_weight'] * result.coverage +
            self.config['topology_weight'] * result.topology_preservation
        )

    @staticmethod
    def topology_preservation(graph_a: FootprintGraph,
                              graph_b: FootprintGraph,
                              matches: List[Correspondence]) -> float:
        """
        Fraction of adjacency relations among matched nodes that hold in both graphs

        A relation is a matched pair adjacent in at least one of the graphs.
        """
        if len(matches) < 2:
            return 1.0

        adjacency_a = adjacency_matrix(graph_a)
        adjacency_b = adjacency_matrix(graph_b)
        index_a = np.array([c.index_a for c in matches])
        index_b = np.array([c.index_b for c in matches])

        sub_a = adjacency_a[np.ix_(index_a, index_a)]
        sub_b = adjacency_b[np.ix_(index_b, index_b)]
        upper = np.triu(np.ones_like(sub_a, dtype=bool), k=1)

        relations = (sub_a | sub_b) & upper
        consistent = (sub_a & sub_b) & upper

        total = int(relations.sum())
        if total == 0:
            return 1.0
        return int(consistent.sum()) / total


def adjacency_matrix(graph: FootprintGraph) -> np.ndarray:
    """Boolean adjacency matrix in registry order"""
    if graph.node_count == 0:
        return np.zeros((0, 0), dtype=bool)
    return nx.to_numpy_array(graph.to_networkx(), nodelist=graph.node_ids()) > 0


def create_correspondence_finder(config: Optional[Dict] = None) -> StructuralCorrespondenceFinder:
    """Factory function to create correspondence finder"""
    return StructuralCorrespondenceFinder(config)
