"""
Star-Vector Signatures
Per-node local topology fingerprints built from vectors to the nearest neighbors
"""

import numpy as np
from scipy.spatial import KDTree
from dataclasses import dataclass, field
from typing import List, Dict, Optional
import logging

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph


@dataclass
class StarVector:
    """Vector from a node to one of its nearest neighbors"""
    to_index: int
    dx: float
    dy: float
    distance: float
    angle: float  # radians, atan2(dy, dx)


@dataclass
class NodeSignature:
    """Star-vector signature of a single node"""
    index: int
    node_id: str
    vectors: List[StarVector]
    angle_histogram: np.ndarray
    distance_histogram: np.ndarray
    degree: int
    reference_angle: float
    distance_profile: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'node_id': self.node_id,
            'degree': self.degree,
            'reference_angle': float(self.reference_angle),
            'angle_histogram': self.angle_histogram.tolist(),
            'distance_histogram': self.distance_histogram.tolist(),
            'vectors': [
                {'to': v.to_index, 'dx': v.dx, 'dy': v.dy, 'distance': v.distance, 'angle': v.angle}
                for v in self.vectors
            ]
        }


class StarVectorSet:
    """Signatures for every node of one graph"""

    def __init__(self, graph_id: str, signatures: List[NodeSignature]):
        self.graph_id = graph_id
        self.signatures = signatures
        self.logger = logging.getLogger(__name__)

    def __len__(self) -> int:
        return len(self.signatures)

    def __iter__(self):
        return iter(self.signatures)

    def __getitem__(self, index: int) -> NodeSignature:
        return self.signatures[index]

    def compare(self, other: 'StarVectorSet', match_threshold: float = 0.7) -> Dict:
        """
        Compare two signature sets point by point

        Each signature is paired with its best profile match in the other set.

        Args:
            other: Signature set of the second graph
            match_threshold: Minimum profile similarity for a point match

        Returns:
            Dictionary with similarity, match count and coverage
        """
        if not self.signatures or not other.signatures:
            return {'similarity': 0.0, 'matches': 0, 'coverage': 0.0, 'average_score': 0.0}

        scores = []
        for signature in self.signatures:
            best = max(profile_similarity(signature, candidate) for candidate in other.signatures)
            if best > match_threshold:
                scores.append(best)

        coverage = len(scores) / min(len(self.signatures), len(other.signatures))
        coverage = min(1.0, coverage)
        average_score = float(np.mean(scores)) if scores else 0.0

        return {
            'similarity': average_score * coverage,
            'matches': len(scores),
            'coverage': coverage,
            'average_score': average_score
        }


class StarVectorBuilder:
    """
    Build rotation- and scale-invariant star-vector signatures

    Angles are measured relative to the node's resultant star vector and
    distances relative to the longest kept vector.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = self._get_default_config()
        if config:
            self.config.update(config)
        self.logger = logging.getLogger(__name__)

    def _get_default_config(self) -> Dict:
        return {
            'max_vectors': 10,      # Nearest neighbors kept per node
            'angle_bins': 8,
            'distance_bins': 4,
            'min_points': 4,        # Fewer points do not carry local structure
        }

    def build(self, graph: FootprintGraph) -> Optional[StarVectorSet]:
        """
        Build signatures for all nodes of a graph

        Returns:
            StarVectorSet, or None when the graph has too few nodes
        """
        positions = graph.positions()
        degrees = [node.degree for node in graph.nodes.values()]
        return self.build_from_positions(positions, graph.node_ids(), degrees, graph_id=graph.id)

    def build_from_positions(self,
                             positions: np.ndarray,
                             node_ids: Optional[List[str]] = None,
                             degrees: Optional[List[int]] = None,
                             graph_id: str = 'points') -> Optional[StarVectorSet]:
        """Build signatures for raw positions"""
        positions = np.asarray(positions, dtype=float)
        num_points = len(positions)

        if num_points < self.config['min_points']:
            self.logger.debug(f"Not enough points for star vectors: {num_points}")
            return None

        if node_ids is None:
            node_ids = [str(i) for i in range(num_points)]

        k = min(self.config['max_vectors'] + 1, num_points)
        tree = KDTree(positions)
        distances, indices = tree.query(positions, k=k)

        signatures = []
        for i in range(num_points):
            neighbors = sorted(
                (float(d), int(j)) for d, j in zip(distances[i], indices[i]) if j != i
            )[:self.config['max_vectors']]

            vectors = []
            for distance, j in neighbors:
                dx = float(positions[j, 0] - positions[i, 0])
                dy = float(positions[j, 1] - positions[i, 1])
                vectors.append(StarVector(j, dx, dy, distance, float(np.arctan2(dy, dx))))

            degree = degrees[i] if degrees is not None else len(vectors)
            signatures.append(self._build_signature(i, node_ids[i], vectors, degree))

        self.logger.debug(f"Built {len(signatures)} star-vector signatures for {graph_id}")
        return StarVectorSet(graph_id, signatures)

    def _build_signature(self, index: int, node_id: str,
                         vectors: List[StarVector], degree: int) -> NodeSignature:
        angle_bins = self.config['angle_bins']
        distance_bins = self.config['distance_bins']
        angle_histogram = np.zeros(angle_bins)
        distance_histogram = np.zeros(distance_bins)

        if not vectors:
            return NodeSignature(index, node_id, vectors, angle_histogram, distance_histogram,
                                 degree, 0.0)

        reference_angle = self._reference_angle(vectors)
        max_distance = max(v.distance for v in vectors)

        for vector in vectors:
            # Offset keeps vectors aligned with the reference in the first bin
            relative = (vector.angle - reference_angle + 1e-9) % (2 * np.pi)
            angle_bin = int(relative / (2 * np.pi) * angle_bins) % angle_bins
            angle_histogram[angle_bin] += 1

            if max_distance > 0:
                distance_bin = min(distance_bins - 1, int(vector.distance / max_distance * distance_bins))
            else:
                distance_bin = 0
            distance_histogram[distance_bin] += 1

        angle_histogram /= len(vectors)
        distance_histogram /= len(vectors)

        profile = np.array([v.distance for v in vectors]) / max_distance if max_distance > 0 else np.zeros(len(vectors))

        return NodeSignature(
            index=index,
            node_id=node_id,
            vectors=vectors,
            angle_histogram=angle_histogram,
            distance_histogram=distance_histogram,
            degree=degree,
            reference_angle=reference_angle,
            distance_profile=profile
        )

    @staticmethod
    def _reference_angle(vectors: List[StarVector]) -> float:
        """Direction of the resultant vector, or of the nearest neighbor when it cancels out"""
        sum_dx = sum(v.dx for v in vectors)
        sum_dy = sum(v.dy for v in vectors)
        mean_distance = sum(v.distance for v in vectors) / len(vectors)
        if np.hypot(sum_dx, sum_dy) > 1e-6 * max(mean_distance, 1e-12):
            return float(np.arctan2(sum_dy, sum_dx))
        return vectors[0].angle


def profile_similarity(first: NodeSignature, second: NodeSignature) -> float:
    """Histogram profile similarity: 0.6 angle + 0.4 distance"""
    angle_score = 1.0 - float(np.mean(np.abs(first.angle_histogram - second.angle_histogram)))
    distance_score = 1.0 - float(np.mean(np.abs(first.distance_histogram - second.distance_histogram)))
    return 0.6 * angle_score + 0.4 * distance_score


def profile_residual(first: NodeSignature, second: NodeSignature) -> float:
    """Mean absolute difference of sorted normalized neighbor distances"""
    a = first.distance_profile
    b = second.distance_profile
    length = max(len(a), len(b))
    if length == 0:
        return 0.0
    a = np.pad(a, (0, length - len(a)), constant_values=1.0)
    b = np.pad(b, (0, length - len(b)), constant_values=1.0)
    return float(np.mean(np.abs(a - b)))
