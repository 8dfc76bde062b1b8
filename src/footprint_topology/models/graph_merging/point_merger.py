"""
Point Merger
Distance-based greedy fusion of two point sets, used when structural matching fails
"""

import numpy as np
from scipy.spatial.distance import cdist
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional, Any
import logging

from footprint_topology.models.graph_merging.transform_estimation import Transformation


@dataclass
class MergedPoint:
    """Output point with its origin"""
    x: float
    y: float
    confidence: float
    source: str  # merged, footprint1, footprint2
    source_indices: Tuple[int, ...] = ()
    similarity: Optional[float] = None


@dataclass
class PointMatch:
    index_a: int
    index_b: int
    distance: float
    similarity: float


@dataclass
class PointMergeResult:
    """Result of a point-level merge"""
    points: List[MergedPoint]
    matches: List[PointMatch]
    efficiency: float
    stats: Dict[str, Any] = field(default_factory=dict)

    def positions(self) -> np.ndarray:
        if not self.points:
            return np.zeros((0, 2))
        return np.array([[p.x, p.y] for p in self.points])

    def confidences(self) -> np.ndarray:
        return np.array([p.confidence for p in self.points])


class PointMerger:
    """
    Greedy nearest-neighbor point fusion

    Each point of the first set, in order, claims the nearest unclaimed point
    of the second set inside the merge radius.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = self._get_default_config()
        if config:
            self.config.update(config)
        self.logger = logging.getLogger(__name__)

    def _get_default_config(self) -> Dict:
        return {
            'merge_distance': 40.0,       # pixels
            'min_similarity': 0.1,        # reject weaker pairs
            'confidence_boost': 1.3,
        }

    def merge(self,
              points_a: np.ndarray,
              points_b: np.ndarray,
              confidences_a: Optional[np.ndarray] = None,
              confidences_b: Optional[np.ndarray] = None,
              transformation: Optional[Transformation] = None,
              merge_distance: Optional[float] = None) -> PointMergeResult:
        """
        Merge two point sets

        Args:
            points_a: (n, 2) positions of the first footprint
            points_b: (m, 2) positions of the second footprint
            confidences_a: Per-point confidences (default 0.5)
            confidences_b: Per-point confidences (default 0.5)
            transformation: Optional transform mapping A onto B; B is mapped back into A's frame
            merge_distance: Overrides the configured merge radius

        Returns:
            PointMergeResult with fused points, matches and efficiency
        """
        points_a = np.asarray(points_a, dtype=float).reshape(-1, 2)
        points_b = np.asarray(points_b, dtype=float).reshape(-1, 2)
        confidences_a = self._confidences(confidences_a, len(points_a))
        confidences_b = self._confidences(confidences_b, len(points_b))
        radius = float(merge_distance if merge_distance is not None else self.config['merge_distance'])

        if transformation is not None and len(points_b):
            points_b = transformation.apply_inverse(points_b)

        # Step 1: Greedy pairing
        matches = self._find_matches(points_a, points_b, radius)

        # Step 2: Fuse matched pairs
        merged_points = []
        for match in matches:
            merged_points.append(self._merge_pair(
                points_a[match.index_a], points_b[match.index_b],
                confidences_a[match.index_a], confidences_b[match.index_b],
                match
            ))

        # Step 3: Carry unmatched points through
        matched_a = {m.index_a for m in matches}
        matched_b = {m.index_b for m in matches}
        for i in range(len(points_a)):
            if i not in matched_a:
                merged_points.append(MergedPoint(float(points_a[i, 0]), float(points_a[i, 1]),
                                                 float(confidences_a[i]), 'footprint1', (i,)))
        for j in range(len(points_b)):
            if j not in matched_b:
                merged_points.append(MergedPoint(float(points_b[j, 0]), float(points_b[j, 1]),
                                                 float(confidences_b[j]), 'footprint2', (j,)))

        total_before = len(points_a) + len(points_b)
        total_after = len(merged_points)
        efficiency = (total_before - total_after) / total_before if total_before > 0 else 0.0

        self.logger.info(f"Point merge: {len(matches)} pairs fused, {total_before} -> {total_after} points")

        return PointMergeResult(
            points=merged_points,
            matches=matches,
            efficiency=efficiency,
            stats={
                'points_a': len(points_a),
                'points_b': len(points_b),
                'total_before': total_before,
                'total_after': total_after,
                'merged_pairs': len(matches),
                'merge_distance': radius,
            }
        )

    def _find_matches(self, points_a: np.ndarray, points_b: np.ndarray, radius: float) -> List[PointMatch]:
        if len(points_a) == 0 or len(points_b) == 0 or radius <= 0:
            return []

        distances = cdist(points_a, points_b)
        claimed = np.zeros(len(points_b), dtype=bool)
        matches = []

        for i in range(len(points_a)):
            row = np.where(claimed, np.inf, distances[i])
            j = int(np.argmin(row))
            distance = float(row[j])
            if not np.isfinite(distance) or distance > radius:
                continue

            similarity = 1.0 - distance / radius
            if similarity < self.config['min_similarity']:
                continue

            claimed[j] = True
            matches.append(PointMatch(i, j, distance, similarity))

        return matches

    def _merge_pair(self, point_a: np.ndarray, point_b: np.ndarray,
                    confidence_a: float, confidence_b: float, match: PointMatch) -> MergedPoint:
        """Similarity-weighted average of a matched pair"""
        weight_a = confidence_a * match.similarity
        weight_b = confidence_b * match.similarity
        total = weight_a + weight_b

        if total > 0:
            position = (point_a * weight_a + point_b * weight_b) / total
            confidence = (confidence_a * weight_a + confidence_b * weight_b) / total
        else:
            position = (point_a + point_b) / 2
            confidence = (confidence_a + confidence_b) / 2

        confidence = float(np.clip(confidence * self.config['confidence_boost'], 0.0, 1.0))
        return MergedPoint(float(position[0]), float(position[1]), confidence, 'merged',
                           (match.index_a, match.index_b), match.similarity)

    @staticmethod
    def _confidences(values: Optional[np.ndarray], count: int) -> np.ndarray:
        if values is None:
            return np.full(count, 0.5)
        values = np.asarray(values, dtype=float)
        return np.clip(np.nan_to_num(values, nan=0.5), 0.0, 1.0)
