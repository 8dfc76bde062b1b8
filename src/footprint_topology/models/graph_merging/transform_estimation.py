"""
Rigid Transform Estimation
Approximate Procrustes alignment from node correspondences
"""

import numpy as np
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict, List, Tuple, Optional, Sequence
import logging

from footprint_topology.utils.graph_correspondence import Correspondence


class TransformKind(str, Enum):
    NONE = 'none'
    TRANSLATION = 'translation_only'
    RIGID = 'rigid'


@dataclass
class Transformation:
    """
    Similarity transform mapping graph A's frame onto graph B's frame

    p_b = scale * R(rotation) * p_a + (dx, dy), rotation in degrees.
    """
    kind: TransformKind = TransformKind.NONE
    dx: float = 0.0
    dy: float = 0.0
    rotation: float = 0.0
    scale: float = 1.0
    confidence: float = 0.5
    matches_used: int = 0

    @classmethod
    def identity(cls) -> 'Transformation':
        return cls()

    @property
    def translation(self) -> Dict[str, float]:
        return {'dx': self.dx, 'dy': self.dy}

    def linear_part(self) -> np.ndarray:
        theta = np.radians(self.rotation)
        cos_t, sin_t = np.cos(theta), np.sin(theta)
        return self.scale * np.array([[cos_t, -sin_t], [sin_t, cos_t]])

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Map points from A's frame into B's frame"""
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        return points @ self.linear_part().T + np.array([self.dx, self.dy])

    def apply_inverse(self, points: np.ndarray) -> np.ndarray:
        """Map points from B's frame into A's frame"""
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        scale = self.scale if abs(self.scale) > 1e-12 else 1.0
        theta = np.radians(self.rotation)
        cos_t, sin_t = np.cos(theta), np.sin(theta)
        inverse_rotation = np.array([[cos_t, sin_t], [-sin_t, cos_t]])
        return (points - np.array([self.dx, self.dy])) @ inverse_rotation.T / scale

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Transformation':
        translation = data.get('translation', {})
        return cls(
            kind=TransformKind(data.get('kind', TransformKind.RIGID.value)),
            dx=float(data.get('dx', translation.get('dx', 0.0))),
            dy=float(data.get('dy', translation.get('dy', 0.0))),
            rotation=float(data.get('rotation', 0.0)),
            scale=float(data.get('scale', 1.0)),
            confidence=float(data.get('confidence', 0.5)),
            matches_used=int(data.get('matches_used', 0))
        )


class RigidTransformEstimator:
    """
    Estimate translation, rotation and uniform scale from correspondences

    Uses the best few correspondences only: rotation is the circular mean of
    chord-angle differences and scale the mean chord-length ratio over all
    pairs of those correspondences.
    """

    def __init__(self, config: Optional[Dict] = None):
        self.config = self._get_default_config()
        if config:
            self.config.update(config)
        self.logger = logging.getLogger(__name__)

    def _get_default_config(self) -> Dict:
        return {
            'min_matches': 3,              # fewer usable pairs give a translation-only estimate
            'top_matches': 5,              # correspondences used for estimation
            'translation_confidence': 0.6,
            'base_confidence': 0.5,
            'confidence_per_match': 0.01,
            'max_confidence': 0.95,
            'min_chord_length': 1e-6,
        }

    def estimate(self,
                 points_a: np.ndarray,
                 points_b: np.ndarray,
                 correspondences: Sequence[Correspondence]) -> Transformation:
        """
        Estimate the transform mapping points_a onto points_b

        Args:
            points_a: (n, 2) positions of graph A
            points_b: (m, 2) positions of graph B
            correspondences: Node correspondences between A and B

        Returns:
            Transformation (translation only below min_matches usable pairs, kind none without any)
        """
        points_a = np.asarray(points_a, dtype=float)
        points_b = np.asarray(points_b, dtype=float)
        count = len(correspondences)

        # Step 1: Best correspondences with usable coordinates
        ranked = sorted(correspondences, key=lambda c: (-c.score, c.residual, c.index_a))
        pairs = [
            (points_a[c.index_a], points_b[c.index_b])
            for c in ranked[:self.config['top_matches']]
            if c.index_a < len(points_a) and c.index_b < len(points_b)
            and np.all(np.isfinite(points_a[c.index_a])) and np.all(np.isfinite(points_b[c.index_b]))
        ]

        if len(pairs) < self.config['min_matches']:
            return self._translation_only(pairs)

        pa = np.array([p for p, _ in pairs])
        pb = np.array([q for _, q in pairs])

        # Step 2: Chord angles and length ratios
        angle_differences = []
        length_ratios = []
        min_length = self.config['min_chord_length']
        for i in range(len(pa)):
            for j in range(i + 1, len(pa)):
                chord_a = pa[j] - pa[i]
                chord_b = pb[j] - pb[i]
                length_a = np.hypot(*chord_a)
                length_b = np.hypot(*chord_b)
                if length_a < min_length or length_b < min_length:
                    continue
                angle_differences.append(np.arctan2(chord_b[1], chord_b[0]) - np.arctan2(chord_a[1], chord_a[0]))
                length_ratios.append(length_b / length_a)

        if not angle_differences:
            return self._translation_only(pairs)

        # Circular mean keeps differences near +-180 degrees together
        rotation = float(np.arctan2(np.mean(np.sin(angle_differences)), np.mean(np.cos(angle_differences))))
        scale = float(np.mean(length_ratios))

        # Step 3: Translation from the centroids
        centroid_a = pa.mean(axis=0)
        centroid_b = pb.mean(axis=0)
        transform = Transformation(kind=TransformKind.RIGID, rotation=float(np.degrees(rotation)), scale=scale)
        translation = centroid_b - transform.linear_part() @ centroid_a

        transform.dx = float(translation[0])
        transform.dy = float(translation[1])
        transform.matches_used = len(pairs)
        transform.confidence = min(self.config['max_confidence'],
                                   self.config['base_confidence'] + self.config['confidence_per_match'] * count)

        self.logger.info(f"Estimated rigid transform: rotation {transform.rotation:.1f} deg, "
                         f"scale {transform.scale:.3f}, translation ({transform.dx:.1f}, {transform.dy:.1f})")
        return transform

    def _translation_only(self, pairs: List[Tuple[np.ndarray, np.ndarray]]) -> Transformation:
        self.logger.debug(f"Only {len(pairs)} usable correspondences, estimating translation only")
        if not pairs:
            return Transformation(kind=TransformKind.NONE, confidence=0.5)

        offset = np.mean([q - p for p, q in pairs], axis=0)
        return Transformation(
            kind=TransformKind.TRANSLATION,
            dx=float(offset[0]),
            dy=float(offset[1]),
            confidence=self.config['translation_confidence'],
            matches_used=len(pairs)
        )

    @staticmethod
    def residual_error(points_a: np.ndarray,
                       points_b: np.ndarray,
                       correspondences: Sequence[Correspondence],
                       transform: Transformation) -> float:
        """Mean distance between transformed A points and their B partners"""
        if not correspondences:
            return 0.0
        mapped = transform.apply(np.array([points_a[c.index_a] for c in correspondences]))
        targets = np.array([points_b[c.index_b] for c in correspondences])
        return float(np.mean(np.linalg.norm(mapped - targets, axis=1)))
