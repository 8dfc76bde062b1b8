"""
Topology Merger
Fuses two footprint graphs through star-vector correspondences and a rigid transform
"""

import numpy as np
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Tuple, Optional, Any, Union
import logging

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph
from footprint_topology.models.graph_extraction.edge_creation import ProximityGraphBuilder
from footprint_topology.models.graph_extraction.star_vectors import StarVectorBuilder
from footprint_topology.models.graph_merging.point_merger import PointMerger, PointMergeResult
from footprint_topology.models.graph_merging.transform_estimation import (
    RigidTransformEstimator, Transformation
)
from footprint_topology.utils.graph_correspondence import (
    StructuralCorrespondenceFinder, CorrespondenceResult, Correspondence
)


class MergeMethod(str, Enum):
    TOPOLOGY = 'topology_merge'
    FALLBACK = 'geometric_fallback'
    FAILED = 'failed'


ORIGIN_TAGS = {'footprint1': 'graph_a', 'footprint2': 'graph_b', 'merged': 'merged'}


@dataclass
class FusedGraph:
    """
    Fused graph plus the observed layout it was built from

    observed_positions[i] is where node i was actually seen: its graph A
    position when it has an A source, otherwise its B position mapped into
    A's frame.
    """
    graph: FootprintGraph
    observed_positions: np.ndarray

    def merged_nodes(self) -> List[str]:
        return [node.id for node in self.graph.nodes.values() if node.origin == 'merged']

    def nodes_by_origin(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for node in self.graph.nodes.values():
            counts[node.origin] = counts.get(node.origin, 0) + 1
        return counts

    def rest_lengths(self) -> np.ndarray:
        """Observed length of every edge, in edge registry order"""
        pairs = self.graph.edge_index_pairs()
        if not pairs:
            return np.zeros(0)
        i, j = np.array(pairs).T
        return np.linalg.norm(self.observed_positions[j] - self.observed_positions[i], axis=1)


@dataclass
class StructuralMerge:
    """Merge justified by structural correspondence"""
    fused: FusedGraph
    correspondences: CorrespondenceResult
    transformation: Transformation
    structural_similarity: float
    metrics: Dict[str, Any] = field(default_factory=dict)
    method: MergeMethod = field(default=MergeMethod.TOPOLOGY, init=False)
    success: bool = field(default=True, init=False)

    @property
    def graph(self) -> FootprintGraph:
        return self.fused.graph


@dataclass
class FallbackMerge:
    """Geometric point merge used when structural correspondence is insufficient"""
    fused: FusedGraph
    point_merge: PointMergeResult
    transformation: Transformation
    reason: str
    correspondence_count: int = 0
    structural_similarity: float = 0.0
    metrics: Dict[str, Any] = field(default_factory=dict)
    method: MergeMethod = field(default=MergeMethod.FALLBACK, init=False)
    success: bool = field(default=True, init=False)

    @property
    def graph(self) -> FootprintGraph:
        return self.fused.graph


@dataclass
class MergeFailure:
    """Neither structural nor geometric merge was possible"""
    reason: str
    structural_similarity: float = 0.0
    method: MergeMethod = field(default=MergeMethod.FAILED, init=False)
    success: bool = field(default=False, init=False)

    @property
    def graph(self) -> None:
        return None


MergeOutcome = Union[StructuralMerge, FallbackMerge, MergeFailure]


class TopologyMerger:
    """
    Merge two footprint graphs

    Pipeline:
    1. Star-vector signatures for both graphs
    2. Greedy one-pass correspondence search
    3. Structural similarity gate (falls back to point merging)
    4. Rigid transform estimation from the best correspondences
    5. Geometric consistency gate: correspondences must agree with the transform
    6. Fusion in graph A's frame and edge reconstruction
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize topology merger

        Args:
            config: Configuration overriding the defaults
        """
        self.config = self._get_default_config()
        if config:
            self.config.update(config)

        self.logger = logging.getLogger(__name__)
        self.signature_builder = StarVectorBuilder(self.config.get('signature_config'))
        self.correspondence_finder = StructuralCorrespondenceFinder(self.config.get('correspondence_config'))
        self.transform_estimator = RigidTransformEstimator(self.config.get('transform_config'))
        self.point_merger = PointMerger({'confidence_boost': self.config['confidence_boost']})
        self.edge_builder = ProximityGraphBuilder(max_neighbors=self.config['fused_neighbors'],
                                                  distance_threshold=np.inf)

    def _get_default_config(self) -> Dict:
        """Get default configuration for topology merging"""
        return {
            'structural_similarity_threshold': 0.7,
            'min_matches_for_merge': 5,
            'max_merge_distance': 40.0,         # standalone point merge radius
            'fallback_merge_distance': 15.0,    # point merge radius after a structural rejection
            'confidence_boost': 1.3,
            'fused_neighbors': 3,               # edges per node in the fused graph
            'inlier_tolerance': 0.5,            # residual limit as a fraction of A's mean edge length
            'min_inlier_ratio': 0.5,

            'signature_config': None,
            'correspondence_config': None,
            'transform_config': None,
        }

    def merge_graphs(self,
                     graph_a: FootprintGraph,
                     graph_b: FootprintGraph,
                     transformation: Optional[Transformation] = None) -> MergeOutcome:
        """
        Merge graph_b into graph_a

        Never raises: structural failures degrade to the point merge fallback.

        Args:
            graph_a: Reference graph; the fused graph lives in its frame
            graph_b: Graph merged into the reference
            transformation: Known transform mapping A onto B (estimated when omitted)

        Returns:
            StructuralMerge, FallbackMerge or MergeFailure
        """
        self.logger.info(f"Merging {graph_a.id} ({graph_a.node_count} nodes) "
                         f"with {graph_b.id} ({graph_b.node_count} nodes)")
        try:
            return self._structural_merge(graph_a, graph_b, transformation)
        except Exception as e:
            self.logger.error(f"Structural merge failed: {e}")
            return self._fallback(graph_a, graph_b, transformation, reason=f"Internal error: {e}")

    def _structural_merge(self,
                          graph_a: FootprintGraph,
                          graph_b: FootprintGraph,
                          transformation: Optional[Transformation]) -> MergeOutcome:
        # Step 1: Signatures
        signatures_a = self.signature_builder.build(graph_a)
        signatures_b = self.signature_builder.build(graph_b)
        if signatures_a is None or signatures_b is None:
            return self._fallback(graph_a, graph_b, transformation,
                                  reason="Too few nodes for star-vector signatures")

        # Step 2: Correspondences
        correspondences = self.correspondence_finder.find_correspondence(
            graph_a, graph_b, signatures_a, signatures_b
        )

        # Step 3: Enough matches?
        if len(correspondences) < self.config['min_matches_for_merge']:
            return self._fallback(
                graph_a, graph_b, transformation,
                reason=f"Insufficient correspondences ({len(correspondences)} < "
                       f"{self.config['min_matches_for_merge']})",
                correspondence_count=len(correspondences),
                structural_similarity=correspondences.structural_similarity
            )

        # Step 4: Structural similarity gate
        similarity = correspondences.structural_similarity
        if similarity < self.config['structural_similarity_threshold']:
            return self._fallback(
                graph_a, graph_b, transformation,
                reason=f"Low structural similarity ({similarity:.3f})",
                correspondence_count=len(correspondences),
                structural_similarity=similarity
            )

        # Step 5: Transform
        positions_a = graph_a.positions()
        positions_b = graph_b.positions()
        known_transformation = transformation
        if transformation is None:
            transformation = self.transform_estimator.estimate(
                positions_a, positions_b, correspondences.correspondences
            )

        # Step 6: Geometric consistency
        inliers, outliers = self._split_inliers(graph_a, positions_a, positions_b,
                                                correspondences, transformation)
        inlier_ratio = len(inliers) / len(correspondences)
        if (len(inliers) < self.config['min_matches_for_merge'] or
                inlier_ratio < self.config['min_inlier_ratio']):
            return self._fallback(
                graph_a, graph_b, known_transformation,
                reason=f"Geometrically inconsistent correspondences "
                       f"({len(inliers)}/{len(correspondences)} inliers)",
                correspondence_count=len(inliers),
                structural_similarity=similarity
            )

        if outliers:
            self.logger.debug(f"Dropping {len(outliers)} correspondences inconsistent with the transform")
            correspondences = replace(
                correspondences,
                correspondences=inliers,
                unmatched_a=correspondences.unmatched_a | {c.index_a for c in outliers},
                unmatched_b=correspondences.unmatched_b | {c.index_b for c in outliers},
                metadata={**correspondences.metadata, 'rejected_outliers': len(outliers)}
            )

        # Step 7: Fusion
        fused = self._fuse(graph_a, graph_b, correspondences, transformation)

        metrics = self._calculate_metrics(graph_a, graph_b, fused.graph)
        metrics['transform_residual'] = RigidTransformEstimator.residual_error(
            positions_a, positions_b, correspondences.correspondences, transformation
        )
        metrics['inlier_ratio'] = inlier_ratio

        self.logger.info(f"Topology merge complete: {len(correspondences)} correspondences, "
                         f"{fused.graph.node_count} fused nodes, similarity {similarity:.3f}")

        return StructuralMerge(
            fused=fused,
            correspondences=correspondences,
            transformation=transformation,
            structural_similarity=similarity,
            metrics=metrics
        )

    def _fuse(self,
              graph_a: FootprintGraph,
              graph_b: FootprintGraph,
              correspondences: CorrespondenceResult,
              transformation: Transformation) -> FusedGraph:
        """Build the fused graph in A's frame"""
        positions_a = graph_a.positions()
        positions_b = transformation.apply_inverse(graph_b.positions())
        confidences_a = graph_a.confidences()
        confidences_b = graph_b.confidences()
        ids_a = graph_a.node_ids()
        ids_b = graph_b.node_ids()

        fused = FootprintGraph(
            graph_id=f"{graph_a.id}+{graph_b.id}",
            name=f"{graph_a.name}+{graph_b.name}",
            metadata={'sources': [graph_a.id, graph_b.id], 'method': MergeMethod.TOPOLOGY.value}
        )
        observed = []

        # Step 1: Matched pairs
        for match in correspondences.correspondences:
            i, j = match.index_a, match.index_b
            position, confidence = self._merge_two_nodes(
                positions_a[i], positions_b[j], confidences_a[i], confidences_b[j], match.score
            )
            if fused.add_node(position[0], position[1], confidence, origin='merged',
                              source_ids=(ids_a[i], ids_b[j]), match_score=match.score):
                observed.append(positions_a[i])

        # Step 2: Unmatched nodes carried verbatim
        for i in sorted(correspondences.unmatched_a):
            if fused.add_node(positions_a[i, 0], positions_a[i, 1], confidences_a[i],
                              origin='graph_a', source_ids=(ids_a[i],)):
                observed.append(positions_a[i])
        for j in sorted(correspondences.unmatched_b):
            if fused.add_node(positions_b[j, 0], positions_b[j, 1], confidences_b[j],
                              origin='graph_b', source_ids=(ids_b[j],)):
                observed.append(positions_b[j])

        # Step 3: Edges re-derived from the fused point set
        self.edge_builder.connect_nodes(fused)

        return FusedGraph(graph=fused, observed_positions=np.array(observed).reshape(-1, 2))

    def _split_inliers(self,
                       graph_a: FootprintGraph,
                       positions_a: np.ndarray,
                       positions_b: np.ndarray,
                       correspondences: CorrespondenceResult,
                       transformation: Transformation) -> Tuple[List[Correspondence], List[Correspondence]]:
        """Partition correspondences by their residual in A's frame under the transform"""
        matches = correspondences.correspondences
        tolerance = self.config['inlier_tolerance'] * max(graph_a.get_invariants().avg_edge_length, 1.0)

        mapped_b = transformation.apply_inverse(np.array([positions_b[c.index_b] for c in matches]))
        residuals = np.linalg.norm(positions_a[[c.index_a for c in matches]] - mapped_b, axis=1)

        inliers = [c for c, residual in zip(matches, residuals) if residual <= tolerance]
        outliers = [c for c, residual in zip(matches, residuals) if residual > tolerance]
        return inliers, outliers

    def _merge_two_nodes(self,
                         position_a: np.ndarray,
                         position_b: np.ndarray,
                         confidence_a: float,
                         confidence_b: float,
                         score: float) -> Tuple[np.ndarray, float]:
        """Confidence x score weighted average with boosted, clamped confidence"""
        weight_a = confidence_a * score
        weight_b = confidence_b * score
        total = weight_a + weight_b
        if total <= 0:
            return (position_a + position_b) / 2, float(np.clip((confidence_a + confidence_b) / 2, 0.0, 1.0))

        position = (position_a * weight_a + position_b * weight_b) / total
        confidence = (confidence_a * weight_a + confidence_b * weight_b) / total
        confidence = float(np.clip(confidence * self.config['confidence_boost'], 0.0, 1.0))
        return position, confidence

    def _fallback(self,
                  graph_a: FootprintGraph,
                  graph_b: FootprintGraph,
                  transformation: Optional[Transformation],
                  reason: str,
                  correspondence_count: int = 0,
                  structural_similarity: float = 0.0) -> MergeOutcome:
        """Point merge fallback; fails only when there are fewer than 2 points in total"""
        total_points = graph_a.node_count + graph_b.node_count
        if total_points < 2:
            self.logger.warning(f"Merge impossible: only {total_points} points")
            return MergeFailure(reason=f"{reason}; not enough points for fallback ({total_points})",
                                structural_similarity=structural_similarity)

        self.logger.info(f"Using geometric fallback: {reason}")
        transformation = transformation or Transformation.identity()

        try:
            point_merge = self.point_merger.merge(
                graph_a.positions(), graph_b.positions(),
                graph_a.confidences(), graph_b.confidences(),
                transformation=transformation,
                merge_distance=self.config['fallback_merge_distance']
            )
            fused = self._graph_from_points(graph_a, graph_b, point_merge, transformation)
        except Exception as e:
            self.logger.error(f"Fallback merge failed: {e}")
            return MergeFailure(reason=f"{reason}; fallback failed: {e}",
                                structural_similarity=structural_similarity)

        metrics = self._calculate_metrics(graph_a, graph_b, fused.graph)
        metrics['point_merge_efficiency'] = point_merge.efficiency

        return FallbackMerge(
            fused=fused,
            point_merge=point_merge,
            transformation=transformation,
            reason=reason,
            correspondence_count=correspondence_count,
            structural_similarity=structural_similarity,
            metrics=metrics
        )

    def _graph_from_points(self,
                           graph_a: FootprintGraph,
                           graph_b: FootprintGraph,
                           point_merge: PointMergeResult,
                           transformation: Transformation) -> FusedGraph:
        positions_a = graph_a.positions()
        positions_b = transformation.apply_inverse(graph_b.positions()) if graph_b.node_count else np.zeros((0, 2))
        ids_a = graph_a.node_ids()
        ids_b = graph_b.node_ids()

        fused = FootprintGraph(
            graph_id=f"{graph_a.id}+{graph_b.id}",
            name=f"{graph_a.name}+{graph_b.name}",
            metadata={'sources': [graph_a.id, graph_b.id], 'method': MergeMethod.FALLBACK.value}
        )
        observed = []

        for point in point_merge.points:
            if point.source == 'merged':
                i, j = point.source_indices
                source_ids = (ids_a[i], ids_b[j])
                position = positions_a[i]
            elif point.source == 'footprint1':
                source_ids = (ids_a[point.source_indices[0]],)
                position = positions_a[point.source_indices[0]]
            else:
                source_ids = (ids_b[point.source_indices[0]],)
                position = positions_b[point.source_indices[0]]

            if fused.add_node(point.x, point.y, point.confidence, origin=ORIGIN_TAGS[point.source],
                              source_ids=source_ids, match_score=point.similarity):
                observed.append(position)

        self.edge_builder.connect_nodes(fused)
        return FusedGraph(graph=fused, observed_positions=np.array(observed).reshape(-1, 2))

    @staticmethod
    def _calculate_metrics(graph_a: FootprintGraph, graph_b: FootprintGraph, fused: FootprintGraph) -> Dict:
        nodes_before = graph_a.node_count + graph_b.node_count
        edges_before = graph_a.edge_count + graph_b.edge_count
        node_reduction = nodes_before - fused.node_count

        degrees_before = [inv.avg_degree for inv in (graph_a.get_invariants(), graph_b.get_invariants())]
        return {
            'nodes_before': nodes_before,
            'nodes_after': fused.node_count,
            'node_reduction': node_reduction,
            'edge_preservation': 100.0 * fused.edge_count / edges_before if edges_before else 0.0,
            'efficiency': 100.0 * node_reduction / nodes_before if nodes_before else 0.0,
            'topology_improvement': fused.get_invariants().avg_degree - float(np.mean(degrees_before)),
        }


def create_topology_merger(config: Optional[Dict] = None) -> TopologyMerger:
    """Factory function to create topology merger"""
    return TopologyMerger(config)
