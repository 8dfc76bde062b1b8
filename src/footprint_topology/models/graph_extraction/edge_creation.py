"""
Proximity Graph Construction for Footprint Point Sets
Implements k-nearest-neighbor edge generation over digitized protector points
"""

import numpy as np
from scipy.spatial import KDTree
from typing import List, Dict, Tuple, Optional, Any, Mapping
import logging

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph, Point


class ProximityGraphBuilder:
    """
    Build a proximity graph by connecting every point to its nearest neighbors
    """

    def __init__(self,
                 max_neighbors: int = 5,
                 distance_threshold: float = 150.0):
        """
        Initialize graph builder

        Args:
            max_neighbors: Number of nearest neighbors each node connects to
            distance_threshold: Maximum allowed edge length (pixels)
        """
        self.max_neighbors = max_neighbors
        self.distance_threshold = distance_threshold
        self.logger = logging.getLogger(__name__)

    def build(self,
              points: Any,
              graph_id: Optional[str] = None,
              name: Optional[str] = None) -> FootprintGraph:
        """Build a new graph from points"""
        graph = FootprintGraph(graph_id=graph_id, name=name)
        self.build_from_points(graph, points)
        return graph

    def build_from_points(self, graph: FootprintGraph, points: Any) -> Dict:
        """
        Populate a graph with nodes for the points and k-nearest-neighbor edges

        Args:
            graph: Target graph (usually empty)
            points: Point instances, (x, y[, confidence]) tuples, mappings with
                x/y/confidence keys, or an (n, 2) / (n, 3) array

        Returns:
            Dictionary with construction statistics
        """
        coordinates = coerce_points(points)
        skipped = 0

        # Step 1: Create nodes
        created_ids = []
        for x, y, confidence in coordinates:
            node = graph.add_node(x, y, confidence)
            if node is None:
                skipped += 1
            else:
                created_ids.append(node.id)

        if skipped:
            self.logger.warning(f"Skipped {skipped} points with undefined coordinates")

        if len(created_ids) < 2:
            return {
                'nodes': len(created_ids),
                'edges': 0,
                'skipped_points': skipped,
                'mean_edge_length': 0.0
            }

        # Step 2: Connect every node to its nearest neighbors
        created_edges = self.connect_nodes(graph, created_ids)

        mean_length = float(np.mean([edge.length for edge in graph.edges.values()])) if graph.edges else 0.0
        self.logger.info(f"Built proximity graph: {graph.node_count} nodes, {created_edges} edges")

        return {
            'nodes': len(created_ids),
            'edges': created_edges,
            'skipped_points': skipped,
            'mean_edge_length': mean_length
        }

    def connect_nodes(self, graph: FootprintGraph, node_ids: Optional[List[str]] = None) -> int:
        """
        Add nearest-neighbor edges between existing nodes

        Args:
            graph: Graph whose nodes are connected
            node_ids: Subset of nodes to connect (default: all nodes)

        Returns:
            Number of edges created
        """
        if node_ids is None:
            node_ids = graph.node_ids()
        if len(node_ids) < 2:
            return 0

        self.logger.debug(f"Creating proximity edges for {len(node_ids)} nodes")

        # Step 1: Find nearest neighbors within the distance threshold
        positions = np.array([[graph.nodes[i].x, graph.nodes[i].y] for i in node_ids])
        neighbor_lists = self._find_neighbors(positions)

        # Step 2: Connect nodes; add_edge rejects duplicates and reverse edges
        created_edges = 0
        for i, neighbors in enumerate(neighbor_lists):
            for j in neighbors:
                if graph.add_edge(node_ids[i], node_ids[j]) is not None:
                    created_edges += 1

        # Step 3: Normalize edge lengths by the graph mean
        graph.normalize_edge_lengths()
        return created_edges

    def _find_neighbors(self, positions: np.ndarray) -> List[List[int]]:
        """Indices of the nearest max_neighbors points within threshold, nearest first"""
        num_points = len(positions)
        k = min(self.max_neighbors + 1, num_points)
        tree = KDTree(positions)
        distances, indices = tree.query(positions, k=k, distance_upper_bound=self.distance_threshold)
        distances = np.asarray(distances).reshape(num_points, k)
        indices = np.asarray(indices).reshape(num_points, k)

        neighbor_lists = []
        for i in range(num_points):
            candidates = [
                (float(distance), int(j))
                for distance, j in zip(distances[i], indices[i])
                if j != i and j < num_points and np.isfinite(distance)
            ]
            # Stable ordering for equidistant neighbors
            candidates.sort()
            neighbor_lists.append([j for _, j in candidates[:self.max_neighbors]])

        return neighbor_lists


def coerce_points(points: Any) -> List[Tuple[Optional[float], Optional[float], Optional[float]]]:
    """Normalize supported point inputs into (x, y, confidence) tuples"""
    if points is None:
        return []

    if isinstance(points, np.ndarray):
        array = np.asarray(points, dtype=float)
        if array.ndim != 2 or array.shape[1] < 2:
            raise ValueError(f"Expected an (n, 2) or (n, 3) array, got shape {array.shape}")
        confidence = array[:, 2] if array.shape[1] > 2 else [None] * len(array)
        return [(x, y, c) for (x, y), c in zip(array[:, :2], confidence)]

    coerced = []
    for point in points:
        if isinstance(point, Point):
            coerced.append((point.x, point.y, point.confidence))
        elif isinstance(point, Mapping):
            coerced.append((point.get('x'), point.get('y'), point.get('confidence')))
        else:
            # Missing coordinates become None and the point is skipped on insertion
            values = list(point) if isinstance(point, (list, tuple, np.ndarray)) else []
            values += [None] * (3 - len(values))
            coerced.append((values[0], values[1], values[2]))
    return coerced


def build_graph(points: Any,
                max_neighbors: int = 5,
                distance_threshold: float = 150.0,
                graph_id: Optional[str] = None,
                name: Optional[str] = None) -> FootprintGraph:
    """Convenience wrapper around ProximityGraphBuilder"""
    builder = ProximityGraphBuilder(max_neighbors=max_neighbors, distance_threshold=distance_threshold)
    return builder.build(points, graph_id=graph_id, name=name)
