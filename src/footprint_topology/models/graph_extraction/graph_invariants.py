"""
Graph Invariants
Scale and rotation robust descriptors of a footprint proximity graph
"""

import numpy as np
import networkx as nx
from scipy.spatial.distance import pdist
from dataclasses import dataclass, field, asdict
from typing import Dict, List, TYPE_CHECKING

if TYPE_CHECKING:
    from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph


EDGE_LENGTH_BINS = 8


@dataclass
class GraphInvariants:
    """Derived graph descriptors used by the coarse matcher"""
    node_count: int = 0
    edge_count: int = 0
    density: float = 0.0
    avg_degree: float = 0.0
    max_degree: int = 0
    degree_histogram: Dict[int, int] = field(default_factory=dict)
    avg_edge_length: float = 0.0
    edge_length_histogram: List[int] = field(default_factory=lambda: [0] * EDGE_LENGTH_BINS)
    diameter: int = 0
    clustering_coefficient: float = 0.0
    normalized_edge_lengths: List[float] = field(default_factory=list)
    normalized_node_distribution: List[Dict[str, float]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        data = asdict(self)
        # JSON object keys must be strings, keep the histogram as a sorted list instead
        data['degree_histogram'] = [
            {'degree': int(degree), 'count': int(count)}
            for degree, count in sorted(self.degree_histogram.items())
        ]
        return data


def compute_invariants(graph: 'FootprintGraph') -> GraphInvariants:
    """
    Compute invariants for a graph

    Args:
        graph: FootprintGraph to describe

    Returns:
        GraphInvariants with neutral values for empty or edgeless graphs
    """
    node_count = graph.node_count
    edge_count = graph.edge_count

    if node_count == 0:
        return GraphInvariants()

    degrees = [node.degree for node in graph.nodes.values()]
    edge_lengths = np.array([edge.length for edge in graph.edges.values()], dtype=float)

    max_pairs = node_count * (node_count - 1) / 2
    density = edge_count / max(1.0, max_pairs)

    degree_histogram: Dict[int, int] = {}
    for degree in degrees:
        degree_histogram[degree] = degree_histogram.get(degree, 0) + 1

    return GraphInvariants(
        node_count=node_count,
        edge_count=edge_count,
        density=float(density),
        avg_degree=float(np.mean(degrees)),
        max_degree=int(max(degrees)),
        degree_histogram=dict(sorted(degree_histogram.items())),
        avg_edge_length=float(edge_lengths.mean()) if edge_count else 0.0,
        edge_length_histogram=edge_length_histogram(edge_lengths),
        diameter=geometric_diameter(graph.positions()),
        clustering_coefficient=mean_clustering_coefficient(graph),
        normalized_edge_lengths=[float(edge.normalized_length) for edge in graph.edges.values()],
        normalized_node_distribution=normalized_node_distribution(graph.positions())
    )


def edge_length_histogram(lengths: np.ndarray, bins: int = EDGE_LENGTH_BINS) -> List[int]:
    """Equal-width histogram over [min, max]; a zero range puts everything in bin 0"""
    histogram = [0] * bins
    if len(lengths) == 0:
        return histogram

    min_length = float(lengths.min())
    value_range = float(lengths.max()) - min_length
    if value_range <= 0:
        histogram[0] = len(lengths)
        return histogram

    bin_size = value_range / bins
    for length in lengths:
        index = min(bins - 1, int((length - min_length) / bin_size))
        histogram[index] += 1
    return histogram


def geometric_diameter(positions: np.ndarray) -> int:
    """Maximum pairwise Euclidean distance, rounded"""
    if len(positions) < 2:
        return 0
    return int(round(float(pdist(positions).max())))


def mean_clustering_coefficient(graph: 'FootprintGraph') -> float:
    """Mean local clustering over nodes with at least two neighbors"""
    if graph.node_count < 3:
        return 0.0

    nx_graph = graph.to_networkx()
    clustering = nx.clustering(nx_graph)
    qualifying = [clustering[node] for node, degree in nx_graph.degree() if degree >= 2]
    return float(np.mean(qualifying)) if qualifying else 0.0


def normalized_node_distribution(positions: np.ndarray) -> List[Dict[str, float]]:
    """Positions relative to the bounding-box centre, divided by the larger extent"""
    if len(positions) == 0:
        return []

    mins = positions.min(axis=0)
    maxs = positions.max(axis=0)
    center = (mins + maxs) / 2
    extent = float(max(maxs - mins))
    if extent <= 0:
        extent = 1.0

    normalized = (positions - center) / extent
    return [{'nx': float(x), 'ny': float(y)} for x, y in normalized]
