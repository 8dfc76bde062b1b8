"""
Graph Extraction Module for Footprint Point Sets

Converts detected outsole feature points into proximity graphs and computes the
structural descriptors used for comparison.

Key Components:
- FootprintGraph: Graph data structure with versioned invariant cache
- ProximityGraphBuilder: k-nearest-neighbor edge creation
- GraphInvariants: Rotation and translation independent summary statistics
- StarVectorBuilder: Per-node star-vector signatures
"""

from .footprint_graph import FootprintGraph, GraphNode, GraphEdge, Point, clamp_confidence
from .edge_creation import ProximityGraphBuilder, build_graph, coerce_points
from .graph_invariants import GraphInvariants, compute_invariants
from .star_vectors import StarVector, NodeSignature, StarVectorSet, StarVectorBuilder

__all__ = [
    # Graph structure
    'FootprintGraph', 'GraphNode', 'GraphEdge', 'Point', 'clamp_confidence',

    # Construction
    'ProximityGraphBuilder', 'build_graph', 'coerce_points',

    # Descriptors
    'GraphInvariants', 'compute_invariants',
    'StarVector', 'NodeSignature', 'StarVectorSet', 'StarVectorBuilder'
]
