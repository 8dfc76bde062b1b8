"""
Graph Merging Module
Transform estimation, structural and geometric merging, and spring refinement
"""

from .transform_estimation import Transformation, TransformKind, RigidTransformEstimator

from .point_merger import (
    PointMerger, PointMergeResult, PointMatch, MergedPoint
)

from .topology_merger import (
    TopologyMerger, MergeMethod, MergeOutcome, FusedGraph,
    StructuralMerge, FallbackMerge, MergeFailure, create_topology_merger
)

from .spring_refiner import (
    SpringRefiner, RefinementResult, RelaxationState, create_spring_refiner
)

__all__ = [
    # Transformation
    'Transformation', 'TransformKind', 'RigidTransformEstimator',

    # Geometric fallback
    'PointMerger', 'PointMergeResult', 'PointMatch', 'MergedPoint',

    # Topology merge
    'TopologyMerger', 'MergeMethod', 'MergeOutcome', 'FusedGraph',
    'StructuralMerge', 'FallbackMerge', 'MergeFailure', 'create_topology_merger',

    # Refinement
    'SpringRefiner', 'RefinementResult', 'RelaxationState', 'create_spring_refiner'
]
