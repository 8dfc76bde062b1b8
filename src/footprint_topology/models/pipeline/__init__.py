"""Merge pipeline orchestrating merge, refinement and validation"""

from .topology_pipeline import (
    TopologyPipeline, PipelineConfig, PipelineResult,
    StageStatus, StageRecord, create_topology_pipeline
)

__all__ = [
    'TopologyPipeline', 'PipelineConfig', 'PipelineResult',
    'StageStatus', 'StageRecord', 'create_topology_pipeline'
]
