"""
Utilities for structural matching, correspondence, validation and configuration
"""

from .graph_matching import CoarseMatcher, MatchResult, MatchDecision, create_coarse_matcher
from .graph_correspondence import (
    StructuralCorrespondenceFinder, Correspondence, CorrespondenceResult,
    create_correspondence_finder
)
from .topology_validation import (
    TopologyValidator, ValidationResult, CheckResult, create_topology_validator
)
from .config import load_config, save_config

__all__ = [
    'CoarseMatcher', 'MatchResult', 'MatchDecision', 'create_coarse_matcher',
    'StructuralCorrespondenceFinder', 'Correspondence', 'CorrespondenceResult',
    'create_correspondence_finder',
    'TopologyValidator', 'ValidationResult', 'CheckResult', 'create_topology_validator',
    'load_config', 'save_config'
]
