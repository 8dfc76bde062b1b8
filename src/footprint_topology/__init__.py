"""
Footprint Topology
Structural comparison and topological merging of footprint point sets
"""

__version__ = '0.1.0'
