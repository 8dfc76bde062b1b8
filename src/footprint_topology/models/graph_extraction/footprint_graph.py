"""
FootprintGraph Data Structure
Implements the proximity graph used to represent outsole protector points
"""

import numpy as np
import networkx as nx
import json
import math
import pickle
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Tuple, Optional, Any, Set
from pathlib import Path
import logging

from footprint_topology.models.graph_extraction.graph_invariants import (
    GraphInvariants, compute_invariants
)


MIN_NODE_CONFIDENCE = 0.1
MAX_NODE_CONFIDENCE = 1.0
DEFAULT_CONFIDENCE = 0.5


@dataclass(frozen=True)
class Point:
    """Single digitized protector point"""
    x: float
    y: float
    confidence: float = DEFAULT_CONFIDENCE


@dataclass
class GraphNode:
    """Graph node with provenance information"""
    id: str
    x: float
    y: float
    confidence: float = DEFAULT_CONFIDENCE
    degree: int = 0
    neighbors: Set[str] = field(default_factory=set)
    origin: str = 'observed'  # observed, merged, graph_a, graph_b
    source_ids: Tuple[str, ...] = ()
    match_score: Optional[float] = None

    @property
    def position(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=float)

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'x': float(self.x),
            'y': float(self.y),
            'confidence': float(self.confidence),
            'degree': self.degree,
            'neighbors': sorted(self.neighbors),
            'origin': self.origin,
        }
        if self.source_ids:
            data['source_ids'] = list(self.source_ids)
        if self.match_score is not None:
            data['match_score'] = float(self.match_score)
        return data


@dataclass
class GraphEdge:
    """Undirected edge between two nodes"""
    id: str
    source: str
    target: str
    length: float
    normalized_length: float = 1.0
    confidence: float = DEFAULT_CONFIDENCE

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'source': self.source,
            'target': self.target,
            'length': float(self.length),
            'normalized_length': float(self.normalized_length),
            'confidence': float(self.confidence),
        }


def clamp_confidence(value: Optional[float]) -> float:
    """Clamp a node confidence into [0.1, 1.0], defaulting to 0.5"""
    if value is None or not np.isfinite(value):
        return DEFAULT_CONFIDENCE
    return float(min(MAX_NODE_CONFIDENCE, max(MIN_NODE_CONFIDENCE, value)))


class FootprintGraph:
    """
    Main data structure for representing an outsole as a proximity graph

    Nodes and edges live in insertion-ordered registries keyed by id. Every
    mutation increments ``version``; derived data (invariants, NetworkX view)
    is memoized against that counter.
    """

    def __init__(self,
                 graph_id: Optional[str] = None,
                 name: Optional[str] = None,
                 metadata: Optional[Dict] = None):
        """
        Initialize FootprintGraph

        Args:
            graph_id: Unique graph identifier (generated when omitted)
            name: Human readable name
            metadata: Free-form metadata about the source observation
        """
        self.id = graph_id or f"graph_{uuid.uuid4().hex[:12]}"
        self.name = name or self.id
        self.metadata = metadata or {}
        self.created_at = datetime.now().isoformat()
        self.last_updated = self.created_at
        self.logger = logging.getLogger(__name__)

        self.nodes: Dict[str, GraphNode] = {}
        self.edges: Dict[str, GraphEdge] = {}
        self._edge_lookup: Dict[frozenset, str] = {}
        self._next_node_id = 1
        self._next_edge_id = 1

        # Memoized derived data
        self._version = 0
        self._invariants: Optional[GraphInvariants] = None
        self._invariants_version = -1
        self._networkx_graph: Optional[nx.Graph] = None
        self._networkx_version = -1

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    @property
    def version(self) -> int:
        """Monotonically increasing mutation counter"""
        return self._version

    def _touch(self):
        self._version += 1
        self.last_updated = datetime.now().isoformat()

    def add_node(self,
                 x: Optional[float],
                 y: Optional[float],
                 confidence: Optional[float] = None,
                 node_id: Optional[str] = None,
                 origin: str = 'observed',
                 source_ids: Tuple[str, ...] = (),
                 match_score: Optional[float] = None) -> Optional[GraphNode]:
        """
        Add a node at (x, y)

        Points without usable coordinates are skipped with a warning.

        Returns:
            The created node, or None when the point was skipped
        """
        if x is None or y is None or not (np.isfinite(x) and np.isfinite(y)):
            self.logger.warning(f"Skipping point with undefined coordinates: ({x}, {y})")
            return None

        if node_id is None:
            node_id = f"n{self._next_node_id}"
            while node_id in self.nodes:
                self._next_node_id += 1
                node_id = f"n{self._next_node_id}"
            self._next_node_id += 1
        elif node_id in self.nodes:
            self.logger.warning(f"Node {node_id} already exists, skipping")
            return None

        node = GraphNode(
            id=node_id,
            x=float(x),
            y=float(y),
            confidence=clamp_confidence(confidence),
            origin=origin,
            source_ids=tuple(source_ids),
            match_score=match_score
        )
        self.nodes[node_id] = node
        self._touch()
        return node

    def add_edge(self, source_id: str, target_id: str) -> Optional[GraphEdge]:
        """
        Connect two existing nodes

        Self-loops, unknown endpoints and duplicate (or reversed) edges are
        rejected.

        Returns:
            The created edge, or None when the edge was rejected
        """
        if source_id == target_id:
            return None
        if source_id not in self.nodes or target_id not in self.nodes:
            self.logger.debug(f"Cannot connect unknown nodes {source_id} -> {target_id}")
            return None

        key = frozenset((source_id, target_id))
        if key in self._edge_lookup:
            return None

        source = self.nodes[source_id]
        target = self.nodes[target_id]
        length = math.hypot(target.x - source.x, target.y - source.y)

        edge_id = f"e{self._next_edge_id}"
        self._next_edge_id += 1
        edge = GraphEdge(
            id=edge_id,
            source=source_id,
            target=target_id,
            length=length,
            confidence=(source.confidence + target.confidence) / 2
        )
        self.edges[edge_id] = edge
        self._edge_lookup[key] = edge_id

        source.degree += 1
        target.degree += 1
        source.neighbors.add(target_id)
        target.neighbors.add(source_id)

        self._touch()
        return edge

    def normalize_edge_lengths(self):
        """Set normalized_length = length / mean edge length"""
        if not self.edges:
            return
        mean_length = float(np.mean([edge.length for edge in self.edges.values()]))
        for edge in self.edges.values():
            edge.normalized_length = edge.length / mean_length if mean_length > 0 else 1.0
        self._touch()

    def update_positions(self, positions: np.ndarray):
        """
        Replace node positions (in registry order) and refresh edge geometry

        Args:
            positions: Array of shape (num_nodes, 2)
        """
        positions = np.asarray(positions, dtype=float)
        if positions.shape != (len(self.nodes), 2):
            raise ValueError(f"Expected positions of shape ({len(self.nodes)}, 2), got {positions.shape}")

        for node, (x, y) in zip(self.nodes.values(), positions):
            node.x = float(x)
            node.y = float(y)

        for edge in self.edges.values():
            source = self.nodes[edge.source]
            target = self.nodes[edge.target]
            edge.length = math.hypot(target.x - source.x, target.y - source.y)

        self.normalize_edge_lengths()
        self._touch()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return len(self.edges)

    def node_ids(self) -> List[str]:
        return list(self.nodes.keys())

    def node_index(self) -> Dict[str, int]:
        """Map node id -> row index in positions()"""
        return {node_id: i for i, node_id in enumerate(self.nodes)}

    def positions(self) -> np.ndarray:
        """Node positions as an (n, 2) array in registry order"""
        if not self.nodes:
            return np.zeros((0, 2))
        return np.array([[node.x, node.y] for node in self.nodes.values()], dtype=float)

    def confidences(self) -> np.ndarray:
        return np.array([node.confidence for node in self.nodes.values()], dtype=float)

    def edge_index_pairs(self) -> List[Tuple[int, int]]:
        """Edges as (i, j) row-index pairs into positions()"""
        index = self.node_index()
        return [(index[edge.source], index[edge.target]) for edge in self.edges.values()]

    def has_edge(self, source_id: str, target_id: str) -> bool:
        return frozenset((source_id, target_id)) in self._edge_lookup

    def get_invariants(self) -> GraphInvariants:
        """Return invariants, recomputing only after a mutation"""
        if self._invariants is None or self._invariants_version != self._version:
            self._invariants = compute_invariants(self)
            self._invariants_version = self._version
        return self._invariants

    def get_bounds(self) -> Dict[str, float]:
        """Axis-aligned bounding box of node positions"""
        if not self.nodes:
            return {'min_x': 0.0, 'max_x': 0.0, 'min_y': 0.0, 'max_y': 0.0,
                    'width': 0.0, 'height': 0.0, 'center_x': 0.0, 'center_y': 0.0}

        positions = self.positions()
        min_x, min_y = positions.min(axis=0)
        max_x, max_y = positions.max(axis=0)
        return {
            'min_x': float(min_x),
            'max_x': float(max_x),
            'min_y': float(min_y),
            'max_y': float(max_y),
            'width': float(max_x - min_x),
            'height': float(max_y - min_y),
            'center_x': float((min_x + max_x) / 2),
            'center_y': float((min_y + max_y) / 2),
        }

    def copy(self, graph_id: Optional[str] = None) -> 'FootprintGraph':
        """Deep copy of nodes and edges under a new id"""
        return FootprintGraph.from_dict({**self.to_dict(include_invariants=False),
                                         'id': graph_id or f"{self.id}_copy"})

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_networkx(self, include_positions: bool = True) -> nx.Graph:
        """Convert to NetworkX graph"""
        if self._networkx_graph is None or self._networkx_version != self._version:
            G = nx.Graph(graph_id=self.id, name=self.name)

            for node in self.nodes.values():
                node_attrs = {
                    'confidence': node.confidence,
                    'origin': node.origin,
                }
                if include_positions:
                    node_attrs['x'] = node.x
                    node_attrs['y'] = node.y
                G.add_node(node.id, **node_attrs)

            for edge in self.edges.values():
                G.add_edge(edge.source, edge.target,
                           id=edge.id,
                           length=edge.length,
                           normalized_length=edge.normalized_length,
                           confidence=edge.confidence)

            self._networkx_graph = G
            self._networkx_version = self._version

        return self._networkx_graph

    def to_dict(self, include_invariants: bool = True) -> Dict:
        """Serializable representation used by external storage"""
        data = {
            'id': self.id,
            'name': self.name,
            'created_at': self.created_at,
            'last_updated': self.last_updated,
            'metadata': self._prepare_for_json(self.metadata),
            'nodes': [node.to_dict() for node in self.nodes.values()],
            'edges': [edge.to_dict() for edge in self.edges.values()],
        }
        if include_invariants:
            data['invariants'] = self.get_invariants().to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'FootprintGraph':
        """Rebuild a graph from to_dict() output; invariants are recomputed lazily"""
        graph = cls(graph_id=data.get('id'), name=data.get('name'), metadata=data.get('metadata'))

        for node_data in data.get('nodes', []):
            graph.add_node(
                node_data.get('x'),
                node_data.get('y'),
                confidence=node_data.get('confidence'),
                node_id=node_data.get('id'),
                origin=node_data.get('origin', 'observed'),
                source_ids=tuple(node_data.get('source_ids', ())),
                match_score=node_data.get('match_score')
            )
        graph._next_node_id = len(graph.nodes) + 1

        for edge_data in data.get('edges', []):
            graph.add_edge(edge_data['source'], edge_data['target'])
        graph._next_edge_id = len(graph.edges) + 1
        graph.normalize_edge_lengths()

        graph.created_at = data.get('created_at', graph.created_at)
        graph.last_updated = data.get('last_updated', graph.last_updated)
        return graph

    def save(self, filepath: Path, format: str = 'json'):
        """
        Save graph to file

        Args:
            filepath: Path to save file
            format: Format ('json', 'pickle', 'graphml')
        """
        filepath = Path(filepath)

        if format == 'pickle':
            with open(filepath, 'wb') as f:
                pickle.dump(self.to_dict(), f)

        elif format == 'json':
            with open(filepath, 'w') as f:
                json.dump(self.to_dict(), f, indent=2)

        elif format == 'graphml':
            nx.write_graphml(self.to_networkx(), filepath)

        else:
            raise ValueError(f"Unsupported format: {format}")

        self.logger.info(f"Graph saved to {filepath} in {format} format")

    @classmethod
    def load(cls, filepath: Path, format: str = 'json') -> 'FootprintGraph':
        """
        Load graph from file

        Args:
            filepath: Path to load file
            format: Format ('json', 'pickle')

        Returns:
            FootprintGraph instance
        """
        filepath = Path(filepath)

        if format == 'pickle':
            with open(filepath, 'rb') as f:
                data = pickle.load(f)
        elif format == 'json':
            with open(filepath, 'r') as f:
                data = json.load(f)
        else:
            raise ValueError(f"Unsupported format: {format}")

        return cls.from_dict(data)

    @staticmethod
    def _prepare_for_json(obj: Any) -> Any:
        """Convert numpy values nested in metadata into JSON types"""
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, (np.integer,)):
            return int(obj)
        if isinstance(obj, (np.floating,)):
            return float(obj)
        if isinstance(obj, dict):
            return {str(key): FootprintGraph._prepare_for_json(value) for key, value in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [FootprintGraph._prepare_for_json(item) for item in obj]
        return obj

    def get_visualization_data(self) -> Dict:
        """Read-only snapshot for an external renderer"""
        invariants = self.get_invariants()
        return {
            'id': self.id,
            'name': self.name,
            'nodes': [
                {'id': node.id, 'x': node.x, 'y': node.y,
                 'confidence': node.confidence, 'degree': node.degree, 'origin': node.origin}
                for node in self.nodes.values()
            ],
            'edges': [
                {'id': edge.id, 'source': edge.source, 'target': edge.target,
                 'length': edge.length, 'confidence': edge.confidence}
                for edge in self.edges.values()
            ],
            'bounds': self.get_bounds(),
            'stats': {
                'node_count': invariants.node_count,
                'edge_count': invariants.edge_count,
                'avg_degree': invariants.avg_degree,
                'clustering': invariants.clustering_coefficient,
            }
        }

    def get_summary(self) -> str:
        """Get a human-readable summary of the graph"""
        invariants = self.get_invariants()
        lines = [
            f"FootprintGraph '{self.name}'",
            f"  Nodes: {invariants.node_count}",
            f"  Edges: {invariants.edge_count}",
            f"  Density: {invariants.density:.3f}",
            f"  Average degree: {invariants.avg_degree:.2f} (max {invariants.max_degree})",
            f"  Average edge length: {invariants.avg_edge_length:.1f}",
            f"  Diameter: {invariants.diameter}",
            f"  Clustering coefficient: {invariants.clustering_coefficient:.3f}",
        ]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"FootprintGraph(id={self.id}, nodes={len(self.nodes)}, edges={len(self.edges)})"
