"""
Spring Refiner
Force-directed relaxation of a fused footprint layout toward its observed geometry
"""

import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, TYPE_CHECKING
import logging

from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph
from footprint_topology.models.graph_merging.transform_estimation import Transformation

if TYPE_CHECKING:
    from footprint_topology.models.graph_merging.topology_merger import FusedGraph


class RelaxationState(str, Enum):
    RELAXING = 'relaxing'
    CONVERGED = 'converged'
    ITERATION_LIMIT_REACHED = 'iteration_limit_reached'


@dataclass
class RefinementResult:
    """Outcome of a relaxation run"""
    success: bool
    state: Optional[RelaxationState]
    positions: np.ndarray
    initial_positions: np.ndarray
    iterations: int = 0
    energy_history: List[float] = field(default_factory=list)
    improvement: Dict[str, float] = field(default_factory=dict)
    reason: str = ''

    @property
    def converged(self) -> bool:
        return self.state == RelaxationState.CONVERGED

    @property
    def final_energy(self) -> float:
        return self.energy_history[-1] if self.energy_history else 0.0

    @property
    def consistency(self) -> float:
        return self.improvement.get('consistency', 0.0)

    def apply_to(self, graph: FootprintGraph) -> FootprintGraph:
        """Copy of graph with the refined positions"""
        refined = graph.copy(graph_id=f"{graph.id}_refined")
        if len(self.positions) == refined.node_count:
            refined.update_positions(self.positions)
        return refined


class SpringRefiner:
    """
    Relax node positions with springs, repulsion and angle torques

    The rest state (edge lengths, inter-neighbor angles, pairwise separations)
    is taken from a reference layout, so a layout already at rest is an
    equilibrium. Termination follows RELAXING -> CONVERGED when the energy
    variance over the convergence window drops below threshold, or
    ITERATION_LIMIT_REACHED.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize spring refiner

        Args:
            config: Physics parameters overriding the defaults
        """
        self.config = self._get_default_config()
        if config:
            self.config.update(config)
        self.logger = logging.getLogger(__name__)

    def _get_default_config(self) -> Dict:
        """Get default physics configuration"""
        return {
            'spring_constant': 0.15,
            'repulsion_strength': 100.0,
            'min_repulsion_distance': 5.0,
            'repulsion_decay': 0.8,         # fraction of repulsion removed by the last iteration
            'min_repulsion_factor': 0.1,
            'damping': 0.85,
            'damping_decay': 0.3,           # fraction of damping removed by the last iteration
            'max_step_factor': 5.0,         # per-step displacement cap = factor * damping
            'max_iterations': 150,
            'quick_iterations': 50,
            'convergence_window': 10,
            'convergence_variance': 1e-3,
            'preserve_angles': True,
            'angle_weight': 0.3,            # torque stiffness relative to the spring constant
            'edge_tolerance': 0.1,          # relative length error counted as preserved
            'min_nodes': 3,
        }

    def refine(self,
               graph: FootprintGraph,
               transformation: Optional[Transformation] = None,
               rest_positions: Optional[np.ndarray] = None,
               max_iterations: Optional[int] = None) -> RefinementResult:
        """
        Relax the layout of a graph

        Args:
            graph: Graph whose edges define the springs
            transformation: Optional transform applied to the positions before relaxation
            rest_positions: Reference layout defining rest lengths and angles
                (default: the graph's current positions)
            max_iterations: Overrides the configured iteration cap

        Returns:
            RefinementResult with refined positions and improvement metrics
        """
        positions = graph.positions()
        if graph.node_count < self.config['min_nodes']:
            self.logger.info(f"Skipping refinement: only {graph.node_count} nodes")
            return RefinementResult(
                success=False,
                state=None,
                positions=positions,
                initial_positions=positions.copy(),
                reason=f"Insufficient nodes for refinement ({graph.node_count})"
            )

        rest = positions.copy() if rest_positions is None else np.asarray(rest_positions, dtype=float)
        if rest.shape != positions.shape:
            raise ValueError(f"rest_positions shape {rest.shape} does not match {positions.shape}")

        if transformation is not None:
            positions = transformation.apply(positions)

        edges = np.array(graph.edge_index_pairs(), dtype=int).reshape(-1, 2)
        topology = self._capture_topology(rest, edges, graph.node_count)

        return self._relax(positions, topology, max_iterations or self.config['max_iterations'])

    def refine_fused(self, fused: 'FusedGraph', max_iterations: Optional[int] = None) -> RefinementResult:
        """Relax a fused graph toward the layout its nodes were observed in"""
        return self.refine(fused.graph, rest_positions=fused.observed_positions,
                           max_iterations=max_iterations)

    def quick_refine(self, graph: FootprintGraph) -> RefinementResult:
        """Short relaxation without a transform"""
        return self.refine(graph, max_iterations=self.config['quick_iterations'])

    def _capture_topology(self, rest: np.ndarray, edges: np.ndarray, num_nodes: int) -> Dict:
        """Rest lengths, separations, adjacency and neighbor-angle triples"""
        adjacency = np.zeros((num_nodes, num_nodes), dtype=bool)
        neighbors: List[List[int]] = [[] for _ in range(num_nodes)]
        for i, j in edges:
            adjacency[i, j] = adjacency[j, i] = True
            neighbors[i].append(j)
            neighbors[j].append(i)

        if len(edges):
            rest_lengths = np.linalg.norm(rest[edges[:, 1]] - rest[edges[:, 0]], axis=1)
        else:
            rest_lengths = np.zeros(0)

        triples = []
        for center in range(num_nodes):
            around = sorted(neighbors[center])
            for a_pos in range(len(around)):
                for b_pos in range(a_pos + 1, len(around)):
                    triples.append((center, around[a_pos], around[b_pos]))
        triples = np.array(triples, dtype=int).reshape(-1, 3)
        rest_angles = signed_angles(rest, triples)

        separations = np.linalg.norm(rest[None, :, :] - rest[:, None, :], axis=2)

        return {
            'edges': edges,
            'rest_lengths': rest_lengths,
            'adjacency': adjacency,
            'triples': triples,
            'rest_angles': rest_angles,
            'rest_separations': separations,
        }

    def _relax(self, positions: np.ndarray, topology: Dict, max_iterations: int) -> RefinementResult:
        initial_positions = positions.copy()
        positions = positions.copy()
        window = self.config['convergence_window']

        initial_energy = self._energy(positions, topology)
        energy_history = []
        state = RelaxationState.RELAXING
        iteration = 0

        while state == RelaxationState.RELAXING:
            if iteration >= max_iterations:
                state = RelaxationState.ITERATION_LIMIT_REACHED
                break

            progress = iteration / max_iterations
            forces = self._spring_forces(positions, topology)
            forces += self._repulsion_forces(positions, topology, progress)
            if self.config['preserve_angles']:
                forces += self._angle_forces(positions, topology)

            # Damped, capped displacement
            damping = self.config['damping'] * (1.0 - self.config['damping_decay'] * progress)
            step = forces * damping
            max_step = self.config['max_step_factor'] * damping
            lengths = np.linalg.norm(step, axis=1)
            too_long = lengths > max_step
            step[too_long] *= (max_step / lengths[too_long])[:, None]
            positions += step

            energy_history.append(self._energy(positions, topology))
            iteration += 1

            if len(energy_history) >= window and np.var(energy_history[-window:]) < self.config['convergence_variance']:
                state = RelaxationState.CONVERGED

        improvement = self._calculate_improvement(positions, topology, initial_energy,
                                                  energy_history[-1] if energy_history else initial_energy)

        self.logger.info(f"Refinement {state.value} after {iteration} iterations, "
                         f"energy {initial_energy:.4f} -> {improvement['final_energy']:.4f}")

        return RefinementResult(
            success=True,
            state=state,
            positions=positions,
            initial_positions=initial_positions,
            iterations=iteration,
            energy_history=energy_history,
            improvement=improvement
        )

    def _spring_forces(self, positions: np.ndarray, topology: Dict) -> np.ndarray:
        forces = np.zeros_like(positions)
        edges = topology['edges']
        if len(edges) == 0:
            return forces

        vectors = positions[edges[:, 1]] - positions[edges[:, 0]]
        lengths = np.linalg.norm(vectors, axis=1)
        directions = vectors / np.maximum(lengths, 1e-9)[:, None]
        magnitudes = self.config['spring_constant'] * (lengths - topology['rest_lengths'])
        edge_forces = magnitudes[:, None] * directions

        np.add.at(forces, edges[:, 0], edge_forces)
        np.add.at(forces, edges[:, 1], -edge_forces)
        return forces

    def _repulsion_forces(self, positions: np.ndarray, topology: Dict, progress: float) -> np.ndarray:
        """Inverse-square push between non-adjacent nodes that came closer than at rest"""
        strength = self.config['repulsion_strength'] * max(
            self.config['min_repulsion_factor'], 1.0 - self.config['repulsion_decay'] * progress
        )
        min_distance = self.config['min_repulsion_distance']

        offsets = positions[None, :, :] - positions[:, None, :]  # offsets[i, j] = p_j - p_i
        distances = np.linalg.norm(offsets, axis=2)
        rest = topology['rest_separations']

        active = (~topology['adjacency']) & (distances < rest)
        np.fill_diagonal(active, False)
        if not active.any():
            return np.zeros_like(positions)

        magnitude = strength * (1.0 / np.maximum(distances, min_distance) ** 2 -
                                1.0 / np.maximum(rest, min_distance) ** 2)
        magnitude = np.where(active, np.maximum(magnitude, 0.0), 0.0)
        directions = offsets / np.maximum(distances, 1e-9)[:, :, None]

        # Push node i away from every active j
        return -(magnitude[:, :, None] * directions).sum(axis=1)

    def _angle_forces(self, positions: np.ndarray, topology: Dict) -> np.ndarray:
        """Tangential forces rotating neighbor pairs back toward their rest angle"""
        forces = np.zeros_like(positions)
        triples = topology['triples']
        if len(triples) == 0:
            return forces

        center, a, b = triples[:, 0], triples[:, 1], triples[:, 2]
        diff = wrap_angle(signed_angles(positions, triples) - topology['rest_angles'])
        magnitude = self.config['angle_weight'] * self.config['spring_constant'] * np.sin(diff)

        va = positions[a] - positions[center]
        vb = positions[b] - positions[center]
        perp_a = np.stack([-va[:, 1], va[:, 0]], axis=1)
        perp_b = np.stack([-vb[:, 1], vb[:, 0]], axis=1)

        force_a = magnitude[:, None] * perp_a
        force_b = -magnitude[:, None] * perp_b

        np.add.at(forces, a, force_a)
        np.add.at(forces, b, force_b)
        np.add.at(forces, center, -(force_a + force_b))
        return forces

    def _energy(self, positions: np.ndarray, topology: Dict) -> float:
        """Spring energy sum(0.5 * k * (length - rest)^2)"""
        edges = topology['edges']
        if len(edges) == 0:
            return 0.0
        lengths = np.linalg.norm(positions[edges[:, 1]] - positions[edges[:, 0]], axis=1)
        return float(0.5 * self.config['spring_constant'] * np.sum((lengths - topology['rest_lengths']) ** 2))

    def _calculate_improvement(self, positions: np.ndarray, topology: Dict,
                               initial_energy: float, final_energy: float) -> Dict[str, float]:
        edges = topology['edges']
        if len(edges):
            lengths = np.linalg.norm(positions[edges[:, 1]] - positions[edges[:, 0]], axis=1)
            errors = np.abs(lengths - topology['rest_lengths']) / np.maximum(topology['rest_lengths'], 1.0)
            avg_distance_error = float(errors.mean())
            edges_preserved = 100.0 * float(np.mean(errors < self.config['edge_tolerance']))
        else:
            avg_distance_error = 0.0
            edges_preserved = 100.0

        if len(topology['triples']):
            angle_errors = np.abs(wrap_angle(signed_angles(positions, topology['triples']) - topology['rest_angles']))
            avg_angle_error = float(angle_errors.mean())
        else:
            avg_angle_error = 0.0

        energy_reduction = (initial_energy - final_energy) / initial_energy if initial_energy > 1e-12 else 0.0

        return {
            'consistency': max(0.0, 1.0 - avg_distance_error - avg_angle_error / np.pi),
            'edges_preserved': edges_preserved,
            'energy_reduction': float(energy_reduction),
            'initial_energy': float(initial_energy),
            'final_energy': float(final_energy),
            'avg_distance_error': avg_distance_error,
            'avg_angle_error': avg_angle_error,
        }


def signed_angles(positions: np.ndarray, triples: np.ndarray) -> np.ndarray:
    """Signed angle from (a - center) to (b - center) for each (center, a, b) triple"""
    if len(triples) == 0:
        return np.zeros(0)
    center, a, b = triples[:, 0], triples[:, 1], triples[:, 2]
    va = positions[a] - positions[center]
    vb = positions[b] - positions[center]
    cross = va[:, 0] * vb[:, 1] - va[:, 1] * vb[:, 0]
    dot = (va * vb).sum(axis=1)
    return np.arctan2(cross, dot)


def wrap_angle(angles: np.ndarray) -> np.ndarray:
    """Wrap angles into [-pi, pi)"""
    return (np.asarray(angles) + np.pi) % (2 * np.pi) - np.pi


def create_spring_refiner(config: Optional[Dict] = None) -> SpringRefiner:
    """Factory function to create spring refiner"""
    return SpringRefiner(config)
