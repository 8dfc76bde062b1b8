"""
Shared fixtures for footprint topology tests.
"""
import numpy as np
import pytest

from footprint_topology.models.graph_extraction.edge_creation import build_graph
from footprint_topology.models.graph_extraction.footprint_graph import FootprintGraph
from footprint_topology.utils.synthetic import generate_outsole_points, rotate_and_translate


@pytest.fixture
def outsole_points():
    """40 deterministic outsole feature points (x, y, confidence)."""
    points = generate_outsole_points(num_points=40, seed=7)
    assert len(points) == 40
    return points


@pytest.fixture
def outsole_graph(outsole_points):
    return build_graph(outsole_points, graph_id='outsole_a')


@pytest.fixture
def rotated_graph(outsole_points):
    """The same outsole rotated by 90 degrees and shifted by (300, 100)."""
    moved = rotate_and_translate(outsole_points, 90.0, 300.0, 100.0)
    return build_graph(moved, graph_id='outsole_b')


@pytest.fixture
def other_outsole_graph():
    """A different outsole with the same number of points."""
    return build_graph(generate_outsole_points(num_points=40, seed=21), graph_id='outsole_c')


@pytest.fixture
def square_graph():
    """Four points on a 10 x 10 square connected as a cycle."""
    return build_graph([(0, 0), (10, 0), (10, 10), (0, 10)], max_neighbors=2, graph_id='square')


@pytest.fixture
def path_graph():
    """Four collinear points 10 apart connected as a path."""
    return build_graph([(0, 0), (10, 0), (20, 0), (30, 0)], distance_threshold=12.0, graph_id='path')


@pytest.fixture
def tiny_disjoint_graphs():
    """Two 4-point clouds far apart; too small for a structural merge."""
    graph_a = build_graph([(0, 0), (12, 0), (0, 9), (14, 11)], graph_id='tiny_a')
    graph_b = build_graph([(1000, 1000), (1020, 1003), (1004, 1017), (1025, 1022)], graph_id='tiny_b')
    return graph_a, graph_b


@pytest.fixture
def empty_graph():
    return FootprintGraph(graph_id='empty')


@pytest.fixture
def random_cloud_graphs():
    rng = np.random.default_rng(3)
    graph_a = build_graph(rng.uniform(0, 1000, size=(120, 2)), graph_id='cloud_a')
    graph_b = build_graph(rng.uniform(0, 1000, size=(150, 2)), graph_id='cloud_b')
    return graph_a, graph_b
