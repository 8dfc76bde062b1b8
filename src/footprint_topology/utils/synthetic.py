"""
Synthetic outsole point sets
Deterministic footprint-like point clouds and degradations for demos and tests
"""

import numpy as np
from typing import Optional


def _inside_outsole(x: float, y: float, length: float, width: float) -> bool:
    """Forefoot ellipse joined to a narrower heel ellipse along the y axis"""
    forefoot = ((x / (width / 2)) ** 2 + ((y - length * 0.2) / (length * 0.32)) ** 2) <= 1.0
    heel = ((x / (width * 0.38)) ** 2 + ((y + length * 0.28) / (length * 0.24)) ** 2) <= 1.0
    waist = abs(y + length * 0.04) <= length * 0.12 and abs(x) <= width * 0.33
    return forefoot or heel or waist


def generate_outsole_points(num_points: int = 40,
                            seed: int = 0,
                            length: float = 280.0,
                            width: float = 110.0,
                            min_spacing: float = 12.0,
                            max_attempts: int = 20000) -> np.ndarray:
    """
    Sample tread feature points inside an outsole outline

    Args:
        num_points: Number of points requested
        seed: Random seed; identical seeds give identical point sets
        length: Outsole length (pixels)
        width: Outsole width at the forefoot (pixels)
        min_spacing: Minimum distance between points
        max_attempts: Maximum number of candidate draws

    Returns:
        (n, 3) array of x, y, confidence centered on the origin; n may be
        smaller than num_points if the spacing cannot be satisfied
    """
    rng = np.random.default_rng(seed)
    accepted = []

    for _ in range(max_attempts):
        if len(accepted) >= num_points:
            break
        x = rng.uniform(-width / 2, width / 2)
        y = rng.uniform(-length / 2, length / 2)
        if not _inside_outsole(x, y, length, width):
            continue
        if accepted and np.min(np.hypot(*(np.array(accepted) - (x, y)).T)) < min_spacing:
            continue
        accepted.append((x, y))

    points = np.array(accepted, dtype=float).reshape(-1, 2)
    confidence = rng.uniform(0.6, 1.0, size=len(points))
    return np.column_stack([points, confidence])


def rotate_and_translate(points: np.ndarray,
                         angle_degrees: float,
                         dx: float = 0.0,
                         dy: float = 0.0,
                         scale: float = 1.0) -> np.ndarray:
    """Rotate about the origin, scale, then translate; extra columns are kept"""
    points = np.asarray(points, dtype=float)
    theta = np.radians(angle_degrees)
    rotation = np.array([[np.cos(theta), -np.sin(theta)],
                         [np.sin(theta), np.cos(theta)]])
    moved = points.copy()
    moved[:, :2] = scale * points[:, :2] @ rotation.T + (dx, dy)
    return moved


def add_noise(points: np.ndarray, sigma: float = 1.0, seed: Optional[int] = None) -> np.ndarray:
    """Gaussian position jitter"""
    rng = np.random.default_rng(seed)
    noisy = np.asarray(points, dtype=float).copy()
    noisy[:, :2] += rng.normal(0.0, sigma, size=(len(noisy), 2))
    return noisy


def drop_points(points: np.ndarray, fraction: float = 0.1, seed: Optional[int] = None) -> np.ndarray:
    """Remove a random fraction of points, simulating a partial print"""
    rng = np.random.default_rng(seed)
    points = np.asarray(points, dtype=float)
    keep = rng.random(len(points)) >= fraction
    return points[keep]
