#!/usr/bin/env python3
"""
Compare and merge two footprint point sets
Runs the topology pipeline on JSON point files or on a synthetic outsole pair
"""

import json
import logging
from pathlib import Path

from footprint_topology.models.pipeline.topology_pipeline import (
    TopologyPipeline, PipelineConfig, StageStatus
)
from footprint_topology.utils.synthetic import generate_outsole_points, rotate_and_translate, add_noise

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def load_points(filepath: Path):
    """Load a list of {x, y, confidence} objects"""
    with open(filepath, 'r') as f:
        points = json.load(f)
    logger.info(f"Loaded {len(points)} points from {filepath}")
    return points


def synthetic_pair(seed: int, num_points: int, angle: float, dx: float, dy: float, noise: float):
    """Outsole points and a rotated, shifted and jittered copy"""
    points_a = generate_outsole_points(num_points=num_points, seed=seed)
    points_b = rotate_and_translate(points_a, angle, dx, dy)
    if noise > 0:
        points_b = add_noise(points_b, sigma=noise, seed=seed + 1)
    return points_a, points_b


def main():
    """Main merge function"""
    import argparse

    parser = argparse.ArgumentParser(description='Compare and merge two footprint point sets')
    parser.add_argument('--config', type=str, default=None,
                        help='YAML configuration file (e.g. configs/topology_merge.yaml)')
    parser.add_argument('--points-a', type=str, default=None,
                        help='JSON file with the reference points')
    parser.add_argument('--points-b', type=str, default=None,
                        help='JSON file with the points merged into the reference')
    parser.add_argument('--seed', type=int, default=7,
                        help='Seed for the synthetic pair')
    parser.add_argument('--num-points', type=int, default=40,
                        help='Points in the synthetic outsole')
    parser.add_argument('--angle', type=float, default=90.0,
                        help='Rotation of the synthetic copy (degrees)')
    parser.add_argument('--shift', type=float, nargs=2, default=[300.0, 100.0],
                        help='Translation of the synthetic copy')
    parser.add_argument('--noise', type=float, default=0.0,
                        help='Position jitter of the synthetic copy (pixels)')
    parser.add_argument('--compare-only', action='store_true',
                        help='Only run the structural comparison')
    parser.add_argument('--output', type=str, default=None,
                        help='Save the merged graph as JSON')

    args = parser.parse_args()

    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
    pipeline = TopologyPipeline(config)

    if args.points_a and args.points_b:
        points_a = load_points(Path(args.points_a))
        points_b = load_points(Path(args.points_b))
    else:
        logger.info(f"Using synthetic outsole pair (seed {args.seed})")
        points_a, points_b = synthetic_pair(args.seed, args.num_points, args.angle,
                                            args.shift[0], args.shift[1], args.noise)

    graph_a = pipeline.build_graph(points_a, graph_id='footprint_a')
    graph_b = pipeline.build_graph(points_b, graph_id='footprint_b')

    match = pipeline.compare(graph_a, graph_b)
    logger.info(f"Comparison: {match.decision.value} (similarity {match.similarity:.3f}) - {match.reason}")

    if args.compare_only:
        return

    result = pipeline.full_topology_merge(graph_a, graph_b)

    logger.info("=" * 60)
    logger.info("MERGE SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Method: {result.merge.method.value}")
    for stage, record in result.stages.items():
        suffix = f" ({record.reason})" if record.reason else ''
        logger.info(f"  {stage}: {record.status.value}{suffix}")

    if result.final_graph is not None:
        logger.info(f"Merged graph: {result.final_graph.node_count} nodes, {result.final_graph.edge_count} edges")
        transformation = getattr(result.merge, 'transformation', None)
        if transformation is not None:
            logger.info(f"Transformation: rotation {transformation.rotation:.1f} deg, "
                        f"translation ({transformation.dx:.1f}, {transformation.dy:.1f}), "
                        f"scale {transformation.scale:.3f}")

    if result.stages.get('validation') is not None and result.stages['validation'].status == StageStatus.COMPLETED:
        scores = {name: round(check.score, 3) for name, check in result.validation.checks.items()}
        logger.info(f"Validation checks: {scores}")

    logger.info(f"Combined score: {result.combined_score:.3f} ({result.quality})")
    for recommendation in result.recommendations:
        logger.info(f"  [{recommendation['type']}] {recommendation['message']}")
    for warning in result.warnings:
        logger.warning(warning)

    if args.output and result.final_graph is not None:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        result.final_graph.save(output_path, format='json')
        logger.info(f"Merged graph saved to {output_path}")


if __name__ == '__main__':
    main()
