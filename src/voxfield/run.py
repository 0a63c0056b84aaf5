"""
voxfield - command line entry point.

Build the field collection of one print and save it.

Usage:
    voxfield --gcode part.gcode --mesh part.stl --output outputs/part.npz
    voxfield --gcode part.gcode --bag upstream.npz --config run.json -v
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import PipelineConfig
from .errors import VoxfieldError
from .io import load_bag, save_bag
from .logging_setup import setup_logging
from .pipeline import Pipeline

logger = logging.getLogger(__name__)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Config file first, then command line overrides."""
    config = PipelineConfig.from_json(args.config) if args.config else PipelineConfig()

    if args.samples is not None:
        config.samples = args.samples
    if args.kernel_size is not None:
        config.kernel_size_mm = args.kernel_size
    if args.direction_samples is not None:
        config.direction_samples = args.direction_samples
    if args.workers is not None:
        config.n_workers = args.workers
    return config


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="voxfield - Build voxel fields from a G-code trace and a design mesh"
    )
    parser.add_argument(
        "--gcode", "-g",
        type=Path,
        required=True,
        help="G-code trace of the print"
    )
    parser.add_argument(
        "--mesh", "-m",
        type=Path,
        default=None,
        help="Design mesh (STL or any format trimesh reads)"
    )
    parser.add_argument(
        "--bag", "-b",
        type=Path,
        default=None,
        help="Upstream field collection (.npz) to extend"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="JSON run configuration"
    )
    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=Path("outputs/fields.npz"),
        help="Output field collection (.npz)"
    )
    parser.add_argument(
        "--samples", "-s",
        type=int,
        default=None,
        help="Samples per voxel for the rasterizer"
    )
    parser.add_argument(
        "--kernel-size", "-k",
        type=float,
        default=None,
        help="Statistics kernel radius in mm"
    )
    parser.add_argument(
        "--direction-samples", "-d",
        type=int,
        default=None,
        help="Candidate directions for the dominant direction search"
    )
    parser.add_argument(
        "--workers", "-w",
        type=int,
        default=None,
        help="Worker threads (default: one per CPU)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging"
    )

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = build_config(args)
        bag = load_bag(args.bag) if args.bag else None

        logger.info(f"Trace: {args.gcode}")
        logger.info(f"Mesh: {args.mesh}")
        logger.info(f"Output: {args.output}")

        bag, summary = Pipeline(config).run(args.gcode, args.mesh, bag)
        output_path = save_bag(bag, args.output)
    except (VoxfieldError, OSError) as e:
        logger.error(f"Run aborted: {e}")
        sys.exit(1)

    # Save summary
    summary_path = output_path.parent / "run_summary.json"
    report = {
        "timestamp": datetime.now().isoformat(),
        "gcode": str(args.gcode),
        "mesh": str(args.mesh) if args.mesh else None,
        "output": str(output_path),
        "config": config.to_dict(),
        **summary.to_dict(),
    }
    with open(summary_path, 'w') as f:
        json.dump(report, f, indent=2)

    logger.info(f"Summary saved to: {summary_path}")
    logger.info(f"COMPLETE: {len(summary.produced)} fields produced, {len(summary.skipped)} skipped")


if __name__ == "__main__":
    main()
