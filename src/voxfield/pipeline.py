"""
Stage orchestration.

Runs the stages in order and applies the failure policy: a trace that
cannot be parsed, or that lacks a nozzle diameter or a complete layer,
aborts the run; every other stage produces its fields
completely or not at all, and failures are recorded in the RunSummary
instead of stopping the remaining stages.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from .bag import FieldCollection
from .config import INPUT_GEOMETRY, OUTPUT_GEOMETRY, PipelineConfig
from .depth import DepthExtentOracle
from .errors import MalformedInput, RasterizationError, VoxfieldError
from .gcode import TraceSummary, load_trace
from .mesh_ops import compute_mesh_stats, load_mesh, mesh_bounding_box
from .rasterize import GcodeInfillRasterizer, layer_statistics
from .resample import FieldResampler
from .stats import DIRECTION, DIRECTION_CORRELATION, MEAN, LocalStatisticsEngine
from .voxelize import MeshSolidVoxelizer

logger = logging.getLogger(__name__)

RESAMPLED_SUFFIX = "_resampled"

# Per-layer process arrays recorded from the trace
LAYER_ARRAYS = {
    "layer_fan": "mean_fan",
    "layer_feed_rate": "mean_feed_rate",
    "layer_length_mm": "length_mm",
}


@dataclass
class RunSummary:
    """Outcome of a pipeline run."""
    produced: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)  # name -> reason
    layer_count: int = 0
    segment_count: int = 0
    mesh_stats: Optional[Dict[str, Any]] = None

    def skip(self, name: str, reason: Union[str, Exception]) -> None:
        self.skipped[name] = str(reason)
        logger.warning(f"skipped {name}: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "produced": list(self.produced),
            "skipped": dict(self.skipped),
            "layer_count": self.layer_count,
            "segment_count": self.segment_count,
            "mesh_stats": self.mesh_stats,
        }


class Pipeline:
    """
    Build the field collection of one print.

    Args:
        config: Run configuration
        oracle: Depth-extent backend for the mesh voxelizer (ray-cast oracle by default)
    """

    def __init__(self, config: Optional[PipelineConfig] = None, oracle: Optional[DepthExtentOracle] = None):
        self.config = config if config is not None else PipelineConfig()
        self.oracle = oracle

    def run(
        self,
        gcode_path: Union[str, Path],
        mesh_path: Optional[Union[str, Path]] = None,
        bag: Optional[FieldCollection] = None
    ) -> Tuple[FieldCollection, RunSummary]:
        """
        Run every stage.

        Args:
            gcode_path: Tool-path trace
            mesh_path: Design mesh; without it no input_geometry nor statistics
            bag: Upstream collection to extend (a new one if None)

        Returns:
            Tuple of (bag, summary)
        """
        bag = bag if bag is not None else FieldCollection()
        summary = RunSummary()

        trace = self._parse(gcode_path)
        summary.layer_count = trace.layer_count
        summary.segment_count = len(trace.segments)
        self._record_layer_arrays(bag, trace)

        self._rasterize(bag, trace, summary)
        self._voxelize(bag, mesh_path, summary)
        self._prepare_fields(bag, summary)
        self._resample(bag, summary)
        self._statistics(bag, summary)

        if self.config.border_padding > 0:
            bag.pad_borders(self.config.border_padding)

        bag.check_common_box()
        logger.info(f"run complete: {len(summary.produced)} fields produced, {len(summary.skipped)} skipped")
        return bag, summary

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _parse(self, gcode_path: Union[str, Path]) -> TraceSummary:
        try:
            return load_trace(gcode_path)
        except OSError as e:
            raise MalformedInput(f"could not read trace {gcode_path}: {e}") from e

    def _record_layer_arrays(self, bag: FieldCollection, trace: TraceSummary) -> None:
        per_layer = layer_statistics(trace)
        for name, key in LAYER_ARRAYS.items():
            if name in bag.arrays:
                continue
            values = np.zeros(trace.layer_count)
            for layer, stats in per_layer.items():
                if 0 <= layer < trace.layer_count:
                    values[layer] = stats[key]
            bag.arrays[name] = values

    def _publish(self, bag: FieldCollection, summary: RunSummary, name: str, voxel_field) -> None:
        bag.insert(name, voxel_field)
        summary.produced.append(name)

    def _rasterize(self, bag: FieldCollection, trace: TraceSummary, summary: RunSummary) -> None:
        rasterizer = GcodeInfillRasterizer(
            samples=self.config.samples,
            jitter_seed=self.config.jitter_seed,
            n_workers=self.config.n_workers
        )
        try:
            self._publish(bag, summary, OUTPUT_GEOMETRY, rasterizer.rasterize(trace))
        except RasterizationError as e:
            logger.error(f"rasterization failed: {e}")
            summary.skip(OUTPUT_GEOMETRY, e)

    def _voxelize(
        self,
        bag: FieldCollection,
        mesh_path: Optional[Union[str, Path]],
        summary: RunSummary
    ) -> None:
        if mesh_path is None:
            return
        if OUTPUT_GEOMETRY not in bag:
            summary.skip(INPUT_GEOMETRY, f"{OUTPUT_GEOMETRY} is not available")
            return

        voxelizer = MeshSolidVoxelizer(
            oracle=self.oracle,
            align_center=self.config.align_mesh_center,
            depth_map_dir=self.config.depth_map_dir,
            n_workers=self.config.n_workers
        )
        try:
            mesh = load_mesh(mesh_path)
            summary.mesh_stats = compute_mesh_stats(mesh)
            voxel_field = voxelizer.voxelize(mesh, bag.get(OUTPUT_GEOMETRY), mesh_bounding_box(mesh))
            self._publish(bag, summary, INPUT_GEOMETRY, voxel_field)
        except VoxfieldError as e:
            logger.error(f"mesh voxelization failed: {e}")
            summary.skip(INPUT_GEOMETRY, e)

    def _prepare_fields(self, bag: FieldCollection, summary: RunSummary) -> None:
        for name in self.config.array_fields:
            try:
                bag.convert_to_field(name)
                summary.produced.append(name)
            except VoxfieldError as e:
                summary.skip(name, e)

        for name, sources in self.config.spherical.items():
            try:
                bag.assemble_spherical(name, sources)
                summary.produced.append(name)
            except VoxfieldError as e:
                summary.skip(name, e)

    def _resample(self, bag: FieldCollection, summary: RunSummary) -> None:
        if not self.config.resample:
            return

        resampler = FieldResampler(n_workers=self.config.n_workers)
        for name in self.config.resample:
            target = name + RESAMPLED_SUFFIX
            if INPUT_GEOMETRY not in bag:
                summary.skip(target, f"{INPUT_GEOMETRY} is not available")
                continue
            if name not in bag:
                summary.skip(target, f"field {name} not found")
                continue
            try:
                self._publish(bag, summary, target, resampler.resample(bag.get(name), bag.get(INPUT_GEOMETRY)))
            except VoxfieldError as e:
                summary.skip(target, e)

    def _statistics(self, bag: FieldCollection, summary: RunSummary) -> None:
        name = self.config.stats_name
        if OUTPUT_GEOMETRY not in bag or INPUT_GEOMETRY not in bag:
            summary.skip(name, f"statistics need both {OUTPUT_GEOMETRY} and {INPUT_GEOMETRY}")
            return

        printed = bag.get(OUTPUT_GEOMETRY)
        design = bag.get(INPUT_GEOMETRY)
        try:
            engine = LocalStatisticsEngine(
                kernel_size_mm=self.config.kernel_size_mm,
                direction_samples=self.config.direction_samples,
                threshold=self.config.occupancy_threshold,
                n_workers=self.config.n_workers
            )
        except VoxfieldError as e:
            summary.skip(name, e)
            return

        for label, compute in (
            (MEAN, lambda: engine.mean_fields(printed, design, name)),
            (DIRECTION, lambda: engine.direction_fields(printed, design, name)),
        ):
            try:
                outputs = compute()
            except VoxfieldError as e:
                summary.skip(name + label, e)
                continue
            for out_name, voxel_field in outputs.items():
                self._publish(bag, summary, out_name, voxel_field)

        reference_name = self.config.reference_direction
        if reference_name is None or name + DIRECTION not in bag:
            return
        if reference_name not in bag:
            summary.skip(name + DIRECTION_CORRELATION, f"field {reference_name} not found")
            return
        try:
            outputs = engine.correlation_field(bag.get(name + DIRECTION), bag.get(reference_name), name)
        except VoxfieldError as e:
            summary.skip(name + DIRECTION_CORRELATION, e)
            return
        for out_name, voxel_field in outputs.items():
            self._publish(bag, summary, out_name, voxel_field)
