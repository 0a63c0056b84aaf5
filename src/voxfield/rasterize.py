"""
G-code infill rasterizer.

Turns the extrusion segments of a tool-path trace into a coverage grid
("output_geometry"): one voxel per layer along every axis, each segment
thickened to the nozzle width, coverage estimated with jittered samples
per voxel and saturating-added into a uint8 grid.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from .errors import MalformedInput, RasterizationError
from .field import BoundingBox, FieldKind, VoxelField
from .gcode import Segment, TraceSummary, load_trace
from .parallel import map_partitions

logger = logging.getLogger(__name__)


def printing_bounding_box(summary: TraceSummary, nozzle_diameter: float) -> BoundingBox:
    """
    Bounding box of the printed part.

    Layer 0 usually holds supports and is left out, unless it is the only
    layer. The box is dilated by half a nozzle in X/Y, a full nozzle below
    and half a nozzle above, so the first real layer is not clipped.
    """
    layered = [seg for seg in summary.segments if seg.layer is not None]
    if not layered:
        raise MalformedInput("trace contains no extruded segments inside layers")

    above_first = [seg for seg in layered if seg.layer > 0]
    used = above_first or layered

    points = np.concatenate([np.stack([seg.start, seg.end]) for seg in used])
    tight = BoundingBox.from_points(points)

    half = nozzle_diameter / 2.0
    return tight.dilated(half, half, nozzle_diameter, half)


class GcodeInfillRasterizer:
    """
    Rasterizes a parsed trace into an ``(n, n, n)`` coverage field, n being
    the number of completed layers.

    Sampling is deterministic: the first sample of a voxel is its centre,
    the others are jittered from a counter-based stream keyed by
    ``(jitter_seed, layer)`` and addressed by voxel, so a voxel always sees
    the same sample positions whichever segment covers it.
    """

    def __init__(self, samples: int = 4, jitter_seed: int = 0, n_workers: Optional[int] = None):
        if samples < 1:
            raise ValueError(f"samples must be >= 1, got {samples}")
        self.samples = samples
        self.jitter_seed = jitter_seed
        self.n_workers = n_workers

    def rasterize_file(self, path: Union[str, Path]) -> VoxelField:
        return self.rasterize(load_trace(path))

    def rasterize(self, summary: TraceSummary) -> VoxelField:
        """
        Build the coverage field of a trace.

        Args:
            summary: Parsed trace

        Returns:
            SCALAR_BYTE field covering the printing bounding box
        """
        nozzle = summary.nozzle_diameter
        if nozzle is None or nozzle <= 0:
            raise MalformedInput("trace does not define a positive nozzle_diameter_mm_0")

        n = summary.layer_count
        if n == 0:
            raise MalformedInput("trace contains no complete layer")

        bbox = printing_bounding_box(summary, nozzle)
        logger.debug(f"printing bounding box: {bbox}")

        per_layer = summary.layer_segments()
        for layer, segments in per_layer.items():
            if not 0 <= layer < n:
                raise RasterizationError(
                    f"out of bounds: layer {layer} (line {segments[0].line}) outside a grid of {n} layers"
                )

        def run_layer(k: int) -> np.ndarray:
            return self._rasterize_layer(k, per_layer.get(k, []), bbox, n, nozzle)

        layers = map_partitions(run_layer, range(n), self.n_workers)
        grid = np.stack(layers)

        logger.info(
            f"rasterized {len(summary.segments)} segments into a {n}x{n}x{n} grid "
            f"({self.samples} samples per voxel)"
        )
        return VoxelField(grid, bbox, FieldKind.SCALAR_BYTE)

    # ------------------------------------------------------------------

    def _block_jitter(self, k: int, n: int, j_range: Tuple[int, int], i_range: Tuple[int, int]) -> np.ndarray:
        """
        Sample offsets (voxel units) for a block of layer k.

        Offsets come from a counter-based Philox stream keyed by
        ``(jitter_seed, k)``; voxel ``(j, i)`` owns a fixed run of counter
        blocks, so its offsets do not depend on the block it is drawn with.

        Args:
            k: Layer index
            n: Grid size
            j_range: Inclusive row range
            i_range: Inclusive column range

        Returns:
            Array of shape (rows, cols, samples, 2); sample 0 is always 0
        """
        (j_min, j_max), (i_min, i_max) = j_range, i_range
        rows, cols = j_max - j_min + 1, i_max - i_min + 1
        jitter = np.zeros((rows, cols, self.samples, 2), dtype=np.float64)
        if self.samples == 1:
            return jitter

        draws = 2 * (self.samples - 1)
        stride = -(-draws // 4)  # Philox yields 4 words per counter step
        key = np.random.SeedSequence([self.jitter_seed, k]).generate_state(2, np.uint64)

        for r, j in enumerate(range(j_min, j_max + 1)):
            bitgen = np.random.Philox(key=key, counter=(j * n + i_min) * stride)
            words = np.random.Generator(bitgen).random(cols * stride * 4).reshape(cols, stride * 4)
            jitter[r, :, 1:, :] = words[:, :draws].reshape(cols, self.samples - 1, 2) - 0.5
        return jitter

    def _rasterize_layer(
        self,
        k: int,
        segments: List[Segment],
        bbox: BoundingBox,
        n: int,
        nozzle: float
    ) -> np.ndarray:
        layer = np.zeros((n, n), dtype=np.uint8)
        if not segments:
            return layer

        origin = bbox.min_corner[:2]
        size = bbox.size()[:2]
        half_width = nozzle / 2.0

        for seg in segments:
            (i_min, i_max), (j_min, j_max) = _footprint_index_range(seg, half_width, origin, size, n)

            # Sample positions in voxel units, then back to mm
            jj, ii = np.mgrid[j_min:j_max + 1, i_min:i_max + 1]
            centers = np.stack([ii + 0.5, jj + 0.5], axis=-1)[:, :, None, :]
            samples_vox = centers + self._block_jitter(k, n, (j_min, j_max), (i_min, i_max))
            samples_mm = origin + samples_vox / n * size

            inside = _inside_footprint(samples_mm, seg.start[:2], seg.end[:2], half_width)
            fraction = inside.sum(axis=-1) / self.samples
            coverage = np.rint(fraction * 255.0).astype(np.uint16)

            block = layer[j_min:j_max + 1, i_min:i_max + 1]
            layer[j_min:j_max + 1, i_min:i_max + 1] = np.minimum(block + coverage, 255).astype(np.uint8)

        return layer


def _footprint_index_range(
    seg: Segment,
    half_width: float,
    origin: np.ndarray,
    size: np.ndarray,
    n: int
) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    """Inclusive (i, j) voxel ranges covering the thickened segment, clamped to the grid."""
    a = seg.start[:2]
    b = seg.end[:2]
    lo = (np.minimum(a, b) - half_width * np.sqrt(2.0) - origin) / size * n
    hi = (np.maximum(a, b) + half_width * np.sqrt(2.0) - origin) / size * n

    lo = np.clip(np.floor(lo), 0, n - 1).astype(int)
    hi = np.clip(np.ceil(hi), 0, n - 1).astype(int)
    return (int(lo[0]), int(hi[0])), (int(lo[1]), int(hi[1]))


def _inside_footprint(points: np.ndarray, a: np.ndarray, b: np.ndarray, half_width: float) -> np.ndarray:
    """
    Point-in-rectangle test for a segment thickened by ``half_width`` on
    every side. A zero-length segment becomes an axis-aligned square.
    """
    d = b - a
    length = float(np.hypot(d[0], d[1]))
    rel = points - a

    if length == 0.0:
        return np.all(np.abs(rel) < half_width, axis=-1)

    u = d / length
    normal = np.array([-u[1], u[0]])
    along = rel @ u
    across = rel @ normal
    return (along > -half_width) & (along < length + half_width) & (np.abs(across) < half_width)


def layer_statistics(summary: TraceSummary) -> Dict[int, Dict[str, float]]:
    """Per-layer segment count, extruded length and mean fan/feed settings."""
    stats = {}
    for layer, segments in sorted(summary.layer_segments().items()):
        stats[layer] = {
            "segments": len(segments),
            "length_mm": float(sum(seg.length for seg in segments)),
            "mean_fan": float(np.mean([seg.fan for seg in segments])),
            "mean_feed_rate": float(np.mean([seg.feed_rate for seg in segments])),
        }
    return stats
