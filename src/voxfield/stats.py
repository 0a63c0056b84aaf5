"""
Local statistics over the printed and design geometry.

Two analyses run on co-registered ``output_geometry`` (printed occupancy)
and ``input_geometry`` (design mask) fields:

- a confidence-weighted Gaussian mean of the printed occupancy, computed
  as three separable 1-D passes (Z, then Y, then X);
- the dominant free direction of every design voxel, found by casting
  rays along a fixed set of candidate directions and keeping the longest
  unobstructed one.

An optional reference direction field is compared with the dominant
direction to give a correlation field.
"""

import logging
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.ndimage import correlate1d
from scipy.stats import qmc

from .errors import DimensionMismatch, MalformedInput
from .field import FieldKind, VoxelField, to_byte
from .parallel import map_partitions, resolve_workers, split_range

logger = logging.getLogger(__name__)

# Output name suffixes
MEAN = "_mean"
MEAN_CONFIDENCE = "_mean_confidence"
DIRECTION = "_dir"
DIRECTION_LENGTH = "_dir_length"
DIRECTION_CHANGE = "_dir_change"
DIRECTION_CORRELATION = "_dir_correlation"

AXIS_DIRECTIONS = np.array([
    [1.0, 0.0, 0.0], [-1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0], [0.0, -1.0, 0.0],
    [0.0, 0.0, 1.0], [0.0, 0.0, -1.0],
])

# Voxels handed to one ray-casting task
RAY_CHUNK = 4096


def candidate_directions(samples: int) -> np.ndarray:
    """
    Unit directions probed from every voxel, as an (N, 3) array in (x, y, z).

    The six signed axes always come first, followed by ``samples - 6``
    directions from the 2-D Halton sequence (its first point skipped)
    mapped to the sphere with ``theta = arccos(1 - 2u)``, ``phi = 2 pi v``.
    """
    extra = max(0, samples - len(AXIS_DIRECTIONS))
    if extra == 0:
        return AXIS_DIRECTIONS.copy()

    sampler = qmc.Halton(d=2, scramble=False)
    sampler.fast_forward(1)
    uv = sampler.random(extra)

    theta = np.arccos(1.0 - 2.0 * uv[:, 0])
    phi = 2.0 * np.pi * uv[:, 1]
    sphere = np.stack([
        np.sin(theta) * np.cos(phi),
        np.sin(theta) * np.sin(phi),
        np.cos(theta),
    ], axis=1)
    return np.vstack([AXIS_DIRECTIONS, sphere])


def gaussian_window(kernel_mm: float, voxels_per_mm: float, n: int) -> np.ndarray:
    """
    1-D Gaussian weights along one axis.

    Half-width is ``ceil(kernel_mm * voxels_per_mm)`` cells, at most
    ``n - 1``; the standard deviation is ``kernel_mm``.
    """
    if voxels_per_mm <= 0:
        return np.ones(1)
    half = int(min(np.ceil(kernel_mm * voxels_per_mm), n - 1))
    offsets_mm = np.arange(-half, half + 1) / voxels_per_mm
    return np.exp(-0.5 * (offsets_mm / kernel_mm) ** 2)


class LocalStatisticsEngine:
    """
    Windowed mean and dominant direction fields.

    Args:
        kernel_size_mm: Gaussian standard deviation and window radius (mm)
        direction_samples: Number of candidate directions (at least the 6 axes)
        threshold: Occupancy fraction that stops a ray (printed >= threshold
            or design < threshold)
        n_workers: Worker pool size
    """

    def __init__(
        self,
        kernel_size_mm: float = 2.0,
        direction_samples: int = 32,
        threshold: float = 0.5,
        n_workers: Optional[int] = None
    ):
        if kernel_size_mm <= 0:
            raise MalformedInput(f"kernel size must be positive, got {kernel_size_mm}")
        self.kernel_size_mm = kernel_size_mm
        self.direction_samples = direction_samples
        self.threshold = threshold
        self.n_workers = n_workers

    def compute(
        self,
        printed: VoxelField,
        design: VoxelField,
        name: str,
        reference: Optional[VoxelField] = None
    ) -> Dict[str, VoxelField]:
        """
        Run every analysis and return the named output fields.

        Args:
            printed: Printed occupancy (``output_geometry``)
            design: Design mask (``input_geometry``)
            name: Prefix of the output names
            reference: Optional unit direction field on the same grid

        Returns:
            Mapping of output name to field
        """
        outputs = self.mean_fields(printed, design, name)
        outputs.update(self.direction_fields(printed, design, name))
        if reference is not None:
            outputs.update(self.correlation_field(outputs[name + DIRECTION], reference, name))
        return outputs

    # ------------------------------------------------------------------
    # Mean / confidence
    # ------------------------------------------------------------------

    def mean_fields(self, printed: VoxelField, design: VoxelField, name: str) -> Dict[str, VoxelField]:
        """Confidence-weighted Gaussian mean of the printed occupancy."""
        self._check_grids(printed, design)

        mask = design.as_float().astype(np.float64)
        values = printed.as_float().astype(np.float64) * mask
        confidence = np.ones_like(mask)

        vpm_xyz = printed.voxels_per_mm()
        workers = resolve_workers(self.n_workers)

        # array axis 0/1/2 is z/y/x
        for axis in (0, 1, 2):
            window = gaussian_window(self.kernel_size_mm, vpm_xyz[2 - axis], mask.shape[axis])
            logger.debug(f"blur pass axis {'zyx'[axis]}: {len(window)} cells")
            values, weight = self._blur_pass(values, mask, window, axis, workers)
            confidence *= weight

        peak = confidence.max()
        if peak > 0:
            confidence /= peak

        mean = values * mask
        confidence = confidence * mask

        logger.info(f"mean fields: kernel {self.kernel_size_mm} mm, mean occupancy {mean.mean():.3f}")
        return {
            name + MEAN: VoxelField(to_byte(mean), printed.bbox, FieldKind.SCALAR_BYTE),
            name + MEAN_CONFIDENCE: VoxelField(confidence.astype(np.float32), printed.bbox, FieldKind.SCALAR_FLOAT),
        }

    def _blur_pass(
        self,
        values: np.ndarray,
        mask: np.ndarray,
        window: np.ndarray,
        axis: int,
        workers: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        One normalised convolution pass along ``axis``.

        Slabs are cut along a perpendicular axis; the call returns only
        once every slab is done.
        """
        split_axis = (axis + 1) % 3
        slabs = split_range(values.shape[split_axis], workers)
        weighted = values * mask

        def blur_slab(bounds: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
            index = [slice(None)] * 3
            index[split_axis] = slice(*bounds)
            index = tuple(index)
            num = correlate1d(weighted[index], window, axis=axis, mode="constant", cval=0.0)
            den = correlate1d(mask[index], window, axis=axis, mode="constant", cval=0.0)
            out = np.divide(num, den, out=np.zeros_like(num), where=den > 0)
            return out, den

        parts = map_partitions(blur_slab, slabs, workers)
        blurred = np.concatenate([p[0] for p in parts], axis=split_axis)
        weight = np.concatenate([p[1] for p in parts], axis=split_axis)
        return blurred, weight

    # ------------------------------------------------------------------
    # Dominant direction
    # ------------------------------------------------------------------

    def direction_fields(self, printed: VoxelField, design: VoxelField, name: str) -> Dict[str, VoxelField]:
        """Longest free direction, its length (mm) and the last improvement step."""
        self._check_grids(printed, design)

        occupancy = printed.as_float()
        mask = design.as_float()
        dims = printed.dims
        directions = candidate_directions(self.direction_samples)
        vpm = printed.voxels_per_mm()

        active = np.argwhere(mask > 0)  # (N, 3) as (k, j, i)
        chunks = [active[s:e] for s, e in split_range(len(active), max(1, -(-len(active) // RAY_CHUNK)))]

        def trace_chunk(cells: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
            best_len = np.zeros(len(cells))
            best_dir = np.zeros((len(cells), 3))
            change = np.zeros(len(cells))
            for direction in directions:
                length = self._cast_rays(cells, direction, occupancy, mask, vpm)
                improved = length > best_len
                change[improved] = np.linalg.norm(direction - best_dir[improved], axis=1)
                best_dir[improved] = direction
                best_len[improved] = length[improved]
            return best_dir, best_len, change

        results = map_partitions(trace_chunk, chunks, self.n_workers) if chunks else []

        dir_data = np.zeros(dims + (3,), dtype=np.float32)
        len_data = np.zeros(dims, dtype=np.float32)
        change_data = np.zeros(dims, dtype=np.float32)
        for cells, (best_dir, best_len, change) in zip(chunks, results):
            k, j, i = cells[:, 0], cells[:, 1], cells[:, 2]
            dir_data[k, j, i] = best_dir
            len_data[k, j, i] = best_len
            change_data[k, j, i] = change

        logger.info(f"direction fields: {len(directions)} directions over {len(active)} voxels")
        return {
            name + DIRECTION: VoxelField(dir_data, printed.bbox, FieldKind.VECTOR3_FLOAT),
            name + DIRECTION_LENGTH: VoxelField(len_data, printed.bbox, FieldKind.SCALAR_FLOAT),
            name + DIRECTION_CHANGE: VoxelField(change_data, printed.bbox, FieldKind.SCALAR_FLOAT),
        }

    def _cast_rays(
        self,
        cells: np.ndarray,
        direction: np.ndarray,
        occupancy: np.ndarray,
        mask: np.ndarray,
        vpm: np.ndarray
    ) -> np.ndarray:
        """
        Walk rays from the voxel centres through the grid, all at once.

        Uses the Amanatides-Woo traversal with ``t`` in millimetres. A ray
        stops when it leaves the grid (length = exit t) or enters a voxel
        outside the design or already printed (length = t on entry).

        Args:
            cells: (N, 3) start voxels as (k, j, i)
            direction: Unit direction (x, y, z)
            occupancy: Printed occupancy fractions
            mask: Design occupancy fractions
            vpm: Voxels per mm (x, y, z)

        Returns:
            (N,) travelled distances in mm
        """
        shape = np.array(occupancy.shape)
        # work in array axis order (z, y, x)
        d = direction[::-1]
        rate = np.abs(d * vpm[::-1])
        with np.errstate(divide="ignore"):
            t_delta = np.where(rate > 0, 1.0 / np.where(rate > 0, rate, 1.0), np.inf)
        step = np.sign(d).astype(np.intp)

        pos = cells.astype(np.intp).copy()
        t_max = np.tile(0.5 * t_delta, (len(cells), 1))
        length = np.zeros(len(cells))
        live = np.arange(len(cells))

        while len(live):
            axis = np.argmin(t_max[live], axis=1)
            t_entry = t_max[live, axis]

            stuck = ~np.isfinite(t_entry)
            if stuck.any():
                live = live[~stuck]
                continue

            pos[live, axis] += step[axis]
            cur = pos[live]
            outside = np.any((cur < 0) | (cur >= shape), axis=1)

            blocked = np.zeros(len(live), dtype=bool)
            inside = ~outside
            if inside.any():
                k, j, i = cur[inside, 0], cur[inside, 1], cur[inside, 2]
                blocked[inside] = (mask[k, j, i] < self.threshold) | (occupancy[k, j, i] >= self.threshold)

            done = outside | blocked
            length[live[done]] = t_entry[done]

            going = ~done
            t_max[live[going], axis[going]] += t_delta[axis[going]]
            live = live[going]

        return length

    # ------------------------------------------------------------------
    # Correlation
    # ------------------------------------------------------------------

    def correlation_field(self, dominant: VoxelField, reference: VoxelField, name: str) -> Dict[str, VoxelField]:
        """``|dot(reference, dominant)|`` scaled to bytes."""
        if reference.kind is not FieldKind.VECTOR3_FLOAT:
            raise DimensionMismatch(f"reference direction must be a vector field, got {reference.kind.value}")
        if reference.dims != dominant.dims:
            raise DimensionMismatch(f"reference direction dims {reference.dims} != {dominant.dims}")

        dot = np.abs(np.sum(reference.as_vector().astype(np.float64) * dominant.as_vector(), axis=-1))
        return {name + DIRECTION_CORRELATION: VoxelField(to_byte(dot), dominant.bbox, FieldKind.SCALAR_BYTE)}

    @staticmethod
    def _check_grids(printed: VoxelField, design: VoxelField) -> None:
        if printed.dims != design.dims:
            raise DimensionMismatch(f"printed {printed.dims} and design {design.dims} grids differ")
        if not printed.has_same_box(design):
            logger.warning("printed and design fields have different bounding boxes")
