"""
Mesh solid voxelizer.

Classifies every voxel of a target grid as inside or outside a closed
design mesh. The mesh's depth extent is queried along the six signed axes;
for each axis the two signed views are merged into one entry/exit interval
per grid column, and the per-axis trapezoidal occupancies are multiplied.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import trimesh

from .depth import AXIS_NAMES, DepthExtentOracle, DepthPair, OrthoView, RasterDepthOracle, export_depth_maps
from .errors import OracleFailure
from .field import BoundingBox, FieldKind, VoxelField, to_byte
from .mesh_ops import align_to_box, mesh_bounding_box, validate_mesh
from .parallel import map_partitions, resolve_workers, split_range

logger = logging.getLogger(__name__)

# (axis, sign) in query order
DEFAULT_VIEWS: Tuple[Tuple[int, int], ...] = (
    (0, 1), (0, -1),
    (1, 1), (1, -1),
    (2, 1), (2, -1),
)


def axis_membership(near: np.ndarray, far: np.ndarray, n: int) -> np.ndarray:
    """
    Trapezoidal occupancy of every voxel along one axis.

    The depth interval ``[near, far]`` (normalised) is mapped to voxel
    units ``[near*n, far*n]``; voxel i covers ``[i, i+1]`` and gets the
    length of the overlap, so interior voxels are 1, exterior voxels are 0
    and the boundary voxel holds the fractional part.

    Args:
        near: Entry depth per column, any shape
        far: Exit depth per column, same shape
        n: Number of voxels along the axis

    Returns:
        Array of shape ``(n,) + near.shape``
    """
    lo = near.astype(np.float64) * n
    hi = far.astype(np.float64) * n
    index = np.arange(n, dtype=np.float64).reshape((n,) + (1,) * near.ndim)
    overlap = np.minimum(index + 1.0, hi) - np.maximum(index, lo)
    return np.clip(overlap, 0.0, 1.0)


class MeshSolidVoxelizer:
    """
    Builds a scalar byte occupancy field co-registered with a target field.

    Args:
        oracle: Depth-extent backend; a RasterDepthOracle by default
        views: (axis, sign) pairs to query, in order
        align_center: Translate the mesh so its box centre matches the target's
        depth_map_dir: If set, write the depth maps there as PNGs
        n_workers: Worker pool size
    """

    def __init__(
        self,
        oracle: Optional[DepthExtentOracle] = None,
        views: Sequence[Tuple[int, int]] = DEFAULT_VIEWS,
        align_center: bool = True,
        depth_map_dir: Optional[Union[str, Path]] = None,
        n_workers: Optional[int] = None
    ):
        self.oracle = oracle if oracle is not None else RasterDepthOracle()
        self.views = tuple(views)
        self.align_center = align_center
        self.depth_map_dir = depth_map_dir
        self.n_workers = n_workers

    def voxelize(
        self,
        mesh: trimesh.Trimesh,
        target: VoxelField,
        mesh_bbox: Optional[BoundingBox] = None
    ) -> VoxelField:
        """
        Voxelize ``mesh`` onto the grid of ``target``.

        Args:
            mesh: Closed triangle mesh
            target: Field whose dims and bbox define the output grid
            mesh_bbox: Mesh bounding box, computed from the vertices if None

        Returns:
            SCALAR_BYTE field with target's dims and bbox
        """
        validate_mesh(mesh)
        if mesh_bbox is None:
            mesh_bbox = mesh_bounding_box(mesh)

        box = target.bbox
        if self.align_center:
            mesh = align_to_box(mesh, mesh_bbox, box)

        nz, ny, nx = target.dims
        counts = (nx, ny, nz)

        depth_maps = self._render_views(mesh, box, counts)
        if self.depth_map_dir is not None:
            export_depth_maps(depth_maps, self.depth_map_dir)

        intervals = self._axis_intervals(depth_maps)

        def classify(bounds: Tuple[int, int]) -> np.ndarray:
            z0, z1 = bounds
            occupancy = np.ones((z1 - z0, ny, nx))
            if 0 in intervals:
                # raster (z, y) per column along x
                near, far = intervals[0]
                occupancy *= np.moveaxis(axis_membership(near[z0:z1], far[z0:z1], nx), 0, -1)
            if 1 in intervals:
                # raster (z, x) per column along y
                near, far = intervals[1]
                occupancy *= np.moveaxis(axis_membership(near[z0:z1], far[z0:z1], ny), 0, 1)
            if 2 in intervals:
                # raster (y, x) per column along z
                near, far = intervals[2]
                occupancy *= axis_membership(near, far, nz)[z0:z1]
            return occupancy

        slabs = split_range(nz, resolve_workers(self.n_workers))
        occupancy = np.concatenate(map_partitions(classify, slabs, self.n_workers), axis=0)

        field = VoxelField(to_byte(occupancy), box, FieldKind.SCALAR_BYTE)
        filled = int(np.count_nonzero(field.data))
        logger.info(f"voxelized mesh onto {field.dims}: {filled} of {field.data.size} voxels occupied")
        return field

    def _render_views(
        self,
        mesh: trimesh.Trimesh,
        box: BoundingBox,
        counts: Tuple[int, int, int]
    ) -> Dict[str, DepthPair]:
        """Query the oracle for every configured view."""
        depth_maps: Dict[str, DepthPair] = {}
        for axis, sign in self.views:
            view = OrthoView(axis, sign, box)
            u, v = view.plane_axes
            width, height = counts[u], counts[v]
            try:
                near, far = self.oracle.render_depth(mesh, view, width, height)
            except OracleFailure:
                raise
            except Exception as e:
                raise OracleFailure(f"depth query {view.name} failed: {e}") from e

            near = np.asarray(near, dtype=np.float32)
            far = np.asarray(far, dtype=np.float32)
            if near.shape != (height, width) or far.shape != (height, width):
                raise OracleFailure(
                    f"depth query {view.name} returned {near.shape}/{far.shape}, expected {(height, width)}"
                )
            depth_maps[view.name] = (near, far)
            logger.debug(f"view {view.name}: {int(np.count_nonzero(far >= near))} pixels hit")
        return depth_maps

    def _axis_intervals(self, depth_maps: Dict[str, DepthPair]) -> Dict[int, DepthPair]:
        """Merge the signed views of each axis into one +axis interval."""
        intervals: Dict[int, DepthPair] = {}
        for axis, sign in self.views:
            near, far = depth_maps[f"{'+' if sign > 0 else '-'}{AXIS_NAMES[axis]}"]
            if sign < 0:
                near, far = 1.0 - far, 1.0 - near

            if axis in intervals:
                prev_near, prev_far = intervals[axis]
                near, far = np.minimum(prev_near, near), np.maximum(prev_far, far)
            intervals[axis] = (near, far)

        missing = [AXIS_NAMES[a] for a in range(3) if a not in intervals]
        if missing:
            logger.warning(f"no depth views along {', '.join(missing)}; those axes are not constrained")
        return intervals
