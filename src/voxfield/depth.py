"""
Depth-extent queries.

The solid voxelizer needs, for every grid column along an axis, the depth
interval occupied by the mesh. That capability is expressed as the
DepthExtentOracle protocol so the voxel classification does not depend on
any graphics context. RasterDepthOracle answers it by casting rays through
trimesh.

Depth convention: normalised to [0, 1] over the view box along the view
axis, 0 on the camera side (box minimum for ``sign=+1``, maximum for
``sign=-1``). Pixels the mesh does not cover report ``near=1, far=0``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Protocol, Tuple, Union

import numpy as np
import trimesh
from skimage import io as skio

from .errors import OracleFailure
from .field import BoundingBox

logger = logging.getLogger(__name__)

AXIS_NAMES = "xyz"

DepthPair = Tuple[np.ndarray, np.ndarray]


@dataclass(frozen=True)
class OrthoView:
    """
    Orthographic view along one signed axis, covering a box.

    The raster spans the two other axes: columns follow the lower axis,
    rows the higher one (for Z views: columns = X, rows = Y).
    """
    axis: int   # 0 = X, 1 = Y, 2 = Z
    sign: int   # +1 looks towards +axis, -1 towards -axis
    bbox: BoundingBox

    def __post_init__(self):
        if self.axis not in (0, 1, 2) or self.sign not in (1, -1):
            raise ValueError(f"invalid view axis={self.axis} sign={self.sign}")

    @property
    def name(self) -> str:
        return f"{'+' if self.sign > 0 else '-'}{AXIS_NAMES[self.axis]}"

    @property
    def plane_axes(self) -> Tuple[int, int]:
        """(column axis, row axis)."""
        u, v = (a for a in range(3) if a != self.axis)
        return u, v

    def pixel_centers(self, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
        """Coordinates (mm) of pixel centres along the column and row axes."""
        u, v = self.plane_axes
        lo, size = self.bbox.min_corner, self.bbox.size()
        cols = lo[u] + (np.arange(width) + 0.5) * size[u] / width
        rows = lo[v] + (np.arange(height) + 0.5) * size[v] / height
        return cols, rows

    def normalize_depth(self, coord: np.ndarray) -> np.ndarray:
        """Map coordinates along the view axis to normalised depth."""
        lo = self.bbox.min_corner[self.axis]
        hi = self.bbox.max_corner[self.axis]
        extent = hi - lo
        if extent <= 0:
            raise OracleFailure(f"view box is flat along {AXIS_NAMES[self.axis]}")
        if self.sign > 0:
            return (coord - lo) / extent
        return (hi - coord) / extent


class DepthExtentOracle(Protocol):
    """Entry/exit depth of a mesh per raster pixel for one view."""

    def render_depth(
        self,
        mesh: trimesh.Trimesh,
        view: OrthoView,
        width: int,
        height: int
    ) -> DepthPair:
        """Return (near, far), two float32 arrays of shape (height, width)."""
        ...


class RasterDepthOracle:
    """
    Ray-cast oracle producing min/max depth maps.

    One ray per pixel centre is cast along the view direction through
    trimesh's ray interface; the shallowest and deepest hit along each ray
    give the pixel's near and far depth.
    """

    def render_depth(
        self,
        mesh: trimesh.Trimesh,
        view: OrthoView,
        width: int,
        height: int
    ) -> DepthPair:
        if width < 1 or height < 1:
            raise OracleFailure(f"invalid raster size {width}x{height}")

        u, v = view.plane_axes
        cols, rows = view.pixel_centers(width, height)
        grid_u, grid_v = np.meshgrid(cols, rows)

        if mesh.bounds is None:
            raise OracleFailure("mesh has no geometry")

        # Start every ray outside both the mesh and the view box
        lo = min(float(mesh.bounds[0][view.axis]), float(view.bbox.min_corner[view.axis]))
        hi = max(float(mesh.bounds[1][view.axis]), float(view.bbox.max_corner[view.axis]))
        margin = max(hi - lo, 1.0)

        origins = np.zeros((width * height, 3))
        origins[:, u] = grid_u.ravel()
        origins[:, v] = grid_v.ravel()
        origins[:, view.axis] = lo - margin if view.sign > 0 else hi + margin
        directions = np.zeros_like(origins)
        directions[:, view.axis] = view.sign

        try:
            locations, index_ray, _ = mesh.ray.intersects_location(
                origins, directions, multiple_hits=True
            )
        except Exception as e:
            raise OracleFailure(f"ray casting failed for view {view.name}: {e}") from e

        near = np.full(width * height, np.inf)
        far = np.full(width * height, -np.inf)
        if len(index_ray) > 0:
            depth = view.normalize_depth(locations[:, view.axis])
            np.minimum.at(near, index_ray, depth)
            np.maximum.at(far, index_ray, depth)

        logger.debug(f"view {view.name}: {len(np.unique(index_ray))} of {width * height} rays hit")

        empty = ~np.isfinite(near)
        near = np.where(empty, 1.0, np.clip(near, 0.0, 1.0)).astype(np.float32)
        far = np.where(empty, 0.0, np.clip(far, 0.0, 1.0)).astype(np.float32)
        return near.reshape(height, width), far.reshape(height, width)


def export_depth_maps(
    depth_maps: Dict[str, DepthPair],
    directory: Union[str, Path]
) -> None:
    """
    Write depth maps as 8-bit grayscale PNGs (diagnostics only).

    Files are named ``depth_<view>_near.png`` / ``depth_<view>_far.png``;
    rows are flipped so the higher axis points up.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    for view_name, (near, far) in depth_maps.items():
        for label, image in (("near", near), ("far", far)):
            pixels = np.clip(np.rint(np.flipud(image) * 255.0), 0, 255).astype(np.uint8)
            path = directory / f"depth_{view_name}_{label}.png"
            skio.imsave(str(path), pixels, check_contrast=False)

    logger.info(f"exported {2 * len(depth_maps)} depth maps to {directory}")
